from __future__ import annotations

import argparse
import base64
import json
import mimetypes
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlparse

from . import sidetree
from .cli_shared import (
    MSG_ABORTED,
    GlobalOpts,
    OpError,
    UsageError,
    _compact_json,
    _log,
    _print_json,
    _println,
    _read_bytes,
    _split_list,
    confirm,
)
from .httpclient import STATUS_NOT_FOUND, STATUS_OK, STATUS_UNAUTHORIZED, Client, HTTPResponse, status_error

JSON_PATCH_BASE_PATH = "/fileIndex/mappings/"
JSON_PATCH_ADD_OP = "add"
JSON_PATCH_REPLACE_OP = "replace"


def build_http_client() -> Client:
    return Client()


@dataclass
class FileIndex:
    base_path: str = ""
    mappings: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"basePath": self.base_path}
        if self.mappings:
            out["mappings"] = dict(self.mappings)
        return out


@dataclass
class FileIndexDoc:
    id: str = ""
    unique_suffix: str = ""
    file_index: FileIndex = field(default_factory=FileIndex)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "didUniqueSuffix": self.unique_suffix, "fileIndex": self.file_index.to_dict()}

    @classmethod
    def from_dict(cls, doc: Any) -> FileIndexDoc:
        if not isinstance(doc, dict):
            raise OpError("invalid file index document: expected JSON object")
        idx = doc.get("fileIndex") or {}
        if not isinstance(idx, dict):
            raise OpError("invalid file index document: fileIndex must be a JSON object")
        mappings = idx.get("mappings") or {}
        if not isinstance(mappings, dict):
            raise OpError("invalid file index document: mappings must be a JSON object")
        return cls(
            id=str(doc.get("id") or ""),
            unique_suffix=str(doc.get("didUniqueSuffix") or ""),
            file_index=FileIndex(
                base_path=str(idx.get("basePath") or ""),
                mappings={str(k): str(v) for k, v in mappings.items()},
            ),
        )


@dataclass
class FileInfo:
    name: str
    content_type: str
    content: bytes = field(default=b"", repr=False)
    id: str = ""

    def summary(self) -> dict[str, str]:
        out: dict[str, str] = {}
        if self.name:
            out["Name"] = self.name
        if self.id:
            out["ID"] = self.id
        if self.content_type:
            out["ContentType"] = self.content_type
        return out


def _files_json(files: list[FileInfo]) -> str:
    return _compact_json([f.summary() for f in files])


def _opt(args: argparse.Namespace, name: str) -> str:
    return str(getattr(args, name, "") or "").strip()


def _validate_key_pair(args: argparse.Namespace, *, key: str, key_file: str, label: str) -> None:
    has_key = bool(_opt(args, key))
    has_file = bool(_opt(args, key_file))
    if not has_key and not has_file:
        raise UsageError(f"either {label} key (--{key}) or key file (--{key_file}) is required")
    if has_key and has_file:
        raise UsageError(f"only one of {label} key (--{key}) or key file (--{key_file}) may be specified")


def _public_key(args: argparse.Namespace, *, key: str, key_file: str) -> Any:
    path = _opt(args, key_file)
    pem = _read_bytes(path) if path else _opt(args, key).encode("utf-8")
    try:
        return sidetree.public_key_from_pem(pem)
    except sidetree.KeyFormatError as e:
        raise OpError(str(e)) from e


def _private_key(args: argparse.Namespace, *, key: str, key_file: str) -> Any:
    path = _opt(args, key_file)
    pem = _read_bytes(path) if path else _opt(args, key).encode("utf-8")
    try:
        return sidetree.private_key_from_pem(pem)
    except sidetree.KeyFormatError as e:
        raise OpError(str(e)) from e


def _jwk(pub: Any) -> dict[str, str]:
    try:
        return sidetree.public_key_jwk(pub)
    except sidetree.KeyFormatError as e:
        raise OpError(str(e)) from e


def unwrap_did_resolution(payload: bytes) -> bytes:
    """Return the embedded ``didDocument`` when the payload is a DID resolution result."""
    try:
        val = json.loads(payload)
    except ValueError as e:
        raise OpError(f"unmarshal data returned from sidetree: {e}") from e
    if isinstance(val, dict):
        doc = val.get("didDocument")
        if doc:
            return json.dumps(doc, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    return payload


def _validate_createidx_args(args: argparse.Namespace) -> None:
    if not _opt(args, "url"):
        raise UsageError("URL (--url) is required")
    path = _opt(args, "path")
    if not path:
        raise UsageError("path (--path) is required")
    if not path.startswith("/"):
        raise UsageError("path (--path) must begin with '/'")
    _validate_key_pair(args, key="recoverykey", key_file="recoverykeyfile", label="recovery")
    _validate_key_pair(args, key="updatekey", key_file="updatekeyfile", label="update")


def cmd_file_createidx(args: argparse.Namespace, g: GlobalOpts) -> int:
    _validate_createidx_args(args)
    url = _opt(args, "url")
    path = _opt(args, "path")
    auth_token = _opt(args, "authtoken") or None

    doc = FileIndexDoc(file_index=FileIndex(base_path=path, mappings={".": path}))
    recovery = _jwk(_public_key(args, key="recoverykey", key_file="recoverykeyfile"))
    update = _jwk(_public_key(args, key="updatekey", key_file="updatekeyfile"))
    req = sidetree.new_create_request(
        opaque_document=doc.to_dict(),
        recovery_commitment=sidetree.commitment(recovery),
        update_commitment=sidetree.commitment(update),
    )

    if not args.noprompt and not confirm(f"Creating file index document for path [{path}]"):
        _println(MSG_ABORTED)
        return 0

    _log(g, f"posting create request for file index [{path}] to {url}")
    resp = build_http_client().post(url, req, auth_token=auth_token)
    if resp.status_code != STATUS_OK:
        raise status_error(resp)
    _print_json(json.loads(unwrap_did_resolution(resp.payload)), pretty=g.pretty)
    return 0


def _base_path_from_url(url: str) -> str:
    try:
        u = urlparse(url)
    except ValueError as e:
        raise UsageError(f"invalid URL [{url}]: {e}") from e
    if not u.path:
        raise UsageError("invalid URL - no base path found")
    return u.path


def _file_index_update_url(idx_url: str) -> str:
    pos = idx_url.rfind("/identifiers")
    if pos == -1:
        raise UsageError(
            f"invalid file index URL: [{idx_url}] - the file index ID must be prefixed by identifiers/"
        )
    return f"{idx_url[:pos]}/operations"


def _unique_suffix(idx_url: str) -> str:
    pos = idx_url.rfind(":")
    if pos == -1:
        raise OpError(f"unique suffix not provided in URL [{idx_url}]")
    return idx_url[pos + 1:]


def content_type_from_file_name(name: str) -> str:
    pos = name.rfind(".")
    if pos == -1:
        raise OpError("content type cannot be deduced since no file extension provided")
    ctype, _ = mimetypes.guess_type("f" + name[pos:], strict=False)
    if not ctype:
        raise OpError("content type cannot be deduced from extension")
    return ctype


def _file_info(path: str) -> FileInfo:
    name = path.rsplit("/", 1)[-1]
    ctype = content_type_from_file_name(name)
    return FileInfo(name=name, content_type=ctype, content=_read_bytes(path))


def _get_file_index(http: Client, idx_url: str, *, base_path: str, auth_token: str | None) -> FileIndex:
    resp = http.get(idx_url, auth_token=auth_token)
    if resp.status_code != STATUS_OK:
        if resp.status_code == STATUS_NOT_FOUND:
            raise OpError(f"file index document [{idx_url}] not found")
        if resp.status_code == STATUS_UNAUTHORIZED:
            raise status_error(resp, label=f"error retrieving file index document [{idx_url}]")
        raise OpError(
            f"error retrieving file index document [{idx_url}] status code {resp.status_code}: {resp.error_msg}"
        )
    try:
        doc = FileIndexDoc.from_dict(json.loads(unwrap_did_resolution(resp.payload)))
    except ValueError as e:
        raise OpError(f"invalid file index document: {e}") from e
    if doc.file_index.base_path != base_path:
        raise OpError(
            "base path of file index doc does not match the base path of the file: "
            f"[{doc.file_index.base_path}] != [{base_path}]"
        )
    return doc.file_index


def _upload(http: Client, url: str, f: FileInfo, *, auth_token: str | None) -> str:
    body = _compact_json({"contentType": f.content_type, "content": base64.b64encode(f.content).decode("ascii")})
    resp = http.post(url, body.encode("utf-8"), auth_token=auth_token)
    if resp.status_code != STATUS_OK:
        raise status_error(resp, token_flag="--contentauthtoken")
    try:
        file_id = json.loads(resp.payload)
    except ValueError as e:
        raise OpError(f"invalid response from [{url}]: {e}") from e
    if not isinstance(file_id, str):
        raise OpError(f"invalid response from [{url}]: expected JSON string")
    return file_id


def update_patch(file_index: FileIndex, files: list[FileInfo]) -> list[dict[str, str]]:
    patch: list[dict[str, str]] = []
    for f in files:
        op = JSON_PATCH_REPLACE_OP if f.name in file_index.mappings else JSON_PATCH_ADD_OP
        patch.append({"op": op, "path": JSON_PATCH_BASE_PATH + f.name, "value": f.id})
    return patch


def _check_update_response(resp: HTTPResponse) -> None:
    if resp.status_code != STATUS_OK:
        raise status_error(resp, label="error updating file index document")


def _validate_upload_args(args: argparse.Namespace) -> tuple[str, str]:
    url = _opt(args, "url")
    if not url:
        raise UsageError("URL (--url) is required")
    base_path = _base_path_from_url(url)
    idx_url = _opt(args, "idxurl")
    if not idx_url:
        raise UsageError("file index URL (--idxurl) is required")
    update_url = _file_index_update_url(idx_url)
    if not _split_list(_opt(args, "files")):
        raise UsageError("files (--files) is required")
    _validate_key_pair(args, key="signingkey", key_file="signingkeyfile", label="signing")
    _validate_key_pair(args, key="nextupdatekey", key_file="nextupdatekeyfile", label="next update")
    return base_path, update_url


def cmd_file_upload(args: argparse.Namespace, g: GlobalOpts) -> int:
    base_path, update_url = _validate_upload_args(args)
    url = _opt(args, "url")
    idx_url = _opt(args, "idxurl")
    auth_token = _opt(args, "authtoken") or None
    content_auth_token = _opt(args, "contentauthtoken") or auth_token
    http = build_http_client()

    file_index = _get_file_index(http, idx_url, base_path=base_path, auth_token=auth_token)
    files = [_file_info(p) for p in _split_list(_opt(args, "files"))]

    if not args.noprompt and not confirm(f"Uploading the following files to [{url}]\n{_files_json(files)}"):
        _println(MSG_ABORTED)
        return 0

    for f in files:
        f.id = _upload(http, url, f, auth_token=content_auth_token)
        _log(g, f"uploaded {f.name} as {f.id}")

    next_update = _jwk(_public_key(args, key="nextupdatekey", key_file="nextupdatekeyfile"))
    try:
        signer = sidetree.ECSigner(_private_key(args, key="signingkey", key_file="signingkeyfile"))
        req = sidetree.new_update_request(
            did_suffix=_unique_suffix(idx_url),
            update_commitment=sidetree.commitment(next_update),
            patches=update_patch(file_index, files),
            signer=signer,
        )
    except ValueError as e:
        raise OpError(f"error creating update request: {e}") from e
    _check_update_response(http.post(update_url, req, auth_token=auth_token))

    _print_json([f.summary() for f in files], pretty=g.pretty)
    return 0
