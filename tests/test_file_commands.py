import argparse
import base64
import io
import json

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from fabric_cli_ext.cli_shared import GlobalOpts
from fabric_cli_ext.cli_shared import OpError
from fabric_cli_ext.cli_shared import UsageError
from fabric_cli_ext.file_commands import cmd_file_createidx
from fabric_cli_ext.file_commands import cmd_file_upload
from fabric_cli_ext.file_commands import content_type_from_file_name
from fabric_cli_ext.file_commands import FileIndex
from fabric_cli_ext.file_commands import FileInfo
from fabric_cli_ext.file_commands import update_patch
from fabric_cli_ext.httpclient import HTTPResponse


def _g() -> GlobalOpts:
    return GlobalOpts(config_path="", context="", pretty=False, quiet=True)


def _b64url_decode(s: str) -> bytes:
    return base64.urlsafe_b64decode(s + "=" * (-len(s) % 4))


def _keypair():
    key = ec.generate_private_key(ec.SECP256R1())
    priv = key.private_bytes(
        serialization.Encoding.PEM, serialization.PrivateFormat.PKCS8, serialization.NoEncryption()
    ).decode("ascii")
    pub = key.public_key().public_bytes(
        serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo
    ).decode("ascii")
    return priv, pub


class FakeHTTP:
    def __init__(self, responses=None):
        self.calls = []
        self._responses = list(responses or [])

    def _next(self):
        return self._responses.pop(0) if self._responses else HTTPResponse(status_code=200, payload=b"{}")

    def post(self, url, body, *, auth_token=None):
        self.calls.append(("POST", url, body, auth_token))
        return self._next()

    def get(self, url, *, auth_token=None):
        self.calls.append(("GET", url, None, auth_token))
        return self._next()


def _install(monkeypatch, http: FakeHTTP) -> FakeHTTP:
    monkeypatch.setattr("fabric_cli_ext.file_commands.build_http_client", lambda: http)
    return http


def _createidx_args(**kwargs) -> argparse.Namespace:
    _, pub = _keypair()
    base = dict(
        url="https://sidetree.example.com/file/operations",
        path="/content",
        authtoken=None,
        recoverykey=pub,
        recoverykeyfile=None,
        updatekey=pub,
        updatekeyfile=None,
        noprompt=True,
    )
    base.update(kwargs)
    return argparse.Namespace(**base)


@pytest.mark.parametrize(
    "override,message",
    [
        ({"url": None}, r"URL \(--url\) is required"),
        ({"url": None, "path": None}, r"URL \(--url\) is required"),
        ({"path": ""}, r"path \(--path\) is required"),
        ({"path": "content"}, r"path \(--path\) must begin with '/'"),
        ({"recoverykey": None}, r"either recovery key \(--recoverykey\) or key file \(--recoverykeyfile\) is required"),
        ({"recoverykeyfile": "x.pem"}, r"only one of recovery key \(--recoverykey\) or key file"),
        ({"updatekey": None}, r"either update key \(--updatekey\) or key file \(--updatekeyfile\) is required"),
    ],
)
def test_createidx_validation_order(monkeypatch, override, message):
    http = _install(monkeypatch, FakeHTTP())
    with pytest.raises(UsageError, match=message):
        cmd_file_createidx(_createidx_args(**override), _g())
    assert http.calls == []


def test_createidx_posts_create_request_and_unwraps_resolution(monkeypatch, capsys):
    resolution = {"didDocument": {"id": "file:idx:abc", "fileIndex": {"basePath": "/content"}}}
    http = _install(monkeypatch, FakeHTTP([HTTPResponse(status_code=200, payload=json.dumps(resolution).encode())]))

    assert cmd_file_createidx(_createidx_args(authtoken="tok"), _g()) == 0

    assert json.loads(capsys.readouterr().out) == resolution["didDocument"]
    method, url, body, token = http.calls[0]
    assert (method, url, token) == ("POST", "https://sidetree.example.com/file/operations", "tok")
    req = json.loads(body)
    assert req["type"] == "create"
    delta = json.loads(_b64url_decode(req["delta"]))
    assert delta["patches"][0]["document"] == {
        "id": "",
        "didUniqueSuffix": "",
        "fileIndex": {"basePath": "/content", "mappings": {".": "/content"}},
    }


def test_createidx_reads_keys_from_files(monkeypatch, tmp_path, capsys):
    _, pub = _keypair()
    key_file = tmp_path / "pub.pem"
    key_file.write_text(pub, encoding="ascii")
    http = _install(monkeypatch, FakeHTTP([HTTPResponse(status_code=200, payload=b'{"id":"x"}')]))

    args = _createidx_args(recoverykey=None, recoverykeyfile=str(key_file), updatekey=None, updatekeyfile=str(key_file))
    assert cmd_file_createidx(args, _g()) == 0
    assert capsys.readouterr().out.strip() == '{"id":"x"}'
    assert len(http.calls) == 1


def test_createidx_surfaces_unauthorized_with_hint(monkeypatch):
    _install(monkeypatch, FakeHTTP([HTTPResponse(status_code=401, error_msg="denied")]))
    with pytest.raises(OpError) as exc:
        cmd_file_createidx(_createidx_args(), _g())
    assert str(exc.value) == "status code 401: denied - Did you provide an authorization token (--authtoken)?"


def test_createidx_surfaces_server_error_body(monkeypatch):
    _install(monkeypatch, FakeHTTP([HTTPResponse(status_code=500, error_msg="boom")]))
    with pytest.raises(OpError, match="status code 500: boom"):
        cmd_file_createidx(_createidx_args(), _g())


def test_createidx_abort_issues_no_request(monkeypatch, capsys):
    http = _install(monkeypatch, FakeHTTP())
    monkeypatch.setattr("sys.stdin", io.StringIO("no\n"))

    assert cmd_file_createidx(_createidx_args(noprompt=False), _g()) == 0

    out = capsys.readouterr().out
    assert "Creating file index document for path [/content]" in out
    assert out.rstrip().endswith("Operation aborted")
    assert http.calls == []


def _upload_args(tmp_path, **kwargs) -> argparse.Namespace:
    priv, _ = _keypair()
    _, next_pub = _keypair()
    f1 = tmp_path / "schema.json"
    f1.write_text('{"type":"object"}', encoding="utf-8")
    f2 = tmp_path / "readme.txt"
    f2.write_text("hello", encoding="utf-8")
    base = dict(
        url="https://dcas.example.com/content",
        files=f"{f1};{f2}",
        idxurl="https://sidetree.example.com/file/identifiers/file:idx:suffix123",
        authtoken="idx-token",
        contentauthtoken=None,
        signingkey=priv,
        signingkeyfile=None,
        nextupdatekey=next_pub,
        nextupdatekeyfile=None,
        noprompt=True,
    )
    base.update(kwargs)
    return argparse.Namespace(**base)


@pytest.mark.parametrize(
    "override,message",
    [
        ({"url": None}, r"URL \(--url\) is required"),
        ({"url": "https://dcas.example.com"}, "invalid URL - no base path found"),
        ({"url": "https://dcas.example.com", "idxurl": None}, "invalid URL - no base path found"),
        ({"idxurl": None}, r"file index URL \(--idxurl\) is required"),
        ({"idxurl": "https://x/file/file:idx:1"}, r"the file index ID must be prefixed by identifiers/"),
        ({"files": ""}, r"files \(--files\) is required"),
        ({"signingkey": None}, r"either signing key \(--signingkey\) or key file \(--signingkeyfile\) is required"),
        ({"nextupdatekey": None}, r"either next update key \(--nextupdatekey\) or key file"),
    ],
)
def test_upload_validation_order(monkeypatch, tmp_path, override, message):
    http = _install(monkeypatch, FakeHTTP())
    with pytest.raises(UsageError, match=message):
        cmd_file_upload(_upload_args(tmp_path, **override), _g())
    assert http.calls == []


def _index_response(mappings) -> HTTPResponse:
    doc = {"didDocument": {"id": "file:idx:suffix123", "fileIndex": {"basePath": "/content", "mappings": mappings}}}
    return HTTPResponse(status_code=200, payload=json.dumps(doc).encode("utf-8"))


def test_upload_uploads_files_and_posts_signed_update(monkeypatch, tmp_path, capsys):
    http = _install(
        monkeypatch,
        FakeHTTP(
            [
                _index_response({"readme.txt": "old-id"}),
                HTTPResponse(status_code=200, payload=b'"id-schema"'),
                HTTPResponse(status_code=200, payload=b'"id-readme"'),
                HTTPResponse(status_code=200, payload=b""),
            ]
        ),
    )

    assert cmd_file_upload(_upload_args(tmp_path), _g()) == 0

    out = json.loads(capsys.readouterr().out)
    assert out == [
        {"Name": "schema.json", "ID": "id-schema", "ContentType": "application/json"},
        {"Name": "readme.txt", "ID": "id-readme", "ContentType": "text/plain"},
    ]

    get_call, up1, up2, update = http.calls
    assert get_call[:2] == ("GET", "https://sidetree.example.com/file/identifiers/file:idx:suffix123")
    assert get_call[3] == "idx-token"

    assert up1[1] == "https://dcas.example.com/content"
    assert up1[3] == "idx-token"
    body = json.loads(up1[2])
    assert body["contentType"] == "application/json"
    assert base64.b64decode(body["content"]) == b'{"type":"object"}'

    assert update[1] == "https://sidetree.example.com/file/operations"
    req = json.loads(update[2])
    assert req["type"] == "update"
    assert req["did_suffix"] == "suffix123"
    delta = json.loads(_b64url_decode(req["delta"]))
    assert delta["patches"][0]["patches"] == [
        {"op": "add", "path": "/fileIndex/mappings/schema.json", "value": "id-schema"},
        {"op": "replace", "path": "/fileIndex/mappings/readme.txt", "value": "id-readme"},
    ]


def test_upload_uses_content_auth_token_for_dcas(monkeypatch, tmp_path, capsys):
    http = _install(
        monkeypatch,
        FakeHTTP(
            [
                _index_response({}),
                HTTPResponse(status_code=200, payload=b'"a"'),
                HTTPResponse(status_code=200, payload=b'"b"'),
                HTTPResponse(status_code=200, payload=b""),
            ]
        ),
    )
    assert cmd_file_upload(_upload_args(tmp_path, contentauthtoken="content-token"), _g()) == 0
    capsys.readouterr()
    assert [c[3] for c in http.calls] == ["idx-token", "content-token", "content-token", "idx-token"]


def test_upload_reports_missing_index_document(monkeypatch, tmp_path):
    _install(monkeypatch, FakeHTTP([HTTPResponse(status_code=404, error_msg="nope")]))
    with pytest.raises(OpError, match=r"file index document \[https://sidetree.example.com/file/identifiers/file:idx:suffix123\] not found"):
        cmd_file_upload(_upload_args(tmp_path), _g())


def test_upload_reports_index_retrieval_failure(monkeypatch, tmp_path):
    _install(monkeypatch, FakeHTTP([HTTPResponse(status_code=500, error_msg="boom")]))
    with pytest.raises(OpError) as exc:
        cmd_file_upload(_upload_args(tmp_path), _g())
    assert str(exc.value) == (
        "error retrieving file index document "
        "[https://sidetree.example.com/file/identifiers/file:idx:suffix123] status code 500: boom"
    )


def test_upload_index_retrieval_unauthorized_mentions_auth_token(monkeypatch, tmp_path):
    _install(monkeypatch, FakeHTTP([HTTPResponse(status_code=401, error_msg="denied")]))
    with pytest.raises(OpError) as exc:
        cmd_file_upload(_upload_args(tmp_path), _g())
    assert str(exc.value) == (
        "error retrieving file index document "
        "[https://sidetree.example.com/file/identifiers/file:idx:suffix123]. Status code 401: denied"
        " - Did you provide an authorization token (--authtoken)?"
    )


def test_upload_rejects_mismatched_base_path(monkeypatch, tmp_path):
    _install(monkeypatch, FakeHTTP([_index_response({})]))
    with pytest.raises(OpError, match=r"\[/content\] != \[/other\]"):
        cmd_file_upload(_upload_args(tmp_path, url="https://dcas.example.com/other"), _g())


def test_upload_dcas_unauthorized_mentions_content_token(monkeypatch, tmp_path):
    _install(monkeypatch, FakeHTTP([_index_response({}), HTTPResponse(status_code=401, error_msg="no")]))
    with pytest.raises(OpError, match=r"--contentauthtoken"):
        cmd_file_upload(_upload_args(tmp_path), _g())


def test_upload_abort_uploads_nothing(monkeypatch, tmp_path, capsys):
    http = _install(monkeypatch, FakeHTTP([_index_response({})]))
    monkeypatch.setattr("sys.stdin", io.StringIO("n\n"))

    assert cmd_file_upload(_upload_args(tmp_path, noprompt=False), _g()) == 0

    out = capsys.readouterr().out
    assert "Uploading the following files to [https://dcas.example.com/content]" in out
    assert "Operation aborted" in out
    assert [c[0] for c in http.calls] == ["GET"]


def test_content_type_from_file_name():
    assert content_type_from_file_name("a.json") == "application/json"
    with pytest.raises(OpError, match="no file extension provided"):
        content_type_from_file_name("README")
    with pytest.raises(OpError, match="cannot be deduced from extension"):
        content_type_from_file_name("a.zzzunknownext")


def test_update_patch_adds_and_replaces():
    idx = FileIndex(base_path="/content", mappings={"a.txt": "1"})
    files = [FileInfo(name="a.txt", content_type="text/plain", id="2"), FileInfo(name="b.txt", content_type="text/plain", id="3")]
    assert update_patch(idx, files) == [
        {"op": "replace", "path": "/fileIndex/mappings/a.txt", "value": "2"},
        {"op": "add", "path": "/fileIndex/mappings/b.txt", "value": "3"},
    ]
