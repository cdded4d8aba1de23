from __future__ import annotations

import argparse
import json
import os
from pathlib import Path
from typing import Any

from .basecmd import CommandContext, build_command_context
from .cli_shared import (
    MSG_ABORTED,
    GlobalOpts,
    OpError,
    UsageError,
    _compact_json,
    _log,
    _println,
    _split_list,
    confirm_payload,
)
from .config_preprocessor import preprocess
from .fabric import ChannelRequest
from .ledgerconfig_model import (
    CONFIG_SCC,
    App,
    Component,
    ConfigFormatError,
    Criteria,
    LedgerConfig,
    Peer,
    parse_query_results,
)

MSG_CONFIG_UPDATED = "Configuration successfully updated!"
MSG_CONFIG_DELETED = "Configuration successfully deleted!"
MSG_FILE_INDEX_UPDATED = "File index successfully updated!"
MSG_NO_CONFIG = "No configuration matches the given criteria"

FILE_HANDLER_APP_NAME = "file-handler"
FILE_HANDLER_APP_VERSION = "1"
FILE_HANDLER_COMPONENT_VERSION = "1"

_CRITERIA_OPTS = ("mspid", "peerid", "appname", "appver", "componentname", "componentver")


def _opt(args: argparse.Namespace, name: str) -> str:
    return str(getattr(args, name, "") or "").strip()


def validate_criteria_args(args: argparse.Namespace) -> None:
    raw = _opt(args, "criteria")
    if raw:
        if any(_opt(args, n) for n in _CRITERIA_OPTS):
            raise UsageError("other options cannot be used along with --criteria")
        try:
            Criteria.from_dict(json.loads(raw))
        except ValueError as e:
            raise UsageError(f"invalid criteria: {e}") from e
        return
    if not _opt(args, "mspid"):
        raise UsageError("either --criteria or (at least) --mspid must be specified")


def criteria_bytes(args: argparse.Namespace) -> bytes:
    """The lookup key: the raw --criteria blob as given, or one built from the individual options."""
    raw = _opt(args, "criteria")
    if raw:
        return raw.encode("utf-8")
    c = Criteria(
        msp_id=_opt(args, "mspid"),
        peer_id=_opt(args, "peerid"),
        app_name=_opt(args, "appname"),
        app_version=_opt(args, "appver"),
        component_name=_opt(args, "componentname"),
        component_version=_opt(args, "componentver"),
    )
    return _compact_json(c.to_dict()).encode("utf-8")


def _query(ctx: CommandContext, key: bytes, *, targets: tuple[str, ...] = ()) -> bytes:
    ch = ctx.channel()
    resp = ch.query(ChannelRequest(chaincode_id=CONFIG_SCC, fcn="get", args=[key]), targets=targets)
    return resp.payload


def _save(ctx: CommandContext, config_bytes: bytes) -> None:
    ctx.channel().execute(ChannelRequest(chaincode_id=CONFIG_SCC, fcn="save", args=[config_bytes]))


def cmd_ledgerconfig_query(args: argparse.Namespace, g: GlobalOpts) -> int:
    validate_criteria_args(args)
    ctx = build_command_context(g)
    key = criteria_bytes(args)
    _log(g, f"querying {CONFIG_SCC} with criteria {key.decode('utf-8', 'replace')}")
    payload = _query(ctx, key, targets=ctx.context().peers)
    _println(payload.decode("utf-8", "replace"))
    return 0


def _validate_update_args(args: argparse.Namespace) -> None:
    config = _opt(args, "config")
    config_file = _opt(args, "configfile")
    if bool(config) == bool(config_file):
        raise UsageError("one of --config or --configfile must be specified")
    if config:
        try:
            LedgerConfig.from_dict(json.loads(config))
        except ValueError as e:
            raise UsageError(f"invalid JSON config: {e}") from e
        return
    if not os.path.exists(config_file):
        raise UsageError(f"file not found: [{config_file}]")


def _load_update_config(args: argparse.Namespace) -> tuple[LedgerConfig, Path | None]:
    config = _opt(args, "config")
    if config:
        return LedgerConfig.from_dict(json.loads(config)), None
    path = Path(os.path.normpath(_opt(args, "configfile")))
    try:
        raw = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise OpError(f"error reading config file [{path}]: {e}") from e
    try:
        return LedgerConfig.from_dict(json.loads(raw)), path.parent
    except ValueError as e:
        raise OpError(f"invalid JSON config in file [{path}]: {e}") from e


def cmd_ledgerconfig_update(args: argparse.Namespace, g: GlobalOpts) -> int:
    _validate_update_args(args)
    cfg, base_dir = _load_update_config(args)
    cfg = preprocess(cfg, base_dir=base_dir)
    config_bytes = _compact_json(cfg.to_dict()).encode("utf-8")

    if not args.noprompt and not confirm_payload("Updating the configuration with:", config_bytes):
        _println(MSG_ABORTED)
        return 0

    ctx = build_command_context(g)
    _save(ctx, config_bytes)
    _println(MSG_CONFIG_UPDATED)
    return 0


def _no_matches(payload: bytes) -> bool:
    return payload.strip() in (b"", b"null", b"[]")


def cmd_ledgerconfig_delete(args: argparse.Namespace, g: GlobalOpts) -> int:
    validate_criteria_args(args)
    ctx = build_command_context(g)
    key = criteria_bytes(args)

    if not args.noprompt:
        existing = _query(ctx, key)
        if _no_matches(existing):
            _println(MSG_NO_CONFIG)
            return 0
        if not confirm_payload("The following configuration will be deleted:", existing):
            _println(MSG_ABORTED)
            return 0

    ctx.channel().execute(ChannelRequest(chaincode_id=CONFIG_SCC, fcn="delete", args=[key]))
    _println(MSG_CONFIG_DELETED)
    return 0


def _validate_fileidx_args(args: argparse.Namespace) -> None:
    if not _opt(args, "msp"):
        raise UsageError("msp (--msp) is required")
    if not _split_list(_opt(args, "peers")):
        raise UsageError("peers (--peers) is required")
    if not _opt(args, "path"):
        raise UsageError("base path (--path) is required")
    if not _opt(args, "idxid"):
        raise UsageError("file index ID (--idxid) is required")


def _load_file_handler_config(ctx: CommandContext, *, msp: str, peer: str, base_path: str) -> dict[str, Any]:
    key = Criteria(
        msp_id=msp,
        peer_id=peer,
        app_name=FILE_HANDLER_APP_NAME,
        app_version=FILE_HANDLER_APP_VERSION,
        component_name=base_path,
        component_version=FILE_HANDLER_COMPONENT_VERSION,
    )
    payload = _query(ctx, _compact_json(key.to_dict()).encode("utf-8"))
    try:
        results = parse_query_results(payload)
    except ConfigFormatError as e:
        raise OpError(str(e)) from e
    if not results:
        raise OpError(f"config not found for file handler [{base_path}]")
    try:
        handler_cfg = json.loads(results[0].config)
    except ValueError as e:
        raise OpError(f"invalid file handler config for peer [{peer}]: {e}") from e
    if not isinstance(handler_cfg, dict):
        raise OpError(f"invalid file handler config for peer [{peer}]: expected JSON object")
    return handler_cfg


def cmd_ledgerconfig_fileidxupdate(args: argparse.Namespace, g: GlobalOpts) -> int:
    _validate_fileidx_args(args)
    msp = _opt(args, "msp")
    base_path = _opt(args, "path")
    index_id = _opt(args, "idxid")
    ctx = build_command_context(g)

    pending: dict[str, dict[str, Any]] = {}
    for peer in _split_list(_opt(args, "peers")):
        handler_cfg = _load_file_handler_config(ctx, msp=msp, peer=peer, base_path=base_path)
        namespace = str(handler_cfg.get("IndexNamespace") or "")
        if not index_id.startswith(namespace):
            raise OpError(f"file index ID must begin with [{namespace}]")
        if handler_cfg.get("IndexDocID") == index_id:
            _log(g, f"peer {peer} already references file index {index_id}")
            continue
        handler_cfg["IndexDocID"] = index_id
        pending[peer] = handler_cfg

    if not pending:
        raise OpError(f"the file index ID for [{base_path}] is already set to [{index_id}]")

    cfg = LedgerConfig(msp_id=msp)
    for peer, handler_cfg in pending.items():
        comp = Component(
            name=base_path,
            version=FILE_HANDLER_COMPONENT_VERSION,
            format="JSON",
            config=_compact_json(handler_cfg),
        )
        app = App(app_name=FILE_HANDLER_APP_NAME, version=FILE_HANDLER_APP_VERSION, components=[comp])
        cfg.peers.append(Peer(peer_id=peer, apps=[app]))
    config_bytes = _compact_json(cfg.to_dict()).encode("utf-8")

    if not args.noprompt and not confirm_payload("Updating the configuration with:", config_bytes):
        _println(MSG_ABORTED)
        return 0

    _save(ctx, config_bytes)
    _println(MSG_FILE_INDEX_UPDATED)
    return 0
