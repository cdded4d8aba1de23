from __future__ import annotations

import argparse
import json
import re
from typing import Any

from . import policydsl
from .basecmd import build_command_context
from .cli_shared import GlobalOpts, UsageError, _log, _println
from .fabric import (
    CollectionConfig,
    InstantiateCCRequest,
    LifecycleApproveCCRequest,
    LifecycleCommitCCRequest,
)

MSG_CC_APPROVED = "Successfully approved chaincode"
MSG_CC_COMMITTED = "Successfully committed chaincode"
MSG_CC_INSTANTIATED = "Successfully instantiated chaincode"

_INT32_MIN, _INT32_MAX = -(2**31), 2**31 - 1
_INT64_MIN, _INT64_MAX = -(2**63), 2**63 - 1
_UINT64_MAX = 2**64 - 1

_DECIMAL_RE = re.compile(r"[+-]?[0-9]+")

COLLECTION_TYPES = {
    "COL_UNKNOWN": 0,
    "COL_PRIVATE": 1,
    "COL_TRANSIENT": 2,
    "COL_OFFLEDGER": 3,
    "COL_DCAS": 4,
}


def get_chaincode_policy(policy: str | None) -> dict[str, Any]:
    """Parse an endorsement policy; an empty policy accepts all."""
    if not (policy or "").strip():
        return policydsl.accept_all_policy()
    try:
        return policydsl.from_string(str(policy))
    except policydsl.PolicyParseError as e:
        raise UsageError("error parsing chaincode policy") from e


def _int_field(item: dict[str, Any], name: str, *, lo: int = _INT32_MIN, hi: int = _INT32_MAX) -> int:
    v = item.get(name, 0)
    if v is None:
        return 0
    if isinstance(v, bool) or not isinstance(v, int):
        raise UsageError(f"invalid collections config: {name} must be an integer")
    if not lo <= v <= hi:
        raise UsageError(f"invalid collections config: {name} out of range [{lo}, {hi}]")
    return v


def _bool_field(item: dict[str, Any], name: str) -> bool:
    v = item.get(name, False)
    if v is None:
        return False
    if not isinstance(v, bool):
        raise UsageError(f"invalid collections config: {name} must be a boolean")
    return v


def _str_field(item: dict[str, Any], name: str) -> str:
    v = item.get(name, "")
    if v is None:
        return ""
    if not isinstance(v, str):
        raise UsageError(f"invalid collections config: {name} must be a string")
    return v


def unmarshal_collections_config(raw: str | None) -> list[CollectionConfig]:
    """Parse the JSON collections config given on the command line.

    Unknown collection type names map to ``COL_UNKNOWN``. Each collection's
    member policy uses the same DSL as the endorsement policy.
    """
    if not (raw or "").strip():
        return []
    try:
        items = json.loads(str(raw))
    except ValueError as e:
        raise UsageError(f"invalid collections config: {e}") from e
    if not isinstance(items, list):
        raise UsageError("invalid collections config: expected JSON array")

    out: list[CollectionConfig] = []
    for item in items:
        if not isinstance(item, dict):
            raise UsageError("invalid collections config: expected JSON object for each collection")
        name = _str_field(item, "name")
        try:
            policy = policydsl.from_string(_str_field(item, "policy"))
        except policydsl.PolicyParseError as e:
            raise UsageError(f"invalid policy for collection [{name}]: {e}") from e
        out.append(
            CollectionConfig(
                name=name,
                type=COLLECTION_TYPES.get(_str_field(item, "type"), COLLECTION_TYPES["COL_UNKNOWN"]),
                member_orgs_policy=policy,
                required_peer_count=_int_field(item, "requiredPeerCount"),
                maximum_peer_count=_int_field(item, "maxPeerCount"),
                block_to_live=_int_field(item, "blockToLive", lo=0, hi=_UINT64_MAX),
                time_to_live=_str_field(item, "timeToLive"),
                member_only_read=_bool_field(item, "memberOnlyRead"),
                member_only_write=_bool_field(item, "memberOnlyWrite"),
            )
        )
    return out


def _arg(args: argparse.Namespace, name: str) -> str:
    return str(getattr(args, name, "") or "").strip()


def _validate_name_version(args: argparse.Namespace) -> None:
    if not _arg(args, "name"):
        raise UsageError("chaincode name not specified")
    if not _arg(args, "version"):
        raise UsageError("chaincode version not specified")


def _parse_sequence(raw: str) -> int:
    if not raw:
        raise UsageError("sequence not specified")
    if not _DECIMAL_RE.fullmatch(raw):
        raise UsageError(f"invalid sequence: invalid syntax: {raw!r}")
    seq = int(raw)
    if not _INT64_MIN <= seq <= _INT64_MAX:
        raise UsageError(f"invalid sequence: value out of range: {raw!r}")
    if seq <= 0:
        raise UsageError("sequence must be greater than 0")
    return seq


def cmd_approvecc(args: argparse.Namespace, g: GlobalOpts) -> int:
    _validate_name_version(args)
    if not _arg(args, "package_id"):
        raise UsageError("package ID not specified")
    sequence = _parse_sequence(_arg(args, "sequence"))

    ctx = build_command_context(g)
    context = ctx.context()
    req = LifecycleApproveCCRequest(
        name=_arg(args, "name"),
        version=_arg(args, "version"),
        package_id=_arg(args, "package_id"),
        sequence=sequence,
        signature_policy=get_chaincode_policy(args.policy),
        channel_config_policy=_arg(args, "channel_config_policy"),
        collection_config=unmarshal_collections_config(args.collections_config),
        init_required=bool(args.init_required),
        endorsement_plugin=_arg(args, "endorsement_plugin"),
        validation_plugin=_arg(args, "validation_plugin"),
    )
    _log(g, f"approving chaincode {req.name}:{req.version} (sequence {sequence}) on channel {context.channel}")
    ctx.res_mgmt().lifecycle_approve_cc(context.channel, req, targets=context.peers)
    _println(MSG_CC_APPROVED)
    return 0


def cmd_commitcc(args: argparse.Namespace, g: GlobalOpts) -> int:
    _validate_name_version(args)
    sequence = _parse_sequence(_arg(args, "sequence"))

    ctx = build_command_context(g)
    context = ctx.context()
    req = LifecycleCommitCCRequest(
        name=_arg(args, "name"),
        version=_arg(args, "version"),
        sequence=sequence,
        signature_policy=get_chaincode_policy(args.policy),
        channel_config_policy=_arg(args, "channel_config_policy"),
        collection_config=unmarshal_collections_config(args.collections_config),
        init_required=bool(args.init_required),
        endorsement_plugin=_arg(args, "endorsement_plugin"),
        validation_plugin=_arg(args, "validation_plugin"),
    )
    peers = tuple(p.strip() for p in (args.peer or []) if p and p.strip()) or context.peers
    _log(g, f"committing chaincode {req.name}:{req.version} to peers {', '.join(peers) or '(none)'}")
    ctx.res_mgmt().lifecycle_commit_cc(context.channel, req, targets=peers)
    _println(MSG_CC_COMMITTED)
    return 0


def cmd_instantiatecc(args: argparse.Namespace, g: GlobalOpts) -> int:
    _validate_name_version(args)

    ctx = build_command_context(g)
    context = ctx.context()
    req = InstantiateCCRequest(
        name=_arg(args, "name"),
        version=_arg(args, "version"),
        policy=get_chaincode_policy(args.policy),
        coll_config=unmarshal_collections_config(args.collections_config),
    )
    _log(g, f"instantiating chaincode {req.name}:{req.version} on channel {context.channel}")
    ctx.res_mgmt().instantiate_cc(context.channel, req, targets=context.peers)
    _println(MSG_CC_INSTANTIATED)
    return 0
