from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .cli_shared import GlobalOpts, UsageError

DEFAULT_CONFIG_PATH = "~/.fabric-cli/config.json"


@dataclass(frozen=True)
class Context:
    """Connection settings for one network context (channel, peers, gateway)."""

    name: str
    channel: str
    peers: tuple[str, ...] = ()
    gateway_url: str = ""
    auth_token: str = ""


@dataclass
class Config:
    current_context: str = ""
    contexts: dict[str, Context] = field(default_factory=dict)

    def get_current_context(self) -> Context:
        name = (self.current_context or "").strip()
        if not name:
            raise UsageError("no current context set (set currentContext in the config file or pass --context)")
        ctx = self.contexts.get(name)
        if ctx is None:
            raise UsageError(f"context not found: {name}")
        return ctx


def _context_from_doc(name: str, doc: Any) -> Context:
    if not isinstance(doc, dict):
        raise UsageError(f"invalid context {name!r}: expected JSON object")
    peers = doc.get("peers") or []
    if not isinstance(peers, list):
        raise UsageError(f"invalid context {name!r}: peers must be a list")
    return Context(
        name=name,
        channel=str(doc.get("channel") or "").strip(),
        peers=tuple(str(p).strip() for p in peers if str(p).strip()),
        gateway_url=str(doc.get("gatewayUrl") or "").strip(),
        auth_token=str(doc.get("authToken") or "").strip(),
    )


def config_from_doc(doc: dict[str, Any]) -> Config:
    raw_contexts = doc.get("contexts") or {}
    if not isinstance(raw_contexts, dict):
        raise UsageError("invalid config: contexts must be a JSON object")
    return Config(
        current_context=str(doc.get("currentContext") or "").strip(),
        contexts={str(k): _context_from_doc(str(k), v) for k, v in raw_contexts.items()},
    )


def load_config(path: str | None, *, context_override: str | None = None) -> Config:
    p = Path(path or DEFAULT_CONFIG_PATH).expanduser()
    if not p.is_file():
        raise UsageError(f"config file not found: {p} (pass --config-path or set FABRIC_CLI_CONFIG)")
    try:
        doc = json.loads(p.read_text(encoding="utf-8"))
    except ValueError as e:
        raise UsageError(f"invalid config file {p}: {e}") from e
    if not isinstance(doc, dict):
        raise UsageError(f"invalid config file {p}: expected JSON object")
    cfg = config_from_doc(doc)
    if context_override:
        cfg.current_context = context_override.strip()
    return cfg


def load_config_for(g: GlobalOpts) -> Config:
    return load_config(g.config_path or None, context_override=g.context or None)
