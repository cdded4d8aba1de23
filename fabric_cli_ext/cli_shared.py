from __future__ import annotations

import json
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.markup import escape


class ExtOpsError(Exception):
    pass


class UsageError(ExtOpsError):
    pass


class OpError(ExtOpsError):
    pass


FABRIC_CLI_CONFIG = "FABRIC_CLI_CONFIG"
FABRIC_CLI_CONTEXT = "FABRIC_CLI_CONTEXT"
FABRIC_CLI_QUIET = "FABRIC_CLI_QUIET"

MSG_ABORTED = "Operation aborted"
MSG_CONTINUE_OR_ABORT = "Enter Y to continue or N to abort "

_LOG_CONSOLE = Console(stderr=True, highlight=False)


def _eprint(msg: str) -> None:
    print(msg, file=sys.stderr)


@dataclass(frozen=True)
class GlobalOpts:
    config_path: str
    context: str
    pretty: bool
    quiet: bool


def _log(g: GlobalOpts, msg: str) -> None:
    if g.quiet:
        return
    _LOG_CONSOLE.print(f"[dim]{escape(msg)}[/dim]")


def _env_or_none(*names: str) -> str | None:
    for n in names:
        v = (os.environ.get(n) or "").strip()
        if v:
            return v
    return None


def _truthy(raw: str | None) -> bool:
    return str(raw or "").strip().lower() in {"1", "true", "yes", "on"}


def _split_list(raw: str | None, *, sep: str = ";") -> list[str]:
    if not raw:
        return []
    return [part.strip() for part in raw.split(sep) if part.strip()]


def _println(text: str = "") -> None:
    sys.stdout.write(text + "\n")
    sys.stdout.flush()


def _print_json(obj: Any, *, pretty: bool) -> None:
    if pretty:
        sys.stdout.write(json.dumps(obj, indent=2) + "\n")
    else:
        sys.stdout.write(json.dumps(obj, separators=(",", ":")) + "\n")


def _compact_json(obj: Any) -> str:
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False)


def format_json(raw: str | bytes) -> str:
    """Re-indent a JSON document for display, keeping key order."""
    try:
        val = json.loads(raw)
    except ValueError as e:
        raise OpError(f"invalid JSON payload: {e}") from e
    return json.dumps(val, indent=2, ensure_ascii=False)


def _read_bytes(path: str | Path) -> bytes:
    try:
        return Path(os.path.normpath(path)).read_bytes()
    except OSError as e:
        raise OpError(f"error reading file [{path}]: {e}") from e


def _prompt() -> str | None:
    try:
        line = sys.stdin.readline()
    except (OSError, ValueError) as e:
        _eprint(f"error reading from terminal: {e}")
        return None
    if not line:
        return None
    return line


def confirm(message: str) -> bool:
    """Show message plus the Y/N prompt and wait for a single line on stdin.

    Only a (trimmed, case-insensitive) "y" confirms. EOF and read errors are
    treated as a refusal.
    """
    _println(f"{message}\n{MSG_CONTINUE_OR_ABORT}")
    response = _prompt()
    return (response or "").strip().lower() == "y"


def confirm_payload(header: str, payload: str | bytes) -> bool:
    return confirm(f"{header}\n\n{format_json(payload)}\n")
