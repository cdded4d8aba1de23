from __future__ import annotations

from .apps.fabric_ext_cli import (
    _apply_global_env,
    _run_cli,
    app,
    extensions_app,
    file_app,
    ledgerconfig_app,
    main,
)
from .cli_shared import GlobalOpts, OpError, UsageError

__all__ = [
    "GlobalOpts",
    "OpError",
    "UsageError",
    "_apply_global_env",
    "_run_cli",
    "app",
    "extensions_app",
    "file_app",
    "ledgerconfig_app",
    "main",
]


if __name__ == "__main__":
    raise SystemExit(main())
