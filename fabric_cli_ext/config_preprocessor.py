"""Replace ``file://`` references in a ledger config with the referenced file contents.

Only ``Config`` values of apps and components are inspected. Relative paths
are resolved against ``base_dir`` (the directory of the config file the
document was loaded from, if any).
"""

from __future__ import annotations

import os
from pathlib import Path

from .cli_shared import OpError
from .ledgerconfig_model import App, LedgerConfig

FILE_REF_PREFIX = "file://"


def _resolve(value: str, base_dir: str | Path | None) -> str:
    if not value.startswith(FILE_REF_PREFIX):
        return value
    ref = value[len(FILE_REF_PREFIX):]
    path = Path(ref)
    if not path.is_absolute() and base_dir is not None:
        path = Path(base_dir) / path
    try:
        return Path(os.path.normpath(path)).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise OpError(f"error retrieving contents of file [{ref}]: {e}") from e


def _process_apps(apps: list[App], base_dir: str | Path | None) -> None:
    for app in apps:
        app.config = _resolve(app.config, base_dir)
        for comp in app.components:
            comp.config = _resolve(comp.config, base_dir)


def preprocess(config: LedgerConfig, *, base_dir: str | Path | None = None) -> LedgerConfig:
    """Substitute file references in place and return the same config."""
    for peer in config.peers:
        _process_apps(peer.apps, base_dir)
    _process_apps(config.apps, base_dir)
    return config
