"""Filesystem layout for persistent mesh state.

Default layout::

    ~/.meshcore/
      config.json
      .secrets/identity.json
      mesh/rosters/{network_id}.json
      mesh/states/{network_id}.json
      updates/
"""

from __future__ import annotations

import os
from pathlib import Path

HOME_ENV = "MESHCORE_HOME"
DEFAULT_DIR_NAME = ".meshcore"


class DataDirError(Exception):
    """Raised when the state directory cannot be resolved."""


def data_dir() -> Path:
    """Root directory for mesh state.

    Uses the ``MESHCORE_HOME`` environment variable when it is set and not
    blank, otherwise ``~/.meshcore``. The directory is not created here.
    """
    custom = os.environ.get(HOME_ENV)
    if custom is not None:
        trimmed = custom.strip()
        if trimmed:
            return Path(trimmed)
    try:
        home = Path.home()
    except (RuntimeError, KeyError, OSError) as exc:
        raise DataDirError(
            f"could not resolve user home directory (set {HOME_ENV} to override): {exc}"
        ) from exc
    return home / DEFAULT_DIR_NAME


def rosters_dir() -> Path:
    """Directory holding per-network roster files."""
    return data_dir() / "mesh" / "rosters"


def states_dir() -> Path:
    """Directory holding per-network signed governance-state files."""
    return data_dir() / "mesh" / "states"


def secrets_dir() -> Path:
    """Directory holding the identity anchor and other secret material."""
    return data_dir() / ".secrets"


def updates_dir() -> Path:
    """Directory the updater stages downloaded releases into."""
    return data_dir() / "updates"


def config_path() -> Path:
    """Path to the user-editable config file."""
    return data_dir() / "config.json"