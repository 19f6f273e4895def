from __future__ import annotations

import os
from pathlib import Path


def shellbridge_home() -> Path:
    env = os.environ.get("SHELLBRIDGE_HOME", "").strip()
    if env:
        return Path(env).expanduser().resolve()
    return (Path.home() / ".shellbridge").resolve()


def ensure_home() -> Path:
    home = shellbridge_home()
    home.mkdir(parents=True, exist_ok=True)
    return home
