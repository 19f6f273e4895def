from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Iterable, List, Tuple

from dotenv import dotenv_values

logger = logging.getLogger("shellbridge.envfiles")


def load_env_files(working_dir: Path, names: Iterable[str]) -> Tuple[Dict[str, str], List[str]]:
    """Merge project env files; names earlier in the list take precedence."""
    merged: Dict[str, str] = {}
    loaded: List[str] = []
    base = Path(working_dir)
    for name in names:
        p = base / str(name)
        if not p.is_file():
            continue
        try:
            values = dotenv_values(p)
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"[envfiles] failed to read {p}: {e}")
            continue
        loaded.append(str(name))
        for k, v in values.items():
            if v is None or k in merged:
                continue
            merged[k] = v
    return merged, loaded
