"""
JSON file helpers for run archives and policy exports.
"""

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Optional


def atomic_write_json(path, data: Any, indent: int = 2) -> Path:
    """
    Write `data` as JSON so readers only ever see the old or the new file.

    The payload goes to a sibling temp file first and is moved over the
    target with os.replace once fully written.

    Returns:
        The target path
    """
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)

    with tempfile.NamedTemporaryFile(
        "w", dir=target.parent, prefix=f"{target.stem}_", suffix=".tmp", delete=False
    ) as handle:
        staging = Path(handle.name)
        try:
            json.dump(data, handle, indent=indent)
        except Exception:
            handle.close()
            staging.unlink(missing_ok=True)
            raise

    os.replace(staging, target)
    return target


def load_json(path, default: Optional[Any] = None) -> Any:
    """Read a JSON file, returning default when it does not exist"""
    path = Path(path)
    if not path.exists():
        return default
    with open(path, "r") as f:
        return json.load(f)
