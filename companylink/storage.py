"""JSON state files shared by the flag store and the rate limiter."""

import json
import os
from pathlib import Path
from typing import Any, Dict


def load_json(path: Path, default: Any = None) -> Any:
    """Read a JSON state file; missing, empty or corrupt files yield default."""
    if not path.exists():
        return default
    try:
        content = path.read_text(encoding="utf-8").strip()
        return json.loads(content) if content else default
    except (json.JSONDecodeError, IOError):
        return default


def save_json(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    with tmp.open("w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False, default=str)
    # Readers never see a half-written file
    os.replace(tmp, path)


def diff_dict(old: Dict[str, Any], new: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    """Fields whose value differs between two flag snapshots, as {field: {old, new}}."""
    return {
        key: {"old": old.get(key), "new": new.get(key)}
        for key in sorted(set(old) | set(new))
        if old.get(key) != new.get(key)
    }
