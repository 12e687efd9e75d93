"""Persisted JSON caches and generated text files."""

import contextlib
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Union

LOGGER = logging.getLogger("uplink_router.files")

PathLike = Union[str, Path]


def load_json_cache(path: PathLike, label: str) -> Dict[str, Any]:
    """Load a cache file; a missing or corrupt file yields an empty cache."""
    path = Path(path)
    try:
        data = json.loads(path.read_text())
    except FileNotFoundError:
        LOGGER.warning("No persistent %s at %s, starting with an empty cache", label, path)
        return {}
    except (OSError, ValueError) as exc:
        LOGGER.warning("Failed to load the persistent %s (%s), starting with an empty cache", label, exc)
        return {}
    if not isinstance(data, dict):
        LOGGER.warning("Persistent %s at %s is malformed, starting with an empty cache", label, path)
        return {}
    return data


def write_text_file(path: PathLike, contents: str) -> bool:
    """Replace ``path`` wholesale. Readers never observe a partial file."""
    path = Path(path)
    tmp_name = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(contents)
        os.replace(tmp_name, path)
        return True
    except OSError as exc:
        LOGGER.error("Failed to write %s: %s", path, exc)
        if tmp_name:
            with contextlib.suppress(OSError):
                os.unlink(tmp_name)
        return False


def write_json_cache(path: PathLike, data: Dict[str, Any]) -> bool:
    return write_text_file(path, json.dumps(data))
