"""Crash-safe file helpers shared by the state store and escalation queue."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Callable, Optional


def _fsync_directory(directory: Path) -> None:
    try:
        fd = os.open(directory, os.O_RDONLY)
    except OSError:  # pragma: no cover - platform without directory fds
        return
    try:
        os.fsync(fd)
    except OSError:  # pragma: no cover - platform without directory fsync
        pass
    finally:
        os.close(fd)


def write_text_atomic(
    path: Path,
    content: str,
    before_replace: Optional[Callable[[], None]] = None,
) -> None:
    """Write ``content`` to ``path`` via temp file, fsync and rename.

    ``before_replace`` runs after the temp file is durable and before it is
    renamed over ``path``; backup rotation hooks in there.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f"{path.name}.tmp")
    try:
        with open(tmp_path, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        if before_replace is not None:
            before_replace()
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
    _fsync_directory(path.parent)


def write_json_atomic(path: Path, data: Any, **kwargs: Any) -> None:
    write_text_atomic(path, json.dumps(data, indent=2, default=str) + "\n", **kwargs)
