"""Atomic writes and predictable artifact file names."""

from __future__ import annotations

import os
import re
import tempfile
from pathlib import Path
from typing import Pattern

_UNSAFE_NAME: Pattern[str] = re.compile(r"[^A-Za-z0-9._-]+")


def safe_name(value: str | None, *, fallback: str) -> str:
    """Replace runs of characters outside ``[A-Za-z0-9._-]`` with ``_``."""
    source = (value or "").strip() or fallback
    return _UNSAFE_NAME.sub("_", source)


def artifact_file_name(prefix: str, plan_id: str, ext: str) -> str:
    """Return ``<prefix>_<plan_id>.<ext>`` with both parts made filesystem-safe."""
    extension = ext[1:] if ext.startswith(".") else ext
    return f"{safe_name(prefix, fallback='artifact')}_{safe_name(plan_id, fallback='unknown')}.{extension}"


def write_bytes_atomic(path: Path, data: bytes) -> None:
    """Write ``data`` to ``path`` via a sibling temporary file and ``os.replace``.

    Readers observe either the previous contents or the new contents, never a
    partially written file. The mode of an existing file is preserved; new files get 0644.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        mode = path.stat().st_mode & 0o7777
    except FileNotFoundError:
        mode = 0o644
    fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
        os.chmod(temp_name, mode)
        os.replace(temp_name, path)
    except BaseException:
        Path(temp_name).unlink(missing_ok=True)
        raise


def write_text_atomic(path: Path, text: str, *, encoding: str = "utf-8") -> None:
    """Encode ``text`` and write it with :func:`write_bytes_atomic`; no newline translation."""
    write_bytes_atomic(path, text.encode(encoding))


__all__ = ["artifact_file_name", "safe_name", "write_bytes_atomic", "write_text_atomic"]
