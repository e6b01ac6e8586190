"""Apply validated plan operations to files under a repository root.

Operations run strictly in order and the first failure aborts the rest with
:class:`~repo_agent.errors.ExecutionError`.  Files written by earlier
operations are left in place; :func:`revert_operations` undoes them during
the lifecycle rollback.

Line-based kinds share one text model: ``\\r\\n`` and ``\\r`` are normalised to
``\\n``, the text is split on ``\\n`` and a trailing terminator does not count
as an extra (empty) line.  The rewritten file keeps the original file's
trailing-newline state.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Sequence, Tuple

from ..errors import ExecutionError
from ..schema import Operation, OperationKind
from ..utils.fsio import write_bytes_atomic, write_text_atomic

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class AppliedOperation:
    """Record of one operation that was written to disk."""

    op_id: str
    path: Path
    kind: OperationKind
    existed_before: bool
    # Bytes on disk before the write; None for files the operation created.
    original: bytes | None = None


def normalise_line_endings(text: str) -> str:
    """Convert CRLF/CR sequences to LF."""
    return text.replace("\r\n", "\n").replace("\r", "\n")


def split_lines(text: str) -> Tuple[List[str], bool]:
    """Split ``text`` into lines and report whether it ended with a terminator."""
    normalised = normalise_line_endings(text)
    if not normalised:
        return [], False
    trailing = normalised.endswith("\n")
    if trailing:
        normalised = normalised[:-1]
    return normalised.split("\n"), trailing


def join_lines(lines: List[str], trailing_newline: bool) -> str:
    if not lines:
        return ""
    text = "\n".join(lines)
    return f"{text}\n" if trailing_newline else text


def _fail(op: Operation, message: str, **details) -> ExecutionError:
    payload = {"op_id": op.id, "path": op.file, "kind": op.kind.value}
    payload.update(details)
    return ExecutionError(f"op {op.id} ({op.kind.value} {op.file}): {message}", details=payload)


def apply_to_text(text: str, op: Operation) -> str:
    """Return ``text`` after applying the line-based operation ``op``.

    Parameters
    ----------
    text:
        Current file contents.  An empty string is a file with zero lines.
    op:
        A ``replace_range``, ``insert_after`` or ``delete_range`` operation
        whose line numbers are 1-based and inclusive.
    """
    lines, trailing = split_lines(text)
    new_lines, content_trailing = split_lines(op.content)
    if not lines:
        trailing = content_trailing

    start = op.start_line if op.start_line is not None else 0
    index = start - 1
    length = len(lines)
    if index < 0 or index > length:
        raise _fail(op, f"start_line {start} is outside 1..{length + 1}", lines=length)

    if op.kind is OperationKind.INSERT_AFTER:
        position = min(start, length)
        lines[position:position] = new_lines
        return join_lines(lines, trailing)

    end = op.end_line
    if end is None or end < start:
        raise _fail(op, f"end_line {end} is invalid for start_line {start}")
    if end - 1 >= length:
        raise _fail(op, f"end_line {end} is past the last line ({length})", lines=length)

    if op.kind is OperationKind.REPLACE_RANGE:
        lines[index:end] = new_lines
    elif op.kind is OperationKind.DELETE_RANGE:
        del lines[index:end]
    else:
        raise _fail(op, "not a line-based operation")
    return join_lines(lines, trailing)


def resolve_target(repo_root: Path, op: Operation) -> Path:
    """Resolve ``op.file`` under ``repo_root`` and refuse anything that escapes it."""
    root = repo_root.resolve()
    relative = op.file.strip().replace("\\", "/")
    target = (root / relative).resolve()
    try:
        inside = target.relative_to(root)
    except ValueError:
        raise _fail(op, f"resolved path {target} escapes the repository root") from None
    if not inside.parts:
        raise _fail(op, "path resolves to the repository root")
    if inside.parts[0] == ".git":
        raise _fail(op, "path resolves into the .git directory")
    return target


def _read_existing(target: Path, op: Operation) -> str:
    if not target.exists():
        raise _fail(op, "target file does not exist")
    if not target.is_file():
        raise _fail(op, "target is not a regular file")
    try:
        return target.read_bytes().decode("utf-8")
    except UnicodeDecodeError as error:
        raise _fail(op, f"target is not valid UTF-8 text: {error}") from error
    except OSError as error:
        raise _fail(op, f"unable to read target: {error}") from error


def _write(target: Path, text: str, op: Operation) -> None:
    try:
        write_text_atomic(target, text)
    except OSError as error:
        raise _fail(op, f"unable to write target: {error}") from error


def _create_file(op: Operation, target: Path) -> None:
    if target.exists() or target.is_symlink():
        raise _fail(op, "create_file target already exists")
    _write(target, op.content, op)


def _update_file(op: Operation, target: Path) -> None:
    _read_existing(target, op)
    _write(target, op.content, op)


def _edit_lines(op: Operation, target: Path) -> None:
    original = _read_existing(target, op)
    _write(target, apply_to_text(original, op), op)


OperationHandler = Callable[[Operation, Path], None]

OPERATION_HANDLERS: Dict[OperationKind, OperationHandler] = {
    OperationKind.CREATE_FILE: _create_file,
    OperationKind.UPDATE_FILE: _update_file,
    OperationKind.REPLACE_RANGE: _edit_lines,
    OperationKind.INSERT_AFTER: _edit_lines,
    OperationKind.DELETE_RANGE: _edit_lines,
}


def apply_operation(op: Operation, repo_root: Path) -> AppliedOperation:
    """Apply a single operation and describe what was written."""
    handler = OPERATION_HANDLERS.get(op.kind)
    if handler is None:
        raise _fail(op, "unsupported operation kind")
    target = resolve_target(Path(repo_root), op)
    existed = target.exists()
    if target.is_dir():
        raise _fail(op, "target is a directory")
    original = None
    if existed and target.is_file():
        try:
            original = target.read_bytes()
        except OSError as error:
            raise _fail(op, f"unable to read target: {error}") from error
    handler(op, target)
    LOGGER.debug("Applied %s to %s", op.kind.value, op.file)
    return AppliedOperation(
        op_id=op.id,
        path=target.relative_to(Path(repo_root).resolve()),
        kind=op.kind,
        existed_before=existed,
        original=original,
    )


def apply_operations(
    ops: Iterable[Operation],
    repo_root: Path | str,
    *,
    journal: List[AppliedOperation] | None = None,
) -> Tuple[AppliedOperation, ...]:
    """Apply ``ops`` in order; the first failure raises and stops the sequence.

    When ``journal`` is given every successful write is appended to it as it
    happens, so a caller still knows what was touched after a failure.
    """
    root = Path(repo_root)
    applied: List[AppliedOperation] = [] if journal is None else journal
    start = len(applied)
    for op in ops:
        try:
            applied.append(apply_operation(op, root))
        except ExecutionError as error:
            error.details.setdefault("applied", [item.op_id for item in applied[start:]])
            raise
    return tuple(applied[start:])


def revert_operations(applied: Sequence[AppliedOperation], repo_root: Path | str) -> List[Path]:
    """Undo ``applied`` newest first: created files are removed, overwritten ones restored.

    This covers paths git cannot restore, such as ignored files.
    """
    root = Path(repo_root).resolve()
    reverted: List[Path] = []
    for item in reversed(applied):
        target = root / item.path
        if item.original is None:
            if target.is_file() or target.is_symlink():
                target.unlink()
                reverted.append(item.path)
            parent = target.parent
            while parent != root and root in parent.parents:
                try:
                    parent.rmdir()
                except OSError:
                    break
                parent = parent.parent
            continue
        write_bytes_atomic(target, item.original)
        reverted.append(item.path)
    return reverted


__all__ = [
    "AppliedOperation",
    "OPERATION_HANDLERS",
    "apply_operation",
    "apply_operations",
    "apply_to_text",
    "join_lines",
    "normalise_line_endings",
    "resolve_target",
    "revert_operations",
    "split_lines",
]
