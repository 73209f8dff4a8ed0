"""Path utilities for filesystem operations.

This module provides the backup-name encoding, sibling temporary paths and
the small durability helpers (fsync of files and directories, atomic
whole-file writes) the rest of the engine builds on.
"""

import os
import shutil
import uuid
from pathlib import Path
from urllib.parse import quote, unquote

from confguard.utils.debug import debug


def encode_backup_name(original_path: str | Path) -> str:
    """Encode an absolute path as a single flat file name.

    Percent-encoding with no safe characters maps ``/`` to ``%2F`` and ``%``
    itself to ``%25``, so distinct paths always produce distinct names and
    ``decode_backup_name`` recovers the original exactly.

    Args:
        original_path: Absolute path being backed up

    Returns:
        File name usable inside a run's files directory
    """
    return quote(str(original_path), safe="")


def decode_backup_name(name: str) -> str:
    """Invert ``encode_backup_name``."""
    return unquote(name)


def get_temp_path(target: Path, tag: str = "tmp") -> Path:
    """Get a hidden sibling path for staging a replacement of ``target``.

    Sibling placement keeps the later rename on the same filesystem.
    """
    return target.with_name(f".{target.name}.confguard-{tag}-{uuid.uuid4().hex[:8]}")


def ensure_parent_dir(path: Path) -> None:
    """Ensure parent directory exists for a path.

    Args:
        path: Path whose parent directory should exist

    Raises:
        OSError: If parent directory cannot be created
    """
    parent = path.parent
    if not parent.exists():
        parent.mkdir(parents=True, exist_ok=True)


def fsync_file(path: Path) -> None:
    """Flush a file's data to stable storage."""
    fd = os.open(path, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def fsync_dir(path: Path) -> None:
    """Flush a directory entry table so renames inside it are durable."""
    try:
        fd = os.open(path, os.O_RDONLY | os.O_DIRECTORY)
    except OSError as e:
        debug(f"Cannot open directory for fsync {path}: {e}")
        return
    try:
        os.fsync(fd)
    except OSError as e:
        # Some filesystems (tmpfs variants, network mounts) refuse dir fsync
        debug(f"Directory fsync unsupported on {path}: {e}")
    finally:
        os.close(fd)


def copy_preserving(src: Path, dst: Path) -> None:
    """Copy ``src`` to ``dst`` with mode, timestamps and (when permitted) ownership.

    Raises:
        OSError: If the copy itself fails
    """
    shutil.copy2(src, dst)
    st = src.stat()
    try:
        os.chown(dst, st.st_uid, st.st_gid)
    except PermissionError:
        debug(f"Ownership of {src} not preserved on {dst} (not permitted)")
    fsync_file(dst)


def atomic_write_bytes(target: Path, content: bytes, *, like: Path | None = None) -> None:
    """Write ``content`` to ``target`` through a sibling temp file and rename.

    Readers see either the previous bytes or the new bytes, never a mix.

    Args:
        target: File to (re)place
        content: New bytes
        like: Optional file whose mode/ownership the result should carry;
            defaults to ``target`` itself when it exists

    Raises:
        OSError: If any step fails; the temp file is removed and ``target``
            is untouched
    """
    ensure_parent_dir(target)
    reference = like if like is not None else target
    temp_path = get_temp_path(target)
    try:
        with open(temp_path, "wb") as fh:
            fh.write(content)
            fh.flush()
            os.fsync(fh.fileno())
        if reference.exists():
            shutil.copystat(reference, temp_path)
            st = reference.stat()
            try:
                os.chown(temp_path, st.st_uid, st.st_gid)
            except PermissionError:
                debug(f"Ownership of {reference} not preserved on {target}")
        os.replace(temp_path, target)
    except OSError:
        if temp_path.exists():
            temp_path.unlink()
        raise
    fsync_dir(target.parent)


def atomic_copy(src: Path, target: Path) -> None:
    """Replace ``target`` with a copy of ``src`` (attributes from ``src``).

    Raises:
        OSError: If any step fails; ``target`` is untouched
    """
    ensure_parent_dir(target)
    temp_path = get_temp_path(target)
    try:
        copy_preserving(src, temp_path)
        os.replace(temp_path, target)
    except OSError:
        if temp_path.exists():
            temp_path.unlink()
        raise
    fsync_dir(target.parent)


def expand_touch_paths(paths: list[str] | tuple[str, ...], root: Path) -> list[Path]:
    """Expand a pre-session touch list into concrete regular files.

    Directory entries expand to every regular file below them; missing
    entries are dropped.

    Args:
        paths: Logical absolute paths (files or directories)
        root: Live root the logical paths are resolved under

    Returns:
        Sorted, de-duplicated list of live file paths
    """
    found: set[Path] = set()
    for entry in paths:
        live = root / Path(entry).relative_to(Path(entry).anchor)
        if live.is_dir():
            found.update(p for p in live.rglob("*") if p.is_file() and not p.is_symlink())
        elif live.is_file():
            found.add(live)
    return sorted(found)


def is_temp_path(path: Path) -> bool:
    """True for temp files created by ``get_temp_path``."""
    return path.name.startswith(".") and ".confguard-" in path.name
