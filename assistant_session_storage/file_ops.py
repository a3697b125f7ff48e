"""
Async file operations shared by the flat-file backend, the secret
store and the sync engine.

Writes go to a temp file in the target directory and are renamed into
place, so readers never see a half-written JSON document or database.
"""

import json
import os
import tempfile
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os

from .exceptions import StorageIOError


async def ensure_directory(path: Path) -> None:
    """Create a directory and its parents; existing directories are fine."""
    try:
        await aiofiles.os.makedirs(path, exist_ok=True)
    except OSError as e:
        raise StorageIOError("create_directory", str(path), e) from e


async def read_json(path: Path) -> Any:
    """Read a JSON file.

    Returns:
        Parsed JSON data, or None if the file doesn't exist or is empty

    Raises:
        StorageIOError: If the file cannot be read or parsed
    """
    try:
        if not await aiofiles.os.path.exists(path):
            return None
        async with aiofiles.open(path, encoding="utf-8") as f:
            content = await f.read()
            return json.loads(content) if content.strip() else None
    except json.JSONDecodeError as e:
        raise StorageIOError("parse_json", str(path), e) from e
    except OSError as e:
        raise StorageIOError("read_json", str(path), e) from e


async def write_json_atomic(path: Path, data: Any, mode: int | None = None) -> None:
    """Serialize ``data`` and atomically replace ``path`` with it.

    ``mode`` (e.g. 0o600 for secrets) is applied to the temp file before
    the rename so the target never exists with looser permissions.
    """
    payload = json.dumps(data, indent=2, default=_json_serializer).encode("utf-8")
    await _write_atomic(path, payload, ".json", "write_json", mode)


async def write_bytes_atomic(path: Path, content: bytes) -> None:
    """Write raw bytes atomically; content is stored exactly as given."""
    await _write_atomic(path, content, ".tmp", "write_bytes", None)


async def read_bytes(path: Path) -> bytes | None:
    """Read a whole file as bytes, or None if it does not exist."""
    try:
        if not await aiofiles.os.path.exists(path):
            return None
        async with aiofiles.open(path, "rb") as f:
            return await f.read()
    except OSError as e:
        raise StorageIOError("read_bytes", str(path), e) from e


async def file_exists(path: Path) -> bool:
    try:
        return await aiofiles.os.path.exists(path)
    except OSError:
        return False


async def remove_file(path: Path) -> bool:
    """Remove a file if it exists.

    Returns:
        True if file was removed, False if it didn't exist
    """
    try:
        await aiofiles.os.remove(path)
        return True
    except FileNotFoundError:
        return False
    except OSError as e:
        raise StorageIOError("remove", str(path), e) from e


async def list_files(path: Path, suffix: str = "") -> list[Path]:
    """List regular files in a directory, optionally filtered by suffix."""
    try:
        if not await aiofiles.os.path.exists(path):
            return []
        entries = await aiofiles.os.listdir(path)
    except OSError as e:
        raise StorageIOError("list_files", str(path), e) from e

    files = []
    for entry in sorted(entries):
        entry_path = path / entry
        if entry.endswith(suffix) and await aiofiles.os.path.isfile(entry_path):
            files.append(entry_path)
    return files


async def file_size(path: Path) -> int:
    try:
        return (await aiofiles.os.stat(path)).st_size
    except FileNotFoundError:
        return 0


async def _write_atomic(
    path: Path, content: bytes, suffix: str, operation: str, mode: int | None
) -> None:
    await ensure_directory(path.parent)

    fd, temp_path = tempfile.mkstemp(dir=path.parent, prefix=".tmp_", suffix=suffix)
    try:
        os.close(fd)
        async with aiofiles.open(temp_path, "wb") as f:
            await f.write(content)
            await f.flush()
            os.fsync(f.fileno())
        if mode is not None:
            os.chmod(temp_path, mode)

        await aiofiles.os.replace(temp_path, path)
    except Exception as e:
        try:
            await aiofiles.os.remove(temp_path)
        except OSError:
            pass
        raise StorageIOError(operation, str(path), e) from e


def _json_serializer(obj: Any) -> Any:
    """Serialize model objects nested in metadata."""
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")
