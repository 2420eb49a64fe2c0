import fnmatch
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Optional, Union

from utils.errors import ConfigIOError

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

# Read once at import; os.umask can only be queried by setting it.
_UMASK = os.umask(0)
os.umask(_UMASK)


def atomic_write_bytes(path: PathLike, data: bytes) -> Path:
    """
    Write data to path so that readers never see a partially written file.

    The content goes to a temporary file in the destination directory which
    then replaces the target. On failure the temporary file is removed and
    any previous target is left untouched.
    """
    path = Path(path)
    tmp_path: Optional[Path] = None
    existing_mode: Optional[int] = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.exists():
            existing_mode = path.stat().st_mode & 0o777
        with tempfile.NamedTemporaryFile("wb", delete=False, dir=path.parent,
                                         prefix=f".{path.name}.", suffix=".tmp") as tmp:
            tmp_path = Path(tmp.name)
            tmp.write(data)
            tmp.flush()
            os.fsync(tmp.fileno())
        # NamedTemporaryFile creates 0600; match what open() would have produced.
        os.chmod(tmp_path, existing_mode if existing_mode is not None else 0o666 & ~_UMASK)
        os.replace(tmp_path, path)
        tmp_path = None
    except OSError as e:
        raise ConfigIOError(path, e) from e
    finally:
        if tmp_path is not None and tmp_path.exists():
            try:
                tmp_path.unlink()
            except OSError as e:
                logger.warning(f"Could not remove temporary file {tmp_path}: {e}")

    logger.debug(f"Wrote {len(data)} bytes to {path}")
    return path


def atomic_write_text(path: PathLike, text: str, encoding: str = "utf-8") -> Path:
    return atomic_write_bytes(path, text.encode(encoding))


def read_bytes(path: PathLike) -> bytes:
    try:
        with open(path, 'rb') as f:
            return f.read()
    except OSError as e:
        raise ConfigIOError(path, e) from e


def create_backup(path: PathLike) -> Optional[Path]:
    """Copy an existing file to ``<name>.bak``; returns the backup path."""
    path = Path(path)
    if not path.exists():
        return None
    backup_path = path.with_suffix(".bak")
    try:
        shutil.copy2(path, backup_path)
    except OSError as e:
        raise ConfigIOError(backup_path, e) from e
    logger.info(f"Created backup: {backup_path}")
    return backup_path


def matches_ignore_pattern(relative: str, patterns) -> bool:
    """True if a POSIX relative path or its file name matches any glob pattern."""
    name = relative.rsplit("/", 1)[-1]
    return any(fnmatch.fnmatch(relative, p) or fnmatch.fnmatch(name, p) for p in patterns)
