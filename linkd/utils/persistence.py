"""
Atomic JSON persistence shared by the trust store and the device state store.

Writes go to a temp file created with restrictive permissions, are locked,
flushed and fsync'd, then renamed over the target. A write returning means
the data is on disk.
"""

import fcntl
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

from ..constants import Permissions

logger = logging.getLogger(__name__)


def atomic_write_json(path: Union[str, Path], data: Dict[str, Any],
                      mode: int = Permissions.SECURE_FILE) -> None:
    """
    Durably replace ``path`` with ``data`` serialized as JSON.

    Raises:
        OSError: if any step of the write fails; the previous file is left intact
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_name(path.name + '.tmp')

    # Create with the final permissions from the start (no chmod window)
    fd = os.open(temp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    try:
        with os.fdopen(fd, 'w') as f:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX)
            try:
                json.dump(data, f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            finally:
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)
        os.replace(temp_path, path)
    except OSError:
        try:
            temp_path.unlink()
        except FileNotFoundError:
            pass
        raise

    # Persist the rename itself
    dir_fd = os.open(path.parent, os.O_RDONLY)
    try:
        os.fsync(dir_fd)
    finally:
        os.close(dir_fd)


def read_json_locked(path: Union[str, Path]) -> Optional[Dict[str, Any]]:
    """
    Read a JSON document written by :func:`atomic_write_json`.

    Returns None when the file does not exist. A corrupt file is moved aside
    to ``<name>.corrupt`` and None is returned so callers start from an
    empty (deny-everything) state.
    """
    path = Path(path)
    if not path.exists():
        return None

    try:
        with open(path, 'r') as f:
            fcntl.flock(f.fileno(), fcntl.LOCK_SH)
            try:
                return json.load(f)
            finally:
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)
    except json.JSONDecodeError as e:
        logger.error(f"Corrupt state file {path}: {e}")
        backup_path = path.with_name(path.name + '.corrupt')
        os.replace(path, backup_path)
        logger.warning(f"Moved corrupt file to {backup_path}")
        return None
