"""
Session Store — durable credentials for one device identity.

Layout: <auth_dir>/<device_id>/creds.json plus a session.lock held while a
supervisor owns the identity. Writes go to a temp file in the same directory
and are renamed over the old file, so a crash leaves one complete version.
"""

import copy
import json
import logging
import os
import tempfile
import threading
import time
from pathlib import Path
from typing import Any, Optional

from wa_relay.errors import CredentialIOError, SessionLockedError

logger = logging.getLogger(__name__)

CREDS_FILE = "creds.json"
LOCK_FILE = "session.lock"


class SessionCredential:
    """Opaque credential document. Empty means pairing is required."""

    __slots__ = ("data",)

    def __init__(self, data: Optional[dict[str, Any]] = None):
        self.data: dict[str, Any] = data or {}

    @property
    def is_empty(self) -> bool:
        return not self.data

    def __repr__(self) -> str:
        return f"SessionCredential(sections={sorted(self.data)!r})"


def merge_delta(base: dict[str, Any], delta: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge `delta` into a copy of `base`. A None value deletes the key."""
    merged = copy.deepcopy(base)
    for key, value in delta.items():
        if value is None:
            merged.pop(key, None)
        elif isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_delta(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class SessionStore:
    def __init__(self, auth_dir: Path, device_id: str = "default"):
        self._dir = Path(auth_dir) / device_id
        self._device_id = device_id
        self._lock = threading.Lock()
        self._current: Optional[dict[str, Any]] = None
        self._lock_fd: Optional[int] = None

    @property
    def device_id(self) -> str:
        return self._device_id

    @property
    def path(self) -> Path:
        return self._dir / CREDS_FILE

    def load(self) -> SessionCredential:
        """Read stored credentials. Returns an empty credential on first run."""
        with self._lock:
            self._current = self._read()
            return SessionCredential(copy.deepcopy(self._current))

    def save(self, delta: dict[str, Any]) -> SessionCredential:
        """Merge a credential delta and persist it atomically."""
        with self._lock:
            current = self._current if self._current is not None else self._read()
            merged = merge_delta(current, delta)
            self._write(merged)
            self._current = merged
            return SessionCredential(copy.deepcopy(merged))

    def clear(self) -> None:
        """Invalidate stored credentials (logout). The next load() starts a new pairing."""
        with self._lock:
            try:
                self.path.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                raise CredentialIOError(f"Failed to clear credentials at {self.path}: {e}") from e
            self._current = {}
        logger.info(f"Cleared stored credentials for device {self._device_id}")

    def acquire(self) -> None:
        """Take the single-active-session lock for this device identity."""
        if self._lock_fd is not None:
            return
        lock_path = self._dir / LOCK_FILE
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise CredentialIOError(f"Cannot create auth directory {self._dir}: {e}") from e
        for _ in range(2):
            try:
                fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
            except FileExistsError:
                try:
                    owner = int(lock_path.read_text().strip() or "0")
                except (OSError, ValueError):
                    owner = 0
                if owner and owner != os.getpid() and _pid_alive(owner):
                    raise SessionLockedError(
                        f"Device {self._device_id} is already in use by process {owner}",
                        details={"pid": owner},
                    )
                logger.warning(f"Reclaiming stale session lock for device {self._device_id} (pid {owner})")
                lock_path.unlink(missing_ok=True)
                continue
            os.write(fd, str(os.getpid()).encode("ascii"))
            self._lock_fd = fd
            return
        raise SessionLockedError(f"Could not lock device {self._device_id}")

    def release(self) -> None:
        if self._lock_fd is None:
            return
        os.close(self._lock_fd)
        self._lock_fd = None
        (self._dir / LOCK_FILE).unlink(missing_ok=True)

    def _read(self) -> dict[str, Any]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as e:
            raise CredentialIOError(f"Failed to read credentials at {self.path}: {e}") from e
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            return self._set_aside(f"not valid JSON ({e})")
        if not isinstance(data, dict):
            return self._set_aside("not a JSON object")
        return data

    def _set_aside(self, problem: str) -> dict[str, Any]:
        """Move an unreadable credential file out of the way so the next session pairs from scratch."""
        target = self.path.with_name(f"{CREDS_FILE}.corrupt-{int(time.time())}")
        try:
            os.replace(self.path, target)
        except OSError as e:
            raise CredentialIOError(f"Corrupt credential file {self.path} could not be moved aside: {e}") from e
        logger.warning(f"Credential file {self.path} is {problem}; moved it to {target.name}, pairing is required")
        return {}

    def _write(self, data: dict[str, Any]) -> None:
        tmp_name: Optional[str] = None
        try:
            self._dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=".creds-", suffix=".tmp", dir=self._dir)
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(data, handle)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self.path)
            tmp_name = None
        except (OSError, TypeError, ValueError) as e:
            raise CredentialIOError(f"Failed to persist credentials at {self.path}: {e}") from e
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    pass
