"""
Coordination Store

File-based key/value store with per-key TTL, shared by every scheduler
and worker process on the host. Each key is one JSON file; mutations
happen under an exclusive flock on a store-wide lock file, and files are
replaced atomically so readers never see a partial record.

Keys used by the poller:
    lock:system               - single scheduler bootstrap
    lock:gateway:{id}         - per-gateway scheduling lock
    schedule:gateway:{id}     - schedule-state entry
    status:system             - last bootstrap snapshot
    health:{service}          - service health
"""

import json
import os
import threading
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterator
from urllib.parse import quote, unquote

from .exceptions import StoreError
from .logging_setup import get_service_logger

logger = get_service_logger("state")

STATE_DIR = Path(os.environ.get("POLLER_STATE_DIR", "/var/lib/gateway-poller/state"))

_LOCK_FILENAME = ".store.lock"

SYSTEM_LOCK_KEY = "lock:system"
SYSTEM_STATUS_KEY = "status:system"
GATEWAY_LOCK_PREFIX = "lock:gateway:"
SCHEDULE_PREFIX = "schedule:gateway:"


def gateway_lock_key(gateway_id: int) -> str:
    return f"{GATEWAY_LOCK_PREFIX}{gateway_id}"


def schedule_key(gateway_id: int) -> str:
    return f"{SCHEDULE_PREFIX}{gateway_id}"


class CoordinationStore:
    """
    TTL key/value store backed by a directory of JSON files.

    Safe across processes (flock) and threads (instance mutex). Expired
    records read as absent and are removed lazily by writers or by
    purge_expired().
    """

    def __init__(
        self,
        state_dir: Path | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.state_dir = Path(state_dir or STATE_DIR)
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self._clock = clock
        self._mutex = threading.Lock()

    def _get_path(self, key: str) -> Path:
        """Get file path for a key"""
        return self.state_dir / f"{quote(key, safe='')}.json"

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        """Hold the store-wide write lock"""
        with self._mutex:
            lock_path = self.state_dir / _LOCK_FILENAME
            with open(lock_path, "a+") as lock_file:
                if os.name == "nt":
                    yield
                    return

                import fcntl
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
                try:
                    yield
                finally:
                    fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def _read_record(self, path: Path) -> dict | None:
        """Read a raw record, or None if missing/corrupt/expired"""
        try:
            with open(path, "r", encoding="utf-8") as f:
                record = json.load(f)
        except FileNotFoundError:
            return None
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Unreadable state file {path.name}: {e}")
            return None

        expires_at = record.get("expires_at")
        if expires_at is not None and expires_at <= self._clock():
            return None
        return record

    def _write_record(self, key: str, value: Any, ttl: float | None) -> None:
        now = self._clock()
        record = {
            "key": key,
            "value": value,
            "expires_at": now + ttl if ttl is not None else None,
            "_updated_at": datetime.fromtimestamp(now, timezone.utc).isoformat(),
        }

        path = self._get_path(key)
        temp_path = path.with_name(f".{path.name}.{os.getpid()}.{threading.get_ident()}.tmp")
        try:
            with open(temp_path, "w", encoding="utf-8") as f:
                json.dump(record, f)
                f.flush()
                os.fsync(f.fileno())
            temp_path.replace(path)
        except (OSError, TypeError, ValueError) as e:
            temp_path.unlink(missing_ok=True)
            raise StoreError(f"Failed to write {key}: {e}", operation="write") from e

    def get(self, key: str, default: Any = None) -> Any:
        """Get a live value"""
        record = self._read_record(self._get_path(key))
        if record is None:
            return default
        return record.get("value")

    def has(self, key: str) -> bool:
        return self._read_record(self._get_path(key)) is not None

    def ttl_remaining(self, key: str) -> float | None:
        """Seconds until expiry, None if missing or without TTL"""
        record = self._read_record(self._get_path(key))
        if record is None or record.get("expires_at") is None:
            return None
        return max(0.0, record["expires_at"] - self._clock())

    def put(self, key: str, value: Any, ttl: float | None = None) -> None:
        """Write a value, replacing any existing record"""
        with self._exclusive():
            self._write_record(key, value, ttl)

    def add(self, key: str, value: Any, ttl: float | None = None) -> bool:
        """
        Write a value only if the key is absent or expired.

        Returns:
            True if the value was written
        """
        with self._exclusive():
            if self._read_record(self._get_path(key)) is not None:
                return False
            self._write_record(key, value, ttl)
            return True

    def delete(self, key: str) -> bool:
        """
        Delete a key.

        Returns:
            True if a live record was deleted
        """
        path = self._get_path(key)
        with self._exclusive():
            live = self._read_record(path) is not None
            path.unlink(missing_ok=True)
            return live

    def delete_prefix(self, prefix: str) -> int:
        """Delete every key starting with prefix; returns live records removed"""
        removed = 0
        with self._exclusive():
            for path in self._iter_paths():
                if not unquote(path.stem).startswith(prefix):
                    continue
                if self._read_record(path) is not None:
                    removed += 1
                path.unlink(missing_ok=True)
        return removed

    def keys(self, prefix: str = "") -> list[str]:
        """List live keys, optionally filtered by prefix"""
        result = []
        for path in self._iter_paths():
            key = unquote(path.stem)
            if key.startswith(prefix) and self._read_record(path) is not None:
                result.append(key)
        return sorted(result)

    def purge_expired(self) -> int:
        """Remove expired records from disk"""
        removed = 0
        with self._exclusive():
            for path in self._iter_paths():
                if self._read_record(path) is None:
                    path.unlink(missing_ok=True)
                    removed += 1
        return removed

    def _iter_paths(self) -> Iterator[Path]:
        return (p for p in self.state_dir.glob("*.json") if not p.name.startswith("."))

    @contextmanager
    def lock(self, key: str, ttl: float) -> Iterator[bool]:
        """
        Scoped TTL lock.

        Yields True when acquired. The lock is released on every exit path,
        but only if this holder still owns it (a TTL-expired lock taken over
        by another process is left alone).

        Usage:
            with store.lock("lock:gateway:3", ttl=60) as acquired:
                if not acquired:
                    return
        """
        token = uuid.uuid4().hex
        acquired = self.add(
            key,
            {
                "owner": token,
                "pid": os.getpid(),
                "acquired_at": datetime.now(timezone.utc).isoformat(),
            },
            ttl,
        )
        try:
            yield acquired
        finally:
            if acquired:
                self._release(key, token)

    def _release(self, key: str, token: str) -> None:
        path = self._get_path(key)
        with self._exclusive():
            record = self._read_record(path)
            if record is None:
                logger.warning(f"Lock {key} expired before release")
                return
            if (record.get("value") or {}).get("owner") != token:
                logger.warning(f"Lock {key} taken over by another holder, not releasing")
                return
            path.unlink(missing_ok=True)


# Convenience functions for service health
def set_service_health(store: CoordinationStore, service: str, status: dict) -> None:
    """Update health status for a service"""
    store.put(f"health:{service}", {
        **status,
        "updated_at": datetime.now(timezone.utc).isoformat(),
    })


def get_service_health(store: CoordinationStore, service: str) -> dict:
    """Get health status for a service"""
    return store.get(f"health:{service}", {}) or {}
