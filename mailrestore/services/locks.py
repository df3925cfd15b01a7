from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
import json
import logging
import os
from pathlib import Path
import tempfile
from typing import Callable

from mailrestore.core.errors import ScopeLockedError


logger = logging.getLogger(__name__)

LivenessCheck = Callable[[int], bool]


@dataclass(frozen=True)
class LockRecord:
    # Holder identity plus acquisition time; one record per scope identifier.
    holder: int
    acquired_at: str
    scope: str


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def process_alive(pid: int) -> bool:
    # Signal 0 probes existence without touching the target process.
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class ScopeLock:
    """Cross-invocation exclusion for one scope, reclaimed when the holder is gone."""

    def __init__(
        self,
        key: str,
        *,
        lock_dir: Path,
        holder: int | None = None,
        liveness: LivenessCheck = process_alive,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.key = key
        self.path = lock_dir / f"restore_domain_{key}.lock"
        self.holder = holder if holder is not None else os.getpid()
        self._liveness = liveness
        self._clock = clock
        self._record: LockRecord | None = None

    @property
    def held(self) -> bool:
        return self._record is not None

    def read(self) -> LockRecord | None:
        # Accept both JSON records and bare pid files left by older tooling.
        try:
            raw = self.path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        if not raw:
            return None
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            payload = None
        if isinstance(payload, dict):
            try:
                return LockRecord(
                    holder=int(payload["holder"]),
                    acquired_at=str(payload.get("acquired_at", "")),
                    scope=str(payload.get("scope", self.key)),
                )
            except (KeyError, TypeError, ValueError):
                return None
        try:
            return LockRecord(holder=int(raw), acquired_at="", scope=self.key)
        except ValueError:
            return None

    def acquire(self) -> LockRecord:
        # Publish a complete record with one link(); a dead holder is reclaimed once.
        self.path.parent.mkdir(parents=True, exist_ok=True)
        record = LockRecord(holder=self.holder, acquired_at=self._clock().isoformat(), scope=self.key)
        for _attempt in range(3):
            try:
                self._publish(record)
            except FileExistsError:
                existing = self.read()
                if existing is None:
                    if not self.path.exists():
                        continue
                    raise ScopeLockedError(
                        f"restore lock for {self.key} exists but its holder cannot be read",
                        remediation=f"Check that no restore is running, then remove {self.path}.",
                    ) from None
                if self._liveness(existing.holder):
                    raise ScopeLockedError(
                        f"another restore for {self.key} is already in progress (PID: {existing.holder})",
                        remediation=f"Wait for it to finish, or remove {self.path} if that process is not a restore.",
                    ) from None
                # Re-read so a lock another process just reclaimed is left alone.
                if self.read() == existing:
                    logger.warning("scope_lock_reclaimed key=%s stale_holder=%s", self.key, existing.holder)
                    self.path.unlink(missing_ok=True)
                continue
            self._record = record
            logger.info("scope_lock_acquired key=%s holder=%s", self.key, self.holder)
            return record
        raise ScopeLockedError(
            f"could not acquire restore lock for {self.key}",
            remediation=f"Another restore raced for {self.path}; retry in a moment.",
        )

    def _publish(self, record: LockRecord) -> None:
        # The lock path only ever appears with its full content.
        fd, temp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(asdict(record), handle)
                handle.flush()
                os.fsync(handle.fileno())
            os.chmod(temp_name, 0o644)
            os.link(temp_name, self.path)
        finally:
            Path(temp_name).unlink(missing_ok=True)

    def release(self) -> None:
        # Only the holder removes the lock file.
        if self._record is None:
            return
        existing = self.read()
        if existing is not None and existing.holder == self.holder:
            self.path.unlink(missing_ok=True)
            logger.info("scope_lock_released key=%s holder=%s", self.key, self.holder)
        self._record = None

    def __enter__(self) -> ScopeLock:
        self.acquire()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()
