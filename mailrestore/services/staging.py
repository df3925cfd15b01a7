from __future__ import annotations

import logging
import os
from pathlib import Path
import shlex
import shutil
import tempfile
import time
from typing import Callable
from uuid import uuid4

import redis
from sqlalchemy import create_engine, text
from sqlalchemy.engine import URL, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import NullPool

from mailrestore.core.config import Settings, get_settings
from mailrestore.core.errors import RestoreError, StagingError
from mailrestore.services.archive import ArchiveInfo
from mailrestore.services.runtime import ContainerRuntime, Mount


logger = logging.getLogger(__name__)

STAGING_STATE_PENDING = "pending"
STAGING_STATE_MATERIALIZING = "materializing"
STAGING_STATE_STARTING = "starting"
STAGING_STATE_READY = "ready"
STAGING_STATE_FAILED = "failed"
STAGING_STATE_TORN_DOWN = "torn_down"

# Mount points inside staging containers.
BACKUP_MOUNT = "/backup"
DATA_MOUNT = "/staging"
SOCKET_MOUNT = "/run/staging"


def _state_transition_allowed(current: str, target: str) -> bool:
    # Any live state may fail or be torn down; forward progress is strictly ordered.
    allowed: dict[str, set[str]] = {
        STAGING_STATE_PENDING: {STAGING_STATE_MATERIALIZING, STAGING_STATE_TORN_DOWN},
        STAGING_STATE_MATERIALIZING: {STAGING_STATE_STARTING, STAGING_STATE_FAILED, STAGING_STATE_TORN_DOWN},
        STAGING_STATE_STARTING: {STAGING_STATE_READY, STAGING_STATE_FAILED, STAGING_STATE_TORN_DOWN},
        STAGING_STATE_READY: {STAGING_STATE_TORN_DOWN, STAGING_STATE_FAILED},
        STAGING_STATE_FAILED: {STAGING_STATE_TORN_DOWN},
    }
    return target in allowed.get(current, set())


class StagedInstance:
    """Throwaway, network-less store populated from a backup asset.

    The instance is a guard: entering starts it, leaving always tears down the
    container, the data volume and the host work directory, whatever happened
    in between. Subclasses supply the store-specific recipe.
    """

    kind = "instance"
    socket_name = "staging.sock"

    def __init__(
        self,
        location: Path,
        asset: ArchiveInfo,
        *,
        runtime: ContainerRuntime,
        image: str,
        settings: Settings | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.location = location
        self.asset = asset
        self.runtime = runtime
        self.image = image
        self.settings = settings or get_settings()
        self._sleep = sleep
        self._clock = clock
        self.state = STAGING_STATE_PENDING
        self.history: list[str] = [STAGING_STATE_PENDING]
        self.token = uuid4().hex[:12]
        self.work_dir: Path | None = None
        self.volume: str | None = None
        self.container_id: str | None = None

    @property
    def socket_dir(self) -> Path:
        if self.work_dir is None:
            raise StagingError(f"staged {self.kind} has no work directory")
        return self.work_dir / "sock"

    @property
    def socket_path(self) -> Path:
        return self.socket_dir / self.socket_name

    def _transition(self, target: str) -> None:
        if not _state_transition_allowed(self.state, target):
            raise RuntimeError(f"invalid staging transition {self.state} -> {target}")
        self.state = target
        self.history.append(target)
        logger.info("staging_state kind=%s token=%s state=%s", self.kind, self.token, target)

    def __enter__(self) -> StagedInstance:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.teardown()

    def start(self) -> None:
        # materializing -> starting -> ready, failing closed on any error.
        if not self.asset.present:
            self._transition(STAGING_STATE_TORN_DOWN)
            raise StagingError(
                f"{self.asset.name} is not present in {self.location}",
                remediation="Check the backup location; the asset is required for this step.",
            )
        try:
            self._transition(STAGING_STATE_MATERIALIZING)
            self._create_work_dir()
            self.volume = self.runtime.create_volume(f"mailrestore-{self.kind}-{self.token}")
            self._run_step("materialize", self.materialize_script())
            prepare = self.prepare_script()
            if prepare:
                self._run_step("prepare", prepare)
            self._transition(STAGING_STATE_STARTING)
            self.container_id = self.runtime.start_detached(
                self.start_image(),
                self.start_command(),
                name=f"mailrestore-{self.kind}-{self.token}",
                mounts=[
                    Mount(self.volume, DATA_MOUNT, read_only=False),
                    Mount(str(self.socket_dir), SOCKET_MOUNT, read_only=False),
                ],
            )
            self._wait_ready()
            self.verify()
            self._transition(STAGING_STATE_READY)
        except StagingError:
            self._fail_and_teardown()
            raise
        except RestoreError as exc:
            self._fail_and_teardown()
            raise StagingError(str(exc), remediation=exc.remediation) from exc
        except BaseException:
            self._fail_and_teardown()
            raise

    def _create_work_dir(self) -> None:
        parent = self.settings.work_dir
        if parent:
            Path(parent).mkdir(parents=True, exist_ok=True)
        self.work_dir = Path(tempfile.mkdtemp(prefix=f"mailrestore-{self.kind}-", dir=parent))
        self.socket_dir.mkdir()
        # The store drops privileges inside the container and must create its socket here.
        os.chmod(self.socket_dir, 0o777)

    def _run_step(self, step: str, script: str) -> None:
        result = self.runtime.run_helper(
            self.image,
            script,
            mounts=[
                Mount(str(self.location), BACKUP_MOUNT, read_only=True),
                Mount(self.volume or "", DATA_MOUNT, read_only=False),
            ],
        )
        if not result.ok:
            raise StagingError(
                f"staging {step} of {self.asset.name} failed (exit {result.exit_code})",
                remediation="Check that the backup archive is complete and readable.",
                log_tail=_tail(result.stderr or result.stdout, self.settings.staging_log_tail_lines),
            )
        logger.info("staging_step_done kind=%s step=%s", self.kind, step)

    def _log_tail(self) -> str:
        if self.container_id is None:
            return ""
        return self.runtime.logs(self.container_id, tail=self.settings.staging_log_tail_lines)

    def _wait_ready(self) -> None:
        # Poll until the socket answers, the process dies, or the deadline passes.
        deadline = self._clock() + self.settings.staging_ready_timeout_s
        attempts = 0
        while True:
            attempts += 1
            if self.socket_path.exists() and self.probe():
                logger.info("staging_ready kind=%s attempts=%s", self.kind, attempts)
                return
            if self.container_id is not None and not self.runtime.is_running(self.container_id):
                raise StagingError(
                    f"staged {self.kind} exited before becoming ready",
                    remediation="The backup data may be corrupt or from an incompatible server version.",
                    log_tail=self._log_tail(),
                )
            if self._clock() >= deadline:
                raise StagingError(
                    f"staged {self.kind} not ready after {self.settings.staging_ready_timeout_s:g}s",
                    remediation="Raise STAGING_READY_TIMEOUT_S for large backups or inspect the log below.",
                    log_tail=self._log_tail(),
                )
            self._sleep(self.settings.staging_poll_interval_s)

    def _fail_and_teardown(self) -> None:
        if _state_transition_allowed(self.state, STAGING_STATE_FAILED):
            self._transition(STAGING_STATE_FAILED)
        self.teardown()

    def close_clients(self) -> None:
        return None

    def teardown(self) -> None:
        # Every resource is released independently so one failure cannot leak the rest.
        if self.state == STAGING_STATE_TORN_DOWN:
            return
        self.close_clients()
        if self.container_id is not None:
            try:
                self.runtime.remove(self.container_id)
            except RestoreError as exc:
                logger.warning("staging_container_leak id=%s error=%s", self.container_id, exc)
            self.container_id = None
        if self.volume is not None:
            try:
                self.runtime.remove_volume(self.volume)
            except RestoreError as exc:
                logger.warning("staging_volume_leak name=%s error=%s", self.volume, exc)
            self.volume = None
        if self.work_dir is not None:
            shutil.rmtree(self.work_dir, ignore_errors=True)
            self.work_dir = None
        self._transition(STAGING_STATE_TORN_DOWN)

    def start_image(self) -> str:
        return self.image

    def materialize_script(self) -> str:
        raise NotImplementedError

    def prepare_script(self) -> str | None:
        return None

    def start_command(self) -> list[str]:
        raise NotImplementedError

    def probe(self) -> bool:
        raise NotImplementedError

    def verify(self) -> None:
        return None


class StagedDatabase(StagedInstance):
    """MariaDB started from a mariabackup datadir, reachable only by unix socket."""

    kind = "mariadb"
    socket_name = "mysqld.sock"

    def __init__(self, location: Path, asset: ArchiveInfo, *, dbname: str, **kwargs) -> None:
        super().__init__(location, asset, **kwargs)
        self.dbname = dbname
        self._engine: Engine | None = None

    def materialize_script(self) -> str:
        # Directory backups are copied, archives streamed through the matching decompressor.
        if self.asset.is_directory:
            source = shlex.quote(f"{BACKUP_MOUNT}/{self.asset.filename}/.")
            return f"set -euo pipefail; cp -a {source} {DATA_MOUNT}/"
        archive = shlex.quote(f"{BACKUP_MOUNT}/{self.asset.filename}")
        return (
            f"set -euo pipefail; cd {DATA_MOUNT}; "
            f"{self.asset.decompress_cmd} < {archive} | tar -xf - --strip-components=1"
        )

    def prepare_script(self) -> str:
        # --prepare is idempotent on consistent data and may fail harmlessly on plain datadirs.
        memory = shlex.quote(self.settings.staging_prepare_memory)
        return (
            f"mariabackup --prepare --target-dir={DATA_MOUNT} --use-memory={memory} >/dev/null 2>&1 || true; "
            f"chown -R mysql:mysql {DATA_MOUNT}"
        )

    def start_command(self) -> list[str]:
        return [
            "mysqld",
            "--user=mysql",
            f"--datadir={DATA_MOUNT}",
            f"--socket={SOCKET_MOUNT}/{self.socket_name}",
            "--skip-grant-tables",
            "--skip-networking",
            "--innodb-force-recovery=1",
        ]

    @property
    def url(self) -> URL:
        return URL.create(
            "mysql+pymysql",
            username="root",
            host="localhost",
            database=self.dbname,
            query={"unix_socket": str(self.socket_path), "charset": "utf8mb4"},
        )

    @property
    def engine(self) -> Engine:
        if self.state != STAGING_STATE_READY:
            raise StagingError(f"staged {self.kind} is not running (state {self.state})")
        if self._engine is None:
            self._engine = create_engine(self.url, poolclass=NullPool)
        return self._engine

    def _server_engine(self) -> Engine:
        return create_engine(self.url.set(database=None), poolclass=NullPool)

    def probe(self) -> bool:
        engine = self._server_engine()
        try:
            with engine.connect() as connection:
                connection.execute(text("SELECT 1"))
        except SQLAlchemyError:
            return False
        finally:
            engine.dispose()
        return True

    def verify(self) -> None:
        # The manifest's database must exist inside the staged datadir.
        engine = self._server_engine()
        try:
            with engine.connect() as connection:
                found = connection.execute(text("SHOW DATABASES LIKE :name"), {"name": self.dbname}).first()
                available = [] if found else list(connection.execute(text("SHOW DATABASES")).scalars())
        except SQLAlchemyError as exc:
            raise StagingError(f"staged database unreachable: {exc}", log_tail=self._log_tail()) from exc
        finally:
            engine.dispose()
        if not found:
            raise StagingError(
                f"database {self.dbname!r} not found in backup",
                remediation="Available databases: " + (", ".join(available) or "none"),
                log_tail=self._log_tail(),
            )

    def close_clients(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None


class StagedRedis(StagedInstance):
    """Redis serving a backup dump.rdb on a unix socket with TCP disabled."""

    kind = "redis"
    socket_name = "redis.sock"

    def __init__(self, location: Path, asset: ArchiveInfo, **kwargs) -> None:
        super().__init__(location, asset, **kwargs)
        self._client: redis.Redis | None = None

    def start_image(self) -> str:
        return self.settings.redis_image

    def materialize_script(self) -> str:
        archive = shlex.quote(f"{BACKUP_MOUNT}/{self.asset.filename}")
        return (
            "set -euo pipefail; mkdir -p /extract; cd /extract; "
            f"{self.asset.decompress_cmd} < {archive} | tar -xf -; "
            'dump=$(find /extract -name dump.rdb -type f | head -1); '
            'if [ -z "$dump" ]; then echo "no dump.rdb in redis backup" >&2; exit 1; fi; '
            f'cp "$dump" {DATA_MOUNT}/dump.rdb; chmod 644 {DATA_MOUNT}/dump.rdb'
        )

    def start_command(self) -> list[str]:
        return [
            "redis-server",
            "--dir",
            DATA_MOUNT,
            "--dbfilename",
            "dump.rdb",
            "--port",
            "0",
            "--unixsocket",
            f"{SOCKET_MOUNT}/{self.socket_name}",
            "--unixsocketperm",
            "777",
            "--save",
            "",
            "--appendonly",
            "no",
        ]

    @property
    def client(self) -> redis.Redis:
        if self.state != STAGING_STATE_READY:
            raise StagingError(f"staged {self.kind} is not running (state {self.state})")
        if self._client is None:
            self._client = redis.Redis(unix_socket_path=str(self.socket_path), decode_responses=True)
        return self._client

    def probe(self) -> bool:
        # PING fails with BusyLoadingError until the dump is fully loaded.
        probe_client = redis.Redis(unix_socket_path=str(self.socket_path), decode_responses=True)
        try:
            return bool(probe_client.ping())
        except redis.RedisError:
            return False
        finally:
            probe_client.close()

    def close_clients(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None


def _tail(output: str, lines: int) -> str:
    return "\n".join(output.strip().splitlines()[-lines:])
