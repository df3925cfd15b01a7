from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
import re
from urllib.parse import quote

from dotenv import dotenv_values
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.engine import URL

from mailrestore.core.errors import ConfigurationError


# Fallback image when the live compose file does not pin a SQL image.
DEFAULT_SQL_IMAGE = "mariadb:10.11"

_SQL_IMAGE_PATTERN = re.compile(r"(mysql|mariadb):\S+", re.IGNORECASE)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    app_name: str = "mailrestore"
    log_level: str = "INFO"

    # Root of the live mailcow-dockerized checkout (mailcow.conf, docker-compose.yml).
    mailcow_dir: str = "/opt/mailcow-dockerized"
    # Explicit live database URL; derived from the live mailcow.conf when unset.
    live_database_url: str | None = None
    # Explicit live redis URL; derived from the live mailcow.conf when unset.
    live_redis_url: str | None = None
    # Pin the staging SQL image instead of reading it from docker-compose.yml.
    sql_image: str | None = None
    # Image used to serve the backup redis dump for DKIM lookups.
    redis_image: str = "redis:7-alpine"
    # Parent directory for per-run staging work directories (system temp when unset).
    work_dir: str | None = None
    # Lock files live here so concurrent restores of one domain exclude each other.
    lock_dir: str = "/tmp"
    # Pre-restore snapshots and secret backups land here; never auto-applied.
    prebackup_dir: str = "./rundata/backups/domain_restores"
    # Bound the staged instance readiness poll so a broken backup fails closed.
    staging_ready_timeout_s: float = 60.0
    # Poll cadence while waiting for the staged instance socket.
    staging_poll_interval_s: float = 0.5
    # Memory handed to the crash-recovery prepare pass.
    staging_prepare_memory: str = "512M"
    # Lines of staged process log surfaced on staging failures.
    staging_log_tail_lines: int = 40
    # Container name filters for live mailcow services.
    mysql_container: str = "mysql-mailcow"
    redis_container: str = "redis-mailcow"
    dovecot_container: str = "dovecot-mailcow"
    # Services restarted after a restore so caches pick up restored entities.
    refresh_containers: list[str] = ["sogo-mailcow", "memcached-mailcow", "php-fpm-mailcow"]
    # Volume suffixes appended to the compose project name.
    vmail_volume_suffix: str = "vmail-vol-1"
    crypt_volume_suffix: str = "crypt-vol-1"
    # Dovecot runs mail_crypt as uid 401 inside its container.
    crypt_owner_uid: int = 401
    # SOGo authenticates through dovecot; the static view only needs a non-empty hash.
    sogo_placeholder_password: str = "{SSHA256}dummy_placeholder_not_used_for_auth"

    @property
    def compose_file(self) -> Path:
        return Path(self.mailcow_dir) / "docker-compose.yml"

    @property
    def live_conf_path(self) -> Path:
        return Path(self.mailcow_dir) / "mailcow.conf"


@lru_cache
def get_settings() -> Settings:
    return Settings()


@dataclass(frozen=True)
class MailcowConf:
    # Parsed view over a mailcow.conf file (live or bundled with a backup).
    values: dict[str, str]

    @property
    def dbname(self) -> str | None:
        return self.values.get("DBNAME") or None

    @property
    def dbuser(self) -> str | None:
        return self.values.get("DBUSER") or None

    @property
    def dbpass(self) -> str | None:
        return self.values.get("DBPASS") or None

    @property
    def redis_pass(self) -> str | None:
        return self.values.get("REDISPASS") or None

    @property
    def project_name(self) -> str | None:
        raw = self.values.get("COMPOSE_PROJECT_NAME") or ""
        # Mirror the compose naming rules used for volume names.
        cleaned = re.sub(r"[^0-9A-Za-z_-]", "", raw)
        return cleaned or None

    def sql_endpoint(self) -> tuple[str, int]:
        return _split_endpoint(self.values.get("SQL_PORT") or "127.0.0.1:13306", "127.0.0.1")

    def redis_endpoint(self) -> tuple[str, int]:
        return _split_endpoint(self.values.get("REDIS_PORT") or "127.0.0.1:7654", "127.0.0.1")


def _split_endpoint(raw: str, default_host: str) -> tuple[str, int]:
    # Accept both "port" and "host:port" forms used across mailcow releases.
    host, _, port = raw.rpartition(":")
    try:
        return (host or default_host, int(port))
    except ValueError as exc:
        raise ConfigurationError(
            f"invalid port value {raw!r} in mailcow.conf",
            remediation="Set SQL_PORT/REDIS_PORT to host:port or a bare port number.",
        ) from exc


def load_mailcow_conf(path: Path) -> MailcowConf:
    # Parse shell-style KEY=value files without sourcing them.
    if not path.is_file():
        raise ConfigurationError(
            f"mailcow.conf not found at {path}",
            remediation="Point to a mailcow-dockerized checkout or a native mailcow backup directory.",
        )
    parsed = dotenv_values(path)
    return MailcowConf(values={key: value for key, value in parsed.items() if value is not None})


def resolve_sql_image(settings: Settings) -> str:
    # Stage with the same SQL image the live stack runs so datadirs stay compatible.
    if settings.sql_image:
        return settings.sql_image
    try:
        compose = settings.compose_file.read_text(encoding="utf-8")
    except OSError:
        return DEFAULT_SQL_IMAGE
    match = _SQL_IMAGE_PATTERN.search(compose)
    if match is None:
        return DEFAULT_SQL_IMAGE
    return match.group(0).strip("'\"")


def live_database_url(settings: Settings, conf: MailcowConf) -> str:
    # Build the live SQLAlchemy URL from mailcow.conf unless explicitly overridden.
    if settings.live_database_url:
        return settings.live_database_url
    if not (conf.dbuser and conf.dbpass and conf.dbname):
        raise ConfigurationError(
            "live mailcow.conf lacks DBUSER/DBPASS/DBNAME",
            remediation="Check the live mailcow.conf or set LIVE_DATABASE_URL.",
        )
    host, port = conf.sql_endpoint()
    url = URL.create(
        "mysql+pymysql",
        username=conf.dbuser,
        password=conf.dbpass,
        host=host,
        port=port,
        database=conf.dbname,
    )
    return url.render_as_string(hide_password=False)


def live_redis_url(settings: Settings, conf: MailcowConf) -> str:
    # Build the live redis URL from mailcow.conf unless explicitly overridden.
    if settings.live_redis_url:
        return settings.live_redis_url
    host, port = conf.redis_endpoint()
    auth = f":{quote(conf.redis_pass, safe='')}@" if conf.redis_pass else ""
    return f"redis://{auth}{host}:{port}/0"
