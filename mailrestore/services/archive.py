from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path
from typing import Literal

from mailrestore.core.config import MailcowConf, load_mailcow_conf
from mailrestore.core.errors import ConfigurationError


logger = logging.getLogger(__name__)

ArchiveFormat = Literal["directory", "tar.zst", "tar.gz"]

ASSET_SQL = "backup_mariadb"
ASSET_REDIS = "backup_redis"
ASSET_CRYPT = "backup_crypt"
ASSET_VMAIL = "backup_vmail"
SQL_DIRECTORY = "mysql"
MANIFEST_FILENAME = "mailcow.conf"

# Preference order when more than one representation is present.
_ARCHIVE_FORMATS: tuple[tuple[str, ArchiveFormat, str], ...] = (
    (".tar.zst", "tar.zst", "zstd -d"),
    (".tar.gz", "tar.gz", "pigz -d"),
)
# mailcow writes the SQL archive with plain gzip framing.
_DECOMPRESS_OVERRIDES: dict[tuple[str, ArchiveFormat], str] = {
    (ASSET_SQL, "tar.gz"): "gzip -d",
}


@dataclass(frozen=True)
class ArchiveInfo:
    # Resolution of one named backup asset; absent is a soft-skip signal.
    name: str
    present: bool
    filename: str | None = None
    format: ArchiveFormat | None = None
    decompress_cmd: str | None = None

    @property
    def is_directory(self) -> bool:
        return self.format == "directory"

    def describe(self) -> str:
        if not self.present:
            return f"{self.name}: absent"
        return f"{self.name}: {self.filename} ({self.format})"


@dataclass(frozen=True)
class BackupBundle:
    # Read-only view of a native mailcow backup directory.
    location: Path
    manifest: MailcowConf
    sql_asset: ArchiveInfo

    @property
    def dbname(self) -> str:
        # validate_bundle guarantees DBNAME is present.
        return self.manifest.dbname or ""

    def asset(self, name: str) -> ArchiveInfo:
        return resolve_archive(self.location, name)


def resolve_archive(location: Path, name: str, *, directory_name: str | None = None) -> ArchiveInfo:
    # Locate a named asset as a directory or a supported compressed archive.
    if directory_name is not None and (location / directory_name).is_dir():
        return ArchiveInfo(name=name, present=True, filename=directory_name, format="directory")
    for suffix, archive_format, decompress in _ARCHIVE_FORMATS:
        candidate = location / f"{name}{suffix}"
        if candidate.is_file():
            return ArchiveInfo(
                name=name,
                present=True,
                filename=candidate.name,
                format=archive_format,
                decompress_cmd=_DECOMPRESS_OVERRIDES.get((name, archive_format), decompress),
            )
    return ArchiveInfo(name=name, present=False)


def _is_borg_repository(location: Path) -> bool:
    return (location / "config").is_file() and (location / "data").is_dir()


def validate_bundle(location: Path) -> BackupBundle:
    # Reject unusable backups before any container is started.
    if not location.is_dir():
        raise ConfigurationError(
            f"backup location does not exist: {location}",
            remediation="Pass the directory of a native mailcow backup (mailcow-YYYY-MM-DD-HH-MM-SS).",
        )
    if _is_borg_repository(location):
        raise ConfigurationError(
            f"{location} appears to be a Borg backup repository",
            remediation="Extract the archive with borg first, or use a backup created by backup_and_restore.sh.",
        )
    manifest_path = location / MANIFEST_FILENAME
    if not manifest_path.is_file():
        raise ConfigurationError(
            f"no {MANIFEST_FILENAME} found in {location}",
            remediation="Check that the path points at a complete native mailcow backup.",
        )
    manifest = load_mailcow_conf(manifest_path)
    if not manifest.dbname:
        raise ConfigurationError(
            f"{manifest_path} is missing DBNAME",
            remediation="The backup's mailcow.conf must carry the database configuration (DBNAME=...).",
        )
    sql_asset = resolve_archive(location, ASSET_SQL, directory_name=SQL_DIRECTORY)
    if not sql_asset.present:
        raise ConfigurationError(
            f"no MySQL/MariaDB backup found in {location}",
            remediation=f"Expected a {SQL_DIRECTORY}/ directory or {ASSET_SQL}.tar.zst/.tar.gz.",
        )
    logger.info("backup_bundle_valid location=%s sql_asset=%s", location, sql_asset.filename)
    return BackupBundle(location=location, manifest=manifest, sql_asset=sql_asset)
