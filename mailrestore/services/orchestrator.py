from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from pathlib import Path
from typing import Callable, Iterator, Protocol

import redis
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import NullPool

from mailrestore.core.config import (
    MailcowConf,
    Settings,
    get_settings,
    live_database_url,
    live_redis_url,
    load_mailcow_conf,
    resolve_sql_image,
)
from mailrestore.core.errors import (
    ApplyError,
    ConfigurationError,
    FileTreeWarning,
    RestoreCancelled,
    RestoreWarning,
    RuntimeUnavailableError,
    ScopeNotFoundError,
    SecretMismatchError,
    SecretWarning,
    StagingError,
)
from mailrestore.domain.scope import Scope
from mailrestore.services.applier import ConfirmationGate, LiveApplier, ValidationReport
from mailrestore.services.archive import ASSET_CRYPT, ASSET_REDIS, ASSET_VMAIL, ArchiveInfo, BackupBundle, validate_bundle
from mailrestore.services.extraction import ExtractionResult, extract_scope, flavor_for
from mailrestore.services.filetree import FileTreeOutcome, FileTreeRestorer
from mailrestore.services.locks import LivenessCheck, ScopeLock, process_alive
from mailrestore.services.runtime import ContainerRuntime, get_runtime
from mailrestore.services.secrets import (
    CRYPT_ABSENT,
    CryptComparison,
    DkimMaterial,
    compare_crypt_keys,
    read_backup_dkim,
    restore_crypt_keys,
    restore_dkim,
)
from mailrestore.services.staging import StagedDatabase, StagedRedis


logger = logging.getLogger(__name__)

CONFIRM_LITERAL = "restore"

Reporter = Callable[[str], None]


class Confirmer(Protocol):
    # Operator prompts; the CLI answers from stdin, tests answer from a script.
    def confirm(self, prompt: str) -> bool:
        ...

    def confirm_typed(self, prompt: str, literal: str) -> bool:
        ...


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _log_report(message: str) -> None:
    logger.info("progress message=%s", message)


@dataclass(frozen=True)
class RestoreOptions:
    force: bool = False
    confirm: bool = False
    force_mailcrypt: bool = False


@dataclass
class RestoreSummary:
    """Everything the operator needs to know after a restore finished."""

    scope: Scope
    statements: int = 0
    counts: dict[str, int] = field(default_factory=dict)
    report: ValidationReport | None = None
    snapshot_path: Path | None = None
    rollback_command: str | None = None
    dkim_selector: str | None = None
    dkim_restored: bool = False
    dkim_backup_path: Path | None = None
    crypt_outcome: str = CRYPT_ABSENT
    crypt_restored: bool = False
    crypt_backup_path: Path | None = None
    filetree: FileTreeOutcome | None = None
    refreshed: list[str] = field(default_factory=list)
    warnings: list[RestoreWarning] = field(default_factory=list)


class RestoreOrchestrator:
    """Runs one scoped restore from a native mailcow backup into the live server."""

    def __init__(
        self,
        location: Path,
        scope: Scope,
        options: RestoreOptions,
        *,
        confirmer: Confirmer,
        reporter: Reporter = _log_report,
        settings: Settings | None = None,
        runtime: ContainerRuntime | None = None,
        clock: Callable[[], datetime] = _utc_now,
        liveness: LivenessCheck = process_alive,
    ) -> None:
        self.location = location
        self.scope = scope
        self.options = options
        self.confirmer = confirmer
        self.report = reporter
        self.settings = settings or get_settings()
        self._runtime = runtime
        self.clock = clock
        self.liveness = liveness
        self._live_conf: MailcowConf | None = None
        self._live_engine: Engine | None = None
        self._live_redis: redis.Redis | None = None

    @property
    def runtime(self) -> ContainerRuntime:
        if self._runtime is None:
            self._runtime = get_runtime()
        return self._runtime

    @property
    def live_conf(self) -> MailcowConf:
        if self._live_conf is None:
            self._live_conf = load_mailcow_conf(self.settings.live_conf_path)
        return self._live_conf

    @property
    def sql_image(self) -> str:
        return resolve_sql_image(self.settings)

    @property
    def prebackup_dir(self) -> Path:
        return Path(self.settings.prebackup_dir)

    def volume_name(self, suffix: str) -> str:
        project = self.live_conf.project_name
        if not project:
            raise ConfigurationError(
                "COMPOSE_PROJECT_NAME is not set in the live mailcow.conf",
                remediation=f"Check {self.settings.live_conf_path}; mailcow volumes are named <project>_{suffix}.",
            )
        return f"{project}_{suffix}"

    def connect_live_database(self) -> Engine:
        if self._live_engine is None:
            url = live_database_url(self.settings, self.live_conf)
            self._live_engine = create_engine(url, poolclass=NullPool)
        return self._live_engine

    def connect_live_redis(self) -> redis.Redis:
        if self._live_redis is None:
            self._live_redis = redis.Redis.from_url(
                live_redis_url(self.settings, self.live_conf), decode_responses=True
            )
        return self._live_redis

    @contextmanager
    def stage_database(self, bundle: BackupBundle) -> Iterator[Engine]:
        staged = StagedDatabase(
            bundle.location,
            bundle.sql_asset,
            dbname=bundle.dbname,
            runtime=self.runtime,
            image=self.sql_image,
            settings=self.settings,
        )
        with staged:
            yield staged.engine

    @contextmanager
    def stage_redis(self, bundle: BackupBundle, asset: ArchiveInfo) -> Iterator[redis.Redis]:
        staged = StagedRedis(
            bundle.location,
            asset,
            runtime=self.runtime,
            image=self.sql_image,
            settings=self.settings,
        )
        with staged:
            yield staged.client

    def run(self) -> RestoreSummary:
        bundle = validate_bundle(self.location)
        self.report(f"Backup: {bundle.location} (database {bundle.dbname}, {bundle.sql_asset.describe()})")
        lock = ScopeLock(self.scope.lock_key, lock_dir=Path(self.settings.lock_dir), liveness=self.liveness)
        with lock:
            try:
                return self._run_locked(bundle)
            finally:
                self.close()

    def close(self) -> None:
        if self._live_engine is not None:
            self._live_engine.dispose()
            self._live_engine = None
        if self._live_redis is not None:
            self._live_redis.close()
            self._live_redis = None

    def _run_locked(self, bundle: BackupBundle) -> RestoreSummary:
        summary = RestoreSummary(scope=self.scope)
        engine = self.connect_live_database()
        applier = LiveApplier(engine, self.scope, snapshot_dir=self.prebackup_dir, clock=self.clock)
        if self.scope.is_mailbox:
            self._require_live_domain(applier)

        self.report(f"Staging database from {bundle.sql_asset.describe()}")
        with self.stage_database(bundle) as staged_engine:
            extraction = extract_scope(staged_engine, self.scope, flavor=flavor_for(engine))
        summary.statements = len(extraction.statements)
        summary.counts = {name: count for name, count in extraction.counts.items() if count}
        self.report(f"Extracted {summary.statements} statements for {self.scope.label} {self.scope}")

        dkim = None if self.scope.is_mailbox else self._read_dkim(bundle, summary)
        summary.dkim_selector = dkim.selector if dkim else None

        applier.check(force=self.options.force)
        summary.snapshot_path = applier.snapshot()
        if summary.snapshot_path is not None:
            self.report(f"Pre-restore snapshot: {summary.snapshot_path}")

        vmail = bundle.asset(ASSET_VMAIL)
        # Resolved before any live write so a bad mailcow.conf fails early.
        vmail_volume = self.volume_name(self.settings.vmail_volume_suffix) if vmail.present else None
        comparison = self._compare_crypt(bundle)
        summary.crypt_outcome = comparison.outcome
        warning = comparison.warning()
        if warning is not None:
            summary.warnings.append(warning)

        self._report_plan(extraction, vmail, dkim, comparison)
        gate = self._confirm(comparison)

        applier.apply(extraction.statements, gate)
        summary.warnings.extend(applier.fixups(self.settings.sogo_placeholder_password))
        summary.rollback_command = applier.rollback_command()
        summary.report = applier.validate()
        self.report(f"Database restore of {self.scope} committed")

        if vmail.present:
            summary.filetree = self._restore_file_tree(bundle, vmail, vmail_volume)
            summary.warnings.extend(summary.filetree.warnings)
        else:
            summary.warnings.append(FileTreeWarning("no vmail backup found; mail files not restored"))
        if dkim is not None:
            self._restore_dkim(dkim, summary)
        if comparison.restore_planned:
            self._restore_crypt(bundle, comparison, summary)
        self._refresh_services(summary)
        logger.info(
            "restore_complete scope=%s statements=%s warnings=%s",
            self.scope.identifier,
            summary.statements,
            len(summary.warnings),
        )
        return summary

    def _require_live_domain(self, applier: LiveApplier) -> None:
        try:
            present = applier.domain_exists(self.scope.domain)
        except SQLAlchemyError as exc:
            raise ApplyError(
                f"cannot query live database: {exc}",
                remediation="Check that mysql-mailcow is running and the live credentials are valid.",
            ) from exc
        if not present:
            raise ScopeNotFoundError(
                f"domain {self.scope.domain} does not exist on the live server",
                remediation=f"Create or restore the domain {self.scope.domain} before restoring its mailboxes.",
            )

    def _read_dkim(self, bundle: BackupBundle, summary: RestoreSummary) -> DkimMaterial | None:
        # DKIM is optional: any failure here only means the key needs manual setup.
        asset = bundle.asset(ASSET_REDIS)
        if not asset.present:
            summary.warnings.append(SecretWarning("no redis backup found; DKIM key will need manual setup"))
            return None
        try:
            with self.stage_redis(bundle, asset) as client:
                return read_backup_dkim(client, self.scope.domain)
        except (StagingError, redis.RedisError) as exc:
            summary.warnings.append(SecretWarning(f"could not read DKIM keys from backup redis: {exc}"))
            return None

    def _compare_crypt(self, bundle: BackupBundle) -> CryptComparison:
        asset = bundle.asset(ASSET_CRYPT)
        if not asset.present:
            return CryptComparison(outcome=CRYPT_ABSENT)
        return compare_crypt_keys(
            self.runtime,
            bundle.location,
            asset,
            volume=self.volume_name(self.settings.crypt_volume_suffix),
            image=self.sql_image,
        )

    def _report_plan(
        self,
        extraction: ExtractionResult,
        vmail: ArchiveInfo,
        dkim: DkimMaterial | None,
        comparison: CryptComparison,
    ) -> None:
        self.report(f"Restore plan for {self.scope.label} {self.scope}:")
        for table, count in sorted(extraction.counts.items()):
            if count:
                self.report(f"  - {table}: {count} row(s)")
        self.report(f"  - mail files: {'yes' if vmail.present else 'not in backup'}")
        if not self.scope.is_mailbox:
            self.report(f"  - DKIM key: {dkim.selector if dkim else 'not in backup'}")
        self.report(f"  - mail_crypt keys: {comparison.outcome}")

    def _confirm(self, comparison: CryptComparison) -> ConfirmationGate:
        """Collect operator consent; every gate must be open before the live transaction."""
        gate = ConfirmationGate(secret_mismatch_cleared=not comparison.requires_override)
        if comparison.requires_override:
            if self.options.force_mailcrypt:
                self.report("Skipping mail_crypt mismatch prompt (--forcemailcrypt)")
            elif not self.confirmer.confirm(
                "mail_crypt keys differ between backup and live; restored mail may be unreadable. "
                "Continue and restore the backup keys?"
            ):
                raise SecretMismatchError(
                    "restore cancelled due to mail_crypt key mismatch",
                    remediation="Compare the keys manually, or rerun with --forcemailcrypt to restore the backup keys.",
                )
            gate.secret_mismatch_cleared = True
        if self.options.confirm:
            gate.soft_confirmed = True
            gate.typed_confirmed = True
            return gate
        if not self.confirmer.confirm(f"Restore {self.scope.label} {self.scope} into the live server?"):
            raise RestoreCancelled("restore cancelled", remediation="Nothing was changed on the live server.")
        gate.soft_confirmed = True
        if not self.confirmer.confirm_typed(
            f"This overwrites live data for {self.scope}. Type '{CONFIRM_LITERAL}' to continue", CONFIRM_LITERAL
        ):
            raise RestoreCancelled("restore cancelled", remediation="Nothing was changed on the live server.")
        gate.typed_confirmed = True
        return gate

    def _restore_file_tree(self, bundle: BackupBundle, vmail: ArchiveInfo, volume: str) -> FileTreeOutcome:
        self.report(f"Restoring mail files for {self.scope} (dovecot is stopped during extraction)")
        restorer = FileTreeRestorer(
            self.runtime,
            location=bundle.location,
            asset=vmail,
            volume=volume,
            image=self.sql_image,
            dovecot=self.settings.dovecot_container,
        )
        return restorer.restore(self.scope)

    def _restore_dkim(self, dkim: DkimMaterial, summary: RestoreSummary) -> None:
        result = restore_dkim(
            self.connect_live_redis(),
            dkim,
            backup_dir=self.prebackup_dir,
            timestamp=self.clock().strftime("%Y%m%d_%H%M%S"),
        )
        summary.dkim_restored = result.restored
        summary.dkim_backup_path = result.backup_path
        summary.warnings.extend(result.warnings)

    def _restore_crypt(self, bundle: BackupBundle, comparison: CryptComparison, summary: RestoreSummary) -> None:
        self.report("Restoring mail_crypt keys from backup")
        timestamp = self.clock().strftime("%Y%m%d_%H%M%S")
        result = restore_crypt_keys(
            self.runtime,
            bundle.location,
            bundle.asset(ASSET_CRYPT),
            comparison,
            volume=self.volume_name(self.settings.crypt_volume_suffix),
            image=self.sql_image,
            backup_path=self.prebackup_dir / f"{self.scope.identifier}_crypt_{timestamp}",
            dovecot=self.settings.dovecot_container,
            owner_uid=self.settings.crypt_owner_uid,
        )
        summary.crypt_restored = result.restored
        summary.crypt_backup_path = result.backup_path
        summary.warnings.extend(result.warnings)

    def _refresh_services(self, summary: RestoreSummary) -> None:
        # Restart cache-holding services so restored entities become visible.
        for name in self.settings.refresh_containers:
            try:
                if self.runtime.restart_service(name):
                    summary.refreshed.append(name)
            except RuntimeUnavailableError as exc:
                summary.warnings.append(RestoreWarning(f"could not restart {name}: {exc}"))
