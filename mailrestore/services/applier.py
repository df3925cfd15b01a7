from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
import os
from pathlib import Path
import tempfile
from typing import Callable, Sequence

from sqlalchemy import select
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import DBAPIError, SQLAlchemyError

from mailrestore.core.config import get_settings
from mailrestore.core.errors import (
    ApplyError,
    ExtractionError,
    FixupWarning,
    LiveConflictError,
    RestoreCancelled,
    ValidationError,
)
from mailrestore.domain import schema
from mailrestore.domain.scope import Scope
from mailrestore.services.extraction import (
    Flavor,
    Match,
    count_rows,
    flavor_for,
    primary_filter,
    primary_table,
    quote_identifier,
    quote_literal,
    render_plans,
    snapshot_plans_for,
    statements_text,
)


logger = logging.getLogger(__name__)

APPLY_STATE_CHECKING = "checking"
APPLY_STATE_SNAPSHOTTING = "snapshotting"
APPLY_STATE_APPLYING = "applying"
APPLY_STATE_FIXING_UP = "fixing_up"
APPLY_STATE_VALIDATING = "validating"
APPLY_STATE_DONE = "done"
APPLY_STATE_FAILED = "failed"

_NO_PARAMETERS = {"no_parameters": True}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _state_transition_allowed(current: str, target: str) -> bool:
    # Enforce an explicit apply state machine so no step can be skipped or repeated.
    allowed: dict[str, set[str]] = {
        APPLY_STATE_CHECKING: {APPLY_STATE_SNAPSHOTTING, APPLY_STATE_APPLYING, APPLY_STATE_FAILED},
        APPLY_STATE_SNAPSHOTTING: {APPLY_STATE_APPLYING, APPLY_STATE_FAILED},
        APPLY_STATE_APPLYING: {APPLY_STATE_FIXING_UP, APPLY_STATE_FAILED},
        APPLY_STATE_FIXING_UP: {APPLY_STATE_VALIDATING, APPLY_STATE_FAILED},
        APPLY_STATE_VALIDATING: {APPLY_STATE_DONE, APPLY_STATE_FAILED},
    }
    return target in allowed.get(current, set())


@dataclass
class ConfirmationGate:
    """Preconditions that must all hold before the live transaction may start."""

    secret_mismatch_cleared: bool = True
    soft_confirmed: bool = False
    typed_confirmed: bool = False

    def missing(self) -> list[str]:
        blockers: list[str] = []
        if not self.secret_mismatch_cleared:
            blockers.append("mail_crypt key mismatch not acknowledged")
        if not self.soft_confirmed:
            blockers.append("restore not confirmed")
        if not self.typed_confirmed:
            blockers.append("final confirmation not typed")
        return blockers

    @property
    def open(self) -> bool:
        return not self.missing()


@dataclass(frozen=True)
class ValidationReport:
    # Post-restore counts shown in the summary.
    primary_present: bool
    mailboxes: int
    aliases: int
    alias_domains: int


@dataclass
class LiveApplier:
    """Snapshot, apply and verify one scope against the live database."""

    engine: Engine
    scope: Scope
    snapshot_dir: Path | None = None
    clock: Callable[[], datetime] = _utc_now
    state: str = APPLY_STATE_CHECKING
    history: list[str] = field(default_factory=lambda: [APPLY_STATE_CHECKING])
    exists: bool | None = None
    snapshot_path: Path | None = None
    warnings: list[FixupWarning] = field(default_factory=list)

    def _transition(self, target: str) -> None:
        if not _state_transition_allowed(self.state, target):
            raise RuntimeError(f"invalid apply transition {self.state} -> {target}")
        self.state = target
        self.history.append(target)

    def _fail(self) -> None:
        if _state_transition_allowed(self.state, APPLY_STATE_FAILED):
            self._transition(APPLY_STATE_FAILED)

    @property
    def is_mysql(self) -> bool:
        return flavor_for(self.engine) == "mysql"

    def primary_exists(self) -> bool:
        return count_rows(self.engine, primary_table(self.scope), primary_filter(self.scope)) > 0

    def domain_exists(self, domain_name: str) -> bool:
        return count_rows(self.engine, schema.domain, Match("domain", "=", domain_name)) > 0

    def check(self, *, force: bool) -> bool:
        # Refuse to touch an existing entity unless overwrite was requested.
        try:
            self.exists = self.primary_exists()
        except SQLAlchemyError as exc:
            self._fail()
            raise ApplyError(
                f"cannot query live database: {exc}",
                remediation="Check that mysql-mailcow is running and the live credentials are valid.",
            ) from exc
        if self.exists and not force:
            self._fail()
            raise LiveConflictError(
                f"{self.scope.label} {self.scope.identifier} already exists on the live server",
                remediation=f"Use --force to overwrite the existing {self.scope.label}.",
            )
        logger.info("live_check scope=%s exists=%s", self.scope.identifier, self.exists)
        return self.exists

    def snapshot(self) -> Path | None:
        # Capture current live rows before any overwrite; skipped for new entities.
        if self.exists is None:
            raise RuntimeError("check() must run before snapshot()")
        if not self.exists:
            return None
        self._transition(APPLY_STATE_SNAPSHOTTING)
        directory = self.snapshot_dir or Path(get_settings().prebackup_dir)
        try:
            result = render_plans(
                self.engine,
                self.scope,
                snapshot_plans_for(self.scope),
                flavor=flavor_for(self.engine),
            )
            self.snapshot_path = _write_snapshot(directory, self.scope, result.statements, self.clock())
        except (OSError, ExtractionError) as exc:
            self._fail()
            raise ApplyError(
                f"could not write pre-restore snapshot: {exc}",
                remediation=f"Check that {directory} is writable; no live data was changed.",
            ) from exc
        logger.info("snapshot_written scope=%s path=%s", self.scope.identifier, self.snapshot_path)
        return self.snapshot_path

    def _session_preamble(self, connection: Connection) -> None:
        # Entity types are rendered independently, so cross-table FK order is not guaranteed.
        if self.is_mysql:
            connection.exec_driver_sql("SET SESSION sql_mode=''", execution_options=_NO_PARAMETERS)
            connection.exec_driver_sql("SET FOREIGN_KEY_CHECKS=0", execution_options=_NO_PARAMETERS)

    def _session_restore(self, connection: Connection) -> None:
        if not self.is_mysql:
            return
        try:
            connection.exec_driver_sql("SET FOREIGN_KEY_CHECKS=1", execution_options=_NO_PARAMETERS)
            connection.commit()
        except DBAPIError as exc:
            logger.warning("fk_checks_restore_failed error=%s", exc)

    def apply(self, statements: Sequence[str], gate: ConfirmationGate) -> None:
        # All statements commit together or not at all.
        if not gate.open:
            raise RestoreCancelled(
                "live restore blocked: " + ", ".join(gate.missing()),
                remediation="Nothing was changed on the live server.",
            )
        if self.exists and self.snapshot_path is None:
            raise RuntimeError("overwrite requested without a pre-restore snapshot")
        self._transition(APPLY_STATE_APPLYING)
        with self.engine.connect() as connection:
            try:
                with connection.begin():
                    self._session_preamble(connection)
                    for statement in statements:
                        connection.exec_driver_sql(statement, execution_options=_NO_PARAMETERS)
            except DBAPIError as exc:
                self._fail()
                detail = str(exc.orig) if exc.orig is not None else str(exc)
                raise ApplyError(
                    f"database restore failed: {detail}",
                    remediation="The transaction was rolled back; live data is unchanged. Fix the error above and retry.",
                ) from exc
            finally:
                self._session_restore(connection)
        logger.info("restore_applied scope=%s statements=%s", self.scope.identifier, len(statements))

    def fixups(self, placeholder_password: str) -> list[FixupWarning]:
        # Best-effort derived data; each failure is reported, none is fatal.
        self._transition(APPLY_STATE_FIXING_UP)
        for name, statements in fixup_statements(self.scope, flavor_for(self.engine), placeholder_password):
            try:
                with self.engine.begin() as connection:
                    for statement in statements:
                        connection.exec_driver_sql(statement, execution_options=_NO_PARAMETERS)
            except DBAPIError as exc:
                detail = str(exc.orig) if exc.orig is not None else str(exc)
                logger.warning("fixup_failed name=%s scope=%s error=%s", name, self.scope.identifier, detail)
                self.warnings.append(FixupWarning(f"{name} fixup failed: {detail}"))
        return list(self.warnings)

    def rollback_command(self) -> str | None:
        if self.snapshot_path is None:
            return None
        url = self.engine.url
        return (
            "docker exec -i $(docker ps -qf name=mysql-mailcow) mysql "
            f"-u{url.username or 'root'} -p{url.password or ''} {url.database or ''} < {self.snapshot_path}"
        )

    def validate(self) -> ValidationReport:
        # The restored primary entity must be present and the store reachable.
        self._transition(APPLY_STATE_VALIDATING)
        try:
            with self.engine.connect() as connection:
                connection.execute(select(1)).scalar_one()
            report = ValidationReport(
                primary_present=self.primary_exists(),
                mailboxes=count_rows(self.engine, schema.mailbox, _mailbox_filter(self.scope)),
                aliases=count_rows(self.engine, schema.alias, _alias_filter(self.scope)),
                alias_domains=count_rows(
                    self.engine, schema.alias_domain, Match("target_domain", "=", self.scope.domain)
                ),
            )
        except SQLAlchemyError as exc:
            self._fail()
            raise ValidationError(
                f"cannot connect to the live database after restore: {exc}",
                remediation=self._rollback_hint(),
                rollback_command=self.rollback_command(),
            ) from exc
        if not report.primary_present:
            self._fail()
            raise ValidationError(
                f"{self.scope.label} {self.scope.identifier} not found in database after restore",
                remediation=self._rollback_hint(),
                rollback_command=self.rollback_command(),
            )
        self._transition(APPLY_STATE_DONE)
        return report

    def _rollback_hint(self) -> str:
        command = self.rollback_command()
        if command is None:
            return "Check the errors above; there was no previous state to roll back to."
        return "Review the errors above; to roll back, run the rollback command shown with this error."


def _mailbox_filter(scope: Scope) -> Match:
    if scope.is_mailbox:
        return Match("username", "=", scope.identifier)
    return Match("domain", "=", scope.domain)


def _alias_filter(scope: Scope) -> Match:
    if scope.is_mailbox:
        return Match("address", "=", scope.identifier)
    return Match("domain", "=", scope.domain)


def fixup_statements(scope: Scope, flavor: Flavor, placeholder_password: str) -> list[tuple[str, list[str]]]:
    """Idempotent follow-ups that keep mailcow's derived tables consistent.

    Quota rows back the admin UI's mailbox listing; the SOGo static view is
    how SOGo discovers which users may log in.
    """
    scope_sql = _mailbox_filter(scope).render(flavor)
    ignore = "INSERT IGNORE INTO" if flavor == "mysql" else "INSERT OR IGNORE INTO"
    quota = [
        f"{ignore} {quote_identifier(table.name)} (`username`, `bytes`, `messages`) "
        f"SELECT `username`, 0, 0 FROM `mailbox` WHERE {scope_sql}"
        for table in (schema.quota2, schema.quota2replica)
    ]
    password = quote_literal(placeholder_password, flavor)
    static_view = [
        "INSERT INTO `_sogo_static_view` "
        "(`c_uid`, `domain`, `c_name`, `c_password`, `c_cn`, `mail`, `aliases`, `ad_aliases`, `ext_acl`, "
        "`kind`, `multiple_bookings`) "
        f"SELECT mailbox.username, mailbox.domain, mailbox.username, {password}, mailbox.name, mailbox.username, "
        "IFNULL(GROUP_CONCAT(ga.aliases ORDER BY ga.aliases SEPARATOR ' '), ''), "
        "IFNULL(gda.ad_alias, ''), IFNULL(external_acl.send_as_acl, ''), "
        "mailbox.kind, mailbox.multiple_bookings "
        "FROM mailbox "
        "LEFT OUTER JOIN grouped_mail_aliases ga "
        "ON ga.username REGEXP CONCAT('(^|,)', mailbox.username, '($|,)') "
        "LEFT OUTER JOIN grouped_domain_alias_address gda ON gda.username = mailbox.username "
        "LEFT OUTER JOIN grouped_sender_acl_external external_acl ON external_acl.username = mailbox.username "
        f"WHERE mailbox.active = '1' AND mailbox.{scope_sql} "
        "GROUP BY mailbox.username "
        "ON DUPLICATE KEY UPDATE domain = VALUES(domain), c_name = VALUES(c_name), "
        "c_password = VALUES(c_password), c_cn = VALUES(c_cn), mail = VALUES(mail), "
        "aliases = VALUES(aliases), ad_aliases = VALUES(ad_aliases), ext_acl = VALUES(ext_acl), "
        "kind = VALUES(kind), multiple_bookings = VALUES(multiple_bookings)"
    ]
    # Runs on its own so stale logins are dropped even when the upsert cannot run.
    cleanup = [
        "DELETE FROM `_sogo_static_view` WHERE `c_uid` NOT IN (SELECT `username` FROM `mailbox` WHERE `active` = '1')",
    ]
    return [("quota", quota), ("sogo_static_view", static_view), ("sogo_static_view_cleanup", cleanup)]


def _write_snapshot(directory: Path, scope: Scope, statements: Sequence[str], created_at: datetime) -> Path:
    # Write to a temp file, fsync, then rename so a partial snapshot never exists.
    directory.mkdir(parents=True, exist_ok=True)
    target = directory / f"{scope.identifier}_{created_at.strftime('%Y%m%d_%H%M%S')}.sql"
    header = (
        f"-- mailrestore pre-restore snapshot\n"
        f"-- scope: {scope.label} {scope.identifier}\n"
        f"-- created_at: {created_at.isoformat()}\n"
    )
    fd, temp_name = tempfile.mkstemp(prefix=f".{target.name}.", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(header)
            handle.write(statements_text(statements))
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_name, target)
    except BaseException:
        Path(temp_name).unlink(missing_ok=True)
        raise
    return target

