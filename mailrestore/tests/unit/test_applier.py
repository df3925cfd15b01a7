from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
import sqlite3

import pytest
from sqlalchemy import insert, update

from mailrestore.core.errors import (
    ApplyError,
    FixupWarning,
    LiveConflictError,
    RestoreCancelled,
    ValidationError,
)
from mailrestore.domain import schema
from mailrestore.domain.scope import parse_scope
from mailrestore.services import applier as applier_module
from mailrestore.services.applier import ConfirmationGate, LiveApplier, fixup_statements
from mailrestore.services.extraction import extract_scope
from mailrestore.tests.utils.mailcow import add_alias, count, create_store, rows, seed_domain


OPEN_GATE = ConfirmationGate(soft_confirmed=True, typed_confirmed=True)


def _fixed_clock() -> datetime:
    return datetime(2026, 3, 1, 12, 30, 45, tzinfo=timezone.utc)


@pytest.fixture
def live(tmp_path: Path):
    engine = create_store(tmp_path / "live.db")
    yield engine
    engine.dispose()


@pytest.fixture
def backup_statements(tmp_path: Path) -> list[str]:
    staged = create_store(tmp_path / "staged.db")
    seed_domain(staged, "example.com", mailboxes=("alice", "bob"), description="from backup")
    add_alias(staged, "team@example.com", "alice@example.com,bob@example.com")
    statements = extract_scope(staged, parse_scope("example.com"), flavor="sqlite").statements
    staged.dispose()
    return statements


def test_state_transition_rules() -> None:
    # Validate the apply state machine ordering.
    allowed = applier_module._state_transition_allowed
    assert allowed("checking", "snapshotting")
    assert allowed("checking", "applying")
    assert allowed("applying", "fixing_up")
    assert allowed("validating", "done")
    assert not allowed("checking", "validating")
    assert not allowed("done", "applying")
    assert not allowed("failed", "applying")


def test_existing_entity_without_force_aborts_before_snapshot(live, tmp_path: Path) -> None:
    # No snapshot is taken and nothing is written when overwrite was not requested.
    seed_domain(live, "example.com", mailboxes=("alice",), description="live")
    applier = LiveApplier(live, parse_scope("example.com"), snapshot_dir=tmp_path / "snap")
    with pytest.raises(LiveConflictError) as exc_info:
        applier.check(force=False)
    assert "--force" in exc_info.value.remediation
    assert applier.state == "failed"
    assert not (tmp_path / "snap").exists()
    assert rows(live, schema.domain)[0]["description"] == "live"


def test_new_entity_needs_no_snapshot(live, tmp_path: Path) -> None:
    # Nothing exists live, so there is nothing to preserve.
    applier = LiveApplier(live, parse_scope("example.com"), snapshot_dir=tmp_path / "snap")
    assert applier.check(force=False) is False
    assert applier.snapshot() is None
    assert applier.rollback_command() is None


def test_snapshot_replay_reproduces_pre_restore_state(live, tmp_path: Path, backup_statements) -> None:
    # The snapshot is on disk before the overwrite and restores the prior rows on a fresh store.
    seed_domain(live, "example.com", mailboxes=("alice",), description="live")
    add_alias(live, "info@example.com", "alice@example.com")
    before = {table.name: rows(live, table) for table in (schema.domain, schema.mailbox, schema.alias)}

    applier = LiveApplier(live, parse_scope("example.com"), snapshot_dir=tmp_path / "snap", clock=_fixed_clock)
    applier.check(force=True)
    snapshot_path = applier.snapshot()
    assert snapshot_path == tmp_path / "snap" / "example.com_20260301_123045.sql"
    assert snapshot_path.read_text(encoding="utf-8").startswith("-- mailrestore pre-restore snapshot")

    applier.apply(backup_statements, OPEN_GATE)
    assert rows(live, schema.domain)[0]["description"] == "from backup"

    fresh = create_store(tmp_path / "fresh.db")
    fresh.dispose()
    with sqlite3.connect(tmp_path / "fresh.db") as connection:
        connection.executescript(snapshot_path.read_text(encoding="utf-8"))
    replayed = create_store(tmp_path / "fresh.db")
    after = {table.name: rows(replayed, table) for table in (schema.domain, schema.mailbox, schema.alias)}
    assert after == before
    replayed.dispose()


def test_snapshot_required_before_overwrite(live, tmp_path: Path, backup_statements) -> None:
    # Overwriting an existing entity without a snapshot is a programming error.
    seed_domain(live, "example.com", mailboxes=("alice",))
    applier = LiveApplier(live, parse_scope("example.com"), snapshot_dir=tmp_path / "snap")
    applier.check(force=True)
    with pytest.raises(RuntimeError, match="snapshot"):
        applier.apply(backup_statements, OPEN_GATE)


def test_closed_gate_blocks_apply(live, tmp_path: Path, backup_statements) -> None:
    # Unconfirmed restores never reach the transaction.
    applier = LiveApplier(live, parse_scope("example.com"), snapshot_dir=tmp_path / "snap")
    applier.check(force=False)
    gate = ConfirmationGate(secret_mismatch_cleared=False, soft_confirmed=True, typed_confirmed=True)
    with pytest.raises(RestoreCancelled, match="mail_crypt"):
        applier.apply(backup_statements, gate)
    assert count(live, schema.domain) == 0
    assert applier.state == "checking"


def test_failed_statement_rolls_back_everything(live, tmp_path: Path, backup_statements) -> None:
    # One failing statement leaves live state exactly as it was, with the engine error surfaced.
    applier = LiveApplier(live, parse_scope("example.com"), snapshot_dir=tmp_path / "snap")
    applier.check(force=False)
    with pytest.raises(ApplyError, match="no such table") as exc_info:
        applier.apply([*backup_statements, "INSERT INTO `missing_table` VALUES (1)"], OPEN_GATE)
    assert "unchanged" in exc_info.value.remediation
    assert applier.state == "failed"
    assert count(live, schema.domain) == 0
    assert count(live, schema.mailbox) == 0
    assert count(live, schema.alias) == 0


def test_fixups_add_quota_rows_and_warn_on_failure(live, tmp_path: Path, backup_statements) -> None:
    # Quota rows are created; the SOGo view fixup needs MySQL and only warns elsewhere.
    applier = LiveApplier(live, parse_scope("example.com"), snapshot_dir=tmp_path / "snap")
    applier.check(force=False)
    applier.apply(backup_statements, OPEN_GATE)
    warnings = applier.fixups("{SSHA256}placeholder")
    assert count(live, schema.quota2) == 2
    assert count(live, schema.quota2replica) == 2
    assert len(warnings) == 1
    assert isinstance(warnings[0], FixupWarning)
    assert "sogo_static_view" in str(warnings[0])

    report = applier.validate()
    assert report.primary_present
    assert report.mailboxes == 2
    assert report.aliases == 3
    assert applier.history == ["checking", "applying", "fixing_up", "validating", "done"]


def test_validation_failure_surfaces_rollback_command(live, tmp_path: Path) -> None:
    # A missing primary entity after commit is fatal and names the snapshot to reapply.
    seed_domain(live, "example.com", mailboxes=("alice",))
    applier = LiveApplier(live, parse_scope("example.com"), snapshot_dir=tmp_path / "snap")
    applier.check(force=True)
    snapshot_path = applier.snapshot()
    applier.apply(["DELETE FROM `domain` WHERE `domain` = 'example.com'"], OPEN_GATE)
    applier.fixups("{SSHA256}placeholder")
    with pytest.raises(ValidationError) as exc_info:
        applier.validate()
    assert str(snapshot_path) in exc_info.value.rollback_command
    assert exc_info.value.rollback_command not in exc_info.value.remediation
    assert applier.state == "failed"


def test_mysql_fixups_target_scope() -> None:
    # The MySQL renditions stay scoped to the restored mailboxes.
    fixups = dict(fixup_statements(parse_scope("alice@example.com"), "mysql", "{SSHA256}x"))
    assert fixups["quota"][0].startswith("INSERT IGNORE INTO `quota2`")
    assert "`username` = 'alice@example.com'" in fixups["quota"][1]
    assert "ON DUPLICATE KEY UPDATE" in fixups["sogo_static_view"][0]
    assert fixups["sogo_static_view_cleanup"][0].startswith("DELETE FROM `_sogo_static_view`")


def test_static_view_cleanup_drops_stale_logins(live, tmp_path: Path, backup_statements) -> None:
    # The NOT IN cleanup runs on its own, so stale rows go even where the MySQL-only upsert warns.
    applier = LiveApplier(live, parse_scope("example.com"), snapshot_dir=tmp_path / "snap")
    applier.check(force=False)
    applier.apply(backup_statements, OPEN_GATE)
    with live.begin() as connection:
        connection.execute(
            insert(schema.sogo_static_view),
            [
                {"c_uid": "alice@example.com", "domain": "example.com"},
                {"c_uid": "bob@example.com", "domain": "example.com"},
                {"c_uid": "ghost@example.com", "domain": "example.com"},
            ],
        )
        connection.execute(
            update(schema.mailbox).where(schema.mailbox.c.username == "bob@example.com").values(active=0)
        )
    warnings = applier.fixups("{SSHA256}placeholder")
    assert [str(warning).split(" fixup")[0] for warning in warnings] == ["sogo_static_view"]
    assert [row["c_uid"] for row in rows(live, schema.sogo_static_view)] == ["alice@example.com"]
