from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Sequence

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
import pytest

from mailrestore.core.config import Settings
from mailrestore.core.errors import (
    FileTreeWarning,
    LiveConflictError,
    RestoreCancelled,
    RuntimeUnavailableError,
    ScopeLockedError,
    ScopeNotFoundError,
    SecretMismatchError,
    SecretMismatchWarning,
)
from mailrestore.domain import schema
from mailrestore.domain.scope import parse_scope
from mailrestore.services.locks import ScopeLock
from mailrestore.services.orchestrator import CONFIRM_LITERAL, RestoreOptions, RestoreOrchestrator
from mailrestore.services.runtime import HelperResult, Mount
from mailrestore.services.secrets import DKIM_PRIV_KEYS, DKIM_PUB_KEYS, DKIM_SELECTORS
from mailrestore.tests.utils.fakes import FakeRedis, FakeRuntime, ScriptedConfirmer, failed, ok
from mailrestore.tests.utils.mailcow import add_alias, count, create_store, rows, seed_domain, write_backup


CRYPT_VOLUME = "mailcowdockerized_crypt-vol-1"


def _fixed_clock() -> datetime:
    return datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def _public_pem() -> str:
    key = ec.generate_private_key(ec.SECP384R1())
    return key.public_key().public_bytes(
        serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo
    ).decode("ascii")


class LocalOrchestrator(RestoreOrchestrator):
    # Replaces container-backed staging and live connections with local stores.
    def __init__(self, *args, staged, live, staged_redis=None, live_redis=None, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.staged = staged
        self.live = live
        self.staged_redis = staged_redis
        self.live_redis = live_redis or FakeRedis()

    @contextmanager
    def stage_database(self, bundle):
        yield self.staged

    @contextmanager
    def stage_redis(self, bundle, asset):
        yield self.staged_redis

    def connect_live_database(self):
        return self.live

    def connect_live_redis(self):
        return self.live_redis


@pytest.fixture
def stores(tmp_path: Path):
    staged = create_store(tmp_path / "staged.db")
    seed_domain(staged, "example.com", mailboxes=("alice", "bob"), description="from backup")
    add_alias(staged, "team@example.com", "alice@example.com,bob@example.com")
    live = create_store(tmp_path / "live.db")
    yield staged, live
    staged.dispose()
    live.dispose()


def _orchestrator(
    tmp_path: Path,
    settings: Settings,
    stores,
    target: str = "example.com",
    *,
    options: RestoreOptions = RestoreOptions(confirm=True),
    confirmer: ScriptedConfirmer | None = None,
    runtime: FakeRuntime | None = None,
    assets: tuple[str, ...] = (),
    **kwargs,
) -> LocalOrchestrator:
    staged, live = stores
    location = write_backup(tmp_path / "backup", assets=assets)
    return LocalOrchestrator(
        location,
        parse_scope(target),
        options,
        confirmer=confirmer or ScriptedConfirmer(),
        settings=settings,
        runtime=runtime or FakeRuntime(),
        clock=_fixed_clock,
        liveness=lambda pid: True,
        staged=staged,
        live=live,
        **kwargs,
    )


def _lock_path(settings: Settings, key: str = "example.com") -> Path:
    return Path(settings.lock_dir) / f"restore_domain_{key}.lock"


def test_confirmed_domain_restore(tmp_path: Path, settings: Settings, stores) -> None:
    # A new domain is restored end to end and the lock is released afterwards.
    runtime = FakeRuntime(services={"sogo-mailcow": True, "php-fpm-mailcow": True})
    summary = _orchestrator(tmp_path, settings, stores, runtime=runtime).run()
    _, live = stores
    assert rows(live, schema.domain)[0]["description"] == "from backup"
    assert count(live, schema.mailbox) == 2
    assert summary.report.aliases == 3
    assert summary.snapshot_path is None
    assert summary.refreshed == ["sogo-mailcow", "php-fpm-mailcow"]
    warning_text = [str(warning) for warning in summary.warnings]
    assert any("sogo_static_view" in text for text in warning_text)
    assert any("vmail" in text for text in warning_text)
    assert not _lock_path(settings).exists()


def test_existing_domain_without_force_is_conflict(tmp_path: Path, settings: Settings, stores) -> None:
    # Existing live entities abort before any snapshot or write, and the lock is released.
    _, live = stores
    seed_domain(live, "example.com", mailboxes=("alice",), description="live")
    with pytest.raises(LiveConflictError):
        _orchestrator(tmp_path, settings, stores).run()
    assert rows(live, schema.domain)[0]["description"] == "live"
    assert not Path(settings.prebackup_dir).exists()
    assert not _lock_path(settings).exists()


def test_forced_overwrite_writes_snapshot(tmp_path: Path, settings: Settings, stores) -> None:
    # Overwrites are preceded by a snapshot whose rollback command is reported.
    _, live = stores
    seed_domain(live, "example.com", mailboxes=("alice",), description="live")
    summary = _orchestrator(tmp_path, settings, stores, options=RestoreOptions(force=True, confirm=True)).run()
    assert summary.snapshot_path == Path(settings.prebackup_dir) / "example.com_20260301_120000.sql"
    assert summary.snapshot_path.exists()
    assert str(summary.snapshot_path) in summary.rollback_command
    assert rows(live, schema.domain)[0]["description"] == "from backup"


def test_soft_decline_cancels_without_changes(tmp_path: Path, settings: Settings, stores) -> None:
    # Declining the first prompt cancels before the live transaction.
    confirmer = ScriptedConfirmer(answers=[False])
    with pytest.raises(RestoreCancelled):
        _orchestrator(tmp_path, settings, stores, options=RestoreOptions(), confirmer=confirmer).run()
    _, live = stores
    assert count(live, schema.domain) == 0
    assert len(confirmer.prompts) == 1


def test_typed_confirmation_must_match_literal(tmp_path: Path, settings: Settings, stores) -> None:
    # The second gate requires the literal word; anything else cancels.
    confirmer = ScriptedConfirmer(answers=[True], typed=["yes"])
    with pytest.raises(RestoreCancelled):
        _orchestrator(tmp_path, settings, stores, options=RestoreOptions(), confirmer=confirmer).run()
    _, live = stores
    assert count(live, schema.domain) == 0

    confirmer = ScriptedConfirmer(answers=[True], typed=[CONFIRM_LITERAL])
    _orchestrator(tmp_path, settings, stores, options=RestoreOptions(), confirmer=confirmer).run()
    assert count(live, schema.domain) == 1


def _crypt_mismatch(script: str, mounts: Sequence[Mount], keys: dict[str, str]) -> HelperResult:
    if "tar -xOf" in script:
        return ok(keys["backup"])
    if script.startswith("cat /crypt/"):
        return ok(keys["live"])
    return failed("unexpected")


def test_crypt_mismatch_decline_is_fatal(tmp_path: Path, settings: Settings, stores) -> None:
    # Declining the mismatch prompt stops the restore even when --confirm was given.
    keys = {"backup": _public_pem(), "live": _public_pem()}
    runtime = FakeRuntime(handler=lambda script, mounts: _crypt_mismatch(script, mounts, keys), volumes={CRYPT_VOLUME})
    confirmer = ScriptedConfirmer(answers=[False])
    with pytest.raises(SecretMismatchError):
        _orchestrator(
            tmp_path,
            settings,
            stores,
            confirmer=confirmer,
            runtime=runtime,
            assets=("backup_crypt.tar.zst",),
        ).run()
    assert "mail_crypt" in confirmer.prompts[0]
    _, live = stores
    assert count(live, schema.domain) == 0


def test_forcemailcrypt_skips_mismatch_prompt(tmp_path: Path, settings: Settings, stores) -> None:
    # The force flag clears the mismatch gate without asking.
    keys = {"backup": _public_pem(), "live": _public_pem()}
    runtime = FakeRuntime(handler=lambda script, mounts: _crypt_mismatch(script, mounts, keys), volumes={CRYPT_VOLUME})
    confirmer = ScriptedConfirmer()
    summary = _orchestrator(
        tmp_path,
        settings,
        stores,
        options=RestoreOptions(confirm=True, force_mailcrypt=True),
        confirmer=confirmer,
        runtime=runtime,
        assets=("backup_crypt.tar.zst",),
    ).run()
    assert confirmer.prompts == []
    assert summary.crypt_outcome == "mismatch"
    assert any(isinstance(warning, SecretMismatchWarning) for warning in summary.warnings)


def test_dkim_restored_from_backup_redis(tmp_path: Path, settings: Settings, stores) -> None:
    # Domain restores carry the backup's DKIM key into live redis.
    staged_redis = FakeRedis(
        {
            DKIM_SELECTORS: {"example.com": "dkim"},
            DKIM_PUB_KEYS: {"example.com": "PUB"},
            DKIM_PRIV_KEYS: {"dkim.example.com": "PRIV"},
        }
    )
    live_redis = FakeRedis()
    summary = _orchestrator(
        tmp_path,
        settings,
        stores,
        assets=("backup_redis.tar.zst",),
        staged_redis=staged_redis,
        live_redis=live_redis,
    ).run()
    assert summary.dkim_restored
    assert summary.dkim_selector == "dkim"
    assert live_redis.hashes[DKIM_PRIV_KEYS] == {"dkim.example.com": "PRIV"}


def test_mailbox_restore_requires_live_domain(tmp_path: Path, settings: Settings, stores) -> None:
    # A mailbox cannot be restored into a domain the live server does not have.
    with pytest.raises(ScopeNotFoundError, match="does not exist on the live server"):
        _orchestrator(tmp_path, settings, stores, "alice@example.com").run()


def test_mailbox_restore_into_existing_domain(tmp_path: Path, settings: Settings, stores) -> None:
    # Only the mailbox and its aliases are written.
    _, live = stores
    seed_domain(live, "example.com")
    summary = _orchestrator(tmp_path, settings, stores, "alice@example.com").run()
    assert [row["username"] for row in rows(live, schema.mailbox)] == ["alice@example.com"]
    assert summary.dkim_selector is None
    assert summary.report.mailboxes == 1


def test_held_lock_blocks_restore(tmp_path: Path, settings: Settings, stores) -> None:
    # A concurrent restore of the same domain is refused before staging.
    ScopeLock("example.com", lock_dir=Path(settings.lock_dir), holder=999999, liveness=lambda pid: True).acquire()
    with pytest.raises(ScopeLockedError):
        _orchestrator(tmp_path, settings, stores).run()
    _, live = stores
    assert count(live, schema.domain) == 0


class DockerDownAfterCommit(FakeRuntime):
    # The docker daemon refuses to stop dovecot once the database is written.
    def stop_service(self, name_filter: str) -> bool:
        raise RuntimeUnavailableError(f"failed to stop {name_filter}: 500 Server Error")


def test_runtime_failure_after_commit_only_warns(tmp_path: Path, settings: Settings, stores) -> None:
    # The committed database restore stands; the mail file step degrades to a warning.
    runtime = DockerDownAfterCommit(services={"dovecot-mailcow": True, "sogo-mailcow": True})
    summary = _orchestrator(tmp_path, settings, stores, runtime=runtime, assets=("backup_vmail.tar.zst",)).run()
    _, live = stores
    assert count(live, schema.domain) == 1
    assert not summary.filetree.directory_present
    assert any(
        isinstance(warning, FileTreeWarning) and "500 Server Error" in str(warning) for warning in summary.warnings
    )
    assert summary.refreshed == ["sogo-mailcow"]
    assert not _lock_path(settings).exists()
