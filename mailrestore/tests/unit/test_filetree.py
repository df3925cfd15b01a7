from __future__ import annotations

from pathlib import Path
from typing import Sequence

from mailrestore.core.errors import FileTreeWarning
from mailrestore.domain.scope import parse_scope
from mailrestore.services.archive import ArchiveInfo
from mailrestore.services.filetree import FileTreeRestorer, archive_patterns
from mailrestore.services.runtime import HelperResult, Mount
from mailrestore.tests.utils.fakes import FakeRuntime, failed, ok


VMAIL_ASSET = ArchiveInfo(
    name="backup_vmail",
    present=True,
    filename="backup_vmail.tar.zst",
    format="tar.zst",
    decompress_cmd="zstd -d",
)


def _relative_archive(script: str, mounts: Sequence[Mount]) -> HelperResult:
    # Archive members were stored without the leading slash.
    if "--wildcards '/vmail/" in script:
        return failed("tar: /vmail/example.com/*: Not found in archive")
    if "--wildcards 'vmail/" in script:
        return ok()
    if script.startswith("[ -d "):
        return ok()
    return failed(f"unexpected script: {script}")


def _restorer(runtime: FakeRuntime, asset: ArchiveInfo = VMAIL_ASSET) -> FileTreeRestorer:
    return FileTreeRestorer(
        runtime,
        location=Path("/backup"),
        asset=asset,
        volume="mailcowdockerized_vmail-vol-1",
        image="mariadb:10.11",
        dovecot="dovecot-mailcow",
    )


def test_patterns_cover_both_path_conventions() -> None:
    # Absolute pattern first, relative fallback second.
    assert archive_patterns(parse_scope("a@example.com")) == ["/vmail/example.com/a/*", "vmail/example.com/a/*"]


def test_leading_slash_miss_falls_back_to_relative_pattern() -> None:
    # The relative pattern succeeds after the absolute one matched nothing.
    runtime = FakeRuntime(handler=_relative_archive, services={"dovecot-mailcow": True})
    outcome = _restorer(runtime).restore(parse_scope("example.com"))
    assert outcome.extracted
    assert outcome.pattern == "vmail/example.com/*"
    assert outcome.directory_present
    assert outcome.warnings == []
    extract_scripts = [script for _, script in runtime.helpers if "tar -Pxf" in script]
    assert len(extract_scripts) == 2
    assert "zstd -d < /backup/backup_vmail.tar.zst" in extract_scripts[0]


def test_dovecot_stopped_only_around_extraction() -> None:
    # Dovecot is back up before ownership fixes and reindexing run inside it.
    runtime = FakeRuntime(handler=_relative_archive, services={"dovecot-mailcow": True})
    _restorer(runtime).restore(parse_scope("alice@example.com"))
    events = runtime.events
    stop = events.index("stop dovecot-mailcow")
    start = events.index("start dovecot-mailcow")
    extract = [i for i, event in enumerate(events) if "tar -Pxf" in event]
    assert stop < min(extract) and max(extract) < start
    assert events[start + 1 :] == [
        "exec dovecot-mailcow chown -R vmail:vmail /var/vmail/example.com/alice",
        "exec dovecot-mailcow chmod -R 700 /var/vmail/example.com/alice",
        "exec dovecot-mailcow doveadm force-resync -u alice@example.com *",
        "exec dovecot-mailcow doveadm quota recalc -u alice@example.com",
    ]


def test_stopped_dovecot_is_not_started() -> None:
    # A service that was not running before is left alone; reindexing then only warns.
    runtime = FakeRuntime(handler=_relative_archive, services={"dovecot-mailcow": False})
    outcome = _restorer(runtime).restore(parse_scope("example.com"))
    assert "start dovecot-mailcow" not in runtime.events
    assert outcome.directory_present
    assert all(isinstance(warning, FileTreeWarning) for warning in outcome.warnings)
    assert len(outcome.warnings) == 4


def test_missing_directory_is_a_warning() -> None:
    # Nothing extracted for the scope is reported but does not raise.
    runtime = FakeRuntime(handler=lambda script, mounts: failed("Not found in archive"), services={})
    outcome = _restorer(runtime).restore(parse_scope("example.com"))
    assert not outcome.extracted
    assert not outcome.directory_present
    assert len(outcome.warnings) == 2
    assert not any(event.startswith("exec") for event in runtime.events)


def test_absent_archive_is_a_warning() -> None:
    # Backups without mail files restore the database only.
    runtime = FakeRuntime()
    outcome = _restorer(runtime, ArchiveInfo(name="backup_vmail", present=False)).restore(parse_scope("example.com"))
    assert isinstance(outcome.warnings[0], FileTreeWarning)
    assert runtime.events == []
