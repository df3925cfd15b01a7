from __future__ import annotations

from pathlib import Path

import pytest

from mailrestore.core.config import Settings, get_settings


@pytest.fixture(autouse=True)
def clear_settings_cache() -> None:
    # Settings are cached per process; keep env overrides from leaking across tests.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    # Point every on-disk location at the test's temp directory.
    mailcow_dir = tmp_path / "mailcow-dockerized"
    mailcow_dir.mkdir()
    (mailcow_dir / "mailcow.conf").write_text(
        "COMPOSE_PROJECT_NAME=mailcowdockerized\nDBNAME=mailcow\nDBUSER=mailcow\nDBPASS=livepass\n",
        encoding="utf-8",
    )
    return Settings(
        mailcow_dir=str(mailcow_dir),
        sql_image="mariadb:10.11",
        work_dir=str(tmp_path / "work"),
        lock_dir=str(tmp_path / "locks"),
        prebackup_dir=str(tmp_path / "prebackup"),
        staging_ready_timeout_s=2.0,
        staging_poll_interval_s=0.5,
    )
