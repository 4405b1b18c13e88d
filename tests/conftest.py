from __future__ import annotations

from pathlib import Path

import pytest

from pg_backup.config import BackupConfig


class FakeClock:
    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def backup_config(tmp_path: Path) -> BackupConfig:
    return BackupConfig(
        db_host="db.internal",
        db_port="5432",
        db_user="backup",
        db_password="s3cr3t-pw",
        db_name="orders",
        r2_account_id="acc123",
        r2_access_key="AKIDEXAMPLE",
        r2_secret_key="wJalrXUtnFEMI",
        r2_bucket_name="db-backups",
        r2_region="auto",
        backup_dir=tmp_path / "staging",
    )
