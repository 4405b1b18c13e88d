"""Dump producer: runs the dump utility and validates the artifact."""
from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Protocol

from .config import BackupConfig
from .utils import ensure_directory, timestamp_for_filename

LOGGER = logging.getLogger(__name__)

PG_DUMP_OPTIONS = (
    "--no-privileges",
    "--no-tablespaces",
    "--format=plain",
    "--encoding=UTF8",
    "--verbose",
)
COMMAND_NOT_FOUND = 127


class DumpError(Exception):
    """Raised when the dump step fails."""


class DirectoryError(DumpError):
    """The staging directory could not be created."""


class DumpExecutionError(DumpError):
    """The dump utility exited with a non-zero status."""

    def __init__(self, returncode: int, output: str) -> None:
        super().__init__(f"backup failed: exit status {returncode}, output: {output}")
        self.returncode = returncode
        self.output = output


class ArtifactMissingError(DumpError):
    """The dump utility reported success but no file was written."""


class ArtifactEmptyError(DumpError):
    """The dump file exists but has zero length."""


@dataclass(frozen=True)
class DumpResult:
    returncode: int
    output: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class DumpExecutor(Protocol):
    """Produces a dump of the configured database at *output_path*."""

    def execute(self, config: BackupConfig, output_path: Path) -> DumpResult:
        ...


@dataclass
class PgDumpExecutor:
    """Run ``pg_dump`` as a child process.

    The password travels in the child's ``PGPASSWORD`` so it never shows up
    in the process list.
    """

    executable: str = "pg_dump"
    base_env: Optional[Mapping[str, str]] = None

    def build_command(self, config: BackupConfig, output_path: Path) -> List[str]:
        return [
            self.executable,
            "-h", config.db_host,
            "-p", config.db_port,
            "-U", config.db_user,
            "-d", config.db_name,
            "-f", str(output_path),
            *PG_DUMP_OPTIONS,
        ]

    def build_env(self, config: BackupConfig) -> Dict[str, str]:
        env = dict(os.environ if self.base_env is None else self.base_env)
        env["PGPASSWORD"] = config.db_password
        return env

    def execute(self, config: BackupConfig, output_path: Path) -> DumpResult:
        command = self.build_command(config, output_path)
        LOGGER.info("Running dump command: %s", " ".join(command))
        try:
            result = subprocess.run(
                command,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                env=self.build_env(config),
                encoding="utf-8",
                errors="replace",
                check=False,
            )
        except OSError as exc:
            return DumpResult(returncode=COMMAND_NOT_FOUND, output=f"{self.executable}: {exc}")
        return DumpResult(returncode=result.returncode, output=result.stdout or "")


@dataclass
class DumpProducer:
    config: BackupConfig
    executor: DumpExecutor = field(default_factory=PgDumpExecutor)
    clock: Callable[[], datetime] = datetime.now
    logger: logging.Logger = LOGGER

    def create_backup(self) -> Path:
        """Dump the database into the staging directory and return the file path."""

        self.ensure_backup_dir()
        backup_path = self.generate_backup_path()
        self.execute_dump(backup_path)
        size = self.validate_artifact(backup_path)
        self.logger.info("Backup created successfully: %s (%d bytes)", backup_path, size)
        return backup_path

    # ------------------------------------------------------------------
    def ensure_backup_dir(self) -> Path:
        try:
            return ensure_directory(self.config.backup_dir)
        except OSError as exc:
            raise DirectoryError(
                f"failed to create backup directory '{self.config.backup_dir}': {exc}"
            ) from exc

    # ------------------------------------------------------------------
    def generate_backup_path(self, now: Optional[datetime] = None) -> Path:
        timestamp = timestamp_for_filename(now or self.clock())
        return Path(self.config.backup_dir) / f"{self.config.db_name}_{timestamp}.sql"

    # ------------------------------------------------------------------
    def execute_dump(self, backup_path: Path) -> None:
        result = self.executor.execute(self.config, backup_path)
        if not result.ok:
            raise DumpExecutionError(result.returncode, result.output)
        if result.output:
            self.logger.debug("Dump output: %s", result.output.strip())

    # ------------------------------------------------------------------
    def validate_artifact(self, backup_path: Path) -> int:
        try:
            size = Path(backup_path).stat().st_size
        except FileNotFoundError as exc:
            raise ArtifactMissingError(f"backup file not found: {backup_path}") from exc
        except OSError as exc:
            raise ArtifactMissingError(f"backup file not accessible: {backup_path}: {exc}") from exc
        if size == 0:
            raise ArtifactEmptyError(f"backup file is empty: {backup_path}")
        return size


__all__ = [
    "ArtifactEmptyError",
    "ArtifactMissingError",
    "DirectoryError",
    "DumpError",
    "DumpExecutionError",
    "DumpExecutor",
    "DumpProducer",
    "DumpResult",
    "PgDumpExecutor",
]
