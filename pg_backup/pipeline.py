"""Orchestration of a single backup run: configure, dump, upload, clean up."""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional, Protocol

from .cloud import CloudError, create_r2_client
from .config import BackupConfig, ConfigurationError, load_config
from .dump import DumpError, DumpExecutor, DumpProducer, PgDumpExecutor

LOGGER = logging.getLogger(__name__)


class PipelineState(enum.Enum):
    CONFIGURING = "configuring"
    DUMPING = "dumping"
    UPLOADING = "uploading"
    CLEANING_UP = "cleaning-up"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class PipelineError(Exception):
    """A pipeline step failed; *cause* holds the underlying error."""

    def __init__(self, step: PipelineState, cause: Exception) -> None:
        super().__init__(f"{step.value} failed: {cause}")
        self.step = step
        self.cause = cause


class ObjectUploader(Protocol):
    def upload_backup(self, bucket: str, backup_path: Path) -> str:
        ...


def cleanup_artifact(backup_path: Path, logger: logging.Logger = LOGGER) -> bool:
    """Remove the local artifact. Failures are logged, never raised."""

    try:
        Path(backup_path).unlink()
    except OSError as exc:
        logger.warning("Failed to remove local backup file '%s': %s", backup_path, exc)
        return False
    logger.info("Removed local backup file: %s", backup_path)
    return True


@dataclass
class BackupPipeline:
    config_loader: Callable[[], BackupConfig] = load_config
    executor: DumpExecutor = field(default_factory=PgDumpExecutor)
    client_factory: Callable[[BackupConfig], ObjectUploader] = create_r2_client
    clock: Callable[[], datetime] = datetime.now
    logger: logging.Logger = LOGGER

    config: Optional[BackupConfig] = field(default=None, init=False)
    state: PipelineState = field(default=PipelineState.CONFIGURING, init=False)
    history: List[PipelineState] = field(default_factory=list, init=False)

    def run(self) -> str:
        """Execute every step in order and return the uploaded object key.

        Raises :class:`PipelineError` on the first failing step. The local
        artifact is removed only after a successful upload.
        """

        self._enter(PipelineState.CONFIGURING)
        try:
            config = self.config = self.config_loader()
        except ConfigurationError as exc:
            raise self._fail(exc) from exc

        self._enter(PipelineState.DUMPING)
        producer = DumpProducer(config, executor=self.executor, clock=self.clock, logger=self.logger)
        try:
            backup_path = producer.create_backup()
        except DumpError as exc:
            raise self._fail(exc) from exc

        self._enter(PipelineState.UPLOADING)
        try:
            client = self.client_factory(config)
            key = client.upload_backup(config.r2_bucket_name, backup_path)
        except CloudError as exc:
            raise self._fail(exc) from exc

        self._enter(PipelineState.CLEANING_UP)
        cleanup_artifact(backup_path, self.logger)

        self._enter(PipelineState.SUCCEEDED)
        self.logger.info("Database backup and R2 upload completed successfully")
        return key

    # ------------------------------------------------------------------
    def _enter(self, state: PipelineState) -> None:
        self.state = state
        self.history.append(state)
        self.logger.debug("Pipeline state: %s", state.value)

    def _fail(self, exc: Exception) -> PipelineError:
        error = PipelineError(self.state, exc)
        self._enter(PipelineState.FAILED)
        return error


__all__ = [
    "BackupPipeline",
    "ObjectUploader",
    "PipelineError",
    "PipelineState",
    "cleanup_artifact",
]
