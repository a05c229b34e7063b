"""Persisted deployment records.

One record per environment tracks the image currently deployed, the one
it replaced, and any replacement still in flight. Records are written
before and after every replacement so that a restarted controller can
still restore the previous image.
"""

from __future__ import annotations

import os
from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from promoter.errors import StateError
from promoter.image import ImageReference
from promoter.observability.logging import get_logger


log = get_logger(__name__)

RECORD_SUFFIX = ".record.json"


class DeploymentRecord(BaseModel):
    """Deployment state of one environment."""

    environment: str
    current: ImageReference | None = None
    previous: ImageReference | None = None
    in_flight: ImageReference | None = Field(
        default=None,
        description="Candidate being deployed; set between snapshot and commit/restore",
    )
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def touch(self) -> None:
        self.updated_at = datetime.now(UTC)


class DeploymentRecordStore:
    """JSON-file store of deployment records under a state directory.

    Read and write failures surface as ``StateError`` so a run can still
    reach a terminal state and report what is running.
    """

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = Path(state_dir)

    def _path(self, environment: str) -> Path:
        return self.state_dir / f"{environment}{RECORD_SUFFIX}"

    def get(self, environment: str) -> DeploymentRecord:
        """Load the record for an environment (empty when never deployed).

        Raises:
            StateError: If the record cannot be read or is corrupt.
        """
        path = self._path(environment)
        if not path.exists():
            return DeploymentRecord(environment=environment)

        try:
            return DeploymentRecord.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as e:
            log.error("deployment_record_unreadable", environment=environment, path=str(path), error=str(e))
            msg = f"Deployment record for {environment!r} is unreadable: {path}"
            raise StateError(
                msg,
                phase="state",
                details={"environment": environment, "path": str(path), "error": str(e)},
            ) from e

    def save(self, record: DeploymentRecord) -> None:
        """Persist a record atomically.

        Raises:
            StateError: If the record cannot be written.
        """
        record.touch()
        path = self._path(record.environment)
        tmp = path.with_suffix(".tmp")
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            tmp.write_text(record.model_dump_json(indent=2), encoding="utf-8")
            os.replace(tmp, path)
        except OSError as e:
            log.error("deployment_record_write_failed", environment=record.environment, path=str(path), error=str(e))
            msg = f"Failed to write deployment record for {record.environment!r}: {e}"
            raise StateError(
                msg,
                phase="state",
                details={"environment": record.environment, "path": str(path)},
            ) from e
        log.debug(
            "deployment_record_saved",
            environment=record.environment,
            current=str(record.current) if record.current else None,
            previous=str(record.previous) if record.previous else None,
            in_flight=str(record.in_flight) if record.in_flight else None,
        )


__all__ = ["DeploymentRecord", "DeploymentRecordStore"]
