"""
Queue Snapshot Store
====================
Crash-safe JSON snapshots of the job list.

Writes go to a temp file in the target directory and are moved into
place with an atomic rename, so readers never observe a half-written file.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import uuid
from pathlib import Path
from typing import Union

import aiofiles

from modporter.errors import ErrorCode, PersistenceError
from modporter.jobs.models import Job, JobStatus

logger = logging.getLogger(__name__)


class QueueSnapshotStore:
    """
    Reads and writes the queue snapshot file.

    Failures are logged and reported through the return value; the
    in-memory queue stays authoritative.
    """

    def __init__(self, file_path: Union[Path, str]):
        self.file_path = Path(file_path)
        self._write_lock = asyncio.Lock()

    def _temp_path(self) -> Path:
        return self.file_path.with_name(f"{self.file_path.name}.{uuid.uuid4().hex[:8]}.tmp")

    @staticmethod
    def serialize(jobs: list[Job]) -> str:
        return json.dumps([job.to_dict() for job in jobs], indent=2, default=str)

    def load(self) -> list[Job]:
        """
        Load jobs from the snapshot.

        Jobs found in ``processing`` are demoted to ``pending``: no worker
        survives a restart.

        Returns:
            Loaded jobs, or an empty list if the file is missing or unreadable
        """
        if not self.file_path.exists():
            logger.info(f"No queue snapshot at {self.file_path}, starting fresh")
            return []

        try:
            records = json.loads(self.file_path.read_text(encoding="utf-8"))
            if not isinstance(records, list):
                raise ValueError("snapshot root is not a list")
            jobs = [Job.from_dict(record) for record in records]
        except (OSError, ValueError, KeyError, TypeError) as e:
            error = PersistenceError(
                f"Failed to load queue snapshot: {e}",
                file_path=self.file_path,
                code=ErrorCode.E301,
            )
            logger.error(str(error))
            return []

        demoted = 0
        for job in jobs:
            if job.status == JobStatus.PROCESSING:
                job.status = JobStatus.PENDING
                job.started_at = None
                demoted += 1

        logger.info(
            f"Loaded {len(jobs)} jobs from {self.file_path} "
            f"({demoted} in-flight jobs returned to pending)"
        )
        return jobs

    def save(self, jobs: list[Job]) -> bool:
        """Write the snapshot synchronously."""
        return self.write_text(self.serialize(jobs))

    def write_text(self, content: str) -> bool:
        temp_path = self._temp_path()
        try:
            self.file_path.parent.mkdir(parents=True, exist_ok=True)
            temp_path.write_text(content, encoding="utf-8")
            os.replace(temp_path, self.file_path)
        except OSError as e:
            self._report_write_failure(e, temp_path)
            return False
        logger.debug(f"Job queue saved to {self.file_path}")
        return True

    async def save_async(self, content: str) -> bool:
        """
        Write already-serialised snapshot content without blocking the loop.

        Concurrent calls are serialised so an older snapshot can never
        replace a newer one.
        """
        async with self._write_lock:
            temp_path = self._temp_path()
            try:
                self.file_path.parent.mkdir(parents=True, exist_ok=True)
                async with aiofiles.open(temp_path, "w", encoding="utf-8") as f:
                    await f.write(content)
                os.replace(temp_path, self.file_path)
            except OSError as e:
                self._report_write_failure(e, temp_path)
                return False
        logger.debug(f"Job queue saved to {self.file_path}")
        return True

    def _report_write_failure(self, exc: OSError, temp_path: Path) -> None:
        error = PersistenceError(f"Failed to save job queue: {exc}", file_path=self.file_path)
        logger.error(str(error))
        try:
            temp_path.unlink(missing_ok=True)
        except OSError:
            logger.debug(f"Could not remove temp snapshot {temp_path}")
