"""
Job record store.

The orchestrator only needs get / create / merge-patch by id. Updates follow
merge-patch semantics: ``paths`` and ``config`` are shallow-merged into the
existing record, every other field in the patch replaces the stored value.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from paperdeck.models.schemas import JobRecord, utcnow
from paperdeck.services.storage import ArtifactStore

logger = logging.getLogger(__name__)

MERGED_FIELDS = ("paths", "config")


def merge_patch(current: JobRecord, patch: Dict[str, Any]) -> JobRecord:
    """Apply a merge-patch to a job record and return the new record."""
    data = current.model_dump(by_alias=False)
    for key, value in patch.items():
        if key == "errorStage":
            key = "error_stage"
        if key in MERGED_FIELDS and value is not None:
            if hasattr(value, "model_dump"):
                value = value.model_dump(exclude_unset=True)
            data[key] = {**data[key], **value}
        else:
            data[key] = value
    data["updated_at"] = utcnow()
    return JobRecord.model_validate(data)


class JobStore(ABC):
    @abstractmethod
    async def get(self, job_id: str) -> Optional[JobRecord]:
        ...

    @abstractmethod
    async def create(self, job: JobRecord) -> JobRecord:
        ...

    @abstractmethod
    async def update(self, job_id: str, patch: Dict[str, Any]) -> Optional[JobRecord]:
        """Merge-patch a job; returns None if the job does not exist."""
        ...


class FileJobStore(JobStore):
    """One JSON file per job under ``<root>/jobs/<id>/job.json``."""

    def __init__(self, storage: ArtifactStore):
        self.storage = storage
        self._lock = asyncio.Lock()

    def _job_file(self, job_id: str):
        return self.storage.jobs_dir() / job_id / "job.json"

    async def get(self, job_id: str) -> Optional[JobRecord]:
        return self.storage.read_model(self._job_file(job_id), JobRecord)

    async def create(self, job: JobRecord) -> JobRecord:
        async with self._lock:
            self.storage.write_json(self._job_file(job.id), job)
        logger.info(f"Created job record {job.id}")
        return job

    async def update(self, job_id: str, patch: Dict[str, Any]) -> Optional[JobRecord]:
        async with self._lock:
            current = self.storage.read_model(self._job_file(job_id), JobRecord)
            if current is None:
                return None
            updated = merge_patch(current, patch)
            self.storage.write_json(self._job_file(job_id), updated)
            return updated
