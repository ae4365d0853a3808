"""
FileJobStore — JSON file-backed store with persistence across restarts.

Data layout:
  {data_dir}/
    jobs.json        {job_id: job}

Features:
  - Survives process restarts (unlike InMemoryJobStore)
  - No external dependencies (no database server)
  - Flush on every mutation, written atomically via rename
  - Single-process only (no cross-process write safety)

Best for: small deployments, demos, single-box installs.
"""
from __future__ import annotations

import json
import structlog
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError

from database.store_memory import InMemoryJobStore
from job_queue.errors import StorageError
from models.schemas import Job

logger = structlog.get_logger()


class FileJobStore(InMemoryJobStore):
    """
    Extends InMemoryJobStore with JSON file persistence.

    On init: loads all jobs from disk into memory.
    On every write: rewrites jobs.json.
    """

    def __init__(self, data_dir: str = "./data", default_priority: int = 5,
                 default_max_attempts: int = 3):
        super().__init__(default_priority, default_max_attempts)
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._load()
        logger.info("file_store_initialized", data_dir=str(self._data_dir), jobs=len(self._jobs))

    # ── Load / Save ───────────────────────────────────────

    @property
    def path(self) -> Path:
        return self._data_dir / "jobs.json"

    def _load(self):
        if not self.path.exists():
            return
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("file_store_load_error", path=str(self.path), error=str(e))
            return
        if not isinstance(data, dict):
            logger.warning("file_store_load_error", path=str(self.path), error="expected an object")
            return
        for job_id, raw in data.items():
            try:
                self._jobs[job_id] = Job.model_validate(raw)
            except PydanticValidationError as e:
                logger.warning("file_store_skipped_job", job_id=job_id, error=str(e))

    def _changed(self) -> None:
        self.flush()

    def flush(self):
        """Write every job to disk."""
        data = {job_id: job.model_dump(mode="json") for job_id, job in self._jobs.items()}
        tmp_path = self.path.with_suffix(".tmp")
        try:
            with open(tmp_path, "w") as f:
                json.dump(data, f, indent=2)
            tmp_path.replace(self.path)  # atomic on POSIX
        except OSError as e:
            raise StorageError(f"Failed to write {self.path}: {e}") from e
