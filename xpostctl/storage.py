"""Persistent job storage using JSON files."""

import json
import logging
import os
import sys
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Set
from .errors import NotFoundError
from .models import ChannelId, ChannelState, Config, Job, StateMap, utcnow

# Handle platform-specific locking
if sys.platform == "win32":
    import msvcrt
else:
    import fcntl

logger = logging.getLogger(__name__)

JOB_KEY_PREFIX = "job:"
STATE_KEY_PREFIX = "state:"


def job_key(job_id: str) -> str:
    return f"{JOB_KEY_PREFIX}{job_id}"


def state_key(job_id: str) -> str:
    return f"{STATE_KEY_PREFIX}{job_id}"


class JobStore:
    """File-based key-value storage for jobs and their channel state maps.

    Every job occupies two records, ``job:<jobId>`` and ``state:<jobId>``, in a
    single JSON document. All access goes through one lock: a thread mutex for
    callers in this process plus an exclusive file lock for other processes
    sharing the data directory. Writes replace the document atomically, so a
    reader never observes half of a job.
    """

    def __init__(self, data_dir: str = ".xpostctl", clock: Callable[[], datetime] = utcnow):
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.records_file = self.data_dir / "records.json"
        self.config_file = self.data_dir / "config.json"
        self.lock_file = self.data_dir / "store.lock"
        self.clock = clock
        self._mutex = threading.RLock()

        # Initialize files if they don't exist
        with self._locked():
            if not self.records_file.exists():
                self._write_json(self.records_file, {})
            if not self.config_file.exists():
                self._write_json(self.config_file, Config().model_dump())

    def _write_json(self, file_path: Path, data: Any) -> None:
        """Write data to JSON file with atomic write."""
        temp_file = file_path.with_suffix(".tmp")
        with open(temp_file, "w") as f:
            json.dump(data, f, indent=2, default=str)
        temp_file.replace(file_path)

    def _read_json(self, file_path: Path) -> Any:
        """Read JSON file safely."""
        if not file_path.exists():
            return {}
        with open(file_path, "r") as f:
            return json.load(f)

    @contextmanager
    def _locked(self) -> Iterator[None]:
        """Hold the store lock for a read or a read-modify-write."""
        with self._mutex:
            fd = os.open(str(self.lock_file), os.O_CREAT | os.O_WRONLY, 0o644)
            try:
                if sys.platform == "win32":
                    msvcrt.locking(fd, msvcrt.LK_LOCK, 1)
                else:
                    fcntl.flock(fd, fcntl.LOCK_EX)
                try:
                    yield
                finally:
                    if sys.platform == "win32":
                        msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)
                    else:
                        fcntl.flock(fd, fcntl.LOCK_UN)
            finally:
                os.close(fd)

    def _records(self) -> Dict[str, Any]:
        return self._read_json(self.records_file)

    @staticmethod
    def _jobs_in(records: Dict[str, Any]) -> List[Job]:
        return [
            Job.model_validate(value)
            for key, value in records.items()
            if key.startswith(JOB_KEY_PREFIX)
        ]

    @staticmethod
    def _drop(records: Dict[str, Any], job_id: str) -> None:
        records.pop(job_key(job_id), None)
        records.pop(state_key(job_id), None)

    def _expired_ids(self, records: Dict[str, Any], now: datetime, ttl: timedelta) -> List[str]:
        return [job.job_id for job in self._jobs_in(records) if now - job.created_at > ttl]

    def _over_capacity_ids(
        self, records: Dict[str, Any], max_jobs: int, keep: Optional[str] = None
    ) -> List[str]:
        jobs = self._jobs_in(records)
        excess = len(jobs) - max_jobs
        if excess <= 0:
            return []
        # The job being written is never its own eviction victim.
        candidates = sorted(
            (job for job in jobs if job.job_id != keep),
            key=lambda j: (j.created_at, j.job_id),
        )
        return [job.job_id for job in candidates[:excess]]

    def put_job(self, job: Job) -> List[str]:
        """Upsert a job, then sweep expired jobs and enforce the capacity cap.

        Returns the ids of the jobs removed by that hygiene pass.
        """
        config = self.get_config()
        with self._locked():
            records = self._records()
            records[job_key(job.job_id)] = job.to_wire()

            removed = self._expired_ids(
                records, self.clock(), timedelta(seconds=config.job_ttl_seconds)
            )
            for job_id in removed:
                self._drop(records, job_id)
            evicted = self._over_capacity_ids(records, config.max_jobs, keep=job.job_id)
            for job_id in evicted:
                self._drop(records, job_id)

            self._write_json(self.records_file, records)

        if removed:
            logger.info("Removed %d expired job(s): %s", len(removed), ", ".join(removed))
        if evicted:
            logger.info("Evicted %d job(s) over capacity: %s", len(evicted), ", ".join(evicted))
        return removed + evicted

    def update_job(self, job: Job) -> bool:
        """Overwrite a job that is still stored. Returns False if it is gone."""
        with self._locked():
            records = self._records()
            if job_key(job.job_id) not in records:
                logger.debug("Not updating missing job %s", job.job_id)
                return False
            records[job_key(job.job_id)] = job.to_wire()
            self._write_json(self.records_file, records)
        return True

    def get_job(self, job_id: str) -> Job:
        """Get a job by ID."""
        with self._locked():
            data = self._records().get(job_key(job_id))
        if data is None:
            raise NotFoundError(f"Job {job_id} not found")
        return Job.model_validate(data)

    def put_state(self, job_id: str, states: StateMap) -> bool:
        """Store a job's full channel state map.

        State is only written while its job exists; a snapshot arriving after
        the job expired or was evicted is dropped and False is returned.
        """
        with self._locked():
            records = self._records()
            if job_key(job_id) not in records:
                logger.debug("Dropping state for missing job %s", job_id)
                return False
            records[state_key(job_id)] = {
                channel_id.value: state.to_wire() for channel_id, state in states.items()
            }
            self._write_json(self.records_file, records)
        return True

    def get_state(self, job_id: str) -> StateMap:
        """Get a job's channel state map."""
        with self._locked():
            data = self._records().get(state_key(job_id))
        if data is None:
            raise NotFoundError(f"State for job {job_id} not found")
        return {
            ChannelId(channel_id): ChannelState.model_validate(value)
            for channel_id, value in data.items()
        }

    def delete(self, job_id: str) -> bool:
        """Remove a job and its state. Returns False if nothing was stored."""
        with self._locked():
            records = self._records()
            existed = job_key(job_id) in records or state_key(job_id) in records
            if existed:
                self._drop(records, job_id)
                self._write_json(self.records_file, records)
        return existed

    def sweep(self, now: Optional[datetime] = None) -> int:
        """Delete every job older than the configured TTL. Returns the count removed."""
        now = now or self.clock()
        ttl = timedelta(seconds=self.get_config().job_ttl_seconds)
        with self._locked():
            records = self._records()
            expired = self._expired_ids(records, now, ttl)
            if expired:
                for job_id in expired:
                    self._drop(records, job_id)
                self._write_json(self.records_file, records)
        if expired:
            logger.info("Swept %d expired job(s)", len(expired))
        return len(expired)

    def enforce_capacity(self, max_jobs: Optional[int] = None) -> List[str]:
        """Delete the oldest jobs until at most max_jobs remain."""
        if max_jobs is None:
            max_jobs = self.get_config().max_jobs
        with self._locked():
            records = self._records()
            evicted = self._over_capacity_ids(records, max_jobs)
            if evicted:
                for job_id in evicted:
                    self._drop(records, job_id)
                self._write_json(self.records_file, records)
        return evicted

    def list_jobs(self) -> List[Job]:
        """All stored jobs, newest first."""
        with self._locked():
            jobs = self._jobs_in(self._records())
        return sorted(jobs, key=lambda j: j.created_at, reverse=True)

    def job_ids(self) -> Set[str]:
        with self._locked():
            records = self._records()
        return {key[len(JOB_KEY_PREFIX):] for key in records if key.startswith(JOB_KEY_PREFIX)}

    def get_config(self) -> Config:
        """Get current configuration."""
        config_data = self._read_json(self.config_file)
        return Config(**config_data)

    def set_config(self, config: Config) -> None:
        """Update configuration."""
        with self._locked():
            self._write_json(self.config_file, config.model_dump())

    def get_stats(self) -> Dict[str, int]:
        """Get job and channel statistics."""
        with self._locked():
            records = self._records()
        jobs = self._jobs_in(records)

        stats = {
            "jobs": len(jobs),
            "stopped": sum(1 for job in jobs if job.stopped),
            "not_started": 0,
            "running": 0,
            "success": 0,
            "failed": 0,
            "waiting_user": 0,
        }

        for key, value in records.items():
            if not key.startswith(STATE_KEY_PREFIX):
                continue
            for channel_state in value.values():
                status = channel_state.get("status", "not_started")
                if status in stats:
                    stats[status] += 1

        return stats
