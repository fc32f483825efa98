"""In-memory mirror of active jobs and their channel state."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional
from .errors import NotFoundError
from .models import ChannelId, ChannelPatch, ChannelState, Job, StateMap


@dataclass
class CachedJob:
    job: Job
    states: StateMap = field(default_factory=dict)
    revision: int = 0


@dataclass(frozen=True)
class JobSnapshot:
    """Point-in-time copy of one job, safe to use outside the orchestrator lock."""
    job: Job
    states: StateMap
    revision: int


class JobCache:
    """Authoritative per-job channel state while the orchestrator is running.

    Every mutation bumps the job's revision so that snapshots taken under the
    orchestrator lock can be persisted and broadcast in order afterwards.
    """

    def __init__(self):
        self._entries: Dict[str, CachedJob] = {}

    def __contains__(self, job_id: str) -> bool:
        return job_id in self._entries

    def get(self, job_id: str) -> CachedJob:
        entry = self._entries.get(job_id)
        if entry is None:
            raise NotFoundError(f"Job {job_id} not found")
        return entry

    def add(self, job: Job, states: StateMap) -> CachedJob:
        """Insert a job unless another caller hydrated it first."""
        entry = self._entries.get(job.job_id)
        if entry is None:
            entry = CachedJob(job=job, states=dict(states))
            self._entries[job.job_id] = entry
        return entry

    def set_channel(self, job_id: str, state: ChannelState) -> None:
        entry = self.get(job_id)
        entry.states[state.channel_id] = state
        entry.revision += 1

    def merge(
        self,
        job_id: str,
        channel_id: ChannelId,
        patch: ChannelPatch,
        handle: Optional[str],
        now: datetime,
    ) -> ChannelState:
        """Overlay patch on one channel's state. Other channels are not read."""
        entry = self.get(job_id)
        previous = entry.states.get(channel_id) or ChannelState(channel_id=channel_id)
        update = patch.changes()
        update["channel_id"] = channel_id
        update["updated_at"] = now
        update["worker_handle"] = handle or previous.worker_handle
        merged = previous.model_copy(update=update)
        entry.states[channel_id] = merged
        entry.revision += 1
        return merged

    def mark_stopped(self, job_id: str, when: datetime) -> Job:
        entry = self.get(job_id)
        entry.job = entry.job.model_copy(update={"stopped_at": when})
        entry.revision += 1
        return entry.job

    def snapshot(self, job_id: str) -> JobSnapshot:
        entry = self.get(job_id)
        return JobSnapshot(job=entry.job, states=dict(entry.states), revision=entry.revision)

    def discard(self, job_id: str) -> None:
        self._entries.pop(job_id, None)

    def job_ids(self) -> List[str]:
        return list(self._entries)
