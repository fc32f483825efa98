"""Worker handle routing table."""

from dataclasses import dataclass
from typing import Dict, Optional, Tuple
from .errors import NotFoundError
from .models import ChannelId


@dataclass(frozen=True)
class WorkerBinding:
    job_id: str
    channel_id: ChannelId


class WorkerRegistry:
    """Maps worker handles to (job, channel) and each channel to its last handle.

    Holds ids only; jobs and states are owned elsewhere. Not synchronized:
    the orchestrator serializes every access.
    """

    def __init__(self):
        self._by_handle: Dict[str, WorkerBinding] = {}
        self._by_channel: Dict[Tuple[str, ChannelId], str] = {}

    def bind(self, handle: str, job_id: str, channel_id: ChannelId) -> None:
        self._by_handle[handle] = WorkerBinding(job_id, channel_id)
        self._by_channel[(job_id, channel_id)] = handle

    def lookup(self, handle: str) -> WorkerBinding:
        binding = self._by_handle.get(handle)
        if binding is None:
            raise NotFoundError(f"No context for worker {handle}")
        return binding

    def handle_for(self, job_id: str, channel_id: ChannelId) -> Optional[str]:
        return self._by_channel.get((job_id, channel_id))

    def handles_for_job(self, job_id: str) -> Dict[ChannelId, str]:
        return {
            channel_id: handle
            for (owner, channel_id), handle in self._by_channel.items()
            if owner == job_id
        }

    def forget_job(self, job_id: str) -> None:
        self._by_handle = {
            handle: binding
            for handle, binding in self._by_handle.items()
            if binding.job_id != job_id
        }
        self._by_channel = {
            key: handle for key, handle in self._by_channel.items() if key[0] != job_id
        }
