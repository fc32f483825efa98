"""Interfaces of the collaborators the orchestrator talks to."""

from typing import Protocol
from .models import ChannelId, Job
from .protocol import JobBroadcast, WorkerMessage


class WorkerSpawner(Protocol):
    """Starts one channel worker and returns its opaque handle."""

    async def spawn(self, job: Job, channel_id: ChannelId, focus: bool) -> str:
        ...


class WorkerTransport(Protocol):
    """Delivers a control message to a worker identified by its handle."""

    async def send(self, handle: str, message: WorkerMessage) -> None:
        ...


class ClientTransport(Protocol):
    """Pushes job snapshots to the client that started the job."""

    async def send(self, client_handle: str, message: JobBroadcast) -> None:
        ...
