"""In-process hosting of channel workers and the client side of broadcasts."""

import asyncio
import functools
import itertools
import logging
from typing import TYPE_CHECKING, Dict, List
from .automation import AutomationFactory
from .cancel import DEFAULT_POLL_INTERVAL
from .errors import WorkerUnreachableError
from .models import SETTLED_STATUSES, ChannelId, Job
from .protocol import Dispatcher, JobBroadcast, WorkerMessage
from .worker import Worker

if TYPE_CHECKING:
    from .orchestrator import Orchestrator

logger = logging.getLogger(__name__)


class LocalRuntime:
    """Spawner and worker transport that runs every worker as an asyncio task.

    Workers talk to the orchestrator through the protocol dispatcher, with
    their handle as sender, exactly as an out-of-process worker would.
    """

    def __init__(self, automation_factory: AutomationFactory, poll_interval: float = DEFAULT_POLL_INTERVAL):
        self.automation_factory = automation_factory
        self.poll_interval = poll_interval
        self.dispatcher = None
        self.workers: Dict[str, Worker] = {}
        self._ids = itertools.count(1)

    def attach(self, orchestrator: "Orchestrator") -> Dispatcher:
        self.dispatcher = Dispatcher(orchestrator)
        return self.dispatcher

    async def spawn(self, job: Job, channel_id: ChannelId, focus: bool) -> str:
        if self.dispatcher is None:
            raise RuntimeError("LocalRuntime is not attached to an orchestrator")
        handle = f"{channel_id.value}-{next(self._ids)}"
        worker = Worker(
            handle,
            self.automation_factory(channel_id),
            functools.partial(self.dispatcher.handle, sender=handle),
            poll_interval=self.poll_interval,
        )
        self.workers[handle] = worker
        worker.start()
        logger.debug("Spawned worker %s for job %s (focus=%s)", handle, job.job_id, focus)
        return handle

    async def send(self, handle: str, message: WorkerMessage) -> None:
        worker = self.workers.get(handle)
        if worker is None:
            raise WorkerUnreachableError(handle, "no such worker in this process")
        await worker.receive(message)

    async def close(self) -> None:
        """Cancel every worker and wait for their runs to unwind."""
        tasks = []
        for worker in self.workers.values():
            worker.token.cancel()
            if worker.task is not None:
                tasks.append(worker.task)
        await asyncio.gather(*tasks, return_exceptions=True)


class ClientInbox:
    """Client transport that keeps the newest snapshot per job.

    Snapshots older than one already received are dropped.
    """

    def __init__(self):
        self.latest: Dict[str, JobBroadcast] = {}
        self.received: List[JobBroadcast] = []
        self.queue: "asyncio.Queue[JobBroadcast]" = asyncio.Queue()

    async def send(self, client_handle: str, message: JobBroadcast) -> None:
        current = self.latest.get(message.job_id)
        if current is not None and message.revision <= current.revision:
            return
        self.latest[message.job_id] = message
        self.received.append(message)
        self.queue.put_nowait(message)


def is_settled(broadcast: JobBroadcast) -> bool:
    """True once the job is stopped or every channel waits for nobody but the user."""
    if broadcast.stopped_at is not None:
        return True
    return all(state.status in SETTLED_STATUSES for state in broadcast.state.values())
