"""Best-effort delivery of job snapshots to the originating client."""

import asyncio
import logging
from typing import Optional
from .cache import JobSnapshot
from .protocol import JobBroadcast
from .transport import ClientTransport

logger = logging.getLogger(__name__)


def build_broadcast(snapshot: JobSnapshot) -> JobBroadcast:
    job = snapshot.job
    return JobBroadcast(
        job_id=job.job_id,
        channels=list(job.channels),
        state=dict(snapshot.states),
        stopped_at=job.stopped_at,
        revision=snapshot.revision,
    )


class Broadcaster:
    """Pushes full job snapshots to the job's client.

    Delivery never raises: an unreachable or slow client is logged and the
    caller carries on. Snapshots are complete, so a client that missed some can
    rebuild everything from the next one.
    """

    def __init__(self, transport: Optional[ClientTransport], timeout: float = 5.0):
        self.transport = transport
        self.timeout = timeout

    async def publish(self, snapshot: JobSnapshot) -> bool:
        client = snapshot.job.source_client_handle
        if self.transport is None or not client:
            return False

        message = build_broadcast(snapshot)
        try:
            await asyncio.wait_for(self.transport.send(client, message), self.timeout)
        except Exception as e:
            logger.warning(
                "Failed to broadcast job %s to client %s: %s", snapshot.job.job_id, client, e
            )
            return False
        return True
