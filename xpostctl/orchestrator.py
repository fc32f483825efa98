"""Publish job orchestration."""

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union
from .broadcast import Broadcaster
from .cache import JobCache, JobSnapshot
from .errors import (
    JobStoppedError,
    NotFoundError,
    ValidationError,
    WorkerUnreachableError,
)
from .models import (
    ALL_CHANNELS,
    Article,
    ChannelId,
    ChannelPatch,
    ChannelStage,
    ChannelState,
    ChannelStatus,
    Job,
    PublishAction,
    initial_state,
    utcnow,
)
from .protocol import ContinueRequest, RetryRequest, StopRequest, WorkerMessage
from .registry import WorkerRegistry
from .storage import JobStore
from .transport import ClientTransport, WorkerSpawner, WorkerTransport

logger = logging.getLogger(__name__)


class Orchestrator:
    """Creates publish jobs, fans them out to channel workers and reconciles state.

    The job cache and worker registry are only touched while holding
    ``self._lock``. Store access, worker delivery and broadcasts happen outside
    it. Snapshots taken under the lock carry a revision; ``_commit`` persists
    and broadcasts them per job in revision order and skips any snapshot that
    a newer one already superseded.
    """

    def __init__(
        self,
        store: JobStore,
        spawner: WorkerSpawner,
        workers: WorkerTransport,
        client: Optional[ClientTransport] = None,
        clock: Callable[[], datetime] = utcnow,
        delivery_timeout: float = 5.0,
        spawn_timeout: float = 30.0,
    ):
        self.store = store
        self.spawner = spawner
        self.workers = workers
        self.broadcaster = Broadcaster(client, timeout=delivery_timeout)
        self.clock = clock
        self.delivery_timeout = delivery_timeout
        self.spawn_timeout = spawn_timeout

        self._lock = asyncio.Lock()
        self._cache = JobCache()
        self._registry = WorkerRegistry()
        self._commit_locks: Dict[str, asyncio.Lock] = {}
        self._committed: Dict[str, int] = {}

    # StartJob

    async def start_job(
        self,
        action: Union[PublishAction, str],
        article: Union[Article, Dict[str, Any]],
        channels: Optional[Iterable[Union[ChannelId, str]]] = None,
        focus_channel: Optional[Union[ChannelId, str]] = None,
        client_handle: Optional[str] = None,
    ) -> str:
        """Create a job and spawn one worker per selected channel.

        Returns the new job id. Raises ValidationError for malformed input, in
        which case nothing is stored.
        """
        try:
            action = PublishAction(action)
            if not isinstance(article, Article):
                article = Article.model_validate(article)
            selected = self._select_channels(channels)
            focus = ChannelId(focus_channel) if focus_channel else None
        except ValueError as e:
            raise ValidationError(f"Invalid job request: {e}") from e

        job = Job(
            job_id=uuid.uuid4().hex,
            created_at=self.clock(),
            action=action,
            article=article,
            channels=selected,
            source_client_handle=client_handle,
        )
        states = initial_state(selected)

        evicted = await asyncio.to_thread(self.store.put_job, job)
        async with self._lock:
            self._forget(evicted)
            self._cache.add(job, states)
        await asyncio.to_thread(self.store.put_state, job.job_id, states)
        logger.info(
            "Job %s created: %s to %s", job.job_id, action.value,
            ", ".join(c.value for c in selected),
        )

        await asyncio.gather(
            *(self._spawn_channel(job, channel_id, channel_id == focus) for channel_id in selected)
        )

        async with self._lock:
            if job.job_id not in self._cache:
                # Evicted while spawning; the id is still a valid answer.
                return job.job_id
            snapshot = self._cache.snapshot(job.job_id)
        await self._commit(snapshot)
        return job.job_id

    @staticmethod
    def _select_channels(channels: Optional[Iterable[Union[ChannelId, str]]]) -> List[ChannelId]:
        selected = [ChannelId(c) for c in (channels or [])]
        if not selected:
            return list(ALL_CHANNELS)
        return list(dict.fromkeys(selected))

    async def _spawn_channel(self, job: Job, channel_id: ChannelId, focus: bool) -> None:
        try:
            handle = await asyncio.wait_for(
                self.spawner.spawn(job, channel_id, focus), self.spawn_timeout
            )
        except Exception as e:
            logger.warning("Failed to spawn worker for %s/%s: %s", job.job_id, channel_id.value, e)
            failed = ChannelState(
                channel_id=channel_id,
                status=ChannelStatus.FAILED,
                stage=ChannelStage.INIT,
                user_message="Failed to start the channel worker",
                user_suggestion="Retry the job or check the platform entry page",
                dev_details={"message": str(e) or type(e).__name__},
                updated_at=self.clock(),
            )
            async with self._lock:
                if job.job_id in self._cache and not self._cache.get(job.job_id).job.stopped:
                    self._cache.set_channel(job.job_id, failed)
            return

        async with self._lock:
            if job.job_id not in self._cache:
                return
            self._registry.bind(handle, job.job_id, channel_id)
            entry = self._cache.get(job.job_id)
            stopped = entry.job.stopped
            current = entry.states.get(channel_id)
            # A fast worker may already have reported; never roll it back.
            if not stopped and (current is None or current.status == ChannelStatus.NOT_STARTED):
                self._cache.set_channel(
                    job.job_id,
                    ChannelState(
                        channel_id=channel_id,
                        status=ChannelStatus.RUNNING,
                        stage=ChannelStage.OPEN_ENTRY,
                        updated_at=self.clock(),
                        worker_handle=handle,
                    ),
                )

        if stopped:
            await self._send_stop(job.job_id, {channel_id: handle})

    # GetContext

    async def get_context(self, handle: str) -> Tuple[Job, ChannelId]:
        """Resolve a worker handle to its job and channel."""
        async with self._lock:
            binding = self._registry.lookup(handle)
        await self._hydrate(binding.job_id)
        async with self._lock:
            job = self._cache.get(binding.job_id).job
        return job, binding.channel_id

    # ChannelUpdate

    async def channel_update(
        self,
        job_id: str,
        channel_id: Union[ChannelId, str],
        patch: Union[ChannelPatch, Dict[str, Any]],
        handle: Optional[str] = None,
    ) -> bool:
        """Merge a worker's patch into one channel's state.

        Returns False when the job is stopped: the update is acknowledged but
        discarded.
        """
        channel_id = self._channel(channel_id)
        try:
            if not isinstance(patch, ChannelPatch):
                patch = ChannelPatch.model_validate(patch)
        except ValueError as e:
            raise ValidationError(f"Invalid channel update: {e}") from e

        await self._hydrate(job_id)
        async with self._lock:
            entry = self._cache.get(job_id)
            if entry.job.stopped:
                logger.debug(
                    "Discarding update for stopped job %s/%s", job_id, channel_id.value
                )
                return False
            if channel_id not in entry.job.channels:
                raise NotFoundError(f"Channel {channel_id.value} is not part of job {job_id}")
            self._cache.merge(job_id, channel_id, patch, handle, self.clock())
            if handle:
                self._registry.bind(handle, job_id, channel_id)
            snapshot = self._cache.snapshot(job_id)

        await self._commit(snapshot)
        return True

    # RequestStop

    async def request_stop(self, job_id: str) -> bool:
        """Stop a job. Idempotent; returns True only for the call that stopped it."""
        await self._hydrate(job_id)
        async with self._lock:
            entry = self._cache.get(job_id)
            if entry.job.stopped:
                return False
            job = self._cache.mark_stopped(job_id, self.clock())
            targets = self._known_handles(job_id)
            snapshot = self._cache.snapshot(job_id)

        stored = await asyncio.to_thread(self.store.update_job, job)
        logger.info("Job %s stopped", job_id)
        await self._send_stop(job_id, targets)
        if not stored:
            # Expired or evicted meanwhile; keep it out of the store.
            async with self._lock:
                self._forget([job_id])
            return True
        await self._commit(snapshot)
        return True

    async def _send_stop(self, job_id: str, targets: Dict[ChannelId, str]) -> None:
        async def deliver(channel_id: ChannelId, handle: str) -> None:
            try:
                await self._forward(handle, StopRequest(job_id=job_id))
            except WorkerUnreachableError as e:
                logger.warning("Failed to send stop to %s/%s: %s", job_id, channel_id.value, e)

        await asyncio.gather(*(deliver(c, h) for c, h in targets.items()))

    # RequestRetry / RequestContinue

    async def request_retry(self, job_id: str, channel_id: Union[ChannelId, str]) -> None:
        channel_id = self._channel(channel_id)
        await self._control(RetryRequest(job_id=job_id, channel_id=channel_id))

    async def request_continue(self, job_id: str, channel_id: Union[ChannelId, str]) -> None:
        channel_id = self._channel(channel_id)
        await self._control(ContinueRequest(job_id=job_id, channel_id=channel_id))

    @staticmethod
    def _channel(channel_id: Union[ChannelId, str]) -> ChannelId:
        try:
            return ChannelId(channel_id)
        except ValueError as e:
            raise NotFoundError(f"Unknown channel {channel_id}") from e

    async def _control(self, message: Union[RetryRequest, ContinueRequest]) -> None:
        job_id, channel_id = message.job_id, message.channel_id
        await self._hydrate(job_id)
        async with self._lock:
            entry = self._cache.get(job_id)
            if entry.job.stopped:
                raise JobStoppedError(f"Job {job_id} has been stopped")
            if channel_id not in entry.job.channels:
                raise NotFoundError(f"Channel {channel_id.value} is not part of job {job_id}")
            handle = self._known_handles(job_id).get(channel_id)
        if not handle:
            raise NotFoundError(f"No worker known for {job_id}/{channel_id.value}")
        await self._forward(handle, message)
        logger.info("Forwarded %s to %s/%s", message.type, job_id, channel_id.value)

    async def _forward(self, handle: str, message: WorkerMessage) -> None:
        try:
            await asyncio.wait_for(self.workers.send(handle, message), self.delivery_timeout)
        except WorkerUnreachableError:
            raise
        except Exception as e:
            raise WorkerUnreachableError(handle, str(e) or type(e).__name__) from e

    # Reads and housekeeping

    async def snapshot(self, job_id: str) -> JobSnapshot:
        """Current job and channel states."""
        await self._hydrate(job_id)
        async with self._lock:
            return self._cache.snapshot(job_id)

    async def sweep(self, now: Optional[datetime] = None) -> int:
        """Remove expired jobs from the store and forget them here."""
        removed = await asyncio.to_thread(self.store.sweep, now)
        stored = await asyncio.to_thread(self.store.job_ids)
        async with self._lock:
            self._forget(job_id for job_id in self._cache.job_ids() if job_id not in stored)
        return removed

    async def housekeeping(self, interval: float = 600.0) -> None:
        """Sweep every `interval` seconds until cancelled."""
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sweep()
            except Exception as e:
                logger.error("Housekeeping sweep failed: %s", e)

    # Internals

    async def _hydrate(self, job_id: str) -> None:
        """Load a job into the cache from the store if it is not there yet."""
        async with self._lock:
            if job_id in self._cache:
                return

        job = await asyncio.to_thread(self.store.get_job, job_id)
        try:
            states = await asyncio.to_thread(self.store.get_state, job_id)
        except NotFoundError:
            states = {}
        for channel_id in job.channels:
            if channel_id not in states:
                states[channel_id] = ChannelState(channel_id=channel_id)

        async with self._lock:
            if job_id in self._cache:
                return
            self._cache.add(job, states)
            for channel_id, state in states.items():
                if state.worker_handle and self._registry.handle_for(job_id, channel_id) is None:
                    self._registry.bind(state.worker_handle, job_id, channel_id)

    def _known_handles(self, job_id: str) -> Dict[ChannelId, str]:
        """Last known handle per channel. Caller holds the lock."""
        entry = self._cache.get(job_id)
        handles = {
            channel_id: state.worker_handle
            for channel_id, state in entry.states.items()
            if state.worker_handle
        }
        handles.update(self._registry.handles_for_job(job_id))
        return {c: h for c, h in handles.items() if c in entry.job.channels}

    def _forget(self, job_ids: Iterable[str]) -> None:
        """Drop every trace of jobs that left the store. Caller holds the lock."""
        for job_id in list(job_ids):
            self._cache.discard(job_id)
            self._registry.forget_job(job_id)
            self._commit_locks.pop(job_id, None)
            self._committed.pop(job_id, None)
            logger.debug("Forgot job %s", job_id)

    async def _commit(self, snapshot: JobSnapshot) -> None:
        """Persist and broadcast a snapshot unless a newer one got there first."""
        job_id = snapshot.job.job_id
        lock = self._commit_locks.setdefault(job_id, asyncio.Lock())
        async with lock:
            if snapshot.revision <= self._committed.get(job_id, -1):
                return
            self._committed[job_id] = snapshot.revision
            await asyncio.to_thread(self.store.put_state, job_id, snapshot.states)
            await self.broadcaster.publish(snapshot)
