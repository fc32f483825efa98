"""Channel worker driving one platform through the stage machine."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional
from .automation import ChannelAutomation, UserActionRequired
from .cancel import DEFAULT_POLL_INTERVAL, CancellationToken, Cancelled
from .models import ChannelId, ChannelPatch, ChannelStage, ChannelStatus, Job, PublishAction
from .protocol import (
    ChannelUpdateMessage,
    ContinueRequest,
    GetContextRequest,
    GetContextResponse,
    Response,
    RetryRequest,
    StopRequest,
    WorkerMessage,
)

logger = logging.getLogger(__name__)

# Sends a protocol message to the orchestrator on behalf of this worker.
Link = Callable[[Any], Awaitable[Response]]

STAGE_MESSAGES = {
    ChannelStage.OPEN_ENTRY: "Opened the editor page",
    ChannelStage.DETECT_LOGIN: "Checking login state",
    ChannelStage.FILL_SOURCE_URL: "Filling the original article link",
    ChannelStage.FILL_TITLE: "Filling the title",
    ChannelStage.FILL_CONTENT: "Filling the content",
    ChannelStage.SAVE_DRAFT: "Saving as draft",
    ChannelStage.SUBMIT_PUBLISH: "Publishing",
    ChannelStage.CONFIRM_SUCCESS: "Confirming the result",
}


class ContextUnavailable(Exception):
    """The orchestrator does not know this worker's handle."""


class Worker:
    """Runs one channel of one job.

    A run resolves the worker's context, then performs each stage of the
    automation's plan, reporting a ChannelUpdate before every stage and once at
    the end. Stop cancels the run for good; Retry restarts from the first
    stage; Continue resumes at the stage that asked for the user.
    """

    def __init__(
        self,
        handle: str,
        automation: ChannelAutomation,
        link: Link,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        context_attempts: int = 5,
    ):
        self.handle = handle
        self.automation = automation
        self.link = link
        self.poll_interval = poll_interval
        self.context_attempts = context_attempts

        self.job: Optional[Job] = None
        self.channel_id: Optional[ChannelId] = None
        self.current_stage = ChannelStage.INIT
        self.waiting_stage: Optional[ChannelStage] = None
        self.stopped = False
        self.token = CancellationToken(poll_interval)
        self.task: Optional[asyncio.Task] = None

    def start(self, resume_from: Optional[ChannelStage] = None) -> asyncio.Task:
        """Start a run, superseding any run still in flight."""
        self.token.cancel()
        self.token = CancellationToken(self.poll_interval)
        self.task = asyncio.create_task(self.run(self.token, resume_from))
        return self.task

    async def receive(self, message: WorkerMessage) -> None:
        """Handle a control message forwarded by the orchestrator."""
        if isinstance(message, StopRequest):
            logger.info("[Worker %s] Stop requested", self.handle)
            self.stopped = True
            self.token.cancel()
            return
        if self.stopped:
            return
        if isinstance(message, RetryRequest):
            logger.info("[Worker %s] Retrying", self.handle)
            self.start()
        elif isinstance(message, ContinueRequest):
            logger.info("[Worker %s] Continuing at %s", self.handle, self.waiting_stage)
            self.start(self.waiting_stage)

    async def run(self, token: CancellationToken, resume_from: Optional[ChannelStage] = None) -> None:
        try:
            await self._resolve_context(token)
        except ContextUnavailable as e:
            logger.error("[Worker %s] %s", self.handle, e)
            return
        except Cancelled:
            return

        if self.job.stopped:
            self.stopped = True
            return

        try:
            await self._run_flow(token, resume_from)
        except Cancelled:
            logger.info("[Worker %s] Cancelled during %s", self.handle, self.current_stage.value)
        except Exception as e:
            logger.warning("[Worker %s] Failed at %s: %s", self.handle, self.current_stage.value, e)
            if token.cancelled:
                return
            await self._report(
                token,
                status=ChannelStatus.FAILED,
                stage=self.current_stage,
                user_message="Publishing failed",
                user_suggestion="Check the login state or the editor page, then retry",
                dev_details={"message": str(e)},
            )

    async def _resolve_context(self, token: CancellationToken) -> None:
        error = None
        for attempt in range(self.context_attempts):
            if attempt:
                await token.sleep(self.poll_interval)
            response = await self.link(GetContextRequest())
            if response.success and isinstance(response, GetContextResponse):
                self.job = response.job
                self.channel_id = response.channel_id
                return
            error = response.error
        raise ContextUnavailable(f"No context after {self.context_attempts} attempts: {error}")

    async def _run_flow(self, token: CancellationToken, resume_from: Optional[ChannelStage]) -> None:
        plan = self.automation.plan(self.job.action)
        start = plan.index(resume_from) if resume_from in plan else 0
        self.waiting_stage = None

        for stage in plan[start:]:
            token.raise_if_cancelled()
            self.current_stage = stage
            await self._report(
                token,
                status=ChannelStatus.RUNNING,
                stage=stage,
                user_message=STAGE_MESSAGES.get(stage),
                user_suggestion=None,
            )
            try:
                await self.automation.perform(stage, self.job, token)
            except UserActionRequired as e:
                self.waiting_stage = stage
                await self._report(
                    token,
                    status=ChannelStatus.WAITING_USER,
                    stage=ChannelStage.WAITING_USER,
                    user_message=e.message,
                    user_suggestion=e.suggestion,
                    dev_details=e.details,
                )
                return

        self.current_stage = ChannelStage.DONE
        await self._report(
            token,
            status=ChannelStatus.SUCCESS,
            stage=ChannelStage.DONE,
            user_message="Draft saved" if self.job.action == PublishAction.DRAFT else "Published",
            user_suggestion=None,
        )

    async def _report(self, token: CancellationToken, **fields: Any) -> None:
        # A superseded or stopped run must not overwrite what the current run reports.
        token.raise_if_cancelled()
        message = ChannelUpdateMessage(
            job_id=self.job.job_id,
            channel_id=self.channel_id,
            patch=ChannelPatch(**fields),
        )
        response = await self.link(message)
        if not response.success:
            logger.warning("[Worker %s] Update rejected: %s", self.handle, response.error)
