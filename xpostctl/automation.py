"""The per-platform automation capability a channel worker drives."""

import logging
from typing import Any, Callable, List, Optional, Protocol
from .cancel import CancellationToken
from .channels import SOURCE_URL_FIELD, entry_url
from .models import ChannelId, ChannelStage, Job, PublishAction

logger = logging.getLogger(__name__)


class UserActionRequired(Exception):
    """Raised by an automation when a human has to act before the flow can go on.

    Typical causes: a login wall, a captcha, a confirmation dialog, or a result
    that could not be verified automatically.
    """

    def __init__(self, message: str, suggestion: Optional[str] = None, details: Any = None):
        super().__init__(message)
        self.message = message
        self.suggestion = suggestion
        self.details = details


class ChannelAutomation(Protocol):
    """Drives one platform's editor. Implementations live outside this package."""

    def plan(self, action: PublishAction) -> List[ChannelStage]:
        ...

    async def perform(self, stage: ChannelStage, job: Job, token: CancellationToken) -> None:
        ...


AutomationFactory = Callable[[ChannelId], ChannelAutomation]


def default_plan(action: PublishAction, source_url_field: bool = False) -> List[ChannelStage]:
    """Stages every platform goes through, in order."""
    stages = [ChannelStage.OPEN_ENTRY, ChannelStage.DETECT_LOGIN]
    if source_url_field:
        stages.append(ChannelStage.FILL_SOURCE_URL)
    stages += [ChannelStage.FILL_TITLE, ChannelStage.FILL_CONTENT]
    if action == PublishAction.DRAFT:
        stages.append(ChannelStage.SAVE_DRAFT)
    else:
        stages.append(ChannelStage.SUBMIT_PUBLISH)
    stages.append(ChannelStage.CONFIRM_SUCCESS)
    return stages


class DryRunAutomation:
    """Walks the platform's plan without touching the platform."""

    def __init__(self, channel_id: ChannelId, delay: float = 0.1):
        self.channel_id = channel_id
        self.delay = delay

    def plan(self, action: PublishAction) -> List[ChannelStage]:
        return default_plan(action, self.channel_id in SOURCE_URL_FIELD)

    async def perform(self, stage: ChannelStage, job: Job, token: CancellationToken) -> None:
        if stage == ChannelStage.OPEN_ENTRY:
            logger.info("[%s] dry run: would open %s", self.channel_id.value, entry_url(self.channel_id))
        else:
            logger.info("[%s] dry run: %s", self.channel_id.value, stage.value)
        await token.sleep(self.delay)


def dry_run_factory(delay: float = 0.1) -> AutomationFactory:
    def factory(channel_id: ChannelId) -> ChannelAutomation:
        return DryRunAutomation(channel_id, delay=delay)
    return factory
