"""Control protocol messages and the orchestrator-side dispatcher.

Every message is a pydantic model tagged by ``type``. Incoming payloads are
parsed into the closed ``Message`` union; anything else is rejected before it
reaches the orchestrator.
"""

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Annotated, Any, Dict, List, Literal, Optional, Union
from pydantic import Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from .errors import XPostError
from .models import (
    Article,
    ChannelId,
    ChannelPatch,
    ChannelState,
    Job,
    PublishAction,
    WireModel,
)

if TYPE_CHECKING:
    from .orchestrator import Orchestrator

logger = logging.getLogger(__name__)


class StartJobRequest(WireModel):
    type: Literal["start_job"] = "start_job"
    action: PublishAction
    focus_channel: Optional[ChannelId] = None
    channels: List[ChannelId] = Field(default_factory=list)
    article: Article


class GetContextRequest(WireModel):
    type: Literal["get_context"] = "get_context"


class ChannelUpdateMessage(WireModel):
    type: Literal["channel_update"] = "channel_update"
    job_id: str
    channel_id: ChannelId
    patch: ChannelPatch = Field(default_factory=ChannelPatch)


class ContinueRequest(WireModel):
    type: Literal["request_continue"] = "request_continue"
    job_id: str
    channel_id: ChannelId


class RetryRequest(WireModel):
    type: Literal["request_retry"] = "request_retry"
    job_id: str
    channel_id: ChannelId


class StopRequest(WireModel):
    type: Literal["request_stop"] = "request_stop"
    job_id: str


class JobBroadcast(WireModel):
    """Full snapshot of one job pushed to its originating client."""
    type: Literal["job_broadcast"] = "job_broadcast"
    job_id: str
    channels: List[ChannelId]
    state: Dict[ChannelId, ChannelState]
    stopped_at: Optional[datetime] = None
    revision: int = 0


Message = Annotated[
    Union[
        StartJobRequest,
        GetContextRequest,
        ChannelUpdateMessage,
        ContinueRequest,
        RetryRequest,
        StopRequest,
    ],
    Field(discriminator="type"),
]

# Control messages the orchestrator forwards verbatim to a worker.
WorkerMessage = Union[StopRequest, RetryRequest, ContinueRequest]

_message_adapter = TypeAdapter(Message)


def parse_message(payload: Dict[str, Any]):
    """Parse a wire payload into one of the Message variants."""
    return _message_adapter.validate_python(payload)


class Response(WireModel):
    success: bool = True
    error: Optional[str] = None

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class StartJobResponse(Response):
    job_id: Optional[str] = None


class GetContextResponse(Response):
    job: Optional[Job] = None
    channel_id: Optional[ChannelId] = None


class Dispatcher:
    """Routes protocol messages to the orchestrator and wraps the outcome.

    ``sender`` is the opaque handle of whoever sent the message: the client
    handle for StartJob, the worker handle for GetContext and ChannelUpdate.
    """

    def __init__(self, orchestrator: "Orchestrator"):
        self.orchestrator = orchestrator

    async def handle(self, message: Any, sender: Optional[str] = None) -> Response:
        if isinstance(message, dict):
            try:
                message = parse_message(message)
            except PydanticValidationError as e:
                logger.warning("Rejected malformed message: %s", e)
                return Response(success=False, error=f"Invalid message: {e}")

        try:
            return await self._dispatch(message, sender)
        except XPostError as e:
            return Response(success=False, error=str(e))
        except Exception as e:
            logger.exception("Failed to handle %s", type(message).__name__)
            return Response(success=False, error=str(e) or type(e).__name__)

    async def _dispatch(self, message: Any, sender: Optional[str]) -> Response:
        orchestrator = self.orchestrator

        if isinstance(message, StartJobRequest):
            job_id = await orchestrator.start_job(
                action=message.action,
                article=message.article,
                channels=message.channels,
                focus_channel=message.focus_channel,
                client_handle=sender,
            )
            return StartJobResponse(job_id=job_id)

        if isinstance(message, GetContextRequest):
            if not sender:
                return Response(success=False, error="No sender worker handle")
            job, channel_id = await orchestrator.get_context(sender)
            return GetContextResponse(job=job, channel_id=channel_id)

        if isinstance(message, ChannelUpdateMessage):
            await orchestrator.channel_update(
                message.job_id, message.channel_id, message.patch, handle=sender
            )
            return Response()

        if isinstance(message, ContinueRequest):
            await orchestrator.request_continue(message.job_id, message.channel_id)
            return Response()

        if isinstance(message, RetryRequest):
            await orchestrator.request_retry(message.job_id, message.channel_id)
            return Response()

        if isinstance(message, StopRequest):
            await orchestrator.request_stop(message.job_id)
            return Response()

        raise TypeError(f"Unhandled message type: {type(message).__name__}")
