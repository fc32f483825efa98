"""Data models for publish jobs, channel state and configuration."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    """Timezone-aware current time used for every stored timestamp."""
    return datetime.now(timezone.utc)


class ChannelId(str, Enum):
    """Supported publishing platforms."""
    CSDN = "csdn"
    TENCENT_CLOUD_DEV = "tencent-cloud-dev"
    CNBLOGS = "cnblogs"
    OSCHINA = "oschina"
    WOSHIPM = "woshipm"
    MOWEN = "mowen"
    SSPAI = "sspai"
    BAIJIAHAO = "baijiahao"
    TOUTIAO = "toutiao"
    FEISHU_DOCS = "feishu-docs"


ALL_CHANNELS: List[ChannelId] = list(ChannelId)


class PublishAction(str, Enum):
    DRAFT = "draft"
    PUBLISH = "publish"


class ChannelStatus(str, Enum):
    """Coarse per-channel outcome. Authoritative for control decisions."""
    NOT_STARTED = "not_started"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    WAITING_USER = "waiting_user"


# Statuses in which a channel sits still until the user (or nobody) acts.
SETTLED_STATUSES = frozenset(
    {ChannelStatus.SUCCESS, ChannelStatus.FAILED, ChannelStatus.WAITING_USER}
)


class ChannelStage(str, Enum):
    """Fine-grained step within a channel's submission flow. Advisory only."""
    INIT = "init"
    OPEN_ENTRY = "openEntry"
    DETECT_LOGIN = "detectLogin"
    FILL_SOURCE_URL = "fillSourceUrl"
    FILL_TITLE = "fillTitle"
    FILL_CONTENT = "fillContent"
    SAVE_DRAFT = "saveDraft"
    SUBMIT_PUBLISH = "submitPublish"
    CONFIRM_SUCCESS = "confirmSuccess"
    WAITING_USER = "waitingUser"
    DONE = "done"


class WireModel(BaseModel):
    """Base for everything that is persisted or sent over the control protocol.

    Field names are snake_case in Python and camelCase on the wire.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class Article(WireModel):
    """Immutable payload handed to every worker of a job."""
    model_config = ConfigDict(frozen=True)

    title: str
    content_html: str
    source_url: str
    author: Optional[str] = None
    publish_time: Optional[str] = None
    cover_url: Optional[str] = None

    @field_validator("title", "content_html", "source_url")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("must not be empty")
        return value


class Job(WireModel):
    """One cross-post request."""
    job_id: str
    created_at: datetime = Field(default_factory=utcnow)
    action: PublishAction
    article: Article
    channels: List[ChannelId]
    source_client_handle: Optional[str] = None
    stopped_at: Optional[datetime] = None

    @property
    def stopped(self) -> bool:
        return self.stopped_at is not None


class ChannelState(WireModel):
    """One platform's progress within a job."""
    channel_id: ChannelId
    status: ChannelStatus = ChannelStatus.NOT_STARTED
    stage: ChannelStage = ChannelStage.INIT
    user_message: Optional[str] = None
    user_suggestion: Optional[str] = None
    dev_details: Optional[Any] = None
    updated_at: datetime = Field(default_factory=utcnow)
    worker_handle: Optional[str] = None


class ChannelPatch(WireModel):
    """Partial ChannelState reported by a worker.

    Only explicitly set fields are merged. Bookkeeping fields (channelId,
    updatedAt, workerHandle) are owned by the orchestrator and ignored here.
    """
    model_config = ConfigDict(extra="ignore")

    status: Optional[ChannelStatus] = None
    stage: Optional[ChannelStage] = None
    user_message: Optional[str] = None
    user_suggestion: Optional[str] = None
    dev_details: Optional[Any] = None

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True)


StateMap = Dict[ChannelId, ChannelState]


def initial_state(channels: List[ChannelId]) -> StateMap:
    """Build the state map of a freshly created job: every channel not_started."""
    now = utcnow()
    return {
        channel_id: ChannelState(channel_id=channel_id, updated_at=now)
        for channel_id in channels
    }


class Config(BaseModel):
    """Runtime configuration persisted next to the job records."""
    job_ttl_seconds: int = Field(default=24 * 60 * 60, gt=0)
    max_jobs: int = Field(default=20, gt=0)
    stop_poll_interval: float = Field(default=0.2, gt=0)  # seconds
