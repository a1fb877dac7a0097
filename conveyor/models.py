"""
Content Conveyor — Core Data Models
Pydantic models for items, settings, events and stage outputs.
"""

from __future__ import annotations
import hashlib
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, Field, computed_field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Stage(int, Enum):
    SCOUT = 1
    SCORER = 2
    ANALYST = 3
    ARCHITECT = 4
    WRITER = 5
    QC = 6
    OPTIMIZER = 7
    GATE = 8
    DELIVERY = 9


TOTAL_STAGES = len(Stage)

STAGE_NAMES: dict[int, str] = {
    1: "Scout",
    2: "Scorer",
    3: "Analyst",
    4: "Architect",
    5: "Writer",
    6: "QC",
    7: "Optimizer",
    8: "Gate",
    9: "Delivery",
}

STAGE_DESCRIPTIONS: dict[int, str] = {
    1: "Collecting source material",
    2: "Scoring viral potential",
    3: "Extracting facts and key points",
    4: "Designing the script structure",
    5: "Writing the script",
    6: "Checking quality",
    7: "Improving weak spots",
    8: "Making the final decision",
    9: "Saving the finished script",
}


def stage_name(stage: int) -> str:
    return STAGE_NAMES.get(stage, f"Stage {stage}")


class ItemStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ErrorKind(str, Enum):
    STAGE_ERROR = "stage_error"
    TIMEOUT = "timeout"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    STALLED = "stalled"


class RejectionCategory(str, Enum):
    """Why a reviewer turned a delivered script down."""
    TOO_LONG = "too_long"
    TOO_SHORT = "too_short"
    BORING_INTRO = "boring_intro"
    WEAK_CTA = "weak_cta"
    TOO_FORMAL = "too_formal"
    TOO_CASUAL = "too_casual"
    BORING_TOPIC = "boring_topic"
    WRONG_TONE = "wrong_tone"
    NO_HOOK = "no_hook"
    TOO_COMPLEX = "too_complex"
    OFF_TOPIC = "off_topic"
    OTHER = "other"


class SourceType(str, Enum):
    NEWS = "news"
    SHORT_VIDEO = "short-video"


class EventType(str, Enum):
    STAGE_STARTED = "stage_started"
    STAGE_COMPLETED = "stage_completed"
    STAGE_FAILED = "stage_failed"
    ITEM_STARTED = "item_started"
    ITEM_COMPLETED = "item_completed"
    ITEM_FAILED = "item_failed"


class StageHistoryEntry(BaseModel):
    stage: int
    started: datetime
    completed: Optional[datetime] = None
    duration_ms: int = 0
    success: bool = True
    error: Optional[str] = None


class SourceData(BaseModel):
    """Snapshot of a candidate, captured when the item is admitted."""
    source_type: SourceType
    source_ref: str
    title: str
    content: str
    url: Optional[str] = None
    published_at: Optional[datetime] = None

    @computed_field
    @property
    def content_hash(self) -> str:
        return hashlib.sha256(self.content.encode()).hexdigest()


class StylePreferences(BaseModel):
    formality: str = "conversational"  # formal | conversational | casual
    tone: str = "engaging"  # serious | engaging | funny | motivational
    language: str = "en"


class DurationRange(BaseModel):
    min: int = 30
    max: int = 90


class ConveyorSettings(BaseModel):
    enabled: bool = False
    source_types: list[SourceType] = Field(default_factory=lambda: [SourceType.NEWS])
    keywords: list[str] = Field(default_factory=list)
    exclude_keywords: list[str] = Field(default_factory=list)
    max_age_days: int = Field(default=7, ge=1)
    min_score_threshold: int = Field(default=70, ge=0, le=100)
    daily_limit: int = Field(default=10, ge=0)
    monthly_budget_limit: float = Field(default=10.0, ge=0)
    batch_size: int = Field(default=3, ge=1, le=50)
    style_preferences: StylePreferences = Field(default_factory=StylePreferences)
    custom_guidelines: list[str] = Field(default_factory=list)
    duration_range: DurationRange = Field(default_factory=DurationRange)


class Item(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    source_type: SourceType
    source_ref: str
    status: ItemStatus = ItemStatus.PROCESSING
    current_stage: int = 1
    stage_history: list[StageHistoryEntry] = Field(default_factory=list)
    stage_outputs: dict[int, Any] = Field(default_factory=dict)
    source_data: Optional[SourceData] = None
    settings_snapshot: ConveyorSettings = Field(default_factory=ConveyorSettings)
    error_stage: Optional[int] = None
    error_message: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    retry_count: int = 0
    total_cost_usd: float = 0.0
    version: int = 0
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status != ItemStatus.PROCESSING

    def completed_stages(self) -> list[StageHistoryEntry]:
        return [h for h in self.stage_history if h.success and h.completed is not None]


class ConveyorEvent(BaseModel):
    id: Optional[int] = None
    type: EventType
    user_id: str
    item_id: str
    stage: Optional[int] = None
    stage_name: Optional[str] = None
    message: str = ""
    progress: Optional[int] = None
    timestamp: datetime = Field(default_factory=utcnow)

    def to_wire(self) -> dict:
        """Shape sent to observers: {type, userId, itemId, timestamp, data}."""
        return {
            "id": self.id,
            "type": self.type.value,
            "userId": self.user_id,
            "itemId": self.item_id,
            "timestamp": self.timestamp.isoformat(),
            "data": {
                "stage": self.stage,
                "stageName": self.stage_name,
                "message": self.message,
                "progress": self.progress,
            },
        }


class GateDecision(BaseModel):
    decision: str  # "approve" | "reject"
    final_score: float
    confidence: float
    reason: str
    threshold: float
    low_confidence: bool = False


class ItemOutcome(BaseModel):
    item_id: str
    status: ItemStatus
    stage: int
    error: Optional[str] = None
    conflict: bool = False


class AdmissionDecision(BaseModel):
    allowed: bool
    reason: Optional[str] = None  # budget_exceeded | daily_limit_reached
    detail: str = ""
