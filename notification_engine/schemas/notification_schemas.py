from datetime import date, datetime, time
from typing import Dict, FrozenSet, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from notification_engine.db.models import NotificationKind, Recurrence

# (subject_id, kind, offset_days)
DedupKey = Tuple[str, NotificationKind, int]

DEFAULT_OFFSETS_BEFORE: Tuple[int, ...] = (3, 1)
DEFAULT_OFFSETS_AFTER: Tuple[int, ...] = (1, 3, 7)
DEFAULT_SEND_TIME = time(9, 0)


class NotificationPolicy(BaseModel):
    """Typed per-tenant policy for one notification class, resolved once per run."""

    model_config = ConfigDict(frozen=True)

    tenant_id: str = Field(..., description="Owning tenant")
    notification_class: str = Field("charge", description="Settings key prefix")
    enabled: bool = Field(False, description="Whether the class is turned on")
    offsets_before: Tuple[int, ...] = Field(DEFAULT_OFFSETS_BEFORE)
    send_on_due_date: bool = Field(False)
    offsets_after: Tuple[int, ...] = Field(DEFAULT_OFFSETS_AFTER)
    send_time_of_day: time = Field(DEFAULT_SEND_TIME)
    template_refs: Dict[NotificationKind, Optional[str]] = Field(default_factory=dict)
    timezone: str = Field("UTC", description="IANA zone for send_time_of_day")
    company_name: Optional[str] = Field(None)

    def template_for(self, kind: NotificationKind) -> Optional[str]:
        return self.template_refs.get(kind)


class Subject(BaseModel):
    """A billable item as the engine sees it."""

    id: str
    tenant_id: str
    customer_id: str
    anchor_date: Optional[date] = None
    status: str = "active"


class BroadcastDefinition(BaseModel):
    id: str
    tenant_id: str
    scheduled_at: datetime = Field(..., description="Naive UTC first occurrence")
    timezone: Optional[str] = None
    recurrence: Recurrence = Recurrence.NONE
    is_active: bool = True


class NotificationDraft(BaseModel):
    """A row the generator wants to exist; callers persist it."""

    tenant_id: str
    subject_id: str
    recipient_ref: str
    anchor_date: date
    kind: NotificationKind
    offset_days: int
    scheduled_for: datetime = Field(..., description="Timezone-aware")
    timezone: str = "UTC"
    template_ref: Optional[str] = None
    recurrence: Recurrence = Recurrence.NONE

    @property
    def dedup_key(self) -> DedupKey:
        return (self.subject_id, self.kind, self.offset_days)


class Recipient(BaseModel):
    """Contact details resolved at dispatch time."""

    chat_id: str
    name: Optional[str] = None
    variables: Dict[str, Optional[str]] = Field(default_factory=dict)
    image_urls: List[str] = Field(default_factory=list)
    message: Optional[str] = Field(
        None, description="Inline message text carried by broadcast definitions"
    )


class SendResult(BaseModel):
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None


class ReconcileResult(BaseModel):
    cancelled: int = 0
    generated: int = 0
    errors: int = 0


class DispatchResult(BaseModel):
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    # rows left pending after an unexpected error
    errors: int = 0


def dedup_keys(drafts: List[NotificationDraft]) -> FrozenSet[DedupKey]:
    return frozenset(d.dedup_key for d in drafts)
