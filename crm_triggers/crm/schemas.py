from __future__ import annotations

from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from crm_triggers.crm.models import CLOSED_STAGES, OpportunityStage


class OpportunitySnapshot(BaseModel):
    """Immutable copy of an opportunity as it was before the current mutation."""

    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: UUID
    account_id: UUID
    name: str
    amount: Decimal | None
    stage_name: str
    type: str | None
    primary_contact_id: UUID | None
    description: str | None
    owner_user_id: UUID | None

    @property
    def is_closed(self) -> bool:
        return self.stage_name in CLOSED_STAGES

    @property
    def is_won(self) -> bool:
        return self.stage_name == OpportunityStage.CLOSED_WON.value


class NotificationMessage(BaseModel):
    recipients: list[str] = Field(min_length=1)
    subject: str = Field(min_length=1)
    body: str
    entity_id: UUID | None = None


class NotificationResult(BaseModel):
    success: bool
    error: str | None = None


class RecordRejection(BaseModel):
    index: int
    record_id: UUID | None
    rule: str
    message: str


class TriggerResult(BaseModel):
    phase: str
    batch_size: int
    rejections: list[RecordRejection] = Field(default_factory=list)
    tasks_created: int = 0
    notifications_submitted: int = 0
    primary_contacts_assigned: int = 0

    @property
    def rejected_indexes(self) -> set[int]:
        return {rejection.index for rejection in self.rejections}

    def messages_for(self, index: int) -> list[str]:
        return [rejection.message for rejection in self.rejections if rejection.index == index]


class LifecycleResult(BaseModel):
    operation: str
    accepted_ids: list[UUID] = Field(default_factory=list)
    rejections: list[RecordRejection] = Field(default_factory=list)
    before: TriggerResult | None = None
    after: TriggerResult
