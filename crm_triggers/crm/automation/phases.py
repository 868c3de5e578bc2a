from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from crm_triggers.core.config import Settings
from crm_triggers.crm.automation.lookups import LookupCache
from crm_triggers.crm.models import CRMOpportunity
from crm_triggers.crm.notifications import NotificationService
from crm_triggers.crm.repositories import OpportunityStore
from crm_triggers.crm.schemas import OpportunitySnapshot, RecordRejection, TriggerResult

OpportunityState = CRMOpportunity | OpportunitySnapshot


class TriggerPhase(str, Enum):
    BEFORE_INSERT = "before_insert"
    AFTER_INSERT = "after_insert"
    BEFORE_UPDATE = "before_update"
    AFTER_UPDATE = "after_update"
    BEFORE_DELETE = "before_delete"
    AFTER_DELETE = "after_delete"
    AFTER_UNDELETE = "after_undelete"

    @property
    def is_before(self) -> bool:
        return self.value.startswith("before_")

    @property
    def is_update(self) -> bool:
        return self in {TriggerPhase.BEFORE_UPDATE, TriggerPhase.AFTER_UPDATE}

    @property
    def is_delete(self) -> bool:
        return self in {TriggerPhase.BEFORE_DELETE, TriggerPhase.AFTER_DELETE}


class RuleKind(str, Enum):
    VALIDATE = "validate"
    MUTATE = "mutate"
    SIDE_EFFECT = "side_effect"


@dataclass
class RecordChange:
    """One record of a batch paired with its prior state.

    Inserts and undeletes carry only ``new``; deletes carry only ``old``.
    """

    index: int
    new: CRMOpportunity | None
    old: OpportunityState | None = None
    errors: list[RecordRejection] = field(default_factory=list)

    @property
    def record(self) -> OpportunityState:
        current = self.new if self.new is not None else self.old
        assert current is not None
        return current

    @property
    def rejected(self) -> bool:
        return bool(self.errors)

    def add_error(self, rule: str, message: str) -> None:
        self.errors.append(
            RecordRejection(index=self.index, record_id=self.record.id, rule=rule, message=message)
        )


@dataclass
class TriggerContext:
    phase: TriggerPhase
    store: OpportunityStore
    notifier: NotificationService
    lookups: LookupCache
    settings: Settings
    clock: Callable[[], datetime]
    result: TriggerResult


RuleFunc = Callable[[TriggerContext, list[RecordChange]], None]


@dataclass(frozen=True)
class Rule:
    name: str
    kind: RuleKind
    func: RuleFunc
