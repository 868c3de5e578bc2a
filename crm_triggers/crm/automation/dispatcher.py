from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Mapping, Sequence
from datetime import datetime

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from crm_triggers.context import get_correlation_id, reset_trigger_phase, set_trigger_phase
from crm_triggers.core.config import Settings, get_settings
from crm_triggers.crm.automation.cascade import annotate_stage_change, backfill_ceo_primary_contact, default_opportunity_type
from crm_triggers.crm.automation.lookups import LookupCache
from crm_triggers.crm.automation.phases import (
    OpportunityState,
    RecordChange,
    Rule,
    RuleKind,
    TriggerContext,
    TriggerPhase,
)
from crm_triggers.crm.automation.side_effects import (
    assign_vp_sales_primary_contact,
    create_follow_up_tasks,
    notify_owners_of_deletion,
)
from crm_triggers.crm.automation.validation import enforce_amount_floor, prevent_banking_closed_won_deletion
from crm_triggers.crm.errors import TriggerContractError
from crm_triggers.crm.models import CRMOpportunity, utcnow
from crm_triggers.crm.notifications import NotificationService
from crm_triggers.crm.repositories import OpportunityStore
from crm_triggers.crm.schemas import TriggerResult
from crm_triggers.metrics import observe_trigger

logger = logging.getLogger("crm_triggers.automation")
tracer = trace.get_tracer("crm_triggers.automation")


HANDLERS: dict[TriggerPhase, tuple[Rule, ...]] = {
    TriggerPhase.BEFORE_INSERT: (
        Rule("default_opportunity_type", RuleKind.MUTATE, default_opportunity_type),
    ),
    TriggerPhase.AFTER_INSERT: (
        Rule("create_follow_up_tasks", RuleKind.SIDE_EFFECT, create_follow_up_tasks),
    ),
    TriggerPhase.BEFORE_UPDATE: (
        Rule("enforce_amount_floor", RuleKind.VALIDATE, enforce_amount_floor),
        Rule("annotate_stage_change", RuleKind.MUTATE, annotate_stage_change),
        Rule("backfill_ceo_primary_contact", RuleKind.MUTATE, backfill_ceo_primary_contact),
    ),
    TriggerPhase.AFTER_UPDATE: (),
    TriggerPhase.BEFORE_DELETE: (
        Rule("prevent_banking_closed_won_deletion", RuleKind.VALIDATE, prevent_banking_closed_won_deletion),
    ),
    TriggerPhase.AFTER_DELETE: (
        Rule("notify_owners_of_deletion", RuleKind.SIDE_EFFECT, notify_owners_of_deletion),
    ),
    TriggerPhase.AFTER_UNDELETE: (
        Rule("assign_vp_sales_primary_contact", RuleKind.SIDE_EFFECT, assign_vp_sales_primary_contact),
    ),
}

_KIND_ORDER = {RuleKind.VALIDATE: 0, RuleKind.MUTATE: 1, RuleKind.SIDE_EFFECT: 2}


def pair_changes(
    phase: TriggerPhase,
    records: Sequence[OpportunityState],
    prior_by_id: Mapping[uuid.UUID, OpportunityState] | None = None,
) -> list[RecordChange]:
    """Pair each record with its prior state by identifier."""
    if phase.is_delete:
        return [RecordChange(index=index, new=None, old=record) for index, record in enumerate(records)]

    changes: list[RecordChange] = []
    for index, record in enumerate(records):
        if not isinstance(record, CRMOpportunity):
            raise TriggerContractError(f"{phase.value} expects mutable opportunity records")
        old: OpportunityState | None = None
        if phase.is_update:
            if prior_by_id is None or record.id not in prior_by_id:
                raise TriggerContractError(f"missing prior state for opportunity {record.id} in {phase.value}")
            old = prior_by_id[record.id]
        changes.append(RecordChange(index=index, new=record, old=old))
    return changes


class OpportunityTriggerDispatcher:
    """Runs the fixed rule set for one lifecycle phase over one batch."""

    def __init__(
        self,
        store: OpportunityStore,
        notifier: NotificationService,
        *,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.settings = settings or get_settings()
        self.clock = clock

    def handle(
        self,
        phase: TriggerPhase | str,
        records: Sequence[OpportunityState],
        prior_by_id: Mapping[uuid.UUID, OpportunityState] | None = None,
    ) -> TriggerResult:
        resolved = self._resolve_phase(phase)
        return self.handle_changes(resolved, pair_changes(resolved, records, prior_by_id))

    def handle_changes(self, phase: TriggerPhase, changes: list[RecordChange]) -> TriggerResult:
        result = TriggerResult(phase=phase.value, batch_size=len(changes))
        if not changes:
            return result

        ctx = TriggerContext(
            phase=phase,
            store=self.store,
            notifier=self.notifier,
            lookups=LookupCache(self.store, [change.record for change in changes]),
            settings=self.settings,
            clock=self.clock,
            result=result,
        )
        rules = sorted(HANDLERS[phase], key=lambda rule: _KIND_ORDER[rule.kind])
        started = time.perf_counter()
        final_status = "Failed"
        token = set_trigger_phase(phase.value)

        with tracer.start_as_current_span("crm.opportunity.trigger") as span:
            span.set_attribute("phase", phase.value)
            span.set_attribute("batch_size", len(changes))
            span.set_attribute("correlation_id", get_correlation_id() or "")
            try:
                for rule in rules:
                    if rule.kind is RuleKind.SIDE_EFFECT and phase.is_before:
                        raise TriggerContractError(f"side-effect rule {rule.name} registered on {phase.value}")
                    surviving = [change for change in changes if not change.rejected]
                    if not surviving:
                        break
                    rule.func(ctx, surviving)

                for change in changes:
                    result.rejections.extend(change.errors)
                final_status = "Succeeded"
                span.set_attribute("rejected_count", len(result.rejected_indexes))
            except Exception as exc:
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, str(exc)))
                logger.info(
                    "opportunity.trigger.failed",
                    extra={
                        "phase": phase.value,
                        "batch_size": len(changes),
                        "status": "Failed",
                        "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                        "error": str(exc)[:500],
                    },
                )
                raise
            finally:
                observe_trigger(phase.value, final_status, len(changes), time.perf_counter() - started)
                reset_trigger_phase(token)

        logger.info(
            "opportunity.trigger.finished",
            extra={
                "phase": phase.value,
                "batch_size": len(changes),
                "rejected_count": len(result.rejected_indexes),
                "status": final_status,
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
            },
        )
        return result

    def _resolve_phase(self, phase: TriggerPhase | str) -> TriggerPhase:
        try:
            return TriggerPhase(phase)
        except ValueError as exc:
            raise TriggerContractError(f"unknown trigger phase: {phase}") from exc
