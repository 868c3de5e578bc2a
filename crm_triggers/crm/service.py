from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Collection, Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from crm_triggers.context import reset_correlation_id, set_correlation_id
from crm_triggers.core.config import Settings, get_settings
from crm_triggers.crm.automation import OpportunityTriggerDispatcher, TriggerPhase
from crm_triggers.crm.errors import OpportunityNotFoundError, TriggerContractError
from crm_triggers.crm.models import CRMOpportunity, utcnow
from crm_triggers.crm.notifications import NotificationService, OutboxNotificationService
from crm_triggers.crm.repositories import SqlAlchemyOpportunityStore
from crm_triggers.crm.schemas import LifecycleResult, OpportunitySnapshot, TriggerResult

logger = logging.getLogger("crm_triggers.lifecycle")

UPDATABLE_FIELDS = frozenset(
    {
        "name",
        "account_id",
        "amount",
        "stage_name",
        "type",
        "primary_contact_id",
        "description",
        "owner_user_id",
    }
)


class OpportunityLifecycleService:
    """Applies opportunity inserts, updates, deletes and undeletes around the trigger phases.

    Each operation runs the before-phase, persists only the records that were
    not rejected, runs the after-phase on the persisted set, and commits. Any
    exception rolls the whole batch back.
    """

    def __init__(
        self,
        session: Session,
        *,
        notifier: NotificationService | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
        dispatcher: OpportunityTriggerDispatcher | None = None,
    ) -> None:
        self.session = session
        self.clock = clock
        self.dispatcher = dispatcher or OpportunityTriggerDispatcher(
            SqlAlchemyOpportunityStore(session),
            notifier or OutboxNotificationService(session),
            settings=settings or get_settings(),
            clock=clock,
        )

    def insert_opportunities(
        self,
        opportunities: Sequence[CRMOpportunity],
        *,
        correlation_id: str | None = None,
    ) -> LifecycleResult:
        with self._unit_of_work("insert", len(opportunities), correlation_id):
            for opportunity in opportunities:
                if opportunity.id is None:
                    opportunity.id = uuid.uuid4()

            with self.session.no_autoflush:
                before = self.dispatcher.handle(TriggerPhase.BEFORE_INSERT, opportunities)
            accepted = self._accepted(opportunities, before)

            self.session.add_all(accepted)
            self.session.flush()
            after = self.dispatcher.handle(TriggerPhase.AFTER_INSERT, accepted)
            self.session.commit()
        return self._to_result("insert", accepted, before, after)

    def update_opportunities(
        self,
        updates: Mapping[uuid.UUID, Mapping[str, Any]],
        *,
        correlation_id: str | None = None,
    ) -> LifecycleResult:
        for values in updates.values():
            unknown = set(values) - UPDATABLE_FIELDS
            if unknown:
                raise TriggerContractError(f"fields are not updatable: {', '.join(sorted(unknown))}")

        with self._unit_of_work("update", len(updates), correlation_id):
            opportunities = self._load(updates.keys(), deleted=False)
            prior_by_id = {
                opportunity.id: OpportunitySnapshot.model_validate(opportunity) for opportunity in opportunities
            }

            with self.session.no_autoflush:
                for opportunity in opportunities:
                    for field_name, value in updates[opportunity.id].items():
                        setattr(opportunity, field_name, value)
                before = self.dispatcher.handle(TriggerPhase.BEFORE_UPDATE, opportunities, prior_by_id)

            accepted = self._accepted(opportunities, before)
            for index, opportunity in enumerate(opportunities):
                if index in before.rejected_indexes:
                    self.session.expire(opportunity)
                else:
                    opportunity.row_version = opportunity.row_version + 1

            self.session.flush()
            after = self.dispatcher.handle(
                TriggerPhase.AFTER_UPDATE,
                accepted,
                {opportunity.id: prior_by_id[opportunity.id] for opportunity in accepted},
            )
            self.session.commit()
        return self._to_result("update", accepted, before, after)

    def delete_opportunities(
        self,
        opportunity_ids: Collection[uuid.UUID],
        *,
        correlation_id: str | None = None,
    ) -> LifecycleResult:
        with self._unit_of_work("delete", len(opportunity_ids), correlation_id):
            opportunities = self._load(opportunity_ids, deleted=False)
            with self.session.no_autoflush:
                before = self.dispatcher.handle(TriggerPhase.BEFORE_DELETE, opportunities)
            accepted = self._accepted(opportunities, before)

            deleted_at = self.clock()
            for opportunity in accepted:
                opportunity.deleted_at = deleted_at
                opportunity.row_version = opportunity.row_version + 1
            self.session.flush()
            after = self.dispatcher.handle(TriggerPhase.AFTER_DELETE, accepted)
            self.session.commit()
        return self._to_result("delete", accepted, before, after)

    def undelete_opportunities(
        self,
        opportunity_ids: Collection[uuid.UUID],
        *,
        correlation_id: str | None = None,
    ) -> LifecycleResult:
        with self._unit_of_work("undelete", len(opportunity_ids), correlation_id):
            opportunities = self._load(opportunity_ids, deleted=True)
            for opportunity in opportunities:
                opportunity.deleted_at = None
                opportunity.row_version = opportunity.row_version + 1
            self.session.flush()
            after = self.dispatcher.handle(TriggerPhase.AFTER_UNDELETE, opportunities)
            self.session.commit()
        return self._to_result("undelete", opportunities, None, after)

    @contextmanager
    def _unit_of_work(self, operation: str, batch_size: int, correlation_id: str | None) -> Iterator[None]:
        token = set_correlation_id(correlation_id) if correlation_id is not None else None
        try:
            yield
        except Exception as exc:
            self.session.rollback()
            logger.info(
                "opportunity.lifecycle.rolled_back",
                extra={"batch_size": batch_size, "status": "Failed", "error": str(exc)[:500], "operation": operation},
            )
            raise
        finally:
            if token is not None:
                reset_correlation_id(token)

    def _load(self, opportunity_ids: Collection[uuid.UUID], *, deleted: bool) -> list[CRMOpportunity]:
        ids = list(dict.fromkeys(opportunity_ids))
        if not ids:
            return []
        deleted_filter = CRMOpportunity.deleted_at.is_not(None) if deleted else CRMOpportunity.deleted_at.is_(None)
        rows = self.session.scalars(select(CRMOpportunity).where(CRMOpportunity.id.in_(ids), deleted_filter)).all()
        by_id = {row.id: row for row in rows}
        missing = [str(opportunity_id) for opportunity_id in ids if opportunity_id not in by_id]
        if missing:
            raise OpportunityNotFoundError(missing)
        return [by_id[opportunity_id] for opportunity_id in ids]

    @staticmethod
    def _accepted(opportunities: Sequence[CRMOpportunity], result: TriggerResult) -> list[CRMOpportunity]:
        rejected = result.rejected_indexes
        return [opportunity for index, opportunity in enumerate(opportunities) if index not in rejected]

    @staticmethod
    def _to_result(
        operation: str,
        accepted: Sequence[CRMOpportunity],
        before: TriggerResult | None,
        after: TriggerResult,
    ) -> LifecycleResult:
        return LifecycleResult(
            operation=operation,
            accepted_ids=[opportunity.id for opportunity in accepted],
            rejections=list(before.rejections) if before is not None else [],
            before=before,
            after=after,
        )
