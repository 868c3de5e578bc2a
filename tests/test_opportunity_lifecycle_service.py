from __future__ import annotations

import logging
import uuid
from collections.abc import Generator, Sequence
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crm_triggers.core.config import get_settings
from crm_triggers.core.database import Base
from crm_triggers.crm.automation import OpportunityTriggerDispatcher
from crm_triggers.crm.errors import OpportunityNotFoundError, TriggerContractError
from crm_triggers.crm.models import (
    CRMAccount,
    CRMContact,
    CRMNotificationMessage,
    CRMOpportunity,
    CRMTask,
    CRMUser,
)
from crm_triggers.crm.repositories import SqlAlchemyOpportunityStore
from crm_triggers.crm.schemas import NotificationMessage, NotificationResult
from crm_triggers.crm.service import OpportunityLifecycleService

FIXED_NOW = datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)


class FailingTaskStore(SqlAlchemyOpportunityStore):
    def insert_tasks(self, tasks: Sequence[CRMTask]) -> None:
        raise RuntimeError("task store unavailable")


class RecordingNotifier:
    def __init__(self) -> None:
        self.batches: list[list[NotificationMessage]] = []

    def send(self, messages: list[NotificationMessage]) -> list[NotificationResult]:
        self.batches.append(list(messages))
        return [NotificationResult(success=True) for _ in messages]


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def service(db_session: Session) -> OpportunityLifecycleService:
    return OpportunityLifecycleService(db_session, clock=lambda: FIXED_NOW)


@pytest.fixture()
def owner(db_session: Session) -> CRMUser:
    owner = CRMUser(name="Olivia Owner", email="olivia@example.com")
    db_session.add(owner)
    db_session.commit()
    return owner


@pytest.fixture()
def retail(db_session: Session) -> CRMAccount:
    account = CRMAccount(name="Shopfront", industry="Retail")
    db_session.add(account)
    db_session.commit()
    return account


@pytest.fixture()
def banking(db_session: Session) -> CRMAccount:
    account = CRMAccount(name="First Federal", industry="Banking")
    db_session.add(account)
    db_session.commit()
    return account


def _new(account: CRMAccount, owner: CRMUser | None = None, **overrides: object) -> CRMOpportunity:
    values: dict[str, object] = {
        "account_id": account.id,
        "owner_user_id": owner.id if owner is not None else None,
        "name": "Annual licence",
        "amount": Decimal("8000"),
        "stage_name": "Prospecting",
    }
    values.update(overrides)
    return CRMOpportunity(**values)


def test_insert_defaults_type_and_creates_tasks(
    db_session: Session,
    service: OpportunityLifecycleService,
    retail: CRMAccount,
    owner: CRMUser,
) -> None:
    batch = [_new(retail, owner), _new(retail, owner, type="Existing Customer - Upgrade")]

    result = service.insert_opportunities(batch)

    assert result.operation == "insert"
    assert len(result.accepted_ids) == 2
    assert result.after.tasks_created == 2
    stored = {row.id: row for row in db_session.scalars(select(CRMOpportunity)).all()}
    assert stored[result.accepted_ids[0]].type == "New Customer"
    assert stored[result.accepted_ids[1]].type == "Existing Customer - Upgrade"
    tasks = db_session.scalars(select(CRMTask)).all()
    assert {task.opportunity_id for task in tasks} == set(result.accepted_ids)
    assert all(task.due_date == date(2026, 3, 5) for task in tasks)


def test_update_persists_accepted_records_and_keeps_rejected_ones_unchanged(
    db_session: Session,
    service: OpportunityLifecycleService,
    retail: CRMAccount,
    owner: CRMUser,
) -> None:
    inserted = service.insert_opportunities([_new(retail, owner, name="Low"), _new(retail, owner, name="High")])
    low_id, high_id = inserted.accepted_ids

    result = service.update_opportunities(
        {
            low_id: {"amount": Decimal("1200"), "stage_name": "Qualification"},
            high_id: {"stage_name": "Qualification"},
        }
    )

    assert result.accepted_ids == [high_id]
    assert [rejection.record_id for rejection in result.rejections] == [low_id]
    assert result.rejections[0].message == "Opportunity amount must be at least 5000."

    low = db_session.get(CRMOpportunity, low_id)
    high = db_session.get(CRMOpportunity, high_id)
    assert low.amount == Decimal("8000")
    assert low.stage_name == "Prospecting"
    assert low.description is None
    assert low.row_version == 1
    assert high.stage_name == "Qualification"
    assert high.description == "Stage changed to Qualification on 2026-03-02T09:30:00+00:00"
    assert high.row_version == 2


def test_update_rejects_fields_outside_the_updatable_set(
    service: OpportunityLifecycleService,
    retail: CRMAccount,
) -> None:
    inserted = service.insert_opportunities([_new(retail)])

    with pytest.raises(TriggerContractError):
        service.update_opportunities({inserted.accepted_ids[0]: {"row_version": 7}})


def test_update_of_unknown_opportunity_raises_not_found(service: OpportunityLifecycleService) -> None:
    missing_id = uuid.uuid4()

    with pytest.raises(OpportunityNotFoundError) as exc_info:
        service.update_opportunities({missing_id: {"amount": Decimal("9000")}})

    assert exc_info.value.opportunity_ids == [str(missing_id)]


def test_delete_blocks_banking_closed_won_and_queues_owner_notifications(
    db_session: Session,
    service: OpportunityLifecycleService,
    banking: CRMAccount,
    retail: CRMAccount,
    owner: CRMUser,
) -> None:
    inserted = service.insert_opportunities(
        [
            _new(banking, owner, name="Treasury suite", stage_name="Closed Won"),
            _new(retail, owner, name="POS rollout", stage_name="Closed Won"),
        ]
    )
    blocked_id, deleted_id = inserted.accepted_ids

    result = service.delete_opportunities([blocked_id, deleted_id])

    assert result.accepted_ids == [deleted_id]
    assert [rejection.record_id for rejection in result.rejections] == [blocked_id]
    assert db_session.get(CRMOpportunity, blocked_id).deleted_at is None
    assert db_session.get(CRMOpportunity, deleted_id).deleted_at is not None

    queued = db_session.scalars(select(CRMNotificationMessage)).all()
    assert len(queued) == 1
    assert queued[0].entity_id == deleted_id
    assert queued[0].recipients == ["olivia@example.com"]
    assert queued[0].intent_type == "OPPORTUNITY_DELETED"
    assert queued[0].status == "Queued"


def test_delete_uses_injected_notifier(
    db_session: Session,
    retail: CRMAccount,
    owner: CRMUser,
) -> None:
    notifier = RecordingNotifier()
    service = OpportunityLifecycleService(db_session, notifier=notifier, clock=lambda: FIXED_NOW)
    inserted = service.insert_opportunities([_new(retail, owner)])

    service.delete_opportunities(inserted.accepted_ids)

    assert len(notifier.batches) == 1
    assert db_session.scalar(select(func.count()).select_from(CRMNotificationMessage)) == 0


def test_deleted_opportunity_cannot_be_updated_or_deleted_again(
    service: OpportunityLifecycleService,
    retail: CRMAccount,
) -> None:
    inserted = service.insert_opportunities([_new(retail)])
    service.delete_opportunities(inserted.accepted_ids)

    with pytest.raises(OpportunityNotFoundError):
        service.update_opportunities({inserted.accepted_ids[0]: {"amount": Decimal("9000")}})
    with pytest.raises(OpportunityNotFoundError):
        service.delete_opportunities(inserted.accepted_ids)


def test_undelete_restores_record_and_assigns_vp_sales(
    db_session: Session,
    service: OpportunityLifecycleService,
    retail: CRMAccount,
) -> None:
    inserted = service.insert_opportunities([_new(retail)])
    opportunity_id = inserted.accepted_ids[0]
    service.delete_opportunities([opportunity_id])
    vp_sales = CRMContact(account_id=retail.id, name="Victor", title="VP Sales")
    db_session.add(vp_sales)
    db_session.commit()

    result = service.undelete_opportunities([opportunity_id])

    restored = db_session.get(CRMOpportunity, opportunity_id)
    assert result.before is None
    assert result.after.primary_contacts_assigned == 1
    assert restored.deleted_at is None
    assert restored.primary_contact_id == vp_sales.id


def test_undelete_of_live_opportunity_raises_not_found(
    service: OpportunityLifecycleService,
    retail: CRMAccount,
) -> None:
    inserted = service.insert_opportunities([_new(retail)])

    with pytest.raises(OpportunityNotFoundError):
        service.undelete_opportunities(inserted.accepted_ids)


def test_failure_in_after_phase_rolls_back_the_batch(
    db_session: Session,
    retail: CRMAccount,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)
    dispatcher = OpportunityTriggerDispatcher(
        FailingTaskStore(db_session),
        RecordingNotifier(),
        clock=lambda: FIXED_NOW,
    )
    service = OpportunityLifecycleService(db_session, dispatcher=dispatcher)

    with pytest.raises(RuntimeError, match="task store unavailable"):
        service.insert_opportunities([_new(retail), _new(retail)], correlation_id="corr-rollback")

    assert db_session.scalar(select(func.count()).select_from(CRMOpportunity)) == 0
    assert db_session.scalar(select(func.count()).select_from(CRMTask)) == 0
    rolled_back = [record for record in caplog.records if record.getMessage() == "opportunity.lifecycle.rolled_back"]
    assert len(rolled_back) == 1
    assert getattr(rolled_back[0], "operation", None) == "insert"
    assert getattr(rolled_back[0], "batch_size", None) == 2
