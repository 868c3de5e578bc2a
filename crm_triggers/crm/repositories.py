from __future__ import annotations

import uuid
from collections.abc import Collection, Mapping, Sequence
from typing import Protocol

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from crm_triggers.crm.models import CRMAccount, CRMContact, CRMOpportunity, CRMTask, CRMUser, utcnow


class OpportunityStore(Protocol):
    """Persistence collaborator used by the trigger rules.

    Every method is a single batched round trip; callers collect keys across the
    whole batch before calling.
    """

    def fetch_accounts(self, account_ids: Collection[uuid.UUID]) -> Sequence[CRMAccount]: ...

    def fetch_contacts_by_title(
        self,
        account_ids: Collection[uuid.UUID],
        title: str,
    ) -> Sequence[CRMContact]: ...

    def fetch_users(self, user_ids: Collection[uuid.UUID]) -> Sequence[CRMUser]: ...

    def insert_tasks(self, tasks: Sequence[CRMTask]) -> None: ...

    def update_primary_contacts(self, assignments: Mapping[uuid.UUID, uuid.UUID]) -> int: ...


class SqlAlchemyOpportunityStore:
    def __init__(self, session: Session) -> None:
        self.session = session

    def fetch_accounts(self, account_ids: Collection[uuid.UUID]) -> Sequence[CRMAccount]:
        return self.session.scalars(select(CRMAccount).where(CRMAccount.id.in_(list(account_ids)))).all()

    def fetch_contacts_by_title(
        self,
        account_ids: Collection[uuid.UUID],
        title: str,
    ) -> Sequence[CRMContact]:
        stmt = (
            select(CRMContact)
            .where(CRMContact.account_id.in_(list(account_ids)), CRMContact.title == title)
            .order_by(CRMContact.account_id, CRMContact.name.asc(), CRMContact.id.asc())
        )
        return self.session.scalars(stmt).all()

    def fetch_users(self, user_ids: Collection[uuid.UUID]) -> Sequence[CRMUser]:
        return self.session.scalars(select(CRMUser).where(CRMUser.id.in_(list(user_ids)))).all()

    def insert_tasks(self, tasks: Sequence[CRMTask]) -> None:
        self.session.add_all(tasks)
        self.session.flush()

    def update_primary_contacts(self, assignments: Mapping[uuid.UUID, uuid.UUID]) -> int:
        if not assignments:
            return 0

        now = utcnow()
        self.session.execute(
            update(CRMOpportunity),
            [
                {"id": opportunity_id, "primary_contact_id": contact_id, "updated_at": now}
                for opportunity_id, contact_id in assignments.items()
            ],
        )

        # Bulk UPDATE by primary key bypasses the identity map.
        for opportunity_id in assignments:
            instance = self.session.identity_map.get(self.session.identity_key(CRMOpportunity, opportunity_id))
            if instance is not None:
                self.session.expire(instance, ["primary_contact_id", "updated_at"])
        return len(assignments)
