from __future__ import annotations

import uuid
from collections.abc import Iterable
from typing import Any

from crm_triggers.crm.models import CRMAccount, CRMContact, CRMUser
from crm_triggers.crm.repositories import OpportunityStore


def collect_keys(records: Iterable[Any], attribute: str) -> set[uuid.UUID]:
    return {value for value in (getattr(record, attribute) for record in records) if value is not None}


class LookupCache:
    """Per-invocation maps of related records keyed by identifier.

    Each related entity type is fetched at most once per invocation, using the
    keys of every record in the batch.
    """

    def __init__(self, store: OpportunityStore, records: Iterable[Any]) -> None:
        self._store = store
        self._records = list(records)
        self._accounts: dict[uuid.UUID, CRMAccount] | None = None
        self._users: dict[uuid.UUID, CRMUser] | None = None
        self._contacts_by_title: dict[str, dict[uuid.UUID, CRMContact]] = {}

    def accounts(self) -> dict[uuid.UUID, CRMAccount]:
        if self._accounts is None:
            account_ids = collect_keys(self._records, "account_id")
            rows = self._store.fetch_accounts(account_ids) if account_ids else []
            self._accounts = {account.id: account for account in rows}
        return self._accounts

    def owners(self) -> dict[uuid.UUID, CRMUser]:
        if self._users is None:
            owner_ids = collect_keys(self._records, "owner_user_id")
            rows = self._store.fetch_users(owner_ids) if owner_ids else []
            self._users = {user.id: user for user in rows}
        return self._users

    def contacts_by_title(self, title: str) -> dict[uuid.UUID, CRMContact]:
        """Return one contact per account holding ``title``; the first by name wins."""
        cached = self._contacts_by_title.get(title)
        if cached is not None:
            return cached

        account_ids = collect_keys(self._records, "account_id")
        rows = self._store.fetch_contacts_by_title(account_ids, title) if account_ids else []
        selected: dict[uuid.UUID, CRMContact] = {}
        for contact in sorted(rows, key=lambda row: (row.name, str(row.id))):
            selected.setdefault(contact.account_id, contact)
        self._contacts_by_title[title] = selected
        return selected
