from __future__ import annotations

import uuid
from collections.abc import Sequence

from crm_triggers.crm.automation.lookups import LookupCache
from crm_triggers.crm.automation.phases import RecordChange, TriggerContext
from crm_triggers.crm.models import CRMOpportunity


def default_opportunity_type(ctx: TriggerContext, changes: list[RecordChange]) -> None:
    default_type = ctx.settings.opportunity_default_type
    for change in changes:
        opportunity = change.new
        if opportunity is not None and not opportunity.type:
            opportunity.type = default_type


def annotate_stage_change(ctx: TriggerContext, changes: list[RecordChange]) -> None:
    stamp = ctx.clock().isoformat()
    for change in changes:
        if change.new is None or change.old is None:
            continue
        if change.new.stage_name == change.old.stage_name:
            continue
        line = f"Stage changed to {change.new.stage_name} on {stamp}"
        previous = change.new.description
        change.new.description = f"{previous}\n{line}" if previous else line


def select_primary_contacts(
    lookups: LookupCache,
    opportunities: Sequence[CRMOpportunity],
    title: str,
) -> list[tuple[CRMOpportunity, uuid.UUID]]:
    """Pick a primary contact for every opportunity that has none.

    The candidate is the account's contact holding ``title``; opportunities that
    already carry a primary contact, or whose account has no such contact, are
    skipped.
    """
    missing = [opportunity for opportunity in opportunities if opportunity.primary_contact_id is None]
    if not missing:
        return []

    contacts = lookups.contacts_by_title(title)
    selected: list[tuple[CRMOpportunity, uuid.UUID]] = []
    for opportunity in missing:
        contact = contacts.get(opportunity.account_id)
        if contact is not None:
            selected.append((opportunity, contact.id))
    return selected


def backfill_ceo_primary_contact(ctx: TriggerContext, changes: list[RecordChange]) -> None:
    opportunities = [change.new for change in changes if change.new is not None]
    selected = select_primary_contacts(ctx.lookups, opportunities, ctx.settings.update_backfill_title)
    for opportunity, contact_id in selected:
        opportunity.primary_contact_id = contact_id
    ctx.result.primary_contacts_assigned += len(selected)
