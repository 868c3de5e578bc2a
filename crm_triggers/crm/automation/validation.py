from __future__ import annotations

import logging
from decimal import Decimal

from crm_triggers.crm.automation.phases import RecordChange, TriggerContext
from crm_triggers.crm.models import OpportunityStage
from crm_triggers.metrics import observe_validation_rejection

logger = logging.getLogger("crm_triggers.automation")

AMOUNT_FLOOR_RULE = "enforce_amount_floor"
BANKING_DELETION_RULE = "prevent_banking_closed_won_deletion"


def amount_floor_message(floor: Decimal) -> str:
    return f"Opportunity amount must be at least {floor:f}."


def enforce_amount_floor(ctx: TriggerContext, changes: list[RecordChange]) -> None:
    floor = ctx.settings.opportunity_amount_floor
    message = amount_floor_message(floor)
    rejected = 0
    for change in changes:
        amount = change.record.amount
        if amount is None or Decimal(amount) < floor:
            change.add_error(AMOUNT_FLOOR_RULE, message)
            rejected += 1
    observe_validation_rejection(AMOUNT_FLOOR_RULE, rejected)


def prevent_banking_closed_won_deletion(ctx: TriggerContext, changes: list[RecordChange]) -> None:
    industry = ctx.settings.protected_industry
    message = f"Closed Won opportunities on {industry} accounts cannot be deleted."
    accounts = ctx.lookups.accounts()
    rejected = 0
    for change in changes:
        opportunity = change.record
        if opportunity.stage_name != OpportunityStage.CLOSED_WON.value:
            continue
        account = accounts.get(opportunity.account_id)
        if account is not None and account.industry == industry:
            change.add_error(BANKING_DELETION_RULE, message)
            rejected += 1
            logger.info(
                "opportunity.deletion_blocked",
                extra={"rule": BANKING_DELETION_RULE, "record_id": str(opportunity.id)},
            )
    observe_validation_rejection(BANKING_DELETION_RULE, rejected)
