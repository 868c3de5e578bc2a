from __future__ import annotations

import logging
from datetime import timedelta

from crm_triggers.crm.automation.cascade import select_primary_contacts
from crm_triggers.crm.automation.phases import RecordChange, TriggerContext
from crm_triggers.crm.errors import NotificationFailure
from crm_triggers.crm.models import CRMTask
from crm_triggers.crm.schemas import NotificationMessage
from crm_triggers.metrics import observe_notifications, observe_tasks_created

logger = logging.getLogger("crm_triggers.automation")


def create_follow_up_tasks(ctx: TriggerContext, changes: list[RecordChange]) -> None:
    due_date = ctx.clock().date() + timedelta(days=ctx.settings.follow_up_task_due_in_days)
    tasks = [
        CRMTask(
            subject=ctx.settings.follow_up_task_subject,
            opportunity_id=change.new.id,
            assigned_contact_id=change.new.primary_contact_id,
            owner_user_id=change.new.owner_user_id,
            due_date=due_date,
            status="Open",
        )
        for change in changes
        if change.new is not None
    ]
    if not tasks:
        return

    ctx.store.insert_tasks(tasks)
    ctx.result.tasks_created += len(tasks)
    observe_tasks_created(len(tasks))
    logger.info("opportunity.tasks_created", extra={"task_count": len(tasks), "rule": "create_follow_up_tasks"})


def _deletion_body(change: RecordChange) -> str:
    opportunity = change.record
    return (
        f"The opportunity '{opportunity.name}' ({opportunity.id}) was deleted.\n"
        f"Stage: {opportunity.stage_name}\n"
        f"Amount: {opportunity.amount if opportunity.amount is not None else 'n/a'}"
    )


def notify_owners_of_deletion(ctx: TriggerContext, changes: list[RecordChange]) -> None:
    # Every message goes to the owners of the whole batch, not only the record's own owner.
    owners = ctx.lookups.owners()
    recipients = sorted({user.email for user in owners.values() if user.email})
    if not recipients or not changes:
        return

    messages = [
        NotificationMessage(
            recipients=recipients,
            subject=f"{ctx.settings.deletion_notification_subject}: {change.record.name}",
            body=_deletion_body(change),
            entity_id=change.record.id,
        )
        for change in changes
    ]

    try:
        results = ctx.notifier.send(messages)
    except NotificationFailure as exc:
        observe_notifications("failed", len(messages))
        logger.warning(
            "opportunity.deletion_notification_failed",
            exc_info=True,
            extra={"message_count": len(messages), "error": str(exc), "rule": "notify_owners_of_deletion"},
        )
        return
    except Exception as exc:
        observe_notifications("failed", len(messages))
        logger.exception(
            "opportunity.deletion_notification_error",
            extra={"message_count": len(messages), "error": str(exc), "rule": "notify_owners_of_deletion"},
        )
        return

    failures = [result for result in results if not result.success]
    delivered = len(results) - len(failures)
    observe_notifications("sent", delivered)
    observe_notifications("failed", len(failures))
    ctx.result.notifications_submitted += delivered
    for failure in failures:
        logger.warning(
            "opportunity.deletion_notification_rejected",
            extra={"error": failure.error, "rule": "notify_owners_of_deletion"},
        )
    logger.info(
        "opportunity.deletion_notifications_sent",
        extra={"message_count": delivered, "status": "Failed" if failures else "Succeeded"},
    )


def assign_vp_sales_primary_contact(ctx: TriggerContext, changes: list[RecordChange]) -> None:
    opportunities = [change.new for change in changes if change.new is not None]
    selected = select_primary_contacts(ctx.lookups, opportunities, ctx.settings.undelete_backfill_title)
    if not selected:
        return

    assignments = {opportunity.id: contact_id for opportunity, contact_id in selected}
    updated = ctx.store.update_primary_contacts(assignments)
    ctx.result.primary_contacts_assigned += updated
    logger.info(
        "opportunity.primary_contacts_restored",
        extra={"updated_count": updated, "rule": "assign_vp_sales_primary_contact"},
    )
