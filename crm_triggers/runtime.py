from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime

from crm_triggers.core.config import Settings, get_settings
from crm_triggers.core.database import session_scope
from crm_triggers.crm.models import utcnow
from crm_triggers.crm.notifications import NotificationService
from crm_triggers.crm.service import OpportunityLifecycleService
from crm_triggers.logging import configure_logging
from crm_triggers.metrics import generate_metrics_payload, metrics_content_type
from crm_triggers.otel import setup_otel

logger = logging.getLogger("crm_triggers.lifecycle")


def bootstrap(settings: Settings | None = None) -> Settings:
    """Configure logging and tracing once for the hosting process."""
    settings = settings or get_settings()
    configure_logging()
    setup_otel(settings.app_name, settings.otel_enabled)
    logger.info("crm_triggers.started", extra={"environment": settings.app_env})
    return settings


@contextmanager
def lifecycle_scope(
    *,
    notifier: NotificationService | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> Iterator[OpportunityLifecycleService]:
    with session_scope() as session:
        yield OpportunityLifecycleService(session, notifier=notifier, clock=clock)


def metrics_exposition(settings: Settings | None = None) -> tuple[bytes, str] | None:
    settings = settings or get_settings()
    if not settings.metrics_enabled:
        return None
    return generate_metrics_payload(), metrics_content_type()
