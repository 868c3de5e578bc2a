from __future__ import annotations


class TriggerError(Exception):
    """Base error for opportunity trigger processing."""


class TriggerContractError(TriggerError):
    """Raised when a phase is dispatched with input that breaks the dispatch contract."""


class NotificationFailure(TriggerError):
    """Raised by notification services when a submission cannot be delivered."""

    def __init__(self, message: str, failed_count: int = 0) -> None:
        self.failed_count = failed_count
        super().__init__(message)


class OpportunityNotFoundError(TriggerError):
    """Raised when a lifecycle operation references opportunities that are not available."""

    def __init__(self, opportunity_ids: list[str]) -> None:
        self.opportunity_ids = opportunity_ids
        super().__init__(f"opportunities not found: {', '.join(opportunity_ids)}")
