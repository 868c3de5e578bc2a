from __future__ import annotations

from contextvars import ContextVar, Token

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
trigger_phase_var: ContextVar[str | None] = ContextVar("trigger_phase", default=None)


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def set_trigger_phase(value: str | None) -> Token[str | None]:
    return trigger_phase_var.set(value)


def reset_trigger_phase(token: Token[str | None]) -> None:
    trigger_phase_var.reset(token)


def get_trigger_phase() -> str | None:
    return trigger_phase_var.get()
