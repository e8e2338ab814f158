"""
Best-effort side work (stats, balance cache, event log).

Failures here are logged and reported in an AdvisoryOutcome; they never
reach the caller of the primary operation.
"""

from typing import Any, Callable, Optional

from pydantic import BaseModel


class AdvisoryOutcome(BaseModel):
    name: str
    ok: bool
    error: Optional[str] = None
    value: Any = None


def run_advisory(name: str, fn: Callable[[], Any], logger, **context) -> AdvisoryOutcome:
    try:
        value = fn()
    except Exception as e:
        logger.warning("advisory_task_failed", task=name, error=str(e), **context)
        return AdvisoryOutcome(name=name, ok=False, error=str(e))
    return AdvisoryOutcome(name=name, ok=True, value=value)
