"""
Shared infrastructure for the referral core

- Settings loaded from the environment
- Structured logging
- Transactional store over SQLAlchemy
- Table definitions and error kinds
"""

from .errors import (
    ErrorKind,
    ReferralError,
    CodeGenerationExhaustedError,
    InsufficientCreditsError,
    ApprovalNotFoundError,
    InvalidStateTransitionError,
)
from .advisory import AdvisoryOutcome, run_advisory
from .clock import utcnow
from .store import Store, SqlStore, ExecuteResult, create_store, to_row
from .settings import Settings, get_settings

__all__ = [
    "ErrorKind",
    "ReferralError",
    "CodeGenerationExhaustedError",
    "InsufficientCreditsError",
    "ApprovalNotFoundError",
    "InvalidStateTransitionError",
    "AdvisoryOutcome",
    "run_advisory",
    "utcnow",
    "Store",
    "SqlStore",
    "ExecuteResult",
    "create_store",
    "to_row",
    "Settings",
    "get_settings",
]
