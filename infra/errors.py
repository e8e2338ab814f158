from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    INVALID_FORMAT = "InvalidFormat"
    NOT_FOUND = "NotFound"
    EXPIRED = "Expired"
    INACTIVE = "Inactive"
    USAGE_LIMIT_EXCEEDED = "UsageLimitExceeded"
    SELF_INVITE_ATTEMPT = "SelfInviteAttempt"
    ALREADY_REGISTERED = "AlreadyRegistered"
    CODE_GENERATION_EXHAUSTED = "CodeGenerationExhausted"
    INSUFFICIENT_CREDITS = "InsufficientCredits"
    APPROVAL_NOT_FOUND = "ApprovalNotFound"


# Messages are safe to show to end users as-is.
ERROR_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.INVALID_FORMAT: "Invalid invite code format",
    ErrorKind.NOT_FOUND: "Invite code not found",
    ErrorKind.EXPIRED: "Invite code has expired",
    ErrorKind.INACTIVE: "Invite code is inactive",
    ErrorKind.USAGE_LIMIT_EXCEEDED: "Invite code usage limit exceeded",
    ErrorKind.SELF_INVITE_ATTEMPT: "Cannot use your own invite code",
    ErrorKind.ALREADY_REGISTERED: "User has already been invited",
    ErrorKind.CODE_GENERATION_EXHAUSTED: "Could not issue an invite code, please retry",
    ErrorKind.INSUFFICIENT_CREDITS: "Not enough credits available",
    ErrorKind.APPROVAL_NOT_FOUND: "Reward approval not found",
}


def message_for(kind: ErrorKind) -> str:
    return ERROR_MESSAGES[kind]


class ReferralError(Exception):
    kind: Optional[ErrorKind] = None
    transient = False

    def __init__(self, message: Optional[str] = None):
        if message is None and self.kind is not None:
            message = message_for(self.kind)
        super().__init__(message)


class CodeGenerationExhaustedError(ReferralError):
    """Every attempt collided with an existing code.

    At 36^8 codes this points at store contention rather than a full
    codespace, so callers should treat it as retryable.
    """

    kind = ErrorKind.CODE_GENERATION_EXHAUSTED
    transient = True

    def __init__(self, attempts: int):
        self.attempts = attempts
        super().__init__(f"Failed to generate a unique invite code after {attempts} attempts")


class InsufficientCreditsError(ReferralError):
    kind = ErrorKind.INSUFFICIENT_CREDITS

    def __init__(self, required: int, available: int):
        self.required = required
        self.available = available
        super().__init__(f"Insufficient credits: required {required}, available {available}")


class ApprovalNotFoundError(ReferralError):
    kind = ErrorKind.APPROVAL_NOT_FOUND

    def __init__(self, approval_id: str):
        self.approval_id = approval_id
        super().__init__(f"Reward approval {approval_id} not found")


class InvalidStateTransitionError(ReferralError):
    pass
