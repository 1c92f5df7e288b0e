from enum import Enum
from typing import Optional


class ExamGuardError(Exception):
    """Base class for errors raised by the proctoring engine."""


class CaptureFailureReason(str, Enum):
    PERMISSION_DENIED = "permission_denied"
    DEVICE_UNAVAILABLE = "device_unavailable"
    STREAM_STALLED = "stream_stalled"


class CaptureError(ExamGuardError):
    def __init__(self, reason: CaptureFailureReason, message: Optional[str] = None):
        self.reason = reason
        super().__init__(message or reason.value)


class DetectorUnavailableError(ExamGuardError):
    pass


class ViolationLogSealedError(ExamGuardError):
    pass


class ExamNotFoundError(ExamGuardError):
    pass


class ExamAlreadyTakenError(ExamGuardError):
    pass


class SessionNotFoundError(ExamGuardError):
    pass


class SessionStateError(ExamGuardError):
    """Operation is not allowed in the session's current status."""


class InvalidAnswerError(ExamGuardError):
    pass


class DuplicateUsernameError(ExamGuardError):
    pass


class AuthenticationError(ExamGuardError):
    pass
