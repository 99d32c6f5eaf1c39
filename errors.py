# errors.py
# -----------------------------------------------------------------------------
# Error taxonomy for the assessment engine.
# - Creation-time errors (validation, limit, concurrency, locked lesson) refuse
#   the "start" action and leave no partial state behind.
# - NetworkError is transient: the snapshot stays put and the next load retries.
# - StorageError is permanent: surfaced as a 500, the snapshot is still kept.
# - TimeExpiredError is the expected expiry signal, raised only after finalize.
# -----------------------------------------------------------------------------


class AssessmentError(Exception):
    """Base class for every error the engine surfaces to callers."""

    status_code = 400
    retryable = False

    def __init__(self, message: str = "", **context):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.context = context

    def to_dict(self):
        return {"ok": False, "error": self.message, "kind": self.__class__.__name__}


class ValidationError(AssessmentError):
    """Malformed or empty assessment definition, or an unknown option."""


class LimitExceededError(AssessmentError):
    """Attempts exhausted for this learner and assessment."""

    status_code = 403


class ConcurrencyError(AssessmentError):
    """A session already occupies the slot."""

    status_code = 409

    def __init__(self, message: str = "An assessment is already in progress.", **context):
        super().__init__(message, **context)


class LessonLockedError(AssessmentError):
    """The lesson that carries the assessment is not unlocked yet."""

    status_code = 403


class NetworkError(AssessmentError):
    """Transient failure talking to the attempt history or snapshot storage."""

    status_code = 503
    retryable = True


class StorageError(AssessmentError):
    """Permanent storage failure (constraint, schema or disk). Retrying will not help."""

    status_code = 500


class TimeExpiredError(AssessmentError):
    """The time limit elapsed; the session has already been finalized as expired."""

    status_code = 410


__all__ = [
    "AssessmentError",
    "ValidationError",
    "LimitExceededError",
    "ConcurrencyError",
    "LessonLockedError",
    "NetworkError",
    "StorageError",
    "TimeExpiredError",
]
