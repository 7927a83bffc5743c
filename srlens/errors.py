"""
Error kinds raised across SRLens.

Every error carries the stage it was raised in, a stable code and a
message, plus optional structured details. ``retryable`` tells callers
whether backing off and retrying can succeed.
"""


class SRLensError(Exception):
    code = "unknown"
    retryable = False

    def __init__(self, message: str, stage: str = "unknown", **details):
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.details = details

    def to_dict(self) -> dict:
        return {
            "stage": self.stage,
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            **self.details,
        }


class NotFoundError(SRLensError):
    code = "not_found"


class ConflictError(SRLensError):
    code = "conflict"


class ValidationError(SRLensError):
    code = "validation"


class IncompleteError(SRLensError):
    code = "incomplete"

    @property
    def missing_parts(self) -> list[int]:
        return self.details.get("missing_parts", [])


class SizeMismatchError(SRLensError):
    code = "size_mismatch"


class IntegrityError(SRLensError):
    code = "integrity_failure"


class UnavailableError(SRLensError):
    code = "unavailable"
    retryable = True

    @property
    def retry_after(self) -> float:
        return self.details.get("retry_after", 1.0)


class UnknownError(SRLensError):
    code = "unknown"
