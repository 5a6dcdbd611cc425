"""
Error taxonomy for match scoring

Every error carries the HTTP status and machine code the API renders it with.
"""


class ScoringError(Exception):
    """Base class for scoring and ranking errors"""

    status_code = 500
    code = "INTERNAL_SERVER_ERROR"

    def __init__(self, message, details=None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self):
        """Convert error to dictionary for API responses"""
        error = {"code": self.code, "message": self.message}
        if self.details:
            error["details"] = self.details
        return {"error": error}


class PreconditionFailed(ScoringError):
    """Match is not finished, a score is unset, or a status change is illegal"""

    status_code = 400
    code = "PRECONDITION_FAILED"


class NotFound(ScoringError):
    """Referenced record does not exist"""

    status_code = 404
    code = "NOT_FOUND"


class ConsistencyConflict(ScoringError):
    """Match was already scored by an earlier or concurrent finalization"""

    status_code = 409
    code = "CONFLICT"
