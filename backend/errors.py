"""
Error taxonomy for the evaluation core.

Every error is a value: services raise these, the API layer turns them into
JSON responses. None of them is raised after a partial write.
"""

from typing import Any, Dict, Optional


class KPIError(Exception):
    code = "kpi_error"
    status_code = 400
    default_message = "Request could not be processed."

    def __init__(self, message: Optional[str] = None, **details: Any):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        payload = {"error": self.code, "message": self.message}
        payload.update(self.details)
        return payload


class ValidationError(KPIError):
    code = "validation_error"
    status_code = 400
    default_message = "Invalid input."


class NotFoundError(KPIError):
    code = "not_found"
    status_code = 404
    default_message = "Record not found."


class AuthorizationError(KPIError):
    code = "forbidden"
    status_code = 403
    default_message = "You are not allowed to perform this action."


class StateMismatchError(KPIError):
    code = "status_mismatch"
    status_code = 409
    default_message = "The evaluation is not in the required status."


class TransitionDeniedError(KPIError):
    """
    Reported for both authorization and status failures on a stage
    transition. The internal reason is kept for logging only.
    """

    code = "transition_denied"
    status_code = 403
    default_message = "No permission or status mismatch."

    def __init__(self, reason: KPIError):
        self.reason = reason
        super().__init__()


class StalenessError(KPIError):
    code = "evaluation_expired"
    status_code = 409
    default_message = "Evaluation has expired and needs HR intervention."


class CompletenessError(KPIError):
    code = "incomplete_scores"
    status_code = 422
    default_message = "Some items are not scored yet."


class ConflictError(KPIError):
    code = "conflict"
    status_code = 409
    default_message = "Concurrent modification detected."


class RuleNotConfiguredError(KPIError):
    code = "rule_not_configured"
    status_code = 409
    default_message = "Performance rule is not configured or disabled."
