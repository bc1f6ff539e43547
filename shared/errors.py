"""
Error taxonomy for the order workflow and the real-time layer.

Every error the core raises derives from OrderWorkflowError and carries the
HTTP status and machine-readable code the outer surfaces report. Only
ConflictError is retryable: the caller re-reads the order and tries again.
"""


class OrderWorkflowError(Exception):
    status_code = 400
    code = "order_workflow_error"
    retryable = False

    def __init__(self, message: str, details: list[str] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or []

    def to_dict(self) -> dict:
        payload = {"code": self.code, "message": self.message, "retryable": self.retryable}
        if self.details:
            payload["details"] = self.details
        return payload


class IllegalTransitionError(OrderWorkflowError):
    status_code = 422
    code = "illegal_transition"


class NotOwnerError(OrderWorkflowError):
    status_code = 403
    code = "not_owner"


class PermissionDeniedError(OrderWorkflowError):
    status_code = 403
    code = "permission_denied"


class ValidationError(OrderWorkflowError):
    status_code = 422
    code = "validation_error"


class IncompleteFulfillmentError(ValidationError):
    code = "incomplete_fulfillment"


class ConflictError(OrderWorkflowError):
    status_code = 409
    code = "version_conflict"
    retryable = True


class OrderNotFoundError(OrderWorkflowError):
    status_code = 404
    code = "order_not_found"


class AuthError(OrderWorkflowError):
    status_code = 401
    code = "auth_error"
