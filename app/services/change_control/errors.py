"""
Change control exception classes

Structured errors raised by the change-control services. The API layer maps
them onto HTTP status codes; none of them is swallowed inside the services.
"""
from typing import Any, Dict, Optional


class ChangeControlError(Exception):
    """
    Base exception for all change-control errors

    Attributes:
        message: human-readable reason, safe to show on the dashboard
        error_code: machine-readable code
        context: extra data (record id, statuses, limits)
    """

    http_status: int = 409

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.context = context or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_code": self.error_code,
            "message": self.message,
            "context": self.context,
        }


class NotFound(ChangeControlError):
    http_status = 404

    def __init__(self, record_id: Any):
        super().__init__(
            f"Change record {record_id} not found",
            error_code="NOT_FOUND",
            context={"record_id": str(record_id)},
        )


class InvalidTransition(ChangeControlError):
    """
    The requested status change is not an edge of the state machine, or the
    stored status changed underneath the caller.
    """

    def __init__(
        self,
        record_id: Any,
        current: Optional[str],
        requested: str,
        message: Optional[str] = None,
        error_code: str = "INVALID_TRANSITION",
    ):
        super().__init__(
            message or f"Cannot move change record {record_id} from '{current}' to '{requested}'",
            error_code=error_code,
            context={"record_id": str(record_id), "current": current, "requested": requested},
        )
        self.current = current
        self.requested = requested


class PreconditionFailed(InvalidTransition):
    def __init__(
        self,
        record_id: Any,
        current: Optional[str],
        expected: str,
        operation: str,
        message: Optional[str] = None,
    ):
        super().__init__(
            record_id,
            current,
            operation,
            message=message or f"Cannot {operation} change record {record_id}: status is '{current}', expected '{expected}'",
            error_code="PRECONDITION_FAILED",
        )
        self.expected = expected


class NotRollbackable(ChangeControlError):
    def __init__(self, record_id: Any, status: Optional[str], reason: Optional[str] = None):
        super().__init__(
            reason or f"Change record {record_id} cannot be rolled back from status '{status}'",
            error_code="NOT_ROLLBACKABLE",
            context={"record_id": str(record_id), "status": status},
        )
        self.status = status


class PolicyDenied(ChangeControlError):
    """Autopilot is not allowed to run this change unattended."""

    def __init__(self, record_id: Any, reason: str, violation_type: str):
        super().__init__(
            reason,
            error_code="POLICY_DENIED",
            context={"record_id": str(record_id), "violation_type": violation_type},
        )
        self.violation_type = violation_type


class ExternalMutationFailed(ChangeControlError):
    """
    The store platform rejected or failed a content write.

    Attributes:
        status_code: HTTP status from the platform (None on transport errors)
        entity_id: affected store object
    """

    http_status = 500

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        entity_id: Optional[str] = None,
        response_body: Optional[str] = None,
    ):
        super().__init__(
            message,
            error_code="EXTERNAL_MUTATION_FAILED",
            context={
                "status_code": status_code,
                "entity_id": entity_id,
                "response_body": response_body,
            },
        )
        self.status_code = status_code
        self.entity_id = entity_id


class InvalidPayload(ChangeControlError):
    http_status = 422

    def __init__(self, message: str, action_type: Optional[str] = None, errors: Optional[list] = None):
        super().__init__(
            message,
            error_code="INVALID_PAYLOAD",
            context={"action_type": action_type, "errors": errors or []},
        )
