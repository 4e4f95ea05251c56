from __future__ import annotations


class SupervisorError(Exception):
    """Base for every error a supervisor operation can surface."""

    kind = "supervisor_error"

    def __init__(self, message: str, service_id: int | None = None) -> None:
        super().__init__(message)
        self.service_id = service_id


class NotFound(SupervisorError):
    kind = "not_found"


class ContainerUnresolvable(SupervisorError):
    kind = "container_unresolvable"


class RuntimeOperationFailed(SupervisorError):
    kind = "runtime_operation_failed"


class InvalidOperation(SupervisorError):
    kind = "invalid_operation"


class OperationCancelled(SupervisorError):
    kind = "cancelled"
