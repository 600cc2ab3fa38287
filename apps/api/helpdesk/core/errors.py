from __future__ import annotations

from typing import Any


class HelpdeskError(Exception):
    pass


class PermissionDeniedError(HelpdeskError):
    """Authorization denial.

    Carries the permission that would have been needed so callers can log it. The HTTP layer
    never echoes these details back to the client.
    """

    def __init__(
        self,
        required_permission: str,
        resource_type: str = "unknown",
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(f"Missing permission: {required_permission} for {resource_type}")
        self.required_permission = required_permission
        self.resource_type = resource_type
        self.context = context or {}


class NotFoundError(HelpdeskError):
    def __init__(self, resource_type: str, resource_id: object) -> None:
        super().__init__(f"{resource_type} {resource_id} not found")
        self.resource_type = resource_type
        self.resource_id = resource_id


class InvalidPayloadError(HelpdeskError):
    pass
