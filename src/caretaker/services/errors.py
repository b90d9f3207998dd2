"""Domain errors raised by the drift and maintenance services."""

from enum import StrEnum
from typing import Any


class MaintenanceErrorCode(StrEnum):
    """Closed set of domain error codes."""

    INVALID_REQUEST = "INVALID_REQUEST"
    INTEGRATION_NOT_FOUND = "INTEGRATION_NOT_FOUND"
    PROPOSAL_NOT_FOUND = "PROPOSAL_NOT_FOUND"
    DRIFT_RECORD_NOT_FOUND = "DRIFT_RECORD_NOT_FOUND"
    TOOL_NOT_FOUND = "TOOL_NOT_FOUND"
    INVALID_PROPOSAL_STATE = "INVALID_PROPOSAL_STATE"
    NO_DRIFT_TO_PROPOSE = "NO_DRIFT_TO_PROPOSE"
    DUPLICATE_INTEGRATION = "DUPLICATE_INTEGRATION"
    DUPLICATE_TENANT = "DUPLICATE_TENANT"
    SCHEMA_APPLICATION_ERROR = "SCHEMA_APPLICATION_ERROR"


class MaintenanceError(Exception):
    """A domain failure carrying a machine-readable code."""

    def __init__(
        self,
        code: MaintenanceErrorCode,
        message: str,
        details: dict[str, Any] | None = None,
    ):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __repr__(self) -> str:
        return f"MaintenanceError({self.code!s}, {self.message!r})"
