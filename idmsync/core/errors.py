"""Typed exceptions for the reconciliation and provisioning core.

Every error raised by the core derives from :class:`IdmError`, which carries
an HTTP-ish status and a machine readable ``error_type`` so that the API
layer can render it without knowing the concrete class.
"""
from __future__ import annotations
from typing import Iterable, List, Optional


class IdmError(Exception):
    """Base exception for all identity-management operations."""

    status = 500
    error_type = "Unknown"

    def __init__(self, message: str = "", elements: Optional[Iterable[str]] = None):
        self.message = message
        self.elements: List[str] = list(elements or [])
        super().__init__(message)

    def to_dict(self) -> dict:
        """Convert to the JSON error body returned by the API."""
        error_dict = {
            "status": self.status,
            "type": self.error_type,
            "message": self.message,
        }
        if self.elements:
            error_dict["elements"] = self.elements
        return error_dict


class ClientError(IdmError):
    """Request could not be processed as submitted."""

    status = 400
    error_type = "InvalidValues"


class InvalidRealmError(ClientError):
    error_type = "InvalidRealm"


class RequiredValuesMissingError(ClientError):
    error_type = "RequiredValuesMissing"


class GroupOwnershipError(ClientError):
    """Group still owns other groups and cannot be deleted."""

    error_type = "GroupOwnership"


class MappingError(ClientError):
    """Connector object could not be mapped (missing key item, mandatory value...)."""

    error_type = "InvalidMapping"


class AmbiguousCorrelationError(ClientError):
    """More than one internal entity matches the incoming connector object."""

    error_type = "AmbiguousCorrelation"

    def __init__(self, message: str, matches: Iterable[str] = ()):
        self.matches = list(matches)
        super().__init__(message, self.matches)


class InvalidPasswordRuleConf(ClientError):
    """Password policies cannot be satisfied together."""

    error_type = "InvalidPasswordRuleConf"


class NotFoundError(IdmError):
    status = 404
    error_type = "NotFound"


class DuplicateError(IdmError):
    status = 409
    error_type = "EntityExists"


class ConflictError(IdmError):
    """ETag / last-change-date precondition failed."""

    status = 412
    error_type = "ConcurrentModification"


class UnauthorizedError(IdmError):
    """Caller lacks the entitlement required for an operation."""

    status = 403
    error_type = "Unauthorized"


class DelegatedAdministrationError(IdmError):
    """Entity lies outside the caller's realm-scoped administration."""

    status = 403
    error_type = "DelegatedAdministration"

    def __init__(self, realm: str, kind: str, key: Optional[str]):
        self.realm = realm
        self.kind = kind
        self.key = key
        super().__init__(f"Missing entitlement or realm administration under {realm} for {kind} {key}")


class ActionError(IdmError):
    """A pull/push action hook failed for the current record."""

    error_type = "ActionFailure"

    def __init__(self, action: str, phase: str, cause: Exception):
        self.action = action
        self.phase = phase
        self.cause = cause
        super().__init__(f"{action}.{phase} failed: {cause}")


class IgnoreProvisionError(IdmError):
    """Raised by an action hook to skip the current record."""

    status = 200
    error_type = "Ignore"


class JobExecutionError(IdmError):
    """Task or job run aborted as a whole."""

    error_type = "Scheduling"
