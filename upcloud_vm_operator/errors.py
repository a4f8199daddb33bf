"""
errors.py
---------
Exception taxonomy shared by the store, the provisioning client and the
reconciler.

The reconciler branches on these types and on :class:`ErrorKind`, never on
provider payloads. Translation into ``kopf.TemporaryError`` /
``kopf.PermanentError`` happens only in :mod:`upcloud_vm_operator.handlers`.
"""
from __future__ import annotations

from enum import Enum
from typing import Optional


class OperatorError(Exception):
    """Base class for every error raised by this package."""


class ConfigError(OperatorError):
    """Missing or invalid startup configuration (fatal)."""


class InvalidSpecError(OperatorError):
    """The record's desired state does not match the schema."""


# ---------------------------------------------------------------------------
# Resource store ------------------------------------------------------------
# ---------------------------------------------------------------------------

class StoreError(OperatorError):
    """The resource store rejected a read or write."""


class RecordNotFound(StoreError):
    """The record no longer exists in the store."""


class ConflictError(StoreError):
    """Optimistic-concurrency collision: the written version is stale."""


# ---------------------------------------------------------------------------
# Provisioning --------------------------------------------------------------
# ---------------------------------------------------------------------------

class ErrorKind(str, Enum):
    """Classification attached to every :class:`ProvisioningError`."""

    TRANSIENT = "Transient"
    ALREADY_EXISTS = "AlreadyExists"
    NOT_FOUND = "NotFound"
    PERMANENT_REJECTION = "PermanentRejection"


class ProvisioningError(OperatorError):
    """A call to the provisioning API failed."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.TRANSIENT,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code
        self.error_code = error_code

    def __str__(self) -> str:
        base = super().__str__()
        if self.error_code:
            return f"{base} [{self.kind.value}: {self.error_code}]"
        return f"{base} [{self.kind.value}]"


class WaitTimeoutError(ProvisioningError):
    """The VM did not reach the desired state within the wait bound."""

    def __init__(self, message: str) -> None:
        super().__init__(message, kind=ErrorKind.TRANSIENT)


class WaitCancelled(ProvisioningError):
    """A wait was interrupted because the operator is shutting down."""

    def __init__(self, message: str) -> None:
        super().__init__(message, kind=ErrorKind.TRANSIENT)
