"""
Fault taxonomy for plugin registration and sync.

- RemoteFault: network, auth or store-rejected request
- NotFoundFault: referenced solution, message, type or assembly is absent
- ReflectionFault: local assembly unreadable or without plugin types
- SyncFault: raised by the sync engine, wraps one of the above and marks a
  run that may have been partially applied

Usage:
    try:
        result = await manager.sync_plugin_types(service, assembly_id, path)
    except SyncFault as e:
        logger.error(f"Sync failed during {e.partition}: {e.cause}")
"""

from typing import Any, Optional


class XrmFault(Exception):
    """Base class for all faults raised by this package."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class RemoteFault(XrmFault):
    """
    A request to the Dataverse Web API failed.

    Attributes:
        category: One of network, auth, not_found, validation, server
        status: HTTP status code, if a response was received
        code: Dataverse error code from the response body, if any
    """

    NETWORK = "network"
    AUTH = "auth"
    NOT_FOUND = "not_found"
    VALIDATION = "validation"
    SERVER = "server"

    def __init__(
        self,
        message: str,
        category: str = VALIDATION,
        status: Optional[int] = None,
        code: Optional[str] = None,
    ):
        self.category = category
        self.status = status
        self.code = code
        super().__init__(message)

    def __str__(self) -> str:
        if self.status is not None:
            return f"{self.message} (HTTP {self.status}, {self.category})"
        return f"{self.message} ({self.category})"


class NotFoundFault(XrmFault):
    """A referenced record does not exist in the environment."""

    def __init__(
        self, message: str, entity: Optional[str] = None, key: Optional[str] = None
    ):
        self.entity = entity
        self.key = key
        super().__init__(message)


class ReflectionFault(XrmFault):
    """The local assembly could not be read or declares no plugin types."""

    def __init__(self, message: str, assembly_path: Optional[str] = None):
        self.assembly_path = assembly_path
        super().__init__(message)


class SyncFault(XrmFault):
    """
    A plugin sync stopped on a fault.

    Writes issued before the fault are not rolled back. The sync is
    idempotent, so re-running it applies only the outstanding changes.

    Attributes:
        cause: The underlying fault
        partition: Phase that was running (reflect, read, create, reconcile, remove)
        partial_result: PluginSyncResult with what was applied before the fault
    """

    def __init__(
        self,
        message: str,
        cause: Optional[Exception] = None,
        partition: Optional[str] = None,
        partial_result: Any = None,
    ):
        self.cause = cause
        self.partition = partition
        self.partial_result = partial_result
        super().__init__(message)


class ConfigurationError(ValueError):
    """Configuration is missing or invalid."""
