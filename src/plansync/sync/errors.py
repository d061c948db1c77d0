"""Error taxonomy for the synchronization engine.

Detection and persistence failures are fatal to a pass and leave the cursor
where it was. Application failures are isolated to the entity they concern.
Resolution failures leave the conflict unresolved for manual handling.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for all synchronization errors."""


class DetectionFailure(SyncError):
    """A side could not be queried or returned a malformed response."""

    def __init__(self, origin: str, message: str) -> None:
        self.origin = origin
        super().__init__(f"{origin}: {message}")


class ApplicationFailure(SyncError):
    """Writing one change to its target system failed."""

    def __init__(self, entity_id: str, target: str, message: str) -> None:
        self.entity_id = entity_id
        self.target = target
        super().__init__(f"applying {entity_id} to {target} failed: {message}")


class ResolutionFailure(SyncError):
    """A conflict winner could not be determined."""

    def __init__(self, conflict_id: str, message: str) -> None:
        self.conflict_id = conflict_id
        super().__init__(f"{conflict_id}: {message}")


class PersistenceFailure(SyncError):
    """The state store could not be read or written."""


class PairNotFound(SyncError):
    """No synchronization configuration with the given name exists."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Sync configuration '{name}' not found")


class ConflictNotFound(SyncError):
    """No conflict with the given id exists."""

    def __init__(self, conflict_id: str) -> None:
        self.conflict_id = conflict_id
        super().__init__(f"Conflict '{conflict_id}' not found")


class PassAlreadyRunning(SyncError):
    """A pass for the configuration is already in progress."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"A sync pass for '{name}' is already running")
