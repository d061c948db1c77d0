"""Cursor-based synchronization engine.

Public API for keeping a planning document and a work-tracking team in
step.

Architecture
------------
Each pass compares both systems against the last committed **cursor** and
a per-entity **archive** of content hashes (``sync_entity``). Each side is
compared with its own archived hash; entities changed on both sides since
the cursor become conflicts, resolved by policy or by an operator.

Modules:

- ``models``    -- ``Change``, ``Conflict``, ``SyncCursor``,
  ``SyncPairConfig``, ``PassReport`` and the entity payload variants.
- ``clients``   -- ``WorkTrackingClient``/``DocumentClient`` protocols and
  the ``RemoteEntity`` both return.
- ``store``     -- ``SyncStateStore``: cursors, conflicts, history, archive
  and configurations in SQLite.
- ``detector``  -- ``ChangeDetector``: classify changes since the cursor.
- ``resolver``  -- ``ConflictResolver`` and the resolution policies.
- ``manager``   -- ``SyncManager``: run one pass through its states.
- ``scheduler`` -- ``SyncScheduler``: hourly/daily/weekly ticks.
- ``service``   -- ``SyncService``: trigger, status, conflicts, resolve.
- ``reporter``  -- Human-readable and JSON report formatting.

Usage example
-------------
::

    from plansync.sync import SyncPairConfig, SyncService, SyncStateStore

    async with SyncStateStore(".plansync/state.db") as store:
        await store.upsert_config(
            SyncPairConfig(name="roadmap", document_ref="doc-1", team_id="ENG")
        )
        service = SyncService(store, client_factory=build_clients)
        result = await service.trigger_sync("roadmap")
        print(format_pass_report(result.data))
"""

from .detector import ChangeDetector, DetectionResult
from .errors import (
    ApplicationFailure,
    ConflictNotFound,
    DetectionFailure,
    PairNotFound,
    PassAlreadyRunning,
    PersistenceFailure,
    ResolutionFailure,
    SyncError,
)
from .manager import ResolveResult, SyncManager
from .models import (
    Change,
    ChangeAction,
    Conflict,
    EntityKind,
    Origin,
    PassReport,
    PassState,
    ResolutionStrategy,
    SyncCadence,
    SyncCursor,
    SyncDirection,
    SyncHistoryRecord,
    SyncPair,
    SyncPairConfig,
)
from .reporter import (
    format_conflict,
    format_pass_report,
    format_status,
    report_to_json,
)
from .resolver import ConflictResolver
from .scheduler import PassLocks, SyncScheduler
from .service import OperationResult, ResultCode, SyncService, SyncStatus
from .store import SyncStateStore

__all__ = [
    "ApplicationFailure",
    "Change",
    "ChangeAction",
    "ChangeDetector",
    "Conflict",
    "ConflictNotFound",
    "ConflictResolver",
    "DetectionFailure",
    "DetectionResult",
    "EntityKind",
    "OperationResult",
    "Origin",
    "PairNotFound",
    "PassAlreadyRunning",
    "PassLocks",
    "PassReport",
    "PassState",
    "PersistenceFailure",
    "ResolutionFailure",
    "ResolutionStrategy",
    "ResolveResult",
    "ResultCode",
    "SyncCadence",
    "SyncCursor",
    "SyncDirection",
    "SyncError",
    "SyncHistoryRecord",
    "SyncManager",
    "SyncPair",
    "SyncPairConfig",
    "SyncScheduler",
    "SyncService",
    "SyncStateStore",
    "SyncStatus",
    "format_conflict",
    "format_pass_report",
    "format_status",
    "report_to_json",
]
