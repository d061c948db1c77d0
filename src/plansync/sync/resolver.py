"""Conflict resolution strategies for the sync engine.

Resolution always works on whole entities: the winning side's ``Change``
becomes the conflict's ``resolved_change`` unmodified, so resolving the
same conflict twice with the same strategy yields the same bytes.

- ``WorkTrackingWinsPolicy``: Always picks the work-tracking change.
- ``DocumentWinsPolicy``: Always picks the document change.
- ``NewerWinsPolicy``: Picks the later timestamp; ties go to work tracking.

``manual`` has no policy: the conflict is left unresolved.

The ``create_policy()`` factory maps strategy strings to policy instances;
``ConflictResolver`` applies them to ``Conflict`` values.
"""

from __future__ import annotations

import logging
from typing import Protocol

from .errors import ResolutionFailure
from .models import Change, Conflict, Origin, ResolutionStrategy

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


class ResolutionPolicy(Protocol):
    """Protocol that all resolution policies must satisfy."""

    def pick(self, conflict: Conflict) -> Change:
        """Return the winning change of *conflict*.

        Raises:
            ResolutionFailure: If the winner cannot be determined.
        """
        ...  # pragma: no cover


def _require(conflict: Conflict, origin: Origin) -> Change:
    change = conflict.change_for(origin)
    if change is None:
        raise ResolutionFailure(
            conflict.conflict_id, f"missing {origin.value} change"
        )
    return change


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------


class WorkTrackingWinsPolicy:
    """Always resolve in favour of the work-tracking system."""

    def pick(self, conflict: Conflict) -> Change:
        return _require(conflict, Origin.WORK_TRACKING)


class DocumentWinsPolicy:
    """Always resolve in favour of the document."""

    def pick(self, conflict: Conflict) -> Change:
        return _require(conflict, Origin.DOCUMENT)


class NewerWinsPolicy:
    """Resolve in favour of the later change. Ties go to work tracking."""

    def pick(self, conflict: Conflict) -> Change:
        document = _require(conflict, Origin.DOCUMENT)
        work_tracking = _require(conflict, Origin.WORK_TRACKING)
        if document.timestamp > work_tracking.timestamp:
            return document
        return work_tracking


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

_STRATEGY_MAP: dict[ResolutionStrategy, type] = {
    ResolutionStrategy.WORK_TRACKING_WINS: WorkTrackingWinsPolicy,
    ResolutionStrategy.DOCUMENT_WINS: DocumentWinsPolicy,
    ResolutionStrategy.NEWER_WINS: NewerWinsPolicy,
}


def parse_strategy(strategy: ResolutionStrategy | str) -> ResolutionStrategy:
    """Coerce a strategy string to ``ResolutionStrategy``.

    Raises:
        ValueError: If the strategy string is not recognised.
    """
    if isinstance(strategy, ResolutionStrategy):
        return strategy
    try:
        return ResolutionStrategy(strategy)
    except ValueError:
        valid = sorted(s.value for s in ResolutionStrategy)
        raise ValueError(
            f"Unknown conflict strategy: '{strategy}'. Valid strategies: {valid}"
        ) from None


def create_policy(strategy: ResolutionStrategy | str) -> ResolutionPolicy | None:
    """Create the policy for *strategy*.

    Returns:
        A ``ResolutionPolicy``, or ``None`` for ``manual``.

    Raises:
        ValueError: If the strategy string is not recognised.
    """
    cls = _STRATEGY_MAP.get(parse_strategy(strategy))
    return cls() if cls is not None else None


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------


class ConflictResolver:
    """Apply resolution strategies to conflicts.

    Stateless; safe to share across passes.
    """

    def resolve(
        self, conflict: Conflict, strategy: ResolutionStrategy | str
    ) -> Conflict:
        """Resolve *conflict* with *strategy*.

        Args:
            conflict: The conflict to resolve.
            strategy: Strategy name or enum.

        Returns:
            The conflict with its resolution state set. For ``manual`` the
            conflict stays unresolved with ``strategy`` recorded.

        Raises:
            ResolutionFailure: If a winner cannot be determined, or the
                conflict was already resolved with a different strategy.
            ValueError: If the strategy string is not recognised.
        """
        strategy = parse_strategy(strategy)

        if conflict.is_resolved:
            if conflict.strategy is strategy:
                return conflict
            previous = conflict.strategy.value if conflict.strategy else "unknown"
            raise ResolutionFailure(
                conflict.conflict_id,
                f"already resolved with '{previous}', "
                f"cannot re-resolve with '{strategy.value}'",
            )

        policy = create_policy(strategy)
        if policy is None:
            logger.info(
                "Conflict %s left for manual resolution", conflict.conflict_id
            )
            return conflict.model_copy(update={"strategy": strategy})

        winner = policy.pick(conflict)
        logger.info(
            "Resolved %s with %s: %s wins",
            conflict.conflict_id,
            strategy.value,
            winner.origin.value,
        )
        return conflict.model_copy(
            update={
                "is_resolved": True,
                "strategy": strategy,
                "resolved_change": winner,
            }
        )
