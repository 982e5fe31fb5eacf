"""Change-stream reconciler: the provider's locally materialized visible set.

Two producers feed it (live change events and periodic full refreshes) and
both go through ``apply()``, which holds one asyncio lock, so the projection
has a single writer. Events may arrive out of order; every row carries its
``updated_at`` write version and anything older than the last version applied
for that id is dropped. Replaying an event is therefore a no-op.

Newly admitted records are inserted immediately with placeholder display
fields and enriched out-of-band (landmark, reporter profile); an enrichment
result for a record that has since left the set is discarded.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Iterable, Optional, Union

from pydantic import ValidationError as SchemaValidationError

from riderescue.domain.enums import ChangeType, EmergencyStatus
from riderescue.domain.schemas import (
    ChangeEvent,
    EmergencyProjection,
    EmergencyRow,
    as_utc,
)
from riderescue.services.geo import Coordinates, distance_km
from riderescue.services.visibility_gate import VisibilityPolicy

logger = logging.getLogger(__name__)

EMERGENCIES_TABLE = "emergencies"

# Recorded for deleted ids so that no later-arriving event resurrects them
TOMBSTONE = datetime.max.replace(tzinfo=timezone.utc)

ENRICHMENT_FIELDS = ("landmark", "reporter_name", "reporter_avatar")

# How long a deleted or no-longer-waiting id keeps its version before a full
# refresh may forget it
VERSION_RETENTION = timedelta(hours=1)
_PROJECTION_FIELDS = frozenset(EmergencyProjection.model_fields)
_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FullRefresh:
    """Authoritative snapshot of the rows the provider may currently see."""

    rows: list[EmergencyRow]
    hidden_ids: frozenset[str] = field(default_factory=frozenset)


@dataclass(frozen=True)
class EnrichmentResult:
    emergency_id: str
    fields: dict[str, Any] = field(default_factory=dict)
    failed: bool = False


@dataclass(frozen=True)
class ObserverMoved:
    coordinates: Optional[Coordinates]


@dataclass(frozen=True)
class OptimisticRemoval:
    """Local removal ahead of a remote write (accept); records no version."""

    emergency_id: str


@dataclass(frozen=True)
class HideEmergency:
    emergency_id: str


Mutation = Union[ChangeEvent, FullRefresh, EnrichmentResult, ObserverMoved, OptimisticRemoval, HideEmergency]
Enricher = Callable[[EmergencyProjection], Awaitable[dict[str, Any]]]


# ---------------------------------------------------------------------------
# Reconciler
# ---------------------------------------------------------------------------


class ChangeStreamReconciler:
    """Single-writer projection store for one observer."""

    def __init__(
        self,
        policy: VisibilityPolicy,
        enricher: Optional[Enricher] = None,
        now: Callable[[], datetime] = _utcnow,
        observer: Optional[Coordinates] = None,
        version_retention: timedelta = VERSION_RETENTION,
    ):
        self.policy = policy
        self._enricher = enricher
        self._now = now
        self._observer = observer
        self._items: dict[str, EmergencyProjection] = {}
        self._versions: dict[str, datetime] = {}
        # id -> when it was deleted or left the waiting state
        self._retired: dict[str, datetime] = {}
        self.version_retention = version_retention
        self._hidden: set[str] = set()
        self._enrichment_tasks: dict[str, asyncio.Task] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    @property
    def observer(self) -> Optional[Coordinates]:
        return self._observer

    @property
    def hidden_ids(self) -> frozenset[str]:
        return frozenset(self._hidden)

    def visible(self) -> list[EmergencyProjection]:
        """Current visible set, newest first."""
        return sorted(
            self._items.values(),
            key=lambda p: as_utc(p.created_at) or _EPOCH,
            reverse=True,
        )

    def get(self, emergency_id: str) -> Optional[EmergencyProjection]:
        return self._items.get(emergency_id)

    def __contains__(self, emergency_id: str) -> bool:
        return emergency_id in self._items

    def __len__(self) -> int:
        return len(self._items)

    # ------------------------------------------------------------------
    # Write side
    # ------------------------------------------------------------------

    async def apply(self, mutation: Mutation) -> None:
        async with self._lock:
            if isinstance(mutation, ChangeEvent):
                self._apply_event(mutation)
            elif isinstance(mutation, FullRefresh):
                self._apply_refresh(mutation)
            elif isinstance(mutation, EnrichmentResult):
                self._apply_enrichment(mutation)
            elif isinstance(mutation, ObserverMoved):
                self._apply_observer(mutation.coordinates)
            elif isinstance(mutation, OptimisticRemoval):
                self._items.pop(mutation.emergency_id, None)
            elif isinstance(mutation, HideEmergency):
                self._hidden.add(mutation.emergency_id)
                self._items.pop(mutation.emergency_id, None)
            else:
                raise TypeError(f"Unsupported mutation: {type(mutation).__name__}")

    def _admits(self, candidate: EmergencyProjection) -> bool:
        if candidate.emergency_status != EmergencyStatus.WAITING:
            return False
        return self.policy.admits(candidate, self._observer, self._now())

    def _with_distance(self, projection: EmergencyProjection) -> EmergencyProjection:
        dist = None
        if (
            self._observer is not None
            and projection.latitude is not None
            and projection.longitude is not None
        ):
            dist = round(distance_km(self._observer, Coordinates(projection.latitude, projection.longitude)), 2)
        return projection.model_copy(update={"distance_km": dist})

    def _is_stale(self, emergency_id: str, version: Optional[datetime]) -> bool:
        last = self._versions.get(emergency_id)
        if last is None:
            return False
        if last == TOMBSTONE:
            return True
        return version is not None and version < last

    def _apply_event(self, event: ChangeEvent) -> None:
        if event.table != EMERGENCIES_TABLE:
            return
        try:
            row = EmergencyRow.model_validate(event.row or {})
        except SchemaValidationError as exc:
            logger.warning("Dropping malformed %s event: %s", event.type.value, exc)
            return

        emergency_id = row.emergency_id
        version = row.updated_at or event.commit_timestamp
        if self._is_stale(emergency_id, version):
            logger.debug("Ignoring stale %s for %s (version %s)", event.type.value, emergency_id, version)
            return

        if event.type == ChangeType.DELETE:
            self._versions[emergency_id] = TOMBSTONE
            self._retired.setdefault(emergency_id, self._now())
            self._items.pop(emergency_id, None)
            return

        if version is not None:
            self._versions[emergency_id] = version
        if "emergency_status" in row.model_fields_set:
            if row.emergency_status == EmergencyStatus.WAITING:
                self._retired.pop(emergency_id, None)
            else:
                self._retired.setdefault(emergency_id, self._now())

        if emergency_id in self._hidden:
            self._items.pop(emergency_id, None)
            return

        fields = {
            k: v for k, v in row.model_dump(exclude_unset=True).items() if k in _PROJECTION_FIELDS
        }
        if version is not None:
            fields["updated_at"] = version
        existing = self._items.get(emergency_id)
        if existing is not None:
            candidate = existing.model_copy(update=fields)
        else:
            candidate = EmergencyProjection(**fields)

        if not self._admits(candidate):
            if self._items.pop(emergency_id, None) is not None:
                logger.debug("Removed %s from visible set", emergency_id)
            return

        if existing is not None:
            self._items[emergency_id] = self._with_distance(candidate)
            return

        inserted = self._with_distance(candidate.model_copy(update={"enrichment_pending": True}))
        self._items[emergency_id] = inserted
        logger.debug("Inserted %s into visible set", emergency_id)
        self._schedule_enrichment(inserted)

    def _apply_refresh(self, refresh: FullRefresh) -> None:
        self._hidden.update(refresh.hidden_ids)
        previous = self._items
        items: dict[str, EmergencyProjection] = {}
        for row in refresh.rows:
            emergency_id = row.emergency_id
            if emergency_id in self._hidden:
                continue
            if self._is_stale(emergency_id, row.updated_at):
                # A newer event already decided this record
                if emergency_id in previous:
                    items[emergency_id] = previous[emergency_id]
                continue
            if row.updated_at is not None:
                self._versions[emergency_id] = row.updated_at

            candidate = EmergencyProjection(
                **{k: v for k, v in row.model_dump().items() if k in _PROJECTION_FIELDS}
            )
            if not self._admits(candidate):
                continue

            existing = previous.get(emergency_id)
            if existing is not None:
                kept = {name: getattr(existing, name) for name in ENRICHMENT_FIELDS}
                kept["enrichment_pending"] = existing.enrichment_pending
                items[emergency_id] = self._with_distance(candidate.model_copy(update=kept))
            else:
                items[emergency_id] = self._with_distance(
                    candidate.model_copy(update={"enrichment_pending": True})
                )

        self._items = items
        for emergency_id, projection in items.items():
            if projection.enrichment_pending:
                self._schedule_enrichment(projection)
        self._forget_retired({row.emergency_id for row in refresh.rows}, refresh.hidden_ids)
        logger.debug("Full refresh applied: %d visible (%d before)", len(items), len(previous))

    def _forget_retired(self, present: set[str], hidden_ids: frozenset[str]) -> None:
        """Drop bookkeeping for ids retired longer than the retention window."""
        now = self._now()
        for emergency_id, retired_at in list(self._retired.items()):
            if emergency_id in present or now - retired_at < self.version_retention:
                continue
            del self._retired[emergency_id]
            self._versions.pop(emergency_id, None)
            if emergency_id not in hidden_ids:
                self._hidden.discard(emergency_id)

    def _apply_enrichment(self, result: EnrichmentResult) -> None:
        existing = self._items.get(result.emergency_id)
        if existing is None:
            return
        update = {k: v for k, v in result.fields.items() if k in ENRICHMENT_FIELDS and v}
        update["enrichment_pending"] = False
        self._items[result.emergency_id] = existing.model_copy(update=update)

    def _apply_observer(self, coordinates: Optional[Coordinates]) -> None:
        self._observer = coordinates
        for emergency_id, projection in list(self._items.items()):
            if self._admits(projection):
                self._items[emergency_id] = self._with_distance(projection)
            else:
                del self._items[emergency_id]

    # ------------------------------------------------------------------
    # Enrichment tasks
    # ------------------------------------------------------------------

    def _schedule_enrichment(self, projection: EmergencyProjection) -> None:
        if self._enricher is None:
            return
        emergency_id = projection.emergency_id
        running = self._enrichment_tasks.get(emergency_id)
        if running is not None and not running.done():
            return
        task = asyncio.create_task(self._run_enrichment(projection))
        self._enrichment_tasks[emergency_id] = task
        task.add_done_callback(lambda t, eid=emergency_id: self._forget_task(eid, t))

    def _forget_task(self, emergency_id: str, task: asyncio.Task) -> None:
        if self._enrichment_tasks.get(emergency_id) is task:
            del self._enrichment_tasks[emergency_id]

    async def _run_enrichment(self, projection: EmergencyProjection) -> None:
        try:
            fields = await self._enricher(projection)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Enrichment failed for %s: %s", projection.emergency_id, exc)
            await self.apply(EnrichmentResult(projection.emergency_id, failed=True))
            return
        await self.apply(EnrichmentResult(projection.emergency_id, fields or {}))

    def pending_enrichments(self) -> Iterable[str]:
        return [eid for eid, task in self._enrichment_tasks.items() if not task.done()]

    async def drain(self) -> None:
        """Wait for every in-flight enrichment to land."""
        while self._enrichment_tasks:
            await asyncio.gather(*list(self._enrichment_tasks.values()), return_exceptions=True)

    async def aclose(self) -> None:
        tasks = list(self._enrichment_tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._enrichment_tasks.clear()
