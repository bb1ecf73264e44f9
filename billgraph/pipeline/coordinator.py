"""Pipeline coordinator: drives ingestion messages through extract, resolve and merge.

Each message becomes a ``WorkUnit`` that moves through
``received -> extracted -> resolved -> merged``. The coordinator owns all
retry policy; components raise and never retry on their own.

Failure handling:

* retryable errors (``ExtractionUnavailable``, ``ProcessingTimeout``,
  unexpected exceptions such as a dropped store connection) are retried
  with exponential backoff up to ``max_attempts``, then dead-lettered
* ``UnknownCaseError`` parks the unit until ``case_registered`` is called
* ``DataIntegrityError`` and malformed payloads are dead-lettered at once
* cancelled units end in ``failed`` and are not retried

Parked and dead-lettered units are also written to the graph store as
``UnresolvedUnit`` nodes, so billing queries in any process can flag the
gap; a later merge or cancellation marks the node resolved.

Delivery is at-least-once. A redelivered message whose unit already merged
is acknowledged without reprocessing; any other redelivery simply runs
again, which is safe because every stage is idempotent. Merged units keep
only their result, and at most ``merged_history`` of them are remembered.
"""

from __future__ import annotations

import queue
import threading
import time
from collections import OrderedDict
from concurrent.futures import Future, ThreadPoolExecutor
from types import TracebackType
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Set

from loguru import logger

from billgraph.errors import (
    BillGraphError,
    DataIntegrityError,
    ProcessingTimeout,
    UnitCancelled,
    UnknownCaseError,
)
from billgraph.extraction.models import BillingExtractor
from billgraph.merge.engine import GraphMergeEngine
from billgraph.merge.models import ResolvedParticipant
from billgraph.pipeline.messages import IngestionMessage, UnitError, UnitState, WorkUnit
from billgraph.pipeline.normalization import RecordNormalizer
from billgraph.pipeline.payloads import PayloadStore
from billgraph.resolution.entity_resolver import EntityResolver
from billgraph.storage.locks import KeyedLocks
from billgraph.storage.schemas import UnresolvedState, UnresolvedUnit
from billgraph.utils.config import PipelineConfig


class WorkQueue(Protocol):
    """Source of ingestion messages with explicit acknowledgement."""

    def get(self, timeout: Optional[float] = None) -> Optional[IngestionMessage]: ...

    def ack(self, message: IngestionMessage) -> None: ...


class InMemoryWorkQueue:
    """``WorkQueue`` over ``queue.Queue``, for scripts and tests."""

    def __init__(self, messages: Iterable[IngestionMessage] = ()) -> None:
        self._queue: "queue.Queue[IngestionMessage]" = queue.Queue()
        self.acked: List[str] = []
        for message in messages:
            self.put(message)

    def put(self, message: IngestionMessage) -> None:
        self._queue.put(message)

    def get(self, timeout: Optional[float] = None) -> Optional[IngestionMessage]:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def ack(self, message: IngestionMessage) -> None:
        self.acked.append(message.message_id)
        self._queue.task_done()

    def __len__(self) -> int:
        return self._queue.qsize()


class PipelineCoordinator:
    """Processes ingestion messages concurrently, one unit's stages in order.

    Example:
        >>> coordinator = PipelineCoordinator(
        ...     payloads=FilesystemPayloadStore("data/payloads"),
        ...     normalizer=RecordNormalizer(),
        ...     extractor=HeuristicBillingExtractor(),
        ...     resolver=EntityResolver(store),
        ...     engine=GraphMergeEngine(store),
        ... )
        >>> unit = coordinator.process(message)
        >>> unit.state
        <UnitState.MERGED: 'merged'>
    """

    def __init__(
        self,
        *,
        payloads: PayloadStore,
        normalizer: RecordNormalizer,
        extractor: BillingExtractor,
        resolver: EntityResolver,
        engine: GraphMergeEngine,
        config: Optional[PipelineConfig] = None,
        sleep_fn: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.payloads = payloads
        self.normalizer = normalizer
        self.extractor = extractor
        self.resolver = resolver
        self.engine = engine
        self.config = config or PipelineConfig()
        self.sleep_fn = sleep_fn
        self.clock = clock

        self._units: Dict[str, WorkUnit] = {}
        self._merged: "OrderedDict[str, None]" = OrderedDict()
        self._lock = threading.Lock()
        self._unit_locks = KeyedLocks()
        self._cancelled_messages: Set[str] = set()
        self._cancelled_cases: Set[str] = set()
        self._stop = threading.Event()

        self.stats = {
            "processed": 0,
            "merged": 0,
            "retries": 0,
            "parked": 0,
            "dead_lettered": 0,
            "cancelled": 0,
            "redeliveries_skipped": 0,
        }

        logger.info(
            "PipelineCoordinator initialized",
            max_workers=self.config.max_workers,
            max_attempts=self.config.max_attempts,
            extractor=getattr(extractor, "name", type(extractor).__name__),
        )

    # -----------------------
    # Public API
    # -----------------------
    def submit(self, message: IngestionMessage) -> WorkUnit:
        """Register ``message`` and return its unit (the existing one on redelivery)."""
        with self._lock:
            unit = self._units.get(message.message_id)
            if unit is None:
                unit = WorkUnit(message=message)
                self._units[message.message_id] = unit
            return unit

    def process(self, message: IngestionMessage) -> WorkUnit:
        """Run one message to a resting state: merged, parked, failed or dead-lettered."""
        unit = self.submit(message)
        with self._unit_locks.hold(f"unit:{message.message_id}"):
            if unit.state is UnitState.MERGED:
                self._bump("redeliveries_skipped")
                logger.info("Redelivered message already merged", message_id=unit.message_id)
                return unit
            if unit.state is UnitState.DEAD_LETTERED:
                logger.info("Reprocessing dead-lettered unit", message_id=unit.message_id)
            unit.attempts = 0
            self._run(unit)
        return unit

    def process_batch(self, messages: Iterable[IngestionMessage]) -> List[WorkUnit]:
        """Process messages in parallel; results keep the input order."""
        messages = list(messages)
        logger.info(f"Processing batch of {len(messages)} messages")
        with ThreadPoolExecutor(max_workers=self.config.max_workers) as pool:
            units = list(pool.map(self.process, messages))

        merged = sum(1 for u in units if u.state is UnitState.MERGED)
        logger.info(f"Batch processing complete: {merged}/{len(units)} merged")
        return units

    def run(
        self,
        work_queue: WorkQueue,
        *,
        stop_when_empty: bool = True,
        poll_timeout: float = 0.5,
    ) -> int:
        """Consume ``work_queue`` with a worker pool, acking each message once handled.

        Returns the number of messages consumed. With ``stop_when_empty`` the
        loop ends at the first empty poll; otherwise it runs until ``stop()``.
        """
        self._stop.clear()
        consumed = 0

        with ThreadPoolExecutor(max_workers=self.config.max_workers) as pool:
            while not self._stop.is_set():
                message = work_queue.get(timeout=poll_timeout)
                if message is None:
                    if stop_when_empty:
                        break
                    continue
                consumed += 1
                future = pool.submit(self.process, message)
                future.add_done_callback(
                    lambda f, m=message: self._acknowledge(work_queue, m, f)
                )

        logger.info("Queue consumer stopped", consumed=consumed)
        return consumed

    def stop(self) -> None:
        self._stop.set()

    def cancel(self, message_id: str) -> None:
        """Cancel a unit; it stops before its next stage."""
        with self._lock:
            self._cancelled_messages.add(message_id)
        logger.info("Cancellation requested", message_id=message_id)

    def cancel_case(self, case_key: str) -> None:
        """Cancel every unit bound for ``case_key`` (e.g. the case was deleted)."""
        with self._lock:
            self._cancelled_cases.add(case_key)
        logger.info("Case cancellation requested", case_key=case_key)

    def case_registered(self, case_key: str) -> List[WorkUnit]:
        """Re-run units parked on ``case_key`` now that the case exists.

        A registration also lifts any earlier ``cancel_case`` for the key.
        """
        with self._lock:
            self._cancelled_cases.discard(case_key)
            parked = [
                u
                for u in self._units.values()
                if u.state is UnitState.PARKED and u.case_key == case_key
            ]
        logger.info("Requeueing parked units", case_key=case_key, count=len(parked))
        return [self.process(unit.message) for unit in parked]

    def get_unit(self, message_id: str) -> Optional[WorkUnit]:
        with self._lock:
            return self._units.get(message_id)

    def units(self, state: Optional[UnitState] = None) -> List[WorkUnit]:
        with self._lock:
            return [u for u in self._units.values() if state is None or u.state is state]

    def dead_letters(self) -> List[WorkUnit]:
        return self.units(UnitState.DEAD_LETTERED)

    def unresolved_units_for_case(self, case_key: str) -> List[str]:
        """Message ids of parked or dead-lettered units for ``case_key``.

        Read from the graph store, so units left behind by other coordinator
        processes are included.
        """
        return self.engine.store.unresolved_units_for_case(case_key)

    def get_statistics(self) -> Dict[str, int]:
        with self._lock:
            return dict(self.stats)

    # -----------------------
    # Attempt loop
    # -----------------------
    def _run(self, unit: WorkUnit) -> None:
        self._bump("processed")
        while True:
            unit.attempts += 1
            deadline = self.clock() + self.config.unit_timeout_seconds
            try:
                self._run_stages(unit, deadline)
                return
            except Exception as exc:  # noqa: BLE001
                stage = self._failed_stage(unit)
                self._record_error(unit, stage, exc)

                if isinstance(exc, UnitCancelled):
                    unit.state = UnitState.FAILED
                    self._bump("cancelled")
                    logger.warning("Unit cancelled", message_id=unit.message_id, stage=stage.value)
                    self._resolve_bookkeeping(unit)
                    return
                if isinstance(exc, UnknownCaseError):
                    unit.state = UnitState.PARKED
                    self._bump("parked")
                    logger.warning(
                        "Unit parked until case is registered",
                        message_id=unit.message_id,
                        case_key=exc.case_key,
                    )
                    self._persist_unresolved(unit, "parked", exc)
                    return
                if not self._is_retryable(exc) or unit.attempts >= self.config.max_attempts:
                    self._dead_letter(unit, exc)
                    return

                unit.state = UnitState.FAILED
                delay = self.backoff_delay(unit.attempts)
                self._bump("retries")
                logger.warning(
                    "Unit failed; retrying",
                    message_id=unit.message_id,
                    stage=stage.value,
                    attempt=unit.attempts,
                    delay_seconds=delay,
                    error=str(exc),
                )
                self.sleep_fn(delay)

    def _run_stages(self, unit: WorkUnit, deadline: float) -> None:
        if unit.completed is UnitState.RECEIVED:
            self._checkpoint(unit, deadline)
            raw = self.payloads.load(unit.message.raw_payload_locator, unit.message.record_type)
            normalized = self.normalizer.normalize(unit.message, raw)
            self._checkpoint(unit, deadline)
            unit.normalized = normalized
            unit.extraction = self.extractor.extract(normalized.text, normalized.source_hint)
            unit.advance(UnitState.EXTRACTED)

        if unit.completed is UnitState.EXTRACTED:
            self._checkpoint(unit, deadline)
            unit.participants = self._resolve_participants(unit)
            unit.advance(UnitState.RESOLVED)

        if unit.completed is UnitState.RESOLVED:
            self._checkpoint(unit, deadline)
            if unit.normalized is None:
                raise RuntimeError(f"Unit {unit.message_id} reached merge without normalized input")
            unit.result = self.engine.merge(
                unit.normalized.record,
                unit.extraction,
                unit.case_key,
                unit.participants,
            )
            unit.advance(UnitState.MERGED)
            self._bump("merged")
            logger.success(
                "Unit merged",
                message_id=unit.message_id,
                record_key=unit.result.record_key,
                event_id=unit.result.event_id,
                attempts=unit.attempts,
                failed_attachments=unit.normalized.failed_attachments,
            )
            self._retire(unit)

    def _resolve_participants(self, unit: WorkUnit) -> List[ResolvedParticipant]:
        if unit.normalized is None:
            raise RuntimeError(f"Unit {unit.message_id} reached resolve without normalized input")
        resolved: List[ResolvedParticipant] = []
        for participant in unit.normalized.participants:
            if not participant.hints.identity_keys():
                logger.debug(
                    "Skipping participant without email or phone",
                    message_id=unit.message_id,
                    role=participant.role.value,
                )
                continue
            person = self.resolver.resolve(participant.hints)
            resolved.append(ResolvedParticipant(role=participant.role, person=person))
        return resolved

    def _checkpoint(self, unit: WorkUnit, deadline: float) -> None:
        with self._lock:
            cancelled = (
                unit.message_id in self._cancelled_messages
                or (unit.case_key is not None and unit.case_key in self._cancelled_cases)
            )
        if cancelled:
            raise UnitCancelled(f"Unit {unit.message_id} was cancelled")
        if self.clock() > deadline:
            raise ProcessingTimeout(
                f"Unit {unit.message_id} exceeded {self.config.unit_timeout_seconds}s"
            )

    # -----------------------
    # Helpers
    # -----------------------
    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt``: base * 2**(attempt-1), capped."""
        delay = self.config.backoff_base_seconds * (2 ** (attempt - 1))
        return min(delay, self.config.backoff_max_seconds)

    def _is_retryable(self, exc: Exception) -> bool:
        if isinstance(exc, BillGraphError):
            return exc.retryable
        # Validation problems will fail the same way every time.
        return not isinstance(exc, ValueError)

    def _failed_stage(self, unit: WorkUnit) -> UnitState:
        """The stage that was running when the attempt failed."""
        return {
            UnitState.RECEIVED: UnitState.EXTRACTED,
            UnitState.EXTRACTED: UnitState.RESOLVED,
            UnitState.RESOLVED: UnitState.MERGED,
        }.get(unit.completed, unit.completed)

    def _record_error(self, unit: WorkUnit, stage: UnitState, exc: Exception) -> None:
        unit.errors.append(
            UnitError(
                attempt=unit.attempts,
                stage=stage,
                error_type=type(exc).__name__,
                message=str(exc),
                retryable=self._is_retryable(exc),
            )
        )

    def _dead_letter(self, unit: WorkUnit, exc: Exception) -> None:
        unit.state = UnitState.DEAD_LETTERED
        self._bump("dead_lettered")
        log = logger.critical if isinstance(exc, DataIntegrityError) else logger.error
        log(
            "Unit dead-lettered",
            message_id=unit.message_id,
            case_key=unit.case_key,
            attempts=unit.attempts,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        self._persist_unresolved(unit, "dead_lettered", exc)

    def _retire(self, unit: WorkUnit) -> None:
        """Drop a merged unit's stage payloads and cap how many merged units are kept."""
        unit.normalized = None
        unit.extraction = None
        unit.participants = []
        self._resolve_bookkeeping(unit)

        with self._lock:
            self._merged[unit.message_id] = None
            self._merged.move_to_end(unit.message_id)
            while len(self._merged) > self.config.merged_history:
                oldest, _ = self._merged.popitem(last=False)
                evicted = self._units.get(oldest)
                if evicted is not None and evicted.state is UnitState.MERGED:
                    del self._units[oldest]

    def _persist_unresolved(self, unit: WorkUnit, state: UnresolvedState, exc: Exception) -> None:
        record = UnresolvedUnit(
            message_id=unit.message_id,
            case_key=unit.case_key,
            state=state,
            record_type=unit.message.record_type.value,
            raw_payload_locator=unit.message.raw_payload_locator,
            attempts=unit.attempts,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        try:
            self.engine.store.record_unresolved_unit(record)
        except Exception as store_exc:  # noqa: BLE001
            logger.error(
                "Could not record unresolved unit",
                message_id=unit.message_id,
                state=state,
                error=str(store_exc),
            )

    def _resolve_bookkeeping(self, unit: WorkUnit) -> None:
        try:
            self.engine.store.mark_unit_resolved(unit.message_id)
        except Exception as store_exc:  # noqa: BLE001
            logger.error(
                "Could not clear unresolved unit",
                message_id=unit.message_id,
                error=str(store_exc),
            )

    def _acknowledge(self, work_queue: WorkQueue, message: IngestionMessage, future: Future) -> None:
        exc = future.exception()
        if exc is not None:
            logger.error(
                "Unhandled error processing message; leaving unacknowledged",
                message_id=message.message_id,
                error=str(exc),
            )
            return
        work_queue.ack(message)

    def _bump(self, name: str) -> None:
        with self._lock:
            self.stats[name] += 1

    # -----------------------
    # Context manager
    # -----------------------
    def close(self) -> None:
        self.stop()
        self.engine.store.close()
        logger.info("PipelineCoordinator closed")

    def __enter__(self) -> "PipelineCoordinator":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()
