"""
Phase scheduler: one time-boxed step of the maintenance cycle per call.

Each call reads the checkpoint once, runs the active phase until it yields
or finishes, keeps paging and moves on to later phases while time remains,
and writes the checkpoint back once. A cursor the store cannot decode
restarts the scan of the current phase. The final phase deletes the
checkpoint and leaves a completion record behind instead. Buffers of archive
phases that finished are only dropped after that write.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from .archive import ArchiveSpec, archive_step, contacts_spec, discard_buffer, subscribers_spec
from .budget import TimeBudget, utc_now
from .checkpoint import Checkpoint, CheckpointStore, CompletionRecord, Phase, next_phase
from .cleanup import default_partitions, sweep_step
from .config import MaintenanceConfig
from .errors import ParseError
from .logger import get_logger
from .sink import ArchiveSink
from .store import KeyedStore

logger = get_logger()


@dataclass
class CycleResult:
    completed: bool
    phase: Optional[Phase]
    processed: int


@dataclass
class PhaseOutcome:
    completed: bool
    count: int
    finished_buffer: Optional[ArchiveSpec] = None


def checkpoint_store(store: KeyedStore, config: MaintenanceConfig) -> CheckpointStore:
    return CheckpointStore(store, config.checkpoint_key, config.completion_key)


def _run_phase(
    checkpoint: Checkpoint,
    store: KeyedStore,
    sink: ArchiveSink,
    config: MaintenanceConfig,
    budget: TimeBudget,
    now: datetime,
) -> PhaseOutcome:
    """Dispatch to the handler of the checkpoint's phase and fold its position back in."""
    if checkpoint.phase is Phase.CLEANUP:
        sweep = sweep_step(
            store,
            default_partitions(config),
            checkpoint.cursor,
            checkpoint.partition_index,
            budget,
            page_offset=checkpoint.page_offset,
            now=now,
        )
        checkpoint.cursor = sweep.cursor
        checkpoint.partition_index = sweep.partition_index
        checkpoint.page_offset = sweep.page_offset
        return PhaseOutcome(completed=sweep.completed, count=sweep.count)

    if checkpoint.phase is Phase.BACKUP_SUBSCRIBERS:
        spec = subscribers_spec(config)
    else:
        spec = contacts_spec(config)
    archived = archive_step(store, sink, spec, checkpoint.cursor, checkpoint.page_offset, budget, now=now)
    checkpoint.cursor = archived.cursor
    checkpoint.page_offset = archived.page_offset
    return PhaseOutcome(
        completed=archived.completed,
        count=archived.count,
        finished_buffer=spec if archived.buffer_done else None,
    )


def _release(store: KeyedStore, specs: List[ArchiveSpec]) -> None:
    """Drop buffers of finished archive phases; only called after the checkpoint write."""
    for spec in specs:
        discard_buffer(store, spec)


def run_cycle_step(
    store: KeyedStore,
    sink: ArchiveSink,
    config: MaintenanceConfig,
    clock: Optional[Callable[[], float]] = None,
    now: Optional[datetime] = None,
) -> CycleResult:
    """
    Run one invocation of the maintenance cycle.

    Errors from the store or sink propagate before the checkpoint is written,
    so the next invocation repeats the same unit of work.

    Args:
        store: Keyed store holding the data and the checkpoint
        sink: Destination for finished archives
        config: Maintenance configuration
        clock: Seconds clock for the time budget (time.perf_counter by default)
        now: Wall-clock time used for ages, dates and timestamps

    Returns:
        CycleResult; completed=True only when the final phase finished
    """
    budget = TimeBudget(config.max_execution_ms, clock=clock)
    now = now or utc_now()
    checkpoints = checkpoint_store(store, config)

    checkpoint = checkpoints.load()
    if checkpoint is None:
        checkpoint = Checkpoint.fresh(now)
        logger.record_transition(checkpoint.phase.value)
    logger.info(
        "Incremental maintenance step",
        phase=checkpoint.phase.value,
        processed=checkpoint.processed_in_phase,
    )

    finished: List[ArchiveSpec] = []
    while True:
        try:
            outcome = _run_phase(checkpoint, store, sink, config, budget, now)
        except ParseError as e:
            if checkpoint.cursor is None and checkpoint.page_offset == 0:
                raise
            logger.warning(
                "Unreadable cursor, restarting phase scan",
                phase=checkpoint.phase.value,
                error=str(e),
            )
            logger.record_error("ParseError")
            checkpoint.cursor = None
            checkpoint.page_offset = 0
            continue
        checkpoint.processed_in_phase += outcome.count
        checkpoint.total_processed += outcome.count
        if outcome.finished_buffer is not None:
            finished.append(outcome.finished_buffer)

        if not outcome.completed:
            if budget.exhausted():
                break
            # page boundary with time left
            continue

        following = next_phase(checkpoint.phase)
        if following is None:
            checkpoints.clear()
            checkpoints.write_completion(CompletionRecord(
                completed_at=now.isoformat(),
                total_processed=checkpoint.total_processed,
            ))
            _release(store, finished)
            logger.info(
                "Incremental maintenance completed",
                total_processed=checkpoint.total_processed,
                elapsed_ms=round(budget.elapsed_ms(), 3),
            )
            return CycleResult(completed=True, phase=None, processed=checkpoint.total_processed)

        logger.info(
            "Phase complete",
            phase=checkpoint.phase.value,
            processed=checkpoint.processed_in_phase,
            next_phase=following.value,
        )
        checkpoint.enter(following, now)
        logger.record_transition(following.value)
        if budget.exhausted():
            break

    checkpoints.save(checkpoint)
    _release(store, finished)
    logger.info(
        "Incremental maintenance chunk saved",
        phase=checkpoint.phase.value,
        processed=checkpoint.processed_in_phase,
        elapsed_ms=round(budget.elapsed_ms(), 3),
    )
    return CycleResult(completed=False, phase=checkpoint.phase, processed=checkpoint.processed_in_phase)


def run_until_complete(
    store: KeyedStore,
    sink: ArchiveSink,
    config: MaintenanceConfig,
    max_invocations: int = 10000,
    clock: Optional[Callable[[], float]] = None,
    now: Optional[datetime] = None,
) -> int:
    """
    Run back-to-back steps until a cycle completes.

    Returns:
        Number of invocations used

    Raises:
        RuntimeError: if the cycle does not finish within max_invocations
    """
    for invocation in range(1, max_invocations + 1):
        if run_cycle_step(store, sink, config, clock=clock, now=now).completed:
            return invocation
    raise RuntimeError(f"Maintenance cycle did not complete within {max_invocations} invocations")
