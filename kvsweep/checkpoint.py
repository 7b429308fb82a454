"""
Persisted progress of the maintenance cycle.

One JSON document under a well-known key records which phase is active and
where its scan stopped. It is read once at the start of an invocation and
written at most once at the end; nothing else survives between invocations.
"""

import json
from dataclasses import dataclass, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from .errors import ParseError
from .logger import get_logger
from .store import KeyedStore

logger = get_logger()


class Phase(str, Enum):
    CLEANUP = "cleanup"
    BACKUP_SUBSCRIBERS = "backup-subscribers"
    BACKUP_CONTACTS = "backup-contacts"


PHASE_ORDER = [Phase.CLEANUP, Phase.BACKUP_SUBSCRIBERS, Phase.BACKUP_CONTACTS]


def next_phase(phase: Phase) -> Optional[Phase]:
    """Phase that follows `phase`, or None once the cycle is finished."""
    index = PHASE_ORDER.index(phase)
    if index + 1 < len(PHASE_ORDER):
        return PHASE_ORDER[index + 1]
    return None


@dataclass
class Checkpoint:
    phase: Phase
    cursor: Optional[str]
    processed_in_phase: int
    phase_started_at: str
    partition_index: int = 0  # cleanup only
    page_offset: int = 0  # keys of the page at `cursor` already handled
    total_processed: int = 0

    @classmethod
    def fresh(cls, now: datetime) -> "Checkpoint":
        return cls(
            phase=PHASE_ORDER[0],
            cursor=None,
            processed_in_phase=0,
            phase_started_at=now.isoformat(),
        )

    def enter(self, phase: Phase, now: datetime) -> None:
        """Move to `phase` with a fresh scan position."""
        self.phase = phase
        self.cursor = None
        self.processed_in_phase = 0
        self.partition_index = 0
        self.page_offset = 0
        self.phase_started_at = now.isoformat()

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["phase"] = self.phase.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Checkpoint":
        try:
            checkpoint = cls(
                phase=Phase(data["phase"]),
                cursor=data.get("cursor"),
                processed_in_phase=int(data.get("processed_in_phase", 0)),
                phase_started_at=str(data.get("phase_started_at", "")),
                partition_index=int(data.get("partition_index", 0)),
                page_offset=int(data.get("page_offset", 0)),
                total_processed=int(data.get("total_processed", 0)),
            )
        except (KeyError, ValueError, TypeError) as e:
            raise ParseError(f"Malformed checkpoint: {e}") from e
        if checkpoint.processed_in_phase < 0 or checkpoint.partition_index < 0 or checkpoint.page_offset < 0:
            raise ParseError("Malformed checkpoint: negative counter")
        if checkpoint.cursor is not None and not isinstance(checkpoint.cursor, str):
            raise ParseError("Malformed checkpoint: cursor must be a string")
        return checkpoint


@dataclass
class CompletionRecord:
    completed_at: str
    total_processed: int


class CheckpointStore:
    """Reads and writes the checkpoint and completion record in the keyed store."""

    def __init__(self, store: KeyedStore, checkpoint_key: str, completion_key: str):
        self.store = store
        self.checkpoint_key = checkpoint_key
        self.completion_key = completion_key

    def load(self) -> Optional[Checkpoint]:
        """
        Return the persisted checkpoint, or None when no cycle is in progress.

        A checkpoint that cannot be decoded is treated as absent so a broken
        record cannot wedge the cycle; the next cycle starts from cleanup.
        """
        raw = self.store.get(self.checkpoint_key)
        if raw is None:
            return None
        try:
            data = json.loads(raw)
            if not isinstance(data, dict):
                raise ParseError("Malformed checkpoint: not an object")
            return Checkpoint.from_dict(data)
        except (json.JSONDecodeError, ParseError) as e:
            logger.warning("Discarding unreadable checkpoint", key=self.checkpoint_key, error=str(e))
            logger.record_error("ParseError")
            return None

    def save(self, checkpoint: Checkpoint) -> None:
        self.store.put(self.checkpoint_key, json.dumps(checkpoint.to_dict()))

    def clear(self) -> None:
        self.store.delete(self.checkpoint_key)

    def write_completion(self, record: CompletionRecord) -> None:
        self.store.put(self.completion_key, json.dumps(asdict(record)))

    def load_completion(self) -> Optional[CompletionRecord]:
        """Last completion record; only the status report reads this."""
        raw = self.store.get(self.completion_key)
        if raw is None:
            return None
        try:
            data = json.loads(raw)
            return CompletionRecord(
                completed_at=str(data["completed_at"]),
                total_processed=int(data["total_processed"]),
            )
        except (json.JSONDecodeError, KeyError, ValueError, TypeError):
            logger.warning("Unreadable completion record", key=self.completion_key)
            return None
