from enum import Enum


class RecordOutcome(str, Enum):
    """What a phase handler did with one record."""

    DELETED = "deleted"
    KEPT = "kept"
    APPENDED = "appended"
    SKIPPED = "skipped"  # unparsable value, record left in place
    MISSING = "missing"  # listed but gone by the time it was fetched

    @property
    def leaves_key(self) -> bool:
        """True if the key is still in the store after handling."""
        return self in (RecordOutcome.KEPT, RecordOutcome.APPENDED, RecordOutcome.SKIPPED)
