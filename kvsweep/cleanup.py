"""
Cleanup phase: remove expired short-lived entries.

Rate-limit, bot-detection and captcha entries are only useful for a while.
Each partition is swept page by page, and any entry whose timestamp is older
than the partition's max age is deleted. Entries without a readable timestamp
are left alone.
"""

import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence

from .budget import TimeBudget, utc_now
from .config import MaintenanceConfig
from .errors import ParseError
from .logger import get_logger
from .outcomes import RecordOutcome
from .store import KeyedStore, fetch_page

logger = get_logger()

PAGE_SIZE = 5


@dataclass(frozen=True)
class Partition:
    prefix: str
    max_age: timedelta


@dataclass
class SweepResult:
    completed: bool
    cursor: Optional[str]
    partition_index: int
    page_offset: int = 0
    count: int = 0  # deleted
    kept: int = 0
    skipped: int = 0

    def tally(self, outcome: RecordOutcome) -> None:
        if outcome is RecordOutcome.DELETED:
            self.count += 1
        elif outcome is RecordOutcome.KEPT:
            self.kept += 1
        else:
            self.skipped += 1


def default_partitions(config: MaintenanceConfig) -> List[Partition]:
    """Partitions in the order they are swept."""
    return [
        Partition(config.prefix_ratelimit, timedelta(hours=24)),
        Partition(config.prefix_bot_detect, timedelta(days=7)),
        Partition(config.prefix_captcha, timedelta(hours=1)),
    ]


def parse_timestamp(value: str) -> datetime:
    """
    Extract the record timestamp from a stored JSON value.

    Uses `timestamp`, falling back to `createdAt`. Accepts ISO-8601 strings
    (naive values are taken as UTC) or epoch milliseconds.

    Raises:
        ParseError: if the value is not JSON or carries no usable timestamp
    """
    try:
        data = json.loads(value)
    except (json.JSONDecodeError, TypeError) as e:
        raise ParseError(f"Value is not JSON: {e}") from e
    if not isinstance(data, dict):
        raise ParseError("Value is not a JSON object")

    raw = data.get("timestamp") or data.get("createdAt")
    if raw is None or isinstance(raw, bool):
        raise ParseError("No timestamp field")

    if isinstance(raw, (int, float)):
        try:
            return datetime.fromtimestamp(raw / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as e:
            raise ParseError(f"Epoch timestamp out of range: {raw}") from e

    if isinstance(raw, str):
        try:
            parsed = datetime.fromisoformat(raw.strip().replace("Z", "+00:00"))
        except ValueError as e:
            raise ParseError(f"Unparsable timestamp: {raw!r}") from e
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed

    raise ParseError(f"Unsupported timestamp type: {type(raw).__name__}")


def examine(store: KeyedStore, key: str, partition: Partition, now: datetime) -> RecordOutcome:
    """Delete `key` if it has outlived its partition's max age."""
    value = store.get(key)
    if value is None:
        return RecordOutcome.MISSING

    try:
        timestamp = parse_timestamp(value)
    except ParseError as e:
        logger.debug("Skipping entry without usable timestamp", key=key, error=str(e))
        return RecordOutcome.SKIPPED

    if now - timestamp > partition.max_age:
        store.delete(key)
        return RecordOutcome.DELETED
    return RecordOutcome.KEPT


def sweep_step(
    store: KeyedStore,
    partitions: Sequence[Partition],
    cursor: Optional[str],
    partition_index: int,
    budget: TimeBudget,
    page_offset: int = 0,
    now: Optional[datetime] = None,
    page_size: int = PAGE_SIZE,
) -> SweepResult:
    """
    Sweep expired entries until the partitions are exhausted or time runs out.

    `cursor` always belongs to partitions[partition_index]. When the budget
    runs out between pages the next-page cursor is returned. When it runs out
    mid-page the cursor the page started from is returned together with a
    page offset: the number of keys at the front of that page that were
    examined and are still present. Deleted keys drop out of the listing, so
    re-fetching the page and skipping the offset resumes exactly. At least
    one key is handled before the budget is first consulted.

    Returns:
        SweepResult with completed=True once every partition is exhausted
    """
    now = now or utc_now()
    result = SweepResult(completed=False, cursor=cursor, partition_index=partition_index)
    index = partition_index
    offset = page_offset
    pages = 0
    handled = 0

    def stop(completed: bool) -> SweepResult:
        result.completed = completed
        result.cursor = None if completed else cursor
        result.partition_index = index
        result.page_offset = 0 if completed else offset
        logger.record_deleted(result.count)
        logger.record_skipped(result.skipped)
        return result

    while index < len(partitions):
        partition = partitions[index]
        if pages and budget.exhausted():
            return stop(False)

        page = fetch_page(store, partition.prefix, page_size, cursor)
        pages += 1
        logger.record_page(len(page.keys))

        for key in page.keys[offset:]:
            if handled and budget.exhausted():
                return stop(False)
            outcome = examine(store, key, partition, now)
            result.tally(outcome)
            handled += 1
            if outcome.leaves_key:
                offset += 1

        offset = 0
        if page.exhausted:
            logger.debug("Partition swept", prefix=partition.prefix, deleted=result.count)
            index += 1
            cursor = None
        else:
            cursor = page.cursor_for_next_page

    return stop(True)
