"""
Archive phases: build CSV backups of subscribers and contacts.

A backup is accumulated one page at a time in a buffer entry of the keyed
store, so an invocation can stop after any record and the next one carries
on appending. When the enumeration is exhausted the buffer is pushed to the
archive sink under a dated path; the buffer is removed once the checkpoint
has moved past the phase.
"""

import csv
import io
import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .budget import TimeBudget, utc_now
from .config import MaintenanceConfig
from .errors import ConfigurationError, ParseError, TransientIOError
from .logger import get_logger
from .outcomes import RecordOutcome
from .sink import ArchiveSink
from .store import KeyedStore, fetch_page

logger = get_logger()

PAGE_SIZE = 20

SUBSCRIBERS_HEADER = "email,ip_address,timestamp\n"
CONTACTS_HEADER = "email,name,phone,message,subscribed,ip_address,timestamp\n"

RowFormatter = Callable[[str, Dict[str, Any]], Sequence[Any]]


@dataclass(frozen=True)
class ArchiveSpec:
    """Everything that distinguishes one archive phase from another."""

    name: str
    prefix: str
    buffer_key: str
    header: str
    filename: str
    row_formatter: RowFormatter


@dataclass
class ArchiveResult:
    completed: bool
    cursor: Optional[str]
    page_offset: int
    count: int = 0  # rows appended
    skipped: int = 0
    flushed: bool = False
    buffer_done: bool = False  # safe to discard once the checkpoint has moved on


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def format_row(fields: Sequence[Any]) -> str:
    """One CSV line with every field quoted and embedded quotes doubled."""
    out = io.StringIO()
    writer = csv.writer(out, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow([_text(f) for f in fields])
    return out.getvalue()


def subscriber_formatter(prefix: str) -> RowFormatter:
    def fields(key: str, data: Dict[str, Any]) -> List[Any]:
        email = key[len(prefix):] if key.startswith(prefix) else key
        return [email, data.get("ipAddress"), data.get("timestamp")]
    return fields


def contact_fields(key: str, data: Dict[str, Any]) -> List[Any]:
    return [
        data.get("email"),
        data.get("name"),
        data.get("phone"),
        data.get("message"),
        data.get("subscribed"),
        data.get("ipAddress"),
        data.get("timestamp"),
    ]


def subscribers_spec(config: MaintenanceConfig) -> ArchiveSpec:
    return ArchiveSpec(
        name="subscribers",
        prefix=config.prefix_subscriber,
        buffer_key=config.subscribers_buffer_key,
        header=SUBSCRIBERS_HEADER,
        filename="subscribers-backup.csv",
        row_formatter=subscriber_formatter(config.prefix_subscriber),
    )


def contacts_spec(config: MaintenanceConfig) -> ArchiveSpec:
    return ArchiveSpec(
        name="contacts",
        prefix=config.prefix_contact,
        buffer_key=config.contacts_buffer_key,
        header=CONTACTS_HEADER,
        filename="contacts-backup.csv",
        row_formatter=contact_fields,
    )


def archive_path(spec: ArchiveSpec, now: datetime) -> str:
    return f"backups/{now.date().isoformat()}-{spec.filename}"


def build_row(store: KeyedStore, spec: ArchiveSpec, key: str) -> Tuple[RecordOutcome, str]:
    """Fetch one record and render it; only APPENDED outcomes carry a row."""
    value = store.get(key)
    if value is None:
        return RecordOutcome.MISSING, ""
    try:
        data = json.loads(value)
        if not isinstance(data, dict):
            raise ParseError("Record is not a JSON object")
    except (json.JSONDecodeError, ParseError) as e:
        logger.debug("Skipping unreadable record", key=key, error=str(e))
        return RecordOutcome.SKIPPED, ""
    return RecordOutcome.APPENDED, format_row(spec.row_formatter(key, data))


def flush(sink: ArchiveSink, spec: ArchiveSpec, buffer: str, now: datetime) -> bool:
    """
    Push a finished buffer to the sink.

    Returns False when the sink is not configured; the caller keeps the
    buffer in that case.

    Raises:
        TransientIOError: if the sink call failed or reported no success
    """
    path = archive_path(spec, now)
    message = f"Incremental backup - {spec.filename} - {now.isoformat(timespec='seconds')}"
    try:
        outcome = sink.upsert(path, buffer, message)
    except ConfigurationError as e:
        logger.warning("Archive sink unusable, keeping buffer", phase=spec.name, error=str(e))
        logger.record_error("ConfigurationError")
        logger.record_flush(False)
        return False

    if not outcome.success:
        raise TransientIOError(f"Archive upsert of {path} failed: {outcome.error}")
    logger.info("Archive flushed", phase=spec.name, path=path, size=len(buffer))
    logger.record_flush(True)
    return True


def _finish(sink: ArchiveSink, spec: ArchiveSpec, buffer: str, now: datetime, result: ArchiveResult) -> None:
    result.completed, result.cursor, result.page_offset = True, None, 0
    if len(buffer) <= len(spec.header):
        result.buffer_done = True
        return
    result.flushed = flush(sink, spec, buffer, now)
    result.buffer_done = result.flushed


def discard_buffer(store: KeyedStore, spec: ArchiveSpec) -> None:
    store.delete(spec.buffer_key)


def archive_step(
    store: KeyedStore,
    sink: ArchiveSink,
    spec: ArchiveSpec,
    cursor: Optional[str],
    page_offset: int,
    budget: TimeBudget,
    now: Optional[datetime] = None,
    page_size: int = PAGE_SIZE,
) -> ArchiveResult:
    """
    Append one page of records to the phase buffer.

    `page_offset` keys of the page starting at `cursor` are already in the
    buffer and are not appended again. If the budget runs out mid-page the
    buffer is saved and the same cursor is returned with the new offset.

    A pass that starts from the beginning (no cursor, no offset) starts a new
    buffer; anything left by an earlier pass that never got its checkpoint
    past this point is overwritten. The buffer is never deleted here: once
    the phase is complete, `buffer_done` tells the caller it may discard it
    after the checkpoint has been persisted.
    """
    now = now or utc_now()
    result = ArchiveResult(completed=False, cursor=cursor, page_offset=page_offset)

    fresh = cursor is None and page_offset == 0
    buffer = spec.header if fresh else (store.get(spec.buffer_key) or spec.header)
    page = fetch_page(store, spec.prefix, page_size, cursor)
    logger.record_page(len(page.keys))

    if not page.keys and page.exhausted:
        _finish(sink, spec, buffer, now, result)
        return result

    handled = 0
    for position in range(page_offset, len(page.keys)):
        if handled and budget.exhausted():
            store.put(spec.buffer_key, buffer)
            result.page_offset = position
            logger.record_appended(result.count)
            logger.record_skipped(result.skipped)
            return result

        outcome, row = build_row(store, spec, page.keys[position])
        if outcome is RecordOutcome.APPENDED:
            buffer += row
            result.count += 1
        else:
            result.skipped += 1
        handled += 1

    logger.record_appended(result.count)
    logger.record_skipped(result.skipped)
    store.put(spec.buffer_key, buffer)

    if page.exhausted:
        _finish(sink, spec, buffer, now, result)
    else:
        result.cursor, result.page_offset = page.cursor_for_next_page, 0
    return result
