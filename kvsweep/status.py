"""
Operator tools for the keyed store, run outside the invocation time budget.

Each walks its prefixes to the end in large pages.
"""

import re
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from .checkpoint import CheckpointStore
from .config import MaintenanceConfig
from .errors import TransientIOError
from .logger import get_logger
from .store import KeyedStore, fetch_page

logger = get_logger()

LIST_LIMIT = 1000


@dataclass
class PurgeResult:
    success: bool
    deleted: int
    error: Optional[str] = None


def count_prefix(store: KeyedStore, prefix: str) -> int:
    count = 0
    cursor = None
    while True:
        page = fetch_page(store, prefix, LIST_LIMIT, cursor)
        count += len(page.keys)
        if page.exhausted:
            return count
        cursor = page.cursor_for_next_page


def get_maintenance_status(store: KeyedStore, config: MaintenanceConfig) -> Dict[str, Any]:
    """
    Summarize the store for operators.

    Returns:
        Dict with key counts per prefix, the in-progress checkpoint (or None)
        and the last completion record (or None)
    """
    prefixes = {
        "subscriber": config.prefix_subscriber,
        "contact": config.prefix_contact,
        "ratelimit": config.prefix_ratelimit,
        "botdetect": config.prefix_bot_detect,
        "captcha": config.prefix_captcha,
    }
    checkpoints = CheckpointStore(store, config.checkpoint_key, config.completion_key)
    checkpoint = checkpoints.load()
    completion = checkpoints.load_completion()

    counts = {name: count_prefix(store, prefix) for name, prefix in prefixes.items()}
    return {
        "prefixes": counts,
        "subscribers": counts["subscriber"],
        "contacts": counts["contact"],
        "checkpoint": checkpoint.to_dict() if checkpoint else None,
        "last_complete": asdict(completion) if completion else None,
    }


def purge_prefix(store: KeyedStore, prefix: str, pattern: Optional[str] = None) -> PurgeResult:
    """
    Delete every key under `prefix` whose name matches `pattern` (if given).

    Keys are collected before deleting so the enumeration is not disturbed
    by its own deletions.
    """
    if not prefix:
        return PurgeResult(success=False, deleted=0, error="A non-empty prefix is required")
    try:
        regex = re.compile(pattern) if pattern else None
    except re.error as e:
        return PurgeResult(success=False, deleted=0, error=f"Invalid pattern: {e}")

    matched = []
    cursor = None
    while True:
        page = fetch_page(store, prefix, LIST_LIMIT, cursor)
        matched.extend(k for k in page.keys if regex is None or regex.search(k))
        if page.exhausted:
            break
        cursor = page.cursor_for_next_page

    for key in matched:
        store.delete(key)
    logger.info("Purged keys", prefix=prefix, pattern=pattern, deleted=len(matched))
    return PurgeResult(success=True, deleted=len(matched))


@dataclass
class SweepUnkeptResult:
    processed: int = 0
    deleted: int = 0
    failed: int = 0
    kept_prefixes: List[str] = field(default_factory=list)
    cleaned_prefixes: List[str] = field(default_factory=list)


def sweep_unkept(store: KeyedStore, keep_prefixes: List[str]) -> SweepUnkeptResult:
    """
    Delete every key that does not start with one of `keep_prefixes`.

    A key whose delete fails is counted in `failed` and left in place; the
    sweep carries on with the next key. Prefixes are reported by the part of
    the key before the first ':', in the order they were first seen.

    Raises:
        ValueError: if no non-empty keep prefix is given
    """
    keep = tuple(prefix for prefix in keep_prefixes if prefix)
    if not keep:
        raise ValueError("At least one non-empty keep prefix is required")

    result = SweepUnkeptResult()
    logger.info("Sweeping unkept keys", keep_prefixes=list(keep))
    cursor = None
    while True:
        page = fetch_page(store, "", LIST_LIMIT, cursor)
        for key in page.keys:
            result.processed += 1
            prefix = key.split(":")[0]
            if key.startswith(keep):
                if prefix not in result.kept_prefixes:
                    result.kept_prefixes.append(prefix)
                continue
            try:
                store.delete(key)
            except TransientIOError as e:
                logger.error("Failed to delete key", key=key, error=str(e))
                logger.record_error("TransientIOError")
                result.failed += 1
                continue
            result.deleted += 1
            if prefix not in result.cleaned_prefixes:
                result.cleaned_prefixes.append(prefix)
        if page.exhausted:
            break
        cursor = page.cursor_for_next_page

    logger.info(
        "Unkept keys swept",
        processed=result.processed,
        deleted=result.deleted,
        failed=result.failed,
        cleaned_prefixes=result.cleaned_prefixes,
    )
    return result
