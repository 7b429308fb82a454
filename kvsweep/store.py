"""
Keyed store contract and its SQLite implementation.

The maintenance phases only ever see the store through four calls:
get, put, delete and a prefix-scoped, cursor-based list. Cursors are opaque
strings handed back verbatim on the next call.
"""

import base64
import binascii
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Protocol

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .database import Entry, init_database
from .errors import ParseError, TransientIOError


@dataclass
class ListResult:
    """Raw result of KeyedStore.list."""

    keys: List[str] = field(default_factory=list)
    cursor: Optional[str] = None
    list_complete: bool = True


@dataclass
class Page:
    """One page of a paginated enumeration."""

    keys: List[str]
    cursor_for_next_page: Optional[str]
    exhausted: bool


class KeyedStore(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def put(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...

    def list(self, prefix: str = "", limit: int = 1000, cursor: Optional[str] = None) -> ListResult: ...


def fetch_page(store: KeyedStore, prefix: str, limit: int, cursor: Optional[str]) -> Page:
    """Fetch one page of keys under prefix, resuming from cursor."""
    result = store.list(prefix=prefix, limit=limit, cursor=cursor)
    if result is None:
        return Page(keys=[], cursor_for_next_page=None, exhausted=True)
    exhausted = bool(result.list_complete)
    return Page(
        keys=list(result.keys),
        cursor_for_next_page=None if exhausted else result.cursor,
        exhausted=exhausted,
    )


def _encode_cursor(key: str) -> str:
    return base64.urlsafe_b64encode(key.encode("utf-8")).decode("ascii")


def _decode_cursor(cursor: str) -> str:
    if not isinstance(cursor, str):
        raise ParseError(f"Invalid cursor: {cursor!r}")
    try:
        return base64.urlsafe_b64decode(cursor.encode("ascii")).decode("utf-8")
    except (binascii.Error, UnicodeError) as e:
        raise ParseError(f"Invalid cursor: {cursor!r}") from e


class SqliteKeyedStore:
    """
    Keyed store backed by a single SQLite table.

    Keys are enumerated in lexical order; a cursor marks the last key handed
    out, so resuming from it neither repeats nor omits keys that existed when
    the cursor was issued.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        try:
            self._engine = init_database(self.db_path)
        except SQLAlchemyError as e:
            raise TransientIOError(f"Cannot open store at {self.db_path}: {e}") from e
        self._Session = sessionmaker(bind=self._engine)

    @contextmanager
    def _session(self, operation: str):
        session = self._Session()
        try:
            yield session
        except SQLAlchemyError as e:
            session.rollback()
            raise TransientIOError(f"Store {operation} failed: {e}") from e
        finally:
            session.close()

    def get(self, key: str) -> Optional[str]:
        with self._session("get") as session:
            entry = session.get(Entry, key)
            return entry.value if entry is not None else None

    def put(self, key: str, value: str) -> None:
        with self._session("put") as session:
            session.merge(Entry(key=key, value=value, updated_at=datetime.now()))
            session.commit()

    def delete(self, key: str) -> None:
        with self._session("delete") as session:
            session.query(Entry).filter(Entry.key == key).delete()
            session.commit()

    def list(self, prefix: str = "", limit: int = 1000, cursor: Optional[str] = None) -> ListResult:
        if limit <= 0:
            raise ValueError("limit must be positive")
        after = _decode_cursor(cursor) if cursor else None

        with self._session("list") as session:
            query = session.query(Entry.key)
            if prefix:
                # substr keeps the match case-sensitive and free of LIKE wildcards
                query = query.filter(func.substr(Entry.key, 1, len(prefix)) == prefix)
            if after is not None:
                query = query.filter(Entry.key > after)
            rows = query.order_by(Entry.key).limit(limit + 1).all()

        keys = [row[0] for row in rows[:limit]]
        if len(rows) <= limit:
            return ListResult(keys=keys, cursor=None, list_complete=True)
        return ListResult(keys=keys, cursor=_encode_cursor(keys[-1]), list_complete=False)
