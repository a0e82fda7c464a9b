# reportql/query/engine.py
"""Execution of compiled queries against the data warehouse, plus result caching."""

import copy
import hashlib
import json
import logging
import re
import threading
import time
from dataclasses import fields, is_dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

import sqlparse
from sqlalchemy import bindparam, text
from sqlalchemy.orm import Session

from .schemas import CompiledQuery, QueryResult

logger = logging.getLogger(__name__)

_STRING_LITERAL = re.compile(r"'(?:[^']|'')*'")


# ===== CANONICAL INPUT HASH =====


def _canonical(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if is_dataclass(value) and not isinstance(value, type):
        return {f.name: _canonical(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, Mapping):
        return {str(key): _canonical(item) for key, item in value.items()}
    if isinstance(value, (set, frozenset)):
        return sorted((_canonical(item) for item in value), key=lambda item: json.dumps(item, default=str))
    if isinstance(value, (list, tuple)):
        return [_canonical(item) for item in value]
    return value


def compute_query_hash(spec: Any) -> str:
    """SHA-256 of a canonical JSON rendering of a query spec (keys sorted at every level)."""
    payload = {"kind": type(spec).__name__, "spec": _canonical(spec)}
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def format_sql(sql: str) -> str:
    """Pretty-print SQL for previews."""
    return sqlparse.format(sql, reindent=True, keyword_case="upper")


# ===== RESULT CACHE =====


class QueryResultCache:
    """
    In-process TTL cache of query results keyed by query hash.

    Expired entries are purged on every put; past ``max_entries`` the entries
    closest to expiry are evicted first.
    """

    def __init__(
        self,
        ttl_seconds: int = 300,
        clock: Callable[[], float] = time.monotonic,
        max_entries: int = 1000,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: Dict[str, Tuple[float, datetime, QueryResult]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[QueryResult]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, cached_at, result = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return None

        cached = copy.copy(result)
        cached.metadata = {**result.metadata, "cached": True, "cached_at": cached_at.isoformat()}
        return cached

    def put(self, key: str, result: QueryResult, ttl: Optional[int] = None) -> None:
        ttl = self.ttl_seconds if ttl is None else ttl
        with self._lock:
            now = self._clock()
            for stale in [k for k, entry in self._entries.items() if entry[0] <= now]:
                del self._entries[stale]
            self._entries[key] = (now + ttl, datetime.now(), result)
            overflow = len(self._entries) - self.max_entries
            if overflow > 0:
                oldest = sorted(
                    (k for k in self._entries if k != key), key=lambda k: self._entries[k][0]
                )[:overflow]
                for evicted in oldest:
                    del self._entries[evicted]
                logger.debug("Evicted %d cached result(s) over the %d entry cap", overflow, self.max_entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


# ===== EXECUTION =====


class QueryEngine:
    """Runs compiled SQL through a SQLAlchemy session."""

    def __init__(self, dw_db: Session, cache: Optional[QueryResultCache] = None):
        self.dw_db = dw_db
        self.cache = cache

    def execute(self, compiled: CompiledQuery) -> QueryResult:
        statement = text(self._escape_literal_colons(compiled.sql))
        expanding = [
            bindparam(name, expanding=True)
            for name, value in compiled.parameters.items()
            if isinstance(value, (list, tuple))
        ]
        if expanding:
            statement = statement.bindparams(*expanding)

        start_time = time.time()
        result = self.dw_db.execute(statement, dict(compiled.parameters))
        rows = [dict(row._mapping) for row in result]
        duration_ms = (time.time() - start_time) * 1000

        logger.info("Executed %s query: %d row(s) in %.1f ms", compiled.metadata.get("mode"), len(rows), duration_ms)
        return QueryResult(
            rows=rows,
            columns=list(compiled.columns),
            sql=compiled.sql,
            parameters=dict(compiled.parameters),
            metadata={**compiled.metadata, "row_count": len(rows), "execution_time_ms": duration_ms},
        )

    def run(self, compiled: CompiledQuery, cache_key: Optional[str] = None, use_cache: bool = True) -> QueryResult:
        """Execute through the result cache when a key is given."""
        if self.cache is not None and cache_key and use_cache:
            cached = self.cache.get(cache_key)
            if cached is not None:
                logger.debug("Result cache hit for %s", cache_key)
                return cached
            logger.debug("Result cache miss for %s", cache_key)

        result = self.execute(compiled)
        if self.cache is not None and cache_key:
            self.cache.put(cache_key, result)
        return result

    @staticmethod
    def _escape_literal_colons(sql: str) -> str:
        # text() would read ":word" inside a string literal as a bind parameter
        return _STRING_LITERAL.sub(lambda match: match.group(0).replace(":", "\\:"), sql)
