"""Response cache for the AI request layer.

``ResponseCache`` is an in-memory TTL map keyed by a request *fingerprint*.
Every read checks expiry first, so nothing is ever served past
``stored_at + ttl`` even if no sweep ran.  Entries carry a checksum of the value
taken at store time; an entry that no longer matches (for instance because a
caller mutated the returned object) is reported as ``CacheCorrupt``
internally, evicted, and served as a miss.

``make_fingerprint`` hashes the normalised operation, prompt, conversation
history, generation parameters and selected context fields.  Normalisation
is case- and whitespace-insensitive so that logically identical requests share
a cache slot.
"""

from __future__ import annotations

import asyncio
import fnmatch
import hashlib
import json
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Pattern, Union

from core.errors import CacheCorrupt
from core.logging import logger

__all__ = [
    "CacheEntry",
    "ResponseCache",
    "make_fingerprint",
    "normalize_text",
]

_WHITESPACE = re.compile(r"\s+")

Matcher = Union[str, Pattern[str], Callable[[str], bool]]


# ---------------------------------------------------------------------------
# Fingerprints
# ---------------------------------------------------------------------------


def normalize_text(text: str) -> str:
    return _WHITESPACE.sub(" ", text).strip().casefold()


def _normalize(value: Any) -> Any:
    if isinstance(value, str):
        return normalize_text(value)
    if isinstance(value, Mapping):
        return {str(k): _normalize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize(v) for v in value]
    return value


def make_fingerprint(
    operation: str,
    request: Mapping[str, Any],
    context_fields: Optional[Iterable[str]] = None,
) -> str:
    """Deterministic cache key: ``<operation>:<sha256>``.

    ``context_fields`` limits which keys of ``request["context"]`` take part;
    ``None`` means all of them.  The operation prefix lets invalidation target
    one operation with a glob such as ``"generatecode:*"``.
    """
    op = normalize_text(operation)
    context = request.get("context") or {}
    if context_fields is not None:
        wanted = set(context_fields)
        context = {k: v for k, v in context.items() if k in wanted}
    material = {
        "operation": op,
        "prompt": _normalize(request.get("prompt", "")),
        "system": _normalize(request.get("system", "")),
        "model": request.get("model"),
        "context": _normalize(context),
        "history": _normalize(request.get("history") or []),
        "temperature": request.get("temperature"),
        "max_tokens": request.get("max_tokens"),
    }
    stable_string = json.dumps(material, sort_keys=True, separators=(",", ":"), default=str)
    return f"{op}:{hashlib.sha256(stable_string.encode('utf-8')).hexdigest()}"


def _checksum(value: Any) -> str:
    stable_string = json.dumps(value, sort_keys=True, separators=(",", ":"), default=repr)
    return hashlib.sha256(stable_string.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


@dataclass
class CacheEntry:
    fingerprint: str
    value: Any
    stored_at: float
    ttl: float
    checksum: str

    def expired(self, now: float) -> bool:
        return now >= self.stored_at + self.ttl


class ResponseCache:
    """TTL cache for AI responses keyed by fingerprint."""

    def __init__(self, max_size: int = 2048, clock: Callable[[], float] = time.monotonic) -> None:
        self._max_size = max_size
        self._clock = clock
        self._store: Dict[str, CacheEntry] = {}
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._store)

    # ------------------------------------------------------------------
    def get(self, fingerprint: str) -> Optional[Any]:
        """Return the cached value, or ``None`` when absent, expired or corrupt."""
        entry = self._store.get(fingerprint)
        if entry is None:
            self.misses += 1
            return None
        if entry.expired(self._clock()):
            # expired
            self._store.pop(fingerprint, None)
            self.misses += 1
            return None
        try:
            self._validate(fingerprint, entry)
        except CacheCorrupt as e:
            logger.warning(f"Evicting corrupt cache entry {fingerprint}: {e}")
            self._store.pop(fingerprint, None)
            self.misses += 1
            return None
        self.hits += 1
        return entry.value

    def put(self, fingerprint: str, value: Any, ttl: float) -> None:
        if ttl <= 0:
            return
        if fingerprint not in self._store and len(self._store) >= self._max_size:
            self.sweep()
            if len(self._store) >= self._max_size:
                # Evict oldest
                oldest_key = min(self._store.items(), key=lambda kv: kv[1].stored_at)[0]
                self._store.pop(oldest_key, None)
        self._store[fingerprint] = CacheEntry(
            fingerprint=fingerprint,
            value=value,
            stored_at=self._clock(),
            ttl=ttl,
            checksum=_checksum(value),
        )

    def invalidate(self, matcher: Matcher) -> int:
        """Drop every entry whose fingerprint matches.

        ``matcher`` may be a predicate, a compiled regex (``search``) or a glob
        string such as ``"reviewcode:*"``.
        """
        predicate = _as_predicate(matcher)
        doomed = [fp for fp in list(self._store) if predicate(fp)]
        for fp in doomed:
            self._store.pop(fp, None)
        if doomed:
            logger.info(f"Invalidated {len(doomed)} cache entr{'y' if len(doomed) == 1 else 'ies'}")
        return len(doomed)

    def clear(self) -> None:
        self._store.clear()

    def sweep(self) -> int:
        now = self._clock()
        expired = [fp for fp, entry in self._store.items() if entry.expired(now)]
        for fp in expired:
            self._store.pop(fp, None)
        return len(expired)

    async def run_sweeper(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            removed = self.sweep()
            if removed:
                logger.debug(f"Cache sweep evicted {removed} expired entries")

    def stats(self) -> Dict[str, Any]:
        return {"entries": len(self._store), "max_size": self._max_size, "hits": self.hits, "misses": self.misses}

    # ------------------------------------------------------------------
    @staticmethod
    def _validate(fingerprint: str, entry: Any) -> None:
        if not isinstance(entry, CacheEntry):
            raise CacheCorrupt(f"unexpected entry type {type(entry).__name__}")
        if entry.fingerprint != fingerprint:
            raise CacheCorrupt("fingerprint mismatch")
        if _checksum(entry.value) != entry.checksum:
            raise CacheCorrupt("checksum mismatch")


def _as_predicate(matcher: Matcher) -> Callable[[str], bool]:
    if isinstance(matcher, str):
        return lambda fp: fnmatch.fnmatchcase(fp, matcher)
    if isinstance(matcher, re.Pattern):
        return lambda fp: matcher.search(fp) is not None
    if callable(matcher):
        return matcher
    raise TypeError(f"unsupported matcher {matcher!r}")
