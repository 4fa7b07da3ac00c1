from __future__ import annotations

import logging
from dataclasses import dataclass
from threading import Lock
from types import MappingProxyType
from typing import Any, Mapping

logger = logging.getLogger(__name__)

DEFAULT_CACHE_CEILING = 1000


@dataclass(frozen=True)
class NameMap:
    """
    Case-insensitive view of one record's field names, frozen once built.
    """
    keys: frozenset
    names: Mapping[str, str]

    @classmethod
    def build(cls, record: dict) -> "NameMap":
        names: dict[str, str] = {}
        for name in record:
            if not isinstance(name, str):
                continue
            names.setdefault(name.casefold(), name)
        return cls(keys=frozenset(record), names=MappingProxyType(names))

    def matches(self, record: dict) -> bool:
        return self.keys == record.keys()


class FieldLookupCache:
    """
    Bounded cache of record identity -> NameMap, shared by concurrent requests.

    Entries are never changed after insertion. When the number of entries
    exceeds the ceiling the whole dict is replaced by a new empty one, so a
    reader holding the previous reference never sees a half-cleared map.
    """

    def __init__(self, ceiling: int = DEFAULT_CACHE_CEILING):
        if not isinstance(ceiling, int) or ceiling <= 0:
            raise ValueError("ceiling must be a positive integer.")
        self.ceiling = ceiling
        self._entries: dict[int, NameMap] = {}
        self._counter_lock = Lock()
        self._hits = 0
        self._misses = 0
        self._swaps = 0

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: int) -> NameMap | None:
        return self._entries.get(key)

    def put(self, key: int, name_map: NameMap) -> None:
        entries = self._entries
        if len(entries) > self.ceiling:
            entries = {}
            self._entries = entries
            with self._counter_lock:
                self._swaps += 1
            logger.debug("Field lookup cache exceeded %s entries; replaced", self.ceiling)
        entries[key] = name_map

    def evict(self, key: int) -> None:
        self._entries.pop(key, None)

    def record_hit(self) -> None:
        with self._counter_lock:
            self._hits += 1

    def record_miss(self) -> None:
        with self._counter_lock:
            self._misses += 1

    def stats(self) -> dict[str, Any]:
        with self._counter_lock:
            hits, misses, swaps = self._hits, self._misses, self._swaps
        total = hits + misses
        return {
            "size": len(self._entries),
            "hits": hits,
            "misses": misses,
            "swaps": swaps,
            "hit_rate": (hits / total * 100.0) if total else 0.0,
        }

    def clear(self) -> None:
        self._entries = {}
        with self._counter_lock:
            self._hits = 0
            self._misses = 0
            self._swaps = 0


class CaseInsensitiveFieldLookup:
    """
    Resolve request field names regardless of casing.

    An exact match is tried first; only misses consult the shared cache.
    """

    def __init__(self, cache: FieldLookupCache | None = None):
        self.cache = cache if cache is not None else FieldLookupCache()

    def resolve(self, record, field_name: str) -> tuple[bool, Any]:
        """
        Return (found, value). Absence is a normal outcome, never an exception.
        """
        if not isinstance(record, dict) or not field_name:
            return False, None

        if field_name in record:
            return True, record[field_name]

        key = id(record)
        folded = field_name.casefold()
        name_map = self.cache.get(key)
        if name_map is not None:
            self.cache.record_hit()
            canonical = name_map.names.get(folded)
            if canonical is not None and canonical in record:
                return True, record[canonical]
            if canonical is None and name_map.matches(record):
                return False, None
            # Entry belongs to another record that reused this id, or the record changed.
            self.cache.evict(key)
        else:
            self.cache.record_miss()

        name_map = NameMap.build(record)
        self.cache.put(key, name_map)

        canonical = name_map.names.get(folded)
        if canonical is None:
            return False, None
        return True, record[canonical]


default_lookup = CaseInsensitiveFieldLookup()


def resolve_field(record, field_name: str, lookup: CaseInsensitiveFieldLookup | None = None) -> tuple[bool, Any]:
    return (lookup or default_lookup).resolve(record, field_name)


def cache_stats() -> dict[str, Any]:
    return default_lookup.cache.stats()


def clear_cache() -> None:
    default_lookup.cache.clear()
