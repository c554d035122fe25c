"""
Ranking and filtering of student records.

Records are plain documents as returned by the store. Ranks are positional
(1..n) over CGPA descending with ties broken by id ascending, so two equal
CGPAs get adjacent ranks rather than a shared one.
"""
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

ALL = "All"
FAILING_GRADE = "F"

Record = Dict[str, Any]


@dataclass(frozen=True)
class FilterCriteria:
    branch: Optional[str] = None
    section: Optional[str] = None
    only_failed: bool = False

    def matches(self, record: Record) -> bool:
        if self.branch not in (None, ALL) and record.get("branch") != self.branch:
            return False
        if self.section not in (None, ALL) and record.get("section") != self.section:
            return False
        if self.only_failed and record.get("grade") != FAILING_GRADE:
            return False
        return True

    def without_failed(self) -> "FilterCriteria":
        return FilterCriteria(branch=self.branch, section=self.section)


def _sort_key(record: Record):
    return (-float(record.get("cgpa") or 0), str(record["id"]))


def global_rank(records: Iterable[Record]) -> List[Record]:
    """Rank every record in the class."""
    ordered = sorted(records, key=_sort_key)
    return [{**record, "rank": position} for position, record in enumerate(ordered, start=1)]


def filtered_rank(records: Iterable[Record], criteria: FilterCriteria) -> List[Record]:
    """Filter first, then rank within the remaining subset."""
    return global_rank(r for r in records if criteria.matches(r))


def select(ranked: Iterable[Record], criteria: FilterCriteria) -> List[Record]:
    """Filter an already ranked view; ranks keep their original values."""
    return [r for r in ranked if criteria.matches(r)]


def my_rank(ranked: Iterable[Record], record_id: str) -> Optional[int]:
    for record in ranked:
        if record.get("id") == record_id:
            return record.get("rank")
    return None


class LiveLeaderboard:
    """
    Holds the view derived from the newest collection snapshot.

    Snapshots can arrive out of order from a watcher thread; anything older
    than the version already applied is dropped. If ranking a snapshot fails
    the previous view is kept.
    """

    def __init__(self, derive: Callable[[List[Record]], List[Record]] = global_rank):
        self._derive = derive
        self._lock = threading.Lock()
        self._emit_lock = threading.Lock()
        self._version = -1
        self._view: List[Record] = []
        self._listeners: List[Callable[[int, List[Record]], None]] = []

    @property
    def version(self) -> int:
        return self._version

    @property
    def view(self) -> List[Record]:
        with self._lock:
            return list(self._view)

    def add_listener(self, listener: Callable[[int, List[Record]], None]) -> None:
        self._listeners.append(listener)

    def apply(self, version: int, records: List[Record]) -> bool:
        try:
            view = self._derive(records)
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"Keeping previous leaderboard, snapshot {version} could not be ranked: {e}")
            return False
        with self._lock:
            if version <= self._version:
                logger.debug(f"Dropping stale snapshot {version} (have {self._version})")
                return False
            self._version = version
            self._view = view
        # listeners only ever see views in version order, the newest last
        with self._emit_lock:
            with self._lock:
                if version != self._version:
                    return True
            for listener in list(self._listeners):
                listener(version, view)
        return True
