import re
import threading
import time
from collections.abc import Callable, Iterable
from datetime import datetime

from loguru import logger

TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"
SNAPSHOT_ID_PATTERN = re.compile(r"^(\d{8}_\d{6})(?:_(\d{2}))?$")
MAX_SEQUENCE = 99


def is_snapshot_id(name: str) -> bool:
    return SNAPSHOT_ID_PATTERN.match(name) is not None


def parse_snapshot_id(name: str) -> datetime | None:
    match = SNAPSHOT_ID_PATTERN.match(name)
    if not match:
        return None
    try:
        return datetime.strptime(match.group(1), TIMESTAMP_FORMAT)
    except ValueError:
        return None


def _split(name: str) -> tuple[str, int]:
    match = SNAPSHOT_ID_PATTERN.match(name)
    if not match:
        raise ValueError(f"Not a snapshot identifier: {name}")
    return match.group(1), int(match.group(2) or 0)


class TimestampSource:
    """Issues sortable snapshot identifiers, unique per category.

    Identifiers are local time at second resolution. When a second is
    already taken in a category, a ``_NN`` suffix is appended so the new
    identifier still sorts after every earlier one.
    """

    def __init__(
        self,
        now: Callable[[], datetime] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._now = now
        self._sleep = sleep
        self._lock = threading.Lock()
        self._last_issued: dict[str, str] = {}

    def next_id(self, category: str, existing: Iterable[str] = ()) -> str:
        existing = list(existing)
        with self._lock:
            while True:
                candidate = self._candidate(category, existing)
                if candidate is not None:
                    self._last_issued[category] = candidate
                    return candidate
                logger.warning(
                    f"Snapshot identifiers exhausted for this second in {category}, waiting"
                )
                self._sleep(1.0)

    def _candidate(self, category: str, existing: Iterable[str]) -> str | None:
        current = self._now() if self._now else datetime.now()
        base = current.strftime(TIMESTAMP_FORMAT)

        known = [name for name in existing if is_snapshot_id(name)]
        if category in self._last_issued:
            known.append(self._last_issued[category])
        if not known:
            return base

        newest = max(known)
        if base > newest:
            return base

        # Same second as the newest identifier, or the clock went backwards
        newest_base, seq = _split(newest)
        if seq >= MAX_SEQUENCE:
            return None
        return f"{newest_base}_{seq + 1:02d}"
