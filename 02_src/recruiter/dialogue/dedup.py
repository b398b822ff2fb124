"""Short-term memory of processed message ids."""

import time
from collections import OrderedDict


class RecentMessageCache:
    """Remembers message ids for `window` seconds.

    Catches platform redeliveries before they touch the store; the durable
    checks are `last_processed_message_id` and the turn log.
    """

    def __init__(self, window: float = 300, max_size: int = 10_000):
        self._window = window
        self._max_size = max_size
        self._seen: OrderedDict[str, float] = OrderedDict()

    def _prune(self, now: float) -> None:
        while self._seen:
            message_id, seen_at = next(iter(self._seen.items()))
            if now - seen_at < self._window and len(self._seen) <= self._max_size:
                break
            self._seen.pop(message_id)

    def seen(self, message_id: str) -> bool:
        self._prune(time.monotonic())
        return message_id in self._seen

    def add(self, message_id: str) -> None:
        now = time.monotonic()
        self._seen[message_id] = now
        self._seen.move_to_end(message_id)
        self._prune(now)

    def __len__(self) -> int:
        return len(self._seen)
