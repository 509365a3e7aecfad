import logging
import threading
import time
from collections import namedtuple

import schedule

logger = logging.getLogger(__name__)

STATE_TTL_SECONDS = 300
SWEEP_INTERVAL_SECONDS = 300

PendingState = namedtuple('PendingState', ['state', 'timestamp'])


class OAuthStateStore:
    """Process-local store of OAuth states waiting for their callback.

    Keys are "state_<shop>". Entries older than ``ttl`` seconds are treated as
    absent by ``get`` and removed by ``sweep_expired``.
    """

    def __init__(self, ttl=STATE_TTL_SECONDS):
        self.ttl = ttl
        self._states = {}
        self._lock = threading.Lock()

    def put(self, key, state, timestamp=None):
        if timestamp is None:
            timestamp = time.time()
        with self._lock:
            self._states[key] = PendingState(state, timestamp)

    def get(self, key, now=None):
        if now is None:
            now = time.time()
        with self._lock:
            entry = self._states.get(key)
        if entry is None or now - entry.timestamp > self.ttl:
            return None
        return entry

    def delete(self, key):
        with self._lock:
            self._states.pop(key, None)

    def sweep_expired(self, now=None):
        if now is None:
            now = time.time()
        with self._lock:
            expired = [k for k, v in self._states.items() if now - v.timestamp > self.ttl]
            for key in expired:
                del self._states[key]
        if expired:
            logger.debug("Swept %d expired OAuth states", len(expired))
        return len(expired)

    def clear(self):
        with self._lock:
            self._states.clear()

    def __len__(self):
        with self._lock:
            return len(self._states)


def start_state_sweeper(store, interval=SWEEP_INTERVAL_SECONDS):
    """Runs ``store.sweep_expired`` every ``interval`` seconds in a daemon thread."""
    schedule.every(interval).seconds.do(store.sweep_expired)

    def run_schedule():
        while True:
            schedule.run_pending()
            time.sleep(1)

    t = threading.Thread(target=run_schedule, name='oauth-state-sweeper', daemon=True)
    t.start()
    return t
