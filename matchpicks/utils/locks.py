"""
In-process locks keyed by group id

Ranking recomputation reads every ranking row of a group, ranks them and
writes them back. Two finalizations touching the same group must not
interleave that sequence, so each group gets its own lock. Groups are always
acquired in ascending id order to keep concurrent holders deadlock free.
"""

import contextlib
import threading

from matchpicks.utils.logging_config import get_logger

logger = get_logger(__name__)


class GroupLockRegistry:
    """Hands out one lock per group id"""

    def __init__(self):
        self._locks = {}
        self._registry_lock = threading.Lock()

    def lock_for(self, group_id):
        """Get (creating if needed) the lock for a group"""
        with self._registry_lock:
            lock = self._locks.get(group_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[group_id] = lock
            return lock

    @contextlib.contextmanager
    def hold(self, group_ids):
        """Hold the locks of all given groups for the duration of the block"""
        ordered = sorted(set(group_ids))
        with contextlib.ExitStack() as stack:
            for group_id in ordered:
                stack.enter_context(self.lock_for(group_id))
            if ordered:
                logger.debug(f"Holding group locks {ordered}")
            yield ordered

    def __len__(self):
        return len(self._locks)
