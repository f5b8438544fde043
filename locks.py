# locks.py
"""
Per-order locks. Reconciliation passes, warehouse edits and the retention
job all take the order's lock before reading rows they are about to write.
"""
import threading
from contextlib import ExitStack, contextmanager
from typing import Dict, Iterable, Iterator

_order_locks: Dict[int, threading.RLock] = {}
_order_locks_guard = threading.Lock()


def get_order_lock(order_id: int) -> threading.RLock:
    with _order_locks_guard:
        if order_id not in _order_locks:
            _order_locks[order_id] = threading.RLock()
        return _order_locks[order_id]


@contextmanager
def order_locks(order_ids: Iterable[int]) -> Iterator[None]:
    """Holds the locks of several orders, always acquired in ascending id order."""
    with ExitStack() as stack:
        for order_id in sorted(set(order_ids)):
            stack.enter_context(get_order_lock(order_id))
        yield
