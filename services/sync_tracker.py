from collections import OrderedDict
from dataclasses import dataclass, asdict
from typing import Dict, Optional, List
import threading
import uuid
import time

@dataclass
class _Task:
    id: str; title: str; processed: int = 0; total: Optional[int] = None; done: bool = False
    ok: Optional[bool] = None; note: Optional[str] = None; created_at: float = 0.0; updated_at: float = 0.0

def _now() -> float: return time.time()

class SyncTracker:
    """Progress of background sync tasks, shown on the sync status endpoint."""

    def __init__(self):
        self._tasks: Dict[str, _Task] = {}
        self._lock = threading.Lock()

    def add_task(self, title: str, total: Optional[int] = None) -> str:
        t = _Task(id=str(uuid.uuid4()), title=title, total=total, created_at=_now(), updated_at=_now())
        with self._lock:
            self._tasks[t.id] = t
        return t.id

    def step(self, task_id: Optional[str], processed: int, note: Optional[str] = None, total: Optional[int] = None):
        if not task_id:
            return
        with self._lock:
            if t := self._tasks.get(task_id):
                t.processed, t.note, t.updated_at = processed, note, _now()
                if total is not None:
                    t.total = total

    def finish_task(self, task_id: Optional[str], ok: bool, note: Optional[str] = None):
        if not task_id:
            return
        with self._lock:
            if t := self._tasks.get(task_id):
                t.done, t.ok, t.note, t.updated_at = True, ok, note, _now()

    def get(self, task_id: str) -> Optional[Dict]:
        with self._lock:
            t = self._tasks.get(task_id)
            return asdict(t) if t else None

    def list_tasks(self) -> List[Dict]:
        with self._lock:
            return [asdict(t) for t in sorted(self._tasks.values(), key=lambda x: x.updated_at, reverse=True)]

    def clear_finished(self, older_than_seconds: int = 3600):
        now = _now()
        with self._lock:
            for k in [k for k, t in self._tasks.items() if t.done and (now - t.updated_at) >= older_than_seconds]:
                self._tasks.pop(k, None)


class DedupeStore:
    """
    Bounded set of already-handled keys (webhook ids). When it reaches
    `capacity`, the oldest half is evicted.
    """

    def __init__(self, capacity: int = 1000):
        self.capacity = max(2, capacity)
        self._seen: "OrderedDict[str, None]" = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._seen)

    def __contains__(self, key: str) -> bool:
        return key in self._seen

    def add(self, key: Optional[str]) -> bool:
        """Record `key`; False if it was already there."""
        if not key:
            return True
        with self._lock:
            if key in self._seen:
                return False
            self._seen[key] = None
            if len(self._seen) > self.capacity:
                for _ in range(len(self._seen) - self.capacity // 2):
                    self._seen.popitem(last=False)
            return True

    def discard(self, key: Optional[str]) -> None:
        if key:
            with self._lock:
                self._seen.pop(key, None)
