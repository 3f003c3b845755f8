"""
Live tuning parameters.

Two snapshots are kept:
- baseline: defaults plus adopted experiment winners; relaxation target
- current: baseline plus active anomaly corrections; what requests read

Readers take `current()` without locking and keep that reference for the
whole request. Writers build a new frozen snapshot and swap it in under a
lock, so a reader never sees a half-applied change.
"""
import time
from threading import Lock
from typing import Any, Callable, Dict, List, Optional

from tiergate.core.logging import get_logger
from tiergate.core.metrics import update_tuning_parameter
from tiergate.models.tuning import TuningParameterSet

logger = get_logger(__name__)

Listener = Callable[[TuningParameterSet], None]


class ParameterStore:
    def __init__(
        self,
        initial: Optional[TuningParameterSet] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._clock = clock
        self._lock = Lock()
        self._current = initial or TuningParameterSet()
        self._baseline = self._current
        self._listeners: List[Listener] = []
        self.last_changed_at: Optional[float] = None
        self._export(self._current)

    def current(self) -> TuningParameterSet:
        return self._current

    def baseline(self) -> TuningParameterSet:
        return self._baseline

    def add_listener(self, listener: Listener) -> None:
        """Call `listener(snapshot)` after every publish."""
        self._listeners.append(listener)

    def _export(self, snapshot: TuningParameterSet) -> None:
        for name, value in snapshot.values().items():
            if isinstance(value, (int, float)):
                update_tuning_parameter(name, float(value))

    def _swap(self, snapshot: TuningParameterSet, reason: str, previous: TuningParameterSet) -> None:
        self._current = snapshot
        self.last_changed_at = self._clock()
        changed = {
            name: value
            for name, value in snapshot.values().items()
            if previous.values().get(name) != value
        }
        logger.info(
            "tuning_parameters_published",
            version=snapshot.version,
            reason=reason,
            changes=changed,
        )

    def publish(self, changes: Dict[str, Any], reason: str) -> TuningParameterSet:
        """
        Apply `changes` (clamped to the registry) on top of the current
        snapshot and publish the result under a new version.
        """
        with self._lock:
            previous = self._current
            snapshot = previous.with_changes(**changes).model_copy(
                update={"version": previous.version + 1}
            )
            self._swap(snapshot, reason, previous)
        self._after_publish(snapshot)
        return snapshot

    def set_baseline(self, changes: Dict[str, Any], reason: str) -> TuningParameterSet:
        """Move the baseline and apply the same values to the live snapshot."""
        with self._lock:
            self._baseline = self._baseline.with_changes(**changes)
            previous = self._current
            snapshot = previous.with_changes(**changes).model_copy(
                update={"version": previous.version + 1}
            )
            self._swap(snapshot, reason, previous)
        self._after_publish(snapshot)
        return snapshot

    def _after_publish(self, snapshot: TuningParameterSet) -> None:
        self._export(snapshot)
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.error(
                    "tuning_listener_failed",
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )


_parameter_store: Optional[ParameterStore] = None


def get_parameter_store() -> ParameterStore:
    """Process-wide parameter store."""
    global _parameter_store
    if _parameter_store is None:
        _parameter_store = ParameterStore()
    return _parameter_store
