import logging
from typing import Callable, Generic, TypeVar

from pydantic import BaseModel

logger = logging.getLogger(__name__)

S = TypeVar("S", bound=BaseModel)


class SnapshotPublisher(Generic[S]):
    """
    Read-only subscription to a state model.

    Subscribers get a deep copy after every change, so nothing they do can
    reach back into the live state.
    """

    def __init__(self):
        self._subscribers: list[Callable[[S], None]] = []

    def subscribe(self, callback: Callable[[S], None]) -> Callable[[], None]:
        """Register a callback. Returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def _unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def publish(self, state: S):
        if not self._subscribers:
            return
        snapshot = state.model_copy(deep=True)
        for callback in list(self._subscribers):
            try:
                callback(snapshot)
            except Exception as e:
                logger.warning("[observers] Subscriber %r failed: %s", callback, e)
