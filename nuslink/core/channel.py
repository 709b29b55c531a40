"""Single-writer, multi-reader publish/subscribe channels.

Every state machine owns its channels and is the only caller of
``publish``. Observers register callbacks and receive immutable values.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, Generic, TypeVar

T = TypeVar("T")
LOGGER = logging.getLogger(__name__)

Unsubscribe = Callable[[], None]


class EventChannel(Generic[T]):
    """Passes every published value to the current subscribers, nothing is retained."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._subscribers: list[Callable[[T], None]] = []

    def subscribe(self, callback: Callable[[T], None]) -> Unsubscribe:
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def publish(self, value: T) -> None:
        for callback in tuple(self._subscribers):
            callback(value)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)


class StateChannel(EventChannel[T]):
    """Holds a current value and replays it to new subscribers.

    With ``distinct=True`` a value equal to the current one is not pushed.
    ``key`` replaces plain equality for that check.
    """

    def __init__(
        self,
        name: str,
        initial: T,
        *,
        distinct: bool = True,
        key: Callable[[T], Any] | None = None,
    ) -> None:
        super().__init__(name)
        self._value = initial
        self._distinct = distinct
        self._key = key

    @property
    def value(self) -> T:
        return self._value

    def subscribe(self, callback: Callable[[T], None]) -> Unsubscribe:
        unsubscribe = super().subscribe(callback)
        callback(self._value)
        return unsubscribe

    def publish(self, value: T) -> None:
        if self._distinct and self._same(value, self._value):
            return
        LOGGER.debug("%s -> %s", self.name, value)
        self._value = value
        super().publish(value)

    def _same(self, left: T, right: T) -> bool:
        if self._key is None:
            return left == right
        return self._key(left) == self._key(right)
