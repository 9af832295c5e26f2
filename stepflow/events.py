"""In-process event bus for workflow progress events."""

import logging
import threading
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

Listener = Callable[[str, Dict[str, Any]], None]


class EventBus:
    """
    Synchronous publish/subscribe.

    Listeners are called in subscription order. A failing listener is logged
    and does not stop the emitter.
    """

    def __init__(self):
        self._listeners: Dict[str, List[Listener]] = {}
        self._any: List[Listener] = []
        self._lock = threading.Lock()

    def on(self, name: str, listener: Listener):
        with self._lock:
            self._listeners.setdefault(name, []).append(listener)

    def on_any(self, listener: Listener):
        with self._lock:
            self._any.append(listener)

    def emit(self, name: str, payload: Dict[str, Any]):
        with self._lock:
            listeners = list(self._listeners.get(name, [])) + list(self._any)
        for listener in listeners:
            try:
                listener(name, payload)
            except Exception as e:
                logger.warning(f"Event listener for {name} failed: {e}")
