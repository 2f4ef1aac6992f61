"""
Session event bus.

The session publishes label, prediction and transport changes here so a
display layer (CLI log, GUI, tests) can observe them without reaching into
session internals.

Usage:
    bus = EventBus()
    bus.subscribe(Events.PAYLOAD_SENT, on_sent)
    bus.emit(Events.PAYLOAD_SENT, payload="ID2", delivered=True)
"""

import time
import logging
import threading
from collections import defaultdict, deque
from typing import Callable

logger = logging.getLogger(__name__)


def _callback_name(callback) -> str:
    return getattr(callback, "__name__", repr(callback))


class EventBus:
    """Publish/subscribe bus owned by one session.

    Listeners run synchronously on the emitting thread, highest priority
    first (ties in subscription order). A listener that raises is logged
    and skipped; the remaining listeners still run.
    """

    def __init__(self, max_history: int = 100):
        self._listeners = defaultdict(list)  # event -> [(priority, callback)], sorted
        self._lock = threading.Lock()
        self._history = deque(maxlen=max_history)
        self._enabled = True

    def subscribe(self, event_name: str, callback: Callable, priority: int = 0):
        """Register ``callback(**data)`` for ``event_name``.

        Args:
            priority: higher runs earlier (default 0)
        """
        with self._lock:
            listeners = self._listeners[event_name]
            listeners.append((priority, callback))
            listeners.sort(key=lambda entry: -entry[0])
        logger.debug("Subscribed %s to '%s' (priority=%d)",
                     _callback_name(callback), event_name, priority)

    def unsubscribe(self, event_name: str, callback: Callable):
        with self._lock:
            remaining = [entry for entry in self._listeners.get(event_name, [])
                         if entry[1] is not callback]
            if remaining:
                self._listeners[event_name] = remaining
            else:
                self._listeners.pop(event_name, None)

    def emit(self, event_name: str, **data):
        """Deliver ``data`` to every listener of ``event_name``."""
        if not self._enabled:
            return

        with self._lock:
            listeners = tuple(self._listeners.get(event_name, ()))
            self._history.append({
                "event": event_name,
                "time": time.time(),
                "data_keys": sorted(data),
            })

        for _priority, callback in listeners:
            try:
                callback(**data)
            except Exception as e:
                logger.error("Listener %s failed on '%s': %s",
                             _callback_name(callback), event_name, e)

    def set_enabled(self, enabled: bool):
        """Mute (False) or unmute the bus. Muted emits are not recorded."""
        self._enabled = bool(enabled)

    def clear(self, event_name: str = None):
        """Drop listeners of ``event_name``, or of every event."""
        with self._lock:
            if event_name is None:
                self._listeners.clear()
            else:
                self._listeners.pop(event_name, None)

    @property
    def listener_count(self) -> int:
        with self._lock:
            return sum(len(entries) for entries in self._listeners.values())

    def get_history(self, last_n: int = 10) -> list:
        """The ``last_n`` most recent emits, oldest first."""
        with self._lock:
            history = list(self._history)
        return history[-last_n:]


class Events:
    """Event names published by the session."""

    # Training
    LABEL_ADDED = "label_added"          # label, name
    LABEL_REMOVED = "label_removed"      # label, name, removed
    EXAMPLE_ADDED = "example_added"      # label, count
    MODEL_RESET = "model_reset"
    MODEL_LOADED = "model_loaded"        # labels, examples

    # Prediction loop
    PREDICTION_STARTED = "prediction_started"  # mode
    PREDICTION_STOPPED = "prediction_stopped"
    PREDICTION = "prediction"                  # label, name, confidence, confidences
    FINGERS_MEASURED = "fingers_measured"      # bends
    FRAME_SKIPPED = "frame_skipped"            # reason

    # Transport
    PAYLOAD_SENT = "payload_sent"                    # payload, delivered
    TRANSPORT_CONNECTED = "transport_connected"      # name
    TRANSPORT_DISCONNECTED = "transport_disconnected"  # name
    TRANSPORT_ERROR = "transport_error"              # error
