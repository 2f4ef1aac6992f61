"""
Confidence-gated, change-or-keepalive transmission policy.

Turns a noisy per-frame prediction stream into a low-rate symbol stream:

    - Confidence gate: predictions at or below the threshold never go out
      (strict ``>`` by default, ``>=`` selectable).
    - Change gate: a payload different from the last one sent goes out
      immediately.
    - Keepalive: an unchanged payload is re-sent once more than
      ``send_interval_ms`` has passed since the last send, so a lost line
      is repaired within one interval.

Lifecycle (driven by the session):
    reset()           prediction started / model reset
    should_send()     every classified frame
    record()          after a frame's payload was handed to the transport
    force()           stop sentinel, bypasses both gates
"""

import time
import logging
import operator

from core.types import LabelId, TransmissionState

logger = logging.getLogger(__name__)

_COMPARISONS = {
    ">": operator.gt,
    ">=": operator.ge,
}


def format_label_payload(label: LabelId) -> str:
    """Wire tag for a classifier label, e.g. ``ID3``."""
    return f"ID{label}"


def normalize_threshold(value: float) -> float:
    """Accept a fraction or a percentage and return a fraction.

    Values up to and including 1 are fractions, values above 1 are percent:
    ``1`` means 1.0 (100 %, nothing passes the strict gate), ``1.5`` means
    1.5 %. Pass ``0.01`` for one percent.

    Raises:
        ValueError: outside [0, 100]
    """
    value = float(value)
    if value < 0 or value > 100:
        raise ValueError(f"Confidence threshold out of range: {value!r}")
    if value > 1.0:
        value /= 100.0
    return value


class TransmissionPolicy:
    """Decides whether the current candidate payload should be transmitted."""

    def __init__(self, threshold: float = 0.5, send_interval_ms: float = 500,
                 comparison: str = ">", clock=time.monotonic):
        self._threshold = normalize_threshold(threshold)
        self._interval_s = 0.0
        self.set_send_interval(send_interval_ms)
        self._compare = None
        self._comparison = None
        self.set_comparison(comparison)
        self._clock = clock
        self._state = TransmissionState()

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def set_threshold(self, threshold: float):
        self._threshold = normalize_threshold(threshold)
        logger.info("Confidence threshold set to %.2f", self._threshold)

    def set_send_interval(self, interval_ms: float):
        if interval_ms < 0:
            raise ValueError(f"Send interval must be >= 0 ms, got {interval_ms!r}")
        self._interval_s = float(interval_ms) / 1000.0
        logger.info("Keepalive interval set to %.0f ms", interval_ms)

    def set_comparison(self, comparison: str):
        if comparison not in _COMPARISONS:
            raise ValueError(f"Unknown comparison {comparison!r} (expected '>' or '>=')")
        self._comparison = comparison
        self._compare = _COMPARISONS[comparison]

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def passes_confidence(self, confidence) -> bool:
        """Confidence gate. ``None`` means the source carries no confidence."""
        if confidence is None:
            return True
        return self._compare(confidence, self._threshold)

    def should_send(self, payload: str, confidence=None, now: float = None) -> bool:
        """True when ``payload`` should go out on this frame."""
        if not self.passes_confidence(confidence):
            return False
        now = self._clock() if now is None else now
        if payload != self._state.last_payload:
            return True
        return (now - self._state.last_sent_at) > self._interval_s

    def record(self, payload: str, now: float = None):
        """Commit a transmission of ``payload``."""
        self._state.last_payload = payload
        self._state.last_sent_at = self._clock() if now is None else now

    def offer(self, payload: str, confidence=None, now: float = None) -> bool:
        """should_send() and, when it passes, record(). Returns the decision."""
        now = self._clock() if now is None else now
        if not self.should_send(payload, confidence, now):
            return False
        self.record(payload, now)
        return True

    def force(self, payload: str, now: float = None):
        """Commit ``payload`` regardless of either gate."""
        self.record(payload, now)
        logger.debug("Forced payload: %s", payload)

    def reset(self):
        self._state = TransmissionState()

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    @property
    def state(self) -> TransmissionState:
        return TransmissionState(self._state.last_payload, self._state.last_sent_at)

    @property
    def last_payload(self) -> str:
        return self._state.last_payload

    @property
    def threshold(self) -> float:
        return self._threshold

    @property
    def send_interval_ms(self) -> float:
        return self._interval_s * 1000.0

    @property
    def comparison(self) -> str:
        return self._comparison
