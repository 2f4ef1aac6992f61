"""
Shared domain types for the KNN gesture link.

Centralizes enums, data classes, and type definitions used across modules
to eliminate circular imports and ensure type consistency.
"""

from enum import Enum
from dataclasses import dataclass, field
from typing import Dict, Optional

import numpy as np

LabelId = int

UNKNOWN_LABEL_NAME = "Unknown"
STOP_PAYLOAD = "stop"


# =============================================================================
# Enumerations
# =============================================================================

class Protocol(Enum):
    """Wire encoding for the finger-geometry path."""
    ANALOG = "analog"
    DIGITAL = "digital"
    COUNT = "count"

    @classmethod
    def from_string(cls, name: str) -> 'Protocol':
        """Parse a protocol name, case-insensitive."""
        try:
            return cls(str(name).strip().lower())
        except ValueError:
            raise ValueError(
                f"Unknown protocol {name!r} (expected one of: {', '.join(p.value for p in cls)})"
            )


class InputMode(Enum):
    """Which extractor feeds the prediction loop."""
    IMAGE = "image"          # frame embedding -> KNN
    LANDMARKS = "landmarks"  # hand landmarks -> feature vector -> KNN
    FINGERS = "fingers"      # hand landmarks -> finger bends -> protocol

    @property
    def uses_classifier(self) -> bool:
        return self is not InputMode.FINGERS


class LoopState(Enum):
    IDLE = "idle"
    PREDICTING = "predicting"


# =============================================================================
# Data Containers
# =============================================================================

@dataclass(frozen=True)
class Example:
    """One labelled feature vector held by the classifier store."""
    features: np.ndarray
    label: LabelId


@dataclass
class ClassificationResult:
    """KNN vote outcome for a single query vector."""
    label: LabelId
    confidences: Dict[LabelId, float] = field(default_factory=dict)

    @property
    def confidence(self) -> float:
        return self.confidences.get(self.label, 0.0)

    def __repr__(self):
        return f"ClassificationResult(label={self.label}, conf={self.confidence:.2f})"


@dataclass
class TransmissionState:
    """Last payload that went out on the link and when (seconds, monotonic)."""
    last_payload: str = ""
    last_sent_at: float = 0.0


@dataclass
class StatusSnapshot:
    """Read-only observation of the session, for display."""
    connected: bool = False
    transport_name: str = ""
    predicting: bool = False
    mode: str = InputMode.IMAGE.value
    label: Optional[LabelId] = None
    label_name: Optional[str] = None
    confidence: float = 0.0
    finger_bends: Dict[str, int] = field(default_factory=dict)
    last_payload: str = ""
    example_counts: Dict[LabelId, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "connected": self.connected,
            "transport": self.transport_name,
            "predicting": self.predicting,
            "mode": self.mode,
            "label": self.label,
            "label_name": self.label_name,
            "confidence": self.confidence,
            "finger_bends": dict(self.finger_bends),
            "last_payload": self.last_payload,
            "example_counts": dict(self.example_counts),
        }
