"""
Finger bend measurement from 21-point hand landmarks.

Each digit is measured at one joint: the angle at the vertex landmark
between the two neighbouring landmarks. A straight finger reads ~170-180
degrees, a curled one ~80 or less. Angles map linearly onto a bend percent
(80 deg -> 0 %, 170 deg -> 100 %, clamped), so 100 means extended.

Purely per-frame: no smoothing, no history.
"""

import math
import logging
from typing import Dict

import numpy as np

from core.types import Protocol

logger = logging.getLogger(__name__)

# MediaPipe hand landmark indices used here
THUMB_MCP, THUMB_IP, THUMB_TIP = 2, 3, 4
INDEX_MCP, INDEX_PIP, INDEX_TIP = 5, 6, 8
MIDDLE_MCP, MIDDLE_PIP, MIDDLE_TIP = 9, 10, 12
RING_MCP, RING_PIP, RING_TIP = 13, 14, 16
PINKY_MCP, PINKY_PIP, PINKY_TIP = 17, 18, 20

FINGERS = ("thumb", "index", "middle", "ring", "pinky")

# (A, B, C) with B the joint vertex
FINGER_TRIPLES = {
    "thumb":  (THUMB_MCP, THUMB_IP, THUMB_TIP),
    "index":  (INDEX_MCP, INDEX_PIP, INDEX_TIP),
    "middle": (MIDDLE_MCP, MIDDLE_PIP, MIDDLE_TIP),
    "ring":   (RING_MCP, RING_PIP, RING_TIP),
    "pinky":  (PINKY_MCP, PINKY_PIP, PINKY_TIP),
}

DIGIT_CODES = {
    "thumb": "T",
    "index": "I",
    "middle": "M",
    "ring": "R",
    "pinky": "P",
}

CURLED_ANGLE = 80.0
EXTENDED_ANGLE = 170.0
EXTENDED_PERCENT = 50  # strictly above this counts as extended


def joint_angle(a, b, c) -> float:
    """Angle at b formed by points a-b-c, in degrees (2D or 3D points)."""
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)
    c = np.asarray(c, dtype=np.float64)
    ba = a - b
    bc = c - b
    norms = np.linalg.norm(ba) * np.linalg.norm(bc)
    cos_angle = np.dot(ba, bc) / max(norms, 1e-8)
    cos_angle = np.clip(cos_angle, -1.0, 1.0)
    return float(np.degrees(np.arccos(cos_angle)))


def angle_to_percent(angle: float) -> int:
    """Map a joint angle onto 0-100 (80 deg -> 0, 170 deg -> 100), clamped."""
    ratio = (angle - CURLED_ANGLE) / (EXTENDED_ANGLE - CURLED_ANGLE)
    percent = min(100.0, max(0.0, ratio * 100.0))
    # Round half up
    return int(math.floor(percent + 0.5))


def bend_percent(point_a, point_b, point_c) -> int:
    """Bend percent of the joint at ``point_b``."""
    return angle_to_percent(joint_angle(point_a, point_b, point_c))


def finger_bends(landmarks) -> Dict[str, int]:
    """Bend percent for each of the five digits, in FINGERS order.

    Args:
        landmarks: array-like of shape (21, 2) or (21, 3)
    """
    landmarks = np.asarray(landmarks, dtype=np.float64)
    if landmarks.ndim != 2 or landmarks.shape[0] < 21:
        raise ValueError(f"Expected (21, 2|3) landmarks, got {landmarks.shape}")

    bends = {}
    for finger in FINGERS:
        a, b, c = FINGER_TRIPLES[finger]
        bends[finger] = bend_percent(landmarks[a], landmarks[b], landmarks[c])
    return bends


def is_extended(percent: int) -> bool:
    return percent > EXTENDED_PERCENT


def encode(bends: Dict[str, int], protocol: Protocol) -> str:
    """Encode five bend percents as a wire payload.

    analog:  ``T82I10M5R0P100``
    digital: ``T1I0M1R0P0``
    count:   ``3``
    """
    if protocol is Protocol.ANALOG:
        return "".join(f"{DIGIT_CODES[f]}{bends[f]}" for f in FINGERS)
    if protocol is Protocol.DIGITAL:
        return "".join(
            f"{DIGIT_CODES[f]}{1 if is_extended(bends[f]) else 0}" for f in FINGERS
        )
    if protocol is Protocol.COUNT:
        return str(sum(1 for f in FINGERS if is_extended(bends[f])))
    raise ValueError(f"Unsupported protocol: {protocol!r}")
