"""
MediaPipe hand landmark detection.
"""

import logging

import cv2
import numpy as np
import mediapipe as mp

from core.errors import ExtractionError

logger = logging.getLogger(__name__)


class HandDetector:
    """MediaPipe Hands wrapper returning the primary hand as a (21, 3) array."""

    def __init__(self, config: dict):
        self._model_complexity = config.get("model_complexity", 0)
        self._min_detect_conf = config.get("min_detection_confidence", 0.6)
        self._min_track_conf = config.get("min_tracking_confidence", 0.5)

        self._mp_hands = mp.solutions.hands
        self._hands = None

    def initialize(self):
        """Create the MediaPipe Hands solution."""
        self._hands = self._mp_hands.Hands(
            static_image_mode=False,
            model_complexity=self._model_complexity,
            max_num_hands=1,
            min_detection_confidence=self._min_detect_conf,
            min_tracking_confidence=self._min_track_conf,
        )
        logger.info(
            "MediaPipe Hands initialized (complexity=%d, detect_conf=%.2f, track_conf=%.2f)",
            self._model_complexity, self._min_detect_conf, self._min_track_conf,
        )

    def detect(self, bgr_frame: np.ndarray):
        """Landmarks of the first detected hand.

        Returns:
            np.ndarray (21, 3) of normalized coordinates, or None if no hand
        """
        if self._hands is None:
            self.initialize()

        rgb = cv2.cvtColor(bgr_frame, cv2.COLOR_BGR2RGB)
        rgb.flags.writeable = False
        try:
            results = self._hands.process(rgb)
        except Exception as e:
            raise ExtractionError(f"Hand detection failed: {e}") from e

        if not results or not results.multi_hand_landmarks:
            return None
        return landmarks_to_array(results.multi_hand_landmarks[0])

    def close(self):
        if self._hands:
            self._hands.close()
            self._hands = None
            logger.info("MediaPipe Hands closed")

    def __enter__(self):
        self.initialize()
        return self

    def __exit__(self, *args):
        self.close()


def landmarks_to_array(hand_landmarks) -> np.ndarray:
    """Convert a MediaPipe NormalizedLandmarkList to a (21, 3) float32 array."""
    landmarks = np.zeros((21, 3), dtype=np.float32)
    for i, lm in enumerate(hand_landmarks.landmark):
        landmarks[i] = [lm.x, lm.y, lm.z]
    return landmarks
