"""
Frame -> fixed-length feature vector backends for the KNN classifier.

Backends:
    mobilenet  pretrained ONNX image network run through cv2.dnn; the
               penultimate activations are the embedding
    thumbnail  downscaled grayscale pixels; needs no model file, useful for
               quick demos with very different-looking classes
    landmarks  MediaPipe hand landmarks normalized for position and scale,
               plus per-finger bend and reach features

Every backend L2-normalizes its output so euclidean and cosine distances
rank neighbours the same way.

An embedder returns None when the frame carries nothing to embed (e.g. no
hand in view) and raises ExtractionError when extraction itself fails.
"""

import os
import logging

import cv2
import numpy as np

from core.errors import ExtractionError
from modules.recognition.finger_geometry import FINGERS, finger_bends

logger = logging.getLogger(__name__)

WRIST = 0
INDEX_MCP, MIDDLE_MCP, RING_MCP, PINKY_MCP = 5, 9, 13, 17
MIDDLE_TIP = 12
FINGER_TIPS = (4, 8, 12, 16, 20)

LANDMARK_FEATURE_DIM = 21 * 3 + 5 + 5


def l2_normalize(vector: np.ndarray) -> np.ndarray:
    norm = float(np.linalg.norm(vector))
    if norm < 1e-8:
        return vector
    return vector / norm


class Embedder:
    """Common interface: ``embed(bgr_frame) -> np.ndarray | None``."""

    name = "base"

    def embed(self, frame: np.ndarray):
        raise NotImplementedError

    def close(self):
        pass


class ThumbnailEmbedder(Embedder):
    """Centre-cropped, downscaled, mean-removed grayscale pixels."""

    name = "thumbnail"

    def __init__(self, size: int = 24):
        self._size = int(size)

    def embed(self, frame: np.ndarray):
        if frame is None or frame.ndim < 2 or frame.size == 0:
            raise ExtractionError("Empty frame")
        gray = cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY) if frame.ndim == 3 else frame
        h, w = gray.shape[:2]
        side = min(h, w)
        y0, x0 = (h - side) // 2, (w - side) // 2
        square = gray[y0:y0 + side, x0:x0 + side]
        small = cv2.resize(square, (self._size, self._size), interpolation=cv2.INTER_AREA)
        vector = small.astype(np.float32).ravel() / 255.0
        vector -= vector.mean()
        return l2_normalize(vector)

    @property
    def feature_dim(self) -> int:
        return self._size * self._size


class MobileNetEmbedder(Embedder):
    """Pretrained MobileNet (ONNX) run through OpenCV's DNN module."""

    name = "mobilenet"

    def __init__(self, model_path: str, input_size: int = 224, output_layer: str = None):
        if not model_path or not os.path.isfile(model_path):
            raise FileNotFoundError(f"MobileNet model not found: {model_path}")
        self._net = cv2.dnn.readNetFromONNX(model_path)
        self._input_size = int(input_size)
        self._output_layer = output_layer or None
        logger.info("MobileNet embedder loaded from %s (input=%d, layer=%s)",
                    model_path, self._input_size, self._output_layer or "<default>")

    def embed(self, frame: np.ndarray):
        if frame is None or frame.size == 0:
            raise ExtractionError("Empty frame")
        try:
            blob = cv2.dnn.blobFromImage(
                frame,
                scalefactor=1.0 / 127.5,
                size=(self._input_size, self._input_size),
                mean=(127.5, 127.5, 127.5),
                swapRB=True,
                crop=True,
            )
            self._net.setInput(blob)
            if self._output_layer:
                output = self._net.forward(self._output_layer)
            else:
                output = self._net.forward()
        except cv2.error as e:
            raise ExtractionError(f"MobileNet inference failed: {e}") from e
        return l2_normalize(np.asarray(output, dtype=np.float32).ravel())


class LandmarkEmbedder(Embedder):
    """Hand landmarks turned into a position/scale-invariant vector.

    Layout (73 dims):
        [0:63]   wrist-centred landmarks divided by hand size
        [63:68]  finger bend percent / 100 (thumb..pinky)
        [68:73]  fingertip-to-palm distance / hand size
    """

    name = "landmarks"

    def __init__(self, detector):
        self._detector = detector

    def embed(self, frame: np.ndarray):
        landmarks = self._detector.detect(frame)
        if landmarks is None:
            return None
        return self.embed_landmarks(landmarks)

    @staticmethod
    def embed_landmarks(landmarks) -> np.ndarray:
        landmarks = np.asarray(landmarks, dtype=np.float32)
        if landmarks.shape != (21, 3):
            raise ExtractionError(f"Expected (21, 3) landmarks, got {landmarks.shape}")

        hand_size = max(float(np.linalg.norm(landmarks[WRIST] - landmarks[MIDDLE_TIP])), 1e-6)
        centred = (landmarks - landmarks[WRIST]) / hand_size

        bends = finger_bends(landmarks)
        palm = np.mean(landmarks[[WRIST, INDEX_MCP, MIDDLE_MCP, RING_MCP, PINKY_MCP]], axis=0)
        reach = [float(np.linalg.norm(landmarks[t] - palm)) / hand_size for t in FINGER_TIPS]

        vector = np.concatenate([
            centred.ravel(),
            np.array([bends[f] / 100.0 for f in FINGERS], dtype=np.float32),
            np.array(reach, dtype=np.float32),
        ]).astype(np.float32)
        return l2_normalize(vector)

    def close(self):
        self._detector.close()


def create_embedder(config: dict, detector=None) -> Embedder:
    """Build the embedder described by the ``embedding`` config section."""
    backend = config.get("backend", "thumbnail")
    if backend == "mobilenet":
        return MobileNetEmbedder(
            model_path=config.get("model_path"),
            input_size=config.get("input_size", 224),
            output_layer=config.get("output_layer"),
        )
    if backend == "thumbnail":
        return ThumbnailEmbedder(size=config.get("thumbnail_size", 24))
    if backend == "landmarks":
        if detector is None:
            raise ValueError("landmarks embedding needs a hand detector")
        return LandmarkEmbedder(detector)
    raise ValueError(f"Unknown embedding backend: {backend!r}")
