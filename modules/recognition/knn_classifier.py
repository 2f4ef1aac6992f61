"""
Online k-nearest-neighbour classifier over labelled feature vectors.

Examples are appended one at a time (no fit step) and every prediction
scans the whole store, so training and predicting can interleave freely.

Determinism:
    - Neighbours at equal distance are taken in insertion order.
    - Labels with equal vote counts resolve to the lowest LabelId.
"""

import logging
import threading
from collections import Counter

import numpy as np

from core.errors import NoLabelsError
from core.types import ClassificationResult, Example, LabelId

logger = logging.getLogger(__name__)

_METRICS = ("euclidean", "cosine")


class ClassifierStore:
    """Incrementally trainable KNN store.

    All public methods hold one lock, so the store stays serialized even
    when extractor threads and the event loop call into it together.
    """

    def __init__(self, k: int = 3, metric: str = "euclidean"):
        if k < 1:
            raise ValueError(f"k must be >= 1, got {k}")
        if metric not in _METRICS:
            raise ValueError(f"Unknown metric {metric!r} (expected one of {_METRICS})")
        self._k = int(k)
        self._metric = metric
        self._examples = []
        self._dim = None
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def insert(self, features, label: LabelId):
        """Add one labelled example."""
        vector = np.array(features, dtype=np.float32).ravel()
        with self._lock:
            if self._dim is None:
                self._dim = vector.shape[0]
            elif vector.shape[0] != self._dim:
                raise ValueError(
                    f"Feature dimension mismatch: store holds {self._dim}-dim vectors, "
                    f"got {vector.shape[0]}"
                )
            vector.setflags(write=False)
            self._examples.append(Example(vector, int(label)))
        logger.debug("Inserted example for label %d (total=%d)", label, len(self._examples))

    def clear_label(self, label: LabelId) -> int:
        """Remove every example of ``label``. Returns how many were removed."""
        with self._lock:
            before = len(self._examples)
            self._examples = [ex for ex in self._examples if ex.label != label]
            removed = before - len(self._examples)
            if not self._examples:
                self._dim = None
        logger.debug("Cleared label %d (%d examples removed)", label, removed)
        return removed

    def clear_all(self):
        """Empty the store."""
        with self._lock:
            self._examples = []
            self._dim = None
        logger.debug("Classifier store cleared")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def predict(self, features) -> ClassificationResult:
        """Majority vote among the k nearest stored examples.

        Raises:
            NoLabelsError: if the store holds no examples.
            ValueError: if ``features`` has the wrong dimension.
        """
        query = np.asarray(features, dtype=np.float32).ravel()
        with self._lock:
            if not self._examples:
                raise NoLabelsError("Classifier store is empty")
            if query.shape[0] != self._dim:
                raise ValueError(
                    f"Query dimension {query.shape[0]} does not match store dimension {self._dim}"
                )
            matrix = np.stack([ex.features for ex in self._examples])
            labels = np.array([ex.label for ex in self._examples])
            present = sorted(set(labels.tolist()))

        distances = self._distances(matrix, query)
        k_eff = min(self._k, len(labels))
        nearest = np.argsort(distances, kind="stable")[:k_eff]
        votes = Counter(labels[nearest].tolist())

        # Highest vote count first, then lowest label id
        best = min(votes, key=lambda lbl: (-votes[lbl], lbl))
        confidences = {lbl: votes.get(lbl, 0) / float(k_eff) for lbl in present}
        return ClassificationResult(label=best, confidences=confidences)

    def _distances(self, matrix: np.ndarray, query: np.ndarray) -> np.ndarray:
        if self._metric == "cosine":
            norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
            sims = matrix @ query / np.maximum(norms, 1e-8)
            return 1.0 - sims
        return np.linalg.norm(matrix - query, axis=1)

    def count_by_label(self) -> dict:
        """Number of examples held per label."""
        with self._lock:
            return dict(Counter(ex.label for ex in self._examples))

    @property
    def labels(self) -> list:
        with self._lock:
            return sorted({ex.label for ex in self._examples})

    @property
    def num_labels(self) -> int:
        return len(self.labels)

    @property
    def num_examples(self) -> int:
        with self._lock:
            return len(self._examples)

    @property
    def dimension(self):
        return self._dim

    @property
    def k(self) -> int:
        return self._k

    @property
    def metric(self) -> str:
        return self._metric

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> dict:
        """Plain-python snapshot of the stored examples (JSON friendly)."""
        with self._lock:
            return {
                "k": self._k,
                "metric": self._metric,
                "examples": [
                    {"label": ex.label, "features": ex.features.tolist()}
                    for ex in self._examples
                ],
            }

    def load_dict(self, data: dict):
        """Replace the stored examples with those in ``data``.

        Every entry is checked before the store changes; a malformed entry
        raises (KeyError, TypeError or ValueError) and leaves it as it was.
        """
        examples = []
        dim = None
        for i, entry in enumerate(data.get("examples", [])):
            vector = np.array(entry["features"], dtype=np.float32).ravel()
            label = int(entry["label"])
            if dim is None:
                dim = vector.shape[0]
            elif vector.shape[0] != dim:
                raise ValueError(f"Example {i} has {vector.shape[0]} features, expected {dim}")
            vector.setflags(write=False)
            examples.append(Example(vector, label))

        with self._lock:
            self._examples = examples
            self._dim = dim
        logger.info("Loaded %d examples across %d labels", self.num_examples, self.num_labels)

    def __len__(self):
        return self.num_examples
