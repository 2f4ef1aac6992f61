"""
Bidirectional LabelId <-> display-name registry with id recycling.

Ids are small positive integers. Allocation always hands out the smallest
id not currently live, so deleting label 2 out of {1, 2, 3} makes the next
allocation return 2 again.
"""

import heapq
import logging

from core.types import LabelId, UNKNOWN_LABEL_NAME

logger = logging.getLogger(__name__)


class LabelRegistry:
    """Maps compact label ids to user-chosen names."""

    def __init__(self):
        self._names = {}
        self._free = []      # min-heap of released ids below _next_id
        self._next_id = 1

    def allocate(self, name: str) -> LabelId:
        """Register ``name`` under the smallest free id and return that id."""
        name = (name or "").strip()
        if not name:
            raise ValueError("Label name must not be empty")

        if self._free:
            label = heapq.heappop(self._free)
        else:
            label = self._next_id
            self._next_id += 1

        self._names[label] = name
        logger.info("Label allocated: ID %d -> %s", label, name)
        return label

    def release(self, label: LabelId):
        """Free ``label`` so a later allocate() may reuse it."""
        if label not in self._names:
            logger.debug("Release of unknown label %s ignored", label)
            return
        name = self._names.pop(label)
        heapq.heappush(self._free, label)
        logger.info("Label released: ID %d (%s)", label, name)

    def restore(self, label: LabelId, name: str):
        """Register ``name`` under a specific id (used when loading a saved model)."""
        label = int(label)
        if label < 1:
            raise ValueError(f"Label ids start at 1, got {label}")
        if label in self._names:
            raise ValueError(f"Label {label} is already allocated")

        # Ids skipped over on the way to ``label`` become free
        while self._next_id < label:
            heapq.heappush(self._free, self._next_id)
            self._next_id += 1
        if label == self._next_id:
            self._next_id += 1
        else:
            self._free.remove(label)
            heapq.heapify(self._free)
        self._names[label] = name.strip() or UNKNOWN_LABEL_NAME

    def lookup(self, label: LabelId) -> str:
        """Display name for ``label``; never raises."""
        return self._names.get(label, UNKNOWN_LABEL_NAME)

    def reset(self):
        """Deallocate everything."""
        self._names.clear()
        self._free = []
        self._next_id = 1
        logger.info("Label registry reset")

    def items(self) -> list:
        return sorted(self._names.items())

    def __contains__(self, label) -> bool:
        return label in self._names

    def __len__(self) -> int:
        return len(self._names)
