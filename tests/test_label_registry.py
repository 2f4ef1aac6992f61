"""
Tests for the label registry
=============================
"""

import pytest
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from core.types import UNKNOWN_LABEL_NAME
from modules.recognition.label_registry import LabelRegistry


class TestLabelRegistry:
    """Test suite for id allocation and recycling."""

    @pytest.fixture
    def registry(self):
        return LabelRegistry()

    def test_sequential_allocation(self, registry):
        assert registry.allocate("fist") == 1
        assert registry.allocate("palm") == 2
        assert registry.allocate("peace") == 3

    def test_release_recycles_smallest_free_id(self, registry):
        for name in ("a", "b", "c"):
            registry.allocate(name)
        registry.release(2)

        assert registry.allocate("d") == 2
        assert registry.allocate("e") == 4

    def test_multiple_releases_reuse_in_ascending_order(self, registry):
        for name in ("a", "b", "c", "d"):
            registry.allocate(name)
        registry.release(3)
        registry.release(1)

        assert registry.allocate("x") == 1
        assert registry.allocate("y") == 3
        assert registry.allocate("z") == 5

    def test_lookup(self, registry):
        label = registry.allocate("  thumbs up  ")
        assert registry.lookup(label) == "thumbs up"

    def test_lookup_unknown_never_raises(self, registry):
        assert registry.lookup(42) == UNKNOWN_LABEL_NAME
        assert registry.lookup(None) == UNKNOWN_LABEL_NAME

    def test_lookup_after_release(self, registry):
        label = registry.allocate("fist")
        registry.release(label)
        assert registry.lookup(label) == UNKNOWN_LABEL_NAME
        assert label not in registry

    def test_blank_name_rejected(self, registry):
        with pytest.raises(ValueError):
            registry.allocate("   ")
        assert len(registry) == 0

    def test_release_unknown_is_noop(self, registry):
        registry.allocate("a")
        registry.release(9)
        assert registry.allocate("b") == 2

    def test_reset(self, registry):
        registry.allocate("a")
        registry.allocate("b")
        registry.reset()

        assert len(registry) == 0
        assert registry.allocate("c") == 1

    def test_restore_fills_gaps(self, registry):
        registry.restore(3, "three")
        registry.restore(1, "one")

        assert registry.items() == [(1, "one"), (3, "three")]
        assert registry.allocate("two") == 2
        assert registry.allocate("four") == 4

    def test_restore_duplicate_rejected(self, registry):
        registry.restore(1, "one")
        with pytest.raises(ValueError):
            registry.restore(1, "uno")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
