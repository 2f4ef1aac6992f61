"""
Tests for the online KNN classifier store
==========================================
"""

import pytest
import numpy as np
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from core.errors import NoLabelsError
from modules.recognition.knn_classifier import ClassifierStore


class TestInsertAndCount:
    """Test suite for example insertion and bookkeeping."""

    @pytest.fixture
    def store(self):
        return ClassifierStore(k=3)

    def test_empty_store(self, store):
        assert store.num_labels == 0
        assert store.count_by_label() == {}
        assert len(store) == 0

    def test_count_by_label(self, store):
        store.insert([0.0, 0.0], 1)
        store.insert([0.1, 0.0], 1)
        store.insert([5.0, 5.0], 2)

        assert store.count_by_label() == {1: 2, 2: 1}
        assert store.labels == [1, 2]
        assert store.num_labels == 2

    def test_dimension_mismatch_rejected(self, store):
        store.insert([0.0, 0.0], 1)
        with pytest.raises(ValueError):
            store.insert([0.0, 0.0, 0.0], 1)

    def test_insert_copies_input(self, store):
        vec = np.array([1.0, 2.0], dtype=np.float32)
        store.insert(vec, 1)
        vec[0] = 100.0

        result = store.predict([1.0, 2.0])
        assert result.label == 1
        # Caller's array stays writable
        assert vec.flags.writeable


class TestPredict:
    """Test suite for nearest-neighbour voting."""

    @pytest.fixture
    def store(self):
        store = ClassifierStore(k=3)
        for v in ([0.0, 0.0], [0.2, 0.0], [0.0, 0.2]):
            store.insert(v, 1)
        for v in ([5.0, 5.0], [5.2, 5.0], [5.0, 5.2]):
            store.insert(v, 2)
        return store

    def test_predict_empty_raises(self):
        with pytest.raises(NoLabelsError):
            ClassifierStore().predict([0.0, 0.0])

    def test_predict_nearest_cluster(self, store):
        result = store.predict([0.1, 0.1])
        assert result.label == 1
        assert result.confidence == pytest.approx(1.0)

    def test_confidences_cover_all_labels_and_sum_to_one(self, store):
        result = store.predict([2.4, 2.4])
        assert set(result.confidences) == {1, 2}
        assert sum(result.confidences.values()) == pytest.approx(1.0)

    def test_vote_fractions(self):
        store = ClassifierStore(k=3)
        store.insert([0.0], 1)
        store.insert([0.1], 1)
        store.insert([0.3], 2)
        store.insert([10.0], 2)

        result = store.predict([0.0])
        assert result.label == 1
        assert result.confidences[1] == pytest.approx(2 / 3)
        assert result.confidences[2] == pytest.approx(1 / 3)

    def test_inserted_example_always_gets_votes(self, store):
        store.insert([2.5, 2.5], 3)
        result = store.predict([2.5, 2.5])
        assert result.confidences[3] > 0

    def test_k_clamped_to_example_count(self):
        store = ClassifierStore(k=5)
        store.insert([0.0], 1)
        store.insert([1.0], 2)

        result = store.predict([0.0])
        assert sum(result.confidences.values()) == pytest.approx(1.0)
        assert result.confidences[1] == pytest.approx(0.5)

    def test_tie_resolves_to_lowest_label(self):
        store = ClassifierStore(k=2)
        store.insert([1.0], 7)
        store.insert([-1.0], 3)

        result = store.predict([0.0])
        assert result.label == 3
        assert result.confidences == {3: 0.5, 7: 0.5}

    def test_deterministic(self, store):
        first = store.predict([2.0, 3.0])
        second = store.predict([2.0, 3.0])
        assert first.label == second.label
        assert first.confidences == second.confidences

    def test_cosine_metric(self):
        store = ClassifierStore(k=1, metric="cosine")
        store.insert([1.0, 0.0], 1)
        store.insert([0.0, 1.0], 2)

        # Far in euclidean terms, but same direction as label 1
        assert store.predict([50.0, 1.0]).label == 1

    def test_query_dimension_mismatch(self, store):
        with pytest.raises(ValueError):
            store.predict([0.0, 0.0, 0.0])

    def test_invalid_construction(self):
        with pytest.raises(ValueError):
            ClassifierStore(k=0)
        with pytest.raises(ValueError):
            ClassifierStore(metric="manhattan")

    def test_result_repr(self, store):
        assert repr(store.predict([5.0, 5.0])) == "ClassificationResult(label=2, conf=1.00)"


class TestClear:
    """Test suite for label removal."""

    def test_clear_label_removes_only_that_label(self):
        store = ClassifierStore(k=3)
        store.insert([0.0, 0.0], 1)
        store.insert([0.1, 0.1], 1)
        store.insert([5.0, 5.0], 2)

        removed = store.clear_label(1)

        assert removed == 2
        assert store.count_by_label().get(1, 0) == 0
        assert store.count_by_label()[2] == 1
        # Even a query sitting on an old label-1 example cannot return label 1
        result = store.predict([0.0, 0.0])
        assert result.label == 2
        assert 1 not in result.confidences

    def test_clear_all(self):
        store = ClassifierStore()
        store.insert([0.0], 1)
        store.clear_all()

        assert store.num_labels == 0
        with pytest.raises(NoLabelsError):
            store.predict([0.0])

    def test_dimension_resets_when_emptied(self):
        store = ClassifierStore()
        store.insert([0.0, 0.0], 1)
        store.clear_label(1)
        store.insert([0.0, 0.0, 0.0], 1)
        assert store.dimension == 3


class TestSerialization:
    """Test suite for dict snapshots."""

    def test_load_dict_restores_examples(self):
        store = ClassifierStore(k=1)
        store.insert([0.0, 1.0], 1)
        store.insert([3.0, 3.0], 2)

        restored = ClassifierStore(k=1)
        restored.load_dict(store.to_dict())

        assert restored.count_by_label() == {1: 1, 2: 1}
        assert restored.predict([3.0, 2.9]).label == 2

    @pytest.mark.parametrize("entries, error", [
        ([{"label": 5, "features": [1.0, 1.0]}, {"label": 6}], KeyError),
        ([{"label": 5, "features": [1.0, 1.0]}, {"label": 6, "features": [1.0]}], ValueError),
        ([{"label": None, "features": [1.0, 1.0]}], TypeError),
    ])
    def test_bad_entry_keeps_previous_examples(self, entries, error):
        store = ClassifierStore(k=1)
        store.insert([0.0, 1.0], 1)
        store.insert([3.0, 3.0], 2)

        with pytest.raises(error):
            store.load_dict({"examples": entries})

        assert store.count_by_label() == {1: 1, 2: 1}
        assert store.dimension == 2


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
