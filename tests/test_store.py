from __future__ import annotations

from pathlib import Path

import sys

import numpy as np
import pytest

repo_root = Path(__file__).resolve().parents[1]
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from facegreet.errors import DimensionMismatch, InvalidInput
from facegreet.face.store import SignatureStore, make_record


def test_enroll_appends_in_order_and_allows_duplicate_names():
    store = SignatureStore()
    assert store.dimension is None
    assert store.enroll("Alice", [1.0, 0.0, 0.0]) == 0
    assert store.enroll("Bob", [0.0, 1.0, 0.0]) == 1
    assert store.enroll("Alice", [0.0, 0.0, 1.0]) == 2

    assert len(store) == 3
    assert store.dimension == 3
    assert store.names() == ["Alice", "Bob", "Alice"]
    assert store.summary() == {"Alice": 2, "Bob": 1}
    records = store.all()
    assert [r.name for r in records] == ["Alice", "Bob", "Alice"]
    assert np.array_equal(records[2].signature, np.array([0, 0, 1], dtype=np.float32))


def test_dimension_mismatch_leaves_store_untouched():
    store = SignatureStore()
    store.enroll("Alice", np.ones(4))
    with pytest.raises(DimensionMismatch) as exc:
        store.enroll("Bob", np.ones(5))
    assert exc.value.expected == 4
    assert exc.value.actual == 5
    assert store.names() == ["Alice"]


@pytest.mark.parametrize(
    "name,signature",
    [
        ("Alice", []),
        ("Alice", [1.0, float("nan")]),
        ("Alice", [1.0, float("inf")]),
        ("Alice", np.ones((2, 3))),
        ("", [1.0, 2.0]),
        ("   ", [1.0, 2.0]),
        (None, [1.0, 2.0]),
    ],
)
def test_invalid_records_rejected(name, signature):
    store = SignatureStore()
    with pytest.raises(InvalidInput):
        store.enroll(name, signature)
    assert len(store) == 0


def test_row_vector_is_flattened():
    store = SignatureStore()
    store.enroll("Alice", np.arange(6, dtype=np.float32).reshape(1, 6))
    assert store.dimension == 6


def test_stored_signature_is_a_private_copy():
    sig = np.array([1.0, 2.0, 3.0], dtype=np.float32)
    store = SignatureStore()
    store.enroll("Alice", sig)
    sig[0] = 100.0
    stored = store.all()[0].signature
    assert float(stored[0]) == 1.0
    with pytest.raises(ValueError):
        stored[0] = 5.0


def test_clear_releases_dimension():
    store = SignatureStore()
    store.enroll("Alice", np.ones(3))
    store.clear()
    assert len(store) == 0
    assert store.dimension is None
    store.enroll("Bob", np.ones(7))
    assert store.dimension == 7


def test_replace_is_all_or_nothing():
    store = SignatureStore()
    store.enroll("Alice", np.ones(3))

    bad = [make_record("Bob", np.ones(3)), make_record("Carol", np.ones(4))]
    with pytest.raises(DimensionMismatch):
        store.replace(bad)
    assert store.names() == ["Alice"]

    good = [make_record("Bob", np.ones(5)), make_record("Carol", np.zeros(5))]
    assert store.replace(good) == 2
    assert store.names() == ["Bob", "Carol"]
    assert store.dimension == 5


def test_matrix_tracks_mutations():
    store = SignatureStore()
    store.enroll("Alice", [1.0, 0.0])
    m1 = store.matrix()
    assert m1.shape == (1, 2)
    assert store.matrix() is m1
    store.enroll("Bob", [0.0, 1.0])
    m2 = store.matrix()
    assert m2.shape == (2, 2)
    records, matrix = store.snapshot()
    assert len(records) == 2
    assert matrix is m2
