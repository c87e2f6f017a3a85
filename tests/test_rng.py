"""Tests for spn_genedrive.rng — seeded repetition streams."""

import numpy as np
import pytest

from spn_genedrive.rng import create_replicate_rngs, create_rng


class TestCreateReplicateRngs:
    def test_one_stream_per_repetition(self):
        rngs = create_replicate_rngs(42, n_reps=5)
        assert len(rngs) == 5
        assert all(isinstance(r, np.random.Generator) for r in rngs)

    def test_streams_are_independent(self):
        """Different streams produce different sequences."""
        rngs = create_replicate_rngs(42, n_reps=4)
        vals = [rng.random() for rng in rngs]
        assert len(set(vals)) == len(vals)

    def test_reproducibility(self):
        """Same seed produces identical sequences."""
        a = create_replicate_rngs(42, n_reps=3)
        b = create_replicate_rngs(42, n_reps=3)
        for ra, rb in zip(a, b):
            np.testing.assert_array_equal(ra.random(100), rb.random(100))

    def test_different_seeds_differ(self):
        a = create_replicate_rngs(42, n_reps=1)[0].random(10)
        b = create_replicate_rngs(43, n_reps=1)[0].random(10)
        assert not np.array_equal(a, b)

    def test_stream_independent_of_count(self):
        """Repetition i draws the same numbers whatever n_reps is.

        SeedSequence.spawn is positional, so adding repetitions leaves the
        earlier streams untouched.
        """
        few = create_replicate_rngs(42, n_reps=3)
        many = create_replicate_rngs(42, n_reps=10)
        for i in range(3):
            np.testing.assert_array_equal(few[i].random(50), many[i].random(50))

    def test_invalid_count(self):
        with pytest.raises(ValueError, match="n_reps"):
            create_replicate_rngs(42, n_reps=0)


class TestCreateRng:
    def test_reproducible(self):
        np.testing.assert_array_equal(create_rng(7).random(20), create_rng(7).random(20))

    def test_unseeded_streams_differ(self):
        assert create_rng(None).random() != create_rng(None).random()
