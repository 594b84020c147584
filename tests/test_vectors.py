import random

import pytest

from botkit_rag.utils.vectors import cosine_similarity, deserialize_vector, serialize_vector

EMBEDDING_DIMENSIONS = 1536


class TestCosineSimilarity:
    def test_identical_vectors(self):
        assert cosine_similarity([1.0, 2.0, 3.0], [1.0, 2.0, 3.0]) == pytest.approx(1.0)

    def test_orthogonal_vectors(self):
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == 0.0

    def test_opposite_vectors(self):
        assert cosine_similarity([1.0, 1.0], [-1.0, -1.0]) == pytest.approx(-1.0)

    def test_zero_vector_scores_zero(self):
        assert cosine_similarity([0.0, 0.0], [1.0, 2.0]) == 0.0

    def test_length_mismatch_scores_zero(self):
        assert cosine_similarity([1.0, 2.0], [1.0, 2.0, 3.0]) == 0.0

    @pytest.mark.parametrize("seed", [1, 2, 3])
    def test_symmetric_and_bounded(self, seed):
        rng = random.Random(seed)
        a = [rng.uniform(-1, 1) for _ in range(EMBEDDING_DIMENSIONS)]
        b = [rng.uniform(-1, 1) for _ in range(EMBEDDING_DIMENSIONS)]

        assert cosine_similarity(a, b) == cosine_similarity(b, a)
        assert -1.0 <= cosine_similarity(a, b) <= 1.0
        assert cosine_similarity(a, a) == pytest.approx(1.0)


@pytest.mark.parametrize("seed", [7, 8])
def test_serialized_vector_keeps_float32_precision(seed):
    rng = random.Random(seed)
    vector = [rng.gauss(0.0, 0.05) for _ in range(EMBEDDING_DIMENSIONS)]

    restored = deserialize_vector(serialize_vector(vector))

    assert len(restored) == EMBEDDING_DIMENSIONS
    assert restored == pytest.approx(vector, rel=1e-6)


def test_serialized_vector_is_text():
    assert isinstance(serialize_vector([1.0, 2.0]), str)


def test_deserialize_rejects_truncated_payload():
    with pytest.raises(ValueError):
        deserialize_vector("AAAAAAA=")
