"""Vector math and compact vector serialization."""

import base64
import math
import struct
from typing import List, Sequence


def cosine_similarity(vec_a: Sequence[float], vec_b: Sequence[float]) -> float:
    """Compute cosine similarity between two vectors.

    Returns 0.0 when either vector has zero magnitude or the lengths differ.
    """
    if len(vec_a) != len(vec_b):
        return 0.0

    dot_product = sum(a * b for a, b in zip(vec_a, vec_b))
    norm_a = math.sqrt(sum(a * a for a in vec_a))
    norm_b = math.sqrt(sum(b * b for b in vec_b))

    if norm_a == 0 or norm_b == 0:
        return 0.0

    return dot_product / (norm_a * norm_b)


def serialize_vector(vector: Sequence[float]) -> str:
    """Pack a vector as little-endian float32 and base64 encode it."""
    packed = struct.pack(f"<{len(vector)}f", *vector)
    return base64.b64encode(packed).decode("ascii")


def deserialize_vector(data: str) -> List[float]:
    """Inverse of serialize_vector."""
    raw = base64.b64decode(data)
    if len(raw) % 4:
        raise ValueError(f"Serialized vector has invalid length: {len(raw)} bytes")
    return list(struct.unpack(f"<{len(raw) // 4}f", raw))
