from typing import Optional, Sequence
import numpy as np


def validate_vector(vector: Sequence[float], max_magnitude: float = 100.0) -> Optional[str]:
    """Return a reason the vector is unusable, or None if it is acceptable"""

    try:
        array = np.asarray(vector, dtype=np.float64)
    except (TypeError, ValueError):
        return "vector is not numeric"

    if array.ndim != 1 or array.size == 0:
        return "vector is empty or not one-dimensional"
    if not np.all(np.isfinite(array)):
        return "vector contains non-finite values"

    magnitude = float(np.linalg.norm(array))
    if magnitude == 0.0:
        return "vector has zero magnitude"
    if magnitude > max_magnitude:
        return f"vector magnitude {magnitude:.2f} exceeds {max_magnitude}"
    return None


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity; 0.0 for mismatched dimensions or zero vectors"""

    if len(a) != len(b) or len(a) == 0:
        return 0.0

    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    norm = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if norm == 0.0:
        return 0.0
    return float(np.dot(va, vb) / norm)
