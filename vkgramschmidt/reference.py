"""Host-side statement of the orthogonalisation kernel contract.

Each step works on the vectors stored row-major (vector index outer,
coordinate index inner) and has two phases, the first of which
happens-before the second:

1. ``normalize_pivot``: divide the pivot by its Euclidean norm, taken
   before anything else in the step touches memory;
2. ``project_out``: subtract ``(v . p) p`` from every later vector ``v``,
   using the normalised pivot ``p``.

The shader reaches the same result with a different split. Within one
launch it projects with the raw pivot, ``v - ((v . p) / (p . p)) p``, which
equals the projection onto the normalised pivot. The pivot itself is
normalised by the first invocation of the next launch, and the last
launch normalises its own pivot. No invocation of a launch writes the
vector the others read.

``gram_schmidt`` runs all steps on the host. It is the classical process
driven pivot by pivot and is meant for checking device results, not for
speed.
"""

from __future__ import annotations

import numpy as np


def normalize_pivot(vectors: np.ndarray, pivot_index: int) -> None:
    norm = np.sqrt(np.dot(vectors[pivot_index], vectors[pivot_index]))
    with np.errstate(divide="ignore", invalid="ignore"):
        vectors[pivot_index] /= norm


def project_out(vectors: np.ndarray, pivot_index: int) -> None:
    pivot = vectors[pivot_index]
    later = vectors[pivot_index + 1 :]
    if later.shape[0] == 0:
        return
    with np.errstate(invalid="ignore", over="ignore"):
        later -= np.outer(later @ pivot, pivot)


def gram_schmidt_step(vectors: np.ndarray, pivot_index: int) -> None:
    """One kernel launch: normalise the pivot, then project it out of later vectors."""

    normalize_pivot(vectors, pivot_index)
    project_out(vectors, pivot_index)


def gram_schmidt(matrix, vectors_as_columns: bool = True) -> np.ndarray:
    """Orthonormalise ``matrix`` on the host and return a new float64 array."""

    arr = np.array(matrix, dtype=np.float64)
    if arr.ndim != 2 or arr.shape[0] != arr.shape[1]:
        raise ValueError(f"expected a square 2D matrix, got shape {arr.shape}")
    vectors = np.ascontiguousarray(arr.T if vectors_as_columns else arr)
    for pivot_index in range(vectors.shape[0]):
        gram_schmidt_step(vectors, pivot_index)
    return vectors.T.copy() if vectors_as_columns else vectors
