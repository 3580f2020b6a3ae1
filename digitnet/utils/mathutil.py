"""
Numeric helpers shared by the fusion nodes, inference engines and learner.

All functions take and return 1-D numpy arrays (or plain sequences that
numpy can coerce) and never modify their inputs.
"""

from typing import Sequence

import numpy as np

STANDARDIZE_EPS = 1e-6
ENTROPY_FLOOR = 1e-12


def softmax(scores: Sequence[float], temperature: float = 1.0) -> np.ndarray:
    """
    Temperature softmax with max-subtraction for numerical stability:

        softmax(x)_i = exp((x_i - max(x)) / T) / sum_j exp((x_j - max(x)) / T)
    """
    if temperature <= 0:
        raise ValueError("Temperature must be positive")

    x = np.asarray(scores, dtype=np.float64)
    exps = np.exp((x - np.max(x)) / temperature)
    return exps / exps.sum()


def entropy(probs: Sequence[float]) -> float:
    """Shannon entropy in nats. Entries <= 1e-12 contribute nothing."""
    p = np.asarray(probs, dtype=np.float64)
    p = p[p > ENTROPY_FLOOR]
    return float(-np.sum(p * np.log(p)))


def argmax(values: Sequence[float]) -> int:
    """Index of the first maximum, -1 for an empty input."""
    x = np.asarray(values, dtype=np.float64)
    if x.size == 0:
        return -1
    return int(np.argmax(x))


def max_abs_delta(a: Sequence[float], b: Sequence[float]) -> float:
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)
    if a.shape != b.shape:
        raise ValueError("Arrays must have same length")
    if a.size == 0:
        return 0.0
    return float(np.max(np.abs(a - b)))


def standardize(scores: Sequence[float], eps: float = STANDARDIZE_EPS) -> np.ndarray:
    """Per-vector z-score: subtract the mean, divide by population std + eps."""
    x = np.asarray(scores, dtype=np.float64)
    return (x - x.mean()) / (x.std() + eps)


def center(scores: Sequence[float]) -> np.ndarray:
    x = np.asarray(scores, dtype=np.float64)
    return x - x.mean()


def top_two(probs: Sequence[float]):
    """
    Return ((top1_index, top1_value), (top2_index, top2_value)).

    Ties keep the earlier index in first place. Missing entries are
    reported as (-1, -1.0).
    """
    top1, top2 = -1, -1
    max1, max2 = -1.0, -1.0
    for i, p in enumerate(probs):
        p = float(p)
        if p > max1:
            top2, max2 = top1, max1
            top1, max1 = i, p
        elif p > max2:
            top2, max2 = i, p
    return (top1, max1), (top2, max2)
