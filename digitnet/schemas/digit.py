# digitnet/schemas/digit.py

from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence, Tuple
import hashlib

import numpy as np

from digitnet.errors import ScoreShapeError

NUM_CLASSES = 10
IMAGE_SIZE = 28
BINARIZE_THRESHOLD = 128


def as_score_vector(values: Any) -> np.ndarray:
    """
    Coerce `values` into a read-only float64 vector with one entry per class.

    Raises ScoreShapeError for anything that is not a flat sequence of
    exactly NUM_CLASSES numbers. The check happens here, where the vector
    is built, never later when it is consumed.
    """
    try:
        vec = np.array(values, dtype=np.float64)
    except (TypeError, ValueError) as e:
        raise ScoreShapeError(f"Score vector is not numeric: {e}") from e

    if vec.ndim != 1 or vec.shape[0] != NUM_CLASSES:
        raise ScoreShapeError(
            f"Score vector must have shape ({NUM_CLASSES},), got {vec.shape}"
        )
    vec.setflags(write=False)
    return vec


@dataclass(frozen=True, eq=False)
class DigitImage:
    """
    A single 28x28 grayscale digit.

    - pixels: intensities in [0, 255], stored as a read-only uint8 array
    - identity: stable key for caching (relative path or content hash)
    - label: ground-truth class when known
    """
    pixels: np.ndarray
    identity: Optional[str] = None
    label: Optional[int] = None

    def __post_init__(self):
        arr = np.asarray(self.pixels)
        if arr.shape != (IMAGE_SIZE, IMAGE_SIZE):
            raise ValueError(
                f"Image must be {IMAGE_SIZE}x{IMAGE_SIZE}, got shape {arr.shape}"
            )
        if arr.size and (arr.min() < 0 or arr.max() > 255):
            raise ValueError("Pixel intensities must be within [0, 255]")
        if self.label is not None and not (0 <= int(self.label) < NUM_CLASSES):
            raise ValueError(f"Label must be in [0, {NUM_CLASSES - 1}], got {self.label}")

        pixels = arr.astype(np.uint8, copy=True)
        pixels.setflags(write=False)
        object.__setattr__(self, "pixels", pixels)

    def binarize(self, threshold: int = BINARIZE_THRESHOLD) -> np.ndarray:
        return (self.pixels >= threshold).astype(np.uint8)

    def content_hash(self) -> str:
        """SHA-256 of the binarized image, so tiny intensity noise maps to one key."""
        return hashlib.sha256(self.binarize().tobytes()).hexdigest()

    def with_label(self, label: Optional[int]) -> "DigitImage":
        return DigitImage(self.pixels, identity=self.identity, label=label)


@dataclass(frozen=True)
class InferenceResult:
    """
    Outcome of one classification.

    `belief` and the entropy/delta diagnostics are only populated by the
    iterative engine. Direct mode always reports a single iteration.
    """
    predicted_class: int
    scores: Tuple[float, ...]
    topology: str
    iterations: int = 1
    belief: Optional[Tuple[float, ...]] = None
    initial_entropy: Optional[float] = None
    final_entropy: Optional[float] = None
    final_max_delta: Optional[float] = None
    oscillation_detected: bool = False
    belief_trajectory: Optional[Tuple[Tuple[float, ...], ...]] = None

    @property
    def has_belief(self) -> bool:
        return self.belief is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "predicted_class": self.predicted_class,
            "scores": list(self.scores),
            "topology": self.topology,
            "iterations": self.iterations,
            "belief": list(self.belief) if self.belief is not None else None,
            "initial_entropy": self.initial_entropy,
            "final_entropy": self.final_entropy,
            "final_max_delta": self.final_max_delta,
            "oscillation_detected": self.oscillation_detected,
        }

    def __str__(self) -> str:
        top = (
            f"{self.scores[self.predicted_class]:.4f}"
            if 0 <= self.predicted_class < len(self.scores) else "N/A"
        )
        return (
            f"InferenceResult(predicted={self.predicted_class}, topScore={top}, "
            f"iterations={self.iterations}, topology='{self.topology}')"
        )


def to_tuple(vec: Sequence[float]) -> Tuple[float, ...]:
    return tuple(float(v) for v in vec)
