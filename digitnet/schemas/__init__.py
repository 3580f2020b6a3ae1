from digitnet.schemas.digit import (
    NUM_CLASSES,
    IMAGE_SIZE,
    DigitImage,
    InferenceResult,
    as_score_vector,
)

__all__ = [
    "NUM_CLASSES",
    "IMAGE_SIZE",
    "DigitImage",
    "InferenceResult",
    "as_score_vector",
]
