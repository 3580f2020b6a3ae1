"""
Binary codec for score vectors stored in the result cache.

Layout: a bare concatenation of big-endian IEEE-754 float64 values in
index order. No header, no padding, so the blob length is always
8 * len(vector).
"""

from typing import Optional, Sequence

import numpy as np

_DTYPE = np.dtype(">f8")


def encode_scores(scores: Optional[Sequence[float]]) -> Optional[bytes]:
    if scores is None:
        return None
    return np.asarray(scores, dtype=np.float64).astype(_DTYPE).tobytes()


def decode_scores(blob: Optional[bytes]) -> Optional[np.ndarray]:
    if blob is None:
        return None
    if len(blob) % _DTYPE.itemsize != 0:
        raise ValueError(
            f"Score blob length {len(blob)} is not a multiple of {_DTYPE.itemsize}"
        )
    return np.frombuffer(blob, dtype=_DTYPE).astype(np.float64)
