"""
Leaf scorer contract and the memoizing adapter that sits in front of it.

A scorer is any object exposing:

    scorer_type: str
    scorer_version: str
    compute_scores(image: DigitImage) -> sequence of 10 floats

It must be a pure function of (image, scorer_version). The statistical
models behind concrete scorers (Markov chains, patch unigrams, ...) are
trained elsewhere; this module only cares about the contract.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional, Protocol, Sequence, runtime_checkable

import numpy as np

from digitnet.errors import ScoreShapeError
from digitnet.repository.score_cache import ScoreCache
from digitnet.schemas.digit import DigitImage, as_score_vector

logger = logging.getLogger(__name__)


@runtime_checkable
class Scorer(Protocol):
    scorer_type: str
    scorer_version: str

    def compute_scores(self, image: DigitImage) -> Sequence[float]:
        ...


# Factory signature used by the graph builder: NodeConfig -> Scorer
ScorerFactory = Callable[..., Scorer]
ScorerRegistry = Dict[str, ScorerFactory]


class LookupStatus(str, Enum):
    HIT = "hit"
    MISS = "miss"
    ERROR = "error"


@dataclass(frozen=True)
class CacheLookup:
    """Result of one cache read: a hit carries the stored vector."""
    status: LookupStatus
    scores: Optional[np.ndarray] = None


class MemoizingScorer:
    """
    Wraps a Scorer with the result cache.

    - hit: return the stored vector, the scorer is not invoked
    - miss: compute, store, return
    - any cache failure (CacheError or a backend fault) or no image
      identity: compute directly, store nothing

    Caching is an optimization only; a broken cache never fails a
    classification.
    """

    def __init__(self, scorer: Scorer, cache: Optional[ScoreCache] = None):
        self.scorer = scorer
        self.cache = cache

    @property
    def scorer_type(self) -> str:
        return self.scorer.scorer_type

    @property
    def scorer_version(self) -> str:
        return self.scorer.scorer_version

    def _lookup(self, image_id: str) -> CacheLookup:
        try:
            cached = self.cache.get(image_id, self.scorer_type, self.scorer_version)
        except Exception as e:
            logger.warning(
                f"Cache read failed for {image_id} {self.scorer_type}/{self.scorer_version}, "
                f"falling back to direct computation: {e}"
            )
            return CacheLookup(LookupStatus.ERROR)

        if cached is None:
            return CacheLookup(LookupStatus.MISS)
        try:
            return CacheLookup(LookupStatus.HIT, as_score_vector(cached))
        except ScoreShapeError as e:
            logger.warning(f"Ignoring malformed cache entry for {image_id} {self.scorer_type}: {e}")
            return CacheLookup(LookupStatus.ERROR)

    def _compute(self, image: DigitImage) -> np.ndarray:
        return as_score_vector(self.scorer.compute_scores(image))

    def evaluate(self, image: DigitImage, image_id: Optional[str] = None) -> np.ndarray:
        image_id = image_id if image_id is not None else image.identity
        if image_id is None or self.cache is None:
            return self._compute(image)

        lookup = self._lookup(image_id)
        if lookup.status == LookupStatus.HIT:
            logger.debug(f"Cache HIT for image {image_id} scorer {self.scorer_type}/{self.scorer_version}")
            return lookup.scores

        scores = self._compute(image)
        if lookup.status == LookupStatus.MISS:
            logger.debug(f"Cache MISS for image {image_id} scorer {self.scorer_type}/{self.scorer_version}")
            try:
                self.cache.put(image_id, self.scorer_type, self.scorer_version, scores)
            except Exception as e:
                logger.warning(f"Cache write failed for {image_id} {self.scorer_type}: {e}")
        return scores
