"""
Classification service: the ensemble graph, its inference engine, the
shared observer weight state and the trainer, wired from one config.

Flow:
1. Ensemble graph: leaves consult their cached scorers, fusion nodes combine
2. Inference engine: direct argmax or iterative belief refinement
3. (feedback only) payoff gating + observer weight update

One service instance is shared by every request; only the learner's
theta table is mutated concurrently.
"""

import logging
from typing import Dict, Optional

from digitnet.config.ensemble_config import EnsembleConfig
from digitnet.pipelines.factor_graph import EnsembleGraph, build_graph
from digitnet.pipelines.inference import InferenceEngine, create_engine
from digitnet.pipelines.learning import ObserverWeightState
from digitnet.pipelines.scorers import ScorerRegistry
from digitnet.pipelines.training import EnsembleTrainer, SampleOutcome
from digitnet.repository.score_cache import ScoreCache, purge_scorer
from digitnet.schemas.digit import DigitImage, InferenceResult

logger = logging.getLogger(__name__)


class ClassificationService:
    def __init__(
        self,
        config: EnsembleConfig,
        graph: EnsembleGraph,
        engine: InferenceEngine,
        learner: ObserverWeightState,
        cache: Optional[ScoreCache] = None,
    ):
        self.config = config
        self.graph = graph
        self.engine = engine
        self.learner = learner
        self.cache = cache
        self.trainer = EnsembleTrainer(graph, engine, learner, config)

    @property
    def topology(self) -> str:
        return self.engine.topology

    def classify(self, image: DigitImage) -> InferenceResult:
        result = self.engine.infer(image)
        logger.debug(f"Classified {image.identity or '<anonymous>'}: {result}")
        return result

    def feedback(self, image: DigitImage) -> SampleOutcome:
        """Classify a labeled image and learn from it."""
        return self.trainer.train_on_sample(image)

    def learned_weights(self) -> Dict[str, float]:
        return self.learner.compute_weights(self.graph.observer_ids())

    def reset_learning(self):
        self.learner.reset()
        logger.info("Observer weight state reset")

    def purge_cache(self, scorer_type: str, scorer_version: str) -> int:
        if self.cache is None:
            return 0
        return purge_scorer(self.cache, scorer_type, scorer_version)


def build_service(
    config: EnsembleConfig,
    registry: ScorerRegistry,
    cache: Optional[ScoreCache] = None,
) -> ClassificationService:
    learner = ObserverWeightState(config.learning.observer_weights)
    graph = build_graph(config, registry, cache=cache, learner=learner)
    engine = create_engine(config, graph)
    logger.info(f"Classification service ready: topology={engine.topology}, learning={learner.enabled}")
    return ClassificationService(config, graph, engine, learner, cache)
