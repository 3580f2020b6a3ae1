"""
Inference engines: turn the ensemble's fused scores into a prediction.

- DirectInferenceEngine: argmax of the root fused scores, one iteration.
- IterativeInferenceEngine: treats the fused scores as an attractor and
  refines a belief distribution to a fixed point:

      b_0 = softmax(S, T)
      S_t = S + prior_weight * ln(b_{t-1} + epsilon)
      b_t = (1 - damping) * b_{t-1} + damping * softmax(S_t, T)

  It stops once max |b_t - b_{t-1}| < stop_epsilon, and never runs more
  than max_iters iterations.
"""

import logging
from abc import ABC, abstractmethod
from typing import List, Optional

import numpy as np

from digitnet.config.ensemble_config import EnsembleConfig, NetworkConfig
from digitnet.pipelines.factor_graph import EnsembleGraph, GraphEvaluation
from digitnet.schemas.digit import DigitImage, InferenceResult, to_tuple
from digitnet.utils.mathutil import argmax, entropy, max_abs_delta, softmax

logger = logging.getLogger(__name__)

TOPOLOGY_DIRECT = "direct"
TOPOLOGY_ITERATIVE = "iterative"
TOPOLOGY_ITERATIVE_DISABLED = "iterative_disabled"

OSCILLATION_TOLERANCE = 1e-9


class InferenceEngine(ABC):
    """Common front: evaluate the graph, then interpret its root scores."""

    topology = ""

    def __init__(self, graph: EnsembleGraph):
        self.graph = graph

    def infer(self, image: DigitImage) -> InferenceResult:
        return self.infer_from_evaluation(self.graph.evaluate(image))

    @abstractmethod
    def infer_from_evaluation(self, evaluation: GraphEvaluation) -> InferenceResult:
        raise NotImplementedError


class DirectInferenceEngine(InferenceEngine):
    topology = TOPOLOGY_DIRECT

    def infer_from_evaluation(self, evaluation: GraphEvaluation) -> InferenceResult:
        scores = evaluation.root_scores
        return InferenceResult(
            predicted_class=argmax(scores),
            scores=to_tuple(scores),
            topology=self.topology,
            iterations=1,
        )


class IterativeInferenceEngine(InferenceEngine):
    topology = TOPOLOGY_ITERATIVE

    def __init__(self, graph: EnsembleGraph, config: Optional[NetworkConfig] = None):
        super().__init__(graph)
        self.config = config or NetworkConfig()

    def infer_from_evaluation(self, evaluation: GraphEvaluation) -> InferenceResult:
        cfg = self.config
        base = np.asarray(evaluation.root_scores, dtype=np.float64)

        if not cfg.enabled:
            return InferenceResult(
                predicted_class=argmax(base),
                scores=to_tuple(base),
                topology=TOPOLOGY_ITERATIVE_DISABLED,
                iterations=1,
            )

        belief = softmax(base, cfg.temperature)
        initial_entropy = entropy(belief)
        trajectory: Optional[List[tuple]] = [to_tuple(belief)] if cfg.debug_stats else None

        iterations = 0
        delta = 0.0
        prev_delta: Optional[float] = None
        oscillation = False

        for t in range(1, cfg.max_iters + 1):
            refined = base + cfg.prior_weight * np.log(belief + cfg.epsilon)
            raw = softmax(refined, cfg.temperature)
            updated = (1.0 - cfg.damping) * belief + cfg.damping * raw

            delta = max_abs_delta(updated, belief)
            if prev_delta is not None and delta > prev_delta + OSCILLATION_TOLERANCE:
                oscillation = True
            prev_delta = delta

            belief = updated
            iterations = t
            if trajectory is not None:
                trajectory.append(to_tuple(belief))
            logger.debug(f"Iteration {t}: max delta {delta:.3e}")

            if delta < cfg.stop_epsilon:
                break

        return InferenceResult(
            predicted_class=argmax(belief),
            scores=to_tuple(base),
            topology=self.topology,
            iterations=iterations,
            belief=to_tuple(belief),
            initial_entropy=initial_entropy,
            final_entropy=entropy(belief),
            final_max_delta=delta,
            oscillation_detected=oscillation,
            belief_trajectory=tuple(trajectory) if trajectory is not None else None,
        )


def create_engine(config: Optional[EnsembleConfig], graph: EnsembleGraph) -> InferenceEngine:
    """Pick the engine named by `config.topology`; anything unknown falls back to direct."""
    topology = (config.topology if config is not None else "") or ""
    topology = topology.strip().lower()

    if not topology:
        logger.warning("Topology not specified, defaulting to 'direct'")
        return DirectInferenceEngine(graph)
    if topology == TOPOLOGY_DIRECT:
        return DirectInferenceEngine(graph)
    if topology == TOPOLOGY_ITERATIVE:
        return IterativeInferenceEngine(graph, config.network)

    logger.warning(f"Unknown topology '{topology}', defaulting to 'direct'")
    return DirectInferenceEngine(graph)
