"""
Evaluation and online learning over labeled images.

For each labeled image the trainer runs the ensemble once, scores the
outcome with the payoff calculator and nudges every observer's theta
(observers = children of the root fusion node). Learning on a test set is
refused outright.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence

import numpy as np

from digitnet.config.ensemble_config import EnsembleConfig
from digitnet.errors import LeakageError
from digitnet.pipelines.factor_graph import EnsembleGraph
from digitnet.pipelines.inference import InferenceEngine
from digitnet.pipelines.learning import ObserverWeightState
from digitnet.pipelines.payoff import compute_payoff_scale
from digitnet.schemas.digit import DigitImage, InferenceResult
from digitnet.utils.mathutil import center, softmax, standardize

logger = logging.getLogger(__name__)

DEFAULT_PROGRESS_EVERY = 1000


@dataclass
class SampleOutcome:
    """What happened to one labeled image during training."""
    result: InferenceResult
    label: int
    correct: bool
    payoff_scale: float = 0.0
    updated_nodes: List[str] = field(default_factory=list)
    skipped_reason: Optional[str] = None


@dataclass
class EvaluationReport:
    accuracy: float
    correct: int
    total: int
    updates: int = 0
    mean_iterations: float = 0.0
    oscillations: int = 0


def observer_margin(scores: Sequence[float], true_class: int) -> float:
    """Score of the true class minus the best rival class."""
    s = np.asarray(scores, dtype=np.float64)
    rivals = np.delete(s, true_class)
    return float(s[true_class] - rivals.max())


class EnsembleTrainer:
    def __init__(
        self,
        graph: EnsembleGraph,
        engine: InferenceEngine,
        learner: ObserverWeightState,
        config: EnsembleConfig,
    ):
        self.graph = graph
        self.engine = engine
        self.learner = learner
        self.config = config
        self._seen = 0
        self._seen_lock = threading.Lock()

    @property
    def observer_config(self):
        return self.config.learning.observer_weights

    def _converged(self, result: InferenceResult) -> bool:
        if result.final_max_delta is None:
            return True
        return result.final_max_delta < self.config.network.stop_epsilon

    def _skip_reason(self, result: InferenceResult, correct: bool) -> Optional[str]:
        ow = self.observer_config
        if not self.learner.enabled:
            return "learning_disabled"
        if ow.update_only_if_incorrect and correct:
            return "already_correct"
        if ow.require_convergence and not self._converged(result):
            return "not_converged"
        return None

    def _ensemble_probs(self, result: InferenceResult) -> np.ndarray:
        if result.belief is not None:
            return np.asarray(result.belief, dtype=np.float64)
        return softmax(result.scores, self.observer_config.score_softmax_temperature)

    def _observer_scores_for_ce(self, scores: np.ndarray) -> np.ndarray:
        ow = self.observer_config
        if ow.standardize_observer_scores:
            return standardize(scores)
        if ow.center_observer_scores:
            return center(scores)
        return np.asarray(scores, dtype=np.float64)

    def train_on_sample(self, image: DigitImage) -> SampleOutcome:
        if image.label is None:
            raise ValueError("Training requires a labeled image")

        label = int(image.label)
        evaluation = self.graph.evaluate(image)
        result = self.engine.infer_from_evaluation(evaluation)
        outcome = SampleOutcome(result=result, label=label, correct=result.predicted_class == label)

        outcome.skipped_reason = self._skip_reason(result, outcome.correct)
        if outcome.skipped_reason is not None:
            return outcome

        scale = compute_payoff_scale(result, label, self.config.learning.payoff)
        outcome.payoff_scale = scale
        probs = None
        if self.observer_config.update_rule == "cross_entropy":
            probs = self._ensemble_probs(result)

        for node_id in self.graph.observer_ids():
            scores = evaluation.node_scores.get(node_id)
            if scores is None:
                logger.warning(f"No scores for observer {node_id}, skipping its update")
                continue
            if probs is not None:
                self.learner.update_cross_entropy(
                    node_id, self._observer_scores_for_ce(scores), label, probs, scale
                )
            else:
                self.learner.update(node_id, observer_margin(scores, label), scale)
            outcome.updated_nodes.append(node_id)

        self._maybe_log_summary()
        return outcome

    def _maybe_log_summary(self):
        every = self.observer_config.log_every_n
        with self._seen_lock:
            self._seen += 1
            seen = self._seen
        if every and seen % every == 0:
            self.learner.log_summary(f"ObserverWeights@{seen}", full_details=True)

    def evaluate(
        self,
        images: Iterable[DigitImage],
        learn: bool = False,
        is_test_set: bool = True,
        workers: int = 1,
    ) -> EvaluationReport:
        """
        Accuracy over `images`; with `learn=True` every sample also updates
        the learner, in order. Inference-only runs can fan out over threads.
        """
        if learn and is_test_set:
            logger.error("LEAKAGE PREVENTION: refusing to learn on a test set")
            raise LeakageError("Observer weight learning requested on a TEST set")

        images = list(images)
        if any(img.label is None for img in images):
            raise ValueError("Evaluation requires every image to be labeled")

        logger.info(f"Evaluating ensemble on {len(images)} images (learn={learn}, is_test_set={is_test_set})...")
        progress_every = self.observer_config.log_every_n or DEFAULT_PROGRESS_EVERY

        correct = 0
        updates = 0
        iterations = 0
        oscillations = 0

        if learn:
            results = []
            for i, img in enumerate(images, 1):
                outcome = self.train_on_sample(img)
                results.append(outcome.result)
                updates += len(outcome.updated_nodes)
                if i % progress_every == 0:
                    logger.info(f"Evaluated {i}/{len(images)}...")
        elif workers > 1:
            with ThreadPoolExecutor(max_workers=workers) as pool:
                results = list(pool.map(self.engine.infer, images))
        else:
            results = []
            for i, img in enumerate(images, 1):
                results.append(self.engine.infer(img))
                if i % progress_every == 0:
                    logger.info(f"Evaluated {i}/{len(images)}...")

        for img, result in zip(images, results):
            if result.predicted_class == img.label:
                correct += 1
            iterations += result.iterations
            if result.oscillation_detected:
                oscillations += 1

        total = len(images)
        report = EvaluationReport(
            accuracy=correct / total if total else 0.0,
            correct=correct,
            total=total,
            updates=updates,
            mean_iterations=iterations / total if total else 0.0,
            oscillations=oscillations,
        )
        logger.info(
            f"Evaluation complete. Accuracy: {report.accuracy:.4f} ({correct}/{total}) "
            f"[Updates: {updates}, MeanIters: {report.mean_iterations:.2f}, Oscillations: {oscillations}]"
        )
        return report
