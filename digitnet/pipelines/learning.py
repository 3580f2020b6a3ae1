"""
Online observer weight learning.

Each fusion input ("observer") owns one scalar parameter theta. Weights
are a temperature softmax over the thetas of the observers active for a
classification, scaled by K:

    w_i = K * exp(theta_i / T) / sum_j exp(theta_j / T)

Updates:
- heuristic:     advantage = sign(clip(margin)) or clip(margin) / margin_clip
- cross_entropy: advantage = s_i[y] - sum_d p_d * s_i[d]

    theta_i <- (theta_i + alpha * scale * advantage) * (1 - l2)

The theta table is shared by every concurrent classification. Updates to
one node id are serialized by that id's lock shard; different ids only
contend when they hash to the same shard. Reads take a snapshot and never
block.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from digitnet.config.ensemble_config import ObserverWeightsConfig

logger = logging.getLogger(__name__)

DEFAULT_LOCK_SHARDS = 64


class ObserverWeightState:
    """Learned parameters (thetas) for competitive normalized observer weighting."""

    def __init__(self, config: Optional[ObserverWeightsConfig] = None, lock_shards: int = DEFAULT_LOCK_SHARDS):
        self.config = config or ObserverWeightsConfig()
        self.alpha = self.config.alpha
        self.temperature = self.config.temperature
        self.use_payoff_scale = self.config.use_payoff_scale
        self.margin_clip = self.config.margin_clip
        self.l2 = self.config.l2

        self._thetas: Dict[str, float] = {}
        self._shards = [threading.Lock() for _ in range(max(1, lock_shards))]
        self._counter_lock = threading.Lock()
        self._total_updates = 0

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    @property
    def total_updates(self) -> int:
        with self._counter_lock:
            return self._total_updates

    def _shard(self, node_id: str) -> threading.Lock:
        return self._shards[hash(node_id) % len(self._shards)]

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def theta(self, node_id: str) -> float:
        return self._thetas.get(node_id, 0.0)

    def snapshot(self) -> Dict[str, float]:
        return dict(self._thetas)

    def compute_weights(self, active_node_ids: Iterable[str]) -> Dict[str, float]:
        """
        Normalized weights for `active_node_ids`. All-zero thetas give every
        node the same weight (1.0 each when K is the observer count).
        """
        ids = list(dict.fromkeys(active_node_ids))
        if not ids:
            return {}

        thetas = self._thetas
        logits = np.array([thetas.get(i, 0.0) for i in ids], dtype=np.float64) / self.temperature
        exps = np.exp(logits - logits.max())
        k = self.config.resolve_scale_k(len(ids))
        weights = k * exps / exps.sum()
        return {node_id: float(w) for node_id, w in zip(ids, weights)}

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def compute_advantage(self, margin: float) -> float:
        clipped = max(-self.margin_clip, min(self.margin_clip, float(margin)))
        if self.config.advantage_mode == "scaled_margin":
            return clipped / self.margin_clip
        return float(np.sign(clipped))

    def _apply(self, node_id: str, advantage: float, payoff_scale: float) -> float:
        scale = payoff_scale if self.use_payoff_scale else 1.0
        delta = self.alpha * scale * advantage

        with self._shard(node_id):
            thetas = self._thetas
            new_value = (thetas.get(node_id, 0.0) + delta) * (1.0 - self.l2)
            thetas[node_id] = new_value
            with self._counter_lock:
                self._total_updates += 1
        return new_value

    def update(self, node_id: str, raw_margin: float, payoff_scale: float = 1.0) -> float:
        """Heuristic update from the observer's own margin. Returns the new theta."""
        return self._apply(node_id, self.compute_advantage(raw_margin), payoff_scale)

    def update_cross_entropy(
        self,
        node_id: str,
        centered_scores: Sequence[float],
        true_class: int,
        probs: Sequence[float],
        payoff_scale: float = 1.0,
    ) -> float:
        """
        Policy-gradient style update: reward an observer whose score for the
        true class beats its expected score under the ensemble belief.
        """
        s = np.asarray(centered_scores, dtype=np.float64)
        p = np.asarray(probs, dtype=np.float64)
        expected = float(np.dot(p, s))
        advantage = float(s[true_class]) - expected
        return self._apply(node_id, advantage, payoff_scale)

    @contextmanager
    def _all_shards(self):
        """Hold every shard lock, then the counter lock: no update is in flight."""
        for lock in self._shards:
            lock.acquire()
        try:
            with self._counter_lock:
                yield
        finally:
            for lock in reversed(self._shards):
                lock.release()

    def snapshot_with_count(self) -> Tuple[Dict[str, float], int]:
        """Thetas and the update counter, taken at the same instant."""
        with self._all_shards():
            return dict(self._thetas), self._total_updates

    def reset(self):
        """Clear every theta and the update counter."""
        with self._all_shards():
            self._thetas = {}
            self._total_updates = 0

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def log_summary(self, prefix: str, full_details: bool = False):
        thetas, total_updates = self.snapshot_with_count()
        if not thetas:
            logger.info(f"{prefix}: No params learned yet.")
            return

        values = list(thetas.values())
        logger.info(
            f"{prefix}: Count={len(values)} Updates={total_updates} "
            f"Theta[Mean={np.mean(values):.3f} Min={min(values):.3f} Max={max(values):.3f}]"
        )

        if full_details:
            weights = self.compute_weights(thetas.keys())
            ranked: List[str] = [
                f"{node_id}={w:.3f}(th:{thetas[node_id]:.2f})"
                for node_id, w in sorted(weights.items(), key=lambda kv: kv[1], reverse=True)
            ]
            logger.info(f"{prefix} Weights: [{' '.join(ranked)}]")
