"""
Payoff scale: how strongly the weight learner should react to one sample.

Pure function of (inference result, true label, config). Confident,
converged outcomes get the full scale; weak-confidence outcomes get a
reduced scale that depends on correctness; ambiguous or non-converged
outcomes get no learning signal at all.
"""

from typing import Optional

from digitnet.config.ensemble_config import PayoffConfig
from digitnet.schemas.digit import InferenceResult
from digitnet.utils.mathutil import top_two


def compute_payoff_scale(
    result: InferenceResult,
    true_label: int,
    config: Optional[PayoffConfig],
) -> float:
    """
    Returns a scale in [0, scale_strong].

    1.0 (no gating) when payoff is disabled or the result carries no belief
    distribution, i.e. it came from the direct engine.
    """
    if config is None or not config.enabled:
        return 1.0
    if result.belief is None:
        return 1.0

    (top1, max1), (_, max2) = top_two(result.belief)
    conf_gap = max1 - max2
    was_correct = top1 == true_label

    if config.require_convergence and config.max_iters_for_converged is not None:
        if result.iterations >= config.max_iters_for_converged:
            return 0.0

    if conf_gap >= config.conf_strong:
        scale = config.scale_strong
    elif conf_gap >= config.conf_weak:
        scale = config.scale_weak_correct if was_correct else config.scale_weak_incorrect
    else:
        scale = 0.0

    if was_correct and not config.apply_to_correct:
        return 0.0
    if not was_correct and not config.apply_to_incorrect:
        return 0.0

    return scale
