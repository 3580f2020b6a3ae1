"""
Declarative ensemble configuration.

One document (JSON or YAML) describes:
- the inference topology ("direct" or "iterative") and its numeric knobs
- the online weight learner and payoff gating parameters
- the node list: leaf scorers and weighted-sum fusion nodes

Example (YAML):

    topology: iterative
    root_node_id: root
    network:
      max_iters: 10
      temperature: 1.0
    nodes:
      - {id: row, type: row_markov, version: v1}
      - {id: col, type: column_markov, version: v1}
      - id: root
        type: weighted_sum
        children: [row, col]
        weights: {row: 0.6, col: 0.4}
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

FUSION_NODE_TYPE = "weighted_sum"
NUM_OBSERVERS = "NUM_OBSERVERS"


class NetworkConfig(BaseModel):
    """Parameters of the iterative (attractor) inference engine."""
    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    max_iters: int = Field(10, ge=0, description="Hard iteration budget")
    temperature: float = Field(1.0, gt=0.0, description="Softmax temperature T")
    prior_weight: float = Field(0.5, description="Weight of ln(belief) fed back into the scores")
    damping: float = Field(0.5, ge=0.0, le=1.0, description="0 keeps the old belief, 1 takes the new one")
    stop_epsilon: float = Field(1e-4, ge=0.0, description="Stop once max |b_t - b_{t-1}| falls below this")
    epsilon: float = Field(1e-9, ge=0.0, description="Floor inside ln(belief + epsilon)")
    debug_stats: bool = Field(False, description="Record the belief trajectory")


class ObserverWeightsConfig(BaseModel):
    """Online softmax weighting of the root fusion node's children."""
    model_config = ConfigDict(extra="forbid")

    enabled: bool = False
    alpha: float = Field(0.01, description="Learning rate")
    temperature: float = Field(1.0, gt=0.0)
    scale_k: Union[float, str] = Field(NUM_OBSERVERS, description="'NUM_OBSERVERS' or a constant")
    use_payoff_scale: bool = True
    update_only_if_incorrect: bool = False
    require_convergence: bool = False
    advantage_mode: Literal["signed_margin", "scaled_margin"] = "signed_margin"
    margin_clip: float = Field(1.0, gt=0.0)
    log_every_n: int = Field(0, ge=0)

    update_rule: Literal["heuristic", "cross_entropy"] = "heuristic"
    score_softmax_temperature: float = Field(1.0, gt=0.0)
    center_observer_scores: bool = True

    standardize_observer_scores: bool = False
    l2: float = Field(0.0, ge=0.0, lt=1.0, description="Decay toward zero applied on every update")

    def resolve_scale_k(self, num_active: int) -> float:
        """K for the weight formula. Unparseable strings fall back to the observer count."""
        if isinstance(self.scale_k, (int, float)):
            return float(self.scale_k)
        if self.scale_k.strip().upper() == NUM_OBSERVERS:
            return float(num_active)
        try:
            return float(self.scale_k)
        except ValueError:
            logger.warning(f"Unparseable scale_k '{self.scale_k}', using observer count")
            return float(num_active)


class PayoffConfig(BaseModel):
    """Confidence/convergence gating of learning updates."""
    model_config = ConfigDict(extra="forbid")

    enabled: bool = False
    conf_strong: float = 0.25
    conf_weak: float = 0.10
    scale_strong: float = 1.0
    scale_weak_correct: float = 0.30
    scale_weak_incorrect: float = 0.20
    require_convergence: bool = False
    max_iters_for_converged: Optional[int] = Field(None, ge=0)
    apply_to_correct: bool = True
    apply_to_incorrect: bool = True


class LearningConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    observer_weights: ObserverWeightsConfig = Field(default_factory=ObserverWeightsConfig)
    payoff: PayoffConfig = Field(default_factory=PayoffConfig)


class NodeConfig(BaseModel):
    """
    One factor node. `weighted_sum` nodes fuse their children; any other
    type names a leaf scorer that must be present in the scorer registry.
    """
    model_config = ConfigDict(extra="forbid")

    id: str = Field(..., min_length=1)
    type: str = Field(..., min_length=1)
    children: List[str] = Field(default_factory=list)
    weights: Dict[str, float] = Field(default_factory=dict)
    standardize: Optional[bool] = None
    version: Optional[str] = None
    params: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_fusion(self) -> bool:
        return self.type == FUSION_NODE_TYPE


class EnsembleConfig(BaseModel):
    """Root of the ensemble document."""
    model_config = ConfigDict(extra="forbid")

    topology: str = "direct"
    root_node_id: str
    network: NetworkConfig = Field(default_factory=NetworkConfig)
    learning: LearningConfig = Field(default_factory=LearningConfig)
    nodes: List[NodeConfig] = Field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EnsembleConfig":
        return cls.model_validate(data)


def load_ensemble_config(path: Union[str, Path]) -> EnsembleConfig:
    """Load an ensemble document. `.yaml`/`.yml` go through PyYAML, anything else is JSON."""
    path = Path(path)
    with open(path, "r", encoding="utf-8") as f:
        if path.suffix.lower() in (".yaml", ".yml"):
            data = yaml.safe_load(f)
        else:
            data = json.load(f)

    if not isinstance(data, dict):
        raise ValueError(f"Ensemble config {path} must be a mapping at the top level")

    config = EnsembleConfig.from_dict(data)
    logger.info(
        f"Loaded ensemble config from {path}: topology={config.topology}, "
        f"{len(config.nodes)} nodes, root={config.root_node_id}"
    )
    return config
