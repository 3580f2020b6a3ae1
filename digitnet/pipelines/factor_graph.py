"""
Ensemble factor graph.

Two node variants:
- LeafNode:   delegates to a MemoizingScorer (one scorer per leaf)
- FusionNode: weighted sum of named children's score vectors,
              optionally z-scoring each child first

Nodes refer to their children by id; the graph owns the node table and
resolves ids at evaluation time, so two fusion nodes can share a leaf
without duplicating it. The graph must be acyclic; a cycle, a dangling
child reference or an unknown node type is rejected when the graph is
built.

Evaluation is a single bottom-up pass over a precomputed topological
order with a per-call memo, so every node (shared or not) runs at most
once per classification.
"""

import logging
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Sequence, Set, Tuple

import numpy as np

from digitnet.config.ensemble_config import EnsembleConfig, NodeConfig
from digitnet.errors import GraphConfigError
from digitnet.pipelines.learning import ObserverWeightState
from digitnet.pipelines.scorers import MemoizingScorer, ScorerRegistry
from digitnet.repository.score_cache import ScoreCache
from digitnet.schemas.digit import NUM_CLASSES, DigitImage, as_score_vector
from digitnet.utils.mathutil import standardize

logger = logging.getLogger(__name__)

DEFAULT_CHILD_WEIGHT = 1.0


# ---------------------------------------------------------------------------
# Node variants
# ---------------------------------------------------------------------------

class FactorNode(ABC):
    """One scoring or fusion unit of the ensemble."""

    def __init__(self, node_id: str):
        self.id = node_id

    @property
    def children(self) -> Tuple[str, ...]:
        return ()

    @abstractmethod
    def compute(self, image: DigitImage, child_results: Mapping[str, np.ndarray]) -> np.ndarray:
        raise NotImplementedError


class LeafNode(FactorNode):
    """Leaf of the graph: asks its (cached) scorer for the image's scores."""

    def __init__(self, node_id: str, scorer: MemoizingScorer):
        super().__init__(node_id)
        self.scorer = scorer

    def compute(self, image: DigitImage, child_results: Mapping[str, np.ndarray]) -> np.ndarray:
        return self.scorer.evaluate(image)

    def __repr__(self) -> str:
        return f"LeafNode({self.id!r}, {self.scorer.scorer_type}/{self.scorer.scorer_version})"


class FusionNode(FactorNode):
    """
    Weighted sum over children.

    Weight resolution for a child, in order:
      configured weight (1.0 when the config omits it)
      -> runtime override
      -> learned weight, when a learner is attached and enabled

    A child whose configured/overridden weight is exactly 0 is never
    evaluated and never receives a learned weight.
    """

    def __init__(
        self,
        node_id: str,
        children: Sequence[str],
        weights: Optional[Mapping[str, float]] = None,
        standardize_children: bool = False,
        learner: Optional[ObserverWeightState] = None,
    ):
        super().__init__(node_id)
        self._children = tuple(children)
        self.configured_weights: Dict[str, float] = dict(weights or {})
        self.standardize_children = standardize_children
        self.learner = learner
        self._overrides: Dict[str, float] = {}

    @property
    def children(self) -> Tuple[str, ...]:
        return self._children

    def set_weight_override(self, child_id: str, weight: float):
        if child_id not in self._children:
            raise KeyError(f"{child_id} is not a child of {self.id}")
        overrides = dict(self._overrides)
        overrides[child_id] = float(weight)
        self._overrides = overrides

    def clear_weight_overrides(self):
        self._overrides = {}

    def base_weights(self) -> Dict[str, float]:
        """Configured weights with runtime overrides applied (no learning)."""
        overrides = self._overrides
        return {
            c: overrides.get(c, self.configured_weights.get(c, DEFAULT_CHILD_WEIGHT))
            for c in self._children
        }

    def effective_weights(self) -> Dict[str, float]:
        weights = self.base_weights()
        if self.learner is not None and self.learner.enabled:
            active = [c for c in self._children if weights[c] != 0.0]
            weights.update(self.learner.compute_weights(active))
        return weights

    def compute(
        self,
        image: DigitImage,
        child_results: Mapping[str, np.ndarray],
        weights: Optional[Mapping[str, float]] = None,
    ) -> np.ndarray:
        weights = weights if weights is not None else self.effective_weights()
        total = np.zeros(NUM_CLASSES, dtype=np.float64)
        used = 0

        for child_id in self._children:
            w = weights.get(child_id, DEFAULT_CHILD_WEIGHT)
            if w == 0.0:
                continue
            scores = child_results.get(child_id)
            if scores is None:
                logger.warning(f"Missing result for child {child_id} of {self.id}, skipping it")
                continue
            if self.standardize_children:
                scores = standardize(scores)
            total += w * scores
            used += 1

        if logger.isEnabledFor(logging.DEBUG):
            best = int(np.argmax(total))
            logger.debug(
                f"FusionNode {self.id} combined {used}/{len(self._children)} children. "
                f"Best class: {best} ({total[best]:.2f})"
            )
        return as_score_vector(total)

    def __repr__(self) -> str:
        return f"FusionNode({self.id!r}, children={list(self._children)})"


# ---------------------------------------------------------------------------
# Graph
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class GraphEvaluation:
    """
    Scores produced by one evaluation of the graph.

    `node_scores` is that call's memo (only nodes that were actually
    evaluated appear in it); `fusion_weights` records the weights each
    fusion node used.
    """
    root_id: str
    root_scores: np.ndarray
    node_scores: Mapping[str, np.ndarray]
    fusion_weights: Mapping[str, Mapping[str, float]] = field(default_factory=dict)


class EnsembleGraph:
    """Named collection of factor nodes with a designated root."""

    def __init__(self, nodes: Mapping[str, FactorNode], root_id: str):
        if root_id not in nodes:
            raise GraphConfigError("Root node not found", node_id=root_id)
        self.nodes: Dict[str, FactorNode] = dict(nodes)
        self.root_id = root_id
        self._order = _topological_order(self.nodes)

    @property
    def root(self) -> FactorNode:
        return self.nodes[self.root_id]

    def topological_order(self) -> List[str]:
        """Node ids with every child before its parents."""
        return list(self._order)

    def fusion_nodes(self) -> List[FusionNode]:
        return [n for n in self.nodes.values() if isinstance(n, FusionNode)]

    def observer_ids(self) -> List[str]:
        """Children of the root fusion node that currently carry a nonzero weight."""
        root = self.root
        if not isinstance(root, FusionNode):
            return []
        weights = root.base_weights()
        return [c for c in root.children if weights[c] != 0.0]

    def _plan(self) -> Tuple[Set[str], Dict[str, Dict[str, float]]]:
        """
        Walk parents-first from the root and collect the nodes this call
        needs, freezing every reachable fusion node's weights on the way.
        """
        needed = {self.root_id}
        weights: Dict[str, Dict[str, float]] = {}
        for node_id in reversed(self._order):
            if node_id not in needed:
                continue
            node = self.nodes[node_id]
            if isinstance(node, FusionNode):
                w = node.effective_weights()
                weights[node_id] = w
                needed.update(c for c in node.children if w[c] != 0.0)
        return needed, weights

    def evaluate(self, image: DigitImage) -> GraphEvaluation:
        needed, weights = self._plan()
        memo: Dict[str, np.ndarray] = {}

        for node_id in self._order:
            if node_id not in needed or node_id in memo:
                continue
            node = self.nodes[node_id]
            if isinstance(node, FusionNode):
                memo[node_id] = node.compute(image, memo, weights[node_id])
            else:
                memo[node_id] = node.compute(image, memo)

        return GraphEvaluation(
            root_id=self.root_id,
            root_scores=memo[self.root_id],
            node_scores=MappingProxyType(memo),
            fusion_weights=MappingProxyType(weights),
        )

    def __len__(self) -> int:
        return len(self.nodes)


def _topological_order(nodes: Mapping[str, FactorNode]) -> List[str]:
    """Kahn's algorithm; raises GraphConfigError on a dangling child or a cycle."""
    pending_children: Dict[str, int] = {}
    parents: Dict[str, List[str]] = {node_id: [] for node_id in nodes}

    for node_id, node in nodes.items():
        unique_children = set(node.children)
        for child_id in unique_children:
            if child_id not in nodes:
                raise GraphConfigError(f"Missing child node id '{child_id}'", node_id=node_id)
            parents[child_id].append(node_id)
        pending_children[node_id] = len(unique_children)

    ready = deque(sorted(n for n, k in pending_children.items() if k == 0))
    order: List[str] = []
    while ready:
        node_id = ready.popleft()
        order.append(node_id)
        for parent_id in parents[node_id]:
            pending_children[parent_id] -= 1
            if pending_children[parent_id] == 0:
                ready.append(parent_id)

    if len(order) != len(nodes):
        stuck = sorted(n for n, k in pending_children.items() if k > 0)
        raise GraphConfigError("Cycle detected in ensemble graph", node_id=stuck[0])
    return order


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------

def build_graph(
    config: EnsembleConfig,
    registry: ScorerRegistry,
    cache: Optional[ScoreCache] = None,
    learner: Optional[ObserverWeightState] = None,
) -> EnsembleGraph:
    """
    Instantiate every node of `config`, wire children by id and validate
    the result. Leaf types are looked up in `registry`
    (type name -> factory(NodeConfig) -> Scorer).

    The learner only drives the root fusion node, whose children are the
    observers it is trained on; inner fusion nodes keep their configured
    or overridden weights.
    """
    ow_config = config.learning.observer_weights
    inherit_standardize = ow_config.enabled and ow_config.standardize_observer_scores
    attach_learner = learner if (learner is not None and ow_config.enabled) else None

    nodes: Dict[str, FactorNode] = {}
    for nc in config.nodes:
        if nc.id in nodes:
            raise GraphConfigError("Duplicate node id", node_id=nc.id)
        node_learner = attach_learner if nc.id == config.root_node_id else None
        nodes[nc.id] = _build_node(nc, registry, cache, inherit_standardize, node_learner)

    graph = EnsembleGraph(nodes, config.root_node_id)
    logger.info(f"Factor graph built with {len(graph)} nodes. Root: {graph.root_id}")
    return graph


def _build_node(
    nc: NodeConfig,
    registry: ScorerRegistry,
    cache: Optional[ScoreCache],
    inherit_standardize: bool,
    learner: Optional[ObserverWeightState],
) -> FactorNode:
    if nc.is_fusion:
        unknown = set(nc.weights) - set(nc.children)
        if unknown:
            logger.warning(f"Node {nc.id}: ignoring weights for non-children {sorted(unknown)}")
        return FusionNode(
            nc.id,
            nc.children,
            {k: v for k, v in nc.weights.items() if k in nc.children},
            standardize_children=nc.standardize if nc.standardize is not None else inherit_standardize,
            learner=learner,
        )

    factory = registry.get(nc.type)
    if factory is None:
        raise GraphConfigError(f"Unknown node type '{nc.type}'", node_id=nc.id)
    if nc.children:
        raise GraphConfigError(f"Leaf node of type '{nc.type}' cannot have children", node_id=nc.id)

    scorer = factory(nc)
    if not callable(getattr(scorer, "compute_scores", None)):
        raise GraphConfigError(f"Factory for '{nc.type}' did not return a scorer", node_id=nc.id)
    return LeafNode(nc.id, MemoizingScorer(scorer, cache))
