"""
Shared fixtures: fixed-output scorers and small ensemble configs.
"""

import os
import sys

import numpy as np
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from digitnet.config.ensemble_config import EnsembleConfig
from digitnet.schemas.digit import DigitImage


class FixedScorer:
    """Returns the same vector for every image and counts its invocations."""

    def __init__(self, scorer_type, scores, version="v1"):
        self.scorer_type = scorer_type
        self.scorer_version = version
        self.scores = list(scores)
        self.calls = 0

    def compute_scores(self, image):
        self.calls += 1
        return self.scores


def one_hot(cls, value=1.0):
    vec = [0.0] * 10
    vec[cls] = value
    return vec


def make_registry(scorers):
    """type name -> factory returning the prebuilt scorer (config version wins when set)."""
    def factory_for(scorer):
        def factory(node_config):
            if node_config.version:
                scorer.scorer_version = node_config.version
            return scorer
        return factory
    return {s.scorer_type: factory_for(s) for s in scorers}


def two_leaf_config(topology="direct", weights=None, **sections):
    data = {
        "topology": topology,
        "root_node_id": "root",
        "nodes": [
            {"id": "A", "type": "scorer_a"},
            {"id": "B", "type": "scorer_b"},
            {
                "id": "root",
                "type": "weighted_sum",
                "children": ["A", "B"],
                "weights": weights if weights is not None else {"A": 0.6, "B": 0.4},
            },
        ],
    }
    data.update(sections)
    return EnsembleConfig.from_dict(data)


@pytest.fixture
def blank_image():
    return DigitImage(np.zeros((28, 28), dtype=np.uint8), identity="blank.png")


@pytest.fixture
def labeled_image():
    pixels = np.zeros((28, 28), dtype=np.uint8)
    pixels[4:24, 13:15] = 255
    return DigitImage(pixels, identity="1/stroke.png", label=1)


@pytest.fixture
def scorer_a():
    return FixedScorer("scorer_a", one_hot(0, 10.0))


@pytest.fixture
def scorer_b():
    return FixedScorer("scorer_b", one_hot(0, 0.0))


DEMO_REGISTRY = make_registry([FixedScorer("demo", one_hot(5))])
