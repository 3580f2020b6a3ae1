"""
Tests for the online observer weight learner.
"""

import threading

import numpy as np
import pytest

from digitnet.config.ensemble_config import ObserverWeightsConfig
from digitnet.pipelines.learning import ObserverWeightState


def make_state(**overrides):
    return ObserverWeightState(ObserverWeightsConfig(enabled=True, **overrides))


class TestWeights:
    def test_fresh_state_gives_unit_weights(self):
        weights = make_state().compute_weights(["a", "b", "c"])
        assert weights == {k: pytest.approx(1.0) for k in "abc"}

    def test_weights_sum_to_k(self):
        state = make_state()
        state.update("a", 1.0)
        weights = state.compute_weights(["a", "b", "c", "d"])
        assert sum(weights.values()) == pytest.approx(4.0)

    def test_constant_scale_k(self):
        weights = make_state(scale_k=1.0).compute_weights(["a", "b"])
        assert weights == {"a": pytest.approx(0.5), "b": pytest.approx(0.5)}

    def test_numeric_string_scale_k(self):
        weights = make_state(scale_k="3").compute_weights(["a", "b"])
        assert sum(weights.values()) == pytest.approx(3.0)

    def test_unparseable_scale_k_falls_back_to_count(self):
        weights = make_state(scale_k="lots").compute_weights(["a", "b"])
        assert sum(weights.values()) == pytest.approx(2.0)

    def test_empty_active_set(self):
        assert make_state().compute_weights([]) == {}

    def test_large_thetas_stay_finite(self):
        state = make_state(alpha=1000.0)
        for _ in range(10):
            state.update("a", 1.0)
        weights = state.compute_weights(["a", "b"])
        assert all(np.isfinite(w) for w in weights.values())
        assert weights["a"] == pytest.approx(2.0)


class TestHeuristicUpdate:
    def test_positive_margin_raises_weight(self):
        state = make_state(alpha=0.1)
        before = state.compute_weights(["a", "b"])["a"]
        new_theta = state.update("a", 0.7)
        assert new_theta == pytest.approx(0.1)
        assert state.compute_weights(["a", "b"])["a"] > before

    def test_negative_margin_lowers_theta(self):
        state = make_state(alpha=0.1)
        assert state.update("a", -5.0) == pytest.approx(-0.1)

    def test_scaled_margin_mode(self):
        state = make_state(advantage_mode="scaled_margin", margin_clip=2.0)
        assert state.compute_advantage(1.0) == pytest.approx(0.5)
        assert state.compute_advantage(10.0) == pytest.approx(1.0)
        assert state.compute_advantage(-10.0) == pytest.approx(-1.0)

    def test_signed_margin_mode(self):
        state = make_state()
        assert state.compute_advantage(0.001) == 1.0
        assert state.compute_advantage(0.0) == 0.0

    def test_payoff_scale_multiplies_step(self):
        state = make_state(alpha=0.1)
        assert state.update("a", 1.0, payoff_scale=0.3) == pytest.approx(0.03)

    def test_payoff_scale_ignored_when_disabled(self):
        state = make_state(alpha=0.1, use_payoff_scale=False)
        assert state.update("a", 1.0, payoff_scale=0.0) == pytest.approx(0.1)

    def test_l2_decay(self):
        state = make_state(alpha=0.0, l2=0.5)
        state._thetas["a"] = 1.0
        assert state.update("a", 1.0) == pytest.approx(0.5)


class TestCrossEntropyUpdate:
    def test_rewards_observer_above_expectation(self):
        state = make_state(alpha=1.0, update_rule="cross_entropy")
        scores = np.array([1.0, -1.0] + [0.0] * 8)
        probs = np.full(10, 0.1)
        assert state.update_cross_entropy("a", scores, 0, probs) == pytest.approx(1.0)

    def test_penalizes_observer_below_expectation(self):
        state = make_state(alpha=1.0, update_rule="cross_entropy")
        scores = np.array([1.0, -1.0] + [0.0] * 8)
        probs = np.array([1.0] + [0.0] * 9)
        assert state.update_cross_entropy("a", scores, 1, probs) == pytest.approx(-2.0)


class TestConcurrency:
    def test_no_lost_updates(self):
        state = make_state(alpha=1.0)
        ids = ["obs0", "obs1", "obs2"]

        def worker():
            for _ in range(500):
                for node_id in ids:
                    state.update(node_id, 1.0)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert state.total_updates == 8 * 500 * 3
        for node_id in ids:
            assert state.theta(node_id) == pytest.approx(4000.0)

    def test_reset_clears_everything(self):
        state = make_state()
        state.update("a", 1.0)
        state.reset()
        assert state.snapshot() == {}
        assert state.total_updates == 0
        assert state.theta("a") == 0.0

    def test_snapshot_matches_counter_under_load(self):
        state = make_state(alpha=1.0)
        stop = threading.Event()

        def worker():
            while not stop.is_set():
                state.update("obs", 1.0)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        try:
            for _ in range(50):
                thetas, count = state.snapshot_with_count()
                # one observer, alpha 1, positive margin: theta counts the updates
                assert thetas.get("obs", 0.0) == pytest.approx(float(count))
        finally:
            stop.set()
            for t in threads:
                t.join()

    def test_snapshot_is_a_copy(self):
        state = make_state()
        state.update("a", 1.0)
        snap = state.snapshot()
        snap["a"] = 99.0
        assert state.theta("a") != 99.0


class TestLogging:
    def test_summary_logs_weights(self, caplog):
        state = make_state()
        state.update("a", 1.0)
        with caplog.at_level("INFO", logger="digitnet.pipelines.learning"):
            state.log_summary("Test", full_details=True)
        assert "Count=1" in caplog.text
        assert "Test Weights" in caplog.text

    def test_summary_when_empty(self, caplog):
        with caplog.at_level("INFO", logger="digitnet.pipelines.learning"):
            make_state().log_summary("Test")
        assert "No params learned yet" in caplog.text
