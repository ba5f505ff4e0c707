"""Tests for QNetwork and ValueNetwork."""

import numpy as np
import pytest
import torch

from dqn_service.errors import TrainingDivergenceError
from dqn_service.networks import QNetwork, ValueNetwork


def make_network(seed=0, state_size=52, action_size=7):
    return ValueNetwork(state_size, action_size, learning_rate=0.001, seed=seed)


def make_batch(n=8, state_size=52, seed=0):
    rng = np.random.default_rng(seed)
    return rng.normal(size=(n, state_size)).astype(np.float32)


class TestQNetwork:

    def test_output_shape(self):
        model = QNetwork(52, 7)
        out = model(torch.zeros(4, 52))
        assert out.shape == (4, 7)

    def test_architecture(self):
        model = QNetwork(52, 7)
        linear = [m for m in model.modules() if isinstance(m, torch.nn.Linear)]
        assert [m.out_features for m in linear] == [256, 128, 64, 7]
        assert sum(isinstance(m, torch.nn.Tanh) for m in model.modules()) == 3
        rates = [m.p for m in model.modules() if isinstance(m, torch.nn.Dropout)]
        assert rates == [0.3, 0.2]


class TestPredict:

    def test_single_state(self):
        q = make_network().predict(np.zeros(52, dtype=np.float32))
        assert q.shape == (7,)

    def test_batch(self):
        q = make_network().predict(make_batch(5))
        assert q.shape == (5, 7)

    def test_deterministic_in_inference(self):
        net = make_network()
        state = make_batch(1)[0]
        np.testing.assert_array_equal(net.predict(state), net.predict(state))

    def test_same_seed_same_weights(self):
        state = make_batch(1)[0]
        np.testing.assert_array_equal(make_network(seed=3).predict(state), make_network(seed=3).predict(state))


class TestFit:

    def test_fit_changes_predictions(self):
        net = make_network()
        states = make_batch()
        before = net.predict(states)
        loss = net.fit(states, before + 1.0)
        assert loss > 0
        assert not np.allclose(before, net.predict(states))

    def test_loss_decreases_towards_fixed_target(self):
        net = make_network()
        states = make_batch()
        targets = np.zeros((8, 7), dtype=np.float32)
        targets[:, 2] = 1.0
        first = net.fit(states, targets)
        for _ in range(50):
            last = net.fit(states, targets)
        assert last < first

    def test_non_finite_target_leaves_parameters_unchanged(self):
        net = make_network()
        states = make_batch()
        before = net.get_params()
        targets = np.full((8, 7), np.nan, dtype=np.float32)
        with pytest.raises(TrainingDivergenceError):
            net.fit(states, targets)
        after = net.get_params()
        for key in before:
            assert torch.equal(before[key], after[key])

    def test_returns_to_eval_mode(self):
        net = make_network()
        states = make_batch()
        net.fit(states, net.predict(states))
        assert not net.model.training


class TestSyncAndCopy:

    def test_sync_is_exact_copy(self):
        online = make_network(seed=1)
        target = make_network(seed=2)
        target.sync(online)
        state = make_batch(3)
        np.testing.assert_array_equal(online.predict(state), target.predict(state))

    def test_sync_is_not_shared(self):
        online = make_network(seed=1)
        target = make_network(seed=2)
        target.sync(online)
        states = make_batch()
        online.fit(states, online.predict(states) + 1.0)
        assert not np.allclose(online.predict(states), target.predict(states))

    def test_clone_independent(self):
        net = make_network()
        twin = net.clone()
        states = make_batch()
        np.testing.assert_array_equal(net.predict(states), twin.predict(states))
        twin.fit(states, twin.predict(states) + 1.0)
        assert not np.allclose(net.predict(states), twin.predict(states))

    def test_params_round_trip(self):
        net = make_network(seed=1)
        other = make_network(seed=2)
        other.set_params(net.get_params())
        state = make_batch(2)
        np.testing.assert_array_equal(net.predict(state), other.predict(state))


class TestSensitivity:

    def test_shape_and_finite(self):
        grad = make_network().sensitivity(make_batch(1)[0], 3)
        assert grad.shape == (52,)
        assert np.all(np.isfinite(grad))
