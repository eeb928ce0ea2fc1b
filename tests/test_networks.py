"""Tests for the shared feed-forward network."""

import numpy as np
import pytest

from trading_ml.networks import FeedForwardNetwork, Gradients, softplus


def make_net(sizes=(3, 5, 4, 2), activation="tanh", seed=0):
    return FeedForwardNetwork(list(sizes), hidden_activation=activation, rng=np.random.default_rng(seed))


class TestForward:

    def test_single_and_batch_agree(self):
        net = make_net()
        X = np.random.default_rng(1).normal(size=(4, 3))
        batch = net.forward(X)
        assert batch.shape == (4, 2)
        for row, out in zip(X, batch):
            np.testing.assert_allclose(net.forward(row), out)

    def test_zero_biases_at_init(self):
        net = make_net()
        assert all(np.all(b == 0) for b in net.biases)
        assert net.num_layers == 3
        assert net.num_parameters == 3 * 5 + 5 + 5 * 4 + 4 + 4 * 2 + 2

    def test_rejects_unknown_activation(self):
        with pytest.raises(ValueError):
            FeedForwardNetwork([2, 2], hidden_activation="sigmoid")

    def test_softplus_positive(self):
        values = softplus(np.array([-50.0, 0.0, 50.0]))
        assert np.all(values > 0)
        assert values[1] == pytest.approx(np.log(2))


class TestGradients:
    """Analytic and numerical gradients agree."""

    def test_backprop_matches_finite_differences(self):
        net = make_net()
        x = np.array([0.3, -0.7, 1.1])
        target = np.array([0.5, -0.25])

        analytic = net.backprop_gradients(x, target - net.forward(x))
        numeric = net.finite_difference_gradients(
            x, lambda out: 0.5 * np.sum((target - out) ** 2, axis=1), eps=1e-6
        )
        for a, n in zip(analytic.weights, numeric.weights):
            np.testing.assert_allclose(a, n, atol=1e-6)
        for a, n in zip(analytic.biases, numeric.biases):
            np.testing.assert_allclose(a, n, atol=1e-6)

    def test_finite_differences_leave_weights_untouched(self):
        net = make_net()
        before = [w.copy() for w in net.weights]
        net.finite_difference_gradients(np.ones(3), lambda out: out.sum(axis=1))
        for b, w in zip(before, net.weights):
            np.testing.assert_array_equal(b, w)

    def test_delta_rule_reduces_error(self):
        net = make_net()
        x = np.array([0.2, 0.1, -0.4])
        target = np.array([1.0, -1.0])
        error = net.delta_rule_update(x, target, 0.05)
        after = target - net.forward(x)
        assert np.linalg.norm(after) < np.linalg.norm(error)

    def test_clipping_limits_step(self):
        net = make_net()
        before = [w.copy() for w in net.weights]
        grads = Gradients(
            weights=[np.full_like(w, 10.0) for w in net.weights],
            biases=[np.full_like(b, 10.0) for b in net.biases],
        )
        norm = net.apply_gradients(grads, learning_rate=1.0, max_grad_norm=0.5)
        assert norm == pytest.approx(grads.global_norm())
        step = Gradients(
            weights=[b - w for b, w in zip(before, net.weights)],
            biases=[-b for b in net.biases],
        )
        assert step.global_norm() == pytest.approx(0.5)

    def test_non_finite_gradient_skipped(self):
        net = make_net()
        before = [w.copy() for w in net.weights]
        grads = Gradients.zeros_like(net)
        grads.weights[0][0, 0] = np.nan
        net.apply_gradients(grads, learning_rate=0.1)
        for b, w in zip(before, net.weights):
            np.testing.assert_array_equal(b, w)

    def test_accumulate_and_scale(self):
        net = make_net()
        total = Gradients.zeros_like(net)
        ones = Gradients(
            weights=[np.ones_like(w) for w in net.weights],
            biases=[np.ones_like(b) for b in net.biases],
        )
        total.accumulate(ones)
        total.accumulate(ones)
        half = total.scaled(0.5)
        assert all(np.all(w == 1.0) for w in half.weights)


class TestCopies:

    def test_copy_is_independent(self):
        net = make_net()
        clone = net.copy()
        clone.weights[0][0, 0] += 1.0
        assert net.weights[0][0, 0] != clone.weights[0][0, 0]

    def test_copy_from(self):
        a, b = make_net(seed=1), make_net(seed=2)
        a.copy_from(b)
        x = np.array([1.0, 2.0, 3.0])
        np.testing.assert_allclose(a.forward(x), b.forward(x))
        b.biases[-1] += 1.0
        assert not np.allclose(a.forward(x), b.forward(x))

    def test_dict_round_trip(self):
        net = make_net(activation="relu")
        restored = FeedForwardNetwork.from_dict(net.to_dict())
        x = np.array([0.5, -0.5, 0.25])
        np.testing.assert_allclose(restored.forward(x), net.forward(x))
        assert restored.hidden_activation == "relu"
