"""
Trainable Feed-Forward Networks

Small dense networks on numpy shared by the DQN and PPO agents:
- He-scaled uniform initialization
- Forward pass (single state or batch)
- Analytic delta-rule backpropagation (used by DQN)
- Central finite-difference gradients (used by PPO)
- Global-norm clipped gradient application
- Deep copies and JSON-safe (de)serialization

Hidden layers use the configured activation; the output layer is linear.
"""

from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Any

import numpy as np

# Maps a batch of network outputs (N, out_dim) to N scalar losses
BatchLossFn = Callable[[np.ndarray], np.ndarray]


def relu(x: np.ndarray) -> np.ndarray:
    return np.maximum(x, 0.0)


def softplus(x: np.ndarray) -> np.ndarray:
    return np.log1p(np.exp(np.minimum(x, 20.0)))


@dataclass
class Gradients:
    """Per-layer weight and bias gradients"""
    weights: List[np.ndarray]
    biases: List[np.ndarray]

    @classmethod
    def zeros_like(cls, network: "FeedForwardNetwork") -> "Gradients":
        return cls(
            weights=[np.zeros_like(w) for w in network.weights],
            biases=[np.zeros_like(b) for b in network.biases],
        )

    def accumulate(self, other: "Gradients") -> None:
        for i in range(len(self.weights)):
            self.weights[i] += other.weights[i]
            self.biases[i] += other.biases[i]

    def scaled(self, factor: float) -> "Gradients":
        return Gradients(
            weights=[w * factor for w in self.weights],
            biases=[b * factor for b in self.biases],
        )

    def global_norm(self) -> float:
        total = sum(float(np.sum(w ** 2)) for w in self.weights)
        total += sum(float(np.sum(b ** 2)) for b in self.biases)
        return float(np.sqrt(total))


class FeedForwardNetwork:
    """
    Dense network with weights shaped (out, in) per layer.

    Each instance exclusively owns its parameter arrays; `copy()` returns a
    fully independent deep copy.
    """

    def __init__(
        self,
        layer_sizes: Sequence[int],
        hidden_activation: str = "relu",
        rng: Optional[np.random.Generator] = None,
    ):
        if len(layer_sizes) < 2:
            raise ValueError(f"Network needs at least input and output sizes, got {list(layer_sizes)}")
        if hidden_activation not in ("relu", "tanh"):
            raise ValueError(f"Unsupported activation: {hidden_activation}")

        self.layer_sizes = [int(s) for s in layer_sizes]
        self.hidden_activation = hidden_activation
        rng = rng if rng is not None else np.random.default_rng()

        self.weights: List[np.ndarray] = []
        self.biases: List[np.ndarray] = []
        for fan_in, fan_out in zip(self.layer_sizes[:-1], self.layer_sizes[1:]):
            scale = np.sqrt(2.0 / fan_in)
            self.weights.append(rng.uniform(-1.0, 1.0, size=(fan_out, fan_in)) * scale)
            self.biases.append(np.zeros(fan_out))

    @property
    def num_layers(self) -> int:
        return len(self.weights)

    @property
    def num_parameters(self) -> int:
        return sum(w.size + b.size for w, b in zip(self.weights, self.biases))

    def _activate(self, z: np.ndarray) -> np.ndarray:
        return relu(z) if self.hidden_activation == "relu" else np.tanh(z)

    def _activation_derivative(self, activated: np.ndarray) -> np.ndarray:
        if self.hidden_activation == "relu":
            return (activated > 0).astype(float)
        return 1.0 - activated ** 2

    def forward(self, x: np.ndarray) -> np.ndarray:
        """Network output for one state (in,) or a batch (N, in)"""
        a = np.asarray(x, dtype=float)
        last = self.num_layers - 1
        for i, (w, b) in enumerate(zip(self.weights, self.biases)):
            z = a @ w.T + b
            a = self._activate(z) if i < last else z
        return a

    def forward_with_activations(self, x: np.ndarray) -> List[np.ndarray]:
        """Input followed by every layer's (post-activation) output"""
        activations = [np.asarray(x, dtype=float)]
        last = self.num_layers - 1
        for i, (w, b) in enumerate(zip(self.weights, self.biases)):
            z = w @ activations[-1] + b
            activations.append(self._activate(z) if i < last else z)
        return activations

    def _forward_from(self, layer: int, z: np.ndarray) -> np.ndarray:
        """Continue a batch of pre-activations of `layer` to the output"""
        last = self.num_layers - 1
        a = self._activate(z) if layer < last else z
        for i in range(layer + 1, self.num_layers):
            z = a @ self.weights[i].T + self.biases[i]
            a = self._activate(z) if i < last else z
        return a

    # ------------------------------------------------------------------
    # Gradients
    # ------------------------------------------------------------------

    def backprop_gradients(self, x: np.ndarray, output_error: np.ndarray) -> Gradients:
        """
        Analytic gradient of ``0.5 * ||error||^2`` with ``error = target - output``.

        The error is propagated layer by layer through the transposed
        (pre-update) weights and masked by the activation derivative.
        """
        activations = self.forward_with_activations(x)
        error = np.asarray(output_error, dtype=float)
        grad_w: List[np.ndarray] = [None] * self.num_layers
        grad_b: List[np.ndarray] = [None] * self.num_layers

        for layer in range(self.num_layers - 1, -1, -1):
            grad_w[layer] = -np.outer(error, activations[layer])
            grad_b[layer] = -error
            if layer > 0:
                error = (self.weights[layer].T @ error) * self._activation_derivative(activations[layer])

        return Gradients(weights=grad_w, biases=grad_b)

    def delta_rule_update(self, x: np.ndarray, target: np.ndarray, learning_rate: float) -> np.ndarray:
        """
        Move the output for `x` toward `target` with one delta-rule step.

        Returns:
            The pre-update error vector ``target - output``
        """
        error = np.asarray(target, dtype=float) - self.forward(x)
        self.apply_gradients(self.backprop_gradients(x, error), learning_rate)
        return error

    def finite_difference_gradients(
        self,
        x: np.ndarray,
        loss_fn: BatchLossFn,
        eps: float = 1e-5,
    ) -> Gradients:
        """
        Central finite-difference gradient of ``loss_fn(forward(x))``.

        Every weight and bias is perturbed by +/-eps and the loss
        re-evaluated. A perturbation of a layer-`l` parameter only shifts
        that layer's pre-activation, so all perturbed passes of a layer are
        evaluated together as one batch through the layers above it.
        """
        activations = self.forward_with_activations(x)
        grad_w: List[np.ndarray] = []
        grad_b: List[np.ndarray] = []

        for layer, (w, b) in enumerate(zip(self.weights, self.biases)):
            layer_input = activations[layer]
            z = w @ layer_input + b
            n_out, n_in = w.shape

            # Weight (i, j) shifts unit i's pre-activation by eps * input[j]
            rows = np.arange(n_out * n_in)
            units = np.repeat(np.arange(n_out), n_in)
            shift = eps * np.tile(layer_input, n_out)
            z_batch = np.tile(z, (n_out * n_in, 1))
            z_plus = z_batch.copy()
            z_plus[rows, units] += shift
            z_minus = z_batch
            z_minus[rows, units] -= shift
            loss_plus = loss_fn(self._forward_from(layer, z_plus))
            loss_minus = loss_fn(self._forward_from(layer, z_minus))
            grad_w.append(((loss_plus - loss_minus) / (2 * eps)).reshape(n_out, n_in))

            # Bias i shifts unit i's pre-activation by eps
            diag = np.arange(n_out)
            zb_plus = np.tile(z, (n_out, 1))
            zb_plus[diag, diag] += eps
            zb_minus = np.tile(z, (n_out, 1))
            zb_minus[diag, diag] -= eps
            loss_plus = loss_fn(self._forward_from(layer, zb_plus))
            loss_minus = loss_fn(self._forward_from(layer, zb_minus))
            grad_b.append((loss_plus - loss_minus) / (2 * eps))

        return Gradients(weights=grad_w, biases=grad_b)

    def apply_gradients(
        self,
        gradients: Gradients,
        learning_rate: float,
        max_grad_norm: Optional[float] = None,
    ) -> float:
        """
        Gradient descent step, optionally clipped to a global norm.

        Returns:
            The gradient norm before clipping
        """
        norm = gradients.global_norm()
        if not np.isfinite(norm):
            # Skip the step rather than poison the parameters
            return norm
        scale = 1.0
        if max_grad_norm is not None and norm > max_grad_norm:
            scale = max_grad_norm / norm

        for i in range(self.num_layers):
            self.weights[i] -= learning_rate * scale * gradients.weights[i]
            self.biases[i] -= learning_rate * scale * gradients.biases[i]
        return norm

    # ------------------------------------------------------------------
    # Copies & persistence
    # ------------------------------------------------------------------

    def copy(self) -> "FeedForwardNetwork":
        clone = FeedForwardNetwork.__new__(FeedForwardNetwork)
        clone.layer_sizes = list(self.layer_sizes)
        clone.hidden_activation = self.hidden_activation
        clone.weights = [w.copy() for w in self.weights]
        clone.biases = [b.copy() for b in self.biases]
        return clone

    def copy_from(self, other: "FeedForwardNetwork") -> None:
        """Overwrite parameters with a deep copy of another network's"""
        self.layer_sizes = list(other.layer_sizes)
        self.hidden_activation = other.hidden_activation
        self.weights = [w.copy() for w in other.weights]
        self.biases = [b.copy() for b in other.biases]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "layer_sizes": self.layer_sizes,
            "hidden_activation": self.hidden_activation,
            "weights": [w.tolist() for w in self.weights],
            "biases": [b.tolist() for b in self.biases],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FeedForwardNetwork":
        network = cls.__new__(cls)
        network.layer_sizes = [int(s) for s in data["layer_sizes"]]
        network.hidden_activation = data.get("hidden_activation", "relu")
        network.weights = [np.array(w, dtype=float) for w in data["weights"]]
        network.biases = [np.array(b, dtype=float) for b in data["biases"]]
        return network
