"""
Gradient-Boosted Tree Classifier

Additive logistic boosting over shallow regression trees, built from
scratch on numpy:
- Each round fits a tree to the pseudo-residuals ``y - sigmoid(score)``
  on a random row subsample (without replacement)
- Every training row's score is then advanced by ``learning_rate * tree(x)``
- Splits are found by an exhaustive scan of every feature's sorted values
  maximizing ``n_l * mean_l^2 + n_r * mean_r^2``

Normalization stats from the training split are frozen into the trained
model and reused verbatim for test evaluation and inference.
"""

import time
import uuid
import logging
from datetime import datetime, timezone
from typing import Annotated, Dict, List, Literal, Optional, Sequence, Tuple, Union

import numpy as np
from pydantic import BaseModel, ConfigDict, Field

from .agent_config import GBModelConfig
from .config import settings
from .features import (
    FeatureVector,
    NormalizationStats,
    apply_normalization,
    normalize_features,
    split_train_test,
)

logger = logging.getLogger(__name__)


class InsufficientDataError(ValueError):
    """Raised when there are too few samples to train a model"""


class LeafNode(BaseModel):
    kind: Literal["leaf"] = "leaf"
    prediction: float

    model_config = ConfigDict(frozen=True)


class SplitNode(BaseModel):
    kind: Literal["split"] = "split"
    feature_index: int
    threshold: float
    left: "TreeNode"
    right: "TreeNode"

    model_config = ConfigDict(frozen=True)


TreeNode = Annotated[Union[LeafNode, SplitNode], Field(discriminator="kind")]
SplitNode.model_rebuild()


class ModelMetrics(BaseModel):
    """Binary classification metrics"""
    accuracy: float = 0.0
    precision: float = 0.0
    recall: float = 0.0
    f1_score: float = 0.0
    auc: float = 0.5
    log_loss: float = 0.0


class FeatureImportance(BaseModel):
    feature: str
    importance: float


class PredictionResult(BaseModel):
    probability: float
    prediction: int
    confidence: float


class TrainedModel(BaseModel):
    """Immutable boosted ensemble with its frozen preprocessing"""
    id: str
    symbol: str
    created_at: datetime
    config: GBModelConfig
    trees: List[TreeNode]
    feature_names: List[str]
    norm_stats: Dict[str, NormalizationStats]
    train_metrics: ModelMetrics
    test_metrics: ModelMetrics

    model_config = ConfigDict(frozen=True)


def sigmoid(x):
    """Logistic function saturated outside [-20, 20]"""
    x = np.asarray(x, dtype=float)
    return np.where(
        x > 20, 1.0,
        np.where(x < -20, 0.0, 1.0 / (1.0 + np.exp(-np.clip(x, -20, 20))))
    )


def predict_tree(node: TreeNode, X: np.ndarray) -> np.ndarray:
    """Leaf values of one tree for every row of X"""
    out = np.zeros(len(X))
    stack = [(node, np.arange(len(X)))]
    while stack:
        current, rows = stack.pop()
        if len(rows) == 0:
            continue
        if isinstance(current, LeafNode):
            out[rows] = current.prediction
            continue
        goes_left = X[rows, current.feature_index] <= current.threshold
        stack.append((current.left, rows[goes_left]))
        stack.append((current.right, rows[~goes_left]))
    return out


def ensemble_scores(trees: Sequence[TreeNode], X: np.ndarray, learning_rate: float) -> np.ndarray:
    scores = np.zeros(len(X))
    for tree in trees:
        scores += learning_rate * predict_tree(tree, X)
    return scores


def compute_metrics(y: np.ndarray, probs: np.ndarray) -> ModelMetrics:
    """Accuracy, precision, recall, F1, log-loss and rank-based AUC"""
    if len(y) == 0:
        return ModelMetrics()

    y = np.asarray(y, dtype=float)
    preds = (probs > 0.5).astype(float)

    tp = float(np.sum((y == 1) & (preds == 1)))
    fp = float(np.sum((y == 0) & (preds == 1)))
    tn = float(np.sum((y == 0) & (preds == 0)))
    fn = float(np.sum((y == 1) & (preds == 0)))

    accuracy = (tp + tn) / len(y)
    precision = tp / (tp + fp) if tp + fp > 0 else 0.0
    recall = tp / (tp + fn) if tp + fn > 0 else 0.0
    f1 = 2 * precision * recall / (precision + recall) if precision + recall > 0 else 0.0

    p = np.clip(probs, 1e-15, 1 - 1e-15)
    log_loss = float(-np.mean(y * np.log(p) + (1 - y) * np.log(1 - p)))

    # Each negative scores the number of positives ranked above it
    order = np.argsort(-probs, kind="stable")
    y_sorted = y[order]
    positives_seen = np.cumsum(y_sorted)
    total_pos = y.sum()
    total_neg = len(y) - total_pos
    if total_pos * total_neg > 0:
        auc = float(positives_seen[y_sorted == 0].sum() / (total_pos * total_neg))
    else:
        auc = 0.5

    return ModelMetrics(
        accuracy=accuracy,
        precision=precision,
        recall=recall,
        f1_score=f1,
        auc=auc,
        log_loss=log_loss,
    )


class GradientBoostingClassifier:
    """
    Binary direction classifier.

    Usage:
        clf = GradientBoostingClassifier(GBModelConfig(num_trees=50))
        model = clf.train(vectors)
        clf.predict(model, {"rsi": 0.61, ...})
    """

    def __init__(self, config: Optional[GBModelConfig] = None):
        self.config = config or GBModelConfig()
        self._rng = np.random.default_rng(self.config.seed)

    def train(self, vectors: Sequence[FeatureVector], symbol: Optional[str] = None) -> TrainedModel:
        """
        Train on labeled feature vectors.

        Args:
            vectors: Time-ordered labeled vectors (at least 500)
            symbol: Symbol to record on the model (defaults to the vectors' symbol)

        Returns:
            TrainedModel with train/test metrics

        Raises:
            InsufficientDataError: fewer than the minimum number of vectors
        """
        min_vectors = settings.min_training_vectors
        if len(vectors) < min_vectors:
            raise InsufficientDataError(
                f"Insufficient feature vectors: {len(vectors)}, need at least {min_vectors}"
            )

        cfg = self.config
        logger.info(f"Training gradient boosting on {len(vectors)} samples")

        train, test = split_train_test(vectors, 0.8)
        train_norm, stats = normalize_features(train)
        if not train_norm:
            raise InsufficientDataError("No training data after normalization")

        feature_names = list(train_norm[0].features.keys())
        if not feature_names:
            raise ValueError("Feature vectors carry no features")

        X = np.array([[v.features[f] for f in feature_names] for v in train_norm], dtype=float)
        y = np.array([v.target or 0 for v in train_norm], dtype=float)

        scores = np.zeros(len(X))
        trees: List[TreeNode] = []

        for t in range(cfg.num_trees):
            residuals = y - sigmoid(scores)

            rows = self._subsample(len(X), cfg.subsample_ratio)
            tree = self._build_tree(X[rows], residuals[rows], 0)
            trees.append(tree)

            # Advance every training row, not just the subsample
            scores += cfg.learning_rate * predict_tree(tree, X)

            if (t + 1) % 20 == 0:
                train_acc = float(np.mean((sigmoid(scores) > 0.5) == y))
                logger.info(f"🌲 Tree {t + 1}/{cfg.num_trees}, train_acc={train_acc:.4f}")

        train_metrics = compute_metrics(y, sigmoid(ensemble_scores(trees, X, cfg.learning_rate)))

        if test:
            test_rows = [apply_normalization(v.features, stats, feature_names) for v in test]
            X_test = np.array([[row[f] for f in feature_names] for row in test_rows], dtype=float)
            y_test = np.array([v.target or 0 for v in test], dtype=float)
            test_metrics = compute_metrics(
                y_test, sigmoid(ensemble_scores(trees, X_test, cfg.learning_rate))
            )
        else:
            test_metrics = ModelMetrics()

        logger.info(
            f"✅ Training complete. Train acc={train_metrics.accuracy:.4f}, "
            f"Test acc={test_metrics.accuracy:.4f}"
        )

        return TrainedModel(
            id=f"gb_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}",
            symbol=symbol or (vectors[0].symbol if vectors else "UNKNOWN"),
            created_at=datetime.now(timezone.utc),
            config=cfg,
            trees=trees,
            feature_names=feature_names,
            norm_stats=stats,
            train_metrics=train_metrics,
            test_metrics=test_metrics,
        )

    def predict(self, model: TrainedModel, features: Dict[str, float]) -> PredictionResult:
        """
        Probability that price closes higher `h` bars ahead.

        Missing or non-finite feature values normalize to 0.
        """
        normalized = apply_normalization(features, model.norm_stats, model.feature_names)
        x = np.array([[normalized[name] for name in model.feature_names]], dtype=float)

        score = ensemble_scores(model.trees, x, model.config.learning_rate)[0]
        probability = float(sigmoid(score))
        prediction = 1 if probability > 0.5 else 0
        confidence = abs(probability - 0.5) * 2

        return PredictionResult(probability=probability, prediction=prediction, confidence=confidence)

    def get_feature_importance(self, model: TrainedModel) -> List[FeatureImportance]:
        """Share of split occurrences per feature across all trees"""
        counts: Dict[int, int] = {}
        for tree in model.trees:
            stack = [tree]
            while stack:
                node = stack.pop()
                if isinstance(node, SplitNode):
                    counts[node.feature_index] = counts.get(node.feature_index, 0) + 1
                    stack.extend((node.left, node.right))

        total = sum(counts.values()) or 1
        importance = [
            FeatureImportance(feature=name, importance=counts.get(idx, 0) / total)
            for idx, name in enumerate(model.feature_names)
        ]
        return sorted(importance, key=lambda fi: fi.importance, reverse=True)

    def _build_tree(self, X: np.ndarray, residuals: np.ndarray, depth: int) -> TreeNode:
        cfg = self.config
        if depth >= cfg.max_depth or len(X) < cfg.min_samples_leaf * 2:
            return LeafNode(prediction=self._leaf_value(residuals))

        feature_index, threshold = self._find_best_split(X, residuals)
        if feature_index < 0:
            return LeafNode(prediction=self._leaf_value(residuals))

        goes_left = X[:, feature_index] <= threshold
        n_left = int(goes_left.sum())
        if n_left < cfg.min_samples_leaf or len(X) - n_left < cfg.min_samples_leaf:
            return LeafNode(prediction=self._leaf_value(residuals))

        return SplitNode(
            feature_index=feature_index,
            threshold=threshold,
            left=self._build_tree(X[goes_left], residuals[goes_left], depth + 1),
            right=self._build_tree(X[~goes_left], residuals[~goes_left], depth + 1),
        )

    def _find_best_split(self, X: np.ndarray, residuals: np.ndarray) -> Tuple[int, float]:
        """Best (feature, threshold) by variance reduction; (-1, 0.0) when none is valid"""
        n, n_features = X.shape
        min_leaf = self.config.min_samples_leaf
        total = residuals.sum()

        left_count = np.arange(1, n, dtype=float)
        right_count = n - left_count

        best_gain = -np.inf
        best_feature = -1
        best_threshold = 0.0

        for f in range(n_features):
            order = np.argsort(X[:, f], kind="stable")
            values = X[order, f]
            left_sum = np.cumsum(residuals[order])[:-1]
            right_sum = total - left_sum

            valid = (
                (values[:-1] != values[1:])
                & (left_count >= min_leaf)
                & (right_count >= min_leaf)
            )
            if not valid.any():
                continue

            gain = np.where(
                valid,
                left_sum ** 2 / left_count + right_sum ** 2 / right_count,
                -np.inf,
            )
            pos = int(np.argmax(gain))
            if gain[pos] > best_gain:
                best_gain = gain[pos]
                best_feature = f
                best_threshold = float((values[pos] + values[pos + 1]) / 2)

        return best_feature, best_threshold

    @staticmethod
    def _leaf_value(residuals: np.ndarray) -> float:
        return float(residuals.mean()) if len(residuals) else 0.0

    def _subsample(self, n: int, ratio: float) -> np.ndarray:
        size = int(np.floor(n * ratio))
        return self._rng.permutation(n)[:size]


def serialize_model(model: TrainedModel) -> str:
    return model.model_dump_json()


def deserialize_model(payload: str) -> TrainedModel:
    return TrainedModel.model_validate_json(payload)
