"""
Model Retraining Scheduler

Decides when a symbol's classifier should be retrained:
- Calendar schedule: every `retraining_interval_days` after the newest model
- Distribution drift between training-time and current feature rows,
  measured per feature with 10-bin PSI and KL divergence
"""

import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, List, Optional, Sequence, Set

import numpy as np
from pydantic import BaseModel, ConfigDict

from .agent_config import RetrainingConfig
from .market_data import Bar
from .training_service import ModelTrainingService

logger = logging.getLogger(__name__)

NUM_BINS = 10
MIN_BIN_SHARE = 0.0001


class DriftSeverity(str, Enum):
    NONE = "NONE"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class DriftMetrics(BaseModel):
    psi: float = 0.0
    kl_divergence: float = 0.0
    feature_drift: Dict[str, float] = {}
    has_drift: bool = False
    severity: DriftSeverity = DriftSeverity.NONE


class RetrainingSchedule(BaseModel):
    symbol: str
    last_trained_at: Optional[datetime] = None
    next_scheduled_at: datetime
    drift_metrics: Optional[DriftMetrics] = None
    requires_retraining: bool
    reason: str


class RetrainingResult(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    retrained: bool
    reason: str
    model_id: Optional[str] = None


def _finite(values: np.ndarray) -> np.ndarray:
    values = np.asarray(values, dtype=float)
    return values[np.isfinite(values)]


def histogram(
    values: np.ndarray,
    lo: Optional[float] = None,
    hi: Optional[float] = None,
    num_bins: int = NUM_BINS,
) -> np.ndarray:
    """
    Share of finite values per equal-width bin over [lo, hi].

    The range defaults to the values' own min/max; values outside it fall
    into the edge bins.
    """
    values = _finite(values)
    if len(values) == 0:
        return np.full(num_bins, 1.0 / num_bins)
    lo = float(values.min()) if lo is None else lo
    hi = float(values.max()) if hi is None else hi
    width = ((hi - lo) or 1.0) / num_bins
    bins = np.clip(np.floor((values - lo) / width), 0, num_bins - 1).astype(int)
    return np.bincount(bins, minlength=num_bins) / len(values)


def _paired_histograms(p: np.ndarray, q: np.ndarray):
    """Histograms of both samples over their joint range, floored away from zero"""
    both = np.concatenate([_finite(p), _finite(q)])
    lo, hi = (float(both.min()), float(both.max())) if len(both) else (None, None)
    return (
        np.maximum(histogram(p, lo, hi), MIN_BIN_SHARE),
        np.maximum(histogram(q, lo, hi), MIN_BIN_SHARE),
    )


def population_stability_index(expected: np.ndarray, actual: np.ndarray) -> float:
    e, a = _paired_histograms(expected, actual)
    return float(abs(np.sum((a - e) * np.log(a / e))))


def kl_divergence(p: np.ndarray, q: np.ndarray) -> float:
    p_hist, q_hist = _paired_histograms(p, q)
    return float(abs(np.sum(p_hist * np.log(p_hist / q_hist))))


class ModelRetrainingScheduler:
    """Schedule- and drift-driven retraining on top of the training service"""

    def __init__(self, service: ModelTrainingService, config: Optional[RetrainingConfig] = None):
        self.service = service
        self.config = config or RetrainingConfig()
        self._in_progress: Set[str] = set()

    async def get_schedule(self, symbol: str) -> RetrainingSchedule:
        models = await self.service.store.list_models(symbol)
        last_trained_at = models[0].created_at if models else None

        now = datetime.now(timezone.utc)
        if last_trained_at is None:
            next_scheduled_at = now
        else:
            next_scheduled_at = last_trained_at + timedelta(days=self.config.retraining_interval_days)

        past_due = next_scheduled_at <= now
        if past_due:
            last = last_trained_at.isoformat() if last_trained_at else "never"
            reason = f"Scheduled retraining overdue (last: {last})"
        else:
            reason = f"Next retraining scheduled for {next_scheduled_at.isoformat()}"

        return RetrainingSchedule(
            symbol=symbol,
            last_trained_at=last_trained_at,
            next_scheduled_at=next_scheduled_at,
            requires_retraining=past_due,
            reason=reason,
        )

    def calculate_drift(
        self,
        training_rows: Sequence[Sequence[float]],
        current_rows: Sequence[Sequence[float]],
        feature_names: Optional[Sequence[str]] = None,
    ) -> DriftMetrics:
        """
        Average per-feature PSI and KL divergence between two row sets.

        Only the leading columns present in both sets are compared.
        """
        if len(training_rows) == 0 or len(current_rows) == 0:
            return DriftMetrics()

        train = np.asarray(training_rows, dtype=float)
        current = np.asarray(current_rows, dtype=float)
        num_features = min(train.shape[1], current.shape[1])
        if num_features == 0:
            return DriftMetrics()

        feature_drift: Dict[str, float] = {}
        total_psi = total_kl = 0.0
        for f in range(num_features):
            psi = population_stability_index(train[:, f], current[:, f])
            total_psi += psi
            total_kl += kl_divergence(train[:, f], current[:, f])
            name = feature_names[f] if feature_names and f < len(feature_names) else f"feature_{f}"
            feature_drift[name] = psi

        avg_psi = total_psi / num_features
        avg_kl = total_kl / num_features
        threshold = self.config.psi_threshold

        if avg_psi >= threshold * 2:
            severity = DriftSeverity.HIGH
        elif avg_psi >= threshold:
            severity = DriftSeverity.MEDIUM
        elif avg_psi >= threshold * 0.5:
            severity = DriftSeverity.LOW
        else:
            severity = DriftSeverity.NONE

        return DriftMetrics(
            psi=avg_psi,
            kl_divergence=avg_kl,
            feature_drift=feature_drift,
            has_drift=avg_psi >= threshold or avg_kl >= self.config.kl_divergence_threshold,
            severity=severity,
        )

    async def check_and_retrain(
        self,
        symbol: str,
        bars: Sequence[Bar],
        force: bool = False,
    ) -> RetrainingResult:
        """Retrain when forced or overdue; never runs two retrains of one symbol at once"""
        if symbol in self._in_progress:
            return RetrainingResult(retrained=False, reason="Retraining already in progress")

        min_bars = self.config.min_bars_for_retraining
        if len(bars) < min_bars:
            return RetrainingResult(
                retrained=False, reason=f"Insufficient bars: {len(bars)}/{min_bars}"
            )

        schedule = await self.get_schedule(symbol)
        if not force and not schedule.requires_retraining:
            return RetrainingResult(retrained=False, reason=schedule.reason)

        self._in_progress.add(symbol)
        try:
            logger.info(f"Starting retraining for {symbol}")
            model = await self.service.train_model(symbol, bars)
            logger.info(
                f"✅ Retraining completed for {symbol}: model={model.id} "
                f"accuracy={model.test_metrics.accuracy:.4f}"
            )
            return RetrainingResult(
                retrained=True,
                reason="Retraining completed successfully",
                model_id=model.id,
            )
        except Exception as e:
            logger.error(f"❌ Retraining failed for {symbol}: {e}")
            return RetrainingResult(retrained=False, reason=f"Retraining failed: {e}")
        finally:
            self._in_progress.discard(symbol)

    async def get_all_schedules(self) -> List[RetrainingSchedule]:
        """Schedules for every symbol that has at least one stored model"""
        symbols = list(dict.fromkeys(m.symbol for m in await self.service.store.list_models()))
        return [await self.get_schedule(symbol) for symbol in symbols]
