"""
Model Training Service

End-to-end orchestration of gradient boosting runs per symbol:
- Feature extraction and boosting run in worker threads
- Each successful run is stored as the next version of the symbol and
  becomes its only active model
- Active models are cached in memory by symbol
- Every run is recorded as a training job, including failures
"""

import asyncio
import time
import uuid
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict

from .agent_config import FeatureConfig, GBModelConfig
from .config import settings
from .features import FeatureEngineer
from .gradient_boosting import (
    GradientBoostingClassifier,
    InsufficientDataError,
    PredictionResult,
    TrainedModel,
    deserialize_model,
    serialize_model,
)
from .market_data import Bar
from .model_store import InMemoryModelStore, ModelNotFoundError, ModelStore, StoredModel

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    PENDING = "PENDING"
    TRAINING = "TRAINING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class ModelTrainingJob(BaseModel):
    """Bookkeeping record of one training run"""
    model_config = ConfigDict(protected_namespaces=())

    id: str
    symbol: str
    status: JobStatus = JobStatus.PENDING
    created_at: datetime
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    model_id: Optional[str] = None


# Production boosting parameters
SERVICE_GB_CONFIG = GBModelConfig(
    num_trees=100,
    max_depth=5,
    learning_rate=0.1,
    min_samples_leaf=10,
    subsample_ratio=0.8,
)


class ModelTrainingService:
    """
    Trains, versions and serves classifier models.

    Usage:
        service = ModelTrainingService(FileModelStore(settings.model_dir))
        model = await service.train_model("AAPL", bars)
        await service.predict("AAPL", features)
    """

    def __init__(
        self,
        store: Optional[ModelStore] = None,
        classifier_config: Optional[GBModelConfig] = None,
        feature_config: Optional[FeatureConfig] = None,
    ):
        self.store = store or InMemoryModelStore()
        self.classifier_config = classifier_config or SERVICE_GB_CONFIG
        self.feature_engineer = FeatureEngineer(feature_config)
        self.classifier = GradientBoostingClassifier(self.classifier_config)

        self._jobs: Dict[str, ModelTrainingJob] = {}
        self._cache: Dict[str, TrainedModel] = {}
        self._symbol_locks: Dict[str, asyncio.Lock] = {}

    def _symbol_lock(self, symbol: str) -> asyncio.Lock:
        if symbol not in self._symbol_locks:
            self._symbol_locks[symbol] = asyncio.Lock()
        return self._symbol_locks[symbol]

    def _extract_and_train(self, symbol: str, bars: Sequence[Bar]) -> TrainedModel:
        vectors = self.feature_engineer.extract_features(bars, settings.target_lookforward)
        min_vectors = settings.min_training_vectors
        if len(vectors) < min_vectors:
            raise InsufficientDataError(
                f"Insufficient feature vectors: {len(vectors)}, need at least {min_vectors}"
            )
        # Fresh classifier per run so concurrent runs never share an RNG
        classifier = GradientBoostingClassifier(self.classifier_config)
        return classifier.train(vectors, symbol=symbol)

    async def train_model(self, symbol: str, bars: Sequence[Bar]) -> TrainedModel:
        """
        Train and activate a new model version for a symbol.

        Raises:
            InsufficientDataError: fewer than the minimum usable feature vectors
        """
        job_id = f"ml_train_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}"
        logger.info(f"🚀 trace_id={job_id} Starting training for {symbol} with {len(bars)} bars")

        job = ModelTrainingJob(
            id=job_id,
            symbol=symbol,
            status=JobStatus.TRAINING,
            created_at=datetime.now(timezone.utc),
        )
        self._jobs[job_id] = job

        try:
            model = await asyncio.to_thread(self._extract_and_train, symbol, bars)
            importance = self.classifier.get_feature_importance(model)

            async with self._symbol_lock(symbol):
                version = await self.store.latest_version(symbol) + 1
                await self.store.save(StoredModel(
                    id=model.id,
                    symbol=symbol,
                    version=version,
                    created_at=model.created_at,
                    train_metrics=model.train_metrics,
                    test_metrics=model.test_metrics,
                    feature_importance=importance,
                    is_active=False,
                    model_data=serialize_model(model),
                ))
                await self.store.set_active(symbol, model.id)

            self._cache[symbol] = model

            job.status = JobStatus.COMPLETED
            job.completed_at = datetime.now(timezone.utc)
            job.model_id = model.id

            logger.info(
                f"✅ trace_id={job_id} Completed. Model {model.id} v{version}, "
                f"test_acc={model.test_metrics.accuracy:.4f}"
            )
            return model

        except Exception as e:
            job.status = JobStatus.FAILED
            job.completed_at = datetime.now(timezone.utc)
            job.error = str(e)
            logger.error(f"❌ trace_id={job_id} Training failed for {symbol}: {e}")
            raise

    async def get_active_model(self, symbol: str) -> Optional[TrainedModel]:
        cached = self._cache.get(symbol)
        if cached is not None:
            return cached

        record = await self.store.get_active(symbol)
        if record is None:
            return None

        model = deserialize_model(record.model_data)
        self._cache[symbol] = model
        return model

    async def predict(self, symbol: str, features: Dict[str, float]) -> Optional[PredictionResult]:
        """Prediction from the symbol's active model, or None when there is none"""
        model = await self.get_active_model(symbol)
        if model is None:
            return None
        return self.classifier.predict(model, features)

    async def get_all_models(self) -> List[StoredModel]:
        return await self.store.list_models()

    async def get_model_by_id(self, model_id: str) -> Optional[TrainedModel]:
        record = await self.store.get(model_id)
        if record is None:
            return None
        return deserialize_model(record.model_data)

    async def activate_model(self, model_id: str) -> None:
        """
        Make a stored version the active model of its symbol.

        Raises:
            ModelNotFoundError: unknown model id
        """
        record = await self.store.get(model_id)
        if record is None:
            raise ModelNotFoundError(f"Model {model_id} not found")

        async with self._symbol_lock(record.symbol):
            await self.store.set_active(record.symbol, model_id)
        self._cache.pop(record.symbol, None)
        logger.info(f"Activated model {model_id} (v{record.version}) for {record.symbol}")

    def get_training_jobs(self) -> List[ModelTrainingJob]:
        return list(self._jobs.values())

    def clear_cache(self) -> None:
        self._cache.clear()
