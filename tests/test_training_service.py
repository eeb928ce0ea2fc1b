"""Tests for the model training service."""

import pytest

from trading_ml.agent_config import GBModelConfig
from trading_ml.features import FeatureEngineer
from trading_ml.gradient_boosting import InsufficientDataError
from trading_ml.model_store import FileModelStore, InMemoryModelStore, ModelNotFoundError, ModelStoreError
from trading_ml.training_service import JobStatus, ModelTrainingService

from conftest import make_bars

FAST_CONFIG = GBModelConfig(num_trees=5, max_depth=2, seed=0)


class FailingActivationStore(InMemoryModelStore):
    """In-memory store whose activation can be made to fail"""

    def __init__(self):
        super().__init__()
        self.fail_activation = False

    async def set_active(self, symbol, model_id):
        if self.fail_activation:
            raise ModelStoreError(f"Failed to activate {model_id}")
        await super().set_active(symbol, model_id)


@pytest.fixture
def service():
    return ModelTrainingService(classifier_config=FAST_CONFIG)


class TestTrainModel:
    """Versioning, activation and job bookkeeping."""

    @pytest.mark.asyncio
    async def test_train_activates_first_version(self, service, training_bars):
        model = await service.train_model("AAPL", training_bars)
        assert model.symbol == "AAPL"
        assert len(model.trees) == 5

        records = await service.get_all_models()
        assert len(records) == 1
        assert records[0].version == 1
        assert records[0].is_active
        assert records[0].feature_importance

        jobs = service.get_training_jobs()
        assert jobs[0].status == JobStatus.COMPLETED
        assert jobs[0].model_id == model.id
        assert jobs[0].id.startswith("ml_train_")

    @pytest.mark.asyncio
    async def test_retrain_supersedes_previous(self, service, training_bars):
        first = await service.train_model("AAPL", training_bars)
        second = await service.train_model("AAPL", training_bars)

        records = await service.store.list_models("AAPL")
        assert sorted(r.version for r in records) == [1, 2]
        assert [r.id for r in records if r.is_active] == [second.id]
        assert (await service.get_active_model("AAPL")).id == second.id
        assert first.id != second.id

    @pytest.mark.asyncio
    async def test_insufficient_bars_recorded_as_failed_job(self, service):
        with pytest.raises(InsufficientDataError):
            await service.train_model("AAPL", make_bars(300))
        job = service.get_training_jobs()[0]
        assert job.status == JobStatus.FAILED
        assert "Insufficient feature vectors" in job.error
        assert job.completed_at is not None
        assert await service.get_all_models() == []

    @pytest.mark.asyncio
    async def test_failed_run_keeps_active_model(self, service, training_bars):
        first = await service.train_model("AAPL", training_bars)
        with pytest.raises(InsufficientDataError):
            await service.train_model("AAPL", make_bars(300))

        records = await service.store.list_models("AAPL")
        assert [r.id for r in records] == [first.id]
        assert records[0].is_active
        assert (await service.get_active_model("AAPL")).id == first.id

    @pytest.mark.asyncio
    async def test_failed_activation_keeps_active_model(self, training_bars):
        store = FailingActivationStore()
        service = ModelTrainingService(store, classifier_config=FAST_CONFIG)
        first = await service.train_model("AAPL", training_bars)

        store.fail_activation = True
        with pytest.raises(ModelStoreError):
            await service.train_model("AAPL", training_bars)

        assert [r.id for r in await store.list_models("AAPL") if r.is_active] == [first.id]
        assert (await service.get_active_model("AAPL")).id == first.id
        service.clear_cache()
        assert (await service.get_active_model("AAPL")).id == first.id
        assert service.get_training_jobs()[-1].status == JobStatus.FAILED

    @pytest.mark.asyncio
    async def test_file_backed_service(self, tmp_path, training_bars):
        service = ModelTrainingService(FileModelStore(tmp_path), classifier_config=FAST_CONFIG)
        model = await service.train_model("AAPL", training_bars)

        fresh = ModelTrainingService(FileModelStore(tmp_path), classifier_config=FAST_CONFIG)
        loaded = await fresh.get_active_model("AAPL")
        assert loaded == model


class TestServing:

    @pytest.mark.asyncio
    async def test_predict_without_model(self, service):
        assert await service.predict("AAPL", {"rsi": 0.5}) is None
        assert await service.get_active_model("AAPL") is None

    @pytest.mark.asyncio
    async def test_predict_with_active_model(self, service, training_bars):
        await service.train_model("AAPL", training_bars)
        features = FeatureEngineer().extract_features(training_bars)[-1].features
        result = await service.predict("AAPL", features)
        assert result.prediction in (0, 1)
        assert 0.0 <= result.probability <= 1.0

    @pytest.mark.asyncio
    async def test_activate_older_version(self, service, training_bars):
        first = await service.train_model("AAPL", training_bars)
        await service.train_model("AAPL", training_bars)

        await service.activate_model(first.id)
        assert (await service.get_active_model("AAPL")).id == first.id
        assert (await service.store.get_active("AAPL")).version == 1

    @pytest.mark.asyncio
    async def test_activate_unknown(self, service):
        with pytest.raises(ModelNotFoundError):
            await service.activate_model("gb_missing")

    @pytest.mark.asyncio
    async def test_get_model_by_id(self, service, training_bars):
        model = await service.train_model("AAPL", training_bars)
        assert await service.get_model_by_id(model.id) == model
        assert await service.get_model_by_id("gb_missing") is None

    @pytest.mark.asyncio
    async def test_clear_cache_reloads_from_store(self, service, training_bars):
        model = await service.train_model("AAPL", training_bars)
        service.clear_cache()
        reloaded = await service.get_active_model("AAPL")
        assert reloaded == model
        assert reloaded is not model
