"""
Model Store

Versioned persistence for trained classifier models. Records are keyed
by model id and grouped by symbol; at most one record per symbol is
active at a time.

Two implementations share the async `ModelStore` interface:
- InMemoryModelStore: dict-backed, for tests and ephemeral services
- FileModelStore: one JSON document per model under a directory, with
  blocking file I/O pushed to worker threads
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .gradient_boosting import FeatureImportance, ModelMetrics

logger = logging.getLogger(__name__)


class ModelNotFoundError(LookupError):
    """Raised when a model id is not present in the store"""


class ModelStoreError(RuntimeError):
    """Raised when the backing storage cannot be read or written"""


class StoredModel(BaseModel):
    """One persisted model version"""
    model_config = ConfigDict(protected_namespaces=())

    id: str
    symbol: str
    model_type: str = "GRADIENT_BOOSTING"
    version: int = Field(ge=1)
    created_at: datetime
    train_metrics: ModelMetrics
    test_metrics: ModelMetrics
    feature_importance: List[FeatureImportance] = []
    is_active: bool = False
    model_data: str

    @property
    def train_accuracy(self) -> float:
        return self.train_metrics.accuracy

    @property
    def test_accuracy(self) -> float:
        return self.test_metrics.accuracy


class ModelStore(ABC):
    """Async key-value persistence for model versions"""

    @abstractmethod
    async def save(self, record: StoredModel) -> None:
        """Insert or replace a record"""

    @abstractmethod
    async def get(self, model_id: str) -> Optional[StoredModel]:
        ...

    @abstractmethod
    async def list_models(self, symbol: Optional[str] = None) -> List[StoredModel]:
        """Records, newest first"""

    @abstractmethod
    async def set_active(self, symbol: str, model_id: Optional[str]) -> None:
        """Make `model_id` the only active record of `symbol` (None deactivates all)"""

    async def get_active(self, symbol: str) -> Optional[StoredModel]:
        for record in await self.list_models(symbol):
            if record.is_active:
                return record
        return None

    async def latest_version(self, symbol: str) -> int:
        """Highest stored version for the symbol, 0 when none"""
        return max((r.version for r in await self.list_models(symbol)), default=0)


def _newest_first(records) -> List[StoredModel]:
    return sorted(records, key=lambda r: (r.created_at, r.version), reverse=True)


class InMemoryModelStore(ModelStore):

    def __init__(self):
        self._records: Dict[str, StoredModel] = {}

    async def save(self, record: StoredModel) -> None:
        self._records[record.id] = record.model_copy()

    async def get(self, model_id: str) -> Optional[StoredModel]:
        record = self._records.get(model_id)
        return record.model_copy() if record else None

    async def list_models(self, symbol: Optional[str] = None) -> List[StoredModel]:
        records = [
            r.model_copy() for r in self._records.values()
            if symbol is None or r.symbol == symbol
        ]
        return _newest_first(records)

    async def set_active(self, symbol: str, model_id: Optional[str]) -> None:
        if model_id is not None:
            target = self._records.get(model_id)
            if target is None or target.symbol != symbol:
                raise ModelNotFoundError(f"Model {model_id} not found for {symbol}")
        for key, record in self._records.items():
            if record.symbol == symbol:
                self._records[key] = record.model_copy(update={"is_active": record.id == model_id})


class FileModelStore(ModelStore):
    """
    Directory of ``<model_id>.json`` documents.

    Reads and writes run in worker threads; writers are serialized by an
    asyncio lock so activation flips are never interleaved.
    """

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)
        self._write_lock = asyncio.Lock()

    def _path(self, model_id: str) -> Path:
        return self.directory / f"{model_id}.json"

    def _write(self, record: StoredModel) -> None:
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            tmp = self._path(record.id).with_suffix(".json.tmp")
            tmp.write_text(record.model_dump_json(), encoding="utf-8")
            tmp.replace(self._path(record.id))
        except OSError as e:
            raise ModelStoreError(f"Failed to write model {record.id}: {e}") from e

    def _read(self, path: Path) -> StoredModel:
        try:
            return StoredModel.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as e:
            raise ModelStoreError(f"Failed to read {path.name}: {e}") from e

    def _read_all(self) -> List[StoredModel]:
        if not self.directory.exists():
            return []
        return [self._read(path) for path in sorted(self.directory.glob("*.json"))]

    def _get_sync(self, model_id: str) -> Optional[StoredModel]:
        path = self._path(model_id)
        if not path.exists():
            return None
        return self._read(path)

    def _set_active_sync(self, symbol: str, model_id: Optional[str]) -> None:
        records = [r for r in self._read_all() if r.symbol == symbol]
        if model_id is not None and not any(r.id == model_id for r in records):
            raise ModelNotFoundError(f"Model {model_id} not found for {symbol}")
        target = next((r for r in records if r.id == model_id), None)
        if target is not None and not target.is_active:
            # The new record goes active before anything is deactivated
            self._write(target.model_copy(update={"is_active": True}))

        try:
            for record in records:
                if record.is_active and record.id != model_id:
                    self._write(record.model_copy(update={"is_active": False}))
        except ModelStoreError:
            if target is not None and not target.is_active:
                logger.error(f"Activation of {model_id} for {symbol} failed, restoring previous state")
                self._write(target)
            raise

    async def save(self, record: StoredModel) -> None:
        async with self._write_lock:
            await asyncio.to_thread(self._write, record)
        logger.debug(f"Saved model {record.id} to {self.directory}")

    async def get(self, model_id: str) -> Optional[StoredModel]:
        return await asyncio.to_thread(self._get_sync, model_id)

    async def list_models(self, symbol: Optional[str] = None) -> List[StoredModel]:
        records = await asyncio.to_thread(self._read_all)
        return _newest_first(r for r in records if symbol is None or r.symbol == symbol)

    async def set_active(self, symbol: str, model_id: Optional[str]) -> None:
        async with self._write_lock:
            await asyncio.to_thread(self._set_active_sync, symbol, model_id)
