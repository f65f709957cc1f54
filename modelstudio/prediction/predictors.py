"""
Predictor backends: score rows against a stored model.

Every backend returns exactly one prediction per input row, in input order,
plus optional per-row class probabilities and a model-level explanation.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from modelstudio.artifacts.local_store import BundleCache
from modelstudio.common.exceptions import BackendError, ParseError
from modelstudio.common.remote import RemoteClient
from modelstudio.config import settings
from modelstudio.training.core import Row, predict_bundle
from modelstudio.training.runner import run_worker

logger = logging.getLogger(__name__)

REMOTE_PREFIX = "remote:"


@dataclass
class PredictionTarget:
    """Where a model version's fitted state lives."""
    model_id: str
    artifact_path: Optional[str]

    @property
    def remote_id(self) -> Optional[str]:
        if self.artifact_path and self.artifact_path.startswith(REMOTE_PREFIX):
            return self.artifact_path[len(REMOTE_PREFIX):]
        return None


@runtime_checkable
class Predictor(Protocol):
    name: str

    async def predict(self, target: PredictionTarget, rows: List[Row]) -> Dict[str, Any]:
        ...


def _require_artifact(target: PredictionTarget) -> str:
    if not target.artifact_path:
        raise BackendError(f"Model {target.model_id} has no stored artifact")
    return target.artifact_path


def check_prediction_count(result: Dict[str, Any], rows: List[Row]) -> Dict[str, Any]:
    predictions = result.get("predictions")
    if not isinstance(predictions, list) or len(predictions) != len(rows):
        raise ParseError(
            f"Expected {len(rows)} predictions, got "
            f"{len(predictions) if isinstance(predictions, list) else type(predictions).__name__}",
            raw_output=json.dumps(result, default=str)[:4000],
        )
    return result


class LocalPredictor:
    name = "local"

    def __init__(self, cache: BundleCache):
        self._cache = cache

    async def predict(self, target: PredictionTarget, rows: List[Row]) -> Dict[str, Any]:
        path = _require_artifact(target)
        bundle = await asyncio.to_thread(self._cache.get, path)
        return await asyncio.to_thread(predict_bundle, bundle, rows)


class SubprocessPredictor:
    name = "subprocess"

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout if timeout is not None else settings.SUBPROCESS_TIMEOUT_SEC

    async def predict(self, target: PredictionTarget, rows: List[Row]) -> Dict[str, Any]:
        path = _require_artifact(target)
        result = await run_worker(
            "predict",
            {"artifact_path": path, "rows": rows},
            timeout=self.timeout,
        )
        return check_prediction_count(result, rows)


class RemotePredictor:
    """Forwards to a peer instance's /predict-with-model."""

    name = "remote"

    def __init__(self, client: Optional[RemoteClient] = None):
        self.client = client or RemoteClient()

    async def predict(self, target: PredictionTarget, rows: List[Row]) -> Dict[str, Any]:
        model_id = target.remote_id or target.model_id
        payload = await self.client.post(
            "/predict-with-model", {"modelId": model_id, "inputData": rows}
        )
        result = {
            k: payload[k] for k in ("predictions", "probabilities", "explanation") if k in payload
        }
        return check_prediction_count(result, rows)


def get_predictor(backend: Optional[str], cache: BundleCache) -> Predictor:
    backend = backend or settings.PREDICTOR_BACKEND
    if backend == "local":
        return LocalPredictor(cache)
    if backend == "subprocess":
        return SubprocessPredictor()
    if backend == "remote":
        return RemotePredictor()
    raise ValueError(f"Unknown PREDICTOR_BACKEND '{backend}'. Options: local, subprocess, remote")
