"""
Trainer backends. All of them take a dataset plus algorithm settings and
return a TrainingResult; callers never care which one is configured.

- LocalTrainer: fits in-process on a worker thread.
- SubprocessTrainer: fits in a child Python process with a timeout.
- RemoteTrainer: delegates to another Model Studio instance over HTTP.
- SimulatedTrainer: NON-AUTHORITATIVE stand-in for demos. Its accuracy is
  a seeded pseudo-random number, not an evaluation, and the models it
  produces are stored as untrained.
"""

import asyncio
import hashlib
import json
import logging
import os
import random
import tempfile
from typing import Any, Dict, List, Optional, Protocol, Sequence, Union, runtime_checkable

import joblib

from modelstudio.common.exceptions import BackendError, ParseError
from modelstudio.common.remote import RemoteClient
from modelstudio.config import settings
from modelstudio.training.algorithms import get_algorithm, resolve_parameters
from modelstudio.training.core import (
    TrainingResult,
    as_target_list,
    fit_bundle,
    validate_request,
)
from modelstudio.training.runner import run_worker

logger = logging.getLogger(__name__)

Target = Union[str, Sequence[str]]


@runtime_checkable
class Trainer(Protocol):
    name: str

    async def train(
        self,
        data: List[Dict[str, Any]],
        features: List[str],
        target: Target,
        algorithm: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> TrainingResult:
        """Fit a model and report its held-out accuracy."""
        ...


class LocalTrainer:
    name = "local"

    async def train(self, data, features, target, algorithm, params=None) -> TrainingResult:
        return await asyncio.to_thread(fit_bundle, data, features, target, algorithm, params)


class SubprocessTrainer:
    name = "subprocess"

    def __init__(self, timeout: Optional[float] = None):
        self.timeout = timeout if timeout is not None else settings.SUBPROCESS_TIMEOUT_SEC

    async def train(self, data, features, target, algorithm, params=None) -> TrainingResult:
        # Fail fast on bad requests before paying for a process start
        get_algorithm(algorithm)
        resolve_parameters(algorithm, params)
        validate_request(data, list(features), as_target_list(target))

        fd, artifact_path = tempfile.mkstemp(suffix=".joblib", prefix="modelstudio-")
        os.close(fd)
        try:
            summary = await run_worker(
                "train",
                {
                    "data": data,
                    "features": list(features),
                    "target": target,
                    "algorithm": algorithm,
                    "params": params or {},
                    "artifact_path": artifact_path,
                },
                timeout=self.timeout,
            )
            try:
                bundle = await asyncio.to_thread(joblib.load, artifact_path)
            except Exception as e:
                raise BackendError(f"Worker did not produce a readable artifact: {e}") from e
        finally:
            try:
                os.remove(artifact_path)
            except OSError:
                pass

        return _result_from_summary(summary, bundle=bundle)


class RemoteTrainer:
    """Trains on a remote Model Studio instance; the model stays there."""

    name = "remote"

    def __init__(self, client: Optional[RemoteClient] = None):
        self.client = client or RemoteClient()

    async def train(self, data, features, target, algorithm, params=None) -> TrainingResult:
        resolved = resolve_parameters(algorithm, params)
        targets = as_target_list(target)
        validate_request(data, list(features), targets)

        body = {
            "data": data,
            "features": list(features),
            "target": target,
            "algorithm": algorithm,
            "datasetName": "remote-training",
            "hyperparameters": resolved.model_dump(),
        }
        payload = await self.client.post("/train-model", body)
        accuracy = payload.get("accuracy")
        model_id = payload.get("modelId")
        if not isinstance(accuracy, (int, float)) or not 0.0 <= accuracy <= 1.0 or not model_id:
            raise ParseError("Remote trainer response lacks a valid accuracy or modelId",
                             raw_output=json.dumps(payload)[:4000])

        return TrainingResult(
            algorithm=algorithm,
            accuracy=float(accuracy),
            parameters=resolved.model_dump(),
            problem_type=payload.get("problemType"),
            features=list(features),
            targets=targets,
            remote_ref=f"remote:{model_id}",
        )


class SimulatedTrainer:
    """NON-AUTHORITATIVE. Accuracy is a seeded pseudo-random value inside the
    algorithm's band; nothing is fitted and no artifact is produced."""

    name = "simulated"

    async def train(self, data, features, target, algorithm, params=None) -> TrainingResult:
        spec = get_algorithm(algorithm)
        resolved = resolve_parameters(algorithm, params)
        targets = as_target_list(target)
        validate_request(data, list(features), targets)

        seed_src = json.dumps([algorithm, len(data), list(features), targets, resolved.model_dump()])
        seed = int(hashlib.sha256(seed_src.encode()).hexdigest()[:16], 16)
        low, width = spec.simulated_band
        accuracy = round(min(0.99, low + random.Random(seed).random() * width), 4)

        logger.warning(f"Simulated training for {algorithm}: accuracy {accuracy} is not an evaluation")
        return TrainingResult(
            algorithm=algorithm,
            accuracy=accuracy,
            parameters=resolved.model_dump(),
            features=list(features),
            targets=targets,
            simulated=True,
        )


def _result_from_summary(summary: Dict[str, Any], bundle=None) -> TrainingResult:
    try:
        accuracy = float(summary["accuracy"])
        algorithm = summary["algorithm"]
    except (KeyError, TypeError, ValueError) as e:
        raise ParseError(f"Worker result is missing fields: {e}", raw_output=json.dumps(summary)[:4000]) from e
    if not 0.0 <= accuracy <= 1.0:
        raise ParseError(f"Worker reported accuracy {accuracy} outside [0, 1]",
                         raw_output=json.dumps(summary)[:4000])
    return TrainingResult(
        algorithm=algorithm,
        accuracy=accuracy,
        parameters=summary.get("parameters") or {},
        metrics=summary.get("metrics") or {},
        problem_type=summary.get("problem_type"),
        features=summary.get("features") or [],
        targets=summary.get("targets") or [],
        bundle=bundle,
    )


TRAINERS = {
    "local": LocalTrainer,
    "subprocess": SubprocessTrainer,
    "remote": RemoteTrainer,
    "simulated": SimulatedTrainer,
}


def get_trainer(backend: Optional[str] = None) -> Trainer:
    backend = backend or settings.TRAINER_BACKEND
    cls = TRAINERS.get(backend)
    if cls is None:
        raise ValueError(f"Unknown TRAINER_BACKEND '{backend}'. Options: {', '.join(TRAINERS)}")
    return cls()
