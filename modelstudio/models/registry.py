"""
ModelRegistry: model records, version lineage, fitted artifacts and
prediction routing behind one interface.

Records and versions live in the repository (SQL), fitted bundles in the
artifact store, and recently used bundles in an LRU cache. Writes that touch
one model id (fine-tune, activation, delete) are serialized per id.
"""

import asyncio
import json
import logging
import pickle
import re
import uuid
from collections import defaultdict
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

import numpy as np
from sklearn.preprocessing import FunctionTransformer, LabelEncoder

from modelstudio.artifacts.base import ArtifactStore
from modelstudio.artifacts.local_store import BundleCache, LocalArtifactStore
from modelstudio.common.exceptions import (
    BackendError,
    ModelExistsError,
    ModelNotFoundError,
    NotFoundError,
    NotTrainedError,
    ValidationError,
)
from modelstudio.config import settings
from modelstudio.db.models import MLModel, MLModelVersion
from modelstudio.export.formats import BINARY_FORMATS, ExportedModel, check_format, export_model
from modelstudio.models.repository import EDITABLE_FIELDS, ModelRepository, SqlModelRepository
from modelstudio.models.schemas import dump_model
from modelstudio.prediction.predictors import (
    PredictionTarget,
    Predictor,
    RemotePredictor,
    get_predictor,
)
from modelstudio.training.algorithms import CLASSIFICATION, get_algorithm, model_type_for
from modelstudio.training.core import ModelBundle, Row, TrainingResult, feature_importance
from modelstudio.training.trainers import Trainer, get_trainer

logger = logging.getLogger(__name__)

# Model ids become file names in the artifact and import directories
MODEL_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,63}$")

# Module-level singleton, set by main.py during startup
_registry: Optional["ModelRegistry"] = None


def get_registry() -> "ModelRegistry":
    if _registry is None:
        raise RuntimeError("ModelRegistry not initialized. Call init_registry() first.")
    return _registry


def init_registry(
    session_factory,
    store: Optional[ArtifactStore] = None,
    trainer: Optional[Trainer] = None,
    predictor: Optional[Predictor] = None,
) -> "ModelRegistry":
    global _registry
    _registry = ModelRegistry(
        repository=SqlModelRepository(session_factory),
        store=store or LocalArtifactStore(settings.ARTIFACT_STORE_PATH),
        trainer=trainer or get_trainer(settings.TRAINER_BACKEND),
        predictor=predictor,
        max_loaded_models=settings.MAX_LOADED_MODELS,
    )
    return _registry


def check_model_id(model_id: str) -> str:
    if not isinstance(model_id, str) or not MODEL_ID_PATTERN.match(model_id):
        raise ValidationError(
            f"Invalid model id '{model_id}': use 1-64 letters, digits, '.', '_' or '-'"
        )
    return model_id


class ModelRegistry:
    def __init__(
        self,
        repository: ModelRepository,
        store: ArtifactStore,
        trainer: Trainer,
        predictor: Optional[Predictor] = None,
        max_loaded_models: int = 10,
        import_dir: Optional[str] = None,
    ):
        self.repository = repository
        self.store = store
        self.trainer = trainer
        self.bundles = BundleCache(store, max_loaded=max_loaded_models)
        self.predictor = predictor or get_predictor(settings.PREDICTOR_BACKEND, self.bundles)
        self.import_dir = Path(import_dir or settings.IMPORT_DIR)
        self._remote_predictor: Optional[RemotePredictor] = None

        # One writer per model id; entries exist only for stored or in-creation ids
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    # ---- Creation ----

    async def train_model(
        self,
        data: List[Dict[str, Any]],
        features: List[str],
        target: Union[str, Sequence[str]],
        algorithm: str,
        dataset_name: str,
        model_name: Optional[str] = None,
        model_id: Optional[str] = None,
        hyperparameters: Optional[Dict[str, Any]] = None,
    ) -> MLModel:
        if model_id is not None:
            check_model_id(model_id)
        result = await self.trainer.train(data, features, target, algorithm, hyperparameters)
        record = {
            "id": model_id,
            "name": model_name or f"{algorithm} Model",
            "dataset_name": dataset_name,
        }
        return await self.add_model(record, result, training_data=data)

    async def add_model(
        self,
        record: Dict[str, Any],
        result: TrainingResult,
        training_data: Optional[List[Dict[str, Any]]] = None,
    ) -> MLModel:
        """Store a trained result as a new model with active version v1."""
        model_id = check_model_id(record.get("id") or str(uuid.uuid4()))
        if not 0.0 <= result.accuracy <= 1.0:
            raise ValidationError(f"Accuracy {result.accuracy} is outside [0, 1]")
        if not result.targets:
            raise ValidationError("A model needs at least one target")

        async with self._locks[model_id]:
            if await self.repository.get_model(model_id) is not None:
                raise ModelExistsError(model_id)

            artifact_path = await self._store_artifact(model_id, "v1", result)
            try:
                if training_data is not None:
                    await asyncio.to_thread(self.store.save_training_data, model_id, training_data)
                model, _ = await self.repository.create_model(
                    {
                        "id": model_id,
                        "name": record.get("name") or f"{result.algorithm} Model",
                        "model_type": record.get("model_type") or model_type_for(result.algorithm),
                        "algorithm": result.algorithm,
                        "accuracy": result.accuracy,
                        "dataset_name": record["dataset_name"],
                        "parameters": result.parameters,
                        "features": result.features,
                        "targets": result.targets,
                        "problem_type": result.problem_type,
                        "metrics": result.metrics or None,
                        "is_trained": not result.simulated,
                    },
                    self._version_fields(result, artifact_path),
                )
            except ModelExistsError:
                # Created by another process; its files share our paths
                raise
            except Exception:
                await self._discard_new_files(model_id, result, artifact_path, training_data is not None)
                raise

        logger.info(
            f"Registered model {model_id} ({result.algorithm}, accuracy={result.accuracy:.4f}"
            f"{', simulated' if result.simulated else ''})"
        )
        return model

    # ---- Queries ----

    async def get_model(self, model_id: str) -> MLModel:
        model = await self.repository.get_model(model_id)
        if model is None:
            raise ModelNotFoundError(model_id)
        return model

    async def list_models(self, dataset_name: Optional[str] = None, model_type: Optional[str] = None) -> List[MLModel]:
        return await self.repository.list_models(dataset_name=dataset_name, model_type=model_type)

    async def get_best_model(self, dataset_name: str, model_type: Optional[str] = None) -> MLModel:
        models = await self.list_models(dataset_name=dataset_name, model_type=model_type)
        if not models:
            suffix = f" of type {model_type}" if model_type else ""
            raise NotFoundError(f"No models{suffix} for dataset {dataset_name}")
        return max(models, key=lambda m: m.accuracy)

    async def list_versions(self, model_id: str) -> List[MLModelVersion]:
        await self.get_model(model_id)
        return await self.repository.list_versions(model_id)

    # ---- Updates ----

    async def update_model(self, model_id: str, patch: Dict[str, Any]) -> MLModel:
        illegal = sorted(set(patch) - set(EDITABLE_FIELDS))
        if illegal:
            raise ValidationError(
                f"Cannot update {', '.join(illegal)}; only name, dataset_name and type are editable"
            )
        await self.get_model(model_id)
        async with self._locks[model_id]:
            model = await self.repository.update_model(model_id, patch)
        if model is None:
            raise ModelNotFoundError(model_id)
        return model

    async def delete_model(self, model_id: str) -> None:
        await self.get_model(model_id)
        try:
            async with self._locks[model_id]:
                versions = await self.repository.list_versions(model_id)
                if not await self.repository.delete_model(model_id):
                    raise ModelNotFoundError(model_id)
                for v in versions:
                    self.bundles.discard(v.artifact_path)
                await asyncio.to_thread(self.store.delete, model_id)
        finally:
            self._locks.pop(model_id, None)

    async def fine_tune_model(
        self,
        model_id: str,
        epochs: Optional[int] = None,
        learning_rate: Optional[float] = None,
        hyperparameters: Optional[Dict[str, Any]] = None,
    ) -> MLModel:
        """Retrain with merged parameters and store the result as a new active version.

        Nothing about the model changes unless training and the version write
        both succeed.
        """
        await self.get_model(model_id)
        async with self._locks[model_id]:
            model = await self.get_model(model_id)
            data = await asyncio.to_thread(self.store.load_training_data, model_id)
            if not data:
                raise ValidationError(f"Model {model_id} has no stored training data to fine-tune on")

            spec = get_algorithm(model.algorithm)
            params = dict(model.parameters or {})
            params.update(hyperparameters or {})
            if epochs is not None:
                if spec.epochs_param is None:
                    raise ValidationError(f"{spec.name} has no epoch-like parameter to fine-tune")
                params[spec.epochs_param] = epochs
            if learning_rate is not None:
                if "learning_rate" not in spec.params.model_fields:
                    raise ValidationError(f"{spec.name} has no learning_rate parameter")
                params["learning_rate"] = learning_rate

            logger.info(f"Fine-tuning model {model_id} ({model.algorithm}) with {params}")
            result = await self.trainer.train(data, list(model.features), list(model.targets), model.algorithm, params)

            versions = await self.repository.list_versions(model_id)
            label = f"v{max((v.version_number for v in versions), default=0) + 1}"
            artifact_path = await self._store_artifact(model_id, label, result)
            try:
                model, version = await self.repository.add_version(
                    model_id,
                    self._version_fields(result, artifact_path),
                    is_trained=not result.simulated,
                )
            except Exception:
                if result.bundle is not None and artifact_path:
                    await asyncio.to_thread(self.store.delete_bundle, artifact_path)
                raise

        logger.info(f"Fine-tuned model {model_id}: {version.version_label} accuracy={version.accuracy:.4f}")
        return model

    async def activate_version(self, model_id: str, version_id: str) -> MLModel:
        await self.get_model(model_id)
        async with self._locks[model_id]:
            activated = await self.repository.activate_version(model_id, version_id)
        if activated is None:
            raise NotFoundError(f"Version {version_id} not found for model {model_id}")
        return activated[0]

    # ---- Artifacts ----

    async def load_bundle(self, model: MLModel) -> Optional[ModelBundle]:
        """The active version's fitted bundle, or None for untrained or remote models."""
        if not model.is_trained:
            return None
        version = await self.repository.get_active_version(model.id)
        target = PredictionTarget(model.id, version.artifact_path if version else None)
        if target.artifact_path is None or target.remote_id is not None:
            return None
        return await asyncio.to_thread(self.bundles.get, target.artifact_path)

    async def feature_importance(self, model_id: str) -> List[Dict[str, Any]]:
        model = await self.get_model(model_id)
        if not model.is_trained:
            raise NotTrainedError(model_id)
        bundle = await self.load_bundle(model)
        if bundle is None:
            raise BackendError(f"Model {model_id} is stored on a remote trainer; no local bundle to inspect")
        return feature_importance(bundle)

    async def download_model(self, model_id: str, fmt: str) -> ExportedModel:
        fmt = check_format(fmt)
        model = await self.get_model(model_id)
        if fmt in BINARY_FORMATS and not model.is_trained:
            raise NotTrainedError(model_id)

        bundle = await self.load_bundle(model)
        if fmt in BINARY_FORMATS and bundle is None:
            raise BackendError(f"Model {model_id} is stored on a remote trainer; download it there")
        importance = feature_importance(bundle) if bundle is not None else []
        return export_model(dump_model(model), bundle, fmt, importance)

    # ---- Prediction ----

    async def predict_with_model(self, model_id: str, rows: List[Row]) -> Dict[str, Any]:
        model = await self.get_model(model_id)
        if not model.is_trained:
            raise NotTrainedError(model_id)
        version = await self.repository.get_active_version(model_id)
        target = PredictionTarget(model_id, version.artifact_path if version else None)

        predictor = self.predictor
        if target.remote_id is not None and not isinstance(predictor, RemotePredictor):
            if self._remote_predictor is None:
                self._remote_predictor = RemotePredictor()
            predictor = self._remote_predictor

        result = await predictor.predict(target, rows)
        logger.info(f"Predicted {len(rows)} row(s) with model {model_id}")
        return result

    # ---- External training handoff ----

    async def import_trained_model(
        self, model_id: str, dataset_name: str, model_name: Optional[str] = None
    ) -> MLModel:
        """Register a model trained by an exported notebook from its saved files."""
        check_model_id(model_id)
        info_path = self.import_dir / f"{model_id}_info.json"
        model_path = self.import_dir / f"{model_id}_model.pkl"
        scaler_path = self.import_dir / f"{model_id}_scaler.pkl"
        for path in (info_path, model_path):
            if not path.is_file():
                raise NotFoundError(f"Import file {path.name} not found in {self.import_dir}")

        try:
            info = json.loads(info_path.read_text())
        except json.JSONDecodeError as e:
            raise ValidationError(f"{info_path.name} is not valid JSON: {e}") from e
        if not isinstance(info, dict):
            raise ValidationError(f"{info_path.name} must hold a JSON object")

        # Files come from the operator-managed import directory
        with open(model_path, "rb") as f:
            estimators = pickle.load(f)
        scaler = None
        if scaler_path.is_file():
            with open(scaler_path, "rb") as f:
                scaler = pickle.load(f)

        result = _result_from_handoff(model_id, info, estimators, scaler)
        model = await self.add_model(
            {
                "id": model_id,
                "name": model_name or f"Imported {result.algorithm} Model",
                "dataset_name": dataset_name,
                "model_type": info.get("modelType") if info.get("modelType") in ("ML", "DL") else None,
            },
            result,
        )
        logger.info(f"Imported trained model {model_id} from {self.import_dir}")
        return model

    # ---- Internals ----

    async def _discard_new_files(
        self, model_id: str, result: TrainingResult, artifact_path: Optional[str], wrote_training_data: bool
    ) -> None:
        if result.bundle is not None and artifact_path:
            await asyncio.to_thread(self.store.delete_bundle, artifact_path)
        if wrote_training_data:
            await asyncio.to_thread(self.store.delete_training_data, model_id)

    async def _store_artifact(self, model_id: str, version: str, result: TrainingResult) -> Optional[str]:
        if result.bundle is not None:
            return await asyncio.to_thread(self.store.save_bundle, model_id, version, result.bundle)
        return result.remote_ref

    @staticmethod
    def _version_fields(result: TrainingResult, artifact_path: Optional[str]) -> Dict[str, Any]:
        return {
            "algorithm": result.algorithm,
            "parameters": result.parameters,
            "accuracy": result.accuracy,
            "metrics": result.metrics or None,
            "artifact_path": artifact_path,
        }

    async def stop(self) -> None:
        for backend in (self.trainer, self.predictor, self._remote_predictor):
            client = getattr(backend, "client", None)
            if client is not None:
                await client.close()


def _result_from_handoff(model_id: str, info: Dict[str, Any], estimators: Any, scaler: Any) -> TrainingResult:
    accuracy = info.get("accuracy")
    if isinstance(accuracy, bool) or not isinstance(accuracy, (int, float)) or not 0.0 <= accuracy <= 1.0:
        raise ValidationError(f"Imported model {model_id} has no accuracy in [0, 1] (got {accuracy!r})")

    features, targets = info.get("features"), info.get("targets")
    if not isinstance(features, list) or not features:
        raise ValidationError(f"Imported model {model_id} lists no features")
    if not isinstance(targets, list) or not targets:
        raise ValidationError(f"Imported model {model_id} lists no targets")
    algorithm = get_algorithm(info.get("algorithm")).name

    if not isinstance(estimators, dict):
        if len(targets) != 1:
            raise ValidationError("A single pickled estimator can only serve a single-target model")
        estimators = {targets[0]: estimators}
    missing = [t for t in targets if t not in estimators]
    if missing:
        raise ValidationError(f"Pickled models are missing target(s): {', '.join(missing)}")
    for t in targets:
        if not hasattr(estimators[t], "predict"):
            raise ValidationError(f"Pickled object for target '{t}' is not a fitted estimator")

    if scaler is None:
        scaler = FunctionTransformer().fit(np.zeros((1, len(features))))

    encoders = {}
    for t, classes in (info.get("classes") or {}).items():
        encoder = LabelEncoder()
        encoder.classes_ = np.asarray(classes)
        encoders[t] = encoder

    problem_type = info.get("problemType") or (CLASSIFICATION if encoders else None)
    bundle = ModelBundle(
        algorithm=algorithm,
        problem_type=problem_type,
        features=list(features),
        targets=list(targets),
        parameters=info.get("parameters") or {},
        scalers={t: scaler for t in targets},
        estimators={t: estimators[t] for t in targets},
        label_encoders=encoders,
    )
    return TrainingResult(
        algorithm=algorithm,
        accuracy=float(accuracy),
        parameters=bundle.parameters,
        problem_type=problem_type,
        features=bundle.features,
        targets=bundle.targets,
        bundle=bundle,
    )
