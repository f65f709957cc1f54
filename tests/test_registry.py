import asyncio
import io
import json
import pickle

import joblib
import pytest
from sklearn.ensemble import RandomForestClassifier
from sklearn.preprocessing import StandardScaler

from modelstudio.common.exceptions import (
    BackendError,
    ModelExistsError,
    ModelNotFoundError,
    NotFoundError,
    NotTrainedError,
    UnsupportedFormatError,
    ValidationError,
)
from modelstudio.training.trainers import SimulatedTrainer


class FailingTrainer:
    name = "failing"

    async def train(self, data, features, target, algorithm, params=None):
        raise BackendError("trainer crashed")


async def _train(registry, rows, algorithm="Random Forest", **kwargs):
    return await registry.train_model(
        data=rows,
        features=["a", "b"],
        target="y",
        algorithm=algorithm,
        dataset_name=kwargs.pop("dataset_name", "sensors"),
        **kwargs,
    )


async def test_train_stores_record_and_first_version(registry, classification_rows):
    model = await _train(registry, classification_rows, model_name="RF baseline")

    stored = await registry.get_model(model.id)
    assert stored.name == "RF baseline"
    assert stored.model_type == "ML"
    assert stored.is_trained
    assert stored.targets == ["y"]
    assert 0.0 <= stored.accuracy <= 1.0

    versions = await registry.list_versions(model.id)
    assert [(v.version_label, v.is_active) for v in versions] == [("v1", True)]


async def test_caller_supplied_id_is_kept_and_must_be_unique(registry, classification_rows):
    model = await _train(registry, classification_rows, model_id="model_123")
    assert model.id == "model_123"

    with pytest.raises(ValidationError, match="already exists"):
        await _train(registry, classification_rows, model_id="model_123")


async def test_concurrent_creation_with_one_id(registry, classification_rows):
    results = await asyncio.gather(
        _train(registry, classification_rows, model_id="dup"),
        _train(registry, classification_rows, model_id="dup"),
        return_exceptions=True,
    )

    created = [r for r in results if not isinstance(r, BaseException)]
    rejected = [r for r in results if isinstance(r, BaseException)]
    assert len(created) == 1
    assert len(rejected) == 1 and isinstance(rejected[0], ModelExistsError)

    result = await registry.predict_with_model("dup", [[1.0, 2.0]])
    assert len(result["predictions"]) == 1
    assert registry.store.load_training_data("dup") is not None
    tuned = await registry.fine_tune_model("dup", hyperparameters={"max_depth": 3})
    assert tuned.parameters["max_depth"] == 3


async def test_repository_reports_duplicate_ids(registry):
    fields = {
        "id": "twice",
        "name": "n",
        "model_type": "ML",
        "algorithm": "Random Forest",
        "accuracy": 0.5,
        "dataset_name": "d",
        "parameters": {},
        "features": ["a"],
        "targets": ["y"],
    }
    version = {"algorithm": "Random Forest", "parameters": {}, "accuracy": 0.5, "artifact_path": None}
    await registry.repository.create_model(dict(fields), dict(version))

    with pytest.raises(ModelExistsError):
        await registry.repository.create_model(dict(fields), dict(version))
    assert len(await registry.repository.list_versions("twice")) == 1


async def test_failed_registration_removes_its_files(registry, classification_rows):
    async def unavailable(fields, version):
        raise RuntimeError("database went away")

    registry.repository.create_model = unavailable
    with pytest.raises(RuntimeError):
        await _train(registry, classification_rows, model_id="half_written")

    assert not (registry.store.base_dir / "half_written").exists()


async def test_unknown_ids_do_not_leave_locks(registry):
    with pytest.raises(ModelNotFoundError):
        await registry.update_model("ghost", {"name": "x"})
    with pytest.raises(ModelNotFoundError):
        await registry.fine_tune_model("ghost", epochs=5)
    with pytest.raises(ModelNotFoundError):
        await registry.activate_version("ghost", "v1")
    with pytest.raises(ModelNotFoundError):
        await registry.delete_model("ghost")

    assert "ghost" not in registry._locks


async def test_unsafe_model_ids_are_rejected(registry, classification_rows):
    with pytest.raises(ValidationError):
        await _train(registry, classification_rows, model_id="../escape")


async def test_list_and_best_model(registry, classification_rows, regression_rows):
    rf = await _train(registry, classification_rows, dataset_name="cls")
    nb = await _train(registry, classification_rows, algorithm="Naive Bayes", dataset_name="cls")
    await _train(registry, regression_rows, algorithm="Linear Regression", dataset_name="reg")

    listed = await registry.list_models(dataset_name="cls")
    assert {m.id for m in listed} == {rf.id, nb.id}

    best = await registry.get_best_model("cls")
    assert best.accuracy == max(rf.accuracy, nb.accuracy)

    with pytest.raises(NotFoundError):
        await registry.get_best_model("cls", model_type="DL")


async def test_predict_returns_one_prediction_per_row(registry, classification_rows):
    model = await _train(registry, classification_rows)

    result = await registry.predict_with_model(model.id, [[1.2, 3.4], [5.6, 7.8]])
    assert len(result["predictions"]) == 2
    assert len(result["probabilities"]) == 2


async def test_predict_rejects_wrong_feature_count(registry, classification_rows):
    model = await _train(registry, classification_rows)
    with pytest.raises(ValidationError):
        await registry.predict_with_model(model.id, [[1.0, 2.0, 3.0]])


async def test_delete_then_predict_is_not_found(registry, classification_rows):
    model = await _train(registry, classification_rows)
    await registry.predict_with_model(model.id, [[1.0, 2.0]])

    await registry.delete_model(model.id)

    with pytest.raises(NotFoundError):
        await registry.predict_with_model(model.id, [[1.0, 2.0]])
    assert await registry.repository.list_versions(model.id) == []
    assert registry.store.load_training_data(model.id) is None


async def test_delete_unknown_model(registry):
    with pytest.raises(ModelNotFoundError):
        await registry.delete_model("does-not-exist")


async def test_update_only_descriptive_fields(registry, classification_rows):
    model = await _train(registry, classification_rows)

    updated = await registry.update_model(model.id, {"name": "renamed", "dataset_name": "other"})
    assert updated.name == "renamed"
    assert updated.dataset_name == "other"

    with pytest.raises(ValidationError, match="accuracy"):
        await registry.update_model(model.id, {"accuracy": 1.0})
    with pytest.raises(ModelNotFoundError):
        await registry.update_model("missing", {"name": "x"})


async def test_fine_tune_writes_new_active_version(registry, classification_rows):
    model = await _train(registry, classification_rows)

    tuned = await registry.fine_tune_model(model.id, epochs=50, hyperparameters={"max_depth": 3})

    assert tuned.parameters["n_estimators"] == 50
    assert tuned.parameters["max_depth"] == 3
    versions = await registry.list_versions(model.id)
    assert [(v.version_label, v.is_active) for v in versions] == [("v1", False), ("v2", True)]


async def test_failed_fine_tune_leaves_model_untouched(registry, classification_rows):
    model = await _train(registry, classification_rows)
    registry.trainer = FailingTrainer()

    with pytest.raises(BackendError):
        await registry.fine_tune_model(model.id, hyperparameters={"max_depth": 3})

    after = await registry.get_model(model.id)
    assert after.accuracy == model.accuracy
    assert after.parameters == model.parameters
    versions = await registry.list_versions(model.id)
    assert [(v.version_label, v.is_active) for v in versions] == [("v1", True)]


async def test_invalid_fine_tune_parameters_are_rejected(registry, classification_rows):
    model = await _train(registry, classification_rows, algorithm="Decision Tree")

    with pytest.raises(ValidationError, match="epoch"):
        await registry.fine_tune_model(model.id, epochs=10)
    with pytest.raises(ValidationError, match="learning_rate"):
        await registry.fine_tune_model(model.id, learning_rate=0.1)


async def test_concurrent_fine_tunes_are_serialized(registry, classification_rows):
    model = await _train(registry, classification_rows)

    await asyncio.gather(
        registry.fine_tune_model(model.id, hyperparameters={"max_depth": 3}),
        registry.fine_tune_model(model.id, hyperparameters={"max_depth": 5}),
    )

    versions = await registry.list_versions(model.id)
    assert [v.version_label for v in versions] == ["v1", "v2", "v3"]
    assert [v.is_active for v in versions] == [False, False, True]


async def test_activating_a_version_deactivates_siblings(registry, classification_rows):
    model = await _train(registry, classification_rows)
    await registry.fine_tune_model(model.id, hyperparameters={"max_depth": 2})
    await registry.fine_tune_model(model.id, hyperparameters={"max_depth": 4})
    v1, v2, v3 = await registry.list_versions(model.id)

    activated = await registry.activate_version(model.id, v1.id)

    assert activated.accuracy == v1.accuracy
    assert activated.parameters == v1.parameters
    versions = await registry.list_versions(model.id)
    assert [v.is_active for v in versions] == [True, False, False]

    await registry.activate_version(model.id, v2.id)
    versions = await registry.list_versions(model.id)
    assert [v.is_active for v in versions] == [False, True, False]

    with pytest.raises(NotFoundError):
        await registry.activate_version(model.id, "no-such-version")


async def test_simulated_models_cannot_predict(registry, classification_rows):
    registry.trainer = SimulatedTrainer()
    model = await _train(registry, classification_rows)

    assert not model.is_trained
    with pytest.raises(NotTrainedError):
        await registry.predict_with_model(model.id, [[1.0, 2.0]])
    with pytest.raises(NotTrainedError):
        await registry.download_model(model.id, "pkl")


async def test_download_formats(registry, classification_rows):
    model = await _train(registry, classification_rows)

    as_json = json.loads((await registry.download_model(model.id, "json")).content)
    assert as_json["id"] == model.id
    assert as_json["type"] == "ML"
    assert {f["feature"] for f in as_json["featureImportance"]} == {"a", "b"}

    payload = pickle.loads((await registry.download_model(model.id, "pkl")).content)
    assert payload["metadata"]["id"] == model.id
    assert payload["bundle"].features == ["a", "b"]

    exported = await registry.download_model(model.id, "joblib")
    assert joblib.load(io.BytesIO(exported.content))["bundle"].algorithm == "Random Forest"

    with pytest.raises(UnsupportedFormatError):
        await registry.download_model(model.id, "onnx")


async def test_feature_importance(registry, classification_rows):
    model = await _train(registry, classification_rows)
    ranked = await registry.feature_importance(model.id)
    assert sum(r["importance"] for r in ranked) == pytest.approx(1.0)


def _write_handoff(import_dir, model_id, rows, accuracy=0.93, with_scaler=True):
    X = [[r["a"], r["b"]] for r in rows]
    y = [r["y"] for r in rows]
    scaler = StandardScaler().fit(X)
    estimator = RandomForestClassifier(n_estimators=20, random_state=42).fit(scaler.transform(X), y)

    info = {
        "modelId": model_id,
        "datasetName": "sensors",
        "features": ["a", "b"],
        "targets": ["y"],
        "algorithm": "Random Forest",
        "modelType": "ML",
        "problemType": "classification",
    }
    if accuracy is not None:
        info["accuracy"] = accuracy
    (import_dir / f"{model_id}_info.json").write_text(json.dumps(info))
    (import_dir / f"{model_id}_model.pkl").write_bytes(pickle.dumps({"y": estimator}))
    if with_scaler:
        (import_dir / f"{model_id}_scaler.pkl").write_bytes(pickle.dumps(scaler))


async def test_import_trained_model(registry, classification_rows):
    _write_handoff(registry.import_dir, "colab_1", classification_rows)

    model = await registry.import_trained_model("colab_1", "sensors")

    assert model.is_trained
    assert model.accuracy == pytest.approx(0.93)
    result = await registry.predict_with_model("colab_1", [[9.5, 9.5], [0.1, 0.1]])
    assert result["predictions"] == [1, 0]


async def test_import_without_scaler(registry, classification_rows):
    _write_handoff(registry.import_dir, "colab_2", classification_rows, with_scaler=False)
    await registry.import_trained_model("colab_2", "sensors")
    result = await registry.predict_with_model("colab_2", [{"a": 1.0, "b": 2.0}])
    assert len(result["predictions"]) == 1


async def test_import_missing_files(registry):
    with pytest.raises(NotFoundError, match="_info.json"):
        await registry.import_trained_model("never_trained", "sensors")


@pytest.mark.parametrize("accuracy", [None, 1.5, -0.1, "high"])
async def test_import_requires_valid_accuracy(registry, classification_rows, accuracy):
    _write_handoff(registry.import_dir, "colab_bad", classification_rows, accuracy=accuracy)
    with pytest.raises(ValidationError, match="accuracy"):
        await registry.import_trained_model("colab_bad", "sensors")
    with pytest.raises(ModelNotFoundError):
        await registry.get_model("colab_bad")
