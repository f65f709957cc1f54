import json

import pytest
from fastapi.testclient import TestClient

from modelstudio.config import settings
from modelstudio.main import app

from conftest import make_classification_rows


@pytest.fixture(scope="module")
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture(scope="module")
def trained_model_id(client):
    response = client.post(
        "/train-model",
        json={
            "data": make_classification_rows(),
            "features": ["a", "b"],
            "target": "y",
            "algorithm": "Random Forest",
            "datasetName": "api-sensors",
            "modelName": "API forest",
        },
    )
    assert response.status_code == 200, response.text
    body = response.json()
    assert body["success"] is True
    assert body["simulated"] is False
    assert 0.0 <= body["accuracy"] <= 1.0
    return body["modelId"]


def _assert_failure(response, kind):
    assert response.status_code == 500, response.text
    body = response.json()
    assert body["success"] is False
    assert body["kind"] == kind
    assert body["error"]


def test_health(client):
    assert client.get("/").json()["status"] == "healthy"
    details = client.get("/health").json()["details"]
    assert details["database"] is True
    assert details["trainer_backend"] == "local"


def test_predict_two_rows(client, trained_model_id):
    response = client.post(
        "/predict-with-model",
        json={"modelId": trained_model_id, "inputData": [[1.2, 3.4], [5.6, 7.8]]},
    )
    assert response.status_code == 200, response.text
    body = response.json()
    assert body["success"] is True
    assert len(body["predictions"]) == 2
    assert len(body["probabilities"]) == 2


def test_predict_wrong_feature_count(client, trained_model_id):
    response = client.post(
        "/predict-with-model",
        json={"modelId": trained_model_id, "inputData": [[1.0, 2.0, 3.0]]},
    )
    _assert_failure(response, "validation")


def test_predict_unknown_model(client):
    response = client.post("/predict-with-model", json={"modelId": "no-such-model", "inputData": [[1.0, 2.0]]})
    _assert_failure(response, "not_found")


def test_missing_body_field_is_a_validation_failure(client):
    response = client.post("/train-model", json={"features": ["a"], "target": "y", "algorithm": "Random Forest"})
    _assert_failure(response, "validation")


def test_unknown_algorithm(client):
    response = client.post(
        "/train-model",
        json={
            "data": make_classification_rows(20),
            "features": ["a", "b"],
            "target": "y",
            "algorithm": "Quantum Forest",
            "datasetName": "api-sensors",
        },
    )
    _assert_failure(response, "validation")


def test_model_listing_and_lookup(client, trained_model_id):
    listed = client.get("/models", params={"datasetName": "api-sensors"}).json()
    assert trained_model_id in [m["id"] for m in listed]

    model = client.get(f"/models/{trained_model_id}").json()
    assert model["type"] == "ML"
    assert model["datasetName"] == "api-sensors"
    assert model["isTrained"] is True

    best = client.get("/models/best", params={"datasetName": "api-sensors"}).json()
    assert best["datasetName"] == "api-sensors"

    _assert_failure(client.get("/models/best", params={"datasetName": "nothing-here"}), "not_found")


def test_patch_rejects_training_fields(client, trained_model_id):
    response = client.patch(f"/models/{trained_model_id}", json={"accuracy": 1.0})
    _assert_failure(response, "validation")

    response = client.patch(f"/models/{trained_model_id}", json={"name": "renamed forest"})
    assert response.json()["model"]["name"] == "renamed forest"


def test_fine_tune_and_activate(client, trained_model_id):
    response = client.post(f"/models/{trained_model_id}/fine-tune", json={"epochs": 40})
    assert response.status_code == 200, response.text
    assert response.json()["model"]["parameters"]["n_estimators"] == 40

    versions = client.get(f"/models/{trained_model_id}/versions").json()
    assert [v["isActive"] for v in versions][-1] is True
    assert sum(v["isActive"] for v in versions) == 1

    first = versions[0]
    response = client.post(f"/models/{trained_model_id}/versions/{first['id']}/activate")
    assert response.json()["model"]["accuracy"] == first["accuracy"]


def test_download(client, trained_model_id):
    response = client.get(f"/models/{trained_model_id}/download", params={"format": "json"})
    assert response.status_code == 200
    assert f'filename="{trained_model_id}.json"' in response.headers["content-disposition"]
    assert response.json()["id"] == trained_model_id

    response = client.get(f"/models/{trained_model_id}/download", params={"format": "pkl"})
    assert response.headers["content-type"] == "application/octet-stream"

    _assert_failure(client.get(f"/models/{trained_model_id}/download", params={"format": "onnx"}), "validation")


def test_feature_importance(client, trained_model_id):
    ranked = client.get(f"/models/{trained_model_id}/feature-importance").json()
    assert {r["feature"] for r in ranked} == {"a", "b"}


def test_algorithm_catalog(client):
    algorithms = client.get("/algorithms").json()
    assert len(algorithms) == 19

    response = client.get("/algorithms/Random%20Forest/hyperparameters")
    assert response.status_code == 200
    assert "n_estimators" in [o["name"] for o in response.json()["hyperparameters"]]


def test_cross_validate(client):
    response = client.post(
        "/cross-validate",
        json={
            "data": make_classification_rows(60),
            "features": ["a", "b"],
            "target": "y",
            "algorithm": "Decision Tree",
            "folds": 3,
        },
    )
    assert response.status_code == 200, response.text
    assert response.json()["success"] is True


def test_generate_notebook(client):
    response = client.post(
        "/generate-colab-notebook",
        json={
            "data": make_classification_rows(10),
            "features": ["a", "b"],
            "targets": ["y"],
            "algorithm": "Neural Network",
            "datasetName": "api-sensors",
            "modelId": "nb_model",
            "neuralNetworkArchitecture": [{"neurons": 32, "activation": "relu"}],
        },
    )
    assert response.status_code == 200, response.text
    body = response.json()
    assert body["modelId"] == "nb_model"
    notebook = json.loads(body["notebookContent"])
    assert notebook["nbformat"] == 4


def test_import_missing_files(client):
    response = client.post("/import-trained-model", json={"modelId": "not_uploaded", "datasetName": "api-sensors"})
    _assert_failure(response, "not_found")


def test_delete_then_lookup(client):
    response = client.post(
        "/train-model",
        json={
            "data": make_classification_rows(40),
            "features": ["a", "b"],
            "target": "y",
            "algorithm": "Naive Bayes",
            "datasetName": "api-delete",
        },
    )
    model_id = response.json()["modelId"]

    assert client.delete(f"/models/{model_id}").json()["success"] is True
    _assert_failure(client.get(f"/models/{model_id}"), "not_found")
    _assert_failure(client.delete(f"/models/{model_id}"), "not_found")


def test_cors_preflight(client):
    response = client.options(
        "/train-model",
        headers={
            "Origin": "http://localhost:3000",
            "Access-Control-Request-Method": "POST",
            "Access-Control-Request-Headers": "content-type",
        },
    )
    assert response.status_code == 200
    assert response.headers["access-control-allow-origin"] == "http://localhost:3000"


def test_internal_key_is_enforced_when_configured(client, trained_model_id, monkeypatch):
    monkeypatch.setattr(settings, "INTERNAL_API_KEY", "s3cret")
    body = {"modelId": trained_model_id, "inputData": [[1.0, 2.0]]}

    response = client.post("/predict-with-model", json=body)
    assert response.status_code == 401
    assert response.json()["kind"] == "http"

    response = client.post("/predict-with-model", json=body, headers={"X-Internal-Key": "wrong"})
    assert response.status_code == 401

    response = client.post("/predict-with-model", json=body, headers={"X-Internal-Key": "s3cret"})
    assert response.status_code == 200

    monkeypatch.setattr(settings, "INTERNAL_API_KEY", "dev_key")
    assert client.post("/predict-with-model", json=body).status_code == 200
