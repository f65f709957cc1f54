import httpx
import pytest

from modelstudio.common.exceptions import BackendError, NotFoundError, ParseError, ValidationError
from modelstudio.common.remote import RemoteClient, parse_remote_response
from modelstudio.prediction.predictors import PredictionTarget, RemotePredictor
from modelstudio.training.trainers import RemoteTrainer

from conftest import make_classification_rows


def _client(handler):
    client = RemoteClient(base_url="http://peer:8001", timeout=1.0)
    client._client = httpx.AsyncClient(base_url=client.base_url, transport=httpx.MockTransport(handler))
    return client


def test_parse_success():
    response = httpx.Response(200, json={"success": True, "predictions": [1]})
    assert parse_remote_response(response)["predictions"] == [1]


@pytest.mark.parametrize(
    "kind,error_cls",
    [("validation", ValidationError), ("not_found", NotFoundError), ("not_trained", BackendError), ("backend", BackendError)],
)
def test_parse_failure_kinds(kind, error_cls):
    response = httpx.Response(500, json={"success": False, "error": "boom", "kind": kind})
    with pytest.raises(error_cls):
        parse_remote_response(response)


def test_parse_garbage():
    with pytest.raises(ParseError) as exc:
        parse_remote_response(httpx.Response(200, text="<html>oops</html>"))
    assert "oops" in exc.value.raw_output
    with pytest.raises(ParseError):
        parse_remote_response(httpx.Response(200, json=[1, 2]))


async def test_remote_trainer_keeps_remote_reference():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        return httpx.Response(
            200,
            json={"success": True, "accuracy": 0.91, "modelId": "peer-7", "problemType": "classification"},
        )

    trainer = RemoteTrainer(client=_client(handler))
    result = await trainer.train(make_classification_rows(20), ["a", "b"], "y", "Random Forest")
    await trainer.client.close()

    assert seen["path"] == "/train-model"
    assert result.accuracy == 0.91
    assert result.remote_ref == "remote:peer-7"
    assert result.bundle is None


async def test_remote_trainer_rejects_out_of_range_accuracy():
    trainer = RemoteTrainer(client=_client(
        lambda request: httpx.Response(200, json={"success": True, "accuracy": 7, "modelId": "x"})
    ))
    with pytest.raises(ParseError):
        await trainer.train(make_classification_rows(20), ["a", "b"], "y", "Random Forest")
    await trainer.client.close()


async def test_remote_predictor_checks_prediction_count():
    predictor = RemotePredictor(client=_client(
        lambda request: httpx.Response(200, json={"success": True, "predictions": [1]})
    ))
    target = PredictionTarget("local-id", "remote:peer-7")

    with pytest.raises(ParseError):
        await predictor.predict(target, [[1.0, 2.0], [3.0, 4.0]])
    assert (await predictor.predict(target, [[1.0, 2.0]]))["predictions"] == [1]
    await predictor.client.close()


async def test_unreachable_peer_is_a_backend_error():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    client = _client(handler)
    with pytest.raises(BackendError, match="unreachable"):
        await client.post("/train-model", {})
    await client.close()
