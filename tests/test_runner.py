import asyncio
import os
import sys

import joblib
import pytest

from modelstudio.common.exceptions import BackendError, ParseError, ValidationError
from modelstudio.prediction.predictors import PredictionTarget, SubprocessPredictor
from modelstudio.training.core import fit_bundle
from modelstudio.training.runner import run_worker
from modelstudio.training.trainers import SubprocessTrainer


def _script(code):
    return [sys.executable, "-c", code]


async def test_successful_worker_output_is_parsed():
    result = await run_worker(
        "echo",
        {"x": 41},
        argv=_script("import json, sys; req = json.load(sys.stdin); print(json.dumps({'x': req['x'] + 1}))"),
    )
    assert result == {"x": 42}


def _sleeper(pid_file):
    return _script(
        f"import os, time; open({str(pid_file)!r}, 'w').write(str(os.getpid())); time.sleep(30)"
    )


async def _wait_for_pid(pid_file):
    for _ in range(200):
        if pid_file.exists() and pid_file.read_text():
            return int(pid_file.read_text())
        await asyncio.sleep(0.05)
    raise AssertionError("worker never started")


def _process_exists(pid):
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    return True


async def test_timeout_kills_worker(tmp_path):
    pid_file = tmp_path / "worker.pid"
    with pytest.raises(BackendError, match="timed out"):
        await run_worker("sleep", {}, timeout=3.0, argv=_sleeper(pid_file))

    assert not _process_exists(int(pid_file.read_text()))


async def test_cancelled_caller_kills_worker(tmp_path):
    pid_file = tmp_path / "worker.pid"
    task = asyncio.create_task(run_worker("sleep", {}, timeout=60, argv=_sleeper(pid_file)))
    pid = await _wait_for_pid(pid_file)
    assert _process_exists(pid)

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert not _process_exists(pid)


async def test_nonzero_exit_carries_stderr():
    with pytest.raises(BackendError) as excinfo:
        await run_worker(
            "crash", {}, argv=_script("import sys; sys.stderr.write('boom from worker'); sys.exit(3)")
        )
    assert "code 3" in excinfo.value.message
    assert "boom from worker" in excinfo.value.stderr


async def test_structured_worker_errors_keep_their_kind():
    code = (
        "import json, sys; "
        "print(json.dumps({'error': 'bad column', 'kind': 'validation'})); "
        "sys.exit(2)"
    )
    with pytest.raises(ValidationError, match="bad column"):
        await run_worker("train", {}, argv=_script(code))


async def test_unparseable_output_is_a_parse_error():
    with pytest.raises(ParseError) as excinfo:
        await run_worker("train", {}, argv=_script("print('accuracy: high')"))
    assert excinfo.value.raw_output == "accuracy: high"


async def test_non_object_output_is_a_parse_error():
    with pytest.raises(ParseError):
        await run_worker("train", {}, argv=_script("print('[1, 2, 3]')"))


async def test_subprocess_trainer_end_to_end(classification_rows):
    result = await SubprocessTrainer(timeout=120).train(
        classification_rows, ["a", "b"], "y", "Decision Tree", {"max_depth": 4}
    )

    assert 0.0 <= result.accuracy <= 1.0
    assert result.parameters["max_depth"] == 4
    assert result.bundle is not None
    assert result.bundle.features == ["a", "b"]


async def test_subprocess_trainer_rejects_bad_requests_before_spawning():
    with pytest.raises(ValidationError):
        await SubprocessTrainer().train([], ["a"], "y", "Decision Tree")


async def test_subprocess_predictor(tmp_path, classification_rows):
    bundle = fit_bundle(classification_rows, ["a", "b"], "y", "Decision Tree").bundle
    path = str(tmp_path / "bundle.joblib")
    joblib.dump(bundle, path)

    result = await SubprocessPredictor(timeout=120).predict(
        PredictionTarget("m1", path), [[1.0, 1.0], {"a": 9.0, "b": 9.0}]
    )
    assert result["predictions"] == [0, 1]


async def test_subprocess_predictor_missing_artifact(tmp_path):
    with pytest.raises(BackendError, match="missing"):
        await SubprocessPredictor(timeout=120).predict(
            PredictionTarget("m1", str(tmp_path / "missing.joblib")), [[1.0, 2.0]]
        )
