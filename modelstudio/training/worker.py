"""
Training / inference worker, run as `python -m modelstudio.training.worker <command>`.

Reads one JSON request from stdin and writes one JSON document to stdout.
Known failures are reported as {"error", "kind"} with exit code 2; anything
else leaves a traceback on stderr and exits 1.
"""

import json
import logging
import sys

import joblib

from modelstudio.common.exceptions import BackendError, ModelStudioError, ValidationError
from modelstudio.training.core import fit_bundle, predict_bundle

logger = logging.getLogger("modelstudio.worker")


def _train(request: dict) -> dict:
    result = fit_bundle(
        data=request["data"],
        features=request["features"],
        target=request["target"],
        algorithm=request["algorithm"],
        params=request.get("params") or {},
    )
    joblib.dump(result.bundle, request["artifact_path"])
    return result.summary()


def _predict(request: dict) -> dict:
    try:
        bundle = joblib.load(request["artifact_path"])
    except FileNotFoundError:
        raise BackendError(f"Model artifact {request['artifact_path']} is missing from the store")
    return predict_bundle(bundle, request["rows"])


COMMANDS = {
    "train": _train,
    "predict": _predict,
}


def main(argv=None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    logging.basicConfig(level=logging.INFO, stream=sys.stderr)

    if len(argv) != 1 or argv[0] not in COMMANDS:
        print(f"usage: python -m modelstudio.training.worker {{{'|'.join(COMMANDS)}}}", file=sys.stderr)
        return 64

    try:
        request = json.load(sys.stdin)
    except json.JSONDecodeError as e:
        print(json.dumps({"error": f"Invalid request JSON: {e}", "kind": ValidationError.kind}))
        return 2

    try:
        result = COMMANDS[argv[0]](request)
    except KeyError as e:
        print(json.dumps({"error": f"Request is missing field {e}", "kind": ValidationError.kind}))
        return 2
    except ModelStudioError as e:
        print(json.dumps({"error": e.message, "kind": e.kind}))
        return 2

    print(json.dumps(result))
    return 0


if __name__ == "__main__":
    sys.exit(main())
