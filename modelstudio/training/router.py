import asyncio
import logging
from typing import List

from fastapi import APIRouter, Depends

from modelstudio.common.auth import verify_internal_key
from modelstudio.common.exceptions import BackendError, ModelStudioError
from modelstudio.training import core
from modelstudio.training.algorithms import ALGORITHMS, describe_hyperparameters
from modelstudio.training.schemas import (
    AlgorithmInfo,
    CompareAlgorithmsRequest,
    CrossValidateRequest,
    TrainModelRequest,
    TrainModelResponse,
    TuneHyperparametersRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/train-model", response_model=TrainModelResponse)
async def train_model(request: TrainModelRequest, _key: str = Depends(verify_internal_key)):
    from modelstudio.models.registry import get_registry

    model = await get_registry().train_model(
        data=request.data,
        features=request.features,
        target=request.target,
        algorithm=request.algorithm,
        dataset_name=request.dataset_name,
        model_name=request.model_name,
        model_id=request.model_id,
        hyperparameters=request.hyperparameters,
    )
    simulated = not model.is_trained
    return TrainModelResponse(
        accuracy=model.accuracy,
        modelId=model.id,
        problemType=model.problem_type,
        simulated=simulated,
        message=(
            f"Simulated {model.algorithm} result; accuracy is not an evaluation"
            if simulated
            else f"{model.algorithm} trained on {len(request.data)} rows"
        ),
    )


@router.get("/algorithms", response_model=List[AlgorithmInfo])
async def list_algorithms():
    return [
        AlgorithmInfo(name=spec.name, family=spec.family, type=spec.model_type, problemType=spec.problem_type)
        for spec in ALGORITHMS.values()
    ]


@router.get("/algorithms/{algorithm}/hyperparameters")
async def get_hyperparameters(algorithm: str):
    return {"algorithm": algorithm, "hyperparameters": describe_hyperparameters(algorithm)}


async def _run_tool(name: str, fn, *args, **kwargs):
    try:
        return await asyncio.to_thread(fn, *args, **kwargs)
    except ModelStudioError:
        raise
    except Exception as e:
        logger.error(f"Error running {name}: {e}")
        raise BackendError(f"{name} failed: {e}") from e


@router.post("/compare-algorithms")
async def compare_algorithms(request: CompareAlgorithmsRequest, _key: str = Depends(verify_internal_key)):
    result = await _run_tool(
        "compare-algorithms",
        core.compare_algorithms,
        request.data,
        request.features,
        request.target,
        family=request.family,
        algorithms=request.algorithms,
    )
    return {"success": True, **result}


@router.post("/cross-validate")
async def cross_validate(request: CrossValidateRequest, _key: str = Depends(verify_internal_key)):
    result = await _run_tool(
        "cross-validate",
        core.cross_validate,
        request.data,
        request.features,
        request.target,
        request.algorithm,
        request.hyperparameters,
        folds=request.folds,
    )
    return {"success": True, **result}


@router.post("/tune-hyperparameters")
async def tune_hyperparameters(request: TuneHyperparametersRequest, _key: str = Depends(verify_internal_key)):
    result = await _run_tool(
        "tune-hyperparameters",
        core.tune_hyperparameters,
        request.data,
        request.features,
        request.target,
        request.algorithm,
        request.grid,
        folds=request.folds,
    )
    return {"success": True, **result}
