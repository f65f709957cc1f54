import logging

from fastapi import APIRouter, Depends

from modelstudio.common.auth import verify_internal_key
from modelstudio.prediction.schemas import PredictWithModelRequest, PredictWithModelResponse

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/predict-with-model",
    response_model=PredictWithModelResponse,
    response_model_exclude_none=True,
)
async def predict_with_model(request: PredictWithModelRequest, _key: str = Depends(verify_internal_key)):
    from modelstudio.models.registry import get_registry

    result = await get_registry().predict_with_model(request.model_id, request.input_data)
    return PredictWithModelResponse(**result)
