import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response

from modelstudio.common.auth import verify_internal_key
from modelstudio.models.registry import get_registry
from modelstudio.models.schemas import (
    FeatureImportance,
    FineTuneRequest,
    ImportModelRequest,
    ImportModelResponse,
    ModelPatch,
    ModelRecord,
    ModelVersionInfo,
    dump_model,
)

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/models", response_model=List[ModelRecord])
async def list_models(
    dataset_name: Optional[str] = Query(None, alias="datasetName"),
    model_type: Optional[str] = Query(None, alias="type"),
):
    models = await get_registry().list_models(dataset_name=dataset_name, model_type=model_type)
    return [ModelRecord.model_validate(m) for m in models]


@router.get("/models/best", response_model=ModelRecord)
async def get_best_model(
    dataset_name: str = Query(..., alias="datasetName"),
    model_type: Optional[str] = Query(None, alias="type"),
):
    return ModelRecord.model_validate(
        await get_registry().get_best_model(dataset_name, model_type=model_type)
    )


@router.get("/models/{model_id}", response_model=ModelRecord)
async def get_model(model_id: str):
    return ModelRecord.model_validate(await get_registry().get_model(model_id))


@router.patch("/models/{model_id}")
async def update_model(model_id: str, patch: ModelPatch, _key: str = Depends(verify_internal_key)):
    model = await get_registry().update_model(model_id, patch.model_dump(exclude_none=True))
    return {"success": True, "message": f"Updated model {model_id}", "model": dump_model(model)}


@router.delete("/models/{model_id}")
async def delete_model(model_id: str, _key: str = Depends(verify_internal_key)):
    await get_registry().delete_model(model_id)
    return {"success": True, "message": f"Deleted model {model_id}"}


@router.post("/models/{model_id}/fine-tune")
async def fine_tune_model(model_id: str, body: FineTuneRequest, _key: str = Depends(verify_internal_key)):
    model = await get_registry().fine_tune_model(
        model_id,
        epochs=body.epochs,
        learning_rate=body.learning_rate,
        hyperparameters=body.hyperparameters,
    )
    return {
        "success": True,
        "message": f"Fine-tuned model {model_id}",
        "accuracy": model.accuracy,
        "model": dump_model(model),
    }


@router.get("/models/{model_id}/versions", response_model=List[ModelVersionInfo])
async def list_versions(model_id: str):
    versions = await get_registry().list_versions(model_id)
    return [ModelVersionInfo.model_validate(v) for v in versions]


@router.post("/models/{model_id}/versions/{version_id}/activate")
async def activate_version(model_id: str, version_id: str, _key: str = Depends(verify_internal_key)):
    model = await get_registry().activate_version(model_id, version_id)
    return {
        "success": True,
        "message": f"Activated version {version_id} of model {model_id}",
        "model": dump_model(model),
    }


@router.get("/models/{model_id}/download")
async def download_model(model_id: str, format: str = Query("json")):
    exported = await get_registry().download_model(model_id, format)
    return Response(
        content=exported.content,
        media_type=exported.media_type,
        headers={"Content-Disposition": f'attachment; filename="{exported.filename}"'},
    )


@router.get("/models/{model_id}/feature-importance", response_model=List[FeatureImportance])
async def get_feature_importance(model_id: str):
    return await get_registry().feature_importance(model_id)


@router.post("/import-trained-model", response_model=ImportModelResponse)
async def import_trained_model(request: ImportModelRequest, _key: str = Depends(verify_internal_key)):
    model = await get_registry().import_trained_model(
        request.model_id, request.dataset_name, model_name=request.model_name
    )
    return ImportModelResponse(
        modelId=model.id,
        accuracy=model.accuracy,
        message=f"Imported {model.algorithm} model {model.id}",
    )
