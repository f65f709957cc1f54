import logging
import uuid

from fastapi import APIRouter

from modelstudio.export.notebook import build_notebook, notebook_to_json
from modelstudio.export.schemas import NotebookRequest, NotebookResponse
from modelstudio.models.registry import check_model_id

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/generate-colab-notebook", response_model=NotebookResponse)
async def generate_colab_notebook(request: NotebookRequest):
    model_id = check_model_id(request.model_id or str(uuid.uuid4()))
    nb = build_notebook(
        data=request.data,
        features=request.features,
        targets=request.targets,
        algorithm=request.algorithm,
        dataset_name=request.dataset_name,
        model_id=model_id,
        architecture=[layer.model_dump() for layer in request.architecture] if request.architecture else None,
        epochs=request.epochs,
        learning_rate=request.learning_rate,
    )
    return NotebookResponse(
        modelId=model_id,
        notebookContent=notebook_to_json(nb),
        message="Notebook generated. Upload it to Colab, run all cells, then import the saved model files.",
    )
