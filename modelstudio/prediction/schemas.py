from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class PredictWithModelRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    model_id: str = Field(..., alias="modelId", min_length=1)
    input_data: List[Union[Dict[str, Any], List[Any]]] = Field(
        ..., alias="inputData", description="Feature vectors in training order, or mappings by feature name"
    )


class PredictWithModelResponse(BaseModel):
    success: bool = True
    predictions: List[Any]
    probabilities: Optional[List[Dict[str, float]]] = None
    explanation: Optional[Dict[str, Dict[str, float]]] = None
