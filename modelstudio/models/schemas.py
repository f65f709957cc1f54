from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import AliasGenerator, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# Responses use the dashboard's camelCase names; ORM rows validate by field name
_response_config = ConfigDict(
    from_attributes=True,
    alias_generator=AliasGenerator(serialization_alias=to_camel),
    protected_namespaces=(),
)


class ModelRecord(BaseModel):
    model_config = _response_config

    id: str
    name: str
    model_type: str = Field(serialization_alias="type")
    algorithm: str
    accuracy: float = Field(..., ge=0.0, le=1.0)
    dataset_name: str
    parameters: Dict[str, Any] = {}
    features: List[str] = []
    targets: List[str] = []
    problem_type: Optional[str] = None
    metrics: Optional[Dict[str, Any]] = None
    is_trained: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ModelVersionInfo(BaseModel):
    model_config = _response_config

    id: str
    model_id: str
    version_number: int
    version_label: str
    algorithm: str
    parameters: Dict[str, Any] = {}
    accuracy: float
    metrics: Optional[Dict[str, Any]] = None
    is_active: bool = False
    created_at: Optional[datetime] = None


class FeatureImportance(BaseModel):
    feature: str
    importance: float


class ModelPatch(BaseModel):
    """Only descriptive fields; accuracy, algorithm and parameters change through training."""
    model_config = ConfigDict(extra="forbid", populate_by_name=True, protected_namespaces=())

    name: Optional[str] = Field(None, min_length=1, max_length=255)
    dataset_name: Optional[str] = Field(None, alias="datasetName", min_length=1, max_length=255)
    model_type: Optional[str] = Field(None, alias="type", min_length=1, max_length=100)


class FineTuneRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    epochs: Optional[int] = Field(None, ge=1, le=10000)
    learning_rate: Optional[float] = Field(None, alias="learningRate", gt=0.0, le=10.0)
    hyperparameters: Dict[str, Any] = {}


class ImportModelRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    model_id: str = Field(..., alias="modelId", min_length=1, max_length=64)
    dataset_name: str = Field(..., alias="datasetName", min_length=1)
    model_name: Optional[str] = Field(None, alias="modelName")


class ImportModelResponse(BaseModel):
    success: bool = True
    modelId: str
    accuracy: float
    message: str


def dump_model(model) -> Dict[str, Any]:
    return ModelRecord.model_validate(model).model_dump(mode="json", by_alias=True)
