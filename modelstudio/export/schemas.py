from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class LayerSpec(BaseModel):
    neurons: int = Field(..., ge=1, le=4096)
    activation: str = "relu"
    dropout: float = Field(0.0, ge=0.0, lt=1.0)


class NotebookRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    data: List[Dict[str, Any]]
    features: List[str]
    targets: List[str]
    algorithm: Optional[str] = None
    dataset_name: str = Field(..., alias="datasetName", min_length=1)
    model_id: Optional[str] = Field(None, alias="modelId")
    architecture: Optional[List[LayerSpec]] = Field(
        None, validation_alias=AliasChoices("architecture", "neuralNetworkArchitecture")
    )
    epochs: int = Field(100, ge=1, le=10000)
    learning_rate: float = Field(0.001, alias="learningRate", gt=0.0, le=10.0)


class NotebookResponse(BaseModel):
    success: bool = True
    modelId: str
    notebookContent: str
    message: str
