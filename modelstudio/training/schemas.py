from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from modelstudio.training.algorithms import SUPERVISED

_request_config = ConfigDict(populate_by_name=True, protected_namespaces=())


class DatasetRequest(BaseModel):
    model_config = _request_config

    data: List[Dict[str, Any]]
    features: List[str]
    target: Union[str, List[str]]


class TrainModelRequest(DatasetRequest):
    algorithm: str
    model_id: Optional[str] = Field(None, alias="modelId")
    dataset_name: str = Field(..., alias="datasetName", min_length=1)
    model_name: Optional[str] = Field(None, alias="modelName")
    hyperparameters: Optional[Dict[str, Any]] = None


class TrainModelResponse(BaseModel):
    success: bool = True
    accuracy: float = Field(..., ge=0.0, le=1.0)
    modelId: str
    problemType: Optional[str] = None
    simulated: bool = False
    message: str


class CompareAlgorithmsRequest(DatasetRequest):
    family: str = SUPERVISED
    algorithms: Optional[List[str]] = None


class CrossValidateRequest(BaseModel):
    model_config = _request_config

    data: List[Dict[str, Any]]
    features: List[str]
    target: str
    algorithm: str
    hyperparameters: Optional[Dict[str, Any]] = None
    folds: int = Field(5, ge=2, le=20)


class TuneHyperparametersRequest(BaseModel):
    model_config = _request_config

    data: List[Dict[str, Any]]
    features: List[str]
    target: str
    algorithm: str
    grid: Dict[str, List[Any]]
    folds: int = Field(3, ge=2, le=20)


class AlgorithmInfo(BaseModel):
    name: str
    family: str
    type: str
    problemType: Optional[str] = None
