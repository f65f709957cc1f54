"""
Algorithm catalog: the closed set of supported algorithms, one typed
hyperparameter record per algorithm, and the dispatch table that ties each
name to its family, model type tag and estimator builder.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Literal, Optional, Type

import pydantic
from pydantic import BaseModel, ConfigDict, Field

from modelstudio.common.exceptions import ValidationError
from modelstudio.training import estimators

SUPERVISED = "supervised"
CLUSTERING = "clustering"
DIMENSIONALITY_REDUCTION = "dimensionality_reduction"
ANOMALY_DETECTION = "anomaly_detection"

CLASSIFICATION = "classification"
REGRESSION = "regression"


class AlgorithmParams(BaseModel):
    model_config = ConfigDict(extra="forbid")


class LinearRegressionParams(AlgorithmParams):
    fit_intercept: bool = Field(True, title="Fit Intercept")


class LogisticRegressionParams(AlgorithmParams):
    C: float = Field(1.0, ge=0.01, le=10.0, title="Inverse Regularization (C)", json_schema_extra={"step": 0.01})
    max_iter: int = Field(1000, ge=100, le=5000, title="Max Iterations", json_schema_extra={"step": 100})


class DecisionTreeParams(AlgorithmParams):
    max_depth: int = Field(10, ge=1, le=50, title="Max Depth", json_schema_extra={"step": 1})
    min_samples_split: int = Field(2, ge=2, le=20, title="Min Samples Split", json_schema_extra={"step": 1})
    criterion: Literal["gini", "entropy"] = Field("gini", title="Split Criterion")


class RandomForestParams(AlgorithmParams):
    n_estimators: int = Field(100, ge=10, le=500, title="Number of Estimators", json_schema_extra={"step": 10})
    max_depth: int = Field(10, ge=1, le=50, title="Max Depth", json_schema_extra={"step": 1})
    min_samples_split: int = Field(2, ge=2, le=20, title="Min Samples Split", json_schema_extra={"step": 1})
    criterion: Literal["gini", "entropy"] = Field("gini", title="Split Criterion")
    bootstrap: bool = Field(True, title="Bootstrap")


class SVMParams(AlgorithmParams):
    C: float = Field(1.0, ge=0.01, le=10.0, title="Regularization (C)", json_schema_extra={"step": 0.01})
    kernel: Literal["rbf", "linear", "poly", "sigmoid"] = Field("rbf", title="Kernel")
    gamma: Literal["scale", "auto"] = Field("scale", title="Gamma")


class KNNParams(AlgorithmParams):
    n_neighbors: int = Field(5, ge=1, le=50, title="Number of Neighbors", json_schema_extra={"step": 1})
    weights: Literal["uniform", "distance"] = Field("uniform", title="Weights")


class NeuralNetworkParams(AlgorithmParams):
    hidden_layers: List[int] = Field(default_factory=lambda: [64, 32], title="Hidden Layers")
    activation: Literal["relu", "tanh", "logistic", "identity"] = Field("relu", title="Activation")
    learning_rate: float = Field(0.001, ge=0.0001, le=1.0, title="Learning Rate", json_schema_extra={"step": 0.0001})
    epochs: int = Field(100, ge=10, le=1000, title="Epochs", json_schema_extra={"step": 10})
    batch_size: int = Field(32, ge=8, le=512, title="Batch Size", json_schema_extra={"step": 8})

    @pydantic.field_validator("hidden_layers")
    @classmethod
    def _positive_layers(cls, v: List[int]) -> List[int]:
        if not v or any(n < 1 for n in v):
            raise ValueError("hidden_layers must be a non-empty list of positive sizes")
        return v


class GradientBoostingParams(AlgorithmParams):
    n_estimators: int = Field(100, ge=10, le=500, title="Number of Estimators", json_schema_extra={"step": 10})
    learning_rate: float = Field(0.1, ge=0.01, le=1.0, title="Learning Rate", json_schema_extra={"step": 0.01})
    max_depth: int = Field(3, ge=1, le=15, title="Max Depth", json_schema_extra={"step": 1})


class AdaBoostParams(AlgorithmParams):
    n_estimators: int = Field(50, ge=10, le=500, title="Number of Estimators", json_schema_extra={"step": 10})
    learning_rate: float = Field(1.0, ge=0.01, le=2.0, title="Learning Rate", json_schema_extra={"step": 0.01})


class NaiveBayesParams(AlgorithmParams):
    var_smoothing: float = Field(1e-9, ge=1e-12, le=1e-3, title="Variance Smoothing")


class XGBoostParams(AlgorithmParams):
    n_estimators: int = Field(100, ge=10, le=1000, title="Number of Estimators", json_schema_extra={"step": 10})
    learning_rate: float = Field(0.1, ge=0.01, le=1.0, title="Learning Rate", json_schema_extra={"step": 0.01})
    max_depth: int = Field(6, ge=1, le=15, title="Max Depth", json_schema_extra={"step": 1})
    subsample: float = Field(1.0, ge=0.5, le=1.0, title="Subsample", json_schema_extra={"step": 0.05})
    colsample_bytree: float = Field(1.0, ge=0.5, le=1.0, title="Column Sample by Tree", json_schema_extra={"step": 0.05})


class LightGBMParams(AlgorithmParams):
    n_estimators: int = Field(100, ge=10, le=1000, title="Number of Estimators", json_schema_extra={"step": 10})
    learning_rate: float = Field(0.1, ge=0.01, le=1.0, title="Learning Rate", json_schema_extra={"step": 0.01})
    max_depth: int = Field(8, ge=1, le=15, title="Max Depth", json_schema_extra={"step": 1})
    num_leaves: int = Field(31, ge=2, le=256, title="Number of Leaves", json_schema_extra={"step": 1})


class CatBoostParams(AlgorithmParams):
    iterations: int = Field(100, ge=10, le=1000, title="Iterations", json_schema_extra={"step": 10})
    learning_rate: float = Field(0.05, ge=0.01, le=1.0, title="Learning Rate", json_schema_extra={"step": 0.01})
    depth: int = Field(6, ge=1, le=10, title="Depth", json_schema_extra={"step": 1})


class GaussianProcessParams(AlgorithmParams):
    n_restarts_optimizer: int = Field(0, ge=0, le=10, title="Optimizer Restarts", json_schema_extra={"step": 1})


class KMeansParams(AlgorithmParams):
    n_clusters: int = Field(3, ge=2, le=20, title="Number of Clusters", json_schema_extra={"step": 1})
    max_iter: int = Field(300, ge=10, le=1000, title="Max Iterations", json_schema_extra={"step": 10})


class DBSCANParams(AlgorithmParams):
    eps: float = Field(0.5, ge=0.01, le=10.0, title="Epsilon", json_schema_extra={"step": 0.01})
    min_samples: int = Field(5, ge=1, le=50, title="Min Samples", json_schema_extra={"step": 1})


class PCAParams(AlgorithmParams):
    n_components: int = Field(2, ge=1, le=50, title="Number of Components", json_schema_extra={"step": 1})


class LDAParams(AlgorithmParams):
    solver: Literal["svd", "lsqr", "eigen"] = Field("svd", title="Solver")


class IsolationForestParams(AlgorithmParams):
    contamination: float = Field(0.1, ge=0.01, le=0.5, title="Contamination", json_schema_extra={"step": 0.01})
    n_estimators: int = Field(100, ge=10, le=500, title="Number of Estimators", json_schema_extra={"step": 10})
    max_samples: int = Field(100, ge=10, le=1000, title="Max Samples", json_schema_extra={"step": 10})


@dataclass(frozen=True)
class AlgorithmSpec:
    name: str
    family: str
    model_type: str
    params: Type[AlgorithmParams]
    build: Callable[[AlgorithmParams, Optional[str]], Any]
    # Fixed problem type; None means inferred from the target column
    problem_type: Optional[str] = None
    # Parameter that an "epochs" override maps to during fine-tuning
    epochs_param: Optional[str] = None
    # Simulated accuracy band (low, width) for the non-authoritative trainer
    simulated_band: tuple = (0.70, 0.20)

    @property
    def is_supervised(self) -> bool:
        return self.family == SUPERVISED or self.problem_type is not None


ALGORITHMS: Dict[str, AlgorithmSpec] = {
    spec.name: spec
    for spec in [
        AlgorithmSpec("Linear Regression", SUPERVISED, "ML", LinearRegressionParams,
                      estimators.linear_regression, REGRESSION, None, (0.75, 0.15)),
        AlgorithmSpec("Logistic Regression", SUPERVISED, "ML", LogisticRegressionParams,
                      estimators.logistic_regression, CLASSIFICATION, "max_iter", (0.78, 0.12)),
        AlgorithmSpec("Decision Tree", SUPERVISED, "ML", DecisionTreeParams,
                      estimators.decision_tree, None, None, (0.82, 0.10)),
        AlgorithmSpec("Random Forest", SUPERVISED, "ML", RandomForestParams,
                      estimators.random_forest, None, "n_estimators", (0.85, 0.10)),
        AlgorithmSpec("SVM", SUPERVISED, "ML", SVMParams,
                      estimators.svm, None, None, (0.80, 0.15)),
        AlgorithmSpec("KNN", SUPERVISED, "ML", KNNParams,
                      estimators.knn, None, None, (0.76, 0.14)),
        AlgorithmSpec("Neural Network", SUPERVISED, "DL", NeuralNetworkParams,
                      estimators.neural_network, None, "epochs", (0.81, 0.15)),
        AlgorithmSpec("Gradient Boosting", SUPERVISED, "ML", GradientBoostingParams,
                      estimators.gradient_boosting, None, "n_estimators", (0.87, 0.08)),
        AlgorithmSpec("AdaBoost", SUPERVISED, "ML", AdaBoostParams,
                      estimators.adaboost, None, "n_estimators", (0.83, 0.09)),
        AlgorithmSpec("Naive Bayes", SUPERVISED, "ML", NaiveBayesParams,
                      estimators.naive_bayes, CLASSIFICATION, None, (0.77, 0.13)),
        AlgorithmSpec("XGBoost", SUPERVISED, "ML", XGBoostParams,
                      estimators.xgboost, None, "n_estimators", (0.88, 0.07)),
        AlgorithmSpec("LightGBM", SUPERVISED, "ML", LightGBMParams,
                      estimators.lightgbm, None, "n_estimators", (0.89, 0.06)),
        AlgorithmSpec("CatBoost", SUPERVISED, "ML", CatBoostParams,
                      estimators.catboost, None, "iterations", (0.90, 0.05)),
        AlgorithmSpec("Gaussian Process", SUPERVISED, "ML", GaussianProcessParams,
                      estimators.gaussian_process, None, None, (0.79, 0.15)),
        AlgorithmSpec("K-Means", CLUSTERING, "Clustering", KMeansParams,
                      estimators.kmeans, None, "max_iter", (0.72, 0.18)),
        AlgorithmSpec("DBSCAN", CLUSTERING, "Clustering", DBSCANParams,
                      estimators.dbscan, None, None, (0.74, 0.16)),
        AlgorithmSpec("PCA", DIMENSIONALITY_REDUCTION, "Dimensionality Reduction", PCAParams,
                      estimators.pca, None, None, (0.65, 0.25)),
        AlgorithmSpec("LDA", DIMENSIONALITY_REDUCTION, "Dimensionality Reduction", LDAParams,
                      estimators.lda, CLASSIFICATION, None, (0.68, 0.22)),
        AlgorithmSpec("Isolation Forest", ANOMALY_DETECTION, "Anomaly Detection", IsolationForestParams,
                      estimators.isolation_forest, None, "n_estimators", (0.81, 0.12)),
    ]
}

ALGORITHM_NAMES = tuple(ALGORITHMS)

MODEL_TYPES = ("ML", "DL", "Clustering", "Dimensionality Reduction", "Anomaly Detection")


def get_algorithm(name: str) -> AlgorithmSpec:
    spec = ALGORITHMS.get(name)
    if spec is None:
        raise ValidationError(
            f"Unsupported algorithm '{name}'. Supported: {', '.join(ALGORITHM_NAMES)}"
        )
    return spec


def resolve_parameters(algorithm: str, params: Optional[Dict[str, Any]] = None) -> AlgorithmParams:
    """Validate a free-form parameter mapping against the algorithm's schema.

    Missing keys take their defaults; unknown keys and out-of-range values
    raise ValidationError.
    """
    spec = get_algorithm(algorithm)
    try:
        return spec.params.model_validate(params or {})
    except pydantic.ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'parameters'}: {err['msg']}"
            for err in e.errors()
        )
        raise ValidationError(f"Invalid hyperparameters for {algorithm}: {problems}") from e


def model_type_for(algorithm: str) -> str:
    return get_algorithm(algorithm).model_type


def algorithms_in_family(family: str) -> List[str]:
    return [name for name, spec in ALGORITHMS.items() if spec.family == family]


def describe_hyperparameters(algorithm: str) -> List[Dict[str, Any]]:
    """Hyperparameter options for tuning forms: name, label, kind, bounds, default."""
    spec = get_algorithm(algorithm)
    schema = spec.params.model_json_schema()
    options = []
    for name, prop in schema.get("properties", {}).items():
        option: Dict[str, Any] = {
            "name": name,
            "label": prop.get("title", name),
            "default": prop.get("default"),
        }
        if "enum" in prop:
            option["kind"] = "select"
            option["options"] = prop["enum"]
        elif prop.get("type") == "boolean":
            option["kind"] = "boolean"
        elif prop.get("type") in ("integer", "number"):
            option["kind"] = "range" if prop["type"] == "integer" else "number"
            option["min"] = prop.get("minimum")
            option["max"] = prop.get("maximum")
            option["step"] = prop.get("step", 1 if prop["type"] == "integer" else None)
        else:
            # Structured values (layer lists) are edited outside the generic form
            continue
        options.append(option)
    return options
