"""
Synchronous training, scoring and inference over tabular rows.

Used in-process by LocalTrainer / LocalPredictor and inside the worker
subprocess. Accuracy is always computed on data the estimator did not see
during fitting (held-out split) or, for clustering, from the fitted
partition itself, and always lands in [0, 1].
"""

import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union

import numpy as np
import pandas as pd
from sklearn.metrics import (
    accuracy_score,
    f1_score,
    mean_absolute_error,
    mean_squared_error,
    r2_score,
    silhouette_score,
)
from sklearn.model_selection import KFold, StratifiedKFold, cross_val_score, train_test_split
from sklearn.pipeline import make_pipeline
from sklearn.preprocessing import LabelEncoder, StandardScaler

from modelstudio.common.exceptions import BackendError, ValidationError
from modelstudio.config import settings
from modelstudio.training.algorithms import (
    ANOMALY_DETECTION,
    CLASSIFICATION,
    CLUSTERING,
    REGRESSION,
    SUPERVISED,
    AlgorithmSpec,
    algorithms_in_family,
    get_algorithm,
    resolve_parameters,
)

logger = logging.getLogger(__name__)

MIN_TRAINING_ROWS = 5
MAX_TUNING_TRIALS = 50

Row = Union[Dict[str, Any], Sequence[Any]]


@dataclass
class ModelBundle:
    """Everything needed to score new rows with a trained model."""
    algorithm: str
    problem_type: Optional[str]
    features: List[str]
    targets: List[str]
    parameters: Dict[str, Any]
    scalers: Dict[str, StandardScaler]
    estimators: Dict[str, Any]
    label_encoders: Dict[str, LabelEncoder] = field(default_factory=dict)


@dataclass
class TrainingResult:
    algorithm: str
    accuracy: float
    parameters: Dict[str, Any]
    metrics: Dict[str, Dict[str, float]] = field(default_factory=dict)
    problem_type: Optional[str] = None
    features: List[str] = field(default_factory=list)
    targets: List[str] = field(default_factory=list)
    bundle: Optional[ModelBundle] = None
    # Set when the model lives in another service instead of a local bundle
    remote_ref: Optional[str] = None
    simulated: bool = False

    def summary(self) -> Dict[str, Any]:
        return {
            "algorithm": self.algorithm,
            "accuracy": self.accuracy,
            "parameters": self.parameters,
            "metrics": self.metrics,
            "problem_type": self.problem_type,
            "features": self.features,
            "targets": self.targets,
            "simulated": self.simulated,
        }


def as_target_list(target: Union[str, Sequence[str]]) -> List[str]:
    if isinstance(target, str):
        return [target]
    return list(target)


def validate_request(data: List[Dict[str, Any]], features: List[str], targets: List[str]) -> None:
    if not data:
        raise ValidationError("Training data is empty")
    if len(data) > settings.MAX_TRAINING_ROWS:
        raise ValidationError(
            f"Training data has {len(data)} rows; the limit is {settings.MAX_TRAINING_ROWS}"
        )
    if not features:
        raise ValidationError("At least one feature column is required")
    if len(set(features)) != len(features):
        dupes = sorted({f for f in features if features.count(f) > 1})
        raise ValidationError(f"Duplicate feature columns: {', '.join(dupes)}")
    if not targets:
        raise ValidationError("At least one target column is required")
    overlap = set(features) & set(targets)
    if overlap:
        raise ValidationError(f"Columns used as both feature and target: {', '.join(sorted(overlap))}")

    required = list(features) + list(targets)
    for i, row in enumerate(data):
        if not isinstance(row, dict):
            raise ValidationError(f"Row {i} is not a mapping of column name to value")
        missing = [c for c in required if c not in row]
        if missing:
            raise ValidationError(f"Row {i} is missing column(s): {', '.join(missing)}")


def _feature_matrix(frame: pd.DataFrame, features: List[str]) -> np.ndarray:
    X = frame[features]
    for col in features:
        converted = pd.to_numeric(X[col], errors="coerce")
        if converted.isna().any():
            raise ValidationError(f"Feature column '{col}' must contain only numeric values")
    return X.apply(pd.to_numeric).to_numpy(dtype=float)


def infer_problem_type(y: pd.Series) -> str:
    if y.isna().any():
        raise ValidationError(f"Target column '{y.name}' contains missing values")
    if pd.api.types.is_bool_dtype(y) or not pd.api.types.is_numeric_dtype(y):
        return CLASSIFICATION
    values = y.to_numpy(dtype=float)
    if np.all(np.mod(values, 1) == 0) and y.nunique() <= settings.CLASSIFICATION_MAX_CLASSES:
        return CLASSIFICATION
    return REGRESSION


def _resolve_problem_type(spec: AlgorithmSpec, y: pd.Series) -> str:
    inferred = infer_problem_type(y)
    if spec.problem_type is None:
        return inferred
    if spec.problem_type == CLASSIFICATION and inferred == REGRESSION:
        raise ValidationError(
            f"{spec.name} needs a categorical target; '{y.name}' is continuous"
        )
    if spec.problem_type == REGRESSION and not pd.api.types.is_numeric_dtype(y):
        raise ValidationError(f"{spec.name} needs a numeric target; '{y.name}' is not numeric")
    return spec.problem_type


def _can_stratify(y: np.ndarray, test_size: float) -> bool:
    _, counts = np.unique(y, return_counts=True)
    n_test = int(np.ceil(test_size * len(y)))
    return counts.min() >= 2 and n_test >= len(counts) and len(y) - n_test >= len(counts)


def _clip01(value: float) -> float:
    if value is None or not np.isfinite(value):
        return 0.0
    return float(min(1.0, max(0.0, value)))


def _fit_supervised(spec, params, X, y_raw: pd.Series, problem_type):
    encoder = None
    if problem_type == CLASSIFICATION:
        encoder = LabelEncoder()
        y = encoder.fit_transform(y_raw.astype(str) if not pd.api.types.is_numeric_dtype(y_raw) else y_raw)
        if len(encoder.classes_) < 2:
            raise ValidationError(f"Target column '{y_raw.name}' has a single class")
    else:
        y = y_raw.to_numpy(dtype=float)

    stratify = y if problem_type == CLASSIFICATION and _can_stratify(y, settings.TEST_SIZE) else None
    X_train, X_test, y_train, y_test = train_test_split(
        X, y, test_size=settings.TEST_SIZE, random_state=settings.RANDOM_STATE, stratify=stratify,
    )

    scaler = StandardScaler()
    X_train = scaler.fit_transform(X_train)
    X_test = scaler.transform(X_test)

    estimator = spec.build(params, problem_type)
    estimator.fit(X_train, y_train)
    y_pred = estimator.predict(X_test)

    if problem_type == CLASSIFICATION:
        y_pred = np.asarray(y_pred).astype(int).ravel()
        metrics = {
            "accuracy": _clip01(accuracy_score(y_test, y_pred)),
            "f1_score": _clip01(f1_score(y_test, y_pred, average="weighted")),
        }
    else:
        r2 = r2_score(y_test, y_pred)
        metrics = {
            "accuracy": _clip01(r2),
            "r2": float(r2),
            "rmse": float(np.sqrt(mean_squared_error(y_test, y_pred))),
            "mae": float(mean_absolute_error(y_test, y_pred)),
        }
    return estimator, scaler, encoder, metrics


def _silhouette01(X: np.ndarray, labels: np.ndarray) -> float:
    n_labels = len(np.unique(labels))
    if n_labels < 2 or n_labels > len(X) - 1:
        return 0.0
    return _clip01((silhouette_score(X, labels) + 1.0) / 2.0)


def _fit_unsupervised(spec, params, X, y_raw: pd.Series):
    scaler = StandardScaler()

    if spec.family == CLUSTERING:
        X_scaled = scaler.fit_transform(X)
        estimator = spec.build(params, None)
        labels = estimator.fit_predict(X_scaled)
        n_clusters = int(len(set(labels) - {-1}))
        return estimator, scaler, {
            "accuracy": _silhouette01(X_scaled, labels),
            "n_clusters": float(n_clusters),
        }

    if spec.family == ANOMALY_DETECTION:
        X_train, X_test, _, y_test = train_test_split(
            X, y_raw.to_numpy(), test_size=settings.TEST_SIZE, random_state=settings.RANDOM_STATE,
        )
        X_train = scaler.fit_transform(X_train)
        X_test = scaler.transform(X_test)
        estimator = spec.build(params, None)
        estimator.fit(X_train)
        flagged = estimator.predict(X_test) == -1
        outlier_rate = float(flagged.mean())
        values, counts = np.unique(y_raw.to_numpy(), return_counts=True)
        if len(values) == 2:
            # The rarer label is taken as the anomaly class
            anomaly_value = values[np.argmin(counts)]
            score = float(np.mean(flagged == (y_test == anomaly_value)))
        else:
            score = 1.0 - abs(outlier_rate - params.contamination)
        return estimator, scaler, {"accuracy": _clip01(score), "outlier_rate": outlier_rate}

    # Dimensionality reduction
    X_scaled = scaler.fit_transform(X)
    n_components = getattr(params, "n_components", None)
    if n_components is not None and n_components > min(X_scaled.shape):
        raise ValidationError(
            f"n_components={n_components} exceeds min(rows, features)={min(X_scaled.shape)}"
        )
    estimator = spec.build(params, None)
    estimator.fit(X_scaled)
    retained = float(np.sum(estimator.explained_variance_ratio_))
    return estimator, scaler, {"accuracy": _clip01(retained), "explained_variance": retained}


def fit_bundle(
    data: List[Dict[str, Any]],
    features: List[str],
    target: Union[str, Sequence[str]],
    algorithm: str,
    params: Optional[Dict[str, Any]] = None,
) -> TrainingResult:
    """Train one estimator per target and score each on a held-out split.

    Raises ValidationError for malformed requests and BackendError when the
    estimator itself fails.
    """
    targets = as_target_list(target)
    spec = get_algorithm(algorithm)
    resolved = resolve_parameters(algorithm, params)
    validate_request(data, features, targets)
    if len(data) < MIN_TRAINING_ROWS:
        raise ValidationError(f"At least {MIN_TRAINING_ROWS} rows are required to train a model")

    frame = pd.DataFrame(data)
    X = _feature_matrix(frame, features)

    estimators: Dict[str, Any] = {}
    scalers: Dict[str, StandardScaler] = {}
    encoders: Dict[str, LabelEncoder] = {}
    metrics: Dict[str, Dict[str, float]] = {}
    problem_type: Optional[str] = None

    logger.info(f"Training {algorithm} on {len(data)} rows, {len(features)} features, targets={targets}")
    try:
        if spec.is_supervised:
            for t in targets:
                problem_type = _resolve_problem_type(spec, frame[t])
                estimator, scaler, encoder, target_metrics = _fit_supervised(
                    spec, resolved, X, frame[t], problem_type
                )
                estimators[t] = estimator
                scalers[t] = scaler
                if encoder is not None:
                    encoders[t] = encoder
                metrics[t] = target_metrics
        else:
            # Unsupervised families fit once; the first target only informs scoring
            estimator, scaler, target_metrics = _fit_unsupervised(spec, resolved, X, frame[targets[0]])
            estimators[targets[0]] = estimator
            scalers[targets[0]] = scaler
            metrics[targets[0]] = target_metrics
    except ValidationError:
        raise
    except Exception as e:
        logger.error(f"{algorithm} training failed: {e}")
        raise BackendError(f"{algorithm} training failed: {e}") from e

    accuracy = _clip01(float(np.mean([m["accuracy"] for m in metrics.values()])))
    parameters = resolved.model_dump()

    bundle = ModelBundle(
        algorithm=algorithm,
        problem_type=problem_type,
        features=list(features),
        targets=targets,
        parameters=parameters,
        scalers=scalers,
        estimators=estimators,
        label_encoders=encoders,
    )
    logger.info(f"Trained {algorithm}: accuracy={accuracy:.4f}")
    return TrainingResult(
        algorithm=algorithm,
        accuracy=accuracy,
        parameters=parameters,
        metrics=metrics,
        problem_type=problem_type,
        features=list(features),
        targets=targets,
        bundle=bundle,
    )


def _to_python(value):
    if isinstance(value, np.generic):
        return value.item()
    return value


def rows_to_matrix(rows: List[Row], features: List[str]) -> np.ndarray:
    """Turn feature vectors or feature mappings into a matrix in training order.

    Length mismatches are rejected, never truncated or padded.
    """
    if not rows:
        raise ValidationError("inputData must contain at least one row")
    matrix = []
    for i, row in enumerate(rows):
        if isinstance(row, dict):
            missing = [f for f in features if f not in row]
            if missing:
                raise ValidationError(f"Input row {i} is missing feature(s): {', '.join(missing)}")
            values = [row[f] for f in features]
        elif isinstance(row, (list, tuple)):
            if len(row) != len(features):
                raise ValidationError(
                    f"Input row {i} has {len(row)} values; the model expects {len(features)}"
                )
            values = list(row)
        else:
            raise ValidationError(f"Input row {i} must be a list of values or a mapping")
        try:
            matrix.append([float(v) for v in values])
        except (TypeError, ValueError):
            raise ValidationError(f"Input row {i} contains non-numeric values")
    return np.asarray(matrix, dtype=float)


def explain(bundle: ModelBundle) -> Optional[Dict[str, Dict[str, float]]]:
    """Feature-importance weights for tree models, coefficients for linear ones."""
    estimator = next(iter(bundle.estimators.values()))
    importances = getattr(estimator, "feature_importances_", None)
    if importances is not None:
        importances = np.asarray(importances, dtype=float)
        total = importances.sum()
        if total > 0:
            importances = importances / total
        return {"feature_importance": {
            f: float(w) for f, w in zip(bundle.features, importances)
        }}
    # SVC only exposes coef_ for the linear kernel
    coef = getattr(estimator, "coef_", None)
    if coef is not None:
        coef = np.asarray(coef, dtype=float)
        if coef.ndim > 1:
            coef = coef[0] if coef.shape[0] == 1 else np.abs(coef).mean(axis=0)
        return {"coefficients": {f: float(c) for f, c in zip(bundle.features, coef)}}
    return None


def feature_importance(bundle: ModelBundle) -> List[Dict[str, Any]]:
    explanation = explain(bundle) or {}
    weights = explanation.get("feature_importance") or {
        f: abs(c) for f, c in explanation.get("coefficients", {}).items()
    }
    total = sum(weights.values())
    ranked = [
        {"feature": f, "importance": (w / total) if total else 0.0}
        for f, w in weights.items()
    ]
    return sorted(ranked, key=lambda r: r["importance"], reverse=True)


def _predict_one_target(bundle: ModelBundle, target: str, X_raw: np.ndarray) -> List[Any]:
    estimator = bundle.estimators[target]
    X = bundle.scalers[target].transform(X_raw)
    spec = get_algorithm(bundle.algorithm)

    if not spec.is_supervised:
        if spec.family == CLUSTERING:
            if not hasattr(estimator, "predict"):
                raise BackendError(f"{bundle.algorithm} models cannot assign clusters to new rows")
            return [int(v) for v in estimator.predict(X)]
        if spec.family == ANOMALY_DETECTION:
            return ["anomaly" if v == -1 else "normal" for v in estimator.predict(X)]
        return np.asarray(estimator.transform(X)).tolist()

    raw = np.asarray(estimator.predict(X)).ravel()
    encoder = bundle.label_encoders.get(target)
    if encoder is not None:
        return [_to_python(v) for v in encoder.inverse_transform(raw.astype(int))]
    return [float(v) for v in raw]


def predict_bundle(bundle: ModelBundle, rows: List[Row]) -> Dict[str, Any]:
    """One prediction per input row, in input order."""
    X_raw = rows_to_matrix(rows, bundle.features)

    try:
        per_target = {t: _predict_one_target(bundle, t, X_raw) for t in bundle.targets if t in bundle.estimators}
    except (ValidationError, BackendError):
        raise
    except Exception as e:
        logger.error(f"Prediction with {bundle.algorithm} failed: {e}")
        raise BackendError(f"Prediction failed: {e}") from e

    if len(per_target) == 1:
        predictions = next(iter(per_target.values()))
    else:
        predictions = [
            {t: values[i] for t, values in per_target.items()} for i in range(len(X_raw))
        ]

    result: Dict[str, Any] = {"predictions": predictions}

    if len(per_target) == 1 and bundle.problem_type == CLASSIFICATION:
        target = next(iter(per_target))
        estimator = bundle.estimators[target]
        encoder = bundle.label_encoders.get(target)
        if encoder is not None and hasattr(estimator, "predict_proba"):
            try:
                proba = np.asarray(estimator.predict_proba(bundle.scalers[target].transform(X_raw)))
            except Exception as e:
                raise BackendError(f"Probability estimation failed: {e}") from e
            classes = [str(_to_python(c)) for c in encoder.classes_]
            result["probabilities"] = [
                {classes[j]: float(p) for j, p in enumerate(row)} for row in proba
            ]

    explanation = explain(bundle) if get_algorithm(bundle.algorithm).is_supervised else None
    if explanation:
        result["explanation"] = explanation
    return result


def _cv_setup(data, features, target, algorithm, folds):
    spec = get_algorithm(algorithm)
    if not spec.is_supervised:
        raise ValidationError(f"{algorithm} is unsupervised; cross-validation needs a supervised algorithm")
    validate_request(data, features, [target])
    if folds < 2:
        raise ValidationError("folds must be at least 2")
    if len(data) < folds:
        raise ValidationError(f"{folds}-fold cross-validation needs at least {folds} rows")

    frame = pd.DataFrame(data)
    X = _feature_matrix(frame, features)
    problem_type = _resolve_problem_type(spec, frame[target])
    if problem_type == CLASSIFICATION:
        y = LabelEncoder().fit_transform(frame[target].astype(str))
        _, counts = np.unique(y, return_counts=True)
        splitter = (
            StratifiedKFold(n_splits=folds, shuffle=True, random_state=settings.RANDOM_STATE)
            if counts.min() >= folds
            else KFold(n_splits=folds, shuffle=True, random_state=settings.RANDOM_STATE)
        )
        scoring = "accuracy"
    else:
        y = frame[target].to_numpy(dtype=float)
        splitter = KFold(n_splits=folds, shuffle=True, random_state=settings.RANDOM_STATE)
        scoring = "r2"
    return spec, problem_type, X, y, splitter, scoring


def _cv_scores(spec, resolved, problem_type, X, y, splitter, scoring) -> List[float]:
    pipeline = make_pipeline(StandardScaler(), spec.build(resolved, problem_type))
    try:
        scores = cross_val_score(pipeline, X, y, cv=splitter, scoring=scoring, error_score="raise")
    except Exception as e:
        raise BackendError(f"{spec.name} cross-validation failed: {e}") from e
    return [_clip01(s) for s in scores]


def cross_validate(
    data: List[Dict[str, Any]],
    features: List[str],
    target: str,
    algorithm: str,
    params: Optional[Dict[str, Any]] = None,
    folds: int = 5,
) -> Dict[str, Any]:
    resolved = resolve_parameters(algorithm, params)
    spec, problem_type, X, y, splitter, scoring = _cv_setup(data, features, target, algorithm, folds)
    scores = _cv_scores(spec, resolved, problem_type, X, y, splitter, scoring)
    return {
        "algorithm": algorithm,
        "problem_type": problem_type,
        "scoring": scoring,
        "fold_scores": scores,
        "mean": float(np.mean(scores)),
        "std": float(np.std(scores)),
        "parameters": resolved.model_dump(),
    }


def tune_hyperparameters(
    data: List[Dict[str, Any]],
    features: List[str],
    target: str,
    algorithm: str,
    grid: Dict[str, List[Any]],
    folds: int = 3,
) -> Dict[str, Any]:
    """Exhaustive grid search scored by k-fold cross-validation."""
    if not grid or any(not isinstance(v, list) or not v for v in grid.values()):
        raise ValidationError("grid must map each hyperparameter to a non-empty list of candidates")
    names = list(grid)
    combos = list(itertools.product(*(grid[n] for n in names)))
    if len(combos) > MAX_TUNING_TRIALS:
        raise ValidationError(f"grid has {len(combos)} combinations; the limit is {MAX_TUNING_TRIALS}")

    candidates = [resolve_parameters(algorithm, dict(zip(names, combo))) for combo in combos]
    spec, problem_type, X, y, splitter, scoring = _cv_setup(data, features, target, algorithm, folds)

    trials = []
    for resolved in candidates:
        scores = _cv_scores(spec, resolved, problem_type, X, y, splitter, scoring)
        trials.append({
            "parameters": resolved.model_dump(),
            "accuracy": float(np.mean(scores)),
            "std": float(np.std(scores)),
        })
    trials.sort(key=lambda t: t["accuracy"], reverse=True)
    logger.info(f"Tuned {algorithm} over {len(trials)} trials: best={trials[0]['accuracy']:.4f}")
    return {
        "algorithm": algorithm,
        "scoring": scoring,
        "best_parameters": trials[0]["parameters"],
        "best_accuracy": trials[0]["accuracy"],
        "trials": trials,
    }


def compare_algorithms(
    data: List[Dict[str, Any]],
    features: List[str],
    target: Union[str, Sequence[str]],
    family: str = SUPERVISED,
    algorithms: Optional[List[str]] = None,
) -> Dict[str, Any]:
    """Train every algorithm of a family with default parameters, best first."""
    names = algorithms or algorithms_in_family(family)
    if not names:
        raise ValidationError(f"Unknown algorithm family '{family}'")
    results, failures = [], []
    for name in names:
        try:
            result = fit_bundle(data, features, target, name)
        except ValidationError as e:
            if algorithms:
                raise
            # Algorithms that cannot handle this target type are skipped
            failures.append({"algorithm": name, "error": e.message})
            continue
        except BackendError as e:
            failures.append({"algorithm": name, "error": e.message})
            continue
        results.append(result.summary())
    results.sort(key=lambda r: r["accuracy"], reverse=True)
    return {
        "results": results,
        "best": results[0] if results else None,
        "failures": failures,
    }
