"""
Builds a Colab notebook that trains a model on an embedded dataset outside
the service and writes the files /import-trained-model reads back:

    {model_id}_info.json, {model_id}_model.pkl, {model_id}_scaler.pkl

The notebook only uses scikit-learn compatible estimators so the pickled
models load in this service without extra runtimes.
"""

import logging
import math
from typing import Any, Dict, List, Optional, Sequence

import nbformat
from nbformat.v4 import new_code_cell, new_markdown_cell, new_notebook

from modelstudio.common.exceptions import ValidationError
from modelstudio.config import settings
from modelstudio.training.algorithms import get_algorithm

logger = logging.getLogger(__name__)

NEURAL_NETWORK = "Neural Network"
SAVE_DIR = "/content/drive/MyDrive/ml_models"

# Candidates trained when no algorithm is chosen
AUTO_CANDIDATES = ("Random Forest", "Gradient Boosting", "Logistic Regression", "Linear Regression", "SVM", "Decision Tree")

# name -> (import line, classifier expression, regressor expression)
NOTEBOOK_ESTIMATORS = {
    "Linear Regression": ("from sklearn.linear_model import LinearRegression", None, "LinearRegression()"),
    "Logistic Regression": (
        "from sklearn.linear_model import LogisticRegression",
        "LogisticRegression(max_iter=1000, random_state=42)",
        None,
    ),
    "Decision Tree": (
        "from sklearn.tree import DecisionTreeClassifier, DecisionTreeRegressor",
        "DecisionTreeClassifier(random_state=42)",
        "DecisionTreeRegressor(random_state=42)",
    ),
    "Random Forest": (
        "from sklearn.ensemble import RandomForestClassifier, RandomForestRegressor",
        "RandomForestClassifier(n_estimators=100, random_state=42)",
        "RandomForestRegressor(n_estimators=100, random_state=42)",
    ),
    "SVM": ("from sklearn.svm import SVC, SVR", "SVC(probability=True, random_state=42)", "SVR()"),
    "KNN": (
        "from sklearn.neighbors import KNeighborsClassifier, KNeighborsRegressor",
        "KNeighborsClassifier()",
        "KNeighborsRegressor()",
    ),
    "Gradient Boosting": (
        "from sklearn.ensemble import GradientBoostingClassifier, GradientBoostingRegressor",
        "GradientBoostingClassifier(random_state=42)",
        "GradientBoostingRegressor(random_state=42)",
    ),
    "AdaBoost": (
        "from sklearn.ensemble import AdaBoostClassifier, AdaBoostRegressor",
        "AdaBoostClassifier(random_state=42)",
        "AdaBoostRegressor(random_state=42)",
    ),
    "Naive Bayes": ("from sklearn.naive_bayes import GaussianNB", "GaussianNB()", None),
    "XGBoost": (
        "import xgboost as xgb",
        "xgb.XGBClassifier(n_estimators=100, random_state=42)",
        "xgb.XGBRegressor(n_estimators=100, random_state=42)",
    ),
    "LightGBM": (
        "import lightgbm as lgb",
        "lgb.LGBMClassifier(n_estimators=100, random_state=42, verbose=-1)",
        "lgb.LGBMRegressor(n_estimators=100, random_state=42, verbose=-1)",
    ),
    "CatBoost": (
        "from catboost import CatBoostClassifier, CatBoostRegressor",
        "CatBoostClassifier(iterations=100, random_seed=42, verbose=False)",
        "CatBoostRegressor(iterations=100, random_seed=42, verbose=False)",
    ),
    "Gaussian Process": (
        "from sklearn.gaussian_process import GaussianProcessClassifier, GaussianProcessRegressor",
        "GaussianProcessClassifier(random_state=42)",
        "GaussianProcessRegressor(random_state=42)",
    ),
    "LDA": (
        "from sklearn.discriminant_analysis import LinearDiscriminantAnalysis",
        "LinearDiscriminantAnalysis()",
        None,
    ),
}

# Dashboard activation names -> MLP activation names
_ACTIVATIONS = {
    "relu": "relu",
    "tanh": "tanh",
    "sigmoid": "logistic",
    "logistic": "logistic",
    "linear": "identity",
    "identity": "identity",
}

DEFAULT_ARCHITECTURE = [
    {"neurons": 64, "activation": "relu", "dropout": 0.2},
    {"neurons": 32, "activation": "relu", "dropout": 0.1},
]

_IMPORTS_CELL = """\
import json
import os
import pickle

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns
from sklearn.metrics import (
    accuracy_score,
    classification_report,
    confusion_matrix,
    mean_squared_error,
    r2_score,
)
from sklearn.model_selection import train_test_split
from sklearn.preprocessing import LabelEncoder, StandardScaler
from google.colab import drive

# Mount Google Drive for saving the model
drive.mount('/content/drive')"""

_PREPARE_CELL = """\
def infer_problem_type(y):
    if y.dtype == bool or not pd.api.types.is_numeric_dtype(y):
        return 'classification'
    values = y.to_numpy(dtype=float)
    if np.all(np.mod(values, 1) == 0) and y.nunique() <= MAX_CLASSES:
        return 'classification'
    return 'regression'

problem_types = {t: infer_problem_type(df[t]) for t in TARGETS}
PROBLEM_TYPE = problem_types[TARGETS[0]]
assert len(set(problem_types.values())) == 1, f'All targets must share one problem type: {problem_types}'

X = df[FEATURES].astype(float).to_numpy()
encoders, y = {}, {}
for t in TARGETS:
    if PROBLEM_TYPE == 'classification':
        encoders[t] = LabelEncoder()
        y[t] = encoders[t].fit_transform(df[t].astype(str))
    else:
        y[t] = df[t].astype(float).to_numpy()

# One split shared by every target so a single scaler serves all of them
idx_train, idx_test = train_test_split(np.arange(len(df)), test_size=TEST_SIZE, random_state=42)
scaler = StandardScaler()
X_train = scaler.fit_transform(X[idx_train])
X_test = scaler.transform(X[idx_test])

print(f'Problem type: {PROBLEM_TYPE}')
print(f'Training set size: {len(idx_train)} samples')
print(f'Test set size: {len(idx_test)} samples')"""

_EDA_CELL = """\
print('Dataset statistics:')
display(df.describe())

print('Missing values per column:')
display(df.isnull().sum())

plt.figure(figsize=(12, 10))
sns.heatmap(df.corr(numeric_only=True), annot=True, cmap='coolwarm', fmt='.2f')
plt.title('Feature Correlation Matrix')
plt.show()"""

_TRAIN_LOOP = """\
def evaluate(model, target):
    model.fit(X_train, y[target][idx_train])
    pred = model.predict(X_test)
    if PROBLEM_TYPE == 'classification':
        return accuracy_score(y[target][idx_test], pred)
    return float(np.clip(r2_score(y[target][idx_test], pred), 0.0, 1.0))

if not candidates:
    raise ValueError(f'No estimator available for a {PROBLEM_TYPE} target')

results, fitted = {}, {}
for name, factory in candidates.items():
    print(f'Training {name}...')
    per_target = {t: factory() for t in TARGETS}
    results[name] = float(np.mean([evaluate(m, t) for t, m in per_target.items()]))
    fitted[name] = per_target
    print(f'{name} score: {results[name]:.4f}')

best_name = max(results, key=results.get)
final_models = fitted[best_name]
final_accuracy = results[best_name]
print(f'Best model: {best_name} with score {final_accuracy:.4f}')"""

_REPORT_CELL = """\
first = TARGETS[0]
y_pred = final_models[first].predict(X_test)
if PROBLEM_TYPE == 'classification':
    print(classification_report(y[first][idx_test], y_pred))
    plt.figure(figsize=(8, 6))
    sns.heatmap(confusion_matrix(y[first][idx_test], y_pred), annot=True, fmt='d', cmap='Blues')
    plt.xlabel('Predicted')
    plt.ylabel('Actual')
    plt.title('Confusion Matrix')
    plt.show()
else:
    mse = mean_squared_error(y[first][idx_test], y_pred)
    print(f'Mean Squared Error: {mse:.4f}')
    print(f'Root Mean Squared Error: {np.sqrt(mse):.4f}')

if hasattr(final_models[first], 'loss_curve_'):
    plt.plot(final_models[first].loss_curve_)
    plt.title('Training Loss')
    plt.xlabel('Epoch')
    plt.ylabel('Loss')
    plt.show()"""

_SAVE_CELL = """\
os.makedirs(SAVE_DIR, exist_ok=True)

model_info = {
    'modelId': MODEL_ID,
    'datasetName': DATASET_NAME,
    'features': FEATURES,
    'targets': TARGETS,
    'accuracy': float(final_accuracy),
    'algorithm': best_name,
    'modelType': 'DL' if best_name == 'Neural Network' else 'ML',
    'problemType': PROBLEM_TYPE,
    'classes': {t: [str(c) for c in enc.classes_] for t, enc in encoders.items()},
    'scaler': 'standard_scaler',
    'timestamp': pd.Timestamp.now().isoformat(),
}

with open(f'{SAVE_DIR}/{MODEL_ID}_info.json', 'w') as f:
    json.dump(model_info, f, indent=2)
with open(f'{SAVE_DIR}/{MODEL_ID}_model.pkl', 'wb') as f:
    pickle.dump(final_models, f)
with open(f'{SAVE_DIR}/{MODEL_ID}_scaler.pkl', 'wb') as f:
    pickle.dump(scaler, f)

print(f'Saved {MODEL_ID}_info.json, {MODEL_ID}_model.pkl and {MODEL_ID}_scaler.pkl to {SAVE_DIR}')
print('Copy these files into the Model Studio import directory, then call /import-trained-model.')"""


def _check_columns(data: List[Dict[str, Any]], features: Sequence[str], targets: Sequence[str]) -> None:
    if not data:
        raise ValidationError("Notebook export needs at least one data row")
    if not features or not targets:
        raise ValidationError("Notebook export needs at least one feature and one target")
    required = list(features) + list(targets)
    missing = sorted({c for row in data for c in required if c not in row})
    if missing:
        raise ValidationError(f"Data rows are missing column(s): {', '.join(missing)}")
    for i, row in enumerate(data):
        bad = [str(c) for c, v in row.items() if isinstance(v, float) and not math.isfinite(v)]
        if bad:
            raise ValidationError(f"Row {i} has non-finite value(s) in {', '.join(bad)}")


def _mlp_expressions(architecture: List[Dict[str, Any]], epochs: int, learning_rate: float):
    sizes, activations = [], set()
    for i, layer in enumerate(architecture):
        neurons = layer.get("neurons")
        if not isinstance(neurons, int) or neurons < 1:
            raise ValidationError(f"Layer {i} needs a positive integer 'neurons'")
        activation = str(layer.get("activation", "relu")).lower()
        if activation not in _ACTIVATIONS:
            raise ValidationError(
                f"Layer {i} activation '{activation}' is not one of {', '.join(sorted(_ACTIVATIONS))}"
            )
        sizes.append(neurons)
        activations.add(_ACTIVATIONS[activation])
    if len(activations) > 1:
        raise ValidationError("All layers must share one activation function")

    common = (
        f"hidden_layer_sizes={tuple(sizes)!r}, activation={activations.pop()!r}, "
        f"learning_rate_init={learning_rate!r}, max_iter={epochs}, random_state=42"
    )
    return f"MLPClassifier({common})", f"MLPRegressor({common})"


def _candidates_cell(algorithm: Optional[str], architecture, epochs: int, learning_rate: float) -> str:
    if algorithm == NEURAL_NETWORK:
        imports = ["from sklearn.neural_network import MLPClassifier, MLPRegressor"]
        classifier, regressor = _mlp_expressions(architecture or DEFAULT_ARCHITECTURE, epochs, learning_rate)
        table = {NEURAL_NETWORK: (classifier, regressor)}
    else:
        names = [algorithm] if algorithm else list(AUTO_CANDIDATES)
        imports = [NOTEBOOK_ESTIMATORS[n][0] for n in names]
        table = {n: NOTEBOOK_ESTIMATORS[n][1:] for n in names}

    lines = list(dict.fromkeys(imports)) + ["", "if PROBLEM_TYPE == 'classification':", "    candidates = {"]
    lines += [f"        {name!r}: lambda: {exprs[0]}," for name, exprs in table.items() if exprs[0]]
    lines += ["    }", "else:", "    candidates = {"]
    lines += [f"        {name!r}: lambda: {exprs[1]}," for name, exprs in table.items() if exprs[1]]
    lines += ["    }", "", _TRAIN_LOOP]
    return "\n".join(lines)


def build_notebook(
    data: List[Dict[str, Any]],
    features: Sequence[str],
    targets: Sequence[str],
    algorithm: Optional[str],
    dataset_name: str,
    model_id: str,
    architecture: Optional[List[Dict[str, Any]]] = None,
    epochs: int = 100,
    learning_rate: float = 0.001,
) -> nbformat.NotebookNode:
    _check_columns(data, features, targets)
    if algorithm:
        spec = get_algorithm(algorithm)
        if algorithm != NEURAL_NETWORK and algorithm not in NOTEBOOK_ESTIMATORS:
            raise ValidationError(f"{spec.name} ({spec.family}) cannot be exported to a training notebook")
    if epochs < 1:
        raise ValidationError("epochs must be at least 1")
    if learning_rate <= 0:
        raise ValidationError("learningRate must be positive")

    is_nn = algorithm == NEURAL_NETWORK
    kind = "Deep Learning" if is_nn else "Machine Learning"
    data_cell = "\n".join([
        f"DATASET_NAME = {dataset_name!r}",
        f"MODEL_ID = {model_id!r}",
        f"FEATURES = {list(features)!r}",
        f"TARGETS = {list(targets)!r}",
        f"MAX_CLASSES = {settings.CLASSIFICATION_MAX_CLASSES}",
        f"TEST_SIZE = {settings.TEST_SIZE}",
        f"SAVE_DIR = {SAVE_DIR!r}",
        "",
        f"data = {data!r}",
        "",
        "df = pd.DataFrame(data)",
        "print(f'Dataset: {DATASET_NAME} ({len(df)} rows)')",
        "print(f'Features: {FEATURES}')",
        "print(f'Target(s): {TARGETS}')",
        "df.head()",
    ])

    intro = [
        f"# {kind} Training Notebook for {dataset_name}",
        "",
        f"This notebook was generated to train {'a neural network' if is_nn else 'machine learning models'} "
        "on your dataset.",
        "",
        "1. Run all cells in order",
        f"2. The trained model is saved to Google Drive under `{SAVE_DIR}`",
        "3. Copy the three saved files into the service's import directory and import the model",
    ]
    if is_nn:
        intro += ["", "Dropout settings are not used: scikit-learn's MLP has no dropout layers."]

    nb = new_notebook(
        cells=[
            new_markdown_cell("\n".join(intro)),
            new_markdown_cell("## Setup and Dependencies"),
            new_code_cell("!pip install -q numpy pandas scikit-learn matplotlib seaborn xgboost lightgbm catboost"),
            new_code_cell(_IMPORTS_CELL),
            new_markdown_cell("## Load and Prepare Data"),
            new_code_cell(data_cell),
            new_code_cell(_PREPARE_CELL),
            new_markdown_cell("## Exploratory Data Analysis"),
            new_code_cell(_EDA_CELL),
            new_markdown_cell("## Neural Network Training" if is_nn else "## Train and Evaluate Models"),
            new_code_cell(_candidates_cell(algorithm, architecture, epochs, learning_rate)),
            new_code_cell(_REPORT_CELL),
            new_markdown_cell("## Save the Model"),
            new_code_cell(_SAVE_CELL),
        ],
        metadata={
            "kernelspec": {"display_name": "Python 3", "language": "python", "name": "python3"},
            "language_info": {"name": "python", "pygments_lexer": "ipython3"},
        },
    )
    nbformat.validate(nb)
    logger.info(f"Generated notebook for {dataset_name} ({len(data)} rows, algorithm={algorithm or 'auto'})")
    return nb


def notebook_to_json(nb: nbformat.NotebookNode) -> str:
    return nbformat.writes(nb)
