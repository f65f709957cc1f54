"""
Estimator builders, one per algorithm. Each takes the validated parameter
record and the problem type ("classification" / "regression", or None for
unsupervised families) and returns an unfitted estimator.
"""

import xgboost as xgb
from catboost import CatBoostClassifier, CatBoostRegressor
from lightgbm import LGBMClassifier, LGBMRegressor
from sklearn.cluster import DBSCAN, KMeans
from sklearn.decomposition import PCA
from sklearn.discriminant_analysis import LinearDiscriminantAnalysis
from sklearn.ensemble import (
    AdaBoostClassifier,
    AdaBoostRegressor,
    GradientBoostingClassifier,
    GradientBoostingRegressor,
    IsolationForest,
    RandomForestClassifier,
    RandomForestRegressor,
)
from sklearn.gaussian_process import GaussianProcessClassifier, GaussianProcessRegressor
from sklearn.linear_model import LinearRegression, LogisticRegression
from sklearn.naive_bayes import GaussianNB
from sklearn.neighbors import KNeighborsClassifier, KNeighborsRegressor
from sklearn.neural_network import MLPClassifier, MLPRegressor
from sklearn.svm import SVC, SVR
from sklearn.tree import DecisionTreeClassifier, DecisionTreeRegressor

from modelstudio.config import settings

_CLASSIFICATION = "classification"


def _is_clf(problem_type) -> bool:
    return problem_type == _CLASSIFICATION


def linear_regression(p, problem_type):
    return LinearRegression(fit_intercept=p.fit_intercept)


def logistic_regression(p, problem_type):
    return LogisticRegression(C=p.C, max_iter=p.max_iter, random_state=settings.RANDOM_STATE)


def decision_tree(p, problem_type):
    if _is_clf(problem_type):
        return DecisionTreeClassifier(
            max_depth=p.max_depth,
            min_samples_split=p.min_samples_split,
            criterion=p.criterion,
            random_state=settings.RANDOM_STATE,
        )
    return DecisionTreeRegressor(
        max_depth=p.max_depth,
        min_samples_split=p.min_samples_split,
        random_state=settings.RANDOM_STATE,
    )


def random_forest(p, problem_type):
    if _is_clf(problem_type):
        return RandomForestClassifier(
            n_estimators=p.n_estimators,
            max_depth=p.max_depth,
            min_samples_split=p.min_samples_split,
            criterion=p.criterion,
            bootstrap=p.bootstrap,
            random_state=settings.RANDOM_STATE,
        )
    return RandomForestRegressor(
        n_estimators=p.n_estimators,
        max_depth=p.max_depth,
        min_samples_split=p.min_samples_split,
        bootstrap=p.bootstrap,
        random_state=settings.RANDOM_STATE,
    )


def svm(p, problem_type):
    if _is_clf(problem_type):
        return SVC(C=p.C, kernel=p.kernel, gamma=p.gamma, probability=True,
                   random_state=settings.RANDOM_STATE)
    return SVR(C=p.C, kernel=p.kernel, gamma=p.gamma)


def knn(p, problem_type):
    cls = KNeighborsClassifier if _is_clf(problem_type) else KNeighborsRegressor
    return cls(n_neighbors=p.n_neighbors, weights=p.weights)


def neural_network(p, problem_type):
    cls = MLPClassifier if _is_clf(problem_type) else MLPRegressor
    return cls(
        hidden_layer_sizes=tuple(p.hidden_layers),
        activation=p.activation,
        learning_rate_init=p.learning_rate,
        max_iter=p.epochs,
        batch_size=p.batch_size,
        random_state=settings.RANDOM_STATE,
    )


def gradient_boosting(p, problem_type):
    cls = GradientBoostingClassifier if _is_clf(problem_type) else GradientBoostingRegressor
    return cls(
        n_estimators=p.n_estimators,
        learning_rate=p.learning_rate,
        max_depth=p.max_depth,
        random_state=settings.RANDOM_STATE,
    )


def adaboost(p, problem_type):
    cls = AdaBoostClassifier if _is_clf(problem_type) else AdaBoostRegressor
    return cls(
        n_estimators=p.n_estimators,
        learning_rate=p.learning_rate,
        random_state=settings.RANDOM_STATE,
    )


def naive_bayes(p, problem_type):
    return GaussianNB(var_smoothing=p.var_smoothing)


def xgboost(p, problem_type):
    cls = xgb.XGBClassifier if _is_clf(problem_type) else xgb.XGBRegressor
    return cls(
        n_estimators=p.n_estimators,
        learning_rate=p.learning_rate,
        max_depth=p.max_depth,
        subsample=p.subsample,
        colsample_bytree=p.colsample_bytree,
        random_state=settings.RANDOM_STATE,
    )


def lightgbm(p, problem_type):
    cls = LGBMClassifier if _is_clf(problem_type) else LGBMRegressor
    return cls(
        n_estimators=p.n_estimators,
        learning_rate=p.learning_rate,
        max_depth=p.max_depth,
        num_leaves=p.num_leaves,
        random_state=settings.RANDOM_STATE,
        verbose=-1,
    )


def catboost(p, problem_type):
    cls = CatBoostClassifier if _is_clf(problem_type) else CatBoostRegressor
    return cls(
        iterations=p.iterations,
        learning_rate=p.learning_rate,
        depth=p.depth,
        random_seed=settings.RANDOM_STATE,
        verbose=False,
        allow_writing_files=False,
    )


def gaussian_process(p, problem_type):
    cls = GaussianProcessClassifier if _is_clf(problem_type) else GaussianProcessRegressor
    return cls(n_restarts_optimizer=p.n_restarts_optimizer, random_state=settings.RANDOM_STATE)


def kmeans(p, problem_type):
    return KMeans(n_clusters=p.n_clusters, max_iter=p.max_iter, n_init=10,
                  random_state=settings.RANDOM_STATE)


def dbscan(p, problem_type):
    return DBSCAN(eps=p.eps, min_samples=p.min_samples)


def pca(p, problem_type):
    return PCA(n_components=p.n_components, random_state=settings.RANDOM_STATE)


def lda(p, problem_type):
    return LinearDiscriminantAnalysis(solver=p.solver)


def isolation_forest(p, problem_type):
    return IsolationForest(
        contamination=p.contamination,
        n_estimators=p.n_estimators,
        max_samples=p.max_samples,
        random_state=settings.RANDOM_STATE,
    )
