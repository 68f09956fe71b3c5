"""
Candidate learners and the cross-validated ensemble used for TMLE nuisance models.

Every learner exposes ``fit(X, y, family)`` returning a fitted predictor whose
``predict(X)`` gives the conditional mean of ``y`` (a probability when
``family="binomial"``).
"""

import numpy as np
from typing import Dict, List, Optional, Sequence
import logging

from scipy.optimize import nnls
from sklearn.compose import ColumnTransformer
from sklearn.linear_model import (
    BayesianRidge, LassoCV, LinearRegression, LogisticRegression, LogisticRegressionCV
)
from sklearn.pipeline import Pipeline
from sklearn.preprocessing import SplineTransformer, StandardScaler

from ..exceptions import EstimationError


logger = logging.getLogger(__name__)

GAUSSIAN = "gaussian"
BINOMIAL = "binomial"


class FittedLearner:
    """A fitted scikit-learn model returning means or class-1 probabilities."""

    def __init__(self, model, family: str):
        self.model = model
        self.family = family

    def predict(self, X: np.ndarray) -> np.ndarray:
        if self.family == BINOMIAL:
            return self.model.predict_proba(X)[:, 1]
        return self.model.predict(X)


class ConstantPredictor:
    """Predicts the training mean for every row."""

    def __init__(self, value: float):
        self.value = float(value)

    def predict(self, X: np.ndarray) -> np.ndarray:
        return np.full(len(X), self.value)


class Learner:
    """Base class: subclasses build an unfitted scikit-learn model per family."""

    name = "learner"

    def __init__(self, random_state: Optional[int] = None):
        self.random_state = random_state

    def _build(self, X: np.ndarray, family: str):
        raise NotImplementedError

    def fit(self, X: np.ndarray, y: np.ndarray, family: str = GAUSSIAN):
        if family not in (GAUSSIAN, BINOMIAL):
            raise ValueError(f"Unknown family: {family}")
        if family == BINOMIAL and len(np.unique(y)) < 2:
            return ConstantPredictor(np.mean(y))
        model = self._build(X, family)
        model.fit(X, y if family == GAUSSIAN else y.astype(int))
        return FittedLearner(model, family)


class MeanLearner(Learner):
    """Intercept-only model."""

    name = "mean"

    def fit(self, X: np.ndarray, y: np.ndarray, family: str = GAUSSIAN):
        return ConstantPredictor(np.mean(y))


class GLMLearner(Learner):
    """Main-terms linear or logistic regression, unpenalized."""

    name = "glm"

    def _build(self, X: np.ndarray, family: str):
        if family == BINOMIAL:
            return LogisticRegression(penalty=None, solver="newton-cg", max_iter=1000)
        return LinearRegression()


class BayesGLMLearner(Learner):
    """GLM with a weak Gaussian prior on standardized coefficients."""

    name = "bayesglm"

    def _build(self, X: np.ndarray, family: str):
        if family == BINOMIAL:
            estimator = LogisticRegression(C=1.0, max_iter=1000)
        else:
            estimator = BayesianRidge()
        return Pipeline([("scale", StandardScaler()), ("model", estimator)])


class GAMLearner(Learner):
    """
    Additive model: spline terms for columns with more than `cts_num` distinct
    values, linear terms for the rest.
    """

    name = "gam"

    def __init__(self, random_state: Optional[int] = None, cts_num: int = 4, n_knots: int = 3, degree: int = 2):
        super().__init__(random_state)
        self.cts_num = cts_num
        self.n_knots = n_knots
        self.degree = degree

    def _build(self, X: np.ndarray, family: str):
        smooth = [j for j in range(X.shape[1]) if len(np.unique(X[:, j])) > self.cts_num]
        linear = [j for j in range(X.shape[1]) if j not in smooth]

        transformers = []
        if smooth:
            transformers.append((
                "spline",
                SplineTransformer(n_knots=self.n_knots, degree=self.degree,
                                  extrapolation="linear", include_bias=False),
                smooth,
            ))
        if linear:
            transformers.append(("linear", "passthrough", linear))

        if family == BINOMIAL:
            estimator = LogisticRegression(C=1e4, max_iter=1000)
        else:
            estimator = LinearRegression()
        return Pipeline([("terms", ColumnTransformer(transformers)), ("model", estimator)])


class LassoLearner(Learner):
    """L1-penalized linear or logistic regression, penalty chosen by cross-validation."""

    name = "lasso"

    def __init__(self, random_state: Optional[int] = None, cv: int = 5):
        super().__init__(random_state)
        self.cv = cv

    def _build(self, X: np.ndarray, family: str):
        if family == BINOMIAL:
            estimator = LogisticRegressionCV(
                Cs=10, cv=self.cv, penalty="l1", solver="liblinear",
                random_state=self.random_state, max_iter=1000
            )
        else:
            estimator = LassoCV(cv=self.cv, random_state=self.random_state, max_iter=10000)
        return Pipeline([("scale", StandardScaler()), ("model", estimator)])


def default_library(random_state: Optional[int] = None) -> List[Learner]:
    """Mean, GLM, Bayesian GLM, additive spline model and lasso, in that order."""
    return [
        MeanLearner(random_state),
        GLMLearner(random_state),
        BayesGLMLearner(random_state),
        GAMLearner(random_state),
        LassoLearner(random_state),
    ]


def cluster_folds(clusters: np.ndarray, n_folds: int, random_state: Optional[int]) -> np.ndarray:
    """
    Assign every row to a fold so that all rows of a cluster share a fold.

    Clusters are shuffled with a seeded generator and dealt round-robin.
    """
    unique = np.unique(clusters)
    n_folds = min(n_folds, len(unique))
    if n_folds < 2:
        raise EstimationError("Cross-validation needs at least 2 clusters")

    rng = np.random.default_rng(random_state)
    shuffled = rng.permutation(unique)
    fold_of_cluster = {cluster: i % n_folds for i, cluster in enumerate(shuffled)}
    return np.array([fold_of_cluster[c] for c in clusters])


class SuperLearner:
    """
    Cross-validated ensemble of candidate learners.

    Each learner is fit on V-1 folds and predicts the held-out fold; the
    ensemble weights are non-negative least-squares coefficients of the
    outcome on those predictions, rescaled to sum to one. Learners are then
    refit on all rows.
    """

    def __init__(
        self,
        learners: Optional[Sequence[Learner]] = None,
        n_folds: int = 10,
        random_state: Optional[int] = None
    ):
        self.learners = list(learners) if learners is not None else default_library(random_state)
        self.n_folds = n_folds
        self.random_state = random_state
        self.weights_: Optional[np.ndarray] = None
        self.cv_risk_: Optional[Dict[str, float]] = None
        self.fits_: List = []

    @property
    def learner_names(self) -> List[str]:
        return [learner.name for learner in self.learners]

    def fit(
        self,
        X: np.ndarray,
        y: np.ndarray,
        family: str = GAUSSIAN,
        clusters: Optional[np.ndarray] = None
    ) -> "SuperLearner":
        """
        Fit the ensemble.

        Args:
            X: Predictor matrix
            y: Outcome (0/1 when `family="binomial"`)
            family: "gaussian" or "binomial"
            clusters: Cluster ids; folds never split a cluster. Each row is its
                own cluster when omitted.
        """
        X = np.asarray(X, dtype=float)
        y = np.asarray(y, dtype=float)
        if clusters is None:
            clusters = np.arange(len(y))
        folds = cluster_folds(clusters, self.n_folds, self.random_state)

        cv_predictions = np.zeros((len(y), len(self.learners)))
        for fold in np.unique(folds):
            train, test = folds != fold, folds == fold
            for j, learner in enumerate(self.learners):
                fitted = learner.fit(X[train], y[train], family)
                cv_predictions[test, j] = fitted.predict(X[test])

        self.cv_risk_ = {
            name: float(np.mean((y - cv_predictions[:, j]) ** 2))
            for j, name in enumerate(self.learner_names)
        }

        weights, _ = nnls(cv_predictions, y)
        if weights.sum() > 0:
            weights = weights / weights.sum()
        else:
            weights = np.zeros(len(self.learners))
            weights[int(np.argmin(list(self.cv_risk_.values())))] = 1.0
        self.weights_ = weights

        self.fits_ = [learner.fit(X, y, family) for learner in self.learners]
        logger.debug(
            "Super learner weights: "
            + ", ".join(f"{name}={w:.3f}" for name, w in zip(self.learner_names, weights))
        )
        return self

    def predict(self, X: np.ndarray) -> np.ndarray:
        if self.weights_ is None:
            raise EstimationError("SuperLearner must be fit before predicting")
        X = np.asarray(X, dtype=float)
        predictions = np.column_stack([fitted.predict(X) for fitted in self.fits_])
        return predictions @ self.weights_
