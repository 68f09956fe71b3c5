"""
Targeted maximum likelihood estimation of an average treatment effect with
super learner nuisance models and cluster-level influence-curve inference.
"""

import numpy as np
import pandas as pd
from typing import Dict, NamedTuple, Optional
import logging

import statsmodels.api as sm
from scipy import stats as scipy_stats
from scipy.special import expit, logit

from ..exceptions import EstimationError
from .learners import BINOMIAL, GAUSSIAN, SuperLearner


logger = logging.getLogger(__name__)


class TMLEResult(NamedTuple):
    """Result of TMLE ATE estimation."""
    ate: float
    std_error: float
    ci_lower: float
    ci_upper: float
    p_value: float
    epsilon: float
    q_weights: Dict[str, float]
    g_weights: Dict[str, float]
    n_clusters: int


def cluster_influence_variance(ic: np.ndarray, clusters: np.ndarray) -> float:
    """Variance of the estimator from the influence curve averaged within clusters."""
    ic_cluster = pd.Series(ic).groupby(np.asarray(clusters)).mean()
    if len(ic_cluster) < 2:
        raise EstimationError("Influence-curve variance needs at least 2 clusters")
    return float(ic_cluster.var(ddof=1) / len(ic_cluster))


def estimate_ate_tmle(
    y: np.ndarray,
    a: np.ndarray,
    w: np.ndarray,
    clusters: np.ndarray,
    n_folds: int = 10,
    random_state: Optional[int] = None,
    alpha: float = 0.05,
    g_bound: float = 0.025,
    q_bound: float = 0.0005
) -> TMLEResult:
    """
    Estimate E[Y(1)] - E[Y(0)] for a binary exposure with TMLE.

    The algorithm:
    1. Scale Y to [0, 1] using its observed range
    2. Fit Q(A, W) = E[Y | A, W] with the super learner and truncate it
    3. Fit g(W) = P(A = 1 | W) with the super learner and bound it
    4. Fluctuate logit Q along the clever covariate H = A/g - (1-A)/(1-g)
    5. Average the targeted Q(1, W) - Q(0, W) and rescale
    6. Average the influence curve within clusters for the standard error

    Args:
        y: Continuous outcome
        a: Exposure indicator (0/1)
        w: Covariate matrix (may have zero columns)
        clusters: Cluster ids; CV folds and inference respect them
        n_folds: Super learner cross-validation folds
        random_state: Seed for fold assignment and seeded learners
        alpha: Two-sided confidence level complement
        g_bound: Lower/upper bound on the exposure probability
        q_bound: Lower/upper bound on the scaled outcome predictions

    Returns:
        TMLEResult with ATE and inference
    """
    y = np.asarray(y, dtype=float)
    a = np.asarray(a, dtype=float)
    w = np.asarray(w, dtype=float).reshape(len(y), -1)

    y_min, y_max = y.min(), y.max()
    if y_max == y_min:
        raise EstimationError("Outcome is constant in the contrast cohort")
    y_range = y_max - y_min
    y_scaled = (y - y_min) / y_range

    # Outcome model on (A, W)
    q_learner = SuperLearner(n_folds=n_folds, random_state=random_state)
    q_learner.fit(np.column_stack([a, w]), y_scaled, family=GAUSSIAN, clusters=clusters)
    ones, zeros = np.ones_like(a), np.zeros_like(a)
    q_a = np.clip(q_learner.predict(np.column_stack([a, w])), q_bound, 1 - q_bound)
    q_1 = np.clip(q_learner.predict(np.column_stack([ones, w])), q_bound, 1 - q_bound)
    q_0 = np.clip(q_learner.predict(np.column_stack([zeros, w])), q_bound, 1 - q_bound)

    # Exposure model on W
    if w.shape[1] == 0:
        g_1 = np.full(len(a), a.mean())
        g_weights = {}
    else:
        g_learner = SuperLearner(n_folds=n_folds, random_state=random_state)
        g_learner.fit(w, a, family=BINOMIAL, clusters=clusters)
        g_1 = g_learner.predict(w)
        g_weights = dict(zip(g_learner.learner_names, g_learner.weights_.tolist()))
    g_1 = np.clip(g_1, g_bound, 1 - g_bound)

    h_a = a / g_1 - (1 - a) / (1 - g_1)
    h_1 = 1 / g_1
    h_0 = -1 / (1 - g_1)

    # Targeting step
    fluctuation = sm.GLM(
        y_scaled, h_a.reshape(-1, 1),
        family=sm.families.Binomial(),
        offset=logit(q_a)
    ).fit()
    epsilon = float(np.asarray(fluctuation.params)[0])
    if not np.isfinite(epsilon):
        raise EstimationError("TMLE fluctuation did not converge")

    q_a_star = expit(logit(q_a) + epsilon * h_a)
    q_1_star = expit(logit(q_1) + epsilon * h_1)
    q_0_star = expit(logit(q_0) + epsilon * h_0)

    psi_scaled = float(np.mean(q_1_star - q_0_star))
    ic = h_a * (y_scaled - q_a_star) + (q_1_star - q_0_star) - psi_scaled
    se_scaled = np.sqrt(cluster_influence_variance(ic, clusters))
    if not np.isfinite(se_scaled) or se_scaled <= 0:
        raise EstimationError("TMLE standard error is not positive")

    ate = psi_scaled * y_range
    se = float(se_scaled * y_range)
    z = scipy_stats.norm.ppf(1 - alpha / 2)
    p_value = float(2 * scipy_stats.norm.sf(abs(ate / se)))

    q_weights = dict(zip(q_learner.learner_names, q_learner.weights_.tolist()))
    logger.info(f"TMLE: ATE={ate:.4f} (SE {se:.4f}), epsilon={epsilon:.5f}")
    logger.debug(f"TMLE outcome-model weights {q_weights}; exposure-model weights {g_weights}")

    return TMLEResult(
        ate=float(ate),
        std_error=se,
        ci_lower=float(ate - z * se),
        ci_upper=float(ate + z * se),
        p_value=p_value,
        epsilon=epsilon,
        q_weights=q_weights,
        g_weights=g_weights,
        n_clusters=int(len(np.unique(clusters))),
    )
