"""
Effect estimators for the sanitation contrast: unadjusted GLM, adjusted GLM and TMLE.
"""

import numpy as np
import pandas as pd
from typing import Dict, List, Optional, Tuple
import logging
from dataclasses import asdict, dataclass

import statsmodels.api as sm

from ..config import DEFAULT_SEED, CovariateSet, TrialConfig
from ..exceptions import EstimationError
from .design import (
    ContrastData, build_design, drop_redundant_columns, prepare_contrast, prescreen_covariates
)
from .tmle import estimate_ate_tmle


logger = logging.getLogger(__name__)

UNADJUSTED = "Unadjusted"
ADJUSTED_GLM = "Adjusted GLM"
ADJUSTED_TMLE = "Adjusted TMLE"
ESTIMATOR_ORDER = (UNADJUSTED, ADJUSTED_GLM, ADJUSTED_TMLE)

EXPOSURE_TERM = "exposure"


@dataclass(frozen=True)
class EstimateResult:
    """Container for one estimator's mean difference (level B minus level A)."""
    method: str
    estimate: float
    std_error: float
    ci_lower: float
    ci_upper: float
    p_value: float
    n_obs: int = 0
    n_clusters: int = 0
    covariates: Tuple[str, ...] = ()

    @property
    def is_significant(self) -> bool:
        """Check if effect is statistically significant at the 5% level."""
        return self.p_value < 0.05

    def to_dict(self) -> Dict:
        result = asdict(self)
        result["covariates"] = list(self.covariates)
        return result


def fit_clustered_glm(
    outcome: np.ndarray,
    exog: pd.DataFrame,
    clusters: np.ndarray,
    term: str = EXPOSURE_TERM
) -> Tuple[float, float, float, float, float]:
    """
    Fit a Gaussian GLM with cluster-robust (sandwich) standard errors.

    Returns:
        Coefficient, standard error, CI lower, CI upper and p-value of `term`

    Raises:
        EstimationError: If the design is rank deficient or the covariance is not finite
    """
    if np.linalg.matrix_rank(exog.to_numpy()) < exog.shape[1]:
        raise EstimationError(f"Design matrix is singular (columns: {list(exog.columns)})")

    model = sm.GLM(outcome, exog, family=sm.families.Gaussian())
    result = model.fit(cov_type="cluster", cov_kwds={"groups": clusters})

    coefficient = float(result.params[term])
    std_error = float(result.bse[term])
    if not np.isfinite(std_error) or std_error <= 0:
        raise EstimationError(f"Cluster-robust standard error of {term!r} is not finite")

    ci = result.conf_int().loc[term]
    return coefficient, std_error, float(ci[0]), float(ci[1]), float(result.pvalues[term])


class SanitationEffectEstimator:
    """
    Estimates the mean difference in the outcome between two exposure levels
    with three levels of adjustment, clustering on the randomization block.
    """

    def __init__(
        self,
        exposure_col: str,
        outcome_col: str,
        cluster_col: str,
        random_state: int = DEFAULT_SEED,
        n_folds: int = 10,
        screening_pval: float = 0.2
    ):
        """
        Initialize the estimator.

        Args:
            exposure_col: Column holding the exposure category
            outcome_col: Continuous outcome column
            cluster_col: Cluster id column for robust inference
            random_state: Seed for the TMLE super learner folds
            n_folds: Super learner cross-validation folds
            screening_pval: Likelihood-ratio p-value threshold for covariate screening
        """
        self.exposure_col = exposure_col
        self.outcome_col = outcome_col
        self.cluster_col = cluster_col
        self.random_state = random_state
        self.n_folds = n_folds
        self.screening_pval = screening_pval
        self.results: Dict[str, EstimateResult] = {}
        self.screening: Optional[pd.DataFrame] = None

    @classmethod
    def from_config(cls, config: TrialConfig, **kwargs) -> "SanitationEffectEstimator":
        return cls(config.exposure_column, config.outcome_column, config.cluster_column, **kwargs)

    def prepare_data(self, cohort: pd.DataFrame, contrast: Tuple[str, str]) -> ContrastData:
        return prepare_contrast(cohort, contrast, self.exposure_col, self.outcome_col, self.cluster_col)

    def _screen(self, data: ContrastData, covariates: CovariateSet) -> Tuple[pd.DataFrame, List[str]]:
        """Design matrix of the covariates passing the likelihood-ratio screen."""
        design, groups = build_design(data.data, covariates)
        selected, self.screening = prescreen_covariates(
            data.outcome, design, groups, pval=self.screening_pval
        )
        columns = [col for name in selected for col in groups[name]]
        return drop_redundant_columns(design[columns]), selected

    def _result(self, method: str, data: ContrastData, values, covariates=()) -> EstimateResult:
        estimate, std_error, ci_lower, ci_upper, p_value = values
        result = EstimateResult(
            method=method,
            estimate=estimate,
            std_error=std_error,
            ci_lower=ci_lower,
            ci_upper=ci_upper,
            p_value=p_value,
            n_obs=len(data.outcome),
            n_clusters=data.n_clusters,
            covariates=tuple(covariates),
        )
        self.results[method] = result
        logger.info(f"{method} - Difference: {estimate:.4f} "
                    f"(95% CI {ci_lower:.4f}, {ci_upper:.4f}), P-value: {p_value:.4f}")
        return result

    def estimate_unadjusted(self, cohort: pd.DataFrame, contrast: Tuple[str, str]) -> EstimateResult:
        """Regression of the outcome on the contrast indicator only."""
        data = self.prepare_data(cohort, contrast)
        exog = pd.DataFrame({"const": 1.0, EXPOSURE_TERM: data.exposure})
        values = fit_clustered_glm(data.outcome, exog, data.clusters)
        return self._result(UNADJUSTED, data, values)

    def estimate_adjusted_glm(
        self,
        cohort: pd.DataFrame,
        contrast: Tuple[str, str],
        covariates: CovariateSet
    ) -> EstimateResult:
        """Regression on the contrast indicator plus the screened covariates."""
        data = self.prepare_data(cohort, contrast)
        design, selected = self._screen(data, covariates)

        exog = pd.concat(
            [pd.DataFrame({"const": 1.0, EXPOSURE_TERM: data.exposure}, index=design.index), design],
            axis=1,
        )
        values = fit_clustered_glm(data.outcome, exog, data.clusters)
        return self._result(ADJUSTED_GLM, data, values, selected)

    def estimate_tmle(
        self,
        cohort: pd.DataFrame,
        contrast: Tuple[str, str],
        covariates: CovariateSet
    ) -> EstimateResult:
        """
        Double-robust TMLE with super learner nuisance models on the screened covariates.

        The nuisance models are always fit with the exposure coded in the
        levels' canonical order, and a reversed contrast reports the negated
        estimate with the interval bounds swapped. Swapping the contrast
        therefore gives exactly the mirrored result.
        """
        canonical = self._canonical_order(cohort, contrast)
        data = self.prepare_data(cohort, canonical)
        design, selected = self._screen(data, covariates)

        tmle = estimate_ate_tmle(
            data.outcome,
            data.exposure,
            design.to_numpy(dtype=float),
            data.clusters,
            n_folds=self.n_folds,
            random_state=self.random_state,
        )
        if tuple(contrast) == canonical:
            values = (tmle.ate, tmle.std_error, tmle.ci_lower, tmle.ci_upper, tmle.p_value)
        else:
            values = (-tmle.ate, tmle.std_error, -tmle.ci_upper, -tmle.ci_lower, tmle.p_value)
        return self._result(ADJUSTED_TMLE, data, values, selected)

    def _canonical_order(self, cohort: pd.DataFrame, contrast: Tuple[str, str]) -> Tuple[str, str]:
        """The contrast levels in declared category order, or sorted when the column is not categorical."""
        exposure = cohort[self.exposure_col]
        if isinstance(exposure.dtype, pd.CategoricalDtype):
            order = list(exposure.cat.categories)
            if all(level in order for level in contrast):
                return tuple(sorted(contrast, key=order.index))
        return tuple(sorted(contrast))

    def estimate_all(
        self,
        cohort: pd.DataFrame,
        contrast: Tuple[str, str],
        covariates: CovariateSet
    ) -> Tuple[EstimateResult, EstimateResult, EstimateResult]:
        """Run the three estimators in their reporting order."""
        logger.info(f"Estimating {contrast[1]!r} vs {contrast[0]!r}")
        return (
            self.estimate_unadjusted(cohort, contrast),
            self.estimate_adjusted_glm(cohort, contrast, covariates),
            self.estimate_tmle(cohort, contrast, covariates),
        )
