"""
Contrast preparation, design matrices and likelihood-ratio covariate screening.
"""

import numpy as np
import pandas as pd
from dataclasses import dataclass
from typing import Dict, List, Tuple
import logging

import statsmodels.api as sm
from scipy import stats as scipy_stats

from ..config import CovariateSet
from ..data.preprocessor import relevel
from ..exceptions import EstimationError


logger = logging.getLogger(__name__)

MISSING_LEVEL = "Missing"


@dataclass(frozen=True)
class ContrastData:
    """Rows at the two contrast levels, with the exposure coded 0 (level A) / 1 (level B)."""
    data: pd.DataFrame
    exposure: np.ndarray
    outcome: np.ndarray
    clusters: np.ndarray
    levels: Tuple[str, str]

    @property
    def n_clusters(self) -> int:
        return int(len(np.unique(self.clusters)))


def prepare_contrast(
    cohort: pd.DataFrame,
    contrast: Tuple[str, str],
    exposure_col: str,
    outcome_col: str,
    cluster_col: str
) -> ContrastData:
    """
    Restrict the cohort to the two contrast levels.

    The effect is defined as level B minus level A, so the exposure indicator
    is 1 for `contrast[1]` and 0 for `contrast[0]`.

    Raises:
        EstimationError: If a level has no rows, cluster ids are missing, or
            fewer than two clusters remain
    """
    level_a, level_b = contrast
    exposure = cohort[exposure_col].astype(object)

    for level in contrast:
        if not (exposure == level).any():
            raise EstimationError(f"Contrast level {level!r} has no observations")

    data = cohort.loc[exposure.isin(contrast)].reset_index(drop=True)
    if data[cluster_col].isna().any():
        raise EstimationError(f"Missing cluster id in column {cluster_col!r}")

    clusters = pd.factorize(data[cluster_col])[0]
    if len(np.unique(clusters)) < 2:
        raise EstimationError("Cluster-robust variance needs at least 2 clusters")

    return ContrastData(
        data=data,
        exposure=(data[exposure_col].astype(object) == level_b).to_numpy(dtype=float),
        outcome=pd.to_numeric(data[outcome_col]).to_numpy(dtype=float),
        clusters=clusters,
        levels=(level_a, level_b),
    )


def build_design(
    df: pd.DataFrame,
    covariates: CovariateSet
) -> Tuple[pd.DataFrame, Dict[str, List[str]]]:
    """
    Build a numeric covariate matrix.

    Categorical covariates are dummy coded against their reference level, with
    missing values as an extra "Missing" level. Continuous covariates are
    median-imputed with a `<name>_miss` indicator when any value is missing.

    Args:
        df: Rows to encode
        covariates: Covariates to include

    Returns:
        Design matrix (no intercept) and the design columns of each covariate

    Raises:
        EstimationError: If a covariate has zero variance or its reference
            level is absent
    """
    columns: Dict[str, pd.Series] = {}
    groups: Dict[str, List[str]] = {}

    for cov in covariates:
        if cov.is_categorical:
            values = df[cov.name]
            if not isinstance(values.dtype, pd.CategoricalDtype):
                values = relevel(values, cov.reference, cov.labels)
            if values.isna().any():
                if MISSING_LEVEL not in values.cat.categories:
                    values = values.cat.add_categories([MISSING_LEVEL])
                values = values.fillna(MISSING_LEVEL)

            observed = [level for level in values.cat.categories if (values == level).any()]
            if len(observed) < 2:
                raise EstimationError(f"Covariate {cov.name!r} has zero variance (only level {observed})")
            if cov.reference not in observed:
                raise EstimationError(f"Reference level {cov.reference!r} of {cov.name!r} is not observed")

            group = []
            for level in observed:
                if level == cov.reference:
                    continue
                name = f"{cov.name}_{level}"
                columns[name] = (values == level).astype(float)
                group.append(name)
        else:
            values = pd.to_numeric(df[cov.name], errors="coerce")
            if values.dropna().nunique() < 2:
                raise EstimationError(f"Covariate {cov.name!r} has zero variance")

            group = [cov.name]
            if values.isna().any():
                miss_name = f"{cov.name}_miss"
                columns[miss_name] = values.isna().astype(float)
                group.append(miss_name)
                values = values.fillna(values.median())
            columns[cov.name] = values.astype(float)

        groups[cov.name] = group

    design = pd.DataFrame(columns, index=df.index)
    ordered = [col for group in groups.values() for col in group]
    return design[ordered], groups


def likelihood_ratio_screen(
    outcome: np.ndarray,
    design: pd.DataFrame,
    groups: Dict[str, List[str]],
    pval: float = 0.2
) -> pd.DataFrame:
    """
    Screen covariates one at a time with a likelihood-ratio test.

    Each covariate's Gaussian GLM `Y ~ covariate` is compared with the
    intercept-only model; covariates with p < `pval` are selected.

    Returns:
        One row per covariate with the LR statistic, degrees of freedom,
        p-value and selection flag, in declared order
    """
    n = len(outcome)
    gaussian = sm.families.Gaussian()
    null_fit = sm.GLM(outcome, np.ones((n, 1)), family=gaussian).fit()

    rows = []
    for name, cols in groups.items():
        exog = sm.add_constant(design[cols].to_numpy(), has_constant="add")
        fit = sm.GLM(outcome, exog, family=gaussian).fit()
        lr_stat = max(2.0 * (fit.llf - null_fit.llf), 0.0)
        p_value = float(scipy_stats.chi2.sf(lr_stat, df=len(cols)))
        rows.append({
            "covariate": name,
            "lr_statistic": lr_stat,
            "df": len(cols),
            "p_value": p_value,
            "selected": p_value < pval,
        })

    table = pd.DataFrame(rows, columns=["covariate", "lr_statistic", "df", "p_value", "selected"])
    logger.info(f"Likelihood-ratio screening kept {int(table['selected'].sum())} of {len(table)} covariates")
    for row in table.itertuples():
        logger.debug(f"  {row.covariate}: LR={row.lr_statistic:.3f}, df={row.df}, p={row.p_value:.4f}")
    return table


def prescreen_covariates(
    outcome: np.ndarray,
    design: pd.DataFrame,
    groups: Dict[str, List[str]],
    pval: float = 0.2
) -> Tuple[List[str], pd.DataFrame]:
    """
    Covariates passing the likelihood-ratio screen.

    Returns:
        Selected covariate names in declared order, and the full screening table
    """
    table = likelihood_ratio_screen(outcome, design, groups, pval=pval)
    selected = table.loc[table["selected"], "covariate"].tolist()
    if not selected:
        logger.warning("No covariate passed likelihood-ratio screening; adjusted models use the exposure only")
    return selected, table


def drop_redundant_columns(design: pd.DataFrame) -> pd.DataFrame:
    """
    Drop design columns that cannot be estimated alongside the others.

    Columns that do not vary are removed, as is every column identical to an
    earlier one. Children missing from enrollment are missing on all household
    covariates at once, so their `_miss` and `Missing` indicators coincide.
    """
    varying = design.loc[:, design.nunique() > 1]
    keep = ~varying.T.duplicated().to_numpy()
    reduced = varying.loc[:, keep]

    dropped = [col for col in design.columns if col not in reduced.columns]
    if dropped:
        logger.info(f"Dropped {len(dropped)} constant or duplicated design columns: {dropped}")
    return reduced
