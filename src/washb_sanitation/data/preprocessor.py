"""
Cohort filtering and covariate recoding for the sanitation analysis.
"""

import pandas as pd
from typing import Any, List, Mapping, Optional, Tuple
import logging

from ..config import TrialConfig
from ..exceptions import CohortEmptyError


logger = logging.getLogger(__name__)


def relevel(
    values: pd.Series,
    reference: str,
    labels: Optional[Mapping[Any, str]] = None
) -> pd.Series:
    """
    Recode a categorical covariate so that `reference` is its first level.

    Raw codes are first translated through `labels` (codes without a label are
    kept as text). The remaining levels follow the reference in sorted order,
    so the result never depends on the order rows happen to appear in.
    Applying it to an already re-leveled series returns the same levels.

    Args:
        values: Raw or already-categorical covariate values
        reference: Level every other level is contrasted against
        labels: Optional mapping from raw codes to level names

    Returns:
        Categorical series with the reference as first category
    """
    if isinstance(values.dtype, pd.CategoricalDtype):
        values = values.astype(object)

    if labels:
        values = values.map(lambda v: labels.get(v, v) if pd.notna(v) else v)

    values = values.where(values.isna(), values.astype(str))
    observed = sorted(set(values.dropna()))
    categories = [reference] + [level for level in observed if level != reference]

    return pd.Series(
        pd.Categorical(values, categories=categories),
        index=values.index,
        name=values.name,
    )


class CohortBuilder:
    """Restricts the joined trial table to the analysis cohort and recodes it."""

    def __init__(self, config: TrialConfig):
        """
        Initialize the cohort builder.

        Args:
            config: Trial configuration with cohort rules and covariate set
        """
        self.config = config
        self.flow: List[Tuple[str, int, int]] = []

    def _apply_filter(self, df: pd.DataFrame, keep: pd.Series, step: str) -> pd.DataFrame:
        n_before = len(df)
        df = df.loc[keep.fillna(False).astype(bool)]
        self.flow.append((step, n_before, len(df)))
        logger.info(f"{self.config.name} - {step}: kept {len(df)} of {n_before} rows")

        if df.empty:
            raise CohortEmptyError(
                f"No rows left after the {step} filter",
                country=self.config.name,
                stage="cohort",
            )
        return df

    def _valid_outcome(self, df: pd.DataFrame) -> pd.Series:
        outcome = pd.to_numeric(df[self.config.outcome_column], errors="coerce")
        low, high = self.config.outcome_bounds
        valid = outcome.notna() & outcome.between(low, high)

        if self.config.outcome_flag_column:
            flag = pd.to_numeric(df[self.config.outcome_flag_column], errors="coerce").fillna(0)
            valid &= flag != 1

        return valid

    def build(self, df: pd.DataFrame) -> pd.DataFrame:
        """
        Build the analysis cohort.

        Filters are applied in a fixed order: final visit, valid outcome,
        control arm, valid exposure. The exposure category is then derived and
        categorical covariates are re-leveled to their declared reference.

        Args:
            df: Joined trial table from the loader

        Returns:
            Cohort with a non-missing exposure category on every row

        Raises:
            CohortEmptyError: If any filter leaves no rows
        """
        config = self.config
        self.flow = []
        logger.info(f"Building {config.name} cohort from {len(df)} rows")

        cohort = self._apply_filter(df, df[config.visit_column] == config.final_visit, "final visit")
        cohort = self._apply_filter(cohort, self._valid_outcome(cohort), "valid outcome")
        cohort = self._apply_filter(cohort, cohort[config.arm_column].isin(config.control_arms), "control arm")

        exposure = config.exposure.derive(cohort)
        cohort = self._apply_filter(cohort, exposure.notna(), "valid exposure")

        cohort = cohort.copy()
        cohort[config.exposure_column] = exposure.loc[cohort.index]
        cohort[config.outcome_column] = pd.to_numeric(cohort[config.outcome_column])

        for cov in config.covariates.categorical:
            cohort[cov.name] = relevel(cohort[cov.name], cov.reference, cov.labels)
        for cov in config.covariates.continuous:
            cohort[cov.name] = pd.to_numeric(cohort[cov.name], errors="coerce")

        counts = cohort[config.exposure_column].value_counts().reindex(config.exposure.levels)
        logger.info(f"{config.name} cohort: {len(cohort)} children; exposure counts {counts.to_dict()}")

        return cohort.reset_index(drop=True)

    def get_flow(self) -> pd.DataFrame:
        """Rows kept at each filter step of the last build."""
        return pd.DataFrame(self.flow, columns=["step", "n_before", "n_after"])
