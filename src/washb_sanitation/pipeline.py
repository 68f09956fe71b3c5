"""
One forward pass per country: load, build the cohort, summarize, estimate.
"""

import numpy as np
import pandas as pd
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple
import logging

from .config import DEFAULT_SEED, TrialConfig
from .data.loader import TrialDataLoader
from .data.preprocessor import CohortBuilder
from .exceptions import AnalysisError
from .models.estimators import EstimateResult, SanitationEffectEstimator
from .utils.helpers import check_balance, outcome_distributions, summarize_by_exposure


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CountryAnalysis:
    """Everything one country's pipeline produces."""
    country: str
    contrast: Tuple[str, str]
    density_pair: Tuple[str, str]
    outcome_label: str
    cohort: pd.DataFrame
    flow: pd.DataFrame
    descriptives: pd.DataFrame
    distributions: Dict[str, np.ndarray]
    balance: pd.DataFrame
    screening: Optional[pd.DataFrame]
    estimates: Tuple[EstimateResult, ...]

    @property
    def n_children(self) -> int:
        return len(self.cohort)

    @property
    def n_clusters(self) -> int:
        return int(self.estimates[0].n_clusters) if self.estimates else 0


@contextmanager
def pipeline_stage(country: str, stage: str):
    """Attach country and stage to any analysis error raised inside the block."""
    try:
        yield
    except AnalysisError as exc:
        if exc.country is None:
            exc.country = country
        if exc.stage is None:
            exc.stage = stage
        raise


class SanitationGrowthAnalysis:
    """Runs the sanitation / LAZ analysis for one trial."""

    def __init__(
        self,
        config: TrialConfig,
        data_dir: str = "data/raw",
        random_state: int = DEFAULT_SEED,
        n_folds: int = 10
    ):
        """
        Initialize the analysis.

        Args:
            config: Trial configuration
            data_dir: Directory with one sub-directory of CSV files per country
            random_state: Seed for the TMLE super learner
            n_folds: Super learner cross-validation folds
        """
        self.config = config
        self.data_dir = data_dir
        self.random_state = random_state
        self.n_folds = n_folds

    def load(self) -> pd.DataFrame:
        with pipeline_stage(self.config.name, "load"):
            return TrialDataLoader(self.config, self.data_dir).load_data()

    def run(self, raw: Optional[pd.DataFrame] = None) -> CountryAnalysis:
        """
        Run the full pipeline.

        Args:
            raw: Joined table; loaded from CSV files when omitted

        Returns:
            The country's cohort, summaries and ordered estimates
        """
        config = self.config
        logger.info(f"Starting {config.name} analysis")
        if raw is None:
            raw = self.load()

        with pipeline_stage(config.name, "cohort"):
            builder = CohortBuilder(config)
            cohort = builder.build(raw)

        with pipeline_stage(config.name, "describe"):
            descriptives = summarize_by_exposure(
                cohort, config.exposure_column, config.outcome_column, config.exposure.levels
            )
            distributions = outcome_distributions(
                cohort, config.exposure_column, config.outcome_column, config.density_pair
            )
            balance = check_balance(cohort, config.exposure_column, config.contrast, config.covariates.names)

        with pipeline_stage(config.name, "estimate"):
            estimator = SanitationEffectEstimator.from_config(
                config, random_state=self.random_state, n_folds=self.n_folds
            )
            estimates = estimator.estimate_all(cohort, config.contrast, config.covariates)

        logger.info(f"{config.name} analysis complete")
        return CountryAnalysis(
            country=config.name,
            contrast=config.contrast,
            density_pair=config.density_pair,
            outcome_label=config.outcome_label,
            cohort=cohort,
            flow=builder.get_flow(),
            descriptives=descriptives,
            distributions=distributions,
            balance=balance,
            screening=estimator.screening,
            estimates=estimates,
        )


def run_all(
    configs: Sequence[TrialConfig],
    data_dir: str = "data/raw",
    random_state: int = DEFAULT_SEED,
    n_folds: int = 10
) -> Tuple[Dict[str, CountryAnalysis], Dict[str, Exception]]:
    """
    Run every country's pipeline independently.

    A failing country is logged and reported in the second return value;
    the remaining countries still run.

    Returns:
        (completed analyses, errors) keyed by country name
    """
    analyses: Dict[str, CountryAnalysis] = {}
    failures: Dict[str, Exception] = {}

    for config in configs:
        analysis = SanitationGrowthAnalysis(config, data_dir, random_state=random_state, n_folds=n_folds)
        try:
            analyses[config.name] = analysis.run()
        except (AnalysisError, OSError) as exc:
            logger.error(f"{config.name} analysis failed: {exc}")
            failures[config.name] = exc

    return analyses, failures
