"""
Trial configuration: column names, join keys, cohort rules and the pre-specified
covariate sets for the WASH Benefits Bangladesh and Kenya control arms.

Everything that differs between the two countries lives here so the pipeline
itself stays country-agnostic.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

import numpy as np
import pandas as pd


# Seed for cross-validation fold assignment in the TMLE super learner.
DEFAULT_SEED = 12345

CONTINUOUS = "continuous"
CATEGORICAL = "categorical"


@dataclass(frozen=True)
class CovariateSpec:
    """A single adjustment covariate."""
    name: str
    kind: str = CONTINUOUS
    reference: Optional[str] = None
    labels: Optional[Mapping[Any, str]] = None

    def __post_init__(self):
        if self.kind not in (CONTINUOUS, CATEGORICAL):
            raise ValueError(f"Unknown covariate kind for {self.name}: {self.kind}")
        if self.kind == CATEGORICAL and self.reference is None:
            raise ValueError(f"Categorical covariate {self.name} needs a reference level")

    @property
    def is_categorical(self) -> bool:
        return self.kind == CATEGORICAL


@dataclass(frozen=True)
class CovariateSet:
    """Ordered, pre-specified list of covariates for one trial."""
    covariates: Tuple[CovariateSpec, ...] = ()

    def __iter__(self):
        return iter(self.covariates)

    def __len__(self) -> int:
        return len(self.covariates)

    @property
    def names(self) -> List[str]:
        return [cov.name for cov in self.covariates]

    @property
    def categorical(self) -> List[CovariateSpec]:
        return [cov for cov in self.covariates if cov.is_categorical]

    @property
    def continuous(self) -> List[CovariateSpec]:
        return [cov for cov in self.covariates if not cov.is_categorical]


@dataclass(frozen=True)
class ExposureRule:
    """
    Rule table mapping raw sanitation fields to an exposure category.

    Rules are evaluated in order and the first one whose conditions all hold
    assigns the label; a rule with no conditions matches everything left.
    With ``missing_policy="baseline"`` missing raw fields are read as
    ``baseline_value`` before the rules run; with ``"exclude"`` they leave the
    category missing and the row is dropped by the exposure-validity filter.
    """
    fields: Tuple[str, ...]
    rules: Tuple[Tuple[Mapping[str, Any], str], ...]
    levels: Tuple[str, ...]
    missing_policy: str = "exclude"
    baseline_value: Any = 0

    def __post_init__(self):
        if self.missing_policy not in ("baseline", "exclude"):
            raise ValueError(f"Unknown missing policy: {self.missing_policy}")
        for _, label in self.rules:
            if label not in self.levels:
                raise ValueError(f"Rule label {label!r} is not a declared level")

    def derive(self, df: pd.DataFrame) -> pd.Series:
        """Derive the category for every row; rows no rule matches stay missing."""
        raw = df[list(self.fields)].apply(pd.to_numeric, errors="coerce")
        if self.missing_policy == "baseline":
            raw = raw.fillna(self.baseline_value)

        category = pd.Series(np.nan, index=df.index, dtype=object)
        for conditions, label in self.rules:
            mask = category.isna()
            for column, value in conditions.items():
                mask &= raw[column] == value
            category[mask] = label

        return pd.Series(
            pd.Categorical(category, categories=list(self.levels)),
            index=df.index,
            name="exposure",
        )


@dataclass(frozen=True)
class TrialConfig:
    """Everything needed to run one country's pipeline."""
    name: str
    data_subdir: str
    treatment_file: str
    enrollment_file: str
    anthropometry_file: str
    treatment_keys: Tuple[str, ...]
    enrollment_keys: Tuple[str, ...]
    arm_column: str
    control_arms: Tuple[str, ...]
    visit_column: str
    final_visit: Any
    outcome_column: str
    outcome_flag_column: Optional[str]
    cluster_column: str
    exposure: ExposureRule
    contrast: Tuple[str, str]
    density_pair: Tuple[str, str]
    covariates: CovariateSet = field(default_factory=CovariateSet)
    exposure_column: str = "sanitation"
    outcome_bounds: Tuple[float, float] = (-6.0, 6.0)
    outcome_label: str = "LAZ"

    def __post_init__(self):
        for level in self.contrast + self.density_pair:
            if level not in self.exposure.levels:
                raise ValueError(f"{self.name}: {level!r} is not an exposure level")

    def required_columns(self) -> List[str]:
        """Columns the joined table must contain; anything else is ignored."""
        columns = [self.arm_column, self.visit_column, self.outcome_column, self.cluster_column]
        if self.outcome_flag_column:
            columns.append(self.outcome_flag_column)
        columns.extend(self.exposure.fields)
        columns.extend(self.covariates.names)
        return list(dict.fromkeys(columns))


def _binary(no: str, yes: str) -> Dict[Any, str]:
    return {0: no, 1: yes}


BANGLADESH = TrialConfig(
    name="Bangladesh",
    data_subdir="bangladesh",
    treatment_file="washb-bangladesh-tr.csv",
    enrollment_file="washb-bangladesh-enrol.csv",
    anthropometry_file="washb-bangladesh-anthro.csv",
    treatment_keys=("clusterid", "block"),
    enrollment_keys=("dataid",),
    arm_column="tr",
    control_arms=("Control",),
    visit_column="svy",
    final_visit=2,
    outcome_column="laz",
    outcome_flag_column="laz_x",
    cluster_column="block",
    exposure=ExposureRule(
        fields=("latown", "latseal"),
        rules=(
            ({"latown": 1, "latseal": 1}, "Latrine with water seal"),
            ({"latown": 1}, "Latrine no water seal"),
            ({}, "No latrine"),
        ),
        levels=("No latrine", "Latrine no water seal", "Latrine with water seal"),
        missing_policy="baseline",
    ),
    contrast=("No latrine", "Latrine with water seal"),
    density_pair=("No latrine", "Latrine with water seal"),
    covariates=CovariateSet((
        CovariateSpec("aged"),
        CovariateSpec("sex", CATEGORICAL, "female", _binary("female", "male")),
        CovariateSpec("momage"),
        CovariateSpec("momheight"),
        CovariateSpec("momedu", CATEGORICAL, "No education"),
        CovariateSpec("hfiacat", CATEGORICAL, "Food Secure"),
        CovariateSpec("Nlt18"),
        CovariateSpec("Ncomp"),
        CovariateSpec("elec", CATEGORICAL, "No electricity", _binary("No electricity", "Has electricity")),
        CovariateSpec("floor", CATEGORICAL, "No concrete floor", _binary("No concrete floor", "Concrete floor")),
        CovariateSpec("roof", CATEGORICAL, "No tin roof", _binary("No tin roof", "Tin roof")),
        CovariateSpec("asset_tv", CATEGORICAL, "No TV", _binary("No TV", "Has TV")),
        CovariateSpec("asset_mobile", CATEGORICAL, "No mobile phone", _binary("No mobile phone", "Has mobile phone")),
        CovariateSpec("asset_bike", CATEGORICAL, "No bicycle", _binary("No bicycle", "Has bicycle")),
    )),
)


KENYA = TrialConfig(
    name="Kenya",
    data_subdir="kenya",
    treatment_file="washb-kenya-tr.csv",
    enrollment_file="washb-kenya-enrol.csv",
    anthropometry_file="washb-kenya-anthro.csv",
    treatment_keys=("clusterid", "block"),
    enrollment_keys=("hhid",),
    arm_column="tr",
    control_arms=("Control", "Passive Control"),
    visit_column="studyyear",
    final_visit=2,
    outcome_column="haz",
    outcome_label="HAZ",
    outcome_flag_column="haz_x",
    cluster_column="block",
    exposure=ExposureRule(
        fields=("imp_lat",),
        rules=(
            ({"imp_lat": 1}, "Improved latrine"),
            ({"imp_lat": 0}, "No improved latrine"),
        ),
        levels=("No improved latrine", "Improved latrine"),
        missing_policy="exclude",
    ),
    contrast=("No improved latrine", "Improved latrine"),
    density_pair=("No improved latrine", "Improved latrine"),
    covariates=CovariateSet((
        CovariateSpec("aged"),
        CovariateSpec("sex", CATEGORICAL, "female", _binary("female", "male")),
        CovariateSpec("momage"),
        CovariateSpec("momheight"),
        CovariateSpec("momedu", CATEGORICAL, "Incomplete Primary"),
        CovariateSpec("hhs", CATEGORICAL, "Little or no hunger"),
        CovariateSpec("Nlt18"),
        CovariateSpec("Ncomp"),
        CovariateSpec("elec", CATEGORICAL, "No electricity", _binary("No electricity", "Has electricity")),
        CovariateSpec("floor", CATEGORICAL, "No improved floor", _binary("No improved floor", "Improved floor")),
        CovariateSpec("roof", CATEGORICAL, "No iron roof", _binary("No iron roof", "Iron roof")),
        CovariateSpec("asset_radio", CATEGORICAL, "No radio", _binary("No radio", "Has radio")),
        CovariateSpec("asset_mobile", CATEGORICAL, "No mobile phone", _binary("No mobile phone", "Has mobile phone")),
        CovariateSpec("asset_bike", CATEGORICAL, "No bicycle", _binary("No bicycle", "Has bicycle")),
    )),
)


TRIALS = (BANGLADESH, KENYA)
