"""
Utility functions for the sanitation and growth analysis.
"""

import pandas as pd
import numpy as np
import logging
from pathlib import Path
from typing import Dict, List, Any, Optional, Sequence, Tuple
import json


logger = logging.getLogger(__name__)


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """
    Set up logging configuration.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional file to write logs to
    """
    log_level = getattr(logging, level.upper())

    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers
    )


def _to_serializable(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k): _to_serializable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_serializable(v) for v in value]
    if isinstance(value, np.generic):
        value = value.item()
    if isinstance(value, float) and not np.isfinite(value):
        return None
    return value


def save_results(results: Dict[str, Any], filepath: str) -> None:
    """
    Write analysis results as JSON.

    NumPy scalars become Python numbers and non-finite floats become null;
    values JSON cannot represent are written as their string form.

    Args:
        results: Dictionary containing analysis results
        filepath: Path of the `.json` file to write
    """
    filepath = Path(filepath)
    if filepath.suffix != '.json':
        raise ValueError(f"Unsupported file format: {filepath.suffix}")

    serializable_results = {}
    for key, value in results.items():
        value = _to_serializable(value)
        try:
            json.dumps(value)
            serializable_results[key] = value
        except (TypeError, ValueError):
            serializable_results[key] = str(value)

    with open(filepath, 'w') as f:
        json.dump(serializable_results, f, indent=2)

    logger.info(f"Results saved to {filepath}")


def summarize_by_exposure(
    cohort: pd.DataFrame,
    exposure_col: str,
    outcome_col: str,
    levels: Sequence[str]
) -> pd.DataFrame:
    """
    Outcome summary for each exposure level.

    Args:
        cohort: Analysis cohort
        exposure_col: Exposure category column
        outcome_col: Outcome column
        levels: Exposure levels in display order; levels without rows get N=0

    Returns:
        DataFrame indexed by level with N, percent of the whole cohort,
        mean and standard deviation of the outcome
    """
    grouped = cohort.groupby(cohort[exposure_col].astype(object))[outcome_col]
    summary = pd.DataFrame({
        'N': grouped.size(),
        'mean': grouped.mean(),
        'sd': grouped.std(ddof=1),
    }).reindex(list(levels))

    summary['N'] = summary['N'].fillna(0).astype(int)
    total = summary['N'].sum()
    summary['percent'] = 100.0 * summary['N'] / total if total else 0.0
    summary.index.name = exposure_col

    return summary[['N', 'percent', 'mean', 'sd']]


def outcome_distributions(
    cohort: pd.DataFrame,
    exposure_col: str,
    outcome_col: str,
    pair: Tuple[str, str]
) -> Dict[str, np.ndarray]:
    """
    Raw outcome values of the two levels shown in a pairwise density comparison.

    Levels outside `pair` are left out of the comparison.
    """
    exposure = cohort[exposure_col].astype(object)
    return {
        level: cohort.loc[exposure == level, outcome_col].to_numpy(dtype=float)
        for level in pair
    }


def check_balance(
    cohort: pd.DataFrame,
    exposure_col: str,
    pair: Tuple[str, str],
    covariates: List[str]
) -> pd.DataFrame:
    """
    Check covariate balance between the two contrast levels.

    Categorical covariates are compared level by level as proportions.

    Args:
        cohort: Analysis cohort
        exposure_col: Exposure category column
        pair: (reference level, comparison level)
        covariates: List of covariate columns

    Returns:
        DataFrame with balance statistics
    """
    exposure = cohort[exposure_col].astype(object)
    reference = cohort[exposure == pair[0]]
    comparison = cohort[exposure == pair[1]]
    balance_stats = []

    for covariate in covariates:
        if covariate not in cohort.columns:
            continue

        if isinstance(cohort[covariate].dtype, pd.CategoricalDtype):
            series = {
                f"{covariate}: {level}": ((reference[covariate] == level).astype(float),
                                          (comparison[covariate] == level).astype(float))
                for level in cohort[covariate].cat.categories
            }
        else:
            series = {covariate: (pd.to_numeric(reference[covariate], errors='coerce'),
                                  pd.to_numeric(comparison[covariate], errors='coerce'))}

        for name, (ref_values, cmp_values) in series.items():
            pooled_sd = np.sqrt((ref_values.var() + cmp_values.var()) / 2)
            if pooled_sd > 0:
                smd = (cmp_values.mean() - ref_values.mean()) / pooled_sd
            else:
                smd = 0.0

            balance_stats.append({
                'covariate': name,
                f'mean_{pair[0]}': ref_values.mean(),
                f'mean_{pair[1]}': cmp_values.mean(),
                'standardized_mean_diff': smd
            })

    return pd.DataFrame(balance_stats)


def format_results_table(estimates: Sequence[Any], title: str = "Effect Estimates") -> str:
    """
    Format estimates as a table for reporting.

    Args:
        estimates: Estimate results in display order
        title: Title for the table

    Returns:
        Formatted table string
    """
    table_lines = [f"\n{title}", "=" * len(title)]

    headers = ["Estimator", "Difference", "CI lower", "CI upper", "P-value"]
    table_lines.append(" | ".join(f"{h:>14}" for h in headers))
    table_lines.append("-" * (15 * len(headers) + len(headers) - 1))

    for est in estimates:
        row = [
            est.method[:14],
            f"{est.estimate:.4f}",
            f"{est.ci_lower:.4f}",
            f"{est.ci_upper:.4f}",
            f"{est.p_value:.4f}"
        ]
        table_lines.append(" | ".join(f"{cell:>14}" for cell in row))

    return "\n".join(table_lines)


def ensure_directory(path: str) -> Path:
    """
    Ensure directory exists, create if it doesn't.

    Args:
        path: Directory path

    Returns:
        Path object
    """
    path_obj = Path(path)
    path_obj.mkdir(parents=True, exist_ok=True)
    return path_obj
