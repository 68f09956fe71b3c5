"""
Cross-country aggregation of effect estimates and the Markdown report.
"""

import pandas as pd
import logging
from pathlib import Path
from typing import Mapping, Optional, Sequence

from ..exceptions import ReportingError
from ..models.estimators import ADJUSTED_GLM, ADJUSTED_TMLE, ESTIMATOR_ORDER, EstimateResult


logger = logging.getLogger(__name__)

TABLE_COLUMNS = ["estimate", "ci_lower", "ci_upper", "p_value"]


def collect_estimates(estimates: Mapping[str, Sequence[EstimateResult]]) -> pd.DataFrame:
    """
    Collect each country's estimates into one comparison table.

    Args:
        estimates: Country name -> results ordered Unadjusted, Adjusted GLM, Adjusted TMLE

    Returns:
        DataFrame indexed by (country, estimator) with estimate, CI bounds and p-value

    Raises:
        ReportingError: If a country's estimates are missing or out of order
    """
    rows = []
    for country, results in estimates.items():
        methods = tuple(result.method for result in results) if results else ()
        if methods != ESTIMATOR_ORDER:
            missing = [method for method in ESTIMATOR_ORDER if method not in methods]
            detail = f"missing {missing}" if missing else f"got order {list(methods)}"
            raise ReportingError(
                f"Expected estimators {list(ESTIMATOR_ORDER)}: {detail}",
                country=country,
                stage="report",
            )
        for result in results:
            rows.append({
                "country": country,
                "estimator": result.method,
                "estimate": result.estimate,
                "ci_lower": result.ci_lower,
                "ci_upper": result.ci_upper,
                "p_value": result.p_value,
            })

    table = pd.DataFrame(rows, columns=["country", "estimator"] + TABLE_COLUMNS)
    return table.set_index(["country", "estimator"])


def format_comparison_table(table: pd.DataFrame, title: str = "Sanitation and linear growth: effect estimates") -> str:
    """Fixed-width text rendering of the comparison table."""
    lines = [title, "=" * len(title)]
    header = f"{'Country':<12} {'Estimator':<14} {'Estimate':>10} {'CI lower':>10} {'CI upper':>10} {'P-value':>9}"
    lines.extend([header, "-" * len(header)])

    for (country, estimator), row in table.iterrows():
        lines.append(
            f"{country:<12} {estimator:<14} {row['estimate']:>10.3f} {row['ci_lower']:>10.3f} "
            f"{row['ci_upper']:>10.3f} {row['p_value']:>9.4f}"
        )
    return "\n".join(lines)


def _markdown_table(df: pd.DataFrame, floatfmt: str = ".2f") -> str:
    """Render a DataFrame (index included) as a Markdown table; missing values are left blank."""
    return df.astype(object).where(df.notna(), None).to_markdown(floatfmt=floatfmt, missingval="")


def _narrative(table: pd.DataFrame, outcome_labels: Mapping[str, str]) -> str:
    """Sentence per country on the adjusted effects, then a comparison."""
    sentences = []
    tmle_effects = {}
    for country in table.index.get_level_values("country").unique():
        glm = table.loc[(country, ADJUSTED_GLM)]
        tmle = table.loc[(country, ADJUSTED_TMLE)]
        tmle_effects[country] = tmle["estimate"]
        label = outcome_labels.get(country, "Z-score")
        sentences.append(
            f"In {country}, the adjusted difference in mean {label} was {glm['estimate']:.2f} "
            f"(95% CI {glm['ci_lower']:.2f}, {glm['ci_upper']:.2f}) with the GLM and "
            f"{tmle['estimate']:.2f} (95% CI {tmle['ci_lower']:.2f}, {tmle['ci_upper']:.2f}) with TMLE."
        )

    if len(tmle_effects) >= 2:
        ranked = sorted(tmle_effects.items(), key=lambda item: item[1], reverse=True)
        (top, top_effect), (other, other_effect) = ranked[0], ranked[1]
        sentences.append(
            f"The TMLE-adjusted association was larger in {top} ({top_effect:.2f}) "
            f"than in {other} ({other_effect:.2f})."
        )
    return " ".join(sentences)


def write_report(
    analyses: Mapping[str, object],
    filepath: str,
    failures: Optional[Mapping[str, Exception]] = None,
    figures: Optional[Mapping[str, Sequence[str]]] = None
) -> str:
    """
    Write the Markdown report.

    Args:
        analyses: Country name -> CountryAnalysis
        filepath: Output Markdown path
        failures: Country name -> error for pipelines that did not complete
        figures: Country name -> figure paths to link

    Returns:
        The report text
    """
    failures = failures or {}
    figures = figures or {}
    table = collect_estimates({country: analysis.estimates for country, analysis in analyses.items()})

    sections = ["# Sanitation access and child linear growth", ""]
    for country, analysis in analyses.items():
        a_level, b_level = analysis.contrast
        sections.extend([
            f"## {country}",
            "",
            f"Cohort: {analysis.n_children} children in {analysis.n_clusters} blocks.",
            "",
            "### Outcome by sanitation category",
            "",
            _markdown_table(analysis.descriptives),
            "",
        ])
        if analysis.balance is not None and not analysis.balance.empty:
            sections.extend([
                f"### Covariate balance: {b_level} vs {a_level}",
                "",
                _markdown_table(analysis.balance.set_index("covariate")),
                "",
            ])
        for figure in figures.get(country, []):
            sections.extend([f"![{Path(figure).stem}]({figure})", ""])
        sections.extend([
            f"### Effect of {b_level} vs {a_level}",
            "",
            _markdown_table(table.loc[[country]].droplevel("country"), floatfmt=".3f"),
            "",
        ])

    outcome_labels = {country: analysis.outcome_label for country, analysis in analyses.items()}
    sections.extend(["## Comparison", "", _narrative(table, outcome_labels), ""])

    if failures:
        sections.extend(["## Incomplete analyses", ""])
        for country, error in failures.items():
            sections.append(f"- {country}: {error}")
        sections.append("")

    report = "\n".join(sections)
    Path(filepath).write_text(report)
    logger.info(f"Report written to {filepath}")
    return report
