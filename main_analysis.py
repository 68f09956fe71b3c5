"""
Main analysis script: sanitation access and child LAZ in the WASH Benefits control arms.

Runs the Bangladesh and Kenya pipelines, draws the figures and writes the
JSON results and the Markdown report.
"""

import sys
from pathlib import Path
import logging

# Add src to path for imports
sys.path.append(str(Path(__file__).parent / "src"))

from washb_sanitation.config import DEFAULT_SEED, TRIALS
from washb_sanitation.pipeline import run_all
from washb_sanitation.visualization.plots import GrowthVisualization
from washb_sanitation.utils.helpers import (
    setup_logging, save_results, format_results_table, ensure_directory
)
from washb_sanitation.utils.reporting import (
    collect_estimates, format_comparison_table, write_report
)


def main():
    """Run the complete analysis for both trials."""

    # Setup
    setup_logging(level="INFO")
    logger = logging.getLogger(__name__)

    figures_dir = ensure_directory("figures")
    results_dir = ensure_directory("results")

    logger.info(f"Starting sanitation and linear growth analysis (seed {DEFAULT_SEED})")

    # Step 1: Per-country pipelines
    analyses, failures = run_all(TRIALS, data_dir="data/raw", random_state=DEFAULT_SEED)

    if not analyses:
        logger.error("No country analysis completed")
        return 1

    # Step 2: Figures
    logger.info("Drawing figures")
    visualizer = GrowthVisualization()
    figures = {}
    for country, analysis in analyses.items():
        a_level, b_level = analysis.density_pair
        label = analysis.outcome_label
        title = f"{country}: {label} by sanitation ({b_level} vs {a_level})"
        stem = f"{country.lower()}_{label.lower()}"

        density_path = figures_dir / f"{stem}_density.png"
        visualizer.plot_outcome_density(analysis.distributions, title=title,
                                        outcome_label=label, save_path=density_path)
        ecdf_path = figures_dir / f"{stem}_ecdf.png"
        visualizer.plot_outcome_ecdf(analysis.distributions, title=title,
                                     outcome_label=label, save_path=ecdf_path)
        figures[country] = [str(density_path), str(ecdf_path)]

    estimates = {country: analysis.estimates for country, analysis in analyses.items()}
    outcome_label = "/".join(dict.fromkeys(analysis.outcome_label for analysis in analyses.values()))
    visualizer.plot_treatment_effects(estimates, outcome_label=outcome_label,
                                      save_path=figures_dir / "effect_estimates.png")

    # Step 3: Results and report
    table = collect_estimates(estimates)

    results = {
        country: {
            'n_children': analysis.n_children,
            'n_clusters': analysis.n_clusters,
            'flow': analysis.flow.to_dict(orient='records'),
            'descriptives': analysis.descriptives.reset_index().to_dict(orient='records'),
            'screening': (analysis.screening.to_dict(orient='records')
                          if analysis.screening is not None else []),
            'estimates': [est.to_dict() for est in analysis.estimates],
        } for country, analysis in analyses.items()
    }
    results['failures'] = {country: str(error) for country, error in failures.items()}
    save_results(results, results_dir / "analysis_results.json")

    write_report(analyses, results_dir / "report.md", failures=failures, figures=figures)

    print("\n" + "=" * 80)
    print("SANITATION AND LINEAR GROWTH RESULTS")
    print("=" * 80)
    for country, analysis in analyses.items():
        print(format_results_table(analysis.estimates, f"{country} (N={analysis.n_children})"))
    print()
    print(format_comparison_table(table))

    for country, error in failures.items():
        print(f"\n{country} analysis did not complete: {error}")

    print(f"\nAnalysis complete! Outputs saved to:")
    print(f"- Figures: {figures_dir}")
    print(f"- Results: {results_dir}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
