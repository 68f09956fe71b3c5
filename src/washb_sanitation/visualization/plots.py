"""
Visualization module for the sanitation and growth analysis.
"""

import matplotlib.pyplot as plt
import seaborn as sns
import numpy as np
from typing import Mapping, Optional, Sequence, Tuple
import logging

from ..models.estimators import EstimateResult


logger = logging.getLogger(__name__)


class GrowthVisualization:
    """Creates the figures of the sanitation / linear growth report."""

    def __init__(self, figsize: Tuple[int, int] = (10, 6)):
        """
        Initialize visualization settings.

        Args:
            figsize: Default figure size
        """
        plt.style.use('default')
        sns.set_palette("husl")
        self.figsize = figsize
        self.colors = {
            'primary': '#2E86AB',
            'secondary': '#A23B72',
            'accent': '#F18F01',
            'neutral': '#C73E1D',
            'light_gray': '#F5F5F5',
            'dark_gray': '#333333'
        }

    def _finish(self, fig, save_path: Optional[str], what: str) -> None:
        plt.tight_layout()
        if save_path:
            fig.savefig(save_path, dpi=300, bbox_inches='tight')
            logger.info(f"{what} saved to {save_path}")
        plt.close(fig)

    def plot_outcome_density(
        self,
        distributions: Mapping[str, np.ndarray],
        title: str,
        outcome_label: str = "Length-for-age Z-score",
        save_path: Optional[str] = None
    ) -> None:
        """
        Overlay the outcome densities of two exposure levels.

        Args:
            distributions: Level -> outcome values, as from `outcome_distributions`
            title: Figure title
            outcome_label: X axis label
            save_path: Path to save the figure
        """
        fig, ax = plt.subplots(figsize=self.figsize)
        palette = [self.colors['neutral'], self.colors['primary']]

        for (level, values), color in zip(distributions.items(), palette):
            if len(values) > 1:
                sns.kdeplot(values, ax=ax, fill=True, alpha=0.3, color=color,
                            label=f"{level} (n={len(values)})")
            if len(values):
                ax.axvline(np.mean(values), color=color, linestyle="--", alpha=0.8)

        ax.set_xlabel(outcome_label)
        ax.set_ylabel('Density')
        ax.set_title(title, fontweight='bold')
        ax.legend()
        ax.grid(True, alpha=0.3)

        self._finish(fig, save_path, "Density plot")

    def plot_outcome_ecdf(
        self,
        distributions: Mapping[str, np.ndarray],
        title: str,
        outcome_label: str = "Length-for-age Z-score",
        save_path: Optional[str] = None
    ) -> None:
        """
        Overlay the empirical cumulative distributions of two exposure levels.

        Complements the density overlay: a shift of the whole distribution
        shows as a horizontal gap between the curves.
        """
        fig, ax = plt.subplots(figsize=self.figsize)
        palette = [self.colors['neutral'], self.colors['primary']]

        for (level, values), color in zip(distributions.items(), palette):
            if len(values):
                sns.ecdfplot(values, ax=ax, color=color, linewidth=2,
                             label=f"{level} (n={len(values)})")

        ax.axhline(0.5, color=self.colors['dark_gray'], linestyle=':', alpha=0.6)
        ax.set_xlabel(outcome_label)
        ax.set_ylabel('Cumulative proportion')
        ax.set_title(title, fontweight='bold')
        ax.legend()
        ax.grid(True, alpha=0.3)

        self._finish(fig, save_path, "Cumulative distribution plot")

    def plot_treatment_effects(
        self,
        estimates: Mapping[str, Sequence[EstimateResult]],
        outcome_label: str = "Z-score",
        save_path: Optional[str] = None
    ) -> None:
        """
        Forest plot of every country's estimates with confidence intervals.

        Args:
            estimates: Country -> ordered estimate results
            outcome_label: Outcome name for the axis label
            save_path: Path to save the figure
        """
        labels, coefficients, ci_lower, ci_upper = [], [], [], []
        for country, results in estimates.items():
            for est in results:
                labels.append(f"{country}: {est.method}")
                coefficients.append(est.estimate)
                ci_lower.append(est.ci_lower)
                ci_upper.append(est.ci_upper)

        fig, ax = plt.subplots(figsize=self.figsize)

        errors_lower = [coef - lower for coef, lower in zip(coefficients, ci_lower)]
        errors_upper = [upper - coef for coef, upper in zip(coefficients, ci_upper)]
        y_pos = np.arange(len(labels))[::-1]

        ax.errorbar(coefficients, y_pos, xerr=[errors_lower, errors_upper],
                    fmt='o', markersize=8, capsize=5, capthick=2,
                    color=self.colors['primary'], ecolor=self.colors['dark_gray'])
        ax.axvline(x=0, color=self.colors['neutral'], linestyle='--', alpha=0.7)

        ax.set_yticks(y_pos)
        ax.set_yticklabels(labels)
        ax.set_xlabel(f'Difference in mean {outcome_label} (95% CI)')
        ax.set_title('Sanitation and Child Linear Growth', fontweight='bold')
        ax.grid(True, alpha=0.3)

        self._finish(fig, save_path, "Effect estimates plot")

