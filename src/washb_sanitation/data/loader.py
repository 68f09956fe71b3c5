"""
Data loading module for the WASH Benefits trial tables.
"""

import pandas as pd
from pathlib import Path
from typing import Dict, Iterable, Optional, Sequence
import logging

from ..config import TrialConfig
from ..exceptions import SchemaError


logger = logging.getLogger(__name__)


def _require_columns(df: pd.DataFrame, columns: Iterable[str], table: str) -> None:
    missing = [col for col in columns if col not in df.columns]
    if missing:
        raise SchemaError(f"{table} table is missing column(s): {', '.join(missing)}")


def _left_join(
    left: pd.DataFrame,
    right: pd.DataFrame,
    keys: Sequence[str],
    table: str
) -> pd.DataFrame:
    """Left-join `right` onto `left`; columns already on the left are kept from the left."""
    keys = list(keys)
    overlap = [col for col in right.columns if col in left.columns and col not in keys]
    if overlap:
        logger.debug(f"Ignoring {table} columns already present in anthropometry: {overlap}")
        right = right.drop(columns=overlap)

    try:
        merged = left.merge(right, on=keys, how="left", validate="many_to_one", indicator=True)
    except pd.errors.MergeError as exc:
        raise SchemaError(f"{table} table has duplicated join keys {keys}: {exc}") from exc
    except ValueError as exc:
        raise SchemaError(f"{table} join keys {keys} have incompatible types: {exc}") from exc

    n_unmatched = int((merged["_merge"] == "left_only").sum())
    if n_unmatched:
        logger.info(f"{n_unmatched} anthropometry rows have no {table.lower()} record")
    return merged.drop(columns="_merge")


def join_tables(
    anthropometry: pd.DataFrame,
    treatment: pd.DataFrame,
    enrollment: pd.DataFrame,
    treatment_keys: Sequence[str],
    enrollment_keys: Sequence[str]
) -> pd.DataFrame:
    """
    Join treatment assignment and enrollment covariates onto anthropometry.

    Anthropometry drives the join: every measurement row is kept, and rows
    with no partner in the other tables carry missing values for their fields.

    Args:
        anthropometry: One row per child-visit measurement
        treatment: Arm assignment, keyed by `treatment_keys`
        enrollment: Baseline household covariates, keyed by `enrollment_keys`
        treatment_keys: Columns joining anthropometry to treatment
        enrollment_keys: Columns joining anthropometry to enrollment

    Returns:
        Joined table with one row per anthropometry row

    Raises:
        SchemaError: If a join key is absent from a table or a right-hand table
            has duplicated keys
    """
    _require_columns(anthropometry, list(treatment_keys) + list(enrollment_keys), "Anthropometry")
    _require_columns(treatment, treatment_keys, "Treatment")
    _require_columns(enrollment, enrollment_keys, "Enrollment")

    df = _left_join(anthropometry, treatment, treatment_keys, "Treatment")
    return _left_join(df, enrollment, enrollment_keys, "Enrollment")


class TrialDataLoader:
    """Loads and joins the three input tables of one trial."""

    def __init__(self, config: TrialConfig, data_dir: str = "data/raw"):
        """
        Initialize the data loader.

        Args:
            config: Trial configuration naming files, keys and columns
            data_dir: Directory holding one sub-directory per country
        """
        self.config = config
        self.data_dir = Path(data_dir) / config.data_subdir
        self._tables: Optional[Dict[str, pd.DataFrame]] = None

    def read_tables(self) -> Dict[str, pd.DataFrame]:
        """Read the treatment, enrollment and anthropometry CSV files."""
        files = {
            "treatment": self.config.treatment_file,
            "enrollment": self.config.enrollment_file,
            "anthropometry": self.config.anthropometry_file,
        }
        tables = {}
        for table, filename in files.items():
            path = self.data_dir / filename
            try:
                tables[table] = pd.read_csv(path)
            except (pd.errors.EmptyDataError, pd.errors.ParserError, UnicodeDecodeError) as exc:
                raise SchemaError(f"{table.capitalize()} table {path} could not be parsed: {exc}") from exc
            logger.info(f"Read {table} table from {path}: {len(tables[table])} rows")

        self._tables = tables
        return tables

    def load_data(self) -> pd.DataFrame:
        """
        Load and join the trial tables.

        Returns:
            One row per child-visit with arm and enrollment fields attached
        """
        logger.info(f"Loading {self.config.name} trial data from {self.data_dir}")
        tables = self.read_tables()

        df = join_tables(
            tables["anthropometry"],
            tables["treatment"],
            tables["enrollment"],
            treatment_keys=self.config.treatment_keys,
            enrollment_keys=self.config.enrollment_keys,
        )
        _require_columns(df, self.config.required_columns(), "Joined")

        logger.info(f"Loaded {self.config.name} dataset with {len(df)} rows and {len(df.columns)} columns")
        return df
