"""
Unit tests for data loading and cohort building.
"""

import unittest
import tempfile
import pandas as pd
import numpy as np
from unittest.mock import patch
import sys
from pathlib import Path

# Add src to path
sys.path.append(str(Path(__file__).parent.parent / "src"))
sys.path.append(str(Path(__file__).parent))

from washb_sanitation.config import BANGLADESH, KENYA, CovariateSpec, ExposureRule
from washb_sanitation.data.loader import TrialDataLoader, join_tables
from washb_sanitation.data.preprocessor import CohortBuilder, relevel
from washb_sanitation.exceptions import CohortEmptyError, SchemaError
from synthetic import make_trial_tables, write_trial_tables


def _joined(country="bangladesh", **kwargs):
    config = KENYA if country == "kenya" else BANGLADESH
    treatment, enrollment, anthropometry = make_trial_tables(country, **kwargs)
    return join_tables(anthropometry, treatment, enrollment,
                       config.treatment_keys, config.enrollment_keys)


class TestJoinTables(unittest.TestCase):
    """Test cases for join_tables."""

    def setUp(self):
        """Set up test fixtures."""
        self.treatment, self.enrollment, self.anthropometry = make_trial_tables(
            "bangladesh", n_clusters=4, households_per_cluster=3
        )

    def test_keeps_every_anthropometry_row(self):
        """Test the join neither drops nor duplicates measurement rows."""
        result = join_tables(self.anthropometry, self.treatment, self.enrollment,
                             BANGLADESH.treatment_keys, BANGLADESH.enrollment_keys)

        self.assertEqual(len(result), len(self.anthropometry))
        self.assertIn('tr', result.columns)
        self.assertIn('block', result.columns)
        self.assertIn('momage', result.columns)
        self.assertNotIn('clusterid_x', result.columns)

    def test_child_missing_from_enrollment_is_kept(self):
        """Test an anthropometry row without enrollment keeps missing covariates."""
        enrollment = self.enrollment[self.enrollment['dataid'] != 1]
        result = join_tables(self.anthropometry, self.treatment, enrollment,
                             BANGLADESH.treatment_keys, BANGLADESH.enrollment_keys)

        child = result[result['dataid'] == 1]
        self.assertEqual(len(child), 2)
        self.assertTrue(child['momage'].isna().all())
        self.assertTrue(child['latown'].isna().all())
        self.assertTrue((child['tr'] == 'Control').all())

    def test_missing_join_key_raises(self):
        """Test a table without its join key fails before joining."""
        with self.assertRaises(SchemaError):
            join_tables(self.anthropometry, self.treatment.drop(columns='clusterid'),
                        self.enrollment, BANGLADESH.treatment_keys, BANGLADESH.enrollment_keys)

        with self.assertRaises(SchemaError):
            join_tables(self.anthropometry.drop(columns='dataid'), self.treatment,
                        self.enrollment, BANGLADESH.treatment_keys, BANGLADESH.enrollment_keys)

    def test_treatment_without_block_raises(self):
        """Test the treatment table must carry the randomization block."""
        with self.assertRaises(SchemaError) as context:
            join_tables(self.anthropometry, self.treatment.drop(columns='block'),
                        self.enrollment, BANGLADESH.treatment_keys, BANGLADESH.enrollment_keys)
        self.assertIn('block', str(context.exception))

    def test_block_taken_from_join_keys(self):
        """Test a child whose block disagrees with the treatment table gets no arm."""
        anthropometry = self.anthropometry.copy()
        anthropometry.loc[0, 'block'] = 99
        result = join_tables(anthropometry, self.treatment, self.enrollment,
                             BANGLADESH.treatment_keys, BANGLADESH.enrollment_keys)

        self.assertTrue(pd.isna(result.loc[0, 'tr']))
        self.assertEqual(result['tr'].notna().sum(), len(result) - 1)

    def test_duplicated_keys_raise(self):
        """Test duplicated right-hand keys are rejected rather than multiplying rows."""
        enrollment = pd.concat([self.enrollment, self.enrollment.head(1)])
        with self.assertRaises(SchemaError):
            join_tables(self.anthropometry, self.treatment, enrollment,
                        BANGLADESH.treatment_keys, BANGLADESH.enrollment_keys)


class TestTrialDataLoader(unittest.TestCase):
    """Test cases for TrialDataLoader."""

    def test_initialization(self):
        """Test loader initialization."""
        loader = TrialDataLoader(KENYA, data_dir="some/dir")
        self.assertEqual(loader.data_dir, Path("some/dir") / "kenya")
        self.assertIsNone(loader._tables)

    @patch('washb_sanitation.data.loader.pd.read_csv')
    def test_load_data(self, mock_read_csv):
        """Test loading reads the three tables and joins them."""
        treatment, enrollment, anthropometry = make_trial_tables(
            "bangladesh", n_clusters=4, households_per_cluster=2
        )
        mock_read_csv.side_effect = [treatment, enrollment, anthropometry]

        result = TrialDataLoader(BANGLADESH, data_dir="data").load_data()

        self.assertEqual(mock_read_csv.call_count, 3)
        self.assertEqual(len(result), len(anthropometry))
        for column in BANGLADESH.required_columns():
            self.assertIn(column, result.columns)

    @patch('washb_sanitation.data.loader.pd.read_csv')
    def test_load_data_missing_column(self, mock_read_csv):
        """Test a referenced column absent after the join raises SchemaError."""
        treatment, enrollment, anthropometry = make_trial_tables(
            "bangladesh", n_clusters=4, households_per_cluster=2
        )
        mock_read_csv.side_effect = [treatment, enrollment.drop(columns='momheight'), anthropometry]

        with self.assertRaises(SchemaError):
            TrialDataLoader(BANGLADESH).load_data()

    def test_unparseable_file_raises_schema_error(self):
        """Test an empty CSV is reported as a SchemaError naming the table."""
        with tempfile.TemporaryDirectory() as tmpdir:
            write_trial_tables(Path(tmpdir), KENYA, n_clusters=4, households_per_cluster=2)
            (Path(tmpdir) / "kenya" / KENYA.enrollment_file).write_text("")

            with self.assertRaises(SchemaError) as context:
                TrialDataLoader(KENYA, data_dir=tmpdir).read_tables()
        self.assertIn('Enrollment', str(context.exception))


class TestExposureRule(unittest.TestCase):
    """Test cases for exposure derivation."""

    def test_bangladesh_categories(self):
        """Test the three-level latrine classification and baseline imputation."""
        raw = pd.DataFrame({
            'latown': [0, 1, 1, np.nan, 1, 0],
            'latseal': [0, 0, 1, np.nan, np.nan, 1],
        })
        result = BANGLADESH.exposure.derive(raw)

        self.assertEqual(list(result.astype(object)), [
            'No latrine', 'Latrine no water seal', 'Latrine with water seal',
            'No latrine', 'Latrine no water seal', 'No latrine'
        ])
        self.assertFalse(result.isna().any())

    def test_kenya_excludes_missing(self):
        """Test missing improved-latrine status leaves the category missing."""
        raw = pd.DataFrame({'imp_lat': [1, 0, np.nan]})
        result = KENYA.exposure.derive(raw)

        self.assertEqual(result.iloc[0], 'Improved latrine')
        self.assertEqual(result.iloc[1], 'No improved latrine')
        self.assertTrue(pd.isna(result.iloc[2]))

    def test_derivation_is_pure(self):
        """Test identical raw inputs always give identical categories."""
        raw = pd.DataFrame({'latown': [1, 1, 0], 'latseal': [1, 1, 0]})
        first = BANGLADESH.exposure.derive(raw)
        second = BANGLADESH.exposure.derive(raw.copy())

        pd.testing.assert_series_equal(first, second)
        self.assertEqual(first.iloc[0], first.iloc[1])

    def test_unknown_label_rejected(self):
        """Test rules may only assign declared levels."""
        with self.assertRaises(ValueError):
            ExposureRule(fields=('x',), rules=(({'x': 1}, 'Other'),), levels=('Yes', 'No'))


class TestRelevel(unittest.TestCase):
    """Test cases for categorical re-leveling."""

    def test_reference_first(self):
        """Test the reference level comes first regardless of alphabetical order."""
        values = pd.Series(['Has electricity', 'No electricity', 'Has electricity'])
        result = relevel(values, 'No electricity')

        self.assertEqual(list(result.cat.categories), ['No electricity', 'Has electricity'])

    def test_labels_applied(self):
        """Test raw codes are translated through the label map."""
        cov = CovariateSpec('elec', 'categorical', 'No electricity',
                             {0: 'No electricity', 1: 'Has electricity'})
        result = relevel(pd.Series([1.0, 0.0, np.nan]), cov.reference, cov.labels)

        self.assertEqual(result.iloc[0], 'Has electricity')
        self.assertEqual(result.iloc[1], 'No electricity')
        self.assertTrue(pd.isna(result.iloc[2]))

    def test_idempotent(self):
        """Test re-leveling an already re-leveled covariate changes nothing."""
        labels = {0: 'No TV', 1: 'Has TV'}
        once = relevel(pd.Series([1, 0, 1, 0]), 'No TV', labels)
        twice = relevel(once, 'No TV', labels)

        self.assertEqual(list(once.cat.categories), list(twice.cat.categories))
        pd.testing.assert_series_equal(once, twice)

    def test_absent_reference_still_first(self):
        """Test the reference is kept as first level even when unobserved."""
        result = relevel(pd.Series(['Primary', 'Any secondary']), 'Incomplete Primary')
        self.assertEqual(result.cat.categories[0], 'Incomplete Primary')


class TestCohortBuilder(unittest.TestCase):
    """Test cases for CohortBuilder."""

    def test_filters_in_order(self):
        """Test the cohort keeps final-visit control children with valid outcomes."""
        joined = _joined("bangladesh")
        joined.loc[0, 'laz'] = 7.5
        joined.loc[1, 'laz_x'] = 1

        builder = CohortBuilder(BANGLADESH)
        cohort = builder.build(joined)
        flow = builder.get_flow()

        self.assertEqual(list(flow['step']),
                         ['final visit', 'valid outcome', 'control arm', 'valid exposure'])
        self.assertTrue((flow['n_after'] <= flow['n_before']).all())
        self.assertTrue((cohort['svy'] == 2).all())
        self.assertTrue((cohort['tr'] == 'Control').all())
        self.assertTrue(cohort['laz'].between(-6, 6).all())
        self.assertFalse(cohort['sanitation'].isna().any())

    def test_multiple_control_arms(self):
        """Test Kenya keeps both control arm labels."""
        cohort = CohortBuilder(KENYA).build(_joined("kenya"))
        self.assertEqual(set(cohort['tr']), {'Control', 'Passive Control'})

    def test_categorical_covariates_releveled(self):
        """Test categorical covariates get their declared reference level."""
        cohort = CohortBuilder(BANGLADESH).build(_joined("bangladesh"))

        for cov in BANGLADESH.covariates.categorical:
            self.assertEqual(cohort[cov.name].cat.categories[0], cov.reference)
        self.assertIn('Has electricity', list(cohort['elec'].cat.categories))

    def test_child_missing_from_enrollment(self):
        """Test a child without enrollment data is only removed by the exposure filter."""
        treatment, enrollment, anthropometry = make_trial_tables("kenya")
        enrollment = enrollment[enrollment['hhid'] != 1]
        joined = join_tables(anthropometry, treatment, enrollment, KENYA.treatment_keys, KENYA.enrollment_keys)

        builder = CohortBuilder(KENYA)
        cohort = builder.build(joined)
        flow = builder.get_flow().set_index('step')

        self.assertNotIn(1, cohort['childid'].tolist())
        self.assertGreaterEqual(
            flow.loc['valid exposure', 'n_before'] - flow.loc['valid exposure', 'n_after'], 1
        )

        # Bangladesh imputes the missing latrine fields to the baseline instead
        treatment, enrollment, anthropometry = make_trial_tables("bangladesh")
        enrollment = enrollment[enrollment['dataid'] != 1]
        joined = join_tables(anthropometry, treatment, enrollment, BANGLADESH.treatment_keys, BANGLADESH.enrollment_keys)
        cohort = CohortBuilder(BANGLADESH).build(joined)

        child = cohort[cohort['childid'] == 1]
        self.assertEqual(len(child), 1)
        self.assertEqual(child['sanitation'].iloc[0], 'No latrine')
        self.assertTrue(pd.isna(child['momage'].iloc[0]))

    def test_empty_cohort_raises(self):
        """Test a filter leaving no rows raises CohortEmptyError naming the step."""
        joined = _joined("bangladesh")
        joined['tr'] = 'Water'

        with self.assertRaises(CohortEmptyError) as context:
            CohortBuilder(BANGLADESH).build(joined)
        self.assertIn('control arm', str(context.exception))
        self.assertEqual(context.exception.country, 'Bangladesh')


if __name__ == '__main__':
    unittest.main()
