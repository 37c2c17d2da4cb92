#!/usr/bin/env python3
import itertools
import pickle
import unittest

import numpy as np
import xarray as xr

from map_comparer.classify import (
    AbsentPolicy,
    classify_agreement,
    extract_year,
    to_validity_mask,
)
from map_comparer.test.mock_data.make_test_comparison_data import make_raster
from utils.errors import InvariantViolation
from utils.pairing import AGREEMENT_CODE_DICT, AGREEMENT_PAIRING_DICT, AgreementClass


def full_mask(shape) -> xr.DataArray:
    return to_validity_mask(make_raster(np.ones(shape)))


class TestPairing(unittest.TestCase):
    def test_code_table_covers_four_classes(self):
        self.assertEqual(
            AGREEMENT_CODE_DICT,
            {
                0: AgreementClass.NO_EVENT,
                1: AgreementClass.FALSE_ALARM,
                10: AgreementClass.MISS,
                11: AgreementClass.HIT,
            },
        )

    def test_every_boolean_pair_maps_to_one_class(self):
        """All four (reference, candidate) pairs give distinct classes."""
        seen = set()
        for ref, cand in itertools.product([0, 1], repeat=2):
            comparison = classify_agreement(
                make_raster([[ref]]), make_raster([[cand]]), full_mask((1, 1))
            )
            value = AgreementClass(int(comparison.values[0, 0]))
            self.assertEqual(value, AGREEMENT_PAIRING_DICT[(ref, cand)])
            seen.add(value)
        self.assertEqual(seen, set(AgreementClass))


class TestExtractYear(unittest.TestCase):
    def test_marks_matching_year(self):
        source = make_raster([[2015, 2016], [np.nan, 2015]])
        layer = extract_year(source, 2015)

        np.testing.assert_array_equal(layer.values[0], [1.0, 0.0])
        self.assertTrue(np.isnan(layer.values[1, 0]))
        self.assertEqual(layer.values[1, 1], 1.0)
        self.assertEqual(layer.attrs["year"], 2015)

    def test_no_matching_year_gives_zeros(self):
        source = make_raster([[2010, 2011], [2012, np.nan]])
        layer = extract_year(source, 2020)

        self.assertEqual(float(layer.sum()), 0.0)
        self.assertEqual(int(layer.notnull().sum()), 3)


class TestValidityMask(unittest.TestCase):
    def test_absent_and_zero_cells_are_invalid(self):
        mask = to_validity_mask(make_raster([[1, 0], [np.nan, 7]]))
        np.testing.assert_array_equal(mask.values, [[True, False], [False, True]])


class TestClassifyAgreement(unittest.TestCase):
    def test_reference_event_scenario(self):
        """Reference 2015 at a cell: map A without event misses, map B with event hits."""
        reference = make_raster([[2015, np.nan]])
        map_a = make_raster([[np.nan, np.nan]])
        map_b = make_raster([[2015, np.nan]])
        mask = full_mask((1, 2))

        ref_bool = extract_year(reference, 2015)
        comparison_a = classify_agreement(ref_bool, extract_year(map_a, 2015), mask)
        comparison_b = classify_agreement(ref_bool, extract_year(map_b, 2015), mask)

        self.assertEqual(comparison_a.values[0, 0], AgreementClass.MISS)
        self.assertEqual(comparison_b.values[0, 0], AgreementClass.HIT)
        self.assertEqual(comparison_a.values[0, 1], AgreementClass.NO_EVENT)

    def test_different_year_is_a_miss(self):
        reference = make_raster([[2015]])
        candidate = make_raster([[2016]])

        comparison = classify_agreement(
            extract_year(reference, 2015), extract_year(candidate, 2015), full_mask((1, 1))
        )
        self.assertEqual(comparison.values[0, 0], AgreementClass.MISS)

    def test_mask_removes_hit(self):
        """A masked cell is absent even though its packed code would be a hit."""
        reference = make_raster([[1, 1]])
        candidate = make_raster([[1, 1]])
        mask = to_validity_mask(make_raster([[1, 0]]))

        comparison = classify_agreement(reference, candidate, mask)

        self.assertEqual(comparison.values[0, 0], AgreementClass.HIT)
        self.assertTrue(np.isnan(comparison.values[0, 1]))

    def test_absent_inputs_count_as_no_event(self):
        reference = make_raster([[np.nan, np.nan, 1]])
        candidate = make_raster([[1, np.nan, np.nan]])

        comparison = classify_agreement(reference, candidate, full_mask((1, 3)))

        np.testing.assert_array_equal(
            comparison.values[0],
            [AgreementClass.FALSE_ALARM, AgreementClass.NO_EVENT, AgreementClass.MISS],
        )

    def test_undetermined_policy_keeps_absence(self):
        reference = make_raster([[np.nan, 1, 1]])
        candidate = make_raster([[1, np.nan, 1]])

        comparison = classify_agreement(
            reference,
            candidate,
            full_mask((1, 3)),
            absent_policy=AbsentPolicy.UNDETERMINED,
        )

        self.assertTrue(np.isnan(comparison.values[0, 0]))
        self.assertTrue(np.isnan(comparison.values[0, 1]))
        self.assertEqual(comparison.values[0, 2], AgreementClass.HIT)

    def test_classification_is_repeatable(self):
        rng = np.random.default_rng(42)
        reference = make_raster(rng.integers(0, 2, (16, 16)))
        candidate = make_raster(rng.integers(0, 2, (16, 16)))
        mask = to_validity_mask(make_raster(rng.integers(0, 2, (16, 16))))

        first = classify_agreement(reference, candidate, mask, year=2010, map_id="A")
        second = classify_agreement(reference, candidate, mask, year=2010, map_id="A")

        xr.testing.assert_identical(first, second)

    def test_only_four_classes_appear(self):
        rng = np.random.default_rng(7)
        reference = make_raster(rng.integers(0, 2, (32, 32)))
        candidate = make_raster(rng.integers(0, 2, (32, 32)))

        comparison = classify_agreement(reference, candidate, full_mask((32, 32)))

        values = set(np.unique(comparison.values).astype(int).tolist())
        self.assertTrue(values <= {c.value for c in AgreementClass})

    def test_tags_and_crs(self):
        comparison = classify_agreement(
            make_raster([[1]]), make_raster([[0]]), full_mask((1, 1)), year=2019, map_id="B"
        )

        self.assertEqual(comparison.name, "comparison")
        self.assertEqual(comparison.attrs["year"], 2019)
        self.assertEqual(comparison.attrs["map"], "B")
        self.assertEqual(comparison.rio.crs.to_epsg(), 5070)

    def test_non_boolean_input_raises_invariant_violation(self):
        reference = make_raster([[0, 1], [0, 0]])
        candidate = make_raster([[0, 0], [2, 0]])

        with self.assertRaises(InvariantViolation) as ctx:
            classify_agreement(
                reference, candidate, full_mask((2, 2)), year=2012, map_id="A"
            )

        error = ctx.exception
        self.assertEqual(error.year, 2012)
        self.assertEqual(error.map_id, "A")
        self.assertEqual((error.location["row"], error.location["col"]), (1, 0))
        self.assertIn("code 2", str(error))

    def test_invariant_violation_survives_pickling(self):
        error = InvariantViolation("bad code", year=2020, map_id="B", location={"row": 3})
        restored = pickle.loads(pickle.dumps(error))

        self.assertIsInstance(restored, InvariantViolation)
        self.assertEqual(restored.year, 2020)
        self.assertEqual(restored.map_id, "B")
        self.assertEqual(restored.location, {"row": 3})

    def test_misaligned_inputs_raise(self):
        reference = make_raster([[1, 0]])
        candidate = make_raster([[1, 0]]).assign_coords(x=[0.0, 30.0])

        with self.assertRaises(ValueError):
            classify_agreement(reference, candidate, full_mask((1, 2)))


if __name__ == "__main__":
    unittest.main()
