#!/usr/bin/env python3
"""
Per-year agreement classification between a reference map and a candidate map.

Both source maps store, per pixel, the year an event happened. For a given year
each map is reduced to a boolean layer and the two layers are packed into one
of four agreement classes (see utils.pairing).
"""
from enum import Enum
from typing import Optional

import numpy as np
import rioxarray  # noqa: F401
import xarray as xr

from utils.errors import InvariantViolation
from utils.pairing import AGREEMENT_CODE_DICT, REFERENCE_WEIGHT


class AbsentPolicy(str, Enum):
    # absent input cells count as "no event"
    NO_EVENT = "no_event"
    # absent input cells stay absent in the comparison map
    UNDETERMINED = "undetermined"


def extract_year(source: xr.DataArray, year: int) -> xr.DataArray:
    """
    Boolean layer for one year: 1 where the source records an event in `year`,
    0 where the source is present with any other value, NaN where it is absent.
    """
    layer = (source == year).astype("float32").where(source.notnull())
    layer.name = "event"
    layer.attrs = {"year": int(year)}
    return layer


def to_validity_mask(roi: xr.DataArray) -> xr.DataArray:
    """A cell is valid when the ROI raster is present and nonzero there."""
    mask = roi.notnull() & (roi.fillna(0) != 0)
    mask.name = "validity_mask"
    return mask


def _first_cell(flags: xr.DataArray) -> dict:
    row, col = np.argwhere(np.asarray(flags.values))[0]
    return {
        "row": int(row),
        "col": int(col),
        "y": float(flags["y"].values[row]),
        "x": float(flags["x"].values[col]),
    }


def classify_agreement(
    reference: xr.DataArray,
    candidate: xr.DataArray,
    validity_mask: xr.DataArray,
    absent_policy: AbsentPolicy = AbsentPolicy.NO_EVENT,
    year: Optional[int] = None,
    map_id: Optional[str] = None,
) -> xr.DataArray:
    """
    Combine a reference and a candidate boolean layer into a comparison map.

    Parameters
    ----------
    reference: xr.DataArray
        Boolean layer of the reference map for one year
    candidate: xr.DataArray
        Boolean layer of the candidate map for the same year
    validity_mask: xr.DataArray
        Boolean region of interest; cells outside it are absent in the result
    absent_policy: AbsentPolicy
        How absent input cells are treated before packing
    year, map_id:
        Tags written to the result attributes and to any raised error

    Returns
    -------
    xr.DataArray
        float32 comparison map of AgreementClass values, NaN where absent

    Raises
    ------
    InvariantViolation
        If a packed code has no agreement class
    ValueError
        If the three inputs are not on the same grid
    """
    try:
        reference, candidate, validity_mask = xr.align(
            reference, candidate, validity_mask, join="exact"
        )
    except ValueError as e:
        raise ValueError(f"Comparison inputs are not aligned on one grid: {e}") from e

    # Absence resolves to "no event" before packing so no disagreement is dropped
    codes = REFERENCE_WEIGHT * reference.fillna(0) + candidate.fillna(0)

    comparison = xr.full_like(codes, np.nan, dtype="float32")
    for code, agreement_class in AGREEMENT_CODE_DICT.items():
        comparison = comparison.where(codes != code, float(agreement_class))

    unmatched = comparison.isnull()
    if bool(unmatched.any()):
        location = _first_cell(unmatched)
        bad_code = codes.values[location["row"], location["col"]]
        raise InvariantViolation(
            f"Packed reference/candidate code {bad_code:g} has no agreement class",
            year=year,
            map_id=map_id,
            location=location,
        )

    if absent_policy == AbsentPolicy.UNDETERMINED:
        comparison = comparison.where(reference.notnull() & candidate.notnull())

    # Mask last so the packing above always sees resolved booleans
    comparison = comparison.where(validity_mask.astype(bool))

    if comparison.rio.crs is None and reference.rio.crs is not None:
        comparison = comparison.rio.write_crs(reference.rio.crs)

    tags = {}
    if year is not None:
        tags["year"] = int(year)
    if map_id is not None:
        tags["map"] = str(map_id)
    comparison.name = "comparison"
    comparison.attrs = tags
    return comparison
