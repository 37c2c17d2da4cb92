#!/usr/bin/env python3
"""
Zonal histogram of a comparison map.

Counts, over a geometry and at an explicit scale, how many present pixels fall
into each agreement class. Counting goes through flox with the four known
classes as expected groups so the whole map never has to be scanned for its
unique values.
"""
import logging
import os
from typing import Optional

import fsspec
import geopandas as gpd
import numpy as np
import pandas as pd
import rioxarray  # noqa: F401
import xarray as xr
from flox.xarray import xarray_reduce
from rasterio import features
from rasterio.enums import Resampling
from shapely.geometry import box

from utils.errors import CountLimitExceeded
from utils.pairing import AgreementClass

DEFAULT_MAX_PIXELS = int(float(os.getenv("MAX_PIXELS", "1e13")))

HISTOGRAM_COLUMNS = ["class", "count"]


def footprint(raster: xr.DataArray):
    """Bounding polygon of a raster in its own CRS."""
    return box(*raster.rio.bounds())


def load_region(region_path: str, raster: xr.DataArray, log: logging.Logger):
    """Dissolve a vector file into a single geometry in the raster CRS."""
    log.info(f"Loading region geometry from {region_path}")
    with fsspec.open(region_path, "rb") as f:
        region = gpd.read_file(f)

    if region.empty:
        raise ValueError(f"No features found in {region_path}")

    if region.crs is not None and raster.rio.crs is not None:
        region = region.to_crs(raster.rio.crs)
    return region.geometry.union_all()


def resample_to_scale(
    raster: xr.DataArray, scale: Optional[float] = None
) -> xr.DataArray:
    """
    Resample a categorical raster to `scale` (CRS units per pixel) with nearest
    neighbour. Returns the raster untouched when `scale` is unset or already the
    native resolution.
    """
    if scale is None:
        return raster

    res_x, res_y = raster.rio.resolution()
    if np.isclose(abs(res_x), scale) and np.isclose(abs(res_y), scale):
        return raster

    if raster.rio.crs is None:
        raise ValueError("Cannot resample a raster without a CRS")

    logging.info(
        f"Resampling from ({abs(res_x)}, {abs(res_y)}) to scale {scale} with nearest neighbour"
    )
    attrs = dict(raster.attrs)
    resampled = raster.rio.write_nodata(np.nan).rio.reproject(
        raster.rio.crs,
        resolution=scale,
        resampling=Resampling.nearest,
        nodata=np.nan,
    )
    resampled.attrs.update(
        {k: v for k, v in attrs.items() if k not in ("_FillValue",)}
    )
    return resampled


def geometry_cells(raster: xr.DataArray, geometry) -> np.ndarray:
    """Boolean grid, True where the pixel centre lies inside `geometry`."""
    return features.geometry_mask(
        [geometry],
        out_shape=(raster.rio.height, raster.rio.width),
        transform=raster.rio.transform(),
        invert=True,
    )


def aggregate_histogram(
    comparison: xr.DataArray,
    geometry=None,
    scale: Optional[float] = None,
    max_pixels: int = DEFAULT_MAX_PIXELS,
    count_no_event: bool = True,
) -> pd.DataFrame:
    """
    Count present pixels of each agreement class inside a geometry.

    Parameters
    ----------
    comparison: xr.DataArray
        Comparison map of AgreementClass values, NaN where absent
    geometry:
        Shapely geometry in the map's CRS, defaults to the map footprint
    scale: float
        Sampling resolution in CRS units, defaults to the native resolution
    max_pixels: int
        Ceiling on the number of pixels the geometry may cover at `scale`
    count_no_event: bool
        When False, no-event pixels are left out of the counts

    Returns
    -------
    pd.DataFrame
        `class`, `count` rows for every class with at least one pixel

    Raises
    ------
    CountLimitExceeded
        If the geometry covers more than `max_pixels` pixels at `scale`
    """
    sampled = resample_to_scale(comparison, scale)
    if geometry is None:
        geometry = footprint(sampled)

    inside = geometry_cells(sampled, geometry)
    pixel_count = int(inside.sum())
    if pixel_count > max_pixels:
        raise CountLimitExceeded(pixel_count, max_pixels, scale)

    zone = sampled.where(inside)
    if not count_no_event:
        zone = zone.where(zone != AgreementClass.NO_EVENT)

    zone = zone.drop_vars(
        [c for c in zone.coords if c not in zone.dims], errors="ignore"
    )
    zone.name = "class"
    expected_classes = np.array([c.value for c in AgreementClass], dtype=zone.dtype)

    class_counts = xarray_reduce(
        zone,
        zone,
        func="count",
        expected_groups=expected_classes,
        engine=os.getenv("HISTOGRAM_ENGINE", "numpy"),
    )

    counts = np.nan_to_num(np.asarray(class_counts.values, dtype="float64")).astype(
        np.int64
    )
    classes = class_counts.coords["class"].values.astype(np.int64)

    table = pd.DataFrame({"class": classes, "count": counts})
    table = table[table["count"] > 0].sort_values("class").reset_index(drop=True)
    table.attrs.update(comparison.attrs)
    return table


def fill_missing_classes(table: pd.DataFrame) -> pd.DataFrame:
    """Add zero-count rows so that every agreement class appears once."""
    filled = (
        table.set_index("class")["count"]
        .reindex([c.value for c in AgreementClass], fill_value=0)
        .rename_axis("class")
        .reset_index()
    )
    filled["count"] = filled["count"].astype(np.int64)
    filled.attrs.update(table.attrs)
    return filled
