#!/usr/bin/env python3
"""
Persistence of comparison maps and class-count tables.

Rasters go out as Cloud Optimized GeoTIFFs and tables as `class,count` CSVs.
Both are written locally first and pushed through fsspec so any destination
fsspec understands (local paths, s3://, gcs://) works. Transient I/O failures
are retried here with exponential backoff. The comparison core never retries.
"""
import logging
import os
import posixpath
import tempfile
from typing import Callable, Optional

import numpy as np
import pandas as pd
import rasterio
import rioxarray  # noqa: F401
import xarray as xr
from fsspec.core import url_to_fs
from rio_cogeo.cogeo import cog_translate
from rio_cogeo.profiles import LZWProfile
from retrying import Retrying

from map_comparer.histogram import HISTOGRAM_COLUMNS, resample_to_scale
from utils.pairing import COMPARISON_NODATA


def open_file(path: str, mode: str = "rb"):
    """
    Open a local or remote file (s3://, gcs://, http://, etc.) via fsspec.
    Returns a file-like object.
    """
    fs, fs_path = url_to_fs(path)
    return fs.open(fs_path, mode)


def join_path(directory: str, name: str) -> str:
    return posixpath.join(directory.rstrip("/"), name)


def overview_level(height: int, width: int) -> int:
    """
    COG_OVERVIEW_LEVEL capped so the coarsest overview keeps at least 2 pixels
    on its shortest side. Returns 0 (no overviews) for rasters too small to pyramid.
    """
    requested = int(os.getenv("COG_OVERVIEW_LEVEL", "4"))
    shortest = min(height, width)
    if shortest < 4:
        return 0
    return max(0, min(requested, int(np.log2(shortest / 2))))


class ResultSink:
    def __init__(
        self,
        log: logging.Logger,
        raster_output_dir: Optional[str] = None,
        table_output_dir: Optional[str] = None,
        overwrite: bool = False,
        retries: int = int(os.getenv("SINK_RETRIES", "3")),
        backoff_seconds: float = float(os.getenv("SINK_BACKOFF_SECONDS", "1.0")),
    ):
        self.log = log
        self.raster_output_dir = raster_output_dir
        self.table_output_dir = table_output_dir
        self.overwrite = overwrite
        self.retries = max(1, retries)
        self.backoff_seconds = backoff_seconds

    def raster_destination(self, year: int, map_id: str) -> Optional[str]:
        if not self.raster_output_dir:
            return None
        return join_path(self.raster_output_dir, f"mapComparison{map_id}_{year}.tif")

    def table_destination(self, year: int, map_id: str) -> Optional[str]:
        if not self.table_output_dir:
            return None
        return join_path(
            self.table_output_dir, f"pixelNumberComparison{map_id}_{year}.csv"
        )

    def _check_overwrite(self, destination: str, overwrite: Optional[bool]) -> None:
        overwrite = self.overwrite if overwrite is None else overwrite
        fs, fs_path = url_to_fs(destination)
        if fs.exists(fs_path) and not overwrite:
            raise FileExistsError(
                f"{destination} already exists and overwrite is disabled"
            )

    def _with_retries(self, action: Callable[[], None], description: str) -> None:
        """Run `action`, retrying OSErrors with exponential backoff starting at backoff_seconds."""

        def is_transient(e: Exception) -> bool:
            if not isinstance(e, OSError):
                return False
            self.log.warning(f"{description} failed: {e}")
            return True

        Retrying(
            stop_max_attempt_number=self.retries,
            # retrying waits multiplier * 2**attempt ms, attempt starting at 1
            wait_exponential_multiplier=self.backoff_seconds * 1000 / 2,
            retry_on_exception=is_transient,
        ).call(action)

    def emit_raster(
        self,
        comparison: xr.DataArray,
        destination: str,
        resolution: Optional[float] = None,
        overwrite: Optional[bool] = None,
    ) -> str:
        """
        Write a comparison map as a uint8 COG with nodata 255, tagged with the
        year and source map it was computed for.
        """
        self._check_overwrite(destination, overwrite)
        comparison = resample_to_scale(comparison, resolution)

        data = np.asarray(comparison.values)
        encoded = np.where(np.isnan(data), COMPARISON_NODATA, data).astype("uint8")
        tags = {
            k: str(comparison.attrs[k]) for k in ("year", "map") if k in comparison.attrs
        }

        temp_fd, temp_tiff_path = tempfile.mkstemp(suffix="_temp.tif")
        os.close(temp_fd)
        temp_fd, temp_cog_path = tempfile.mkstemp(suffix="_cog.tif")
        os.close(temp_fd)

        try:
            profile = {
                "driver": "GTiff",
                "height": encoded.shape[0],
                "width": encoded.shape[1],
                "count": 1,
                "dtype": "uint8",
                "crs": comparison.rio.crs,
                "transform": comparison.rio.transform(),
                "nodata": COMPARISON_NODATA,
            }
            with rasterio.open(temp_tiff_path, "w", **profile) as dst:
                dst.write(encoded, 1)
                dst.update_tags(**tags)

            cog_profile = LZWProfile().data.copy()
            blocksize = int(os.getenv("COG_BLOCKSIZE", "512"))
            cog_profile.update({"blockxsize": blocksize, "blockysize": blocksize})

            # "mode" keeps overviews categorical
            cog_translate(
                temp_tiff_path,
                temp_cog_path,
                cog_profile,
                overview_level=overview_level(*encoded.shape),
                overview_resampling="mode",
                additional_cog_metadata=tags,
                quiet=True,
            )

            def upload():
                fs, fs_path = url_to_fs(destination)
                parent = posixpath.dirname(fs_path)
                if parent:
                    fs.makedirs(parent, exist_ok=True)
                fs.put_file(temp_cog_path, fs_path)

            self.log.info(f"Writing comparison map to {destination}")
            self._with_retries(upload, f"Upload of {destination}")
        finally:
            for path in (temp_tiff_path, temp_cog_path):
                if os.path.exists(path):
                    os.remove(path)

        return destination

    def emit_table(
        self,
        table: pd.DataFrame,
        destination: str,
        file_format: str = "CSV",
        overwrite: Optional[bool] = None,
    ) -> str:
        """Write a class-count table as `class,count` rows with integer classes."""
        if file_format.upper() != "CSV":
            raise ValueError(f"Unsupported table format: {file_format}")
        self._check_overwrite(destination, overwrite)

        rows = table[HISTOGRAM_COLUMNS].astype("int64")

        def write():
            fs, fs_path = url_to_fs(destination)
            parent = posixpath.dirname(fs_path)
            if parent:
                fs.makedirs(parent, exist_ok=True)
            with open_file(destination, "wt") as f:
                rows.to_csv(f, index=False)

        self.log.info(f"Writing class counts to {destination}")
        self._with_retries(write, f"Write of {destination}")
        return destination
