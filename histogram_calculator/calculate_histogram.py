#!/usr/bin/env python3
import argparse
import logging
import os
import sys

import pandas as pd
import rioxarray as rxr
from fsspec.core import url_to_fs

from map_comparer.histogram import (
    DEFAULT_MAX_PIXELS,
    aggregate_histogram,
    fill_missing_classes,
    load_region,
)
from utils.logging import setup_logger
from utils.pairing import AgreementClass


JOB_ID = "histogram_calculator"


def open_file(path: str, mode: str = "rb"):
    """
    Open a local or remote file (s3://, gcs://, http://, etc.) via fsspec.
    Returns a file-like object.
    """
    fs, fs_path = url_to_fs(path)
    return fs.open(fs_path, mode)


def calculate_histogram(
    comparison_map_path: str,
    log: logging.Logger,
    region_path: str = None,
    scale: float = None,
    max_pixels: int = DEFAULT_MAX_PIXELS,
    count_no_event: bool = True,
) -> pd.DataFrame:
    """Load a persisted comparison map and count its agreement classes."""
    log.info(f"Loading comparison map from {comparison_map_path}")
    comparison = rxr.open_rasterio(
        comparison_map_path,
        masked=True,
        chunks={
            "x": int(os.getenv("RASTERIO_CHUNK_SIZE", "2048")),
            "y": int(os.getenv("RASTERIO_CHUNK_SIZE", "2048")),
        },
        lock=False,
    ).squeeze("band", drop=True)

    # Anything outside the four classes would be a foreign raster
    known = [c.value for c in AgreementClass]
    if bool((comparison.notnull() & ~comparison.isin(known)).any()):
        raise ValueError(
            f"{comparison_map_path} holds values outside the agreement classes {known}"
        )

    geometry = load_region(region_path, comparison, log) if region_path else None

    log.info("Computing class counts")
    return aggregate_histogram(
        comparison,
        geometry=geometry,
        scale=scale,
        max_pixels=max_pixels,
        count_no_event=count_no_event,
    )


def write_outputs(table: pd.DataFrame, histogram_path: str, log: logging.Logger) -> None:
    """Write the class counts as a class,count CSV using fsspec for S3 compatibility."""
    log.info(f"Writing class counts to {histogram_path}")
    with open_file(histogram_path, "wt") as f:
        table[["class", "count"]].to_csv(f, index=False)


def main():
    log = setup_logger(JOB_ID)
    parser = argparse.ArgumentParser(description="Count agreement classes in a single comparison map.")
    parser.add_argument("--comparison_map_path", required=True, help="Input path for comparison map raster (local or S3)")
    parser.add_argument("--histogram_path", required=True, help="Output path for class count CSV (local or S3)")
    parser.add_argument("--region_path", required=False, help="Optional vector file limiting the counted area")
    parser.add_argument("--scale", type=float, default=None, help="Sampling resolution in CRS units. Defaults to the native resolution.")
    parser.add_argument("--max_pixels", type=float, default=DEFAULT_MAX_PIXELS, help="Maximum number of pixels considered")
    parser.add_argument("--exclude_no_event", action="store_true", help="Leave no-event pixels out of the counts")
    parser.add_argument("--fill_missing", action="store_true", help="Write a zero row for classes with no pixels")
    args = parser.parse_args()

    try:
        table = calculate_histogram(
            args.comparison_map_path,
            log,
            region_path=args.region_path,
            scale=args.scale,
            max_pixels=int(args.max_pixels),
            count_no_event=not args.exclude_no_event,
        )
        if args.fill_missing:
            table = fill_missing_classes(table)

        write_outputs(table, args.histogram_path, log)

        log.success({"histogram_path": args.histogram_path})

    except Exception as e:
        log.error(f"{JOB_ID} run failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
