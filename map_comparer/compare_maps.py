#!/usr/bin/env python3
import argparse
import logging
import os
import sys
import uuid
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import dask
import pandas as pd
import rioxarray as rxr
import xarray as xr
from dask.distributed import Client, Event, LocalCluster, as_completed, wait
from fsspec.core import url_to_fs

from map_comparer.classify import (
    AbsentPolicy,
    classify_agreement,
    extract_year,
    to_validity_mask,
)
from map_comparer.histogram import (
    DEFAULT_MAX_PIXELS,
    aggregate_histogram,
    footprint,
    load_region,
)
from map_comparer.sink import ResultSink
from utils.errors import CountLimitExceeded, InvariantViolation, UnitCancelled
from utils.logging import setup_logger, unit_logger

# GLOBAL DASK CONFIGURATION
DASK_CLUST_MAX_MEM = os.getenv("DASK_CLUST_MAX_MEM")
DASK_THREADS = int(os.getenv("DASK_THREADS", "4"))


JOB_ID = "map_comparer"


@dataclass(frozen=True)
class WorkUnit:
    year: int
    map_id: str

    @property
    def key(self) -> str:
        return f"compare-{self.map_id}-{self.year}"


@dataclass
class UnitResult:
    year: int
    map_id: str
    status: str
    table: Optional[pd.DataFrame] = None
    raster_path: Optional[str] = None
    table_path: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == "ok"


@dataclass
class ComparisonSettings:
    scale: Optional[float] = None
    max_pixels: int = DEFAULT_MAX_PIXELS
    absent_policy: AbsentPolicy = AbsentPolicy.NO_EVENT
    count_no_event: bool = True
    overwrite: bool = False


def setup_dask_cluster(log: logging.Logger) -> Tuple[Client, LocalCluster]:
    """Set up a local threaded Dask cluster and return the client and cluster."""
    log.info("Starting Dask local cluster")

    cluster = LocalCluster(
        n_workers=1,
        threads_per_worker=DASK_THREADS,  # one comparison unit per thread
        memory_limit=DASK_CLUST_MAX_MEM,
        processes=False,  # inputs are shared in memory, not pickled to processes
        dashboard_address=os.getenv("DASK_DASHBOARD_ADDRESS", ":0"),
        silence_logs=False,
    )

    dask.config.set(
        {
            "distributed.worker.memory.target": 0.7,
            "distributed.worker.memory.spill": 0.75,
            "distributed.worker.memory.pause": False,
            "distributed.worker.memory.terminate": 0.9,
            "distributed.client.heartbeat": "10s",
        }
    )

    client = Client(cluster)

    log.info(f"Dask dashboard link: {client.dashboard_link}")
    return client, cluster


def load_raster(path: str, log: logging.Logger) -> xr.DataArray:
    """
    Load a single band raster into memory. Declared nodata becomes NaN; when no
    nodata is declared, zero cells are treated as absent.
    """
    log.info(f"Loading raster: {path}")
    raster = rxr.open_rasterio(path, masked=True)
    if raster.size == 0:
        raise ValueError(f"Raster is empty: {path}")

    if "band" in raster.dims:
        if raster.sizes["band"] != 1:
            raise ValueError(f"Expected a single band raster: {path}")
        raster = raster.squeeze("band", drop=True)

    if raster.rio.nodata is None and raster.rio.encoded_nodata is None:
        raster = raster.where(raster != 0)

    return raster.load()


def build_work_units(year_t0: int, year_t1: int, map_ids: List[str]) -> List[WorkUnit]:
    if year_t0 > year_t1:
        raise ValueError(f"year_t0 ({year_t0}) must not be after year_t1 ({year_t1})")
    return [
        WorkUnit(year=year, map_id=map_id)
        for year in range(year_t0, year_t1 + 1)
        for map_id in map_ids
    ]


def check_cancelled(cancel_event, unit: WorkUnit) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise UnitCancelled(f"Unit {unit.map_id}/{unit.year} cancelled, run timeout reached")


def compare_unit(
    unit: WorkUnit,
    reference: xr.DataArray,
    candidate: xr.DataArray,
    validity_mask: xr.DataArray,
    geometry,
    settings: ComparisonSettings,
    sink: ResultSink,
    log: logging.Logger,
    cancel_event=None,
) -> UnitResult:
    """
    Classify one (year, candidate map) pair, count its classes and emit both.

    `cancel_event` is anything with an `is_set()` method. Once it is set the unit
    raises UnitCancelled instead of starting work or emitting outputs; a unit
    already past the last check runs to completion.
    """
    ulog = unit_logger(log, unit.year, unit.map_id)
    check_cancelled(cancel_event, unit)

    # Inputs are in memory already; keep any nested graph off the cluster
    with dask.config.set(scheduler="synchronous"):
        ulog.info("Classifying agreement")
        comparison = classify_agreement(
            extract_year(reference, unit.year),
            extract_year(candidate, unit.year),
            validity_mask,
            absent_policy=settings.absent_policy,
            year=unit.year,
            map_id=unit.map_id,
        )

        ulog.info("Computing class counts")
        table = aggregate_histogram(
            comparison,
            geometry=geometry,
            scale=settings.scale,
            max_pixels=settings.max_pixels,
            count_no_event=settings.count_no_event,
        )

    check_cancelled(cancel_event, unit)

    raster_path = sink.raster_destination(unit.year, unit.map_id)
    if raster_path:
        sink.emit_raster(
            comparison, raster_path, resolution=settings.scale, overwrite=settings.overwrite
        )

    table_path = sink.table_destination(unit.year, unit.map_id)
    if table_path:
        sink.emit_table(table, table_path, overwrite=settings.overwrite)

    ulog.info(f"Class counts: {dict(zip(table['class'].tolist(), table['count'].tolist()))}")
    return UnitResult(
        year=unit.year,
        map_id=unit.map_id,
        status="ok",
        table=table,
        raster_path=raster_path,
        table_path=table_path,
    )


def collect_result(future, unit: WorkUnit, log: logging.Logger) -> UnitResult:
    """Turn a finished unit future into a UnitResult, recording failures by kind."""
    ulog = unit_logger(log, unit.year, unit.map_id)
    try:
        return future.result()
    except UnitCancelled as e:
        ulog.warning(str(e))
        return UnitResult(unit.year, unit.map_id, "cancelled", error=str(e))
    except CountLimitExceeded as e:
        ulog.warning(f"Class counts skipped: {e}")
        return UnitResult(unit.year, unit.map_id, "count_limit_exceeded", error=str(e))
    except InvariantViolation as e:
        ulog.error(f"Agreement invariant violated: {e}")
        return UnitResult(unit.year, unit.map_id, "invariant_violation", error=str(e))
    except Exception as e:
        ulog.error(f"Comparison unit failed: {type(e).__name__}: {e}")
        return UnitResult(
            unit.year, unit.map_id, "failed", error=f"{type(e).__name__}: {e}"
        )


def run_comparison(
    client: Client,
    units: List[WorkUnit],
    reference: xr.DataArray,
    candidates: Dict[str, xr.DataArray],
    validity_mask: xr.DataArray,
    geometry,
    settings: ComparisonSettings,
    sink: ResultSink,
    log: logging.Logger,
    timeout: Optional[float] = None,
) -> List[UnitResult]:
    """
    Submit every unit as its own future and collect results as they finish.
    A failing unit is recorded and never stops its siblings.

    `timeout` is a deadline in seconds for the whole run. When it passes, a
    shared cancel event is set: units that have not reached their outputs stop
    with status "cancelled", and units already emitting are waited for and
    reported with their real outcome.
    """
    # Read-only inputs are placed on the worker once and shared by every unit
    reference_data = client.scatter(reference)
    mask_data = client.scatter(validity_mask)
    candidate_data = {
        map_id: client.scatter(candidate) for map_id, candidate in candidates.items()
    }
    cancel_event = Event(f"{JOB_ID}-cancel-{uuid.uuid4().hex}")

    futures = {}
    for unit in units:
        future = client.submit(
            compare_unit,
            unit,
            reference_data,
            candidate_data[unit.map_id],
            mask_data,
            geometry,
            settings,
            sink,
            log,
            cancel_event,
            key=unit.key,
            pure=False,
            retries=0,
        )
        futures[future] = unit

    log.info(f"Submitted {len(futures)} comparison units")

    results: Dict[WorkUnit, UnitResult] = {}
    try:
        for future in as_completed(list(futures), timeout=timeout):
            unit = futures[future]
            results[unit] = collect_result(future, unit, log)
    except TimeoutError:
        pending = [f for f, unit in futures.items() if unit not in results]
        log.error(
            f"Run timeout of {timeout}s reached with {len(pending)} units unfinished, cancelling"
        )
        cancel_event.set()
        # Units mid-emit finish their writes before the cluster closes
        wait(pending)
        for future in pending:
            unit = futures[future]
            results[unit] = collect_result(future, unit, log)

    return [results[unit] for unit in units]


def summarize(results: List[UnitResult]) -> pd.DataFrame:
    """Stack the class counts of all successful units into one table."""
    frames = [
        r.table.assign(year=r.year, map=r.map_id)[["year", "map", "class", "count"]]
        for r in results
        if r.ok and r.table is not None
    ]
    if not frames:
        return pd.DataFrame(columns=["year", "map", "class", "count"])
    return pd.concat(frames, ignore_index=True)


def write_summary(summary: pd.DataFrame, summary_path: str, log: logging.Logger) -> None:
    log.info(f"Writing summary table to {summary_path}")
    fs, fs_path = url_to_fs(summary_path)
    with fs.open(fs_path, "wt") as f:
        summary.to_csv(f, index=False)


def parse_candidates(tokens: List[str]) -> Dict[str, str]:
    """Parse `ID=PATH` tokens into an ordered {map id: path} dictionary."""
    candidates = {}
    for token in " ".join(tokens).split():
        map_id, sep, path = token.partition("=")
        if not sep or not map_id or not path:
            raise ValueError(f"Candidate '{token}' is not in ID=PATH form")
        if map_id in candidates:
            raise ValueError(f"Candidate id '{map_id}' given more than once")
        candidates[map_id] = path
    return candidates


def main():
    log = setup_logger(JOB_ID)

    p = argparse.ArgumentParser(
        description="Compare candidate event-year maps against a reference map, year by year."
    )
    p.add_argument("--year_t0", required=True, type=int, help="First year compared (inclusive)")
    p.add_argument("--year_t1", required=True, type=int, help="Last year compared (inclusive)")
    p.add_argument("--roi_path", required=True, help="Path to region of interest mask raster (local or S3)")
    p.add_argument("--reference_path", required=True, help="Path to reference map raster (local or S3)")
    p.add_argument(
        "--candidate_paths",
        required=True,
        nargs="+",
        help="Candidate maps as ID=PATH tokens, e.g. A=s3://bucket/mapA.tif B=./mapB.tif",
    )
    p.add_argument("--table_output_dir", required=True, help="Directory for per-unit class count CSVs (local or S3)")
    p.add_argument("--raster_output_dir", required=False, help="Optional directory for comparison map COGs (local or S3)")
    p.add_argument("--summary_path", required=False, help="Optional path for a combined year,map,class,count CSV")
    p.add_argument(
        "--region_path",
        required=False,
        help="Optional vector file whose features replace the reference footprint for class counts",
    )
    p.add_argument(
        "--scale",
        type=float,
        default=float(os.environ["COMPARISON_SCALE"]) if os.getenv("COMPARISON_SCALE") else None,
        help="Sampling resolution in CRS units for counts and exports. Defaults to the native resolution.",
    )
    p.add_argument(
        "--max_pixels",
        type=float,
        default=DEFAULT_MAX_PIXELS,
        help="Maximum number of pixels one class count may consider. Default is 1e13.",
    )
    p.add_argument(
        "--absent_policy",
        choices=[policy.value for policy in AbsentPolicy],
        default=AbsentPolicy.NO_EVENT.value,
        help="'no_event' counts absent input cells as no event; 'undetermined' leaves them absent.",
    )
    p.add_argument(
        "--exclude_no_event",
        action="store_true",
        help="Leave no-event pixels out of the class counts.",
    )
    p.add_argument("--overwrite", action="store_true", help="Overwrite existing outputs.")
    p.add_argument(
        "--run_timeout",
        type=float,
        default=float(os.environ["RUN_TIMEOUT"]) if os.getenv("RUN_TIMEOUT") else None,
        help="Deadline in seconds for the whole run. Units that have not started writing outputs by then are cancelled.",
    )

    args = p.parse_args()
    if args.year_t0 > args.year_t1:
        p.error("--year_t0 must not be after --year_t1")

    try:
        candidate_paths = parse_candidates(args.candidate_paths)
    except ValueError as e:
        p.error(str(e))

    client, cluster = setup_dask_cluster(log)

    try:
        reference = load_raster(args.reference_path, log)
        candidates = {
            map_id: load_raster(path, log) for map_id, path in candidate_paths.items()
        }
        validity_mask = to_validity_mask(load_raster(args.roi_path, log))

        if not bool(validity_mask.any()):
            raise ValueError("Region of interest mask has no valid cells")

        geometry = (
            load_region(args.region_path, reference, log)
            if args.region_path
            else footprint(reference)
        )

        settings = ComparisonSettings(
            scale=args.scale,
            max_pixels=int(args.max_pixels),
            absent_policy=AbsentPolicy(args.absent_policy),
            count_no_event=not args.exclude_no_event,
            overwrite=args.overwrite,
        )
        sink = ResultSink(
            log,
            raster_output_dir=args.raster_output_dir,
            table_output_dir=args.table_output_dir,
            overwrite=args.overwrite,
        )

        units = build_work_units(args.year_t0, args.year_t1, list(candidates))
        results = run_comparison(
            client,
            units,
            reference,
            candidates,
            validity_mask,
            geometry,
            settings,
            sink,
            log,
            timeout=args.run_timeout,
        )

        if args.summary_path:
            write_summary(summarize(results), args.summary_path, log)

        failed = [r for r in results if not r.ok]
        if failed:
            raise RuntimeError(
                f"{len(failed)} of {len(results)} units did not complete: "
                + ", ".join(f"{r.map_id}/{r.year} ({r.status})" for r in failed)
            )

        success_outputs = {
            "table_paths": [r.table_path for r in results],
            "units": len(results),
        }
        if args.raster_output_dir:
            success_outputs["raster_paths"] = [r.raster_path for r in results]
        if args.summary_path:
            success_outputs["summary_path"] = args.summary_path
        log.success(success_outputs)

    except Exception as e:
        log.error(f"{JOB_ID} run failed: {e}")
        sys.exit(1)

    finally:
        log.debug("Shutting down Dask client and cluster")
        client.close()
        cluster.close()


if __name__ == "__main__":
    main()
