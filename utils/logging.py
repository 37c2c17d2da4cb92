#!/usr/bin/env python3
import os
import sys
import logging
import time
from pythonjsonlogger import jsonlogger


SUCCESS_LEVEL_NUM = int(os.getenv("LOG_SUCCESS_LEVEL_NUM", "25"))
logging.addLevelName(SUCCESS_LEVEL_NUM, "SUCCESS")


def success(self, message=None, **kwargs):
    """
    Custom log level for SUCCESS events. If everything goes well this should be the last messaged logged from the job.
    """
    if self.isEnabledFor(SUCCESS_LEVEL_NUM):
        self._log(SUCCESS_LEVEL_NUM, message, (), **kwargs)


logging.Logger.success = success


class JobIDFilter(logging.Filter):
    def __init__(self, job_id: str):
        super().__init__()
        self.job_id = job_id

    def filter(self, record):
        record.job_id = self.job_id
        return True


class UnitLoggerAdapter(logging.LoggerAdapter):
    """
    Adds the (year, map) of a comparison unit to every record so that interleaved
    logs from concurrent units can be told apart.
    """

    def process(self, msg, kwargs):
        extra = dict(self.extra)
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs


def unit_logger(log: logging.Logger, year: int, map_id: str) -> UnitLoggerAdapter:
    return UnitLoggerAdapter(log, {"year": year, "map": map_id})


def setup_logger(job_id: str) -> logging.Logger:
    """
    Initialize a JSON-format logger for a comparison job.

    Args:
        job_id: The job identifier (e.g., "map_comparer", "histogram_calculator")

    Returns:
        Configured logger instance
    """
    log = logging.getLogger(job_id)
    if log.handlers:
        return log

    log.setLevel(os.getenv("LOG_LEVEL", "INFO").upper())
    handler = logging.StreamHandler(sys.stderr)
    handler.addFilter(JobIDFilter(job_id))

    fmt = "%(asctime)s %(levelname)s %(job_id)s %(message)s"
    formatter = jsonlogger.JsonFormatter(
        fmt=fmt,
        datefmt="%Y-%m-%dT%H:%M:%SZ",
        rename_fields={
            "asctime": "timestamp",
            "levelname": "level",
        },
        json_ensure_ascii=False,
    )
    # the trailing Z in datefmt means UTC
    formatter.converter = time.gmtime
    handler.setFormatter(formatter)

    log.addHandler(handler)
    log.propagate = False
    return log
