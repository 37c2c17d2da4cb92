#!/usr/bin/env python3
"""
Errors raised by the map comparison core.

All errors are scoped to a single (year, map) unit. They pickle with their
context so they survive the trip back from a dask worker.
"""
from typing import Optional


class MapComparisonError(Exception):
    """Base class for map comparison failures."""


class InvariantViolation(MapComparisonError):
    """A packed reference/candidate code fell outside the four known codes."""

    def __init__(
        self,
        message: str,
        year: Optional[int] = None,
        map_id: Optional[str] = None,
        location: Optional[dict] = None,
    ):
        super().__init__(message)
        self.message = message
        self.year = year
        self.map_id = map_id
        self.location = location

    def __reduce__(self):
        return (
            self.__class__,
            (self.message, self.year, self.map_id, self.location),
        )

    def __str__(self):
        context = []
        if self.year is not None:
            context.append(f"year={self.year}")
        if self.map_id is not None:
            context.append(f"map={self.map_id}")
        if self.location is not None:
            context.append(f"location={self.location}")
        if not context:
            return self.message
        return f"{self.message} ({', '.join(context)})"


class CountLimitExceeded(MapComparisonError):
    """Zonal aggregation would consider more pixels than the ceiling allows."""

    def __init__(
        self, pixel_count: int, max_pixels: int, scale: Optional[float] = None
    ):
        self.pixel_count = pixel_count
        self.max_pixels = max_pixels
        self.scale = scale
        super().__init__(
            f"Geometry covers {pixel_count} pixels at scale {scale if scale is not None else 'native'}, "
            f"above the max_pixels ceiling of {max_pixels}"
        )

    def __reduce__(self):
        return (self.__class__, (self.pixel_count, self.max_pixels, self.scale))


class UnitCancelled(MapComparisonError):
    """The run deadline passed before this unit started emitting outputs."""
