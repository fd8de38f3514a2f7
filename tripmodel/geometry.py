"""
Planar geometry helpers.

Implements Andrew's monotone-chain convex hull, used to pick the boundary
intersections of an isochrone before they are stitched into a trip.
"""

from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np


@dataclass(frozen=True)
class Point:
    """A projected (x, y) coordinate with optional geographic lon/lat."""

    x: float
    y: float
    lon: Optional[float] = None
    lat: Optional[float] = None

    @property
    def xy(self) -> tuple[float, float]:
        return (self.x, self.y)


def _ccw(a: np.ndarray, b: np.ndarray, c: np.ndarray) -> bool:
    # strict left turn a -> b -> c
    return (b[0] - a[0]) * (c[1] - a[1]) > (b[1] - a[1]) * (c[0] - a[0])


def convex_hull_indices(xy: np.ndarray | Sequence[Sequence[float]]) -> list[int]:
    """
    Compute the convex hull of a point set.

    Points are sorted by x with y as tie-break (stable, so identical
    coordinates keep their input order) and the lower and upper chains are
    built with Andrew's monotone chain. Collinear and clockwise turns are
    popped, so the result contains only strict corners.

    Args:
        xy: Array-like of shape (n, 2)

    Returns:
        Indices into ``xy`` of the hull corners, counter-clockwise, without
        a repeated closing point. Duplicate coordinates are reduced to
        their first occurrence; 0 or 1 unique points are returned as is.
    """
    coords = np.asarray(xy, dtype=float).reshape(-1, 2)
    n = len(coords)
    if n == 0:
        return []

    # stable lexicographic order: primary x, secondary y
    order = np.lexsort((coords[:, 1], coords[:, 0]))

    unique: list[int] = []
    for idx in order:
        if unique and np.array_equal(coords[unique[-1]], coords[idx]):
            continue
        unique.append(int(idx))

    if len(unique) <= 1:
        return unique

    hull: list[int] = []

    # lower hull
    for idx in unique:
        while len(hull) >= 2 and not _ccw(coords[hull[-2]], coords[hull[-1]], coords[idx]):
            hull.pop()
        hull.append(idx)

    # upper hull
    t = len(hull) + 1
    for idx in reversed(unique):
        while len(hull) >= t and not _ccw(coords[hull[-2]], coords[hull[-1]], coords[idx]):
            hull.pop()
        hull.append(idx)

    hull.pop()
    return hull


def convex_hull(points: Sequence[Point]) -> list[Point]:
    """
    Convex hull of a collection of Points, counter-clockwise.

    Args:
        points: Unordered points, duplicates allowed

    Returns:
        Hull corners in counter-clockwise order
    """
    if len(points) <= 1:
        return list(points)

    indices = convex_hull_indices([p.xy for p in points])
    return [points[i] for i in indices]
