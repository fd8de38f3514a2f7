"""
Closed driving loops ("trips") over the road network.

A trip is built from the convex hull of an isochrone by stitching the
shortest travel time paths between consecutive hull intersections. The
closing node is implicit: a trip built from the hull [A, B, C] stores
[A, B, C] and drives C -> A to close the loop.
"""

from __future__ import annotations

from typing import Sequence

import numpy as np
from shapely import STRtree
from shapely.geometry import LineString, Point as ShapelyPoint

from .geometry import Point
from .network import RoadNetwork


def stitch_hull(hull_ids: Sequence, network: RoadNetwork) -> list:
    """
    Join shortest paths between consecutive hull nodes into one loop.

    The first segment is kept in full, middle segments drop their first
    node (it ends the previous segment) and the last segment keeps only its
    interior, since it leads back to the start.

    Args:
        hull_ids: Ordered hull node ids
        network: Road network

    Returns:
        Node ids of the loop without the closing node

    Raises:
        networkx.NetworkXNoPath: If two consecutive hull nodes are not connected
    """
    ids = list(hull_ids)
    if not ids:
        return []
    if ids[0] != ids[-1]:
        ids.append(ids[0])

    n_segments = len(ids) - 1
    trip: list = []
    for i in range(n_segments):
        path = network.shortest_path(ids[i], ids[i + 1])

        if i == 0:
            trip.extend(path)
        elif i == n_segments - 1:
            trip.extend(path[1:-1])
        else:
            trip.extend(path[1:])

    return trip


class Trip:
    """
    A patrol loop through the road network.

    Args:
        trip_id: Stable id, the id of the intersection that seeded the trip
        node_ids: Stitched loop; may or may not repeat the first node at the end
        network: Road network the node ids belong to
    """

    def __init__(self, trip_id: int, node_ids: Sequence, network: RoadNetwork):
        self.id = int(trip_id)
        self.node_ids: tuple = tuple(node_ids)
        self.network = network
        self.weights: dict[int, float] = {}

        self._edges: list[tuple] = []
        self._index: STRtree | None = None
        self._build_index()

    @classmethod
    def from_hull(cls, trip_id: int, hull_ids: Sequence, network: RoadNetwork) -> "Trip":
        """Build a trip by stitching shortest paths along a convex hull."""
        return cls(trip_id, stitch_hull(hull_ids, network), network)

    def _build_index(self) -> None:
        ids = self.node_ids
        if len(ids) < 2:
            return

        edges = list(zip(ids[:-1], ids[1:]))
        if not self.is_closed:
            edges.append((ids[-1], ids[0]))

        geoms = []
        for u, v in edges:
            pu = self.network.point(u)
            pv = self.network.point(v)
            geoms.append(LineString([pu.xy, pv.xy]))

        self._edges = edges
        self._index = STRtree(geoms)

    # -------------------------------------------------------------------------

    @property
    def is_closed(self) -> bool:
        return len(self.node_ids) > 1 and self.node_ids[0] == self.node_ids[-1]

    @property
    def closed_node_ids(self) -> tuple:
        """The loop with its first node repeated at the end."""
        if not self.node_ids or self.is_closed:
            return self.node_ids
        return self.node_ids + (self.node_ids[0],)

    def __len__(self) -> int:
        return len(self.node_ids)

    def __repr__(self) -> str:
        return f"Trip(id={self.id}, n_nodes={len(self.node_ids)})"

    def find_closest(self, location) -> object:
        """
        Trip intersection closest to a location.

        The nearest trip edge is located through the spatial index and the
        nearer of its two endpoints is returned.

        Args:
            location: Node id of the road network or a geometry Point

        Returns:
            Node id on the trip
        """
        if not self.node_ids:
            raise ValueError(f"Trip {self.id} has no intersections")

        p = location if isinstance(location, Point) else self.network.point(location)
        if self._index is None:
            return self.node_ids[0]

        edge_idx = int(self._index.nearest(ShapelyPoint(p.x, p.y)))
        u, v = self._edges[edge_idx]
        pu = self.network.point(u)
        pv = self.network.point(v)
        du = np.hypot(pu.x - p.x, pu.y - p.y)
        dv = np.hypot(pv.x - p.x, pv.y - p.y)
        return v if dv < du else u

    def travel_duration(self) -> float:
        """Seconds needed to drive the loop once."""
        ids = self.node_ids
        duration = 0.0
        for u, v in zip(ids[:-1], ids[1:]):
            duration += self.network.travel_time(u, v)

        if len(ids) > 1 and not self.is_closed:
            duration += self.network.travel_time(ids[-1], ids[0])
        return duration

    def loop_after(self, node) -> list:
        """
        Loop nodes to visit after ``node``, wrapping around to just before it.

        Args:
            node: A node of this trip

        Returns:
            Node ids in driving order, excluding ``node`` itself
        """
        cut = self.node_ids.index(node)
        return list(self.node_ids[cut + 1:]) + list(self.node_ids[:cut])
