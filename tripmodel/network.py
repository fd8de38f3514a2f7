"""
Road network adapter.

Wraps a directed networkx graph of intersections with the queries the trip
model needs: adjacency, shortest-travel-time paths, travel times, nearest
road link lookup and projection of geographic coordinates to the plane in
which distances are measured.

Node attributes: ``x``, ``y`` (projected), ``lon``, ``lat`` (geographic).
Edge attribute: ``travel_time`` in seconds.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from pathlib import Path
from typing import Hashable, Iterable, Optional

import networkx as nx
import numpy as np
import osmnx as ox
from pyproj import Transformer
from shapely import STRtree
from shapely.geometry import LineString, Point as ShapelyPoint

from .geometry import Point

logger = logging.getLogger(__name__)

WEIGHT = "travel_time"


def _cache_get(cache: OrderedDict | None, key):
    if cache is None:
        return None
    if key not in cache:
        return None
    value = cache.pop(key)
    cache[key] = value
    return value


def _cache_put(cache: OrderedDict | None, key, value, max_size: int):
    if cache is None or max_size <= 0:
        return
    if key in cache:
        cache.pop(key, None)
    cache[key] = value
    while len(cache) > max_size:
        cache.popitem(last=False)


def convert_to_simple_digraph(G_road: nx.MultiDiGraph, weight: str = WEIGHT) -> nx.DiGraph:
    """
    Convert MultiDiGraph to simple DiGraph by keeping the fastest edge per node pair.

    Args:
        G_road: MultiDiGraph from OSMnx
        weight: Edge weight attribute to compare

    Returns:
        Simple DiGraph
    """
    G_simple = nx.DiGraph()

    for node, data in G_road.nodes(data=True):
        G_simple.add_node(node, **data)

    for u, v, data in G_road.edges(data=True):
        if G_simple.has_edge(u, v):
            if data.get(weight, 1) < G_simple[u][v].get(weight, float('inf')):
                G_simple[u][v].update(data)
        else:
            G_simple.add_edge(u, v, **data)

    return G_simple


class RoadNetwork:
    """
    Intersections and links of a city map.

    Args:
        graph: Directed graph with ``x``/``y`` node coordinates and
            ``travel_time`` edge weights
        crs: CRS of the projected ``x``/``y`` coordinates. When None, the
            geographic coordinates are assumed to already be planar.
        path_cache_size: Number of shortest paths kept in an LRU cache
    """

    def __init__(
        self,
        graph: nx.DiGraph,
        crs: Optional[str] = None,
        path_cache_size: int = 100_000,
    ):
        if graph.is_multigraph():
            graph = convert_to_simple_digraph(graph)

        for node, data in graph.nodes(data=True):
            if "x" not in data or "y" not in data:
                raise ValueError(f"Node {node} has no x/y coordinates")
            data.setdefault("lon", data["x"])
            data.setdefault("lat", data["y"])

        for u, v, data in graph.edges(data=True):
            if WEIGHT not in data:
                raise ValueError(f"Edge ({u}, {v}) has no {WEIGHT} attribute")

        self.graph = graph
        self.crs = crs
        self._transformer = (
            Transformer.from_crs("EPSG:4326", crs, always_xy=True) if crs else None
        )

        # (origin, destination) -> (path tuple, travel time)
        self._path_cache: OrderedDict = OrderedDict()
        self._path_cache_size = path_cache_size

        self._links: Optional[list[tuple[Hashable, Hashable]]] = None
        self._link_tree: Optional[STRtree] = None

    # -------------------------------------------------------------------------
    # Constructors
    # -------------------------------------------------------------------------

    @classmethod
    def from_osmnx(cls, G: nx.MultiDiGraph, path_cache_size: int = 100_000) -> "RoadNetwork":
        """
        Build a network from an unprojected OSMnx graph.

        Adds speed and travel time attributes, projects the graph to its
        UTM zone and keeps the original lon/lat on every node.

        Args:
            G: OSMnx MultiDiGraph in EPSG:4326
            path_cache_size: Shortest path cache size

        Returns:
            RoadNetwork in the projected plane
        """
        G = ox.add_edge_speeds(G)
        G = ox.add_edge_travel_times(G)

        for _, data in G.nodes(data=True):
            data["lon"] = data["x"]
            data["lat"] = data["y"]

        G_proj = ox.project_graph(G)
        crs = G_proj.graph.get("crs")
        logger.info(
            f"Loaded road network: {G_proj.number_of_nodes()} intersections, "
            f"{G_proj.number_of_edges()} links (crs={crs})"
        )
        return cls(convert_to_simple_digraph(G_proj), crs=str(crs), path_cache_size=path_cache_size)

    @classmethod
    def from_graphml(cls, path: Path | str, path_cache_size: int = 100_000) -> "RoadNetwork":
        """Load an OSMnx GraphML file saved in EPSG:4326."""
        return cls.from_osmnx(ox.load_graphml(path), path_cache_size=path_cache_size)

    # -------------------------------------------------------------------------
    # Nodes and adjacency
    # -------------------------------------------------------------------------

    def __len__(self) -> int:
        return self.graph.number_of_nodes()

    def node_ids(self) -> list:
        return list(self.graph.nodes())

    def has_node(self, node) -> bool:
        return self.graph.has_node(node)

    def point(self, node) -> Point:
        data = self.graph.nodes[node]
        return Point(data["x"], data["y"], data.get("lon"), data.get("lat"))

    def coordinates(self, nodes: Iterable) -> np.ndarray:
        """Projected (x, y) of the given nodes as an (n, 2) array."""
        return np.array(
            [(self.graph.nodes[n]["x"], self.graph.nodes[n]["y"]) for n in nodes],
            dtype=float,
        ).reshape(-1, 2)

    def successors(self, node) -> list:
        return list(self.graph.successors(node))

    # -------------------------------------------------------------------------
    # Travel times and paths
    # -------------------------------------------------------------------------

    def edge_travel_time(self, u, v) -> float:
        return float(self.graph[u][v][WEIGHT])

    def _route(self, origin, destination) -> tuple[tuple, float]:
        key = (origin, destination)
        cached = _cache_get(self._path_cache, key)
        if cached is not None:
            return cached

        length, path = nx.single_source_dijkstra(
            self.graph, origin, destination, weight=WEIGHT
        )
        route = (tuple(path), float(length))
        _cache_put(self._path_cache, key, route, self._path_cache_size)
        return route

    def shortest_path(self, origin, destination) -> list:
        """
        Shortest travel time path including both endpoints.

        Raises:
            networkx.NetworkXNoPath: If destination is unreachable
        """
        if origin == destination:
            return [origin]
        return list(self._route(origin, destination)[0])

    def travel_time(self, origin, destination) -> float:
        """Shortest travel time between two intersections in seconds."""
        if origin == destination:
            return 0.0
        return self._route(origin, destination)[1]

    # -------------------------------------------------------------------------
    # Spatial queries
    # -------------------------------------------------------------------------

    def project(self, lon: float, lat: float) -> tuple[float, float]:
        """Project a geographic coordinate to the network plane."""
        if self._transformer is None:
            return float(lon), float(lat)
        x, y = self._transformer.transform(lon, lat)
        return float(x), float(y)

    def project_many(self, lon: np.ndarray, lat: np.ndarray) -> np.ndarray:
        lon = np.asarray(lon, dtype=float)
        lat = np.asarray(lat, dtype=float)
        if self._transformer is None:
            return np.column_stack([lon, lat])
        x, y = self._transformer.transform(lon, lat)
        return np.column_stack([x, y])

    def _ensure_link_index(self) -> None:
        if self._link_tree is not None:
            return

        self._links = list(self.graph.edges())
        geoms = [
            LineString([self.point(u).xy, self.point(v).xy]) for u, v in self._links
        ]
        self._link_tree = STRtree(geoms)
        logger.debug(f"Built link index over {len(self._links)} links")

    def nearest_links_xy(self, xy: np.ndarray) -> list[tuple]:
        """
        Nearest link for each projected coordinate.

        Args:
            xy: Array of shape (n, 2) in the network plane

        Returns:
            List of (from_node, to_node) per input row
        """
        self._ensure_link_index()
        if not self._links:
            raise ValueError("Road network has no links")

        xy = np.asarray(xy, dtype=float).reshape(-1, 2)
        points = [ShapelyPoint(x, y) for x, y in xy]
        input_idx, tree_idx = self._link_tree.query_nearest(points, all_matches=False)

        nearest: list = [None] * len(points)
        for i, j in zip(input_idx, tree_idx):
            nearest[int(i)] = self._links[int(j)]
        return nearest

    def nearest_link(self, lon: float, lat: float) -> tuple:
        """Nearest road link (from_node, to_node) to a geographic coordinate."""
        return self.nearest_links_xy(np.array([self.project(lon, lat)]))[0]

    def nearest_node_xy(self, xy: np.ndarray) -> list:
        """
        Snap projected coordinates to the nearer endpoint of their nearest link.

        Args:
            xy: Array of shape (n, 2) in the network plane

        Returns:
            Node id per input row
        """
        xy = np.asarray(xy, dtype=float).reshape(-1, 2)
        links = self.nearest_links_xy(xy)

        snapped = []
        for (x, y), (u, v) in zip(xy, links):
            pu = self.point(u)
            pv = self.point(v)
            du = np.hypot(pu.x - x, pu.y - y)
            dv = np.hypot(pv.x - x, pv.y - y)
            snapped.append(u if du < dv else v)
        return snapped
