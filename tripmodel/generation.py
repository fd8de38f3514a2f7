"""
Offline trip generation from historical pickups.

Pipeline:
1. Count pickups per intersection and time-of-week bin
2. Run a travel-time isochrone search from every intersection
3. Turn the convex hull of each small isochrone into a closed trip
4. Drop trips whose coverage is already provided by other trips
5. Weight the remaining trips per time bin by the pickups they cover
6. Initialize the sampling parameters theta = ln(weight + eps)
"""

from __future__ import annotations

import heapq
import itertools
import logging
from collections.abc import Mapping, Sequence
from typing import Optional

import networkx as nx
import numpy as np
import pandas as pd
from tqdm import tqdm

from .config import TripModelConfig, assign_time_index, check_bin_size
from .geometry import convex_hull_indices
from .network import RoadNetwork
from .storage import TripModelData
from .trip import Trip

logger = logging.getLogger(__name__)


class EmptyTimeBinError(ValueError):
    """Raised when no trip covers any pickup within a time bin."""


# =============================================================================
# ISOCHRONES
# =============================================================================

def isochrone(
    network: RoadNetwork,
    source,
    small_radius_s: float = 300.0,
    large_radius_s: float = 600.0,
) -> tuple[set, set]:
    """
    Collect intersections reachable from ``source`` within two travel time radii.

    Dijkstra-style expansion: each node is settled once, at the smallest
    accumulated travel time. Neighbors are queued only while their travel
    time stays below ``large_radius_s``; ties are settled in queue order,
    i.e. following the adjacency order of the graph.

    Args:
        network: Road network
        source: Seed intersection
        small_radius_s: Radius of the set the trip hull is built from
        large_radius_s: Radius of the coverage set used for weighting

    Returns:
        (hull_set, coverage_set)
    """
    counter = itertools.count()
    visited: set = set()
    for_hull: set = set()
    pq = [(0.0, next(counter), source)]

    while pq:
        travel_time, _, node = heapq.heappop(pq)
        if node in visited:
            continue
        visited.add(node)

        if travel_time < small_radius_s:
            for_hull.add(node)

        for ngh in network.successors(node):
            if ngh in visited:
                continue
            total = travel_time + network.edge_travel_time(node, ngh)
            if total < large_radius_s:
                heapq.heappush(pq, (total, next(counter), ngh))

    return for_hull, visited


# =============================================================================
# REDUNDANCY ELIMINATION
# =============================================================================

def minimize_trips(coverage: Mapping[int, set]) -> set[int]:
    """
    Greedy removal of trips whose coverage is provided by other trips.

    Trips are ordered ascending by (coverage size, trip id) and examined
    from the largest down. A trip is removed when its coverage set is
    subsumed by the union of the coverage sets of the other trips that have
    not been removed yet. Not an optimal set cover, but deterministic.

    Args:
        coverage: Trip id -> set of covered node ids

    Returns:
        Ids of removable trips
    """
    keys = sorted(coverage, key=lambda k: (len(coverage[k]), k))
    removed: set[int] = set()

    for i in range(len(keys) - 1, -1, -1):
        trip_id = keys[i]
        remaining = set(coverage[trip_id])

        for j in range(len(keys) - 1, -1, -1):
            if i == j or keys[j] in removed:
                continue
            remaining -= coverage[keys[j]]
            if not remaining:
                removed.add(trip_id)
                break

    return removed


# =============================================================================
# GENERATOR
# =============================================================================

class TripGenerator:
    """
    Builds the trip set and its initial sampling parameters.

    Args:
        network: Road network
        config: Model configuration (radii, bin size, numerics)
        show_progress: Wrap the long loops in tqdm progress bars
    """

    def __init__(
        self,
        network: RoadNetwork,
        config: Optional[TripModelConfig] = None,
        show_progress: bool = True,
    ):
        self.network = network
        self.config = (config or TripModelConfig()).validate()
        self.bin_size = self.config.bin_size_s
        self.n_bins = check_bin_size(self.bin_size)
        self.show_progress = show_progress

        self.node_index = {n: i for i, n in enumerate(network.node_ids())}
        self.pickup_counts: Optional[np.ndarray] = None
        self.trips: dict[int, Trip] = {}
        self.coverage: dict[int, set] = {}
        self.trip_list: list[Trip] = []
        self.theta: Optional[np.ndarray] = None

    # -------------------------------------------------------------------------
    # Pickup counting
    # -------------------------------------------------------------------------

    def count_events(self, pickups: pd.DataFrame) -> np.ndarray:
        """
        Count pickups per intersection and time bin over one week.

        Each pickup is snapped to the nearer endpoint of its nearest road
        link, measured in the projected plane.

        Args:
            pickups: DataFrame with ``time`` (Unix seconds), ``lon``, ``lat``

        Returns:
            Array of shape (n_nodes, n_bins), rows in ``node_index`` order
        """
        counts = np.zeros((len(self.node_index), self.n_bins), dtype=np.int64)

        if len(pickups) > 0:
            pickups = pickups.sort_values("time", kind="stable")
            xy = self.network.project_many(pickups["lon"].to_numpy(), pickups["lat"].to_numpy())
            nodes = self.network.nearest_node_xy(xy)

            rows = np.fromiter((self.node_index[n] for n in nodes), dtype=np.int64, count=len(nodes))
            bins = assign_time_index(pickups["time"].to_numpy(dtype=np.int64), self.bin_size)
            np.add.at(counts, (rows, bins), 1)

        logger.info(f"Assigned {int(counts.sum())} pickups to {int((counts.sum(axis=1) > 0).sum())} intersections")

        self.pickup_counts = counts
        return counts

    # -------------------------------------------------------------------------
    # Trips
    # -------------------------------------------------------------------------

    def build_trip(self, node) -> tuple[Optional[Trip], set]:
        """
        Build the hull trip seeded at one intersection.

        Returns:
            (trip or None if degenerate, coverage set)
        """
        for_hull, coverage = isochrone(
            self.network, node, self.config.small_radius_s, self.config.large_radius_s
        )

        hull_nodes = sorted(for_hull)
        hull = [hull_nodes[i] for i in convex_hull_indices(self.network.coordinates(hull_nodes))]

        try:
            trip = Trip.from_hull(node, hull, self.network)
        except nx.NetworkXNoPath:
            logger.debug(f"Skipping trip {node}: hull nodes are not connected")
            return None, coverage

        if len(trip) < 2:
            return None, coverage
        return trip, coverage

    def compute_isochrone_trips(self) -> dict[int, Trip]:
        """
        Build one trip per intersection and drop redundant ones.

        Returns:
            Surviving trips keyed by trip id
        """
        trips: dict[int, Trip] = {}
        coverage: dict[int, set] = {}

        nodes = self.network.node_ids()
        for node in tqdm(nodes, desc="Trip Calculations", disable=not self.show_progress):
            trip, reach = self.build_trip(node)
            if trip is None:
                continue
            trips[trip.id] = trip
            coverage[trip.id] = reach

        logger.info(f"Built {len(trips)} non-degenerate trips from {len(nodes)} intersections")

        for trip_id in minimize_trips(coverage):
            del trips[trip_id]
            del coverage[trip_id]

        logger.info(f"After optimizing trips, there are {len(trips)} trips left.")

        self.trips = trips
        self.coverage = coverage
        self.trip_list = sorted(trips.values(), key=lambda t: t.id)
        return trips

    # -------------------------------------------------------------------------
    # Weights and theta
    # -------------------------------------------------------------------------

    def compute_weights(self, counts: Optional[np.ndarray] = None) -> np.ndarray:
        """
        Normalized pickup weight of every trip per time bin.

        A trip's raw weight in a bin is the pickup count summed over its
        coverage set; weights are then normalized so that each bin sums to 1.

        Args:
            counts: Pickup counts from count_events (defaults to the last result)

        Returns:
            Array of shape (n_bins, n_trips), columns in trip id order

        Raises:
            EmptyTimeBinError: If a bin has no pickups under the "raise" policy
        """
        counts = self.pickup_counts if counts is None else counts
        if counts is None:
            raise ValueError("count_events must run before compute_weights")

        raw = np.zeros((self.n_bins, len(self.trip_list)), dtype=float)
        for col, trip in enumerate(tqdm(self.trip_list, desc="Trip Weighting", disable=not self.show_progress)):
            rows = [self.node_index[n] for n in self.coverage[trip.id]]
            raw[:, col] = counts[rows].sum(axis=0)

        totals = raw.sum(axis=1)
        empty = np.flatnonzero(totals == 0)
        if len(empty) > 0 and len(self.trip_list) > 0:
            if self.config.empty_bin_policy == "raise":
                raise EmptyTimeBinError(
                    f"{len(empty)} time bins have no pickups on any trip "
                    f"(first: bin {empty[0]})"
                )
            logger.warning(f"{len(empty)} time bins have no pickups, using uniform weights")
            raw[empty, :] = 1.0
            totals = raw.sum(axis=1)

        weights = raw / totals[:, None] if len(self.trip_list) > 0 else raw

        for col, trip in enumerate(self.trip_list):
            trip.weights = {
                int(b * self.bin_size): float(weights[b, col]) for b in range(self.n_bins)
            }

        return weights

    def init_theta(self, weights: Optional[np.ndarray] = None) -> np.ndarray:
        """theta[bin][i] = ln(weight + eps), aligned with trips sorted by id."""
        if weights is None:
            weights = np.array(
                [[t.weights[b * self.bin_size] for t in self.trip_list] for b in range(self.n_bins)],
                dtype=float,
            ).reshape(self.n_bins, len(self.trip_list))

        self.theta = np.log(weights + self.config.theta_epsilon)
        return self.theta

    def trip_duration_stats(self) -> dict:
        """
        Trip duration statistics in minutes (diagnostics only).

        Returns:
            Dict with n_trips, avg/min/max/std duration
        """
        if not self.trip_list:
            return {
                "n_trips": 0,
                "avg_duration_min": 0.0,
                "min_duration_min": 0.0,
                "max_duration_min": 0.0,
                "std_duration_min": 0.0,
            }

        durations = np.array([t.travel_duration() for t in self.trip_list]) / 60.0
        return {
            "n_trips": len(durations),
            "avg_duration_min": float(np.mean(durations)),
            "min_duration_min": float(np.min(durations)),
            "max_duration_min": float(np.max(durations)),
            "std_duration_min": float(np.std(durations)),
        }

    def generate(self, pickups: pd.DataFrame) -> TripModelData:
        """
        Run the full pipeline.

        Args:
            pickups: Historical pickups (``time``, ``lon``, ``lat``)

        Returns:
            TripModelData with trips sorted by id and the initial theta
        """
        counts = self.count_events(pickups)
        self.compute_isochrone_trips()
        weights = self.compute_weights(counts)
        theta = self.init_theta(weights)

        stats = self.trip_duration_stats()
        logger.info(f"Average Trip Duration: {stats['avg_duration_min']:.2f} mins.")
        logger.info(f"Minimum Trip Duration: {stats['min_duration_min']:.2f} mins.")
        logger.info(f"Maximum Trip Duration: {stats['max_duration_min']:.2f} mins.")
        logger.info(f"Standard Deviation for Trip Durations: {stats['std_duration_min']:.6f}")

        return TripModelData(trips=list(self.trip_list), theta=theta)


def generate_trip_model(
    network: RoadNetwork,
    pickups: pd.DataFrame,
    config: Optional[TripModelConfig] = None,
    show_progress: bool = True,
) -> TripModelData:
    """Convenience wrapper: build trips and theta in one call."""
    return TripGenerator(network, config, show_progress=show_progress).generate(pickups)


def coverage_of(trips: Sequence[Trip], network: RoadNetwork, config: TripModelConfig) -> dict[int, set]:
    """Recompute the coverage sets of existing trips from their seed nodes."""
    return {
        t.id: isochrone(network, t.id, config.small_radius_s, config.large_radius_s)[1]
        for t in trips
    }
