"""Tests for isochrones, trip minimization and trip weighting."""

import pytest
import networkx as nx
import numpy as np
import pandas as pd

from tripmodel.config import SECONDS_IN_DAY, TripModelConfig
from tripmodel.generation import (
    EmptyTimeBinError,
    TripGenerator,
    coverage_of,
    generate_trip_model,
    isochrone,
    minimize_trips,
)
from tripmodel.network import RoadNetwork
from tripmodel.trip import Trip


def _grid(size=3, spacing=100.0, travel_time=60.0):
    G = nx.DiGraph()
    for r in range(size):
        for c in range(size):
            G.add_node(r * size + c, x=c * spacing, y=r * spacing)
    for r in range(size):
        for c in range(size):
            n = r * size + c
            if c < size - 1:
                G.add_edge(n, n + 1, travel_time=travel_time)
                G.add_edge(n + 1, n, travel_time=travel_time)
            if r < size - 1:
                G.add_edge(n, n + size, travel_time=travel_time)
                G.add_edge(n + size, n, travel_time=travel_time)
    return RoadNetwork(G)


@pytest.fixture
def grid():
    return _grid()


@pytest.fixture
def daily_config():
    """Seven one-day bins and radii of one and two grid links."""
    return TripModelConfig(
        small_radius_s=61.0,
        large_radius_s=121.0,
        bin_size_s=SECONDS_IN_DAY,
        empty_bin_policy="uniform",
    )


class TestIsochrone:
    """Tests for the two-radius travel time search."""

    @pytest.fixture
    def line(self):
        """1 -> 2 -> 3 -> 4 with 100s links."""
        G = nx.DiGraph()
        for n in range(1, 5):
            G.add_node(n, x=float(n), y=0.0)
        for n in range(1, 4):
            G.add_edge(n, n + 1, travel_time=100.0)
        return RoadNetwork(G)

    def test_radii(self, line):
        """Nodes are split by the two radii."""
        for_hull, coverage = isochrone(line, 1, 150.0, 250.0)

        assert for_hull == {1, 2}
        assert coverage == {1, 2, 3}

    def test_thresholds_are_strict(self, line):
        """A node exactly on a radius is outside it."""
        for_hull, coverage = isochrone(line, 1, 200.0, 300.0)

        assert 3 not in for_hull
        assert 4 not in coverage
        assert for_hull <= coverage

    def test_source_always_included(self, line):
        """The seed is reached at time zero."""
        for_hull, coverage = isochrone(line, 4, 10.0, 20.0)

        assert for_hull == {4}
        assert coverage == {4}

    def test_shortest_time_wins(self):
        """Nodes are settled at their shortest travel time."""
        G = nx.DiGraph()
        for n in range(1, 4):
            G.add_node(n, x=float(n), y=0.0)
        G.add_edge(1, 2, travel_time=500.0)
        G.add_edge(1, 3, travel_time=100.0)
        G.add_edge(3, 2, travel_time=100.0)

        for_hull, _ = isochrone(RoadNetwork(G), 1, 300.0, 600.0)

        assert for_hull == {1, 2, 3}


class TestMinimizeTrips:
    """Tests for greedy removal of redundant trips."""

    def test_subsumed_large_trip_removed(self):
        """The largest trip goes when smaller ones cover it together."""
        coverage = {1: {"a", "b"}, 2: {"b", "c"}, 3: {"a", "b", "c"}}
        assert minimize_trips(coverage) == {3}

    def test_identical_coverage_keeps_lowest_id(self):
        """Among equal trips the higher id is examined first and removed."""
        assert minimize_trips({1: {"a"}, 2: {"a"}}) == {2}

    def test_disjoint_trips_kept(self):
        assert minimize_trips({1: {"a"}, 2: {"b"}, 3: {"c"}}) == set()

    def test_union_preserved(self):
        """Survivors still cover every node."""
        rng = np.random.default_rng(5)
        coverage = {
            i: set(rng.choice(30, size=rng.integers(1, 10), replace=False).tolist())
            for i in range(25)
        }
        removed = minimize_trips(coverage)

        survivors = {k: v for k, v in coverage.items() if k not in removed}
        assert set().union(*survivors.values()) == set().union(*coverage.values())

    def test_idempotent(self):
        """A minimized set has nothing left to remove."""
        rng = np.random.default_rng(9)
        coverage = {
            i: set(rng.choice(20, size=rng.integers(1, 8), replace=False).tolist())
            for i in range(15)
        }
        removed = minimize_trips(coverage)
        survivors = {k: v for k, v in coverage.items() if k not in removed}

        assert minimize_trips(survivors) == set()

    def test_empty(self):
        assert minimize_trips({}) == set()


class TestCountEvents:
    """Tests for snapping pickups to intersections and bins."""

    def test_counts_per_node_and_bin(self, grid, daily_config):
        """Pickups land on the nearest intersection in their day-of-week bin."""
        gen = TripGenerator(grid, daily_config, show_progress=False)
        pickups = pd.DataFrame(
            {
                "time": [5, 2 * SECONDS_IN_DAY + 5, 2 * SECONDS_IN_DAY + 10, 7 * SECONDS_IN_DAY + 1],
                "lon": [5.0, 195.0, 190.0, 3.0],
                "lat": [8.0, 195.0, 200.0, 2.0],
            }
        )

        counts = gen.count_events(pickups)

        assert counts.shape == (9, 7)
        assert counts.sum() == 4
        assert counts[gen.node_index[0], 0] == 2
        assert counts[gen.node_index[8], 2] == 2

    def test_no_pickups(self, grid, daily_config):
        gen = TripGenerator(grid, daily_config, show_progress=False)
        counts = gen.count_events(pd.DataFrame({"time": [], "lon": [], "lat": []}))

        assert counts.shape == (9, 7)
        assert counts.sum() == 0


class TestComputeWeights:
    """Tests for per-bin trip weights."""

    @pytest.fixture
    def generator(self, grid, daily_config):
        gen = TripGenerator(grid, daily_config, show_progress=False)
        gen.trip_list = [Trip(0, [0, 1, 4, 3], grid), Trip(4, [4, 5, 8, 7], grid)]
        gen.coverage = {0: {0, 1}, 4: {1, 4}}
        return gen

    def test_normalized(self, generator):
        """Each bin sums to one, in proportion to covered pickups."""
        counts = np.zeros((9, 7), dtype=np.int64)
        counts[0, :] = 1
        counts[1, :] = 1
        counts[4, :] = 2

        weights = generator.compute_weights(counts)

        assert weights.shape == (7, 2)
        np.testing.assert_allclose(weights.sum(axis=1), 1.0)
        np.testing.assert_allclose(weights[:, 0], 0.4)
        np.testing.assert_allclose(weights[:, 1], 0.6)

    def test_trip_weights_keyed_by_bin_start(self, generator):
        """Trips keep their weight per bin start time."""
        counts = np.ones((9, 7), dtype=np.int64)
        generator.compute_weights(counts)

        trip = generator.trip_list[0]
        assert sorted(trip.weights) == [b * SECONDS_IN_DAY for b in range(7)]
        assert trip.weights[3 * SECONDS_IN_DAY] == pytest.approx(0.5)

    def test_empty_bin_raises(self, generator):
        """Without a fallback policy an empty bin is an error."""
        generator.config = TripModelConfig(bin_size_s=SECONDS_IN_DAY)
        counts = np.ones((9, 7), dtype=np.int64)
        counts[:, 3] = 0

        with pytest.raises(EmptyTimeBinError):
            generator.compute_weights(counts)

    def test_empty_bin_uniform(self, generator):
        """The uniform policy spreads an empty bin evenly."""
        counts = np.ones((9, 7), dtype=np.int64)
        counts[:, 3] = 0

        weights = generator.compute_weights(counts)

        np.testing.assert_allclose(weights[3], [0.5, 0.5])

    def test_requires_counts(self, generator):
        with pytest.raises(ValueError):
            generator.compute_weights()


class TestInitTheta:
    """Tests for theta initialization."""

    def test_log_of_weights(self, grid, daily_config):
        gen = TripGenerator(grid, daily_config, show_progress=False)
        weights = np.array([[0.25, 0.75, 0.0]] * 7)

        theta = gen.init_theta(weights)

        assert theta.shape == (7, 3)
        assert theta[0, 0] == pytest.approx(np.log(0.25 + 1e-10))
        assert theta[0, 2] == pytest.approx(np.log(1e-10))
        assert np.all(np.isfinite(theta))


class TestGenerate:
    """End-to-end trip generation on a small grid."""

    @pytest.fixture
    def pickups(self):
        rng = np.random.default_rng(1)
        n = 200
        return pd.DataFrame(
            {
                "time": rng.integers(0, 7 * SECONDS_IN_DAY, size=n),
                "lon": rng.uniform(0, 200, size=n),
                "lat": rng.uniform(0, 200, size=n),
            }
        )

    def test_generate(self, grid, daily_config, pickups):
        """Trips are sorted, theta is aligned and coverage is complete."""
        gen = TripGenerator(grid, daily_config, show_progress=False)
        data = gen.generate(pickups)

        ids = [t.id for t in data.trips]
        assert ids == sorted(ids)
        assert 0 < len(data.trips) <= 9
        assert data.theta.shape == (7, len(data.trips))
        assert data.n_bins == 7
        assert data.bin_size == SECONDS_IN_DAY

        np.testing.assert_allclose(np.exp(data.theta).sum(axis=1), 1.0, atol=1e-6)
        assert set().union(*gen.coverage.values()) == set(range(9))

        for trip in data.trips:
            assert len(trip) >= 2
            assert set(trip.node_ids) <= set(range(9))

    def test_trip_duration_stats(self, grid, daily_config, pickups):
        gen = TripGenerator(grid, daily_config, show_progress=False)
        gen.generate(pickups)

        stats = gen.trip_duration_stats()
        assert stats["n_trips"] == len(gen.trip_list)
        assert stats["min_duration_min"] <= stats["avg_duration_min"] <= stats["max_duration_min"]
        assert stats["min_duration_min"] > 0

    def test_wrapper_matches_generator(self, grid, daily_config, pickups):
        data = generate_trip_model(grid, pickups, daily_config, show_progress=False)
        gen = TripGenerator(grid, daily_config, show_progress=False)
        expected = gen.generate(pickups)

        assert [t.id for t in data.trips] == [t.id for t in expected.trips]
        np.testing.assert_allclose(data.theta, expected.theta)

    def test_coverage_of_matches(self, grid, daily_config, pickups):
        """Coverage can be recomputed from the stored trips."""
        gen = TripGenerator(grid, daily_config, show_progress=False)
        data = gen.generate(pickups)

        assert coverage_of(data.trips, grid, daily_config) == gen.coverage
