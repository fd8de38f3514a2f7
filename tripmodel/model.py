"""
Softmax sampling model over trips.

Holds one theta row per time-of-week bin and turns it into a trip
distribution. Sampling uses per-bin cumulative distributions searched by
bisection. Models are loaded per calendar month (or a default aggregate)
and swapped in whole, so readers never see a half-loaded model.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, NamedTuple, Optional
from zoneinfo import ZoneInfo

import numpy as np

from .config import SECONDS_IN_WEEK, ConfigurationError, TripModelConfig, assign_time_index
from .network import RoadNetwork
from .storage import TripModelData, read_model, write_model
from .trip import Trip

logger = logging.getLogger(__name__)

DEFAULT_PERIOD = 0


def softmax(row: np.ndarray) -> np.ndarray:
    """Softmax of a theta row, shifted by its maximum for stability."""
    row = np.asarray(row, dtype=float)
    if row.size == 0:
        return row.copy()
    e = np.exp(row - row.max())
    return e / e.sum()


def cumulative_distribution(distribution: np.ndarray, tolerance: float = 1e-12) -> np.ndarray:
    """
    Partial sums of a distribution, cut once the mass exceeds ``1 - tolerance``.

    Entries after the cut carry (numerically) no probability and are never
    sampled, which keeps the bisection short for peaked distributions.
    """
    cdf = np.cumsum(distribution)
    over = np.flatnonzero(cdf > 1 - tolerance)
    if len(over) > 0 and over[0] < len(cdf) - 1:
        cdf = cdf[: over[0] + 1]
    return cdf


@dataclass(frozen=True)
class _Bin:
    theta: np.ndarray
    cdf: np.ndarray


class TripSample(NamedTuple):
    """A sampled trip together with where it was sampled from."""

    trip: Trip
    index: int
    bin: int
    period: int


class ModelState:
    """
    One fully built model: trips, theta rows and their sampling caches.

    The trip list is fixed for the lifetime of a state. Theta rows are
    replaced together with their cdf under a per-bin lock.
    """

    def __init__(self, period: int, data: TripModelData, cdf_tolerance: float = 1e-12):
        theta = np.asarray(data.theta, dtype=float)
        if theta.ndim != 2:
            raise ConfigurationError(f"theta must be 2-dimensional, got shape {theta.shape}")

        n_rows, n_cols = theta.shape
        if n_rows == 0:
            raise ConfigurationError("theta has no rows")
        if SECONDS_IN_WEEK % n_rows != 0:
            raise ConfigurationError("Theta is not valid.")
        self.bin_size = SECONDS_IN_WEEK // n_rows

        trips = sorted(data.trips, key=lambda t: t.id)
        if n_cols != len(trips):
            raise ConfigurationError(
                f"theta has {n_cols} columns but the model has {len(trips)} trips"
            )

        self.period = period
        self.trips: tuple[Trip, ...] = tuple(trips)
        self.cdf_tolerance = cdf_tolerance
        self.index = {t.id: i for i, t in enumerate(self.trips)}
        self.locks = [threading.Lock() for _ in range(n_rows)]
        self.bins: list[_Bin] = [self._make_bin(row.copy()) for row in theta]

    def _make_bin(self, row: np.ndarray) -> _Bin:
        return _Bin(theta=row, cdf=cumulative_distribution(softmax(row), self.cdf_tolerance))

    @property
    def n_bins(self) -> int:
        return len(self.bins)

    def theta(self) -> np.ndarray:
        if not self.bins:
            return np.zeros((0, len(self.trips)))
        return np.vstack([b.theta for b in self.bins])

    def rebuild(self) -> None:
        for b, lock in enumerate(self.locks):
            with lock:
                self.bins[b] = self._make_bin(self.bins[b].theta)

    def apply_gradient(self, bin: int, trip_index: int, reward: float, alpha: float) -> np.ndarray:
        with self.locks[bin]:
            current = self.bins[bin]
            grad = softmax(current.theta)
            grad[trip_index] -= 1.0
            row = current.theta + alpha * grad * reward
            self.bins[bin] = self._make_bin(row)
            return row


class SamplingModel:
    """
    Trip sampling model shared by all agents of a simulation run.

    Args:
        network: Road network the trips live on
        config: Model configuration
        data: Preloaded trips and theta. When given, the model is pinned to
            this data and never reloads per month.
        fallback: Called to recompute a model when a data file cannot be
            loaded and ``config.recompute_on_load_failure`` is set
        rng: Random generator used for sampling
    """

    def __init__(
        self,
        network: RoadNetwork,
        config: Optional[TripModelConfig] = None,
        data: Optional[TripModelData] = None,
        fallback: Optional[Callable[[], TripModelData]] = None,
        rng: Optional[np.random.Generator] = None,
    ):
        self.network = network
        self.config = (config or TripModelConfig()).validate()
        self.fallback = fallback
        self.rng = rng if rng is not None else np.random.default_rng(self.config.seed)
        self._tz = ZoneInfo(self.config.timezone)

        self._states: dict[int, ModelState] = {}
        self._active: Optional[ModelState] = None
        self._requested: Optional[int] = None
        self._pinned = data is not None

        self._load_lock = threading.Lock()
        self._rng_lock = threading.Lock()

        if data is not None:
            self._activate(ModelState(DEFAULT_PERIOD, data, self.config.cdf_tolerance))
            self._requested = DEFAULT_PERIOD
        else:
            self.ensure_data_loaded(-1)

    # -------------------------------------------------------------------------
    # Loading
    # -------------------------------------------------------------------------

    def period_of(self, time: int) -> int:
        """Calendar month (1-12) of a timestamp, or the default period for time <= 0."""
        if time <= 0:
            return DEFAULT_PERIOD
        return datetime.fromtimestamp(time, self._tz).month

    def data_path(self, period: int) -> Path:
        return self.config.data_path(None if period == DEFAULT_PERIOD else period)

    def _activate(self, state: ModelState) -> None:
        self._states[state.period] = state
        self._active = state

    def _load_period(self, period: int) -> Optional[ModelState]:
        path = self.data_path(period)
        try:
            data = read_model(path, self.network)
            logger.info(f"Data file: {path}")
        except OSError as e:
            logger.error(f"Could not load the data file {path}: {e}")
            if not (self.config.recompute_on_load_failure and self.fallback is not None):
                return None
            logger.warning(f"Recomputing trip model for period {period}")
            data = self.fallback()

        return ModelState(period, data, self.config.cdf_tolerance)

    def ensure_data_loaded(self, time: int) -> None:
        """
        Make the model for the period of ``time`` the active one.

        Each period is attempted once; a failed load is logged and the
        previous model stays active.
        """
        if self._pinned:
            return

        period = self.period_of(time)
        if period == self._requested:
            return

        with self._load_lock:
            if period == self._requested:
                return
            self._requested = period

            state = self._states.get(period)
            if state is None:
                state = self._load_period(period)
                if state is None:
                    return
            self._activate(state)

    def _state(self, period: Optional[int] = None) -> ModelState:
        state = self._active if period is None else self._states.get(period)
        if state is None:
            raise RuntimeError("No trip model loaded")
        return state

    # -------------------------------------------------------------------------
    # Accessors
    # -------------------------------------------------------------------------

    @property
    def trips(self) -> tuple[Trip, ...]:
        return self._state().trips

    @property
    def theta(self) -> np.ndarray:
        """Copy of the active theta matrix (bins x trips)."""
        return self._state().theta()

    @property
    def bin_size(self) -> int:
        return self._state().bin_size

    @property
    def n_bins(self) -> int:
        return self._state().n_bins

    @property
    def period(self) -> Optional[int]:
        return None if self._active is None else self._active.period

    def index_of(self, trip_id: int) -> int:
        return self._state().index[trip_id]

    def cumulative(self, bin: int) -> np.ndarray:
        return self._state().bins[bin].cdf

    def data(self) -> TripModelData:
        state = self._state()
        return TripModelData(trips=list(state.trips), theta=state.theta())

    def write(self, path: Path | str) -> Path:
        return write_model(path, self.data())

    # -------------------------------------------------------------------------
    # Distributions and sampling
    # -------------------------------------------------------------------------

    def assign_time_index(self, time: int, period: Optional[int] = None) -> int:
        return int(assign_time_index(time, self._state(period).bin_size))

    def distribution(self, bin: int) -> np.ndarray:
        """Softmax distribution over trips for a bin index."""
        return softmax(self._state().bins[bin].theta)

    def distribution_at(self, time: int) -> np.ndarray:
        """Softmax distribution over trips for the bin ``time`` falls into."""
        self.ensure_data_loaded(time)
        return self.distribution(self.assign_time_index(time))

    def prepare_fast_sampling(self) -> None:
        """Rebuild the cumulative distribution of every bin from theta."""
        self._state().rebuild()

    def _draw(self) -> float:
        with self._rng_lock:
            return float(self.rng.random())

    def sample(self, time: int) -> TripSample:
        """
        Sample a trip for the given time.

        Args:
            time: Unix timestamp

        Returns:
            TripSample with the trip, its column index, bin and period
        """
        self.ensure_data_loaded(time)
        state = self._state()
        if not state.trips:
            raise RuntimeError("Trip model has no trips")

        bin = int(assign_time_index(time, state.bin_size))
        cdf = state.bins[bin].cdf
        idx = int(np.searchsorted(cdf, self._draw(), side="left"))
        idx = min(idx, len(state.trips) - 1)
        return TripSample(state.trips[idx], idx, bin, state.period)

    def sample_trip(self, time: int) -> Trip:
        return self.sample(time).trip

    # -------------------------------------------------------------------------
    # Learning
    # -------------------------------------------------------------------------

    def apply_gradient(
        self,
        bin: int,
        trip_index: int,
        reward: float,
        alpha: float,
        period: Optional[int] = None,
    ) -> np.ndarray:
        """
        One policy-gradient step on a single bin.

        theta[bin][j] += alpha * (p[j] - 1{j == trip_index}) * reward

        The new row and its cumulative distribution are published together.

        Args:
            bin: Time bin the search started in
            trip_index: Column of the chosen trip
            reward: Realized search duration in seconds
            alpha: Learning rate
            period: Period the trip was sampled from (defaults to the active one)

        Returns:
            The updated theta row
        """
        state = self._state(period)
        if not 0 <= trip_index < len(state.trips):
            raise IndexError(f"Trip index {trip_index} out of range")
        return state.apply_gradient(bin, trip_index, reward, alpha)
