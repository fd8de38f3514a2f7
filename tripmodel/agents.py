"""
Search agents that drive sampled trips while waiting for a passenger.

The simulator calls three callbacks on an agent:

- ``plan_search_route`` when a new route is needed
- ``next_intersection`` whenever the agent reaches an intersection
- ``assigned_to`` when the agent is handed a passenger

``TripsAgent`` samples a fresh trip every time its route runs out.
``TripsBanditAgent`` keeps one trip until it is assigned and then feeds the
realized search time back into the shared sampling model.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections import deque
from enum import Enum
from typing import Optional

from .config import TripModelConfig
from .model import SamplingModel, TripSample
from .network import RoadNetwork

logger = logging.getLogger(__name__)


class LearningRate:
    """
    Learning rate shared by all learning agents of a process.

    Args:
        value: Initial learning rate
        decay: Multiplicative decay applied by ``decay()``
    """

    def __init__(self, value: float = 1e-7, decay: float = 1.0):
        self._value = float(value)
        self.decay_factor = float(decay)
        self._lock = threading.Lock()

    @property
    def value(self) -> float:
        return self._value

    def decay(self) -> float:
        """Apply one decay step and return the new value."""
        with self._lock:
            self._value *= self.decay_factor
            return self._value

    @classmethod
    def from_config(cls, config: TripModelConfig) -> "LearningRate":
        """Learning rate starting at ``config.alpha`` and decaying by ``config.alpha_decay``."""
        return cls(config.alpha, config.alpha_decay)

    def __repr__(self) -> str:
        return f"LearningRate(value={self._value:g}, decay={self.decay_factor:g})"


class AgentState(Enum):
    IDLE = "idle"
    APPROACHING = "approaching"
    SEARCHING = "searching"


class SearchAgent(ABC):
    """
    Capability interface the simulator drives.

    Locations are road network intersections: ``current`` is the
    intersection at the end of the road the agent is on.
    """

    def __init__(self, agent_id: int, network: RoadNetwork, model: SamplingModel):
        self.id = agent_id
        self.network = network
        self.model = model
        self.route: deque = deque()

    @abstractmethod
    def plan_search_route(self, current, time: int) -> None:
        """Fill ``self.route`` with the next intersections to drive."""
        pass

    def next_intersection(self, current, time: int):
        """
        Pop the next intersection of the route, planning a new route when empty.

        Returns:
            Next intersection, or None if no route could be planned
        """
        if not self.route:
            self.plan_search_route(current, time)
        if not self.route:
            logger.warning(f"Agent {self.id} has no route from {current}")
            return None
        return self.route.popleft()

    def assigned_to(self, current, time: int, resource_id: int, pickup, dropoff) -> None:
        """Called when the agent is handed a passenger."""
        self.route.clear()

        logger.debug(f"Agent {self.id} assigned to resource {resource_id}")
        logger.debug(f"currentLocation = {current}, currentTime = {time}")
        logger.debug(f"resourcePickupLocation = {pickup}, resourceDropoffLocation = {dropoff}")

    def _route_to_trip(self, current, sample: TripSample) -> tuple[object, list]:
        """
        Approach path from ``current`` to the closest trip intersection.

        Returns:
            (closest trip intersection, path without ``current``)
        """
        entry = sample.trip.find_closest(current)
        if entry == current:
            return entry, []
        return entry, self.network.shortest_path(current, entry)[1:]


class TripsAgent(SearchAgent):
    """Drives one freshly sampled trip per route."""

    def plan_search_route(self, current, time: int) -> None:
        self.route.clear()

        sample = self.model.sample(time)
        entry, approach = self._route_to_trip(current, sample)

        self.route.extend(approach)
        self.route.extend(sample.trip.loop_after(entry))


class TripsBanditAgent(SearchAgent):
    """
    Learning agent: REINFORCE-style updates from realized search times.

    The agent samples a trip when idle and drives it until assigned. The
    search clock starts when the agent enters the loop (or right away when
    ``with_approach`` is set). On assignment the chosen trip's probability
    in the bin of the search start is pushed down in proportion to the
    search time, and the other trips' pushed up:

        theta[bin][j] += alpha * (p[j] - 1{j == chosen}) * reward

    Args:
        agent_id: Agent id
        network: Road network
        model: Sampling model shared by all agents
        learning_rate: Learning rate shared by all agents
        with_approach: Count the drive to the trip as search time
        include_pickup_travel: Add the travel time to the passenger to the reward
    """

    def __init__(
        self,
        agent_id: int,
        network: RoadNetwork,
        model: SamplingModel,
        learning_rate: LearningRate,
        with_approach: Optional[bool] = None,
        include_pickup_travel: Optional[bool] = None,
    ):
        super().__init__(agent_id, network, model)
        self.learning_rate = learning_rate
        self.with_approach = (
            model.config.with_approach if with_approach is None else with_approach
        )
        self.include_pickup_travel = (
            model.config.include_pickup_travel
            if include_pickup_travel is None
            else include_pickup_travel
        )

        self.sample: Optional[TripSample] = None
        self.search_start: Optional[int] = None

    @property
    def state(self) -> AgentState:
        if self.sample is None:
            return AgentState.IDLE
        if self.search_start is None:
            return AgentState.APPROACHING
        return AgentState.SEARCHING

    @property
    def trip(self):
        return None if self.sample is None else self.sample.trip

    def plan_search_route(self, current, time: int) -> None:
        self.route.clear()

        if self.sample is None:
            self.sample = self.model.sample(time)

        entry, approach = self._route_to_trip(current, self.sample)
        self.route.extend(approach)

        if entry == current or self.with_approach:
            self.route.extend(self.sample.trip.loop_after(entry))
            if self.search_start is None:
                self.search_start = time

    def reward(self, current, time: int, pickup) -> float:
        """Realized search time in seconds."""
        end = time
        if self.include_pickup_travel and pickup is not None:
            end += self.network.travel_time(current, pickup)
        return float(end - self.search_start)

    def update_theta(self, reward: float) -> None:
        """Gradient step for the bin in which the current search started."""
        if self.sample is None or self.search_start is None:
            return

        bin = self.model.assign_time_index(self.search_start, period=self.sample.period)
        self.model.apply_gradient(
            bin,
            self.sample.index,
            reward,
            self.learning_rate.value,
            period=self.sample.period,
        )

    def assigned_to(self, current, time: int, resource_id: int, pickup, dropoff) -> None:
        super().assigned_to(current, time, resource_id, pickup, dropoff)

        if self.search_start is not None:
            reward = self.reward(current, time, pickup)
            self.update_theta(reward)
            logger.debug(f"Agent {self.id} searched {reward:.0f}s on trip {self.sample.trip.id}")

        self.search_start = None
        self.sample = None
