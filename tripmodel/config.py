"""
Configuration and time constants for the trip model.

All tunables of trip generation, sampling and bandit learning live in a
single dataclass so one object can be passed from the CLI scripts down to
the generator, the sampling model and the agents.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)


SECONDS_IN_HOUR = 60 * 60
SECONDS_IN_DAY = 24 * SECONDS_IN_HOUR
SECONDS_IN_WEEK = 7 * SECONDS_IN_DAY

EMPTY_BIN_POLICIES = ("raise", "uniform")


class ConfigurationError(ValueError):
    """Raised when the model configuration or a loaded model is unusable."""


def check_bin_size(bin_size: int) -> int:
    """
    Validate that a time bin evenly divides one week.

    Args:
        bin_size: Bin width in seconds

    Returns:
        Number of bins per week

    Raises:
        ConfigurationError: If the bin does not divide the week
    """
    if bin_size <= 0 or SECONDS_IN_WEEK % bin_size != 0:
        raise ConfigurationError(
            f"Bin size {bin_size}s does not evenly divide a week ({SECONDS_IN_WEEK}s)"
        )
    return SECONDS_IN_WEEK // bin_size


def assign_time_index(time, bin_size: int):
    """Index of the time-of-week bin a Unix timestamp falls into."""
    return (time % SECONDS_IN_WEEK) // bin_size


@dataclass
class TripModelConfig:
    """Parameters for trip generation, sampling and learning."""

    # Isochrone radii (seconds of travel time)
    small_radius_s: float = 300.0
    large_radius_s: float = 600.0

    # Time discretization
    bin_size_s: int = SECONDS_IN_HOUR

    # Numerics
    theta_epsilon: float = 1e-10
    cdf_tolerance: float = 1e-12
    empty_bin_policy: str = "raise"

    # Persistence
    data_dir: str = "resources"
    default_data_file: str = "data.bin"
    month_data_template: str = "data_%02d.bin"
    timezone: str = "America/New_York"
    recompute_on_load_failure: bool = False

    # Bandit learning
    alpha: float = 1e-7
    alpha_decay: float = 1.0
    with_approach: bool = False
    include_pickup_travel: bool = True

    seed: Optional[int] = None
    path_cache_size: int = 100_000

    @property
    def n_bins(self) -> int:
        return check_bin_size(self.bin_size_s)

    def validate(self) -> "TripModelConfig":
        """
        Check the configuration for consistency.

        Returns:
            self, to allow chaining

        Raises:
            ConfigurationError: On any invalid value
        """
        check_bin_size(self.bin_size_s)

        if self.small_radius_s <= 0 or self.large_radius_s <= 0:
            raise ConfigurationError("Isochrone radii must be positive")
        if self.small_radius_s > self.large_radius_s:
            raise ConfigurationError(
                f"small_radius_s ({self.small_radius_s}) exceeds "
                f"large_radius_s ({self.large_radius_s})"
            )
        if self.empty_bin_policy not in EMPTY_BIN_POLICIES:
            raise ConfigurationError(
                f"Unknown empty_bin_policy: {self.empty_bin_policy}"
            )
        if not 0 < self.cdf_tolerance < 1:
            raise ConfigurationError("cdf_tolerance must be in (0, 1)")
        if self.alpha < 0 or self.alpha_decay <= 0:
            raise ConfigurationError("alpha must be >= 0 and alpha_decay > 0")

        return self

    def data_path(self, month: Optional[int] = None) -> Path:
        """Path of the default data file, or of the file for a calendar month."""
        if month is None:
            name = self.default_data_file
        else:
            name = self.month_data_template % month
        return Path(self.data_dir) / name

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, config: dict[str, Any] | None) -> "TripModelConfig":
        """
        Build a config from a plain dict, ignoring unknown keys.

        Args:
            config: Overrides keyed by field name

        Returns:
            Validated TripModelConfig
        """
        config = config or {}
        known = {f.name for f in fields(cls)}

        unknown = sorted(set(config) - known)
        if unknown:
            logger.warning(f"Ignoring unknown config keys: {unknown}")

        return cls(**{k: v for k, v in config.items() if k in known}).validate()

    @classmethod
    def from_json(cls, path: Path | str) -> "TripModelConfig":
        payload = json.loads(Path(path).read_text(encoding="utf-8"))
        return cls.from_dict(payload)
