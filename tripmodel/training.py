"""
Epoch loop for learning trip distributions with bandit agents.

The simulator itself is external: ``simulate_epoch`` runs one full
simulation in which every agent is a ``TripsBanditAgent`` sharing ``model``
and ``learning_rate``. After each epoch the learned theta is written and
the learning rate decays.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Optional

from .agents import LearningRate
from .model import SamplingModel

logger = logging.getLogger(__name__)


def checkpoint_path(output_dir: Path | str, experiment_name: str, epoch: int) -> Path:
    return Path(output_dir) / f"theta_{experiment_name}_{epoch}.bin"


def run_training(
    model: SamplingModel,
    simulate_epoch: Callable[[int, SamplingModel, LearningRate], Any],
    epochs: int,
    learning_rate: Optional[LearningRate] = None,
    output_dir: Path | str = "out",
    experiment_name: str = "bandit",
    checkpoint_every: int = 1,
) -> list[Path]:
    """
    Run bandit training epochs.

    Args:
        model: Shared sampling model
        simulate_epoch: Runs one simulation (epoch, model, learning_rate)
        epochs: Number of epochs
        learning_rate: Shared learning rate, decayed after every epoch.
            Built from ``model.config`` (alpha, alpha_decay) when None.
        output_dir: Directory for theta checkpoints
        experiment_name: Used in checkpoint file names
        checkpoint_every: Write theta every n epochs

    Returns:
        Paths of the written checkpoints
    """
    if epochs < 0:
        raise ValueError("epochs must be >= 0")
    if checkpoint_every < 1:
        raise ValueError("checkpoint_every must be >= 1")
    if learning_rate is None:
        learning_rate = LearningRate.from_config(model.config)

    written = []
    for epoch in range(epochs):
        logger.info(f"Experiment {experiment_name}, epoch {epoch}, alpha {learning_rate.value:g}")

        result = simulate_epoch(epoch, model, learning_rate)
        if result is not None:
            logger.info(f"Epoch {epoch} result: {result}")

        if epoch % checkpoint_every == 0:
            written.append(model.write(checkpoint_path(output_dir, experiment_name, epoch)))

        learning_rate.decay()

    return written
