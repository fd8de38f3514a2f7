"""Tests for the bandit training loop."""

import pytest
import networkx as nx
import numpy as np

from tripmodel.agents import LearningRate, TripsBanditAgent
from tripmodel.config import TripModelConfig
from tripmodel.model import SamplingModel
from tripmodel.network import RoadNetwork
from tripmodel.storage import TripModelData, read_model
from tripmodel.training import checkpoint_path, run_training
from tripmodel.trip import Trip


@pytest.fixture
def grid():
    G = nx.DiGraph()
    for r in range(2):
        for c in range(2):
            G.add_node(r * 2 + c, x=c * 100.0, y=r * 100.0)
    for u, v in [(0, 1), (1, 3), (3, 2), (2, 0)]:
        G.add_edge(u, v, travel_time=60.0)
        G.add_edge(v, u, travel_time=60.0)
    return RoadNetwork(G)


@pytest.fixture
def model(grid):
    trips = [Trip(0, [0, 1, 3, 2], grid), Trip(3, [3, 1, 0, 2], grid)]
    return SamplingModel(grid, TripModelConfig(seed=0), data=TripModelData(trips=trips, theta=np.zeros((1, 2))))


class TestRunTraining:
    """Tests for the epoch loop."""

    def test_checkpoints_and_decay(self, tmp_path, model):
        """Theta is written after every epoch and the rate decays."""
        lr = LearningRate(0.1, decay=0.5)
        seen = []

        def simulate(epoch, m, rate):
            seen.append((epoch, rate.value))

        written = run_training(model, simulate, 3, lr, output_dir=tmp_path, experiment_name="test")

        assert seen == [(0, 0.1), (1, 0.05), (2, 0.025)]
        assert written == [tmp_path / f"theta_test_{i}.bin" for i in range(3)]
        assert all(p.exists() for p in written)
        assert lr.value == pytest.approx(0.0125)

    def test_checkpoint_every(self, tmp_path, model):
        written = run_training(
            model, lambda *_: None, 5, LearningRate(0.1), output_dir=tmp_path, checkpoint_every=2
        )
        assert [p.name for p in written] == ["theta_bandit_0.bin", "theta_bandit_2.bin", "theta_bandit_4.bin"]

    def test_learning_rate_from_config(self, tmp_path, grid):
        """Without an explicit rate, alpha and its decay come from the model config."""
        trips = [Trip(0, [0, 1, 3, 2], grid), Trip(3, [3, 1, 0, 2], grid)]
        config = TripModelConfig(alpha=0.2, alpha_decay=0.5, seed=0)
        model = SamplingModel(grid, config, data=TripModelData(trips=trips, theta=np.zeros((1, 2))))
        seen = []

        run_training(model, lambda epoch, m, rate: seen.append(rate.value), 3, output_dir=tmp_path)

        assert seen == [0.2, 0.1, 0.05]

    def test_learned_theta_is_saved(self, tmp_path, grid, model):
        """Updates made by agents during an epoch end up in the checkpoint."""
        lr = LearningRate(0.01)

        def simulate(epoch, m, rate):
            agent = TripsBanditAgent(epoch, grid, m, rate, with_approach=True, include_pickup_travel=False)
            agent.plan_search_route(0, 10)
            agent.assigned_to(0, 310, 1, 0, 3)

        written = run_training(model, simulate, 1, lr, output_dir=tmp_path)
        saved = read_model(written[0], grid)

        assert np.any(saved.theta != 0.0)
        np.testing.assert_array_equal(saved.theta, model.theta)

    def test_invalid_arguments(self, model):
        with pytest.raises(ValueError):
            run_training(model, lambda *_: None, -1, LearningRate())
        with pytest.raises(ValueError):
            run_training(model, lambda *_: None, 1, LearningRate(), checkpoint_every=0)

    def test_checkpoint_path(self, tmp_path):
        assert checkpoint_path(tmp_path, "exp", 7) == tmp_path / "theta_exp_7.bin"
