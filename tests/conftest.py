"""
Shared fixtures: a deterministic identity agent model and small configurations.
"""

import numpy as np
import pytest

from social_diffusion import AgentModelPort, CollaboratorError, RunConfiguration


class IdentityModelPort(AgentModelPort):
    """Echoes the last training target back as the agent's output."""

    def __init__(self, stream=None):
        self.sizes = {}
        self.outputs = {}
        self.trained = []
        self.destroy_calls = 0

    def create(self, agent_id, n_inputs, n_hidden, n_outputs, learning_rate, momentum):
        if agent_id in self.sizes:
            raise CollaboratorError(f"agent {agent_id} exists")
        self.sizes[agent_id] = (n_inputs, n_hidden, n_outputs)
        self.outputs[agent_id] = np.zeros(n_outputs)

    def reset(self, agent_id):
        self.outputs[agent_id] = np.zeros(self.sizes[agent_id][2])

    def train(self, agent_id, inputs, targets):
        self.trained.append(agent_id)
        self.outputs[agent_id] = np.array(targets, dtype=float)

    def read_output(self, agent_id):
        return self.outputs[agent_id].copy()

    def destroy_all(self):
        self.destroy_calls += 1
        self.sizes.clear()
        self.outputs.clear()


class FailingCreateModelPort(IdentityModelPort):
    """Refuses to allocate networks with ``fail_inputs`` inputs."""

    fail_inputs = 5

    def create(self, agent_id, n_inputs, n_hidden, n_outputs, learning_rate, momentum):
        if n_inputs == self.fail_inputs:
            raise CollaboratorError("out of model memory")
        super().create(agent_id, n_inputs, n_hidden, n_outputs, learning_rate, momentum)


@pytest.fixture
def identity_model():
    return IdentityModelPort()


@pytest.fixture
def triangle_config():
    """3 agents, 4 features, fixed 3-edge cycle, 5 ticks, always social."""
    return RunConfiguration(
        n_agents=3,
        n_features=4,
        proportion_hidden=0.5,
        topology="fixed",
        edges=((0, 2), (1, 0), (2, 1)),
        n_ticks_override=5,
        social_prob_algorithm="constant",
        social_prob_parameter=1.0,
        n_runs=1,
        seed=7,
    )


@pytest.fixture
def small_world_config():
    return RunConfiguration(
        n_agents=12,
        n_features=6,
        proportion_hidden=0.5,
        topology="small_world",
        neighborhood=2,
        prob_rewire=0.1,
        ticks_per_agent=3,
        n_runs=1,
        seed=11,
    )
