#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Networked Social Diffusion: Cultural Transmission among Auto-Associative Neural Agents

Simulates how socially transmitted representations drift away from, or converge
toward, innate prototypes in a population of agents connected by a social graph:

- Hierarchical binary prototypes: one uber prototype per population, one noisy
  derivative per agent.
- Each agent owns a small trainable model (one hidden layer, logistic units,
  back-propagation with momentum) that is trained auto-associatively.
- Connectivity graph: small-world, random edge count or an explicit edge list,
  frozen for the duration of a run.
- Discrete ticks: one (receiver, sender) edge per tick; the receiver trains on
  either a fresh distortion of its own prototype or the sender's latest output,
  chosen by a social-input probability schedule.
- Grid execution over combinations of parameter lists, with reproducible
  seeding and one isolated output directory per combination.
- Plain-text per-run records (parameters, prototypes, connections, history)
  plus CSV summaries across runs with 95% CIs.

Dependencies: numpy, pandas, networkx, scipy

Run lifecycle
-------------

    Initializing -> Pretraining -> Iterating(tick = 1..n_ticks) -> Concluding -> Done

Per-run output files (``<k>`` is the run number inside a combination):

    parameters_<k>.txt   one "key value" line per parameter
    prototypes_<k>.txt   "U <features>" then "<agent> <features>" (2 decimals)
    connections_<k>.txt  "<receiver> <sender>" per directed edge
    history_<k>.txt      header, blank line, then one row per logged event:
                         <tick> <agent> <0|1> <sender|P|-> <inputs|-> <outputs>
"""

import argparse
import dataclasses
import itertools
import math
import os
import re
import time
import warnings
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, IO, List, Optional, Sequence, Tuple

import numpy as np
import scipy
import pandas as pd
import networkx as nx
from scipy.special import expit
from scipy.stats import t


# ======
# Errors
# ======

class ConfigurationError(ValueError):
    """Invalid or unknown configuration (topology, policy, parameter values)."""


class CollaboratorError(RuntimeError):
    """The graph generator or an agent model failed; the current run is aborted."""


# =============
# Random stream
# =============

class RandomStream:
    """
    Process-wide pseudo-random stream shared by every stochastic decision.

    Seeded once per sweep combination; ``seed(None)`` seeds from wall-clock
    time, mirroring ``SEED based on time`` in the parameters file.
    """

    def __init__(self, seed: Optional[int] = None):
        self.effective_seed = 0
        self.seed(seed)

    def seed(self, seed: Optional[int] = None) -> int:
        if seed is None:
            seed = int(time.time())
        self.effective_seed = int(seed)
        self._rng = np.random.default_rng(self.effective_seed)
        return self.effective_seed

    def uniform(self) -> float:
        return float(self._rng.random())

    def integer(self, bound: int) -> int:
        """Uniform integer in [0, bound)."""
        if bound <= 0:
            raise ValueError("bound must be positive.")
        return int(self._rng.integers(bound))

    def with_prob(self, p: float) -> int:
        return 1 if self.uniform() < p else 0

    def uniform_array(self, low: float, high: float, shape) -> np.ndarray:
        return self._rng.uniform(low, high, size=shape)

    def graph_seed(self) -> int:
        return int(self._rng.integers(0, 2**31 - 1))


# ==========
# Prototypes
# ==========

def generate_uber_prototype(stream: RandomStream, n_features: int, p_on: float) -> np.ndarray:
    """Each feature is independently 1 with probability ``p_on``, else 0."""
    uber = np.array([stream.with_prob(p_on) for _ in range(n_features)], dtype=np.float64)
    assert uber.shape == (n_features,)
    return uber


def distort_prototype(stream: RandomStream, base: np.ndarray, p_flip: float, p_on: float) -> np.ndarray:
    """
    Regenerate-or-copy distortion, feature by feature in increasing index order:

        out[i] = with_prob(p_on)   with probability p_flip
        out[i] = base[i]           otherwise

    A regenerated feature is drawn afresh, independent of ``base[i]``; it is
    not a bit flip. Used both for agent prototypes (``proto_p_flip``) and for
    momentary exemplars (``item_p_flip``).
    """
    out = np.empty(len(base), dtype=np.float64)
    for i in range(len(base)):
        out[i] = stream.with_prob(p_on) if stream.with_prob(p_flip) else base[i]
    return out


def generate_prototypes(
    stream: RandomStream,
    uber: np.ndarray,
    n_agents: int,
    p_flip: float,
    p_on: float,
) -> np.ndarray:
    prototypes = np.vstack([distort_prototype(stream, uber, p_flip, p_on) for _ in range(n_agents)])
    assert prototypes.shape == (n_agents, len(uber)), "One prototype per agent, one value per feature."
    assert np.all((prototypes == 0.0) | (prototypes == 1.0)), "Prototype features must be binary."
    return prototypes


# ===================
# Social-input policy
# ===================

def _p_constant(tick: int, n_ticks: int, parameter: float) -> float:
    return parameter


def _p_linear(tick: int, n_ticks: int, parameter: float) -> float:
    return tick / n_ticks


def _p_logistic_increasing(tick: int, n_ticks: int, parameter: float) -> float:
    return float(expit(parameter * (tick / n_ticks - 0.5)))


def _p_logistic_decreasing(tick: int, n_ticks: int, parameter: float) -> float:
    return 1.0 - float(expit(parameter * (tick / n_ticks - 0.5)))


def _p_stepped(tick: int, n_ticks: int, parameter: float) -> float:
    # prototype probability 0.75 for the first quarter of the run, 0.1 afterwards
    p_proto = 0.75 if tick < 0.25 * n_ticks else 0.1
    return 1.0 - p_proto


SOCIAL_PROB_ALGORITHMS: Dict[str, Callable[[int, int, float], float]] = {
    "constant": _p_constant,
    "linear": _p_linear,
    "logistic_increasing": _p_logistic_increasing,
    "logistic_decreasing": _p_logistic_decreasing,
    "stepped": _p_stepped,
}


def social_probability(algorithm: str, tick: int, n_ticks: int, parameter: float) -> float:
    """
    Probability that the receiver at ``tick`` trains on the sender's output.

    With x = tick / n_ticks:

        constant              p = parameter
        linear                p = x
        logistic_increasing   p = 1 / (1 + exp(-parameter (x - 0.5)))
        logistic_decreasing   p = 1 - 1 / (1 + exp(-parameter (x - 0.5)))
        stepped               p = 0.25 if x < 0.25 else 0.9
    """
    try:
        fn = SOCIAL_PROB_ALGORITHMS[algorithm]
    except KeyError:
        raise ConfigurationError(
            f"Unknown social_prob_algorithm '{algorithm}'. "
            f"Use one of: {', '.join(SOCIAL_PROB_ALGORITHMS)}."
        ) from None
    return fn(tick, n_ticks, parameter)


def uses_social_input(
    stream: RandomStream, algorithm: str, tick: int, n_ticks: int, parameter: float
) -> bool:
    """One uniform draw per tick; social path iff the draw is below p."""
    p = social_probability(algorithm, tick, n_ticks, parameter)
    return stream.uniform() < p


# =============
# Configuration
# =============

class Topology(str, Enum):
    SMALL_WORLD = "small_world"
    RANDOM_EDGES = "random_edges"
    FIXED = "fixed"


DEFAULT_FIXED_EDGES: Tuple[Tuple[int, int], ...] = ((0, 2), (1, 0), (2, 1))


def _round_half_up(x: float) -> int:
    return int(math.floor(x + 0.5))


@dataclass(frozen=True)
class RunConfiguration:
    """Every parameter governing one run (immutable)."""
    n_agents: int = 100
    n_features: int = 20
    proportion_hidden: float = 0.3
    proto_p_on: float = 0.5
    proto_p_flip: float = 0.2
    item_p_flip: float = 0.1
    social_prob_algorithm: str = "constant"
    social_prob_parameter: float = 0.2
    learning_rate: float = 0.05
    momentum: float = 0.9
    topology: str = "small_world"
    neighborhood: int = 4            # small_world: lattice distance on each side
    prob_rewire: float = 0.10        # small_world
    edge_density: float = 0.05       # random_edges: m = round(density * n_agents^2)
    edges: Tuple[Tuple[int, int], ...] = DEFAULT_FIXED_EDGES  # fixed: (receiver, sender)
    ticks_per_agent: int = 100
    n_ticks_override: Optional[int] = None
    n_runs: int = 2
    seed: Optional[int] = 12345      # None => seeded from wall-clock time
    omit_non_updated: bool = True

    def __post_init__(self):
        if self.n_agents < 1:
            raise ConfigurationError("n_agents must be at least 1.")
        if self.n_features < 1:
            raise ConfigurationError("n_features must be at least 1.")
        if self.n_runs < 1:
            raise ConfigurationError("n_runs must be at least 1.")
        if self.n_ticks < 1:
            raise ConfigurationError("n_ticks must be at least 1.")
        if self.n_hidden < 1:
            raise ConfigurationError(
                f"proportion_hidden={self.proportion_hidden} with n_features={self.n_features} "
                "yields no hidden units."
            )
        for name in ("proto_p_on", "proto_p_flip", "item_p_flip", "prob_rewire", "edge_density"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ConfigurationError(f"{name} must be in [0,1]. Got {value}.")
        if self.social_prob_algorithm not in SOCIAL_PROB_ALGORITHMS:
            raise ConfigurationError(
                f"Unknown social_prob_algorithm '{self.social_prob_algorithm}'. "
                f"Use one of: {', '.join(SOCIAL_PROB_ALGORITHMS)}."
            )
        if self.social_prob_algorithm == "constant" and not 0.0 <= self.social_prob_parameter <= 1.0:
            raise ConfigurationError("constant social_prob_parameter must be in [0,1].")
        try:
            topology = Topology(self.topology)
        except ValueError:
            raise ConfigurationError(
                f"Unknown topology '{self.topology}'. "
                f"Use one of: {', '.join(tp.value for tp in Topology)}."
            ) from None
        if topology is Topology.SMALL_WORLD and self.neighborhood < 1:
            raise ConfigurationError("neighborhood must be at least 1.")
        if topology is Topology.FIXED:
            if not self.edges:
                raise ConfigurationError("fixed topology requires at least one edge.")
            for receiver, sender in self.edges:
                if not (0 <= receiver < self.n_agents and 0 <= sender < self.n_agents):
                    raise ConfigurationError(
                        f"Edge ({receiver}, {sender}) outside [0, {self.n_agents})."
                    )

    @property
    def n_hidden(self) -> int:
        return _round_half_up(self.proportion_hidden * self.n_features)

    @property
    def n_ticks(self) -> int:
        if self.n_ticks_override is not None:
            return int(self.n_ticks_override)
        return self.ticks_per_agent * self.n_agents

    def topology_params(self) -> Dict[str, Any]:
        topology = Topology(self.topology)
        if topology is Topology.SMALL_WORLD:
            return {"neighborhood": self.neighborhood, "prob_rewire": self.prob_rewire}
        if topology is Topology.RANDOM_EDGES:
            return {"edge_density": self.edge_density}
        return {"edges": self.edges}

    def parameter_lines(self) -> List[str]:
        lines = [
            f"n_agents {self.n_agents}",
            f"n_ticks {self.n_ticks}",
            f"n_features {self.n_features}",
            f"proportion_hidden {self.proportion_hidden:f}",
            f"n_hidden {self.n_hidden}",
            f"n_runs {self.n_runs}",
            "SEED based on time" if self.seed is None else f"SEED {self.seed}",
            f"proto_p_on {self.proto_p_on:f}",
            f"proto_p_flip {self.proto_p_flip:f}",
            f"item_p_flip {self.item_p_flip:f}",
            f"social_prob_algorithm {self.social_prob_algorithm}",
            f"social_prob_parameter {self.social_prob_parameter:f}",
            f"learning_rate {self.learning_rate:f}",
            f"momentum {self.momentum:f}",
            f"topology {self.topology}",
        ]
        topology = Topology(self.topology)
        if topology is Topology.SMALL_WORLD:
            lines += [f"neighborhood {self.neighborhood}", f"prob_rewire {self.prob_rewire:f}"]
        elif topology is Topology.RANDOM_EDGES:
            lines.append(f"edge_density {self.edge_density:f}")
        else:
            lines.append(f"n_fixed_edges {len(self.edges)}")
        lines.append(f"omit_non_updated {int(self.omit_non_updated)}")
        return lines

    def summary_fields(self) -> Dict[str, Any]:
        fields = {f.name: getattr(self, f.name) for f in dataclasses.fields(self) if f.name != "edges"}
        fields["n_hidden"] = self.n_hidden
        fields["n_ticks"] = self.n_ticks
        return fields


# ==================
# Connectivity graph
# ==================

class ConnectivityGraph:
    """
    Directed "sender -> receiver can influence" graph over agent ids, frozen per run.

    Edges are kept in a fixed order so that ``random_edge`` picks an edge index
    uniformly from [0, edge_count()). Agents with more connections are thus
    proportionally more likely to take part in a tick, as either party.
    """

    def __init__(self, n_agents: int, edges: Sequence[Tuple[int, int]]):
        self.n_agents = int(n_agents)
        self._edges: List[Tuple[int, int]] = [(int(r), int(s)) for r, s in edges]
        if not self._edges:
            raise CollaboratorError("Connectivity graph has no edges; at least one is required.")
        for receiver, sender in self._edges:
            if not (0 <= receiver < self.n_agents and 0 <= sender < self.n_agents):
                raise CollaboratorError(
                    f"Edge ({receiver}, {sender}) has an endpoint outside [0, {self.n_agents})."
                )
        self.graph = nx.DiGraph()
        self.graph.add_nodes_from(range(self.n_agents))
        self.graph.add_edges_from((s, r) for r, s in self._edges)

    @classmethod
    def build(
        cls,
        topology: str,
        n_agents: int,
        params: Dict[str, Any],
        seed: Optional[int] = None,
    ) -> "ConnectivityGraph":
        try:
            kind = Topology(topology)
        except ValueError:
            raise ConfigurationError(f"Unknown topology '{topology}'.") from None

        if kind is Topology.FIXED:
            return cls(n_agents, params["edges"])

        try:
            if kind is Topology.SMALL_WORLD:
                g = nx.watts_strogatz_graph(
                    n_agents, 2 * int(params["neighborhood"]), float(params["prob_rewire"]), seed=seed
                )
            else:
                m = _round_half_up(float(params["edge_density"]) * n_agents * n_agents)
                g = nx.gnm_random_graph(n_agents, m, seed=seed)
        except nx.NetworkXException as exc:
            raise CollaboratorError(f"Graph generation failed for topology '{topology}': {exc}") from exc

        # Mutual directed graph: every undirected edge u-v becomes u->v then, after
        # all forward edges, v->u.
        undirected = list(g.edges())
        edges = [(v, u) for u, v in undirected] + [(u, v) for u, v in undirected]
        return cls(n_agents, edges)

    def edge_count(self) -> int:
        return len(self._edges)

    def random_edge(self, stream: RandomStream) -> Tuple[int, int]:
        """(receiver, sender) of an edge chosen uniformly by index."""
        return self._edges[stream.integer(len(self._edges))]

    def export_edges(self) -> List[Tuple[int, int]]:
        return list(self._edges)

    def is_bidirectional(self) -> bool:
        return all(self.graph.has_edge(r, s) for r, s in self._edges)

    def release(self):
        self.graph.clear()
        self._edges = []


# ============================
# Agent model (external port)
# ============================

class AgentModelPort(ABC):
    """
    Trainable per-agent model as seen by the simulation.

    Calls are synchronous and issued strictly one agent at a time.
    """

    @abstractmethod
    def create(self, agent_id: int, n_inputs: int, n_hidden: int, n_outputs: int,
               learning_rate: float, momentum: float) -> None:
        ...

    @abstractmethod
    def reset(self, agent_id: int) -> None:
        ...

    @abstractmethod
    def train(self, agent_id: int, inputs: np.ndarray, targets: np.ndarray) -> None:
        ...

    @abstractmethod
    def read_output(self, agent_id: int) -> np.ndarray:
        ...

    @abstractmethod
    def destroy_all(self) -> None:
        ...


@dataclass
class _AgentNet:
    w_ih: np.ndarray
    b_h: np.ndarray
    w_ho: np.ndarray
    b_o: np.ndarray
    learning_rate: float
    momentum: float
    # filled in by clear_momentum()
    dw_ih: Optional[np.ndarray] = None
    db_h: Optional[np.ndarray] = None
    dw_ho: Optional[np.ndarray] = None
    db_o: Optional[np.ndarray] = None
    output: Optional[np.ndarray] = None

    def clear_momentum(self):
        self.dw_ih = np.zeros_like(self.w_ih)
        self.db_h = np.zeros_like(self.b_h)
        self.dw_ho = np.zeros_like(self.w_ho)
        self.db_o = np.zeros_like(self.b_o)
        self.output = np.zeros(self.b_o.shape[0], dtype=np.float64)


class BackpropModelPool(AgentModelPort):
    """
    One small feed-forward network per agent.

    Architecture: inputs -> hidden (logistic) -> outputs (logistic), bias on
    every hidden and output unit. ``reset`` draws all weights uniformly in
    [-init_range, init_range] from the shared stream, so a fixed seed fixes
    every network.

    ``train`` performs one online step of back-propagation on the
    sum-squared error E = 1/2 sum_k (o_k - t_k)^2:

        delta_o = (o - t) o (1 - o)
        delta_h = (W_ho^T delta_o) h (1 - h)
        dW      = -lr * grad + momentum * dW_prev

    The readable output is the one computed by that step's forward pass.
    """

    def __init__(self, stream: RandomStream, init_range: float = 1.0):
        self.stream = stream
        self.init_range = float(init_range)
        self._nets: Dict[int, _AgentNet] = {}

    def _net(self, agent_id: int) -> _AgentNet:
        try:
            return self._nets[agent_id]
        except KeyError:
            raise CollaboratorError(f"No model exists for agent {agent_id}.") from None

    def create(self, agent_id, n_inputs, n_hidden, n_outputs, learning_rate, momentum):
        if agent_id in self._nets:
            raise CollaboratorError(f"Model for agent {agent_id} already exists.")
        if min(n_inputs, n_hidden, n_outputs) < 1:
            raise CollaboratorError(
                f"Cannot allocate a {n_inputs}-{n_hidden}-{n_outputs} network for agent {agent_id}."
            )
        net = _AgentNet(
            w_ih=np.zeros((n_hidden, n_inputs)),
            b_h=np.zeros(n_hidden),
            w_ho=np.zeros((n_outputs, n_hidden)),
            b_o=np.zeros(n_outputs),
            learning_rate=float(learning_rate),
            momentum=float(momentum),
        )
        net.clear_momentum()
        self._nets[agent_id] = net

    def reset(self, agent_id):
        net = self._net(agent_id)
        r = self.init_range
        net.w_ih = self.stream.uniform_array(-r, r, net.w_ih.shape)
        net.b_h = self.stream.uniform_array(-r, r, net.b_h.shape)
        net.w_ho = self.stream.uniform_array(-r, r, net.w_ho.shape)
        net.b_o = self.stream.uniform_array(-r, r, net.b_o.shape)
        net.clear_momentum()

    def train(self, agent_id, inputs, targets):
        net = self._net(agent_id)
        x = np.asarray(inputs, dtype=np.float64)
        target = np.asarray(targets, dtype=np.float64)
        if x.shape != (net.w_ih.shape[1],) or target.shape != (net.w_ho.shape[0],):
            raise CollaboratorError(
                f"Agent {agent_id} expects {net.w_ih.shape[1]} inputs and {net.w_ho.shape[0]} targets."
            )

        # Forward
        h = expit(net.w_ih @ x + net.b_h)
        o = expit(net.w_ho @ h + net.b_o)

        # Backward
        delta_o = (o - target) * o * (1.0 - o)
        delta_h = (net.w_ho.T @ delta_o) * h * (1.0 - h)

        lr, mom = net.learning_rate, net.momentum
        net.dw_ho = -lr * np.outer(delta_o, h) + mom * net.dw_ho
        net.db_o = -lr * delta_o + mom * net.db_o
        net.dw_ih = -lr * np.outer(delta_h, x) + mom * net.dw_ih
        net.db_h = -lr * delta_h + mom * net.db_h

        net.w_ho += net.dw_ho
        net.b_o += net.db_o
        net.w_ih += net.dw_ih
        net.b_h += net.db_h

        net.output = o

    def read_output(self, agent_id):
        return self._net(agent_id).output.copy()

    def destroy_all(self):
        self._nets.clear()

    def __len__(self):
        return len(self._nets)


# =============
# Diffusion run
# =============

class RunState(Enum):
    CREATED = "created"
    INITIALIZING = "initializing"
    PRETRAINING = "pretraining"
    ITERATING = "iterating"
    CONCLUDING = "concluding"
    DONE = "done"


@dataclass
class Population:
    uber_prototype: np.ndarray
    prototypes: np.ndarray   # (n_agents, n_features), binary
    outputs: np.ndarray      # (n_agents, n_features), latest output per agent


RUN_METRICS = (
    "social_fraction",
    "dist_to_prototype",
    "dist_to_uber",
    "output_dispersion",
)


def _fmt(values: Sequence[float], spec: str = ".6f") -> str:
    return " ".join(format(float(v), spec) for v in values)


class DiffusionRun:
    """
    One complete simulation run over a fresh population and graph.

    Owns its population and graph; the model port and random stream are
    shared process-wide and passed in. Any exception aborts the run; models
    are still destroyed and files closed, but the run never reaches ``DONE``.
    """

    def __init__(
        self,
        config: RunConfiguration,
        model: AgentModelPort,
        stream: RandomStream,
        output_dir: str = ".",
        run_num: int = 0,
        verbose: bool = False,
    ):
        self.config = config
        self.model = model
        self.stream = stream
        self.output_dir = output_dir
        self.run_num = int(run_num)
        self.verbose = bool(verbose)

        self.state = RunState.CREATED
        self.population: Optional[Population] = None
        self.graph: Optional[ConnectivityGraph] = None
        self.n_social = 0
        self.n_records = 0

    def path(self, kind: str) -> str:
        return os.path.join(self.output_dir, f"{kind}_{self.run_num}.txt")

    def _advance(self, state: RunState):
        order = list(RunState)
        assert order.index(state) == order.index(self.state) + 1, \
            f"Illegal transition {self.state.value} -> {state.value}."
        self.state = state

    # -----------------------------
    # Lifecycle
    # -----------------------------

    def execute(self) -> Dict[str, float]:
        cfg = self.config
        try:
            with open(self.path("history"), "w") as history:
                history.write(
                    f"<tick#> <agent#> <1 if receiving agent> <sending agent#> "
                    f"<{cfg.n_features} inputs> <{cfg.n_features} outputs>\n\n"
                )
                self.initialize()
                self.pretrain(history)
                self.iterate(history)
        finally:
            self.conclude()
        self._advance(RunState.DONE)
        print(f"runNum {self.run_num} completed")
        return self.summary()

    def initialize(self):
        self._advance(RunState.INITIALIZING)
        cfg = self.config

        if cfg.n_ticks < cfg.n_agents:
            warnings.warn(
                f"n_ticks={cfg.n_ticks} < n_agents={cfg.n_agents}: some agents will never be updated.",
                RuntimeWarning,
            )

        uber = generate_uber_prototype(self.stream, cfg.n_features, cfg.proto_p_on)
        prototypes = generate_prototypes(
            self.stream, uber, cfg.n_agents, cfg.proto_p_flip, cfg.proto_p_on
        )
        self.population = Population(
            uber_prototype=uber,
            prototypes=prototypes,
            outputs=np.zeros((cfg.n_agents, cfg.n_features), dtype=np.float64),
        )
        self._store_prototypes()

        self.graph = ConnectivityGraph.build(
            cfg.topology, cfg.n_agents, cfg.topology_params(), seed=self.stream.graph_seed()
        )
        print(f"there are {self.graph.edge_count()} agent connections")
        self._store_connections()

        for a in range(cfg.n_agents):
            self.model.create(a, cfg.n_features, cfg.n_hidden, cfg.n_features,
                              cfg.learning_rate, cfg.momentum)
            self.model.reset(a)

        self._store_parameters()

    def pretrain(self, history: IO[str]):
        """One auto-associative training step per agent on a distorted exemplar."""
        self._advance(RunState.PRETRAINING)
        cfg = self.config
        pop = self.population

        if self.verbose:
            print("outputs of PRETRAINING (one epoch):")
        for a in range(cfg.n_agents):
            exemplar = distort_prototype(self.stream, pop.prototypes[a], cfg.item_p_flip, cfg.proto_p_on)
            self.model.train(a, exemplar, exemplar)
            pop.outputs[a] = self._read_output(a)

            history.write(f"0 {a} - - {_fmt(exemplar)} {_fmt(pop.outputs[a])}\n")
            self.n_records += 1
            if self.verbose:
                print(f"Agent {a}: {_fmt(pop.outputs[a], '.2f')}")

    def iterate(self, history: IO[str]):
        self._advance(RunState.ITERATING)
        cfg = self.config
        pop = self.population
        n_ticks = cfg.n_ticks
        blank_inputs = " ".join(["-"] * cfg.n_features)

        for tick in range(1, n_ticks + 1):
            receiver, sender = self.graph.random_edge(self.stream)
            social = uses_social_input(
                self.stream, cfg.social_prob_algorithm, tick, n_ticks, cfg.social_prob_parameter
            )
            if social:
                inputs = pop.outputs[sender].copy()
            else:
                inputs = distort_prototype(self.stream, pop.prototypes[receiver],
                                           cfg.item_p_flip, cfg.proto_p_on)
            self.n_social += int(social)

            self.model.train(receiver, inputs, inputs)
            pop.outputs[receiver] = self._read_output(receiver)

            if self.verbose:
                if social:
                    print(f"tick {tick}: agent {receiver} receives output of agent {sender}")
                else:
                    print(f"tick {tick}: agent {receiver} uses distortion of its prototype")
                print(f"  outputs {receiver}: {_fmt(pop.outputs[receiver], '.2f')}")

            source = str(sender) if social else "P"
            receiver_row = f"{tick} {receiver} 1 {source} {_fmt(inputs)} {_fmt(pop.outputs[receiver])}\n"
            if cfg.omit_non_updated:
                history.write(receiver_row)
                self.n_records += 1
                continue

            for a in range(cfg.n_agents):
                if a == receiver:
                    history.write(receiver_row)
                else:
                    history.write(f"{tick} {a} 0 - {blank_inputs} {_fmt(pop.outputs[a])}\n")
            self.n_records += cfg.n_agents

    def conclude(self):
        self.state = RunState.CONCLUDING
        self.model.destroy_all()
        if self.graph is not None:
            self.graph.release()

    # -----------------------------
    # Helpers
    # -----------------------------

    def _read_output(self, agent_id: int) -> np.ndarray:
        out = np.asarray(self.model.read_output(agent_id), dtype=np.float64)
        if out.shape != (self.config.n_features,):
            raise CollaboratorError(
                f"Model for agent {agent_id} returned {out.shape[0] if out.ndim else 0} outputs, "
                f"expected {self.config.n_features}."
            )
        return out

    def summary(self) -> Dict[str, float]:
        pop = self.population
        outputs = pop.outputs
        return {
            "social_fraction": self.n_social / self.config.n_ticks,
            "dist_to_prototype": float(np.mean(np.abs(outputs - pop.prototypes))),
            "dist_to_uber": float(np.mean(np.abs(outputs - pop.uber_prototype))),
            "output_dispersion": float(np.mean(np.abs(outputs - outputs.mean(axis=0)))),
        }

    # -----------------------------
    # Persistence
    # -----------------------------

    def _store_prototypes(self):
        pop = self.population
        with open(self.path("prototypes"), "w") as f:
            f.write(f"U {_fmt(pop.uber_prototype, '.2f')}\n")
            for a, proto in enumerate(pop.prototypes):
                f.write(f"{a} {_fmt(proto, '.2f')}\n")

    def _store_connections(self):
        with open(self.path("connections"), "w") as f:
            for receiver, sender in self.graph.export_edges():
                f.write(f"{receiver} {sender}\n")

    def _store_parameters(self):
        lines = self.config.parameter_lines()
        lines += [
            f"numpy_version {np.__version__}",
            f"networkx_version {nx.__version__}",
            f"pandas_version {pd.__version__}",
            f"scipy_version {scipy.__version__}",
        ]
        with open(self.path("parameters"), "w") as f:
            f.write("\n".join(lines) + "\n")

        cfg = self.config
        print(
            f"runNum {self.run_num}: n_agents {cfg.n_agents}, n_ticks {cfg.n_ticks}, "
            f"n_features {cfg.n_features}, n_hidden {cfg.n_hidden}, "
            f"social {cfg.social_prob_algorithm}({cfg.social_prob_parameter:g})"
        )
        if self.verbose:
            for line in lines:
                print(line)


def read_history(path: str) -> pd.DataFrame:
    """
    Load a history file; ``-`` fields become missing values.

    Columns: tick, agent, receiver, sender, in_0..in_{n-1}, out_0..out_{n-1}.
    ``sender`` is kept as text so the ``P`` marker survives.
    """
    with open(path) as f:
        header = f.readline()
    match = re.search(r"<(\d+) inputs>", header)
    if match is None:
        raise ValueError(f"{path} does not start with a history header.")
    n = int(match.group(1))
    columns = (
        ["tick", "agent", "receiver", "sender"]
        + [f"in_{i}" for i in range(n)]
        + [f"out_{i}" for i in range(n)]
    )
    return pd.read_csv(
        path,
        sep=" ",
        skiprows=1,
        header=None,
        names=columns,
        na_values=["-"],
        keep_default_na=False,
        dtype={"sender": str},
    )


# ============
# Grid parsing
# ============

def parse_list(s: Any, cast):
    if s is None:
        return []
    if isinstance(s, (int, float)):
        return [cast(s)]
    if isinstance(s, str):
        toks = [tok for tok in re.split(r"[,\s]+", s.strip()) if tok != ""]
        return [cast(tok) for tok in toks] if toks else []
    return [cast(s)]


def parse_seed(s: str) -> Optional[int]:
    """``time`` or a negative number selects a wall-clock seed."""
    if str(s).strip().lower() == "time":
        return None
    value = int(s)
    return None if value < 0 else value


def parse_edges(s: str) -> Tuple[Tuple[int, int], ...]:
    """'0-2,1-0,2-1' -> ((0, 2), (1, 0), (2, 1)) as (receiver, sender)."""
    edges = []
    for tok in parse_list(s, str):
        parts = tok.split("-")
        if len(parts) != 2:
            raise ConfigurationError(f"Invalid edge '{tok}'. Expected 'receiver-sender'.")
        edges.append((int(parts[0]), int(parts[1])))
    return tuple(edges)


def sanitize(s: Any) -> str:
    s = str(s).replace("/", "-").replace("\\", "-")
    return re.sub(r"[^A-Za-z0-9_.\-+]", "", s)


# ================
# Parameter sweep
# ================

SHORT_NAMES = {
    "n_agents": "agents",
    "n_features": "features",
    "proportion_hidden": "phidden",
    "proto_p_on": "protopOn",
    "proto_p_flip": "protopFlip",
    "item_p_flip": "itempFlip",
    "social_prob_algorithm": "socialpAlgo",
    "social_prob_parameter": "socialpParam",
    "learning_rate": "lrate",
    "momentum": "momentum",
    "topology": "topology",
    "neighborhood": "nbhd",
    "prob_rewire": "rewire",
    "edge_density": "density",
    "ticks_per_agent": "tpa",
    "n_ticks_override": "ticks",
    "n_runs": "runs",
    "seed": "seed",
    "omit_non_updated": "omit",
    "edges": "edges",
}


def format_param_value(value: Any, name: Optional[str] = None) -> str:
    if value is None:
        return "time" if name == "seed" else "auto"
    if isinstance(value, (tuple, list)) and all(isinstance(e, (tuple, list)) for e in value):
        # edge list: '0-2.1-0.2-1'
        return ".".join("-".join(str(int(v)) for v in edge) for edge in value)
    if isinstance(value, bool):
        return str(int(value))
    if isinstance(value, (int, np.integer)):
        return str(int(value))
    if isinstance(value, (float, np.floating)):
        value = float(value)
        # three decimals unless that would lose precision
        return f"{value:.3f}" if round(value, 3) == value else sanitize(repr(value))
    return sanitize(value)


def combination_dirname(varying: Dict[str, Any]) -> str:
    """'agents100_phidden0.300' for the varying parameters only; '' if none vary."""
    return "_".join(
        f"{SHORT_NAMES.get(name, name)}{format_param_value(value, name)}"
        for name, value in varying.items()
    )


def mean_ci(series) -> Tuple[float, float, int, float]:
    vals = np.array([v for v in series if pd.notna(v)], dtype=float)
    n = len(vals)
    if n == 0:
        return (np.nan, np.nan, 0, np.nan)
    m = float(np.mean(vals))
    sd = float(np.std(vals, ddof=1)) if n > 1 else 0.0
    ci = float(t.ppf(0.975, n - 1) * sd / math.sqrt(n)) if n > 1 else float("nan")
    return (m, sd, n, ci)


def aggregate_runs(summary_df: pd.DataFrame) -> pd.DataFrame:
    """Mean, sd, n and t-based 95% CI of each run metric, per combination."""
    rows = []
    if summary_df.empty:
        return pd.DataFrame(rows)
    for combo, g in summary_df.groupby("combination", sort=False):
        row = {"combination": combo, "n_runs": len(g)}
        for name in RUN_METRICS:
            m, sd, n, ci = mean_ci(g[name])
            row[name] = m
            row[f"{name}_sd"] = sd
            row[f"{name}_n"] = n
            row[f"{name}_ci95"] = ci
        rows.append(row)
    return pd.DataFrame(rows)


class ParameterSweep:
    """
    Runs every combination of candidate values, one after another.

    ``grid`` maps RunConfiguration field names to ordered candidate lists
    (a singleton list for a fixed parameter); parameters not in the grid take
    their value from ``base_config``. For each combination:

    1. derive n_hidden and n_ticks (RunConfiguration properties),
    2. if more than one combination exists, use the sub-directory named
       after the varying parameters, otherwise the base directory,
    3. re-seed the shared stream from the configured seed,
    4. execute ``n_runs`` DiffusionRuns with numbered files.

    A CollaboratorError aborts the sweep unless ``keep_going`` is set, in
    which case the failing combination is reported and skipped.
    """

    def __init__(
        self,
        base_config: Optional[RunConfiguration] = None,
        grid: Optional[Dict[str, Sequence[Any]]] = None,
        output_dir: str = ".",
        model_factory: Callable[[RandomStream], AgentModelPort] = BackpropModelPool,
        keep_going: bool = False,
        verbose: bool = False,
    ):
        self.base_config = base_config or RunConfiguration()
        self.grid: Dict[str, List[Any]] = {k: list(v) for k, v in (grid or {}).items()}
        self.output_dir = output_dir
        self.model_factory = model_factory
        self.keep_going = bool(keep_going)
        self.verbose = bool(verbose)

        field_names = {f.name for f in dataclasses.fields(RunConfiguration)}
        for name, values in self.grid.items():
            if name not in field_names:
                raise ConfigurationError(f"'{name}' is not a run parameter.")
            if not values:
                raise ConfigurationError(f"No values provided for grid dimension '{name}'.")
            if len(set(map(repr, values))) != len(values):
                raise ConfigurationError(f"Duplicate candidate values for '{name}': {values}.")

    def varying(self) -> List[str]:
        return [name for name, values in self.grid.items() if len(values) > 1]

    def combinations(self) -> List[Dict[str, Any]]:
        names = list(self.grid)
        return [dict(zip(names, values)) for values in itertools.product(*self.grid.values())]

    def plan(self) -> List[Tuple[RunConfiguration, str]]:
        """
        (config, sub-directory) per combination; validates everything up front.

        Names that still clash after sanitizing get a ``_c<index>`` suffix
        (1-based combination index), so every combination has its own directory.
        """
        combos = self.combinations()
        varying = self.varying()
        plan = []
        for combo in combos:
            config = dataclasses.replace(self.base_config, **combo)
            subdir = combination_dirname({k: combo[k] for k in varying}) if len(combos) > 1 else ""
            plan.append((config, subdir))

        counts = Counter(subdir for _, subdir in plan)
        return [
            (config, f"{subdir}_c{idx}" if counts[subdir] > 1 else subdir)
            for idx, (config, subdir) in enumerate(plan, start=1)
        ]

    def run(self) -> pd.DataFrame:
        plan = self.plan()
        os.makedirs(self.output_dir, exist_ok=True)

        stream = RandomStream()
        model = self.model_factory(stream)
        summary_rows = []

        for combo_idx, (config, subdir) in enumerate(plan, start=1):
            outdir = os.path.join(self.output_dir, subdir) if subdir else self.output_dir
            os.makedirs(outdir, exist_ok=True)
            stream.seed(config.seed)

            rows = []
            try:
                for run_num in range(config.n_runs):
                    run = DiffusionRun(config, model, stream, outdir, run_num, verbose=self.verbose)
                    metrics = run.execute()
                    rows.append(
                        {
                            "combination": subdir or ".",
                            "outdir": outdir,
                            "run": run_num,
                            **config.summary_fields(),
                            "effective_seed": stream.effective_seed,
                            **metrics,
                        }
                    )
            except CollaboratorError as exc:
                if not self.keep_going:
                    raise
                warnings.warn(
                    f"Combination {subdir or '.'} aborted: {exc}. Continuing with the next one.",
                    RuntimeWarning,
                )
                continue

            summary_rows.extend(rows)
            print(f"[{combo_idx}] Completed combination: {subdir or '.'}")

        summary_df = pd.DataFrame(summary_rows)
        summary_df.to_csv(os.path.join(self.output_dir, "sweep_runs_summary.csv"), index=False)
        aggregate_runs(summary_df).to_csv(
            os.path.join(self.output_dir, "sweep_aggregate.csv"), index=False
        )
        print("\n=== Sweep complete ===")
        print("Output directory:", self.output_dir)
        print(f"Total combinations: {len(plan)}, total runs: {len(summary_rows)}")
        return summary_df


# ============
# Entry point
# ============

# (flag attribute, RunConfiguration field, cast)
GRID_ARGS = (
    ("n_agents", "n_agents", int),
    ("n_features", "n_features", int),
    ("proportion_hidden", "proportion_hidden", float),
    ("proto_p_on", "proto_p_on", float),
    ("proto_p_flip", "proto_p_flip", float),
    ("item_p_flip", "item_p_flip", float),
    ("social_prob_algorithm", "social_prob_algorithm", str),
    ("social_prob_parameter", "social_prob_parameter", float),
    ("learning_rate", "learning_rate", float),
    ("momentum", "momentum", float),
    ("topology", "topology", str),
    ("neighborhood", "neighborhood", int),
    ("prob_rewire", "prob_rewire", float),
    ("edge_density", "edge_density", float),
    ("ticks_per_agent", "ticks_per_agent", int),
    ("n_ticks", "n_ticks_override", int),
    ("seed", "seed", parse_seed),
)


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Social diffusion of learned representations among networked neural agents."
    )
    # All as strings to allow comma-separated lists
    p.add_argument("--n-agents", type=str, help="Default 100.")
    p.add_argument("--n-features", type=str, help="Default 20.")
    p.add_argument("--proportion-hidden", type=str,
                   help="Hidden units = round(proportion * n_features). Default 0.3.")
    p.add_argument("--proto-p-on", type=str, help="Default 0.5.")
    p.add_argument("--proto-p-flip", type=str, help="Default 0.2.")
    p.add_argument("--item-p-flip", type=str, help="Default 0.1.")
    p.add_argument(
        "--social-prob-algorithm",
        type=str,
        help=f"One or more of: {', '.join(SOCIAL_PROB_ALGORITHMS)}. Default constant.",
    )
    p.add_argument("--social-prob-parameter", type=str,
                   help="Constant probability or logistic slope. Default 0.2.")
    p.add_argument("--learning-rate", type=str, help="Default 0.05.")
    p.add_argument("--momentum", type=str, help="Default 0.9.")
    p.add_argument("--topology", type=str,
                   help="small_world, random_edges or fixed. Default small_world.")
    p.add_argument("--neighborhood", type=str, help="small_world lattice distance. Default 4.")
    p.add_argument("--prob-rewire", type=str, help="small_world rewiring probability. Default 0.10.")
    p.add_argument("--edge-density", type=str,
                   help="random_edges: round(density * n_agents^2) edges. Default 0.05.")
    p.add_argument("--edges", type=str,
                   help="fixed topology edges as receiver-sender pairs, e.g. '0-2,1-0,2-1'.")
    p.add_argument("--ticks-per-agent", type=str, help="n_ticks = ticks_per_agent * n_agents. Default 100.")
    p.add_argument("--n-ticks", type=str, help="Explicit tick count (overrides --ticks-per-agent).")
    p.add_argument("--n-runs", type=int, default=None, help="Runs per combination. Default 2.")
    p.add_argument("--seed", type=str, help="Integer seed(s); 'time' or negative for wall-clock seeding.")

    p.add_argument("--outdir", type=str, default=".")
    p.add_argument("--full-history", action="store_true",
                   help="Log every agent at every tick instead of only the receiver.")
    p.add_argument("--keep-going", action="store_true",
                   help="Skip a combination whose run fails instead of aborting the sweep.")
    p.add_argument("--verbose", action="store_true", help="Per-tick trace on stdout.")
    return p


def parse_args(argv=None) -> argparse.Namespace:
    # unknown flags are errors
    return build_arg_parser().parse_args(argv)


def config_from_args(args: argparse.Namespace) -> Tuple[RunConfiguration, Dict[str, List[Any]]]:
    overrides: Dict[str, Any] = {"omit_non_updated": not args.full_history}
    if args.n_runs is not None:
        overrides["n_runs"] = args.n_runs
    if args.edges is not None:
        overrides["edges"] = parse_edges(args.edges)

    grid: Dict[str, List[Any]] = {}
    for attr, field_name, cast in GRID_ARGS:
        values = parse_list(getattr(args, attr), cast)
        if values:
            grid[field_name] = values

    # Base config must validate on its own, so seed it with the first candidate of each dimension.
    base = RunConfiguration(**{**{k: v[0] for k, v in grid.items()}, **overrides})
    return base, grid


def main(argv=None):
    start = time.time()
    args = parse_args(argv)
    base, grid = config_from_args(args)

    sweep = ParameterSweep(
        base,
        grid,
        output_dir=args.outdir,
        keep_going=args.keep_going,
        verbose=args.verbose,
    )
    summary_df = sweep.run()
    print(f"program took {time.time() - start:.3f} seconds")
    return summary_df


if __name__ == "__main__":
    main()
