"""
tests/test_sweep.py - Parameter sweep enumeration, output isolation and summaries
"""

import dataclasses
import filecmp

import pandas as pd
import pytest

from conftest import FailingCreateModelPort, IdentityModelPort
from social_diffusion import (
    CollaboratorError,
    ConfigurationError,
    ParameterSweep,
    RunConfiguration,
    combination_dirname,
    format_param_value,
)

RUN_FILES = ("parameters", "prototypes", "connections", "history")


@pytest.fixture
def base_config():
    return RunConfiguration(
        n_agents=4,
        n_features=4,
        proportion_hidden=0.5,
        topology="fixed",
        edges=((0, 1), (1, 0), (2, 3), (3, 2), (1, 2), (2, 1)),
        n_ticks_override=8,
        n_runs=1,
        seed=21,
    )


class TestNaming:

    def test_short_names_and_formats(self):
        assert combination_dirname({"n_agents": 100, "proportion_hidden": 0.3}) == "agents100_phidden0.300"
        assert combination_dirname({"social_prob_parameter": 0.2}) == "socialpParam0.200"
        assert combination_dirname({}) == ""

    def test_close_values_do_not_collide(self):
        assert format_param_value(0.1001) != format_param_value(0.1002)

    def test_time_seed_name(self):
        assert combination_dirname({"seed": None}) == "seedtime"

    def test_unset_value_outside_seed_is_auto(self):
        assert combination_dirname({"n_ticks_override": None}) == "ticksauto"

    def test_edge_lists_keep_their_structure(self):
        assert combination_dirname({"edges": ((0, 2), (1, 0), (2, 1))}) == "edges0-2.1-0.2-1"
        assert format_param_value(((1, 10), (2, 3))) != format_param_value(((11, 0), (2, 3)))

    def test_distinct_edge_candidates_get_distinct_directories(self, base_config):
        config = dataclasses.replace(base_config, n_agents=12, n_ticks_override=12)
        sweep = ParameterSweep(config, {"edges": [((1, 10), (2, 3)), ((11, 0), (2, 3))]})
        assert [subdir for _, subdir in sweep.plan()] == ["edges1-10.2-3", "edges11-0.2-3"]

    def test_clashing_names_get_index_suffix(self, base_config):
        # same edges as tuple and as list: distinct candidates, identical names
        sweep = ParameterSweep(base_config, {"edges": [((0, 1), (1, 0)), [[0, 1], [1, 0]]]})
        subdirs = [subdir for _, subdir in sweep.plan()]
        assert subdirs == ["edges0-1.1-0_c1", "edges0-1.1-0_c2"]


class TestEnumeration:

    def test_cartesian_product(self, base_config):
        sweep = ParameterSweep(base_config, {"n_features": [4, 6], "item_p_flip": [0.1, 0.2, 0.3]})
        combos = sweep.combinations()
        assert len(combos) == 6
        assert combos[0] == {"n_features": 4, "item_p_flip": 0.1}
        assert combos[-1] == {"n_features": 6, "item_p_flip": 0.3}

    def test_dependent_quantities(self, base_config):
        sweep = ParameterSweep(
            base_config,
            {"n_agents": [4, 8], "proportion_hidden": [0.3], "n_ticks_override": [None]},
        )
        configs = [config for config, _ in sweep.plan()]
        assert [c.n_ticks for c in configs] == [400, 800]
        assert [c.n_hidden for c in configs] == [1, 1]

    def test_unknown_parameter(self, base_config):
        with pytest.raises(ConfigurationError):
            ParameterSweep(base_config, {"n_aliens": [1, 2]})

    def test_empty_candidates(self, base_config):
        with pytest.raises(ConfigurationError):
            ParameterSweep(base_config, {"n_agents": []})

    def test_duplicate_candidates(self, base_config):
        with pytest.raises(ConfigurationError):
            ParameterSweep(base_config, {"n_agents": [4, 4]})

    def test_invalid_combination_fails_before_any_output(self, base_config, tmp_path):
        sweep = ParameterSweep(
            base_config,
            {"social_prob_algorithm": ["constant", "bogus"]},
            output_dir=str(tmp_path / "out"),
            model_factory=IdentityModelPort,
        )
        with pytest.raises(ConfigurationError):
            sweep.run()
        assert not (tmp_path / "out").exists()


class TestExecution:

    def test_two_by_two_grid(self, base_config, tmp_path):
        sweep = ParameterSweep(
            base_config,
            {"n_features": [4, 6], "social_prob_parameter": [0.2, 0.8]},
            output_dir=str(tmp_path),
            model_factory=IdentityModelPort,
        )
        summary = sweep.run()
        subdirs = sorted(p.name for p in tmp_path.iterdir() if p.is_dir())
        assert subdirs == [
            "features4_socialpParam0.200",
            "features4_socialpParam0.800",
            "features6_socialpParam0.200",
            "features6_socialpParam0.800",
        ]
        for name in subdirs:
            for kind in RUN_FILES:
                assert (tmp_path / name / f"{kind}_0.txt").exists()
        assert len(summary) == 4

    def test_single_combination_uses_base_dir(self, base_config, tmp_path):
        sweep = ParameterSweep(base_config, {"n_features": [4]}, output_dir=str(tmp_path),
                               model_factory=IdentityModelPort)
        sweep.run()
        assert not any(p.is_dir() for p in tmp_path.iterdir())
        for kind in RUN_FILES:
            assert (tmp_path / f"{kind}_0.txt").exists()

    def test_repeated_runs_numbered(self, base_config, tmp_path):
        config = dataclasses.replace(base_config, n_runs=3)
        ParameterSweep(config, output_dir=str(tmp_path), model_factory=IdentityModelPort).run()
        for k in range(3):
            for kind in RUN_FILES:
                assert (tmp_path / f"{kind}_{k}.txt").exists()

    def test_each_combination_reseeded_identically(self, base_config, tmp_path):
        # learning rate does not touch the draw sequence before the prototypes are written
        ParameterSweep(
            base_config,
            {"learning_rate": [0.05, 0.1]},
            output_dir=str(tmp_path),
            model_factory=IdentityModelPort,
        ).run()
        a = tmp_path / "lrate0.050"
        b = tmp_path / "lrate0.100"
        assert filecmp.cmp(a / "prototypes_0.txt", b / "prototypes_0.txt", shallow=False)
        assert filecmp.cmp(a / "history_0.txt", b / "history_0.txt", shallow=False)

    def test_runs_within_combination_differ(self, base_config, tmp_path):
        config = dataclasses.replace(base_config, n_runs=2, n_features=12, proportion_hidden=0.25)
        ParameterSweep(config, output_dir=str(tmp_path), model_factory=IdentityModelPort).run()
        assert not filecmp.cmp(tmp_path / "prototypes_0.txt", tmp_path / "prototypes_1.txt",
                               shallow=False)

    def test_summary_tables(self, base_config, tmp_path):
        config = dataclasses.replace(base_config, n_runs=2)
        ParameterSweep(
            config,
            {"item_p_flip": [0.1, 0.2]},
            output_dir=str(tmp_path),
            model_factory=IdentityModelPort,
        ).run()
        runs = pd.read_csv(tmp_path / "sweep_runs_summary.csv")
        agg = pd.read_csv(tmp_path / "sweep_aggregate.csv")
        assert len(runs) == 4
        assert set(runs["combination"]) == {"itempFlip0.100", "itempFlip0.200"}
        assert len(agg) == 2
        assert (agg["n_runs"] == 2).all()
        assert "social_fraction_ci95" in agg.columns


class TestFailures:

    def test_collaborator_error_aborts_sweep(self, base_config, tmp_path):
        sweep = ParameterSweep(
            base_config,
            {"n_features": [4, 5]},
            output_dir=str(tmp_path),
            model_factory=FailingCreateModelPort,
        )
        with pytest.raises(CollaboratorError):
            sweep.run()
        assert (tmp_path / "features4" / "history_0.txt").exists()

    def test_keep_going_skips_failed_combination(self, base_config, tmp_path):
        sweep = ParameterSweep(
            base_config,
            {"n_features": [5, 4]},
            output_dir=str(tmp_path),
            model_factory=FailingCreateModelPort,
            keep_going=True,
        )
        with pytest.warns(RuntimeWarning, match="features5"):
            summary = sweep.run()
        assert list(summary["combination"]) == ["features4"]
        assert (tmp_path / "features4" / "history_0.txt").exists()
