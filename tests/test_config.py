"""Tests for spn_genedrive.config — configuration loading and validation."""

from pathlib import Path

import pytest
import yaml

from spn_genedrive.config import (
    EpiSection,
    LifecycleSection,
    SimulationConfig,
    SimulationSection,
    deep_merge,
    default_config,
    load_config,
    params_from_config,
    validate_config,
)
from spn_genedrive.events import EventRecord
from spn_genedrive.types import ConfigError, EpiModel, NodeType, SamplerKind


# ── deep_merge tests ──────────────────────────────────────────────────

class TestDeepMerge:
    def test_simple_override(self):
        assert deep_merge({'a': 1, 'b': 2}, {'b': 3}) == {'a': 1, 'b': 3}

    def test_nested_merge(self):
        base = {'x': {'a': 1, 'b': 2}, 'y': 10}
        result = deep_merge(base, {'x': {'b': 3, 'c': 4}})
        assert result == {'x': {'a': 1, 'b': 3, 'c': 4}, 'y': 10}

    def test_override_dict_with_scalar(self):
        assert deep_merge({'a': {'nested': 1}}, {'a': 'replaced'}) == {'a': 'replaced'}


# ── default_config tests ─────────────────────────────────────────────

class TestDefaultConfig:
    def test_creates_valid_config(self):
        config = default_config()
        assert isinstance(config, SimulationConfig)
        assert config.model is EpiModel.LIFECYCLE
        assert config.sampler is SamplerKind.ODE

    def test_default_values(self):
        config = default_config()
        assert config.simulation.seed == 42
        assert config.lifecycle.nE == 2
        assert config.lifecycle.nu == pytest.approx(6.0)
        assert config.epi.nEIP == 3

    def test_single_node_types(self):
        config = default_config()
        assert config.node_types() == [NodeType.MOSQUITO]
        config.epi.model = 'SIS'
        assert config.node_types() == [NodeType.BOTH]
        assert not config.is_network


# ── YAML loading tests ───────────────────────────────────────────────

class TestLoadConfig:
    def test_load_from_yaml(self, tmp_path):
        content = {
            'simulation': {'seed': 99, 'tmax': 50.0, 'sampler': 'tau'},
            'lifecycle': {'NF': 200.0, 'unknown_key': 1},
        }
        path = tmp_path / "test.yaml"
        path.write_text(yaml.dump(content))

        config = load_config(path)
        assert config.simulation.seed == 99
        assert config.sampler is SamplerKind.TAU
        assert config.lifecycle.NF == 200.0
        # unspecified sections get defaults
        assert config.epi.model == 'lifecycle'

    def test_scenario_and_sweep_overrides(self, tmp_path):
        base = tmp_path / "base.yaml"
        scen = tmp_path / "scenario.yaml"
        base.write_text(yaml.dump({'lifecycle': {'muL': 0.15, 'beta': 16.0}}))
        scen.write_text(yaml.dump({'lifecycle': {'muL': 0.2}}))

        config = load_config(base, scenario_path=scen,
                             sweep_overrides={'lifecycle': {'beta': 20.0}})
        assert config.lifecycle.muL == 0.2
        assert config.lifecycle.beta == 20.0

    def test_events_and_batch_migration(self, tmp_path):
        content = {
            'epi': {'model': 'SIS'},
            'network': {'node_types': ['b', 'b'], 'routing': [[0, 1], [1, 0]]},
            'events': [{'var': 'M_aa_1', 'time': 5.0, 'value': 10.0}],
            'batch_migration': [{'time': 3.0, 'from_node': 0, 'to_node': 1,
                                 'fraction': 0.5}],
        }
        path = tmp_path / "net.yaml"
        path.write_text(yaml.dump(content))
        config = load_config(path)
        assert config.events[0].var == 'M_aa_1'
        assert config.events[0].method == 'add'
        assert config.batch_migration[0].stages == ['U', 'F', 'M']
        assert config.is_network

    def test_file_not_found(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nonexistent.yaml")

    def test_load_real_default_yaml(self):
        path = Path(__file__).parent.parent / "configs" / "default.yaml"
        config = load_config(path)
        assert config.simulation.seed == 42
        assert config.simulation.tmax == 365.0
        assert config.lifecycle.nL == 3


# ── Validation tests ──────────────────────────────────────────────────

class TestValidation:
    def test_unknown_sampler(self):
        config = default_config()
        config.simulation.sampler = 'euler'
        with pytest.raises(ConfigError, match="simulation.sampler"):
            validate_config(config)

    def test_config_error_is_value_error(self):
        config = default_config()
        config.simulation.sampler = 'euler'
        with pytest.raises(ValueError):
            validate_config(config)

    def test_time_ordering(self):
        config = default_config()
        config.simulation.tmax = -1.0
        with pytest.raises(ConfigError, match="tmax"):
            validate_config(config)

    def test_dt_stoch_not_above_dt(self):
        config = default_config()
        config.simulation.dt_stoch = 2.0
        with pytest.raises(ConfigError, match="dt_stoch"):
            validate_config(config)

    def test_shape_must_be_integer(self):
        config = default_config()
        config.lifecycle.nL = 2.5
        with pytest.raises(ConfigError, match="lifecycle.nL"):
            validate_config(config)

    def test_negative_rate(self):
        config = default_config()
        config.lifecycle.muE = -0.1
        with pytest.raises(ConfigError, match="lifecycle.muE"):
            validate_config(config)

    def test_lifecycle_network_rejects_human_nodes(self):
        config = default_config()
        config.network.node_types = ['m', 'b']
        with pytest.raises(ConfigError, match="mosquito"):
            validate_config(config)

    def test_routing_must_be_square(self):
        config = default_config()
        config.network.node_types = ['m', 'm']
        config.network.routing = [[0, 1, 0], [1, 0, 0]]
        with pytest.raises(ConfigError, match="routing"):
            validate_config(config)

    def test_prevalence_range(self):
        config = default_config()
        config.epi.model = 'SIS'
        config.epi.X = 1.5
        with pytest.raises(ConfigError, match="epi.X"):
            validate_config(config)

    def test_unknown_event_method(self):
        config = default_config()
        config.events = [EventRecord('M_AA', 1.0, 5.0, method='divide')]
        with pytest.raises(ConfigError, match="event method"):
            validate_config(config)


# ── Parameter flattening ──────────────────────────────────────────────

class TestParamsFromConfig:
    def test_lifecycle_only(self):
        params = params_from_config(default_config())
        assert params['beta'] == 16.0
        assert params['nE'] == 2
        assert 'a' not in params

    def test_epi_biting_rate(self):
        config = SimulationConfig(epi=EpiSection(model='SIS', f=0.5, Q=0.8))
        params = params_from_config(config)
        assert params['a'] == pytest.approx(0.4)
        assert params['nEIP'] == 3

    def test_sections_are_plain_dataclasses(self):
        section = LifecycleSection(NF=10.0)
        assert section.NF == 10.0
        assert SimulationSection().dt == 1.0
