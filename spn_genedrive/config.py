"""Configuration system for spn-genedrive.

Hierarchical YAML configuration with deep-merge support:
  base.yaml → scenario override → sweep overrides

Sections map 1:1 to YAML top-level keys. Every structural or parameter
problem is reported as ConfigError before any model is built.

Default life-history values are those of Aedes aegypti used throughout the
MGDrivE 2 vignettes; epidemiological defaults are the SIS dengue-like set.
"""

from __future__ import annotations

import copy
import dataclasses
import numbers
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from spn_genedrive.events import EventRecord
from spn_genedrive.movement import BatchMigration
from spn_genedrive.types import (
    ConfigError,
    DensityDependence,
    EpiModel,
    EventMethod,
    NodeType,
    SamplerKind,
)

Number = Union[int, float]


# ═══════════════════════════════════════════════════════════════════════
# CONFIGURATION DATACLASSES
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class SimulationSection:
    """Timing, sampler choice and numerical control."""
    t0: float = 0.0
    tmax: float = 100.0
    dt: float = 1.0               # macro sampling step (days)
    dt_stoch: float = 0.1         # micro step for tau / CLE (days)
    sampler: str = 'ode'          # see SamplerKind
    seed: int = 42
    n_reps: int = 1
    hazard_tolerance: float = 1e-12
    ode_method: str = 'LSODA'
    rtol: float = 1e-6
    atol: float = 1e-6
    track_firings: bool = False   # record cumulative firing counts


@dataclass
class LifecycleSection:
    """Mosquito life history (rates per day)."""
    qE: float = 1 / 4             # inverse mean egg duration
    nE: int = 2                   # Erlang shape, eggs
    qL: float = 1 / 3
    nL: int = 3
    qP: float = 1 / 6
    nP: int = 2
    muE: float = 0.05
    muL: float = 0.15
    muP: float = 0.05
    muF: float = 0.09
    muM: float = 0.09
    beta: float = 16.0            # eggs per female per day
    nu: float = 1 / (4 / 24)      # mating rate of unmated females
    phi: float = 0.5              # female fraction at emergence
    density: str = 'logistic'     # 'logistic' | 'lotka-volterra'
    NF: Union[Number, List[Number]] = 500.0   # adult females per mosquito node
    pop_ratio_aq: Optional[Dict[str, float]] = None
    pop_ratio_f: Optional[Dict[str, float]] = None
    pop_ratio_m: Optional[Dict[str, float]] = None


@dataclass
class EpiSection:
    """Epidemiological structure and parameters.

    ``model`` selects the compartments; see EpiModel. ``NH``/``X``/``NFX``
    apply per human-and-mosquito node, ``NH_h``/``X_h`` per human-only node.
    """
    model: str = 'lifecycle'
    human_model: str = 'SIS'      # external plug-in for decoupled runs
    NH: Union[Number, List[Number]] = 1000.0
    X: Union[Number, List[Number]] = 0.25     # human prevalence at equilibrium
    NFX: Optional[Union[Number, List[Number]]] = None  # females when X == 0
    NH_h: Union[Number, List[Number]] = 1000.0
    X_h: Union[Number, List[Number]] = 0.0
    f: float = 1 / 3              # feeding rate
    Q: float = 0.9                # human blood index
    b: float = 0.55               # mosquito → human transmission
    c: float = 0.15               # human → mosquito transmission
    r: float = 1 / 200            # human recovery
    muH: float = 1 / (62 * 365)   # human mortality
    delta: float = 1 / 5          # human latency (SEIR)
    qEIP: float = 1 / 11
    nEIP: int = 3


@dataclass
class NetworkSection:
    """Node layout and per-capita movement.

    Leave ``node_types`` unset for a single-node model (no name suffix).
    ``routing[i][j]`` is the probability that a mover leaving i lands in j;
    missing, NaN or zero entries mean unreachable.
    """
    node_types: Optional[List[str]] = None
    routing: Optional[List[List[float]]] = None
    human_routing: Optional[List[List[float]]] = None
    move_female: Union[Number, List[Number]] = 0.0
    move_male: Union[Number, List[Number]] = 0.0
    move_human: Union[Number, List[Number]] = 0.0


@dataclass
class SimulationConfig:
    """Complete simulation configuration.

    Load from YAML via `load_config()`. Sections map 1:1 to YAML top-level keys.
    """
    simulation: SimulationSection = field(default_factory=SimulationSection)
    lifecycle: LifecycleSection = field(default_factory=LifecycleSection)
    epi: EpiSection = field(default_factory=EpiSection)
    network: NetworkSection = field(default_factory=NetworkSection)
    events: List[EventRecord] = field(default_factory=list)
    batch_migration: List[BatchMigration] = field(default_factory=list)

    @property
    def model(self) -> EpiModel:
        return EpiModel(self.epi.model)

    @property
    def sampler(self) -> SamplerKind:
        return SamplerKind(self.simulation.sampler)

    @property
    def density(self) -> DensityDependence:
        return DensityDependence(self.lifecycle.density)

    @property
    def is_network(self) -> bool:
        return self.network.node_types is not None

    def node_types(self) -> List[NodeType]:
        """Node types in order; a single-node model is one 'm' or 'b' node."""
        if self.network.node_types is None:
            return [NodeType.BOTH if self.model.is_epi else NodeType.MOSQUITO]
        return [NodeType(t) for t in self.network.node_types]


# ═══════════════════════════════════════════════════════════════════════
# YAML LOADING & MERGING
# ═══════════════════════════════════════════════════════════════════════

def deep_merge(base: Dict, override: Dict) -> Dict:
    """Recursively merge override into base. Modifies base in place.

    - Dict values are merged recursively
    - Non-dict values are replaced
    - Keys in override but not base are added

    Args:
        base: Base dictionary (modified in place).
        override: Override dictionary.

    Returns:
        The merged base dictionary.
    """
    for key, value in override.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def _dict_to_section(section_cls, data: Dict) -> Any:
    """Convert a dict to a dataclass, ignoring unknown keys."""
    valid_fields = {f.name for f in dataclasses.fields(section_cls)}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    try:
        return section_cls(**filtered)
    except TypeError as exc:
        raise ConfigError(f"invalid {section_cls.__name__} entry: {exc}") from None


def _yaml_to_config(data: Dict) -> SimulationConfig:
    """Convert a merged YAML dict to a SimulationConfig."""
    sections = {}
    section_map = {
        'simulation': SimulationSection,
        'lifecycle': LifecycleSection,
        'epi': EpiSection,
        'network': NetworkSection,
    }
    for key, cls in section_map.items():
        if key in data and isinstance(data[key], dict):
            sections[key] = _dict_to_section(cls, data[key])
        else:
            sections[key] = cls()

    # Top-level lists, not sections
    sections['events'] = [
        _dict_to_section(EventRecord, ev)
        for ev in (data.get('events') or []) if isinstance(ev, dict)
    ]
    sections['batch_migration'] = [
        _dict_to_section(BatchMigration, bm)
        for bm in (data.get('batch_migration') or []) if isinstance(bm, dict)
    ]
    return SimulationConfig(**sections)


# ═══════════════════════════════════════════════════════════════════════
# VALIDATION
# ═══════════════════════════════════════════════════════════════════════

def _is_number(value: Any) -> bool:
    return isinstance(value, numbers.Real) and not isinstance(value, bool)


def _check_rate(name: str, value: Any) -> None:
    if not _is_number(value):
        raise ConfigError(f"{name} must be numeric, got {value!r}")
    if value < 0:
        raise ConfigError(f"{name} must be non-negative, got {value}")


def _check_shape(name: str, value: Any) -> None:
    if not isinstance(value, numbers.Integral) or isinstance(value, bool):
        raise ConfigError(f"{name} must be an integer, got {value!r}")
    if value < 1:
        raise ConfigError(f"{name} must be >= 1, got {value}")


def _check_per_node(name: str, value: Any, n: int) -> None:
    values = value if isinstance(value, (list, tuple)) else [value]
    if isinstance(value, (list, tuple)) and len(values) not in (1, n):
        raise ConfigError(f"{name} must have 1 or {n} entries, got {len(values)}")
    for v in values:
        _check_rate(name, v)


def _check_square(name: str, matrix: Any, n: int) -> None:
    if len(matrix) != n or any(len(row) != n for row in matrix):
        raise ConfigError(f"{name} must be {n}x{n} to match node_types")


def validate_config(config: SimulationConfig) -> None:
    """Validate configuration constraints. Raises ConfigError on failure.

    Checks:
      - Sampler, model and density-dependence names are known
      - Timing is consistent (t0 < tmax, 0 < dt_stoch <= dt)
      - Erlang shapes are integers >= 1 and rates are non-negative numbers
      - Node types are consistent with the model; movement matrices are square
      - Event methods are known
    """
    sim = config.simulation
    valid_samplers = {s.value for s in SamplerKind}
    if sim.sampler not in valid_samplers:
        raise ConfigError(
            f"simulation.sampler must be one of {sorted(valid_samplers)}, got '{sim.sampler}'"
        )
    if not sim.tmax > sim.t0:
        raise ConfigError(f"simulation.tmax ({sim.tmax}) must exceed t0 ({sim.t0})")
    if not sim.dt > 0:
        raise ConfigError("simulation.dt must be positive")
    if not 0 < sim.dt_stoch <= sim.dt:
        raise ConfigError(
            f"simulation.dt_stoch must be in (0, dt={sim.dt}], got {sim.dt_stoch}"
        )
    if sim.seed < 0:
        raise ConfigError("simulation.seed must be non-negative")
    if sim.n_reps < 1:
        raise ConfigError("simulation.n_reps must be >= 1")
    if not sim.hazard_tolerance > 0:
        raise ConfigError("simulation.hazard_tolerance must be positive")

    lc = config.lifecycle
    for name in ('nE', 'nL', 'nP'):
        _check_shape(f"lifecycle.{name}", getattr(lc, name))
    for name in ('qE', 'qL', 'qP', 'muE', 'muL', 'muP', 'muF', 'muM', 'beta', 'nu'):
        _check_rate(f"lifecycle.{name}", getattr(lc, name))
    if not 0 < lc.phi < 1:
        raise ConfigError(f"lifecycle.phi must be in (0, 1), got {lc.phi}")
    valid_density = {d.value for d in DensityDependence}
    if lc.density not in valid_density:
        raise ConfigError(
            f"lifecycle.density must be one of {sorted(valid_density)}, got '{lc.density}'"
        )

    epi = config.epi
    valid_models = {m.value for m in EpiModel}
    if epi.model not in valid_models:
        raise ConfigError(
            f"epi.model must be one of {sorted(valid_models)}, got '{epi.model}'"
        )
    model = config.model
    if model.is_epi:
        _check_shape("epi.nEIP", epi.nEIP)
        for name in ('f', 'Q', 'b', 'c', 'r', 'muH', 'delta', 'qEIP'):
            _check_rate(f"epi.{name}", getattr(epi, name))
        xs = epi.X if isinstance(epi.X, (list, tuple)) else [epi.X]
        if any((not _is_number(x)) or x < 0 or x >= 1 for x in xs):
            raise ConfigError("epi.X must lie in [0, 1)")
    if model is EpiModel.DECOUPLED and epi.human_model != 'SIS':
        raise ConfigError(
            f"epi.human_model must be 'SIS', got '{epi.human_model}'; other human "
            "models (e.g. the Imperial malaria model) are passed to build_model() "
            "as a HumanModel"
        )

    valid_types = {t.value for t in NodeType}
    net = config.network
    if net.node_types is not None:
        if len(net.node_types) < 1:
            raise ConfigError("network.node_types must name at least one node")
        bad = [t for t in net.node_types if t not in valid_types]
        if bad:
            raise ConfigError(f"unknown node types {bad}; expected 'm', 'h' or 'b'")
        if not model.is_epi and any(t != 'm' for t in net.node_types):
            raise ConfigError("lifecycle networks only support mosquito ('m') nodes")
        n = len(net.node_types)
        if net.routing is not None:
            _check_square("network.routing", net.routing, n)
        if net.human_routing is not None:
            _check_square("network.human_routing", net.human_routing, n)
        for name in ('move_female', 'move_male', 'move_human'):
            _check_per_node(f"network.{name}", getattr(net, name), n)

    valid_methods = {m.value for m in EventMethod}
    for ev in config.events:
        if ev.method not in valid_methods:
            raise ConfigError(
                f"event method must be one of {sorted(valid_methods)}, got '{ev.method}'"
            )


# ═══════════════════════════════════════════════════════════════════════
# LOADING
# ═══════════════════════════════════════════════════════════════════════

def load_config(
    base_path: Union[str, Path],
    scenario_path: Optional[Union[str, Path]] = None,
    sweep_overrides: Optional[Dict] = None,
) -> SimulationConfig:
    """Load and merge hierarchical YAML configuration.

    Merge order: base → scenario → sweep overrides.
    Each layer overrides only the fields it specifies.

    Args:
        base_path: Path to base configuration YAML.
        scenario_path: Optional scenario override YAML.
        sweep_overrides: Optional dict of parameter sweep overrides.

    Returns:
        Validated SimulationConfig.

    Raises:
        FileNotFoundError: If base_path doesn't exist.
        ConfigError: If validation fails.
    """
    base_path = Path(base_path)
    if not base_path.exists():
        raise FileNotFoundError(f"Config file not found: {base_path}")

    with open(base_path) as f:
        config_dict = yaml.safe_load(f) or {}

    if scenario_path is not None:
        scenario_path = Path(scenario_path)
        if scenario_path.exists():
            with open(scenario_path) as f:
                scenario = yaml.safe_load(f) or {}
            deep_merge(config_dict, scenario)

    if sweep_overrides is not None:
        deep_merge(config_dict, copy.deepcopy(sweep_overrides))

    config = _yaml_to_config(config_dict)
    validate_config(config)
    return config


def default_config() -> SimulationConfig:
    """Return a SimulationConfig with all default values."""
    config = SimulationConfig()
    validate_config(config)
    return config


def params_from_config(config: SimulationConfig) -> Dict[str, Any]:
    """Flatten the rate sections into the parameter mapping used by builders.

    Population targets (NF, NH, X, ...) stay on the config; they feed the
    equilibrium solver, not the hazards. ``a = f * Q`` is the human biting
    rate per mosquito.
    """
    lc = config.lifecycle
    params: Dict[str, Any] = {
        name: getattr(lc, name)
        for name in ('qE', 'nE', 'qL', 'nL', 'qP', 'nP', 'muE', 'muL', 'muP',
                     'muF', 'muM', 'beta', 'nu', 'phi')
    }
    if config.model.is_epi:
        epi = config.epi
        for name in ('f', 'Q', 'b', 'c', 'r', 'muH', 'delta', 'qEIP', 'nEIP'):
            params[name] = getattr(epi, name)
        params['a'] = epi.f * epi.Q
    return params
