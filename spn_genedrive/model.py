"""Model assembly, single runs and independent repetitions.

build_model wires one configuration into a ready-to-sample model:

    config → places → transitions → stoichiometry → equilibrium (M0, params)
           → event schedule, batch migration, human plug-in

Hazards are built per run, in the mode the chosen sampler needs, so the
same SPNModel serves ODE and stochastic runs alike. Every repetition of
run_repetitions owns a copy of the initial marking and its own PCG64
stream; hazards are pure functions of (t, M) and are shared read-only.

References:
  - Sanchez C. et al. (2020) MGDrivE 2: a simulation framework for gene
    drive systems incorporating seasonality and epidemiological dynamics.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np

from spn_genedrive.config import SimulationConfig, default_config, params_from_config
from spn_genedrive.cube import InheritanceCube, mendelian_cube
from spn_genedrive.equilibrium import Equilibrium, equilibrium_from_config
from spn_genedrive.events import EventSchedule, build_event_schedule
from spn_genedrive.hazards import HazardSet, build_hazards
from spn_genedrive.human import HumanModel, SISHuman
from spn_genedrive.movement import (
    BatchMigration,
    MovementNetwork,
    build_movement,
    validate_batch_migration,
)
from spn_genedrive.places import PlaceSet, build_places
from spn_genedrive.rng import create_replicate_rngs, create_rng
from spn_genedrive.sampler import TrajectorySampler
from spn_genedrive.stoichiometry import Stoichiometry, build_stoichiometry
from spn_genedrive.trajectory import Trajectory
from spn_genedrive.transitions import build_transitions
from spn_genedrive.types import (
    EpiModel,
    HazardMode,
    SamplerKind,
    Transition,
)

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class SPNModel:
    """A built net plus its equilibrium starting point."""
    config: SimulationConfig
    cube: InheritanceCube
    places: PlaceSet
    transitions: Tuple[Transition, ...]
    stoich: Stoichiometry
    equilibrium: Equilibrium
    events: EventSchedule
    movement: Optional[MovementNetwork] = None
    batch_migration: List[BatchMigration] = field(default_factory=list)
    human_model: Optional[HumanModel] = None

    @property
    def params(self) -> Mapping[str, Any]:
        return self.equilibrium.params

    @property
    def M0(self) -> np.ndarray:
        return self.equilibrium.M0.copy()

    @property
    def human_state(self) -> Optional[np.ndarray]:
        hs = self.equilibrium.human_state
        return None if hs is None else hs.copy()

    def hazards(
        self,
        mode: Union[str, HazardMode] = HazardMode.APPROXIMATE,
        params: Optional[Mapping[str, Any]] = None,
        time_varying: Sequence[str] = (),
    ) -> HazardSet:
        """Hazards of this net; ``params`` entries override the equilibrium ones."""
        merged = dict(self.params)
        if params:
            merged.update(params)
        return build_hazards(
            self.places,
            self.transitions,
            self.cube,
            merged,
            mode=mode,
            tolerance=self.config.simulation.hazard_tolerance,
            movement=self.movement,
            time_varying=time_varying,
            density=self.config.density,
        )


def _movement_from_config(config: SimulationConfig) -> Optional[MovementNetwork]:
    net = config.network
    if not config.is_network or net.routing is None:
        return None
    return build_movement(
        net.routing,
        move_female=net.move_female,
        move_male=net.move_male,
        move_human=net.move_human,
        human_routing=net.human_routing,
    )


def build_model(
    config: Optional[SimulationConfig] = None,
    cube: Optional[InheritanceCube] = None,
    movement: Optional[MovementNetwork] = None,
    human_model: Optional[HumanModel] = None,
    params: Optional[Mapping[str, Any]] = None,
) -> SPNModel:
    """Assemble places, transitions, stoichiometry and equilibrium.

    Args:
        config: Validated configuration (defaults if None).
        cube: Inheritance cube (Mendelian A/a if None).
        movement: Movement network; built from ``config.network`` if None.
        human_model: Human plug-in for decoupled runs (SISHuman if None).
        params: Overrides merged over the configured rates before the
            equilibrium is solved. Callables are evaluated at t0 for the
            equilibrium and kept as time functions for the hazards.

    Raises:
        ConfigError: any structural or parameter inconsistency.
    """
    config = config if config is not None else default_config()
    cube = cube if cube is not None else mendelian_cube()
    model = config.model
    lc, epi = config.lifecycle, config.epi

    node_types = [t.value for t in config.node_types()] if config.is_network else None
    places = build_places(
        cube, lc.nE, lc.nL, lc.nP,
        nEIP=epi.nEIP if model.is_epi else None,
        model=model,
        node_types=node_types,
    )
    if movement is None:
        movement = _movement_from_config(config)
    transitions = build_transitions(places, cube, movement)
    stoich = build_stoichiometry(places, transitions)

    base = params_from_config(config)
    if params:
        base.update(params)
    equilibrium = equilibrium_from_config(config, cube, places, params=base)

    events = build_event_schedule(config.events, places,
                                  config.simulation.t0, config.simulation.tmax)
    batches = list(config.batch_migration)
    validate_batch_migration(places, batches)

    if model is EpiModel.DECOUPLED and human_model is None:
        human_model = SISHuman(b_modifier=cube.modifier('b'))

    logger.info("built %s model: %d nodes, %d places, %d transitions",
                model.value, places.n_nodes, len(places), len(transitions))
    return SPNModel(
        config=config,
        cube=cube,
        places=places,
        transitions=transitions,
        stoich=stoich,
        equilibrium=equilibrium,
        events=events,
        movement=movement,
        batch_migration=batches,
        human_model=human_model,
    )


def run_simulation(
    model: SPNModel,
    sampler: Optional[Union[str, SamplerKind]] = None,
    rng: Optional[np.random.Generator] = None,
    M0: Optional[np.ndarray] = None,
    human_state: Optional[np.ndarray] = None,
    params: Optional[Mapping[str, Any]] = None,
    time_varying: Sequence[str] = (),
    hazards: Optional[HazardSet] = None,
) -> Trajectory:
    """Run one trajectory of a built model.

    Args:
        model: Output of build_model().
        sampler: Update rule (``config.simulation.sampler`` if None).
        rng: Random stream; seeded from ``config.simulation.seed`` if None.
        M0, human_state: Starting point (the equilibrium if None).
        params, time_varying: Passed to SPNModel.hazards().
        hazards: Prebuilt hazards, reused across repetitions.
    """
    sim = model.config.simulation
    kind = SamplerKind(sampler if sampler is not None else sim.sampler)
    if hazards is None:
        hazards = model.hazards(kind.hazard_mode, params, time_varying)
    if rng is None and kind.is_stochastic:
        rng = create_rng(sim.seed)
    human_params = None
    if kind.is_decoupled:
        human_params = dict(model.params)
        if params:
            human_params.update(params)

    runner = TrajectorySampler(
        kind,
        model.places,
        model.stoich,
        hazards,
        dt=sim.dt,
        dt_stoch=sim.dt_stoch,
        events=model.events,
        batch_migration=model.batch_migration,
        human_model=model.human_model,
        human_params=human_params,
        track_firings=sim.track_firings and kind.is_stochastic,
        ode_method=sim.ode_method,
        rtol=sim.rtol,
        atol=sim.atol,
        rng=rng,
    )
    traj = runner.run(
        model.M0 if M0 is None else M0,
        sim.t0,
        sim.tmax,
        model.human_state if human_state is None else human_state,
    )
    traj.transition_names = tuple(tr.name for tr in model.transitions)
    return traj


def run_repetitions(
    model: SPNModel,
    n_reps: Optional[int] = None,
    seed: Optional[int] = None,
    sampler: Optional[Union[str, SamplerKind]] = None,
    params: Optional[Mapping[str, Any]] = None,
    time_varying: Sequence[str] = (),
) -> List[Trajectory]:
    """Run independent repetitions, each with its own marking and stream.

    Repetition i always uses the i-th stream spawned from ``seed``, so
    results do not depend on how repetitions are later distributed.
    """
    sim = model.config.simulation
    n_reps = n_reps if n_reps is not None else sim.n_reps
    seed = seed if seed is not None else sim.seed
    kind = SamplerKind(sampler if sampler is not None else sim.sampler)
    hazards = model.hazards(kind.hazard_mode, params, time_varying)
    rngs = create_replicate_rngs(seed, n_reps)
    results = []
    for i, rng in enumerate(rngs):
        logger.debug("repetition %d/%d", i + 1, n_reps)
        results.append(run_simulation(
            model, kind, rng=rng, params=params, hazards=hazards,
        ))
    return results
