"""Core data types for spn-genedrive.

This module is the single source of truth for:
  - Stage, TransitionClass, NodeType, EpiModel, HazardMode, SamplerKind,
    DensityDependence and EventMethod enumerations
  - Place and Transition records shared by the builders
  - The error taxonomy (ConfigError, NumericalFailure, ApproximationWarning)

Builders import these types from here. Places and transitions are frozen:
they never change identity after construction.

References:
  - Sanchez C. et al. (2020) MGDrivE 2: a simulation framework for gene
    drive systems incorporating seasonality and epidemiological dynamics.
  - Haas P.J. (2002) Stochastic Petri Nets. Springer.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Optional, Tuple


# ═══════════════════════════════════════════════════════════════════════
# ENUMERATIONS
# ═══════════════════════════════════════════════════════════════════════

class Stage(IntEnum):
    """Compartment families a place can belong to.

    EGG → LARVA → PUPA → UNMATED (female) → FEMALE (mated)
                       → MALE
    HUMAN places only exist on nodes that carry a human population.
    """
    EGG     = 0
    LARVA   = 1
    PUPA    = 2
    UNMATED = 3
    FEMALE  = 4
    MALE    = 5
    HUMAN   = 6


class TransitionClass(IntEnum):
    """Structural rule tags. Resolved once into a rate law per transition."""
    EGG_ADVANCE        = 0
    EGG_MORTALITY      = 1
    LARVA_ADVANCE      = 2
    LARVA_MORTALITY    = 3   # density-dependent
    PUPA_ADVANCE       = 4
    PUPA_MORTALITY     = 5
    PUPA_TO_FEMALE     = 6   # emergence as unmated female
    PUPA_TO_MALE       = 7
    MATING             = 8
    UNMATED_MORTALITY  = 9
    FEMALE_MORTALITY   = 10
    MALE_MORTALITY     = 11
    OVIPOSITION        = 12
    MOSQUITO_INFECTION = 13  # S -> E1
    EIP_ADVANCE        = 14  # E_k -> E_k+1, E_n -> I
    HUMAN_INFECTION    = 15
    HUMAN_LATENCY      = 16  # SEIR only: E -> I
    HUMAN_RECOVERY     = 17
    HUMAN_DEATH        = 18  # death balanced by birth into S
    MIGRATION          = 19


class NodeType(str, Enum):
    """Network node flavours."""
    MOSQUITO = 'm'
    HUMAN    = 'h'
    BOTH     = 'b'

    @property
    def has_mosquitoes(self) -> bool:
        return self is not NodeType.HUMAN

    @property
    def has_humans(self) -> bool:
        return self is not NodeType.MOSQUITO


class EpiModel(str, Enum):
    """Which compartments exist beyond the mosquito life cycle.

    LIFECYCLE: mosquitoes only, no infection axis.
    SIS / SEIR: SEI mosquitoes coupled to discrete human places.
    DECOUPLED: SEI mosquitoes; humans are an external continuous state.
    """
    LIFECYCLE = 'lifecycle'
    SIS       = 'SIS'
    SEIR      = 'SEIR'
    DECOUPLED = 'decoupled'

    @property
    def is_epi(self) -> bool:
        return self is not EpiModel.LIFECYCLE

    @property
    def human_compartments(self) -> Tuple[str, ...]:
        if self is EpiModel.SIS:
            return ('S', 'I')
        if self is EpiModel.SEIR:
            return ('S', 'E', 'I', 'R')
        return ()


class HazardMode(str, Enum):
    EXACT       = 'exact'
    APPROXIMATE = 'approximate'


class DensityDependence(str, Enum):
    LOGISTIC       = 'logistic'
    LOTKA_VOLTERRA = 'lotka-volterra'


class SamplerKind(str, Enum):
    """Update rules understood by the trajectory sampler."""
    ODE           = 'ode'
    TAU           = 'tau'
    CLE           = 'cle'
    DM            = 'dm'
    ODE_DECOUPLED = 'ode_decoupled'
    TAU_DECOUPLED = 'tau_decoupled'

    @property
    def hazard_mode(self) -> HazardMode:
        if self in (SamplerKind.TAU, SamplerKind.DM, SamplerKind.TAU_DECOUPLED):
            return HazardMode.EXACT
        return HazardMode.APPROXIMATE

    @property
    def is_decoupled(self) -> bool:
        return self in (SamplerKind.ODE_DECOUPLED, SamplerKind.TAU_DECOUPLED)

    @property
    def is_stochastic(self) -> bool:
        return self not in (SamplerKind.ODE, SamplerKind.ODE_DECOUPLED)


class EventMethod(str, Enum):
    ADD      = 'add'
    SET      = 'set'
    MULTIPLY = 'multiply'


# ═══════════════════════════════════════════════════════════════════════
# ERRORS
# ═══════════════════════════════════════════════════════════════════════

class ConfigError(ValueError):
    """Malformed or inconsistent structural/parameter input.

    Raised before any simulation proceeds.
    """


class NumericalFailure(RuntimeError):
    """Non-finite or out-of-domain state produced mid-run. Always fatal."""

    def __init__(self, step: int, time: float, cause: str):
        self.step = step
        self.time = time
        self.cause = cause
        super().__init__(f"numerical failure at step {step} (t={time:g}): {cause}")


class ApproximationWarning(UserWarning):
    """Non-fatal modelling approximation (exponential dwell, coarse tolerance)."""


# ═══════════════════════════════════════════════════════════════════════
# STRUCTURAL RECORDS
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Place:
    """One state compartment.

    Fields that do not apply are -1 (genotype/mate/infection) or '' (human
    compartment). ``substage`` is the 1-based Erlang index for E/L/P places.
    """
    name: str
    stage: Stage
    node: int = 0
    genotype: int = -1
    mate: int = -1
    substage: int = 0
    infection: int = -1
    compartment: str = ''


@dataclass(frozen=True)
class Transition:
    """A structural rule. Arc lists hold (place index, weight) pairs.

    ``source`` is the place whose token count scales the hazard and
    ``partner`` an optional catalyst place (mate, infectious host) whose
    count enters the rate law. ``weight`` carries the offspring probability
    for oviposition and 1.0 elsewhere.
    """
    name: str
    tclass: TransitionClass
    pre: Tuple[Tuple[int, int], ...]
    post: Tuple[Tuple[int, int], ...]
    source: int
    node: int = 0
    stage: Stage = Stage.EGG
    genotype: int = -1
    mate: int = -1
    offspring: int = -1
    partner: int = -1
    dest_node: int = -1
    weight: float = 1.0

    @property
    def is_migration(self) -> bool:
        return self.tclass is TransitionClass.MIGRATION

    def input_weight(self, place: int) -> int:
        for p, w in self.pre:
            if p == place:
                return w
        return 0

    def output_weight(self, place: int) -> int:
        for p, w in self.post:
            if p == place:
                return w
        return 0


def node_suffix(node: Optional[int]) -> str:
    """Place-name suffix for a 0-based node id (names are 1-based)."""
    return '' if node is None else f'_{node + 1}'
