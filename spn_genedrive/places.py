"""Place builder: the discrete compartments of the Petri net.

Per node, places are laid out in a fixed order:

    eggs      E{i}_{g}           genotype-major, Erlang stage fastest
    larvae    L{i}_{g}
    pupae     P{i}_{g}
    unmated   U_{g}
    mated     F_{g}_{m}[_{k}]    infection stage slowest, then female
                                 genotype, mate genotype fastest
    males     M_{g}
    humans    H_S, H_I | H_S, H_E, H_I, H_R

Network models append a 1-based node suffix ``_{node}`` to every name. Nodes
that carry no mosquitoes (type 'h') or no humans (type 'm') simply do not
own those places.

The name→index map is immutable once built; event schedules and the
equilibrium solver rely on these names.
"""

from __future__ import annotations

import numbers
import warnings
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from spn_genedrive.cube import InheritanceCube
from spn_genedrive.types import (
    ApproximationWarning,
    ConfigError,
    EpiModel,
    NodeType,
    Place,
    Stage,
    node_suffix,
)


# ═══════════════════════════════════════════════════════════════════════
# LAYOUT RECORDS
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True, eq=False)
class NodeLayout:
    """Place indices owned by one node (-1 free; empty arrays when absent).

    eggs/larvae/pupae are (n_substages, nG); females is
    (n_infection_stages, nG, nG) indexed [stage, female, mate].
    """
    node: int
    node_type: NodeType
    eggs: np.ndarray
    larvae: np.ndarray
    pupae: np.ndarray
    unmated: np.ndarray
    females: np.ndarray
    males: np.ndarray
    humans: Mapping[str, int] = field(default_factory=dict)

    @property
    def has_mosquitoes(self) -> bool:
        return self.eggs.size > 0

    @property
    def has_humans(self) -> bool:
        return len(self.humans) > 0

    def adult_females(self) -> np.ndarray:
        """Unmated and mated female place indices."""
        return np.concatenate([self.unmated, self.females.ravel()])


@dataclass(frozen=True, eq=False)
class PlaceSet:
    """Ordered, immutable collection of places with lookup tables."""
    places: Tuple[Place, ...]
    index: Mapping[str, int]
    nodes: Tuple[NodeLayout, ...]
    genotypes: Tuple[str, ...]
    model: EpiModel
    nE: int
    nL: int
    nP: int
    nEIP: int = 0
    network: bool = False

    def __len__(self) -> int:
        return len(self.places)

    @property
    def names(self) -> Tuple[str, ...]:
        return tuple(p.name for p in self.places)

    @property
    def n_nodes(self) -> int:
        return len(self.nodes)

    @property
    def n_infection(self) -> int:
        """Length of the mated-female infection axis (1 for lifecycle)."""
        return self.nEIP + 2 if self.model.is_epi else 1

    def infection_labels(self) -> Tuple[str, ...]:
        if not self.model.is_epi:
            return ('',)
        return ('S',) + tuple(f'E{k}' for k in range(1, self.nEIP + 1)) + ('I',)

    def lookup(self, name: str) -> int:
        """Index of a place name. Raises ConfigError if it does not exist."""
        try:
            return self.index[name]
        except KeyError:
            raise ConfigError(f"no place named '{name}'") from None

    def indices(self, stage: Stage, node: Optional[int] = None) -> np.ndarray:
        """All place indices of one stage, optionally restricted to a node."""
        return np.array(
            [i for i, p in enumerate(self.places)
             if p.stage is stage and (node is None or p.node == node)],
            dtype=np.intp,
        )


# ═══════════════════════════════════════════════════════════════════════
# VALIDATION
# ═══════════════════════════════════════════════════════════════════════

def check_shape_parameters(**shapes: int) -> None:
    """Validate Erlang shape parameters.

    Raises ConfigError for non-integer or < 1 values; warns with
    ApproximationWarning for a shape of exactly 1.
    """
    exponential = []
    for name, value in shapes.items():
        if not isinstance(value, numbers.Integral) or isinstance(value, bool):
            raise ConfigError(f"shape parameter '{name}' must be an integer, got {value!r}")
        if value < 1:
            raise ConfigError(f"shape parameter '{name}' must be >= 1, got {value}")
        if value == 1:
            exponential.append(name)
    if exponential:
        warnings.warn(
            f"A shape parameter ({', '.join(repr(n) for n in exponential)}) of 1 "
            "implies exponentially distributed dwell times in that compartment.",
            ApproximationWarning,
            stacklevel=3,
        )


# ═══════════════════════════════════════════════════════════════════════
# BUILDER
# ═══════════════════════════════════════════════════════════════════════

def _empty(*shape: int) -> np.ndarray:
    return np.full(shape, -1, dtype=np.intp)


def _node_places(
    node: int,
    node_type: NodeType,
    suffix: str,
    genotypes: Sequence[str],
    shapes: Tuple[int, int, int],
    infection_labels: Tuple[str, ...],
    human_compartments: Tuple[str, ...],
    places: List[Place],
) -> NodeLayout:
    """Append one node's places to ``places`` and return its layout."""
    nE, nL, nP = shapes
    nG = len(genotypes)
    nI = len(infection_labels)

    def add(place: Place) -> int:
        places.append(place)
        return len(places) - 1

    if node_type.has_mosquitoes:
        aquatic = {}
        for stage, letter, n in ((Stage.EGG, 'E', nE), (Stage.LARVA, 'L', nL),
                                 (Stage.PUPA, 'P', nP)):
            ix = _empty(n, nG)
            for g, gname in enumerate(genotypes):
                for i in range(n):
                    ix[i, g] = add(Place(f'{letter}{i + 1}_{gname}{suffix}', stage,
                                         node, genotype=g, substage=i + 1))
            aquatic[stage] = ix

        unmated = _empty(nG)
        for g, gname in enumerate(genotypes):
            unmated[g] = add(Place(f'U_{gname}{suffix}', Stage.UNMATED, node, genotype=g))

        females = _empty(nI, nG, nG)
        for k, label in enumerate(infection_labels):
            tag = f'_{label}' if label else ''
            for f, fname in enumerate(genotypes):
                for m, mname in enumerate(genotypes):
                    females[k, f, m] = add(Place(
                        f'F_{fname}_{mname}{tag}{suffix}', Stage.FEMALE, node,
                        genotype=f, mate=m, infection=k if label else -1,
                    ))

        males = _empty(nG)
        for g, gname in enumerate(genotypes):
            males[g] = add(Place(f'M_{gname}{suffix}', Stage.MALE, node, genotype=g))
    else:
        aquatic = {Stage.EGG: _empty(0, nG), Stage.LARVA: _empty(0, nG),
                   Stage.PUPA: _empty(0, nG)}
        unmated, females, males = _empty(0), _empty(0, nG, nG), _empty(0)

    humans: Dict[str, int] = {}
    if node_type.has_humans:
        for comp in human_compartments:
            humans[comp] = add(Place(f'H_{comp}{suffix}', Stage.HUMAN, node,
                                     compartment=comp))

    return NodeLayout(
        node=node,
        node_type=node_type,
        eggs=aquatic[Stage.EGG],
        larvae=aquatic[Stage.LARVA],
        pupae=aquatic[Stage.PUPA],
        unmated=unmated,
        females=females,
        males=males,
        humans=MappingProxyType(humans),
    )


def build_places(
    cube: InheritanceCube,
    nE: int,
    nL: int,
    nP: int,
    nEIP: Optional[int] = None,
    model: EpiModel = EpiModel.LIFECYCLE,
    node_types: Optional[Sequence[str]] = None,
) -> PlaceSet:
    """Enumerate the places of a single node or a network.

    Args:
        cube: Genotype set and inheritance table.
        nE, nL, nP: Erlang shapes of the aquatic stages.
        nEIP: Erlang shape of the extrinsic incubation period (epi models).
        model: Compartment structure; see EpiModel.
        node_types: Per-node types ('m', 'h', 'b'). ``None`` builds a single
            node without name suffixes.

    Returns:
        PlaceSet with deterministic ordering.

    Raises:
        ConfigError: bad shape parameters or node types inconsistent with
            the model.
    """
    model = EpiModel(model)
    shapes = {'nE': nE, 'nL': nL, 'nP': nP}
    if model.is_epi:
        if nEIP is None:
            raise ConfigError(f"nEIP is required for the '{model.value}' model")
        shapes['nEIP'] = nEIP
    check_shape_parameters(**shapes)

    network = node_types is not None
    if network:
        types = [NodeType(t) for t in node_types]
        if not types:
            raise ConfigError("node_types must name at least one node")
    else:
        types = [NodeType.BOTH if model.is_epi else NodeType.MOSQUITO]
    if not model.is_epi and any(t is not NodeType.MOSQUITO for t in types):
        raise ConfigError("lifecycle models only support mosquito ('m') nodes")
    if model is EpiModel.DECOUPLED and any(t is NodeType.HUMAN for t in types):
        raise ConfigError("decoupled models keep humans outside the net; "
                          "human-only ('h') nodes are not allowed")

    template = PlaceSet((), {}, (), cube.genotypes, model, nE, nL, nP,
                        nEIP if model.is_epi else 0)
    labels = template.infection_labels()

    places: List[Place] = []
    layouts = []
    for node, node_type in enumerate(types):
        suffix = node_suffix(node) if network else ''
        layouts.append(_node_places(
            node, node_type, suffix, cube.genotypes, (nE, nL, nP), labels,
            model.human_compartments, places,
        ))

    index = {p.name: i for i, p in enumerate(places)}
    return PlaceSet(
        places=tuple(places),
        index=MappingProxyType(index),
        nodes=tuple(layouts),
        genotypes=cube.genotypes,
        model=model,
        nE=nE,
        nL=nL,
        nP=nP,
        nEIP=nEIP if model.is_epi else 0,
        network=network,
    )
