"""Transition builder: the structural rules of the Petri net.

One transition is emitted per applicable place combination:

  aquatic     E_i → E_i+1 | L_1, L_i → L_i+1 | P_1, P_i → P_i+1, deaths
  emergence   P_nP → U (female share), P_nP → M (male share)
  mating      U_f + M_m → F_f_m_S + M_m        (male is a catalyst)
  adults      deaths of U, F and M
  laying      F → F + E1_o for each offspring genotype o with p > 0
  EIP         F_S → F_E1 (H_I catalyst when humans are places),
              F_Ek → F_Ek+1, F_EnEIP → F_I
  humans      H_S + F_I → H_I|H_E + F_I, latency, recovery, death-with-birth
  migration   X at origin → X at destination, for reachable edges only

Genotype, mate, offspring, node and partner indices are resolved here once
so that hazards never parse place names.
"""

from __future__ import annotations

from typing import List, Optional, Tuple

import numpy as np

from spn_genedrive.cube import InheritanceCube
from spn_genedrive.movement import MovementNetwork
from spn_genedrive.places import NodeLayout, PlaceSet
from spn_genedrive.types import (
    ConfigError,
    EpiModel,
    NodeType,
    Stage,
    Transition,
    TransitionClass as TC,
)


def _move(places: PlaceSet, tag: str, tclass: TC, src: int, dst: int, **kw) -> Transition:
    """A single-token move src → dst (or a death when dst is None)."""
    src = int(src)
    dst = None if dst is None else int(dst)
    place = places.places[src]
    if dst is None:
        name, post = f'{tag}:{place.name}', ()
    else:
        name, post = f'{tag}:{place.name}->{places.places[dst].name}', ((dst, 1),)
    kw.setdefault('genotype', place.genotype)
    kw.setdefault('mate', place.mate)
    return Transition(
        name=name, tclass=tclass, pre=((src, 1),), post=post, source=src,
        node=place.node, stage=place.stage, **kw,
    )


def _catalysed(places: PlaceSet, tag: str, tclass: TC, src: int, dst: int,
               partner: int, **kw) -> Transition:
    """src → dst in the presence of a partner token that is not consumed."""
    src, dst, partner = int(src), int(dst), int(partner)
    place = places.places[src]
    kw.setdefault('genotype', place.genotype)
    kw.setdefault('mate', place.mate)
    return Transition(
        name=f'{tag}:{place.name}->{places.places[dst].name}|{places.places[partner].name}',
        tclass=tclass,
        pre=((src, 1), (partner, 1)),
        post=((dst, 1), (partner, 1)),
        source=src,
        partner=partner,
        node=place.node,
        stage=place.stage,
        **kw,
    )


# ═══════════════════════════════════════════════════════════════════════
# PER-NODE LOCAL TRANSITIONS
# ═══════════════════════════════════════════════════════════════════════

def _aquatic(places: PlaceSet, lay: NodeLayout, out: List[Transition]) -> None:
    nG = len(places.genotypes)
    stages = ((lay.eggs, lay.larvae, 'egg', TC.EGG_ADVANCE, TC.EGG_MORTALITY),
              (lay.larvae, lay.pupae, 'larva', TC.LARVA_ADVANCE, TC.LARVA_MORTALITY))
    for g in range(nG):
        for block, nxt, tag, adv, die in stages:
            n = block.shape[0]
            for i in range(n):
                dst = block[i + 1, g] if i + 1 < n else nxt[0, g]
                out.append(_move(places, f'{tag}_advance', adv, block[i, g], dst))
                out.append(_move(places, f'{tag}_death', die, block[i, g], None))
        n = lay.pupae.shape[0]
        for i in range(n):
            src = lay.pupae[i, g]
            if i + 1 < n:
                out.append(_move(places, 'pupa_advance', TC.PUPA_ADVANCE, src,
                                 lay.pupae[i + 1, g]))
            else:
                out.append(_move(places, 'emerge_female', TC.PUPA_TO_FEMALE, src,
                                 lay.unmated[g]))
                out.append(_move(places, 'emerge_male', TC.PUPA_TO_MALE, src,
                                 lay.males[g]))
            out.append(_move(places, 'pupa_death', TC.PUPA_MORTALITY, src, None))


def _adults(places: PlaceSet, cube: InheritanceCube, lay: NodeLayout,
            out: List[Transition]) -> None:
    nG = len(places.genotypes)
    for f in range(nG):
        for m in range(nG):
            out.append(_catalysed(places, 'mate', TC.MATING, lay.unmated[f],
                                  lay.females[0, f, m], lay.males[m], mate=m))

    for g in range(nG):
        out.append(_move(places, 'death', TC.UNMATED_MORTALITY, lay.unmated[g], None))
    for p in lay.females.ravel():
        out.append(_move(places, 'death', TC.FEMALE_MORTALITY, p, None))
    for g in range(nG):
        out.append(_move(places, 'death', TC.MALE_MORTALITY, lay.males[g], None))

    offspring = np.asarray(cube.offspring)
    for k in range(lay.females.shape[0]):
        for f in range(nG):
            for m in range(nG):
                src = int(lay.females[k, f, m])
                for o in np.nonzero(offspring[f, m] > 0)[0]:
                    egg = int(lay.eggs[0, o])
                    out.append(Transition(
                        name=f'oviposit:{places.places[src].name}->{places.places[egg].name}',
                        tclass=TC.OVIPOSITION,
                        pre=((src, 1),),
                        post=((src, 1), (egg, 1)),
                        source=src,
                        node=lay.node,
                        stage=Stage.FEMALE,
                        genotype=f,
                        mate=m,
                        offspring=int(o),
                        weight=float(offspring[f, m, o]),
                    ))


def _mosquito_epi(places: PlaceSet, lay: NodeLayout, out: List[Transition]) -> None:
    nG = len(places.genotypes)
    nI = lay.females.shape[0]
    infectious_humans: Optional[int] = None
    if places.model is EpiModel.DECOUPLED:
        infected_here = lay.node_type is NodeType.BOTH
    else:
        infected_here = lay.has_humans
        if infected_here:
            infectious_humans = lay.humans['I']

    for f in range(nG):
        for m in range(nG):
            if infected_here:
                s, e1 = lay.females[0, f, m], lay.females[1, f, m]
                if infectious_humans is None:
                    out.append(_move(places, 'infect', TC.MOSQUITO_INFECTION, s, e1))
                else:
                    out.append(_catalysed(places, 'infect', TC.MOSQUITO_INFECTION,
                                          s, e1, infectious_humans))
            for k in range(1, nI - 1):
                out.append(_move(places, 'eip', TC.EIP_ADVANCE, lay.females[k, f, m],
                                 lay.females[k + 1, f, m]))


def _humans(places: PlaceSet, lay: NodeLayout, out: List[Transition]) -> None:
    H = lay.humans
    seir = places.model is EpiModel.SEIR
    target = H['E'] if seir else H['I']
    if lay.has_mosquitoes:
        for p in lay.females[-1].ravel():
            out.append(_catalysed(places, 'human_infect', TC.HUMAN_INFECTION,
                                  H['S'], target, int(p),
                                  genotype=places.places[p].genotype))
    if seir:
        out.append(_move(places, 'human_latent', TC.HUMAN_LATENCY, H['E'], H['I']))
        out.append(_move(places, 'human_recover', TC.HUMAN_RECOVERY, H['I'], H['R']))
        for comp in ('E', 'I', 'R'):
            out.append(_move(places, 'human_death', TC.HUMAN_DEATH, H[comp], H['S']))
    else:
        out.append(_move(places, 'human_recover', TC.HUMAN_RECOVERY, H['I'], H['S']))
        out.append(_move(places, 'human_death', TC.HUMAN_DEATH, H['I'], H['S']))


# ═══════════════════════════════════════════════════════════════════════
# MIGRATION
# ═══════════════════════════════════════════════════════════════════════

def _migration(places: PlaceSet, movement: MovementNetwork, out: List[Transition]) -> None:
    nodes = places.nodes
    for kind in ('female', 'male'):
        for o, d in movement.edges(kind):
            src, dst = nodes[o], nodes[d]
            if not (src.has_mosquitoes and dst.has_mosquitoes):
                continue
            if kind == 'female':
                pairs = zip(np.concatenate([src.unmated, src.females.ravel()]),
                            np.concatenate([dst.unmated, dst.females.ravel()]))
            else:
                pairs = zip(src.males, dst.males)
            for a, b in pairs:
                out.append(_move(places, f'move_{kind}', TC.MIGRATION, int(a), int(b),
                                 dest_node=d))
    for o, d in movement.edges('human'):
        src, dst = nodes[o], nodes[d]
        if not (src.has_humans and dst.has_humans):
            continue
        for comp, a in src.humans.items():
            out.append(_move(places, 'move_human', TC.MIGRATION, a, dst.humans[comp],
                             dest_node=d))


# ═══════════════════════════════════════════════════════════════════════
# BUILDER
# ═══════════════════════════════════════════════════════════════════════

def build_transitions(
    places: PlaceSet,
    cube: InheritanceCube,
    movement: Optional[MovementNetwork] = None,
) -> Tuple[Transition, ...]:
    """Enumerate all transitions consistent with a place set.

    Args:
        places: Output of build_places().
        cube: The same cube the places were built from.
        movement: Optional movement network (required for migration).

    Returns:
        Ordered tuple of transitions: node by node (aquatic, adult, EIP,
        human), then migration.

    Raises:
        ConfigError: movement dimensions do not match the node count, or the
            cube's genotypes differ from the place set's.
    """
    if tuple(cube.genotypes) != tuple(places.genotypes):
        raise ConfigError("cube genotypes do not match the place set")
    if movement is not None and movement.n_nodes != places.n_nodes:
        raise ConfigError(
            f"movement matrix is {movement.n_nodes}x{movement.n_nodes} "
            f"but the network has {places.n_nodes} nodes"
        )

    out: List[Transition] = []
    for lay in places.nodes:
        if lay.has_mosquitoes:
            _aquatic(places, lay, out)
            _adults(places, cube, lay, out)
            if places.model.is_epi:
                _mosquito_epi(places, lay, out)
        if lay.has_humans:
            _humans(places, lay, out)
    if movement is not None:
        _migration(places, movement, out)
    return tuple(out)
