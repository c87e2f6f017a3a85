"""Hazard factory: instantaneous transition rates h(t, M).

Every transition gets an immutable HazardRecord holding what its rate law
needs (source and partner places, node, a constant rate multiplier and the
names of time-varying factors). The record's class tag is resolved once,
at build time, into one of a few rate-law strategies:

  MASS_ACTION     k(t) · M[src]
  LARVAL_LOGISTIC k(t) · (1 + Ltot/K) · M[src]
  LARVAL_LV       (k(t) + γ·Ltot) · M[src]
  MATING          k(t) · M[src] · η_m·M[male] / Σ_g η_g·M[M_g]
  HOST_CONTACT    k(t) · M[src] · M[partner] / NH          (coupled infection)
  EXTERNAL_FOI    k(t) · FOI[node] · M[src]                (decoupled)

Exact mode gates each hazard to zero unless every input place holds at least
its arc weight; approximate mode clips hazards below a tolerance to zero.

Parameters may be constants, per-node arrays or callables of time. A
callable is never baked in: it is evaluated at every hazard evaluation.

Samplers use the vectorised HazardSet.__call__; the per-transition Hazard
callables evaluate the same laws one record at a time.
"""

from __future__ import annotations

import numbers
import warnings
from dataclasses import dataclass, field
from enum import IntEnum
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import scipy.sparse as sp

from spn_genedrive.cube import InheritanceCube
from spn_genedrive.movement import MovementNetwork
from spn_genedrive.places import PlaceSet
from spn_genedrive.types import (
    ApproximationWarning,
    ConfigError,
    DensityDependence,
    EpiModel,
    HazardMode,
    Stage,
    Transition,
    TransitionClass as TC,
)

COARSE_TOLERANCE: float = 1e-6


class RateLaw(IntEnum):
    MASS_ACTION     = 0
    LARVAL_LOGISTIC = 1
    LARVAL_LV       = 2
    MATING          = 3
    HOST_CONTACT    = 4
    EXTERNAL_FOI    = 5


# Per-class parameter factors and the cube modifier (by source genotype)
# that scale the base rate. Shapes (nE, ...) multiply Erlang stage rates.
_FACTORS: Dict[TC, Tuple[Tuple[str, ...], Optional[str], Optional[str]]] = {
    #                         params            shape   modifier
    TC.EGG_ADVANCE:        (('qE',),           'nE',   None),
    TC.EGG_MORTALITY:      (('muE',),          None,   None),
    TC.LARVA_ADVANCE:      (('qL',),           'nL',   None),
    TC.LARVA_MORTALITY:    (('muL',),          None,   None),
    TC.PUPA_ADVANCE:       (('qP',),           'nP',   None),
    TC.PUPA_MORTALITY:     (('muP',),          None,   None),
    TC.PUPA_TO_FEMALE:     (('qP',),           'nP',   'xi_f'),
    TC.PUPA_TO_MALE:       (('qP',),           'nP',   'xi_m'),
    TC.MATING:             (('nu',),           None,   None),
    TC.UNMATED_MORTALITY:  (('muF',),          None,   'omega'),
    TC.FEMALE_MORTALITY:   (('muF',),          None,   'omega'),
    TC.MALE_MORTALITY:     (('muM',),          None,   'omega'),
    TC.OVIPOSITION:        (('beta',),         None,   's'),
    TC.MOSQUITO_INFECTION: (('a', 'c'),        None,   'c'),
    TC.EIP_ADVANCE:        (('qEIP',),         'nEIP', None),
    TC.HUMAN_INFECTION:    (('a', 'b'),        None,   'b'),
    TC.HUMAN_LATENCY:      (('delta',),        None,   None),
    TC.HUMAN_RECOVERY:     (('r',),            None,   None),
    TC.HUMAN_DEATH:        (('muH',),          None,   None),
    TC.MIGRATION:          ((),                None,   None),
}

_MOVER_KIND = {Stage.UNMATED: 'female', Stage.FEMALE: 'female',
               Stage.MALE: 'male', Stage.HUMAN: 'human'}


# ═══════════════════════════════════════════════════════════════════════
# RECORDS
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class HazardRecord:
    """Everything one transition's rate law needs, resolved at build time."""
    transition: int
    tclass: TC
    law: RateLaw
    source: int
    node: int
    k_const: float
    time_factors: Tuple[str, ...] = ()
    partner: int = -1
    partner_weight: float = 1.0
    pre: Tuple[Tuple[int, int], ...] = ()


@dataclass(frozen=True, eq=False)
class HazardContext:
    """Read-only state shared by all hazards of one model."""
    mode: HazardMode
    tolerance: float
    density: DensityDependence
    time_params: Mapping[str, Callable[[float], Any]]
    density_param: np.ndarray            # K or gamma per node
    foi: np.ndarray                      # default external FOI per node
    larvae: Tuple[np.ndarray, ...]       # larval place indices per node
    males: Tuple[np.ndarray, ...]
    male_weights: Tuple[np.ndarray, ...]  # η by male genotype
    humans: Tuple[np.ndarray, ...]


def _time_value(ctx: HazardContext, name: str, t: float, node: int) -> float:
    v = np.asarray(ctx.time_params[name](t), dtype=np.float64)
    return float(v) if v.ndim == 0 else float(v[node])


def _rate(rec: HazardRecord, ctx: HazardContext, t: float) -> float:
    k = rec.k_const
    for name in rec.time_factors:
        k *= _time_value(ctx, name, t, rec.node)
    return k


# rate-law strategies: (record, context, rate k, marking, foi) -> hazard

def _law_mass(rec, ctx, k, M, foi):
    return k * M[rec.source]


def _law_logistic(rec, ctx, k, M, foi):
    L = M[ctx.larvae[rec.node]].sum()
    return k * (1 + L / ctx.density_param[rec.node]) * M[rec.source]


def _law_lv(rec, ctx, k, M, foi):
    L = M[ctx.larvae[rec.node]].sum()
    return (k + ctx.density_param[rec.node] * L) * M[rec.source]


def _law_mating(rec, ctx, k, M, foi):
    total = np.dot(ctx.male_weights[rec.node], M[ctx.males[rec.node]])
    if total <= 0:
        return 0.0
    return k * M[rec.source] * rec.partner_weight * M[rec.partner] / total


def _law_host(rec, ctx, k, M, foi):
    NH = M[ctx.humans[rec.node]].sum()
    if NH <= 0:
        return 0.0
    return k * M[rec.source] * M[rec.partner] / NH


def _law_external(rec, ctx, k, M, foi):
    f = ctx.foi if foi is None else foi
    return k * f[rec.node] * M[rec.source]


RATE_LAWS: Dict[RateLaw, Callable] = {
    RateLaw.MASS_ACTION: _law_mass,
    RateLaw.LARVAL_LOGISTIC: _law_logistic,
    RateLaw.LARVAL_LV: _law_lv,
    RateLaw.MATING: _law_mating,
    RateLaw.HOST_CONTACT: _law_host,
    RateLaw.EXTERNAL_FOI: _law_external,
}


def evaluate_hazard(rec: HazardRecord, ctx: HazardContext, t: float,
                    M: np.ndarray, foi: Optional[np.ndarray] = None) -> float:
    """Pure rate evaluation of one record."""
    if ctx.mode is HazardMode.EXACT:
        for p, w in rec.pre:
            if M[p] < w:
                return 0.0
    h = RATE_LAWS[rec.law](rec, ctx, _rate(rec, ctx, t), M, foi)
    if ctx.mode is HazardMode.APPROXIMATE and h < ctx.tolerance:
        return 0.0
    return float(h)


@dataclass(frozen=True, eq=False)
class Hazard:
    """Callable h(t, M) of a single transition."""
    record: HazardRecord
    context: HazardContext
    rate_law: Callable = field(repr=False, default=None)

    def __call__(self, t: float, M: np.ndarray, foi: Optional[np.ndarray] = None) -> float:
        ctx = self.context
        rec = self.record
        if ctx.mode is HazardMode.EXACT:
            for p, w in rec.pre:
                if M[p] < w:
                    return 0.0
        h = self.rate_law(rec, ctx, _rate(rec, ctx, t), M, foi)
        if ctx.mode is HazardMode.APPROXIMATE and h < ctx.tolerance:
            return 0.0
        return float(h)


# ═══════════════════════════════════════════════════════════════════════
# VECTORISED EVALUATION
# ═══════════════════════════════════════════════════════════════════════

class HazardSet:
    """All hazards of a model; calling it evaluates every hazard at once.

    Indexing returns the per-transition Hazard callables.
    """

    def __init__(self, records: Sequence[HazardRecord], ctx: HazardContext,
                 n_places: int, n_nodes: int, names: Sequence[str] = ()):
        self.records: Tuple[HazardRecord, ...] = tuple(records)
        self.context = ctx
        self.hazards: Tuple[Hazard, ...] = tuple(
            Hazard(r, ctx, RATE_LAWS[r.law]) for r in self.records
        )
        n = len(self.records)
        self._src = np.array([r.source for r in self.records], dtype=np.intp)
        self._node = np.array([r.node for r in self.records], dtype=np.intp)
        self._k = np.array([r.k_const for r in self.records], dtype=np.float64)
        laws = np.array([int(r.law) for r in self.records], dtype=np.int64)
        self._by_law = {law: np.nonzero(laws == int(law))[0] for law in RateLaw}
        partners = np.array([r.partner for r in self.records], dtype=np.intp)
        self._partner = np.where(partners >= 0, partners, 0)
        self._partner_w = np.array([r.partner_weight for r in self.records])

        groups: Dict[str, List[int]] = {}
        for i, r in enumerate(self.records):
            for name in r.time_factors:
                groups.setdefault(name, []).append(i)
        self._time_groups = {name: np.array(ix, dtype=np.intp) for name, ix in groups.items()}

        arc_place, arc_weight, offsets = [], [], []
        for r in self.records:
            offsets.append(len(arc_place))
            for p, w in r.pre:
                arc_place.append(p)
                arc_weight.append(w)
        self._arc_place = np.array(arc_place, dtype=np.intp)
        self._arc_weight = np.array(arc_weight, dtype=np.float64)
        self._arc_offsets = np.array(offsets, dtype=np.intp)

        self._larvae_sum = _aggregator(ctx.larvae, None, n_nodes, n_places)
        self._male_sum = _aggregator(ctx.males, ctx.male_weights, n_nodes, n_places)
        self._human_sum = _aggregator(ctx.humans, None, n_nodes, n_places)
        self._n = n
        self.names: Tuple[str, ...] = (tuple(names)
                                       or tuple(f"#{r.transition}" for r in self.records))

    def __len__(self) -> int:
        return self._n

    def __getitem__(self, i: int) -> Hazard:
        return self.hazards[i]

    def __iter__(self):
        return iter(self.hazards)

    @property
    def mode(self) -> HazardMode:
        return self.context.mode

    def rates(self, t: float) -> np.ndarray:
        """Per-capita rate of every transition at time t."""
        k = self._k.copy()
        for name, ix in self._time_groups.items():
            v = np.asarray(self.context.time_params[name](t), dtype=np.float64)
            k[ix] *= v if v.ndim == 0 else v[self._node[ix]]
        return k

    def enabled(self, M: np.ndarray) -> np.ndarray:
        """Enabling condition: every input place holds at least its arc weight."""
        ok = M[self._arc_place] >= self._arc_weight
        return np.logical_and.reduceat(ok, self._arc_offsets)

    def __call__(self, t: float, M: np.ndarray, foi: Optional[np.ndarray] = None) -> np.ndarray:
        ctx = self.context
        k = self.rates(t)
        h = k * M[self._src]

        ix = self._by_law[RateLaw.LARVAL_LOGISTIC]
        if ix.size:
            L = self._larvae_sum @ M
            nodes = self._node[ix]
            h[ix] *= 1 + L[nodes] / ctx.density_param[nodes]
        ix = self._by_law[RateLaw.LARVAL_LV]
        if ix.size:
            L = self._larvae_sum @ M
            nodes = self._node[ix]
            h[ix] = (k[ix] + ctx.density_param[nodes] * L[nodes]) * M[self._src[ix]]
        ix = self._by_law[RateLaw.MATING]
        if ix.size:
            W = self._male_sum @ M
            denom = W[self._node[ix]]
            num = self._partner_w[ix] * M[self._partner[ix]]
            h[ix] *= np.divide(num, denom, out=np.zeros_like(num), where=denom > 0)
        ix = self._by_law[RateLaw.HOST_CONTACT]
        if ix.size:
            NH = self._human_sum @ M
            denom = NH[self._node[ix]]
            num = M[self._partner[ix]]
            h[ix] *= np.divide(num, denom, out=np.zeros_like(num), where=denom > 0)
        ix = self._by_law[RateLaw.EXTERNAL_FOI]
        if ix.size:
            f = ctx.foi if foi is None else np.asarray(foi, dtype=np.float64)
            h[ix] *= f[self._node[ix]]

        if ctx.mode is HazardMode.EXACT:
            h[~self.enabled(M)] = 0.0
        else:
            h[h < ctx.tolerance] = 0.0
        return h


def _aggregator(index_sets, weights, n_nodes: int, n_places: int) -> sp.csr_matrix:
    """(n_nodes, n_places) matrix summing (optionally weighted) places per node."""
    rows, cols, vals = [], [], []
    for node, ix in enumerate(index_sets):
        w = np.ones(len(ix)) if weights is None else weights[node]
        rows.extend([node] * len(ix))
        cols.extend(int(i) for i in ix)
        vals.extend(float(x) for x in w)
    return sp.csr_matrix((vals, (rows, cols)), shape=(n_nodes, n_places))


# ═══════════════════════════════════════════════════════════════════════
# FACTORY
# ═══════════════════════════════════════════════════════════════════════

def _constant(params: Mapping[str, Any], name: str, node: int) -> float:
    value = params[name]
    arr = np.asarray(value, dtype=np.float64) if not isinstance(value, str) else None
    if arr is None or arr.dtype.kind not in 'fiu':
        raise ConfigError(f"parameter '{name}' must be numeric, got {value!r}")
    v = float(arr) if arr.ndim == 0 else float(arr[node])
    if not np.isfinite(v) or v < 0:
        raise ConfigError(f"parameter '{name}' must be finite and non-negative, got {v}")
    return v


def _shape(params: Mapping[str, Any], name: str) -> int:
    if name not in params:
        raise ConfigError(f"missing parameter '{name}'")
    value = params[name]
    if callable(value):
        raise ConfigError(f"shape parameter '{name}' cannot vary in time")
    if not isinstance(value, numbers.Integral) and not float(value).is_integer():
        raise ConfigError(f"shape parameter '{name}' must be an integer, got {value!r}")
    return int(value)


def _infer_density(params: Mapping[str, Any],
                   density: Optional[Union[str, DensityDependence]]) -> DensityDependence:
    if density is not None:
        density = DensityDependence(density)
    elif 'K' in params and 'gamma' not in params:
        density = DensityDependence.LOGISTIC
    elif 'gamma' in params and 'K' not in params:
        density = DensityDependence.LOTKA_VOLTERRA
    else:
        raise ConfigError(
            "cannot infer density dependence: supply exactly one of 'K' or 'gamma' "
            "or pass density explicitly"
        )
    key = 'K' if density is DensityDependence.LOGISTIC else 'gamma'
    if key not in params:
        raise ConfigError(f"{density.value} density dependence requires parameter '{key}'")
    return density


def _per_node(params: Mapping[str, Any], name: str, n_nodes: int) -> np.ndarray:
    value = params[name]
    if callable(value):
        raise ConfigError(f"parameter '{name}' cannot vary in time")
    arr = np.atleast_1d(np.asarray(value, dtype=np.float64))
    if arr.size == 1:
        arr = np.full(n_nodes, float(arr[0]))
    if arr.shape != (n_nodes,):
        raise ConfigError(f"parameter '{name}' must have one entry per node ({n_nodes})")
    return arr


def build_hazards(
    places: PlaceSet,
    transitions: Sequence[Transition],
    cube: InheritanceCube,
    params: Mapping[str, Any],
    mode: Union[str, HazardMode] = HazardMode.APPROXIMATE,
    tolerance: float = 1e-12,
    movement: Optional[MovementNetwork] = None,
    time_varying: Sequence[str] = (),
    density: Optional[Union[str, DensityDependence]] = None,
) -> HazardSet:
    """Build one hazard per transition.

    Args:
        places, transitions: The net structure.
        cube: Supplies per-genotype modifiers.
        params: Rates, shapes and the density parameter (``K`` or ``gamma``
            per node); decoupled models also need ``foi`` per node.
            Values may be constants, per-node arrays or callables of time.
        mode: 'exact' (integer samplers) or 'approximate' (ODE, CLE).
        tolerance: Clip threshold in approximate mode.
        movement: Movement network used to build the migration transitions.
        time_varying: Names that must be callables of time.
        density: Density-dependence form; inferred from params if omitted.

    Raises:
        ConfigError: missing parameters, missing K/gamma, a name declared
            time-varying given as a constant, or migration without movement.
    """
    mode = HazardMode(mode)
    if mode is HazardMode.APPROXIMATE and tolerance > COARSE_TOLERANCE:
        warnings.warn(
            f"hazard tolerance {tolerance:g} is coarse; hazards below it are set to "
            "zero and small compartments will not empty smoothly",
            ApproximationWarning,
            stacklevel=2,
        )
    if tolerance <= 0:
        raise ConfigError("tolerance must be positive")

    for name in time_varying:
        if name not in params:
            raise ConfigError(f"time-varying parameter '{name}' is missing")
        if not callable(params[name]):
            raise ConfigError(
                f"parameter '{name}' is declared time-varying but a constant was supplied"
            )
    time_params = {name: v for name, v in params.items() if callable(v)}
    if 'phi' in time_params:
        raise ConfigError("parameter 'phi' cannot vary in time")

    n_nodes = places.n_nodes
    has_larvae = any(tr.tclass is TC.LARVA_MORTALITY for tr in transitions)
    if has_larvae:
        density = _infer_density(params, density)
        key = 'K' if density is DensityDependence.LOGISTIC else 'gamma'
        density_param = _per_node(params, key, n_nodes)
        for lay in places.nodes:
            if lay.has_mosquitoes:
                v = density_param[lay.node]
                if not np.isfinite(v) or v < 0 or (key == 'K' and v == 0):
                    raise ConfigError(f"'{key}' at node {lay.node} must be positive and finite")
    else:
        density = DensityDependence(density) if density is not None else DensityDependence.LOGISTIC
        density_param = np.zeros(n_nodes)

    decoupled = places.model is EpiModel.DECOUPLED
    foi = np.zeros(n_nodes)
    if decoupled and any(tr.tclass is TC.MOSQUITO_INFECTION for tr in transitions):
        if 'foi' not in params:
            raise ConfigError("decoupled models need a per-node 'foi' parameter")
        foi = _per_node(params, 'foi', n_nodes)

    eta = cube.modifier('eta')
    ctx = HazardContext(
        mode=mode,
        tolerance=float(tolerance),
        density=density,
        time_params=MappingProxyType(time_params),
        density_param=density_param,
        foi=foi,
        larvae=tuple(lay.larvae.ravel() for lay in places.nodes),
        males=tuple(lay.males for lay in places.nodes),
        male_weights=tuple(eta[:len(lay.males)] for lay in places.nodes),
        humans=tuple(np.array(list(lay.humans.values()), dtype=np.intp)
                     for lay in places.nodes),
    )

    phi = _constant(params, 'phi', 0) if 'phi' in params else 0.5
    shapes: Dict[str, int] = {}
    records: List[HazardRecord] = []
    for i, tr in enumerate(transitions):
        names, shape, modifier = _FACTORS[tr.tclass]
        if decoupled and tr.tclass is TC.MOSQUITO_INFECTION:
            names = ()
        k = 1.0
        tfac: List[str] = []
        for name in names:
            if name not in params:
                raise ConfigError(f"missing parameter '{name}' needed by '{tr.name}'")
            if name in time_params:
                tfac.append(name)
            else:
                k *= _constant(params, name, tr.node)
        if shape is not None:
            if shape not in shapes:
                shapes[shape] = _shape(params, shape)
            k *= shapes[shape]
        if modifier is not None:
            k *= cube.modifier(modifier)[tr.genotype]
        if tr.tclass is TC.PUPA_TO_FEMALE:
            k *= phi
        elif tr.tclass is TC.PUPA_TO_MALE:
            k *= 1 - phi
        elif tr.tclass is TC.OVIPOSITION:
            k *= tr.weight
        elif tr.tclass is TC.MIGRATION:
            if movement is None:
                raise ConfigError("migration transitions need a movement network")
            kind = _MOVER_KIND[tr.stage]
            k *= movement.rate(kind, tr.node) * movement.probability(kind, tr.node, tr.dest_node)

        partner_weight = 1.0
        if tr.tclass is TC.LARVA_MORTALITY:
            law = (RateLaw.LARVAL_LOGISTIC if density is DensityDependence.LOGISTIC
                   else RateLaw.LARVAL_LV)
        elif tr.tclass is TC.MATING:
            law = RateLaw.MATING
            partner_weight = float(eta[tr.mate])
        elif tr.tclass is TC.MOSQUITO_INFECTION:
            law = RateLaw.EXTERNAL_FOI if decoupled else RateLaw.HOST_CONTACT
        elif tr.tclass is TC.HUMAN_INFECTION:
            law = RateLaw.HOST_CONTACT
        else:
            law = RateLaw.MASS_ACTION

        records.append(HazardRecord(
            transition=i,
            tclass=tr.tclass,
            law=law,
            source=tr.source,
            node=tr.node,
            k_const=k,
            time_factors=tuple(tfac),
            partner=tr.partner,
            partner_weight=partner_weight,
            pre=tr.pre,
        ))

    return HazardSet(records, ctx, len(places), n_nodes, [tr.name for tr in transitions])
