"""Equilibrium solver: stationary markings and derived density parameters.

Lifecycle
---------
With dE = nE·qE, dL = nL·qL, dP = nP·qP and NF adult females (unmated U
plus mated F) the stationary stage sizes follow in closed form:

    F = NF·ν/(ν+μF)        U = NF·μF/(ν+μF)
    P_nP = μF·NF/(φ·dP)    P_{i-1} = P_i·(dP+μP)/dP
    M = (1-φ)·dP·P_nP/μM
    E_1 = β·F/(dE+μE)      E_i = E_{i-1}·dE/(dE+μE)

Larval mortality at equilibrium, m, balances the larval chain:

    L_nL = dE·E_nE·dL^(nL-1)/(dL+m)^nL = P_1·(dP+μP)/dL

and the density parameter is chosen so the larval hazard equals m:

    logistic         μL·(1 + Ltot/K) = m   →  K = μL·Ltot/(m−μL)
    Lotka-Volterra   μL + γ·Ltot = m       →  γ = (m−μL)/Ltot

SEI mosquitoes
--------------
Mated females enter S at rate μF·F and leave every stage at μF. The
quasi-stationary distribution over (S, E1..EnEIP, I) solves
(−Tᵀ)·x = μF·e_S, with T the sub-intensity matrix of the transient states
(Bladt & Nielsen 2017, Matrix-Exponential Distributions in Applied
Probability, ch. 3). Works for any nEIP >= 1.

Humans
------
SIS and SEIR equilibria are set from prevalence X; the number of infectious
mosquitoes they imply fixes NF. Equilibria of different nodes are computed
independently, so mixed networks show a burn-in transient.
"""

from __future__ import annotations

import numbers
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
from scipy import linalg

from spn_genedrive.cube import InheritanceCube
from spn_genedrive.places import NodeLayout, PlaceSet
from spn_genedrive.types import (
    ConfigError,
    DensityDependence,
    EpiModel,
    NodeType,
)

Number = Union[int, float]

LIFECYCLE_PARAMS: Tuple[str, ...] = (
    'qE', 'nE', 'qL', 'nL', 'qP', 'nP', 'muE', 'muL', 'muP', 'muF', 'muM', 'beta', 'nu',
)
EPI_PARAMS: Tuple[str, ...] = ('a', 'b', 'c', 'r', 'muH', 'qEIP', 'nEIP')
# may be given per node
NODE_PARAMS: Tuple[str, ...] = tuple(
    p for p in LIFECYCLE_PARAMS + EPI_PARAMS + ('delta',) if p not in ('nE', 'nL', 'nP', 'nEIP')
)


# ═══════════════════════════════════════════════════════════════════════
# PARAMETER ACCESS
# ═══════════════════════════════════════════════════════════════════════

def param_value(params: Mapping[str, Any], name: str, t: float = 0.0) -> float:
    """Numeric value of a parameter, evaluating time functions at ``t``.

    Raises:
        ConfigError: missing, non-numeric or negative parameter.
    """
    if name not in params:
        raise ConfigError(f"missing parameter '{name}'")
    value = params[name]
    if callable(value):
        value = value(t)
    if not isinstance(value, numbers.Real) or isinstance(value, bool):
        raise ConfigError(f"parameter '{name}' must be numeric, got {value!r}")
    if not np.isfinite(value) or value < 0:
        raise ConfigError(f"parameter '{name}' must be finite and non-negative, got {value}")
    return float(value)


def node_param(params: Mapping[str, Any], name: str, n_nodes: int,
               t: float = 0.0) -> np.ndarray:
    """Per-node values of a parameter given as a scalar or one entry per node.

    Raises:
        ConfigError: missing parameter, wrong length, non-finite or
            negative entries.
    """
    if name not in params:
        raise ConfigError(f"missing parameter '{name}'")
    value = params[name]
    if callable(value):
        value = value(t)
    if isinstance(value, bool):
        raise ConfigError(f"parameter '{name}' must be numeric, got {value!r}")
    try:
        arr = np.atleast_1d(np.asarray(value, dtype=np.float64))
    except (TypeError, ValueError):
        raise ConfigError(f"parameter '{name}' must be numeric, got {value!r}") from None
    if arr.size == 1:
        arr = np.full(n_nodes, float(arr[0]))
    if arr.shape != (n_nodes,):
        raise ConfigError(
            f"parameter '{name}' must be a scalar or have {n_nodes} entries, got {arr.size}")
    if not np.all(np.isfinite(arr)) or np.any(arr < 0):
        raise ConfigError(f"parameter '{name}' must be finite and non-negative, got {value}")
    return arr


def _at_node(params: Mapping[str, Any], names: Sequence[str], node: int,
             n_nodes: int, t: float) -> Dict[str, Any]:
    local = dict(params)
    for name in names:
        if name in params:
            local[name] = float(node_param(params, name, n_nodes, t)[node])
    return local


def _broadcast(value: Optional[Union[Number, Sequence[Number]]], n: int, name: str) -> np.ndarray:
    if value is None:
        raise ConfigError(f"'{name}' is required for this node layout")
    arr = np.atleast_1d(np.asarray(value, dtype=np.float64))
    if arr.size == 1:
        arr = np.full(n, float(arr[0]))
    if arr.shape != (n,):
        raise ConfigError(f"'{name}' must have 1 or {n} entries, got {arr.size}")
    return arr


# ═══════════════════════════════════════════════════════════════════════
# LIFECYCLE
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class LifecycleEquilibrium:
    """Stationary stage totals of one mosquito node (summed over genotypes)."""
    eggs: np.ndarray
    larvae: np.ndarray
    pupae: np.ndarray
    unmated: float
    females: float
    males: float
    larval_mortality: float
    density_parameter: float

    def vector(self) -> np.ndarray:
        """E1..EnE, L1..LnL, P1..PnP, U, M, F."""
        return np.concatenate([self.eggs, self.larvae, self.pupae,
                               [self.unmated, self.males, self.females]])


def lifecycle_equilibrium(
    params: Mapping[str, Any],
    NF: float,
    density: Union[str, DensityDependence] = DensityDependence.LOGISTIC,
    phi: Optional[float] = None,
    t: float = 0.0,
) -> LifecycleEquilibrium:
    """Closed-form lifecycle equilibrium for NF adult females.

    Args:
        params: Rate parameters (see LIFECYCLE_PARAMS); callables are
            evaluated at ``t``.
        NF: Target adult females (unmated plus mated).
        density: Logistic (K) or Lotka-Volterra (gamma) larval competition.
        phi: Female fraction at emergence (defaults to params['phi'] or 0.5).

    Raises:
        ConfigError: invalid parameters or a population that cannot be
            sustained at any density (equilibrium larval mortality <= muL).
    """
    density = DensityDependence(density)
    v = {name: param_value(params, name, t) for name in LIFECYCLE_PARAMS}
    nE, nL, nP = (int(v['nE']), int(v['nL']), int(v['nP']))
    if phi is None:
        phi = float(params.get('phi', 0.5))
    if not 0 < phi < 1:
        raise ConfigError(f"phi must be in (0, 1), got {phi}")
    if not NF > 0:
        raise ConfigError(f"NF must be positive, got {NF}")
    for name in ('qE', 'qL', 'qP', 'beta', 'nu', 'muF', 'muM'):
        if v[name] <= 0:
            raise ConfigError(f"parameter '{name}' must be positive for a stationary population")

    dE, dL, dP = nE * v['qE'], nL * v['qL'], nP * v['qP']
    muF, muM, nu = v['muF'], v['muM'], v['nu']

    females = NF * nu / (nu + muF)
    unmated = NF * muF / (nu + muF)

    pupae = np.empty(nP)
    pupae[-1] = muF * NF / (phi * dP)
    for i in range(nP - 1, 0, -1):
        pupae[i - 1] = pupae[i] * (dP + v['muP']) / dP
    males = (1 - phi) * dP * pupae[-1] / muM

    eggs = np.empty(nE)
    eggs[0] = v['beta'] * females / (dE + v['muE'])
    for i in range(1, nE):
        eggs[i] = eggs[i - 1] * dE / (dE + v['muE'])

    L_last = pupae[0] * (dP + v['muP']) / dL
    m = (dE * eggs[-1] * dL ** (nL - 1) / L_last) ** (1.0 / nL) - dL
    muL = v['muL']
    if not m > muL:
        raise ConfigError(
            "lifecycle parameters cannot sustain a population: equilibrium larval "
            f"mortality {m:.4g} does not exceed muL={muL:.4g}"
        )
    larvae = np.array([dE * eggs[-1] * dL ** i / (dL + m) ** (i + 1) for i in range(nL)])
    Ltot = larvae.sum()
    if density is DensityDependence.LOGISTIC:
        dd = muL * Ltot / (m - muL)
    else:
        dd = (m - muL) / Ltot

    return LifecycleEquilibrium(
        eggs=eggs, larvae=larvae, pupae=pupae, unmated=unmated, females=females,
        males=males, larval_mortality=m, density_parameter=dd,
    )


# ═══════════════════════════════════════════════════════════════════════
# SEI MOSQUITO INFECTION STAGES
# ═══════════════════════════════════════════════════════════════════════

def sei_subintensity(foi: float, qEIP: float, nEIP: int, muF: float) -> np.ndarray:
    """Sub-intensity matrix over (S, E1..EnEIP, I); death is the absorbing state."""
    n = nEIP + 2
    q = nEIP * qEIP
    T = np.zeros((n, n))
    T[0, 0] = -(foi + muF)
    T[0, 1] = foi
    for k in range(1, nEIP + 1):
        T[k, k] = -(q + muF)
        T[k, k + 1] = q
    T[-1, -1] = -muF
    return T


def sei_distribution(foi: float, qEIP: float, nEIP: int, muF: float) -> np.ndarray:
    """Quasi-stationary fractions of mated females in S, E1..EnEIP, I.

    Solves (−Tᵀ)·x = μF·e_S; the fractions sum to one because every stage
    loses females at the same rate μF.
    """
    if nEIP < 1:
        raise ConfigError("nEIP must be >= 1")
    if muF <= 0:
        raise ConfigError("muF must be positive")
    if foi < 0:
        raise ConfigError("force of infection must be non-negative")
    T = sei_subintensity(foi, qEIP, nEIP, muF)
    b = np.zeros(nEIP + 2)
    b[0] = muF
    return linalg.solve(-T.T, b)


# ═══════════════════════════════════════════════════════════════════════
# HUMAN BALANCES
# ═══════════════════════════════════════════════════════════════════════

def human_sis_equilibrium(NH: float, X: float, params: Mapping[str, Any],
                          b_eff: float = 1.0, t: float = 0.0) -> Tuple[Dict[str, float], float]:
    """Humans S/I at prevalence X and the infectious mosquitoes sustaining it.

    Returns:
        ({'S', 'I'} counts, weighted infectious female count a·b-balance).
    """
    if not 0 <= X < 1:
        raise ConfigError(f"prevalence X must be in [0, 1), got {X}")
    a, b = param_value(params, 'a', t), param_value(params, 'b', t) * b_eff
    r, muH = param_value(params, 'r', t), param_value(params, 'muH', t)
    humans = {'S': NH * (1 - X), 'I': NH * X}
    if X == 0:
        return humans, 0.0
    if a * b <= 0:
        raise ConfigError("a·b must be positive to sustain a positive prevalence")
    return humans, (r + muH) * X * NH / (a * b * (1 - X))


def human_seir_equilibrium(NH: float, X: float, params: Mapping[str, Any],
                           b_eff: float = 1.0, t: float = 0.0) -> Tuple[Dict[str, float], float]:
    """SEIR humans with I = X·NH at equilibrium (births balance deaths).

    E = (r+μH)·I/δ, R = r·I/μH and λ = (δ+μH)·E/S.
    """
    if not 0 <= X < 1:
        raise ConfigError(f"prevalence X must be in [0, 1), got {X}")
    a, b = param_value(params, 'a', t), param_value(params, 'b', t) * b_eff
    r, muH = param_value(params, 'r', t), param_value(params, 'muH', t)
    delta = param_value(params, 'delta', t)
    if X == 0:
        return {'S': NH, 'E': 0.0, 'I': 0.0, 'R': 0.0}, 0.0
    if muH <= 0 or delta <= 0 or a * b <= 0:
        raise ConfigError("SEIR equilibrium needs positive muH, delta and a·b")
    I = X * NH
    E = (r + muH) * I / delta
    R = r * I / muH
    S = NH - E - I - R
    if S <= 0:
        raise ConfigError(
            f"prevalence X={X} is infeasible for SEIR: recovered and exposed exceed NH"
        )
    lam = (delta + muH) * E / S
    return {'S': S, 'E': E, 'I': I, 'R': R}, lam * NH / (a * b)


# ═══════════════════════════════════════════════════════════════════════
# WHOLE-MODEL EQUILIBRIUM
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True, eq=False)
class Equilibrium:
    """Augmented parameters plus initial conditions.

    ``init`` holds per-node stage totals (NaN where a column does not apply
    to a node) with column names ``init_labels``. ``M0`` is the marking.
    ``human_state`` is set for decoupled models: (n_nodes, 2) S/I counts.
    """
    params: Mapping[str, Any]
    init: np.ndarray
    init_labels: Tuple[str, ...]
    M0: np.ndarray
    human_state: Optional[np.ndarray] = None


def _init_labels(places: PlaceSet) -> Tuple[str, ...]:
    labels = ([f'E{i}' for i in range(1, places.nE + 1)]
              + [f'L{i}' for i in range(1, places.nL + 1)]
              + [f'P{i}' for i in range(1, places.nP + 1)]
              + ['U', 'M'])
    if places.model.is_epi:
        labels += [f'F_{s}' for s in places.infection_labels()]
    else:
        labels.append('F')
    labels += [f'H_{c}' for c in places.model.human_compartments]
    return tuple(labels)


def fill_mosquitoes(
    M0: np.ndarray,
    lay: NodeLayout,
    eq: LifecycleEquilibrium,
    sei: np.ndarray,
    ratio_aq: np.ndarray,
    ratio_f: np.ndarray,
    ratio_m: np.ndarray,
) -> None:
    """Write one node's mosquito equilibrium into the marking.

    ``sei`` is (nG, n_infection): the infection-stage distribution of mated
    females by female genotype. Mated females split as outer(ratio_f, ratio_m).
    """
    M0[lay.eggs] = np.outer(eq.eggs, ratio_aq)
    M0[lay.larvae] = np.outer(eq.larvae, ratio_aq)
    M0[lay.pupae] = np.outer(eq.pupae, ratio_aq)
    M0[lay.unmated] = eq.unmated * ratio_f
    M0[lay.males] = eq.males * ratio_m
    pair = np.outer(ratio_f, ratio_m)
    for k in range(lay.females.shape[0]):
        M0[lay.females[k]] = eq.females * pair * sei[:, k][:, None]


def solve_equilibrium(
    params: Mapping[str, Any],
    cube: InheritanceCube,
    places: PlaceSet,
    NF: Optional[Union[Number, Sequence[Number]]] = None,
    NH: Optional[Union[Number, Sequence[Number]]] = None,
    X: Optional[Union[Number, Sequence[Number]]] = None,
    NFX: Optional[Union[Number, Sequence[Number]]] = None,
    NH_h: Optional[Union[Number, Sequence[Number]]] = None,
    X_h: Optional[Union[Number, Sequence[Number]]] = None,
    density: Union[str, DensityDependence] = DensityDependence.LOGISTIC,
    pop_ratio_aq: Optional[Mapping[str, float]] = None,
    pop_ratio_f: Optional[Mapping[str, float]] = None,
    pop_ratio_m: Optional[Mapping[str, float]] = None,
    t0: float = 0.0,
) -> Equilibrium:
    """Per-node equilibrium, augmented parameters and the initial marking.

    Node targets are given per node type, in node order:
      'm' nodes:  NF (adult females)
      'b' nodes:  NH, X (and NFX where X == 0); lifecycle 'm'-only models
                  use NF for every node
      'h' nodes:  NH_h, X_h

    The returned params gain ``K`` or ``gamma`` (one entry per node; inf or
    0 on nodes without mosquitoes), ``a`` if absent, and for decoupled
    models ``NH`` and ``foi`` per node.

    Raises:
        ConfigError: invalid parameters, wrong per-node list lengths,
            unknown genotypes in ratios, X == 0 without NFX.
    """
    density = DensityDependence(density)
    model = places.model
    types = [lay.node_type for lay in places.nodes]
    idx_m = [i for i, t in enumerate(types) if t is NodeType.MOSQUITO]
    idx_b = [i for i, t in enumerate(types) if t is NodeType.BOTH]
    idx_h = [i for i, t in enumerate(types) if t is NodeType.HUMAN]

    params = dict(params)
    if model.is_epi and 'a' not in params and 'f' in params and 'Q' in params:
        params['a'] = param_value(params, 'f', t0) * param_value(params, 'Q', t0)
    phi = float(params.get('phi', 0.5))

    ratio_aq = cube.ratio_vector(pop_ratio_aq)
    ratio_f = cube.ratio_vector(pop_ratio_f)
    ratio_m = cube.ratio_vector(pop_ratio_m)

    n_nodes = places.n_nodes
    labels = _init_labels(places)
    init = np.full((n_nodes, len(labels)), np.nan)
    M0 = np.zeros(len(places))
    dd = np.full(n_nodes, np.inf if density is DensityDependence.LOGISTIC else 0.0)
    foi_nodes = np.zeros(n_nodes)
    human_state = np.zeros((n_nodes, 2)) if model is EpiModel.DECOUPLED else None
    nI = places.n_infection
    nELP = places.nE + places.nL + places.nP

    def mosquito_row(node: int, eq: LifecycleEquilibrium, sei: np.ndarray) -> None:
        lay = places.nodes[node]
        fill_mosquitoes(M0, lay, eq, sei, ratio_aq, ratio_f, ratio_m)
        init[node, :nELP + 2] = eq.vector()[:nELP + 2]
        init[node, nELP + 2:nELP + 2 + nI] = eq.females * (ratio_f @ sei)
        dd[node] = eq.density_parameter

    nG = cube.n_genotypes
    no_infection = np.zeros((nG, nI))
    no_infection[:, 0] = 1.0

    if idx_m:
        nf = _broadcast(NF, len(idx_m), 'NF')
        for k, node in enumerate(idx_m):
            local = _at_node(params, NODE_PARAMS, node, n_nodes, t0)
            eq = lifecycle_equilibrium(local, nf[k], density, phi, t0)
            mosquito_row(node, eq, no_infection)

    if idx_b:
        nh = _broadcast(NH, len(idx_b), 'NH')
        x = _broadcast(X, len(idx_b), 'X')
        nfx = None if NFX is None else _broadcast(NFX, len(idx_b), 'NFX')
        nEIP = int(param_value(params, 'nEIP', t0))
        c_mod, b_mod = cube.modifier('c'), cube.modifier('b')
        for k, node in enumerate(idx_b):
            local = _at_node(params, NODE_PARAMS, node, n_nodes, t0)
            a, c = param_value(local, 'a', t0), param_value(local, 'c', t0)
            qEIP, muF = param_value(local, 'qEIP', t0), param_value(local, 'muF', t0)
            nu = param_value(local, 'nu', t0)
            foi = a * c * x[k]
            sei = np.vstack([sei_distribution(foi * c_mod[g], qEIP, nEIP, muF)
                             for g in range(nG)])
            if model is EpiModel.SEIR:
                humans, iv = human_seir_equilibrium(nh[k], x[k], local, t=t0)
            else:
                humans, iv = human_sis_equilibrium(nh[k], x[k], local, t=t0)
            if x[k] == 0:
                if nfx is None:
                    raise ConfigError("human prevalence X is 0 at a node; set NFX "
                                      "to fix the female population there")
                nf_node = nfx[k]
            else:
                # infectious females weighted by transmission efficiency
                weight = float(np.sum(ratio_f * b_mod * sei[:, -1]))
                nf_node = iv / weight * (nu + muF) / nu
            eq = lifecycle_equilibrium(local, nf_node, density, phi, t0)
            mosquito_row(node, eq, sei)
            foi_nodes[node] = foi
            lay = places.nodes[node]
            if model is EpiModel.DECOUPLED:
                human_state[node] = (humans['S'], humans['I'])
            else:
                for comp, p in lay.humans.items():
                    M0[p] = humans[comp]
                    init[node, labels.index(f'H_{comp}')] = humans[comp]

    if idx_h:
        nh_h = _broadcast(NH_h, len(idx_h), 'NH_h')
        x_h = _broadcast(X_h, len(idx_h), 'X_h')
        for k, node in enumerate(idx_h):
            lay = places.nodes[node]
            split = {'S': nh_h[k] * (1 - x_h[k]), 'E': 0.0,
                     'I': nh_h[k] * x_h[k], 'R': 0.0}
            for comp, p in lay.humans.items():
                M0[p] = split[comp]
                init[node, labels.index(f'H_{comp}')] = split[comp]

    params['K' if density is DensityDependence.LOGISTIC else 'gamma'] = dd
    if model is EpiModel.DECOUPLED:
        params['NH'] = human_state.sum(axis=1)
        params['foi'] = foi_nodes

    return Equilibrium(
        params=params,
        init=init,
        init_labels=labels,
        M0=M0,
        human_state=human_state,
    )


def equilibrium_from_config(config, cube: InheritanceCube, places: PlaceSet,
                            params: Optional[Mapping[str, Any]] = None) -> Equilibrium:
    """solve_equilibrium() driven by a SimulationConfig."""
    from spn_genedrive.config import params_from_config

    lc, epi = config.lifecycle, config.epi
    return solve_equilibrium(
        params if params is not None else params_from_config(config),
        cube,
        places,
        NF=lc.NF,
        NH=epi.NH,
        X=epi.X,
        NFX=epi.NFX,
        NH_h=epi.NH_h,
        X_h=epi.X_h,
        density=lc.density,
        pop_ratio_aq=lc.pop_ratio_aq,
        pop_ratio_f=lc.pop_ratio_f,
        pop_ratio_m=lc.pop_ratio_m,
        t0=config.simulation.t0,
    )
