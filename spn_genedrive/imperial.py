"""Imperial College malaria model: parameters and coupled equilibrium.

The human side is the age- and heterogeneity-structured model of Griffin et
al. At equilibrium every age bin is solved sequentially:

  1. demography: proportion in each age bin under exponential mortality η
  2. per-bin immunity (pre-erythrocytic IB, detection ID, acquired clinical
     ICA, severe IVA), each a boosted/decaying recursion over age
  3. maternal immunity (ICM, IVM) inherited from the 20-year-old bracket
  4. the S/T/D/A/U/P human states, and from them the force of infection
     humans exert on mosquitoes, FOIv

The mosquito side is the SEI distribution under FOIv, and the number of
infectious mosquitoes sets the EIR humans experience. The two sides are
mutually dependent; `imperial_equilibrium` closes the loop either from a
target EIR or, as a true fixed point, from a target mosquito population.

Only the equilibrium lives here. The human ODE right-hand side is an
external plug-in (see spn_genedrive.human.HumanModel).

References:
  - Griffin J.T. et al. (2010) Reducing Plasmodium falciparum malaria
    transmission in Africa: a model-based evaluation of intervention
    strategies. PLoS Med 7(8).
  - Griffin J.T. et al. (2016) Potential for reduction of burden and local
    elimination of malaria by reducing Plasmodium falciparum malaria
    transmission. Lancet Infect Dis 16(4).
  - mrc-ide/deterministic-malaria-model, R/model_parameters.R
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, Mapping, Optional, Sequence

import numpy as np
from numpy.polynomial.hermite_e import hermegauss
from scipy.optimize import brentq

from spn_genedrive.cube import InheritanceCube
from spn_genedrive.equilibrium import (
    Equilibrium,
    lifecycle_equilibrium,
    sei_distribution,
    _init_labels,
    fill_mosquitoes,
)
from spn_genedrive.places import PlaceSet
from spn_genedrive.types import ConfigError, DensityDependence, EpiModel, NodeType

logger = logging.getLogger(__name__)

HUMAN_STATE_LABELS = ('S', 'T', 'D', 'A', 'U', 'P', 'ICA', 'IB', 'ID', 'IVA')


# ═══════════════════════════════════════════════════════════════════════
# PARAMETERS
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ImperialParams:
    """Imperial model parameter set (rates per day unless noted)."""
    # demography and biting heterogeneity
    eta: float = 1 / (21 * 365)     # death rate, 1/mean population age
    rho: float = 0.85               # age-dependent biting parameter
    a0: float = 2920.0              # age-dependent biting parameter
    sigma2: float = 1.67            # variance of log heterogeneity in biting
    max_age: float = 100 * 365
    # recovery / progression
    rA: float = 1 / 195             # leaving asymptomatic infection
    rT: float = 0.2                 # leaving treatment
    rD: float = 0.2                 # leaving clinical disease
    rU: float = 1 / 110.299         # recovering from subpatent infection
    rP: float = 1 / 15              # leaving prophylaxis
    dE: float = 12.0                # latent period of human infection
    delayGam: float = 12.5          # lag from parasites to infectious gametocytes
    # infectiousness to mosquitoes
    cD: float = 0.0676909
    cT: float = 0.322 * 0.0676909
    cU: float = 0.006203
    gamma1: float = 1.82425
    # detection immunity
    d1: float = 0.160527
    dID: float = 3650.0
    ID0: float = 1.577533
    kD: float = 0.476614
    uD: float = 9.44512
    aD: float = 8001.99
    fD0: float = 0.007055
    gammaD: float = 4.8183
    alphaA: float = 0.75735
    alphaU: float = 0.185624
    # pre-erythrocytic immunity
    b0: float = 0.590076
    b1: float = 0.5
    dB: float = 3650.0
    IB0: float = 43.8787
    kB: float = 2.15506
    uB: float = 7.19919
    # severe disease
    theta0: float = 0.0749886
    theta1: float = 0.0001191
    iv0: float = 1.09629
    kv: float = 2.00048
    av: float = 2493.41
    gammaV: float = 2.91282
    fvS: float = 0.141195
    pctMort: float = 0.215
    # clinical immunity
    phi0: float = 0.791666
    phi1: float = 0.000737
    dCA: float = 10950.0
    IC0: float = 18.02366
    kC: float = 2.36949
    uCA: float = 6.06349
    PM: float = 0.774368
    dCM: float = 67.6952
    dVM: float = 76.8365
    dVA: float = 30 * 365
    PVM: float = 0.195768
    uVA: float = 11.4321
    # mosquito feeding and life history
    tau1: float = 0.69              # host seeking duration
    tau2: float = 2.31              # resting duration after a feed
    muF: float = 0.132
    nEIP: int = 3
    qEIP: float = 1 / 10
    Q0: float = 0.92                # anthropophagy
    DY: float = 365.0
    qE: float = 1 / 3
    nE: int = 2
    qL: float = 1 / 7
    nL: int = 3
    qP: float = 1.0
    nP: int = 2
    muE: float = 0.05
    muL: float = 0.15
    muP: float = 0.05
    muM: float = 0.132
    eps: float = 58.9               # eggs per gonotrophic cycle
    nu: float = 1 / (4 / 24)
    NH: float = 1000.0
    # vector control
    thetaB: float = 0.89
    thetaI: float = 0.97
    r_llin: float = 0.56
    s_llin: float = 0.03
    r_irs: float = 0.60
    s_irs: float = 0.0
    extra: Mapping[str, Any] = field(default_factory=dict)

    @property
    def fv0(self) -> float:
        """Feeding rate."""
        return 1 / (self.tau1 + self.tau2)

    @property
    def av0(self) -> float:
        """Daily feeding rate on humans."""
        return self.Q0 * self.fv0

    @property
    def Surv0(self) -> float:
        """Probability of surviving the EIP."""
        q = self.nEIP * self.qEIP
        return (q / (q + self.muF)) ** self.nEIP

    @property
    def beta(self) -> float:
        """Egg-laying rate per female per day."""
        return self.eps * self.muF / (math.exp(self.muF / self.fv0) - 1)

    def as_params(self) -> Dict[str, Any]:
        """Flat mapping with derived values, usable by the hazard factory."""
        out = {f.name: getattr(self, f.name) for f in fields(self) if f.name != 'extra'}
        out.update(fv0=self.fv0, av0=self.av0, Surv0=self.Surv0, beta=self.beta,
                   a=self.av0)
        out.update(self.extra)
        return out


def imperial_params(**overrides: Any) -> ImperialParams:
    """Default Imperial parameters with overrides.

    Names that are not Imperial parameters are kept in ``extra`` (e.g.
    parameters of a user's human ODE).
    """
    known = {f.name for f in fields(ImperialParams)} - {'extra'}
    base = {k: v for k, v in overrides.items() if k in known}
    extra = {k: v for k, v in overrides.items() if k not in known}
    if 'cD' in base and 'cT' not in base:
        base['cT'] = 0.322 * base['cD']
    return ImperialParams(**base, extra=extra)


# ═══════════════════════════════════════════════════════════════════════
# HUMAN EQUILIBRIUM
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True, eq=False)
class ImperialHumanEquilibrium:
    """Human state (na × nh per compartment) and derived equilibrium values."""
    state: Mapping[str, np.ndarray]
    FOI: np.ndarray
    FOIv: float
    Iv: float
    Sv: float
    Ev: float
    mv0: float
    omega: float
    prevalence: float
    mortality: np.ndarray
    clinical_incidence: np.ndarray
    derived: Mapping[str, Any] = field(default_factory=dict)

    def state_matrix(self) -> np.ndarray:
        """(na·nh, 10) matrix, columns in HUMAN_STATE_LABELS order."""
        return np.column_stack([np.asarray(self.state[k]).ravel(order='F')
                                for k in HUMAN_STATE_LABELS])


def _age_bracket_20(age: np.ndarray, width: np.ndarray, DY: float):
    """Bins straddling age 20 years and the interpolation factor between them."""
    target = 20 * DY
    upper = 0
    for i in range(1, len(age)):
        if age[i] >= target and age[i - 1] < target:
            upper = i
    lower = upper - 1
    if lower < 0 or upper >= len(width):
        raise ConfigError("age_vector must contain interior age groups on both sides of 20 years")
    factor = (target - age[lower] - 0.5 * width[lower]) * 2 / (width[lower] + width[upper])
    return lower, upper, factor


def imperial_human_equilibrium(
    age_vector: Sequence[float],
    ft: float,
    eir: float,
    p: ImperialParams,
    het_brackets: int = 1,
) -> ImperialHumanEquilibrium:
    """Age-structured human equilibrium for an annual EIR.

    Args:
        age_vector: Lower bounds of the age groups in years, increasing.
        ft: Proportion of clinical cases treated.
        eir: Annual entomological inoculation rate (> 0).
        p: Imperial parameters.
        het_brackets: Number of biting-heterogeneity groups (Gauss–Hermite).

    Raises:
        ConfigError: non-positive EIR, ft outside [0, 1], bad age vector.
    """
    age_vector = np.asarray(age_vector, dtype=np.float64)
    if age_vector.ndim != 1 or age_vector.size < 3 or np.any(np.diff(age_vector) <= 0):
        raise ConfigError("age_vector must be a strictly increasing vector of at least 3 ages")
    if not 0 <= ft <= 1:
        raise ConfigError(f"ft must be in [0, 1], got {ft}")
    if not eir > 0:
        raise ConfigError(f"EIR must be positive, got {eir}")
    if het_brackets < 1:
        raise ConfigError("het_brackets must be >= 1")

    age = age_vector * p.DY
    na, nh = age.size, het_brackets

    width = np.diff(age)
    age_rate = np.append(1 / width, 0.0)
    den = np.empty(na)
    den[0] = 1 / (1 + age_rate[0] / p.eta)
    for i in range(na - 1):
        den[i + 1] = age_rate[i] * den[i] / (age_rate[i + 1] + p.eta)

    foi_age = 1 - p.rho * np.exp(-age / p.a0)
    omega = float(np.sum(foi_age * den))

    nodes, weights = hermegauss(nh)
    het_wt = weights / weights.sum()
    den_het = np.outer(den, het_wt)
    spread = np.exp(-p.sigma2 / 2 + np.sqrt(p.sigma2) * nodes)
    rel_foi = spread / np.sum(het_wt * spread)

    EIRd = eir / p.DY
    EIR_eq = np.outer(foi_age, rel_foi) * EIRd

    x_I = np.empty(na)
    x_I[0] = den[0] / p.eta
    for i in range(1, na):
        x_I[i] = den[i] / (den[i - 1] * age_rate[i - 1])
    fd = 1 - (1 - p.fD0) / (1 + (age / p.aD) ** p.gammaD)

    lower, upper, factor = _age_bracket_20(age, width, p.DY)

    IB = np.zeros((na, nh))
    FOI = np.zeros((na, nh))
    ID = np.zeros((na, nh))
    ICA = np.zeros((na, nh))
    IVA = np.zeros((na, nh))
    cA = np.zeros((na, nh))
    for j in range(nh):
        ib = idd = ica = iva = 0.0
        for i in range(na):
            e = EIR_eq[i, j]
            ib = (ib + e / (e * p.uB + 1) * x_I[i]) / (1 + x_I[i] / p.dB)
            if ib == 0:
                f = e * p.b0
            else:
                f = e * p.b0 * ((1 - p.b1) / (1 + (ib / p.IB0) ** p.kB) + p.b1)
            idd = (idd + f / (f * p.uD + 1) * x_I[i]) / (1 + x_I[i] / p.dID)
            ica = (ica + f / (f * p.uCA + 1) * x_I[i]) / (1 + x_I[i] / p.dCA)
            iva = (iva + f / (f * p.uVA + 1) * x_I[i]) / (1 + x_I[i] / p.dVA)
            IB[i, j], FOI[i, j], ID[i, j], ICA[i, j], IVA[i, j] = ib, f, idd, ica, iva
            p_det = p.d1 + (1 - p.d1) / (1 + fd[i] * (ID[i, j] / p.ID0) ** p.kD)
            cA[i, j] = p.cU + (p.cD - p.cU) * p_det ** p.gamma1

    # maternal immunity, after ICA/IVA are known for every age
    ICM = np.zeros((na, nh))
    IVM = np.zeros((na, nh))
    for j in range(nh):
        icm0 = p.PM * (ICA[lower, j] + factor * (ICA[upper, j] - ICA[lower, j]))
        ivm0 = p.PVM * (IVA[lower, j] + factor * (IVA[upper, j] - IVA[lower, j]))
        for i in range(na):
            ICM[i, j] = (icm0 if i == 0 else ICM[i - 1, j]) / (1 + x_I[i] / p.dCM)
            IVM[i, j] = (ivm0 if i == 0 else IVM[i - 1, j]) / (1 + x_I[i] / p.dVM)

    IC = ICM + ICA
    phi = p.phi0 * ((1 - p.phi1) / (1 + (IC / p.IC0) ** p.kC) + p.phi1)

    gamma = p.eta + np.append(age_rate[:na - 1], 0.0)
    delta = np.append(p.eta, age_rate[:na - 1])
    betaT = np.repeat((p.rT + gamma)[:, None], nh, axis=1)
    betaD = np.repeat((p.rD + gamma)[:, None], nh, axis=1)
    betaP = np.repeat((p.rP + gamma)[:, None], nh, axis=1)

    aT = FOI * phi * ft / betaT
    aD = FOI * phi * (1 - ft) / betaD
    aP = p.rT * aT / betaP

    Y = np.zeros((na, nh))
    T = np.zeros((na, nh))
    D = np.zeros((na, nh))
    P = np.zeros((na, nh))
    Y[0] = den_het[0] / (1 + aT[0] + aD[0] + aP[0])
    T[0] = aT[0] * Y[0]
    D[0] = aD[0] * Y[0]
    P[0] = aP[0] * Y[0]
    for j in range(nh):
        for i in range(1, na):
            carry_T = T[i - 1, j] / betaT[i, j]
            carry_D = D[i - 1, j] / betaD[i, j]
            carry_P = (p.rT * T[i - 1, j] / betaT[i, j] + P[i - 1, j]) / betaP[i, j]
            Y[i, j] = ((den_het[i, j] - delta[i] * (carry_T + carry_D + carry_P))
                       / (1 + aT[i, j] + aD[i, j] + aP[i, j]))
            T[i, j] = aT[i, j] * Y[i, j] + delta[i] * carry_T
            D[i, j] = aD[i, j] * Y[i, j] + delta[i] * carry_D
            P[i, j] = aP[i, j] * Y[i, j] + delta[i] * carry_P

    betaS = FOI + gamma[:, None]
    betaA = FOI * phi + p.rA + gamma[:, None]
    betaU = FOI + p.rU + gamma[:, None]

    A = np.zeros((na, nh))
    U = np.zeros((na, nh))
    S = np.zeros((na, nh))
    FOIvij = np.zeros((na, nh))
    for i in range(na):
        for j in range(nh):
            A_prev = 0.0 if i == 0 else A[i - 1, j]
            U_prev = 0.0 if i == 0 else U[i - 1, j]
            A[i, j] = ((delta[i] * A_prev + FOI[i, j] * (1 - phi[i, j]) * Y[i, j]
                        + p.rD * D[i, j])
                       / (betaA[i, j] + FOI[i, j] * (1 - phi[i, j])))
            U[i, j] = (p.rA * A[i, j] + delta[i] * U_prev) / betaU[i, j]
            S[i, j] = Y[i, j] - A[i, j] - U[i, j]
            FOIvij[i, j] = (foi_age[i] * p.av0
                            * (p.cT * T[i, j] + p.cD * D[i, j] + cA[i, j] * A[i, j]
                               + p.cU * U[i, j])
                            * rel_foi[j] / omega)

    FOIv = float(FOIvij.sum())
    Iv = FOIv * p.Surv0 / (FOIv + p.muF)
    Sv = p.muF * Iv / (FOIv * p.Surv0)
    Ev = 1 - Sv - Iv
    mv0 = omega * EIRd / (Iv * p.av0)
    prevalence = float(A.sum() + U.sum() + D.sum() + T.sum())

    fv = 1 - (1 - p.fvS) / (1 + (age / p.av) ** p.gammaV)
    immunity = ((IVA + IVM) / p.iv0) ** p.kv
    severe = (p.theta0 * (p.theta1 + (1 - p.theta1) / (1 + fv[:, None] * immunity))
              * (A + U + T + D))

    state = {'S': S, 'T': T, 'D': D, 'A': A, 'U': U, 'P': P,
             'ICA': ICA, 'IB': IB, 'ID': ID, 'IVA': IVA}
    derived = {
        'fd': fd, 'omega': omega, 'ft': ft, 'het_wt': het_wt, 'age_rate': age_rate,
        'foi_age': foi_age, 'rel_foi': rel_foi, 'x_I': x_I, 'ICM': ICM, 'IVM': IVM,
        'age_days': age, 'na': na, 'betaS': betaS,
    }
    return ImperialHumanEquilibrium(
        state=state,
        FOI=FOI,
        FOIv=FOIv,
        Iv=Iv,
        Sv=Sv,
        Ev=Ev,
        mv0=mv0,
        omega=omega,
        prevalence=prevalence,
        mortality=p.pctMort * severe,
        clinical_incidence=phi * FOI * (S + A + U),
        derived=derived,
    )


def prevalence_to_eir(
    prevalence: float,
    age_vector: Sequence[float],
    ft: float,
    p: ImperialParams,
    eir_bounds=(1e-3, 1000.0),
    xtol: float = 1e-8,
) -> float:
    """Annual EIR whose human equilibrium has the given parasite prevalence.

    Equilibrium prevalence increases with EIR; the root is bracketed in
    ``eir_bounds`` and found with Brent's method.

    Raises:
        ConfigError: the prevalence is not attainable within the bounds.
    """
    def excess(eir: float) -> float:
        return imperial_human_equilibrium(age_vector, ft, eir, p).prevalence - prevalence

    lo, hi = eir_bounds
    f_lo, f_hi = excess(lo), excess(hi)
    if f_lo > 0 or f_hi < 0:
        raise ConfigError(
            f"prevalence {prevalence} is not attainable for EIR in [{lo}, {hi}] "
            f"(range {f_lo + prevalence:.4g}..{f_hi + prevalence:.4g})"
        )
    return float(brentq(excess, lo, hi, xtol=xtol))


# ═══════════════════════════════════════════════════════════════════════
# COUPLED EQUILIBRIUM
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True, eq=False)
class ImperialEquilibrium:
    """Coupled human/mosquito equilibrium for a decoupled single-node model."""
    eir: float
    n_female: float
    human: ImperialHumanEquilibrium
    mosquito: Equilibrium
    cube: InheritanceCube


def _mosquito_eir(p: ImperialParams, FOIv: float, n_female: float, omega: float) -> float:
    """Annual EIR produced by n_female adult females under FOIv."""
    sei = sei_distribution(FOIv, p.qEIP, p.nEIP, p.muF)
    mated = n_female * p.nu / (p.nu + p.muF)
    infectious = mated * sei[-1]
    return p.DY * p.av0 * infectious / (p.NH * omega)


def imperial_equilibrium(
    age_vector: Sequence[float],
    ft: float,
    p: ImperialParams,
    cube: InheritanceCube,
    places: PlaceSet,
    eir: Optional[float] = None,
    n_female: Optional[float] = None,
    density: DensityDependence = DensityDependence.LOGISTIC,
    phi: float = 0.5,
    eir_bounds=(1e-3, 1000.0),
) -> ImperialEquilibrium:
    """Self-consistent human/mosquito equilibrium of a decoupled node.

    Give exactly one of:
      eir       the human side is solved for it and the number of adult
                females that produces it follows from the SEI distribution
      n_female  the EIR is the fixed point of EIR = m(h(EIR)), where h maps
                an EIR to FOIv through the human equilibrium and m maps FOIv
                to the EIR produced by n_female females; solved with brentq

    The returned cube carries cT/cU/cD transmission modifiers and the
    mosquito params gain ``foi`` (FOIv) and the human-derived quantities.
    """
    if (eir is None) == (n_female is None):
        raise ConfigError("give exactly one of eir or n_female")
    if places.model is not EpiModel.DECOUPLED:
        raise ConfigError("the Imperial equilibrium needs a decoupled place set")
    if places.n_nodes != 1 or places.nodes[0].node_type is not NodeType.BOTH:
        raise ConfigError("the Imperial equilibrium is defined for a single 'b' node")
    if places.nEIP != p.nEIP:
        raise ConfigError(f"place set nEIP={places.nEIP} differs from parameter nEIP={p.nEIP}")

    if eir is None:
        def gap(e: float) -> float:
            h = imperial_human_equilibrium(age_vector, ft, e, p)
            return _mosquito_eir(p, h.FOIv, n_female, h.omega) - e

        lo, hi = eir_bounds
        if gap(lo) < 0 or gap(hi) > 0:
            raise ConfigError(
                f"no EIR in [{lo}, {hi}] is consistent with {n_female} adult females"
            )
        eir = float(brentq(gap, lo, hi, xtol=1e-10))
        logger.debug("Imperial fixed point: EIR=%.6g for NF=%.6g", eir, n_female)

    human = imperial_human_equilibrium(age_vector, ft, eir, p)
    sei = sei_distribution(human.FOIv, p.qEIP, p.nEIP, p.muF)
    if n_female is None:
        infectious = eir * p.NH * human.omega / (p.DY * p.av0)
        n_female = infectious / sei[-1] * (p.nu + p.muF) / p.nu

    params = p.as_params()
    eq = lifecycle_equilibrium(params, n_female, density, phi)

    nG = cube.n_genotypes
    M0 = np.zeros(len(places))
    ratio = cube.ratio_vector(None)
    fill_mosquitoes(M0, places.nodes[0], eq, np.tile(sei, (nG, 1)), ratio, ratio, ratio)

    labels = _init_labels(places)
    nELP = places.nE + places.nL + places.nP
    init = np.full((1, len(labels)), np.nan)
    init[0, :nELP + 2] = eq.vector()[:nELP + 2]
    init[0, nELP + 2:] = eq.females * sei

    params.update(
        foi=np.array([human.FOIv]),
        NH=np.array([p.NH]),
        K=np.array([eq.density_parameter]) if density is DensityDependence.LOGISTIC else np.array([np.inf]),
        Iv_eq=human.Iv, Sv_eq=human.Sv, Ev_eq=human.Ev, mv0=human.mv0,
        FOIv_eq=human.FOIv, prev_eq=human.prevalence, omega=human.omega,
        b0=np.full(nG, p.b0), phi=phi,
    )
    if density is DensityDependence.LOTKA_VOLTERRA:
        params['gamma'] = np.array([eq.density_parameter])
        del params['K']

    mosquito = Equilibrium(
        params=params, init=init, init_labels=labels, M0=M0,
        human_state=human.state_matrix(),
    )
    augmented = cube.with_modifiers(
        cT=np.full(nG, p.cT), cU=np.full(nG, p.cU), cD=np.full(nG, p.cD),
    )
    return ImperialEquilibrium(eir=eir, n_female=n_female, human=human,
                               mosquito=mosquito, cube=augmented)
