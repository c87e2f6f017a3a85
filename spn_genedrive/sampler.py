"""Trajectory sampler: advances a marking under one update rule.

Update rules (SamplerKind):

  ode            dM/dt = S·h(t, M), integrated with scipy's solve_ivp
  tau            M += S·k,  k_j ~ Poisson(h_j·τ)  (fixed leap τ = dt_stoch)
  cle            M += S·(h·τ + sqrt(h·τ)·ξ),  ξ ~ N(0, 1)
  dm             Gillespie direct method, one firing at a time
  ode_decoupled  ode for mosquitoes + external human ODE
  tau_decoupled  tau for mosquitoes + external human ODE

Decoupled rules are a first-order operator split: at the start of each
macro step the human state fixes the FOI on susceptible mosquitoes and the
infectious mosquitoes fix the human model's coupling input; both systems
then advance independently to the end of the step. The splitting error is
O(dt) and shrinks as dt is reduced.

Output is recorded every dt from t0 to tmax. Macro steps are split at event
and batch-migration times so those are applied exactly when scheduled; the
marking recorded at an output time includes events at that time.

Negative updates:
  tau  a leap that would drive a place negative has its firings capped
       transition by transition against the start-of-leap marking
  cle  negative entries after an update are clamped to zero
Both are counted on the trajectory (``n_corrections``) and logged at DEBUG.

The sampler is a small state machine: IDLE → STEPPING ⇄ EVENT_APPLICATION
→ DONE, or FAILED after a NumericalFailure.

References:
  - Gillespie D.T. (1977) Exact stochastic simulation of coupled chemical
    reactions. J Phys Chem 81:2340-2361.
  - Gillespie D.T. (2001) Approximate accelerated stochastic simulation of
    chemically reacting systems. J Chem Phys 115:1716-1733.
  - Gillespie D.T. (2000) The chemical Langevin equation.
    J Chem Phys 113:297-306.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np
from scipy.integrate import solve_ivp

from spn_genedrive.events import EventSchedule, apply_events
from spn_genedrive.hazards import HazardSet
from spn_genedrive.human import HumanModel
from spn_genedrive.movement import BatchMigration, apply_batch_migration
from spn_genedrive.places import PlaceSet
from spn_genedrive.stoichiometry import Stoichiometry
from spn_genedrive.trajectory import Trajectory
from spn_genedrive.types import (
    ConfigError,
    EpiModel,
    NumericalFailure,
    SamplerKind,
    node_suffix,
)

logger = logging.getLogger(__name__)

TIME_EPS: float = 1e-9


class SamplerState(Enum):
    IDLE = 'idle'
    STEPPING = 'stepping'
    EVENT_APPLICATION = 'event_application'
    DONE = 'done'
    FAILED = 'failed'


def output_times(t0: float, tmax: float, dt: float) -> np.ndarray:
    """t0, t0+dt, ... up to tmax (tmax itself always included)."""
    if dt <= 0:
        raise ConfigError(f"dt must be positive, got {dt}")
    if tmax < t0:
        raise ConfigError(f"tmax ({tmax}) must not precede t0 ({t0})")
    n = int(np.floor((tmax - t0) / dt + TIME_EPS))
    times = t0 + dt * np.arange(n + 1)
    if tmax - times[-1] > TIME_EPS * max(1.0, abs(tmax)):
        times = np.append(times, tmax)
    else:
        times[-1] = tmax
    return times


class TrajectorySampler:
    """Runs one trajectory of an SPN under a chosen update rule.

    Args:
        kind: Update rule; see SamplerKind.
        places: Place set (names, and node layout for decoupled coupling).
        stoich: Stoichiometry of the net.
        hazards: Hazards built in the mode the rule requires
            (exact for tau/dm, approximate for ode/cle).
        dt: Output (and macro-step) interval.
        dt_stoch: Leap size of tau and cle.
        events: Scheduled place modifications.
        batch_migration: Scheduled inter-node batch moves.
        human_model, human_params: External human ODE (decoupled rules).
        track_firings: Record cumulative firing counts per transition.
        ode_method, rtol, atol: solve_ivp settings.
        rng: Random stream of stochastic rules.
    """

    def __init__(
        self,
        kind: Union[str, SamplerKind],
        places: PlaceSet,
        stoich: Stoichiometry,
        hazards: HazardSet,
        dt: float = 1.0,
        dt_stoch: float = 0.1,
        events: Optional[EventSchedule] = None,
        batch_migration: Sequence[BatchMigration] = (),
        human_model: Optional[HumanModel] = None,
        human_params=None,
        track_firings: bool = False,
        ode_method: str = 'LSODA',
        rtol: float = 1e-6,
        atol: float = 1e-6,
        rng: Optional[np.random.Generator] = None,
    ):
        kind = SamplerKind(kind)
        if hazards.mode is not kind.hazard_mode:
            raise ConfigError(
                f"sampler '{kind.value}' needs {kind.hazard_mode.value} hazards, "
                f"got {hazards.mode.value}"
            )
        if len(hazards) != stoich.shape[1]:
            raise ConfigError("hazards and stoichiometry disagree on the number of transitions")
        if kind.is_decoupled:
            if places.model is not EpiModel.DECOUPLED:
                raise ConfigError(f"sampler '{kind.value}' needs a decoupled model")
            if human_model is None:
                raise ConfigError(f"sampler '{kind.value}' needs a human model")
        elif places.model is EpiModel.DECOUPLED:
            raise ConfigError(
                f"decoupled models need a decoupled sampler, got '{kind.value}'"
            )
        if track_firings and not kind.is_stochastic:
            raise ConfigError("firing counts are only recorded by stochastic samplers")
        if kind.is_stochastic and rng is None:
            raise ConfigError(f"sampler '{kind.value}' needs a random generator")
        if dt_stoch <= 0:
            raise ConfigError(f"dt_stoch must be positive, got {dt_stoch}")

        self.kind = kind
        self.places = places
        self.stoich = stoich
        self.hazards = hazards
        self.dt = float(dt)
        self.dt_stoch = float(dt_stoch)
        self.events = events if events is not None else EventSchedule()
        self.batch_migration = tuple(batch_migration)
        self.human_model = human_model
        self.human_params = human_params
        self.track_firings = track_firings
        self.ode_method = ode_method
        self.rtol = rtol
        self.atol = atol
        self.rng = rng

        self.state = SamplerState.IDLE
        self.step = 0
        self.n_corrections = 0

        self._S = stoich.S.tocsr()
        self._columns: List[Tuple[np.ndarray, np.ndarray]] = [
            stoich.column(j) for j in range(stoich.shape[1])
        ]
        cons = stoich.consumption()
        self._consumed = [
            (cons.indices[cons.indptr[j]:cons.indptr[j + 1]],
             cons.data[cons.indptr[j]:cons.indptr[j + 1]])
            for j in range(cons.shape[1])
        ]
        if kind.is_decoupled:
            # infectious female places per node, shape (n_nodes, nG, nG)
            nG = len(places.genotypes)
            self._infectious = np.stack([
                lay.females[-1] if lay.has_mosquitoes
                else np.zeros((nG, nG), dtype=np.intp)
                for lay in places.nodes
            ])
            self._has_mosquitoes = np.array([lay.has_mosquitoes for lay in places.nodes])

    # ─── checks ──────────────────────────────────────────────────────────

    def _fail(self, t: float, cause: str) -> NumericalFailure:
        self.state = SamplerState.FAILED
        logger.error("sampler '%s' failed at step %d (t=%g): %s",
                     self.kind.value, self.step, t, cause)
        return NumericalFailure(self.step, t, cause)

    def _rates(self, t: float, M: np.ndarray, foi=None) -> np.ndarray:
        h = self.hazards(t, M, foi)
        bad = np.flatnonzero(~np.isfinite(h))
        if bad.size:
            raise self._fail(t, f"non-finite hazard of transition "
                                f"'{self.hazards.names[bad[0]]}'")
        bad = np.flatnonzero(h < 0)
        if bad.size:
            raise self._fail(t, f"negative hazard of transition "
                                f"'{self.hazards.names[bad[0]]}'")
        return h

    def _check(self, t: float, M: np.ndarray, H: Optional[np.ndarray] = None) -> None:
        bad = np.flatnonzero(~np.isfinite(M))
        if bad.size:
            raise self._fail(t, f"non-finite marking at place '{self.places.names[bad[0]]}'")
        if H is not None:
            bad = np.flatnonzero(~np.isfinite(H))
            if bad.size:
                raise self._fail(t, f"non-finite human state at "
                                    f"'{self.human_labels()[bad[0]]}'")

    # ─── update rules ────────────────────────────────────────────────────

    def _ode(self, t_a: float, t_b: float, M: np.ndarray, foi=None) -> np.ndarray:
        S, hazards = self._S, self.hazards

        def rhs(t, y):
            return S @ hazards(t, y, foi)

        sol = solve_ivp(rhs, (t_a, t_b), M, method=self.ode_method,
                        rtol=self.rtol, atol=self.atol)
        if not sol.success:
            raise self._fail(t_a, f"ODE integration failed: {sol.message}")
        return sol.y[:, -1]

    def _substeps(self, t_a: float, t_b: float):
        n = max(1, int(np.ceil((t_b - t_a) / self.dt_stoch - TIME_EPS)))
        tau = (t_b - t_a) / n
        return [(t_a + i * tau, tau) for i in range(n)]

    def _cap_firings(self, M: np.ndarray, k: np.ndarray) -> np.ndarray:
        """Reduce firings so no place is consumed beyond its tokens."""
        avail = M.copy()
        for j in np.nonzero(k)[0]:
            idx, w = self._consumed[j]
            if idx.size == 0:
                continue
            cap = max(np.floor(np.min(avail[idx] / w)), 0.0)
            if k[j] > cap:
                k[j] = cap
            avail[idx] -= k[j] * w
        return k

    def _tau(self, t_a: float, t_b: float, M: np.ndarray, fired, foi=None) -> np.ndarray:
        for t, tau in self._substeps(t_a, t_b):
            h = self._rates(t, M, foi)
            k = self.rng.poisson(h * tau).astype(np.float64)
            M_new = M + self._S @ k
            if np.any(M_new < 0):
                k = self._cap_firings(M, k)
                M_new = M + self._S @ k
                self.n_corrections += 1
                logger.debug("tau leap at t=%g capped to avoid negative tokens", t)
            M = M_new
            if fired is not None:
                fired += k
        return M

    def _cle(self, t_a: float, t_b: float, M: np.ndarray, fired) -> np.ndarray:
        for t, tau in self._substeps(t_a, t_b):
            mean = self._rates(t, M) * tau
            k = mean + np.sqrt(mean) * self.rng.standard_normal(mean.size)
            M = M + self._S @ k
            negative = M < 0
            if negative.any():
                M[negative] = 0.0
                self.n_corrections += 1
                logger.debug("CLE step at t=%g clamped %d negative places",
                             t, int(negative.sum()))
            if fired is not None:
                fired += k
        return M

    def _direct_method(self, t_a: float, t_b: float, M: np.ndarray, fired) -> np.ndarray:
        M = M.copy()
        t = t_a
        while True:
            h = self._rates(t, M)
            a0 = h.sum()
            if a0 <= 0:
                return M
            t += self.rng.exponential(1.0 / a0)
            if t >= t_b:
                return M
            j = int(np.searchsorted(np.cumsum(h), self.rng.random() * a0, side='right'))
            j = min(j, len(h) - 1)
            idx, delta = self._columns[j]
            M[idx] += delta
            if fired is not None:
                fired[j] += 1

    # ─── decoupled coupling ──────────────────────────────────────────────

    def _coupling(self, M: np.ndarray) -> np.ndarray:
        """Infectious females per node and female genotype."""
        Iv = M[self._infectious].sum(axis=2)
        Iv[~self._has_mosquitoes] = 0.0
        return Iv

    def _humans(self, t_a: float, t_b: float, H: np.ndarray, coupling: np.ndarray) -> np.ndarray:
        shape = H.shape
        model, params = self.human_model, self.human_params

        def rhs(t, y):
            return model.derivative(t, y.reshape(shape), coupling, params).ravel()

        sol = solve_ivp(rhs, (t_a, t_b), H.ravel(), method=self.ode_method,
                        rtol=self.rtol, atol=self.atol)
        if not sol.success:
            raise self._fail(t_a, f"human ODE integration failed: {sol.message}")
        return sol.y[:, -1].reshape(shape)

    # ─── driver ──────────────────────────────────────────────────────────

    def _advance(self, t_a: float, t_b: float, M: np.ndarray, H, fired):
        if t_b - t_a <= TIME_EPS:
            return M, H
        self.step += 1
        kind = self.kind
        if kind is SamplerKind.ODE:
            M = self._ode(t_a, t_b, M)
        elif kind is SamplerKind.TAU:
            M = self._tau(t_a, t_b, M, fired)
        elif kind is SamplerKind.CLE:
            M = self._cle(t_a, t_b, M, fired)
        elif kind is SamplerKind.DM:
            M = self._direct_method(t_a, t_b, M, fired)
        else:
            foi = self.human_model.mosquito_foi(H, self.human_params, t_a)
            coupling = self._coupling(M)
            if kind is SamplerKind.ODE_DECOUPLED:
                M = self._ode(t_a, t_b, M, foi)
            else:
                M = self._tau(t_a, t_b, M, fired, foi)
            H = self._humans(t_a, t_b, H, coupling)
        self._check(t_b, M, H)
        return M, H

    def _apply_scheduled(self, t: float, M: np.ndarray) -> None:
        due = self.events.at(t, TIME_EPS)
        moves = [b for b in self.batch_migration if abs(b.time - t) <= TIME_EPS]
        if not due and not moves:
            return
        self.state = SamplerState.EVENT_APPLICATION
        rng = self.rng if self.kind.is_stochastic else None
        apply_events(M, due, rng)
        for batch in moves:
            apply_batch_migration(M, self.places, batch, rng)
        logger.debug("applied %d events and %d batch migrations at t=%g",
                     len(due), len(moves), t)
        self.state = SamplerState.STEPPING

    def _scheduled_between(self, t_a: float, t_b: float) -> List[float]:
        times = set(self.events.between(t_a, t_b))
        times.update(b.time for b in self.batch_migration if t_a < b.time <= t_b)
        return sorted(times)

    def human_labels(self) -> Tuple[str, ...]:
        if not self.kind.is_decoupled:
            return ()
        suffix = [node_suffix(i) if self.places.network else ''
                  for i in range(self.places.n_nodes)]
        return tuple(f'H_{c}{s}' for s in suffix for c in self.human_model.labels)

    def run(self, M0: np.ndarray, t0: float, tmax: float,
            human_state: Optional[np.ndarray] = None) -> Trajectory:
        """Sample one trajectory from marking M0.

        Stochastic rules round M0 to whole tokens first. The input arrays
        are never modified.

        Raises:
            ConfigError: bad times, wrong marking length, missing human state.
            NumericalFailure: non-finite state or failed integration.
        """
        if self.state is not SamplerState.IDLE:
            raise ConfigError("a sampler runs a single trajectory; build a new one")
        times = output_times(t0, tmax, self.dt)
        M = np.array(M0, dtype=np.float64)
        if M.shape != (len(self.places),):
            raise ConfigError(f"marking must have {len(self.places)} entries, got {M.shape}")
        if np.any(M < 0):
            raise ConfigError("initial marking has negative entries")
        if self.kind.is_stochastic:
            M = np.rint(M)
        H = None
        if self.kind.is_decoupled:
            if human_state is None:
                raise ConfigError(f"sampler '{self.kind.value}' needs an initial human state")
            H = self.human_model.check_state(human_state, self.places.n_nodes)

        n_trans = self.stoich.shape[1]
        fired = np.zeros(n_trans) if self.track_firings else None
        states = np.empty((len(times), len(M)))
        human = np.empty((len(times), H.size)) if H is not None else None
        firings = np.zeros((len(times), n_trans)) if fired is not None else None

        logger.info("sampler '%s': %d places, %d transitions, t=[%g, %g], dt=%g",
                    self.kind.value, len(M), n_trans, t0, tmax, self.dt)
        self.state = SamplerState.STEPPING
        self._apply_scheduled(times[0], M)
        self._check(times[0], M, H)
        states[0] = M
        if human is not None:
            human[0] = H.ravel()

        for i in range(1, len(times)):
            t = times[i - 1]
            for tau in self._scheduled_between(t, times[i]):
                M, H = self._advance(t, tau, M, H, fired)
                self._apply_scheduled(tau, M)
                t = tau
            M, H = self._advance(t, times[i], M, H, fired)
            states[i] = M
            if human is not None:
                human[i] = H.ravel()
            if firings is not None:
                firings[i] = fired

        self.state = SamplerState.DONE
        if self.n_corrections:
            logger.debug("sampler '%s' made %d negative-population corrections",
                         self.kind.value, self.n_corrections)
        logger.info("sampler '%s' finished after %d steps", self.kind.value, self.step)
        return Trajectory(
            times=times,
            place_names=self.places.names,
            states=states,
            human_labels=self.human_labels(),
            human_state=human,
            firings=firings,
            n_corrections=self.n_corrections,
            meta={'sampler': self.kind.value},
        )


def sim_trajectory(
    M0: np.ndarray,
    places: PlaceSet,
    stoich: Stoichiometry,
    hazards: HazardSet,
    t0: float,
    tmax: float,
    sampler: Union[str, SamplerKind] = SamplerKind.ODE,
    human_state: Optional[np.ndarray] = None,
    **kwargs,
) -> Trajectory:
    """Build a TrajectorySampler and run it once. kwargs go to the sampler."""
    runner = TrajectorySampler(sampler, places, stoich, hazards, **kwargs)
    return runner.run(M0, t0, tmax, human_state)
