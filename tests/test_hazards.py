"""Tests for spn_genedrive.hazards — rate laws, gating and time-varying rates."""

import warnings

import numpy as np
import pytest

from spn_genedrive.config import EpiSection, SimulationConfig, params_from_config
from spn_genedrive.cube import mendelian_cube
from spn_genedrive.hazards import RateLaw, build_hazards, evaluate_hazard
from spn_genedrive.movement import build_movement
from spn_genedrive.places import build_places
from spn_genedrive.transitions import build_transitions
from spn_genedrive.types import (
    ApproximationWarning,
    ConfigError,
    EpiModel,
    HazardMode,
    TransitionClass as TC,
)


def _params(model='lifecycle', **extra):
    params = params_from_config(SimulationConfig(epi=EpiSection(model=model)))
    params.update(extra)
    return params


@pytest.fixture
def cube():
    return mendelian_cube()


@pytest.fixture
def lifecycle(cube):
    places = build_places(cube, 2, 2, 2)
    return places, build_transitions(places, cube)


def _index(transitions, name):
    return [tr.name for tr in transitions].index(name)


# ── rate laws ────────────────────────────────────────────────────────

class TestRateLaws:
    def test_strategy_resolved_per_class(self, cube, lifecycle):
        places, trs = lifecycle
        hs = build_hazards(places, trs, cube, _params(K=1000.0))
        laws = {rec.tclass: rec.law for rec in hs.records}
        assert laws[TC.LARVA_MORTALITY] is RateLaw.LARVAL_LOGISTIC
        assert laws[TC.MATING] is RateLaw.MATING
        assert laws[TC.EGG_ADVANCE] is RateLaw.MASS_ACTION

    def test_erlang_advance_rate(self, cube, lifecycle):
        places, trs = lifecycle
        hs = build_hazards(places, trs, cube, _params(K=1000.0))
        M = np.zeros(len(places))
        M[places.lookup('E1_AA')] = 10.0
        h = hs(0.0, M)
        j = _index(trs, 'egg_advance:E1_AA->E2_AA')
        assert h[j] == pytest.approx(10.0 * 2 * 0.25)

    def test_logistic_larval_mortality(self, cube, lifecycle):
        places, trs = lifecycle
        params = _params(K=200.0)
        hs = build_hazards(places, trs, cube, params)
        M = np.zeros(len(places))
        M[places.lookup('L1_AA')] = 30.0
        M[places.lookup('L2_aa')] = 70.0
        j = _index(trs, 'larva_death:L1_AA')
        assert hs(0.0, M)[j] == pytest.approx(params['muL'] * (1 + 100.0 / 200.0) * 30.0)

    def test_lotka_volterra_larval_mortality(self, cube, lifecycle):
        places, trs = lifecycle
        params = _params(gamma=0.001)
        hs = build_hazards(places, trs, cube, params)
        M = np.zeros(len(places))
        M[places.lookup('L1_AA')] = 100.0
        j = _index(trs, 'larva_death:L1_AA')
        assert hs(0.0, M)[j] == pytest.approx((params['muL'] + 0.001 * 100.0) * 100.0)

    def test_mating_by_male_share(self, cube, lifecycle):
        places, trs = lifecycle
        params = _params(K=1000.0)
        hs = build_hazards(places, trs, cube, params)
        M = np.zeros(len(places))
        M[places.lookup('U_AA')] = 10.0
        M[places.lookup('M_AA')] = 30.0
        M[places.lookup('M_aa')] = 10.0
        h = hs(0.0, M)
        assert h[_index(trs, 'mate:U_AA->F_AA_aa|M_aa')] == pytest.approx(
            params['nu'] * 10.0 * 0.25)
        assert h[_index(trs, 'mate:U_AA->F_AA_Aa|M_Aa')] == 0.0

    def test_mating_preference(self, cube):
        cube = cube.with_modifiers(eta=[1.0, 1.0, 3.0])
        places = build_places(cube, 2, 2, 2)
        trs = build_transitions(places, cube)
        params = _params(K=1000.0)
        hs = build_hazards(places, trs, cube, params)
        M = np.zeros(len(places))
        M[places.lookup('U_AA')] = 10.0
        M[places.lookup('M_AA')] = 10.0
        M[places.lookup('M_aa')] = 10.0
        h = hs(0.0, M)
        assert h[_index(trs, 'mate:U_AA->F_AA_aa|M_aa')] == pytest.approx(
            params['nu'] * 10.0 * 0.75)

    def test_no_males_no_mating(self, cube, lifecycle):
        places, trs = lifecycle
        hs = build_hazards(places, trs, cube, _params(K=1000.0))
        M = np.zeros(len(places))
        M[places.lookup('U_AA')] = 10.0
        h = hs(0.0, M)
        mating = [j for j, tr in enumerate(trs) if tr.tclass is TC.MATING]
        assert np.all(h[mating] == 0.0)
        assert np.all(np.isfinite(h))

    def test_oviposition_weighted_by_offspring_probability(self, cube, lifecycle):
        places, trs = lifecycle
        params = _params(K=1000.0)
        hs = build_hazards(places, trs, cube, params)
        M = np.zeros(len(places))
        M[places.lookup('F_Aa_Aa')] = 8.0
        h = hs(0.0, M)
        assert h[_index(trs, 'oviposit:F_Aa_Aa->E1_Aa')] == pytest.approx(
            params['beta'] * 8.0 * 0.5)

    def test_genotype_mortality_modifier(self, cube):
        cube = cube.with_modifiers(omega=[1.0, 1.0, 2.0])
        places = build_places(cube, 2, 2, 2)
        trs = build_transitions(places, cube)
        params = _params(K=1000.0)
        hs = build_hazards(places, trs, cube, params)
        M = np.ones(len(places))
        assert hs(0.0, M)[_index(trs, 'death:M_aa')] == pytest.approx(2 * params['muM'])

    def test_human_infection_uses_infectious_females(self, cube):
        places = build_places(cube, 2, 2, 2, nEIP=2, model=EpiModel.SIS)
        trs = build_transitions(places, cube)
        params = _params('SIS', K=1000.0)
        hs = build_hazards(places, trs, cube, params)
        M = np.zeros(len(places))
        M[places.lookup('H_S')] = 900.0
        M[places.lookup('H_I')] = 100.0
        M[places.lookup('F_AA_AA_I')] = 50.0
        M[places.lookup('F_AA_AA_S')] = 20.0
        h = hs(0.0, M)
        a, b, c = params['a'], params['b'], params['c']
        assert h[_index(trs, 'human_infect:H_S->H_I|F_AA_AA_I')] == pytest.approx(
            a * b * 50.0 * 900.0 / 1000.0)
        assert h[_index(trs, 'infect:F_AA_AA_S->F_AA_AA_E1|H_I')] == pytest.approx(
            a * c * 20.0 * 100.0 / 1000.0)

    def test_decoupled_external_foi(self, cube):
        places = build_places(cube, 2, 2, 2, nEIP=2, model=EpiModel.DECOUPLED)
        trs = build_transitions(places, cube)
        hs = build_hazards(places, trs, cube, _params('decoupled', K=1000.0, foi=[0.02]))
        M = np.zeros(len(places))
        M[places.lookup('F_AA_AA_S')] = 10.0
        j = _index(trs, 'infect:F_AA_AA_S->F_AA_AA_E1')
        h = hs(0.0, M)
        assert h[j] == pytest.approx(0.2)
        assert hs(0.0, M, foi=np.array([0.5]))[j] == pytest.approx(5.0)

    def test_migration_rate(self, cube):
        places = build_places(cube, 2, 2, 2, node_types=['m', 'm', 'm'])
        movement = build_movement([[0, 0.25, 0.75], [1, 0, 0], [1, 0, 0]],
                                  move_female=0.0, move_male=[0.2, 0.0, 0.0])
        trs = build_transitions(places, cube, movement)
        hs = build_hazards(places, trs, cube, _params(K=1000.0), movement=movement)
        M = np.zeros(len(places))
        M[places.lookup('M_AA_1')] = 40.0
        h = hs(0.0, M)
        assert h[_index(trs, 'move_male:M_AA_1->M_AA_3')] == pytest.approx(0.2 * 0.75 * 40)

    def test_vector_matches_per_transition_hazards(self, cube):
        places = build_places(cube, 2, 2, 2, nEIP=2, model=EpiModel.SIS,
                              node_types=['b', 'b'])
        movement = build_movement([[0, 1], [1, 0]], move_female=0.05,
                                  move_male=0.1, move_human=0.01)
        trs = build_transitions(places, cube, movement)
        params = _params('SIS', K=[800.0, 1200.0], muL=lambda t: 0.1 + 0.01 * t)
        rng = np.random.default_rng(3)
        M = rng.integers(0, 50, size=len(places)).astype(float)
        for mode in HazardMode:
            hs = build_hazards(places, trs, cube, params, mode=mode, movement=movement)
            vec = hs(2.0, M)
            single = np.array([hz(2.0, M) for hz in hs])
            np.testing.assert_allclose(vec, single, rtol=1e-12)
            pure = np.array([evaluate_hazard(r, hs.context, 2.0, M) for r in hs.records])
            np.testing.assert_allclose(vec, pure, rtol=1e-12)


# ── modes ────────────────────────────────────────────────────────────

class TestModes:
    def test_exact_gates_on_input_tokens(self, cube, lifecycle):
        places, trs = lifecycle
        M = np.zeros(len(places))
        M[places.lookup('M_AA')] = 0.5
        j = _index(trs, 'death:M_AA')
        exact = build_hazards(places, trs, cube, _params(K=1000.0), mode='exact')
        approx = build_hazards(places, trs, cube, _params(K=1000.0), mode='approximate')
        assert exact(0.0, M)[j] == 0.0
        assert approx(0.0, M)[j] > 0.0

    def test_exact_mating_needs_a_male_token(self, cube, lifecycle):
        places, trs = lifecycle
        M = np.zeros(len(places))
        M[places.lookup('U_AA')] = 3.0
        M[places.lookup('M_AA')] = 1.0
        hs = build_hazards(places, trs, cube, _params(K=1000.0), mode='exact')
        h = hs(0.0, M)
        assert h[_index(trs, 'mate:U_AA->F_AA_AA|M_AA')] > 0
        assert h[_index(trs, 'mate:U_AA->F_AA_aa|M_aa')] == 0

    def test_approximate_clips_below_tolerance(self, cube, lifecycle):
        places, trs = lifecycle
        M = np.zeros(len(places))
        M[places.lookup('M_AA')] = 1e-14
        hs = build_hazards(places, trs, cube, _params(K=1000.0), tolerance=1e-12)
        assert hs(0.0, M)[_index(trs, 'death:M_AA')] == 0.0

    def test_coarse_tolerance_warns(self, cube, lifecycle):
        places, trs = lifecycle
        with pytest.warns(ApproximationWarning, match="coarse"):
            build_hazards(places, trs, cube, _params(K=1000.0), tolerance=1e-3)

    def test_fine_tolerance_silent(self, cube, lifecycle):
        places, trs = lifecycle
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            build_hazards(places, trs, cube, _params(K=1000.0), tolerance=1e-10)

    def test_mode_recorded(self, cube, lifecycle):
        places, trs = lifecycle
        hs = build_hazards(places, trs, cube, _params(K=1000.0), mode=HazardMode.EXACT)
        assert hs.mode is HazardMode.EXACT
        assert len(hs) == len(trs)


# ── time-varying parameters ──────────────────────────────────────────

class TestTimeVarying:
    def test_callable_evaluated_every_call(self, cube, lifecycle):
        places, trs = lifecycle
        params = _params(K=1000.0, muE=lambda t: 0.05 * (1 + np.sin(t)))
        hs = build_hazards(places, trs, cube, params, time_varying=['muE'])
        M = np.zeros(len(places))
        M[places.lookup('E1_AA')] = 10.0
        j = _index(trs, 'egg_death:E1_AA')
        assert hs(0.0, M)[j] == pytest.approx(0.5)
        assert hs(np.pi / 2, M)[j] == pytest.approx(1.0)

    def test_per_node_callable(self, cube):
        places = build_places(cube, 2, 2, 2, node_types=['m', 'm'])
        trs = build_transitions(places, cube)
        params = _params(K=1000.0, beta=lambda t: np.array([10.0, 20.0]) * (1 + t))
        hs = build_hazards(places, trs, cube, params)
        M = np.zeros(len(places))
        M[places.lookup('F_AA_AA_2')] = 1.0
        assert hs(1.0, M)[_index(trs, 'oviposit:F_AA_AA_2->E1_AA_2')] == pytest.approx(40.0)

    def test_declared_but_constant(self, cube, lifecycle):
        places, trs = lifecycle
        with pytest.raises(ConfigError, match="declared time-varying"):
            build_hazards(places, trs, cube, _params(K=1000.0), time_varying=['muL'])

    def test_phi_must_be_constant(self, cube, lifecycle):
        places, trs = lifecycle
        with pytest.raises(ConfigError, match="phi"):
            build_hazards(places, trs, cube, _params(K=1000.0, phi=lambda t: 0.5))

    def test_shape_cannot_vary(self, cube, lifecycle):
        places, trs = lifecycle
        with pytest.raises(ConfigError, match="nE"):
            build_hazards(places, trs, cube, _params(K=1000.0, nE=lambda t: 2))


# ── missing parameters ───────────────────────────────────────────────

class TestMissingParameters:
    def test_missing_density_parameter(self, cube, lifecycle):
        places, trs = lifecycle
        with pytest.raises(ConfigError, match="requires parameter 'K'"):
            build_hazards(places, trs, cube, _params(), density='logistic')

    def test_cannot_infer_density(self, cube, lifecycle):
        places, trs = lifecycle
        with pytest.raises(ConfigError, match="K.*gamma"):
            build_hazards(places, trs, cube, _params())

    def test_missing_rate(self, cube, lifecycle):
        places, trs = lifecycle
        params = _params(K=1000.0)
        del params['beta']
        with pytest.raises(ConfigError, match="missing parameter 'beta'"):
            build_hazards(places, trs, cube, params)

    def test_decoupled_needs_foi(self, cube):
        places = build_places(cube, 2, 2, 2, nEIP=2, model=EpiModel.DECOUPLED)
        trs = build_transitions(places, cube)
        with pytest.raises(ConfigError, match="foi"):
            build_hazards(places, trs, cube, _params('decoupled', K=1000.0))

    def test_migration_needs_movement(self, cube):
        places = build_places(cube, 2, 2, 2, node_types=['m', 'm'])
        movement = build_movement([[0, 1], [1, 0]], move_male=0.1)
        trs = build_transitions(places, cube, movement)
        with pytest.raises(ConfigError, match="movement"):
            build_hazards(places, trs, cube, _params(K=1000.0))
