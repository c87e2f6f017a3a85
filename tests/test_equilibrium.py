"""Tests for spn_genedrive.equilibrium — stationary markings."""

import numpy as np
import pytest

from spn_genedrive.config import EpiSection, SimulationConfig, params_from_config
from spn_genedrive.cube import mendelian_cube
from spn_genedrive.equilibrium import (
    human_seir_equilibrium,
    human_sis_equilibrium,
    lifecycle_equilibrium,
    param_value,
    sei_distribution,
    solve_equilibrium,
)
from spn_genedrive.hazards import build_hazards
from spn_genedrive.places import build_places
from spn_genedrive.stoichiometry import build_stoichiometry
from spn_genedrive.transitions import build_transitions
from spn_genedrive.types import ConfigError, DensityDependence, EpiModel, Stage


def _params(model='lifecycle'):
    return params_from_config(SimulationConfig(epi=EpiSection(model=model)))


def _net(model, nEIP=None, node_types=None):
    cube = mendelian_cube()
    places = build_places(cube, 2, 3, 2, nEIP=nEIP, model=model, node_types=node_types)
    transitions = build_transitions(places, cube)
    return cube, places, transitions, build_stoichiometry(places, transitions)


def _assert_stationary(eq, cube, places, transitions, stoich, density='logistic'):
    hazards = build_hazards(places, transitions, cube, eq.params, density=density)
    dM = stoich.S @ hazards(0.0, eq.M0)
    np.testing.assert_allclose(dM, 0.0, atol=1e-8 * eq.M0.max())


# ── parameter access ─────────────────────────────────────────────────

class TestParamValue:
    def test_callable_evaluated(self):
        assert param_value({'muL': lambda t: 0.1 + t}, 'muL', 2.0) == pytest.approx(2.1)

    def test_missing(self):
        with pytest.raises(ConfigError, match="missing parameter 'beta'"):
            param_value({}, 'beta')

    def test_negative(self):
        with pytest.raises(ConfigError, match="non-negative"):
            param_value({'muE': -1.0}, 'muE')


# ── lifecycle ────────────────────────────────────────────────────────

class TestLifecycleEquilibrium:
    def test_adult_balance(self):
        params = _params()
        eq = lifecycle_equilibrium(params, 500.0)
        assert eq.unmated + eq.females == pytest.approx(500.0)
        # muM == muF and phi == 0.5 give as many males as females
        assert eq.males == pytest.approx(500.0)

    def test_logistic_density_parameter(self):
        params = _params()
        eq = lifecycle_equilibrium(params, 500.0, DensityDependence.LOGISTIC)
        Ltot = eq.larvae.sum()
        assert params['muL'] * (1 + Ltot / eq.density_parameter) == pytest.approx(
            eq.larval_mortality)

    def test_lotka_volterra_density_parameter(self):
        params = _params()
        eq = lifecycle_equilibrium(params, 500.0, 'lotka-volterra')
        Ltot = eq.larvae.sum()
        assert params['muL'] + eq.density_parameter * Ltot == pytest.approx(
            eq.larval_mortality)

    def test_scales_linearly(self):
        params = _params()
        small = lifecycle_equilibrium(params, 100.0)
        large = lifecycle_equilibrium(params, 1000.0)
        np.testing.assert_allclose(large.eggs, 10 * small.eggs)
        assert large.larval_mortality == pytest.approx(small.larval_mortality)

    def test_unsustainable_population(self):
        params = dict(_params(), beta=0.01)
        with pytest.raises(ConfigError, match="cannot sustain"):
            lifecycle_equilibrium(params, 500.0)


# ── SEI and human balances ───────────────────────────────────────────

class TestSEIDistribution:
    def test_no_infection(self):
        np.testing.assert_allclose(sei_distribution(0.0, 1 / 11, 3, 0.09),
                                   [1, 0, 0, 0, 0], atol=1e-12)

    def test_single_stage_closed_form(self):
        foi, q, mu = 0.05, 0.1, 0.09
        x = sei_distribution(foi, q, 1, mu)
        S = mu / (foi + mu)
        E = foi * S / (q + mu)
        np.testing.assert_allclose(x, [S, E, q * E / mu])

    @pytest.mark.parametrize("nEIP", [1, 2, 5])
    def test_sums_to_one(self, nEIP):
        assert sei_distribution(0.03, 1 / 11, nEIP, 0.09).sum() == pytest.approx(1.0)


class TestHumanEquilibria:
    def test_sis_balance(self):
        params = _params('SIS')
        humans, Iv = human_sis_equilibrium(1000.0, 0.25, params)
        lam = params['a'] * params['b'] * Iv / 1000.0
        assert lam * humans['S'] == pytest.approx((params['r'] + params['muH']) * humans['I'])

    def test_seir_infeasible_prevalence(self):
        with pytest.raises(ConfigError, match="infeasible"):
            human_seir_equilibrium(1000.0, 0.25, _params('SEIR'))

    def test_seir_compartments(self):
        humans, _ = human_seir_equilibrium(1000.0, 0.001, _params('SEIR'))
        assert sum(humans.values()) == pytest.approx(1000.0)
        assert humans['I'] == pytest.approx(1.0)


# ── whole-net equilibria are fixed points of the mean-field dynamics ─

class TestSolveEquilibrium:
    def test_lifecycle_stationary(self):
        cube, places, trs, st = _net(EpiModel.LIFECYCLE)
        eq = solve_equilibrium(_params(), cube, places, NF=500.0)
        assert eq.params['K'].shape == (1,)
        _assert_stationary(eq, cube, places, trs, st)

    def test_lotka_volterra_stationary(self):
        cube, places, trs, st = _net(EpiModel.LIFECYCLE)
        eq = solve_equilibrium(_params(), cube, places, NF=500.0, density='lotka-volterra')
        assert 'gamma' in eq.params and 'K' not in eq.params
        _assert_stationary(eq, cube, places, trs, st, density='lotka-volterra')

    def test_sis_stationary(self):
        cube, places, trs, st = _net(EpiModel.SIS, nEIP=3)
        eq = solve_equilibrium(_params('SIS'), cube, places, NH=1000.0, X=0.25)
        assert eq.M0[places.lookup('H_I')] == pytest.approx(250.0)
        _assert_stationary(eq, cube, places, trs, st)

    def test_seir_stationary(self):
        cube, places, trs, st = _net(EpiModel.SEIR, nEIP=2)
        eq = solve_equilibrium(_params('SEIR'), cube, places, NH=1000.0, X=0.005)
        _assert_stationary(eq, cube, places, trs, st)

    def test_decoupled_returns_human_state(self):
        cube, places, trs, st = _net(EpiModel.DECOUPLED, nEIP=3)
        params = _params('decoupled')
        eq = solve_equilibrium(params, cube, places, NH=1000.0, X=0.25)
        np.testing.assert_allclose(eq.human_state, [[750.0, 250.0]])
        assert eq.params['foi'][0] == pytest.approx(params['a'] * params['c'] * 0.25)
        _assert_stationary(eq, cube, places, trs, st)

    def test_per_node_transmission(self):
        cube, places, trs, st = _net(EpiModel.SIS, nEIP=2, node_types=['b', 'b'])
        params = dict(_params('SIS'), b=[0.55, 0.6], c=[0.15, 0.2])
        eq = solve_equilibrium(params, cube, places, NH=[1000.0, 1000.0], X=[0.25, 0.3])
        assert eq.M0[places.lookup('H_I_2')] == pytest.approx(300.0)
        _assert_stationary(eq, cube, places, trs, st)

    def test_per_node_decoupled_foi(self):
        cube, places, trs, st = _net(EpiModel.DECOUPLED, nEIP=2, node_types=['b', 'b'])
        params = dict(_params('decoupled'), c=[0.15, 0.2])
        eq = solve_equilibrium(params, cube, places, NH=1000.0, X=[0.25, 0.3])
        a = params['a']
        np.testing.assert_allclose(eq.params['foi'], [a * 0.15 * 0.25, a * 0.2 * 0.3])
        _assert_stationary(eq, cube, places, trs, st)

    def test_per_node_parameter_length(self):
        cube, places, _, _ = _net(EpiModel.SIS, nEIP=2, node_types=['b', 'b'])
        params = dict(_params('SIS'), c=[0.15, 0.2, 0.25])
        with pytest.raises(ConfigError, match="'c'"):
            solve_equilibrium(params, cube, places, NH=1000.0, X=0.25)

    def test_zero_prevalence_needs_nfx(self):
        cube, places, _, _ = _net(EpiModel.SIS, nEIP=3)
        with pytest.raises(ConfigError, match="NFX"):
            solve_equilibrium(_params('SIS'), cube, places, NH=1000.0, X=0.0)

    def test_zero_prevalence_with_nfx(self):
        cube, places, _, _ = _net(EpiModel.SIS, nEIP=3)
        eq = solve_equilibrium(_params('SIS'), cube, places, NH=1000.0, X=0.0, NFX=300.0)
        adults = np.concatenate([places.indices(Stage.UNMATED), places.indices(Stage.FEMALE)])
        assert eq.M0[adults].sum() == pytest.approx(300.0)
        infectious = [places.lookup(f'F_AA_{m}_I') for m in ('AA', 'Aa', 'aa')]
        assert eq.M0[infectious].sum() == pytest.approx(0.0)

    def test_mixed_network(self):
        cube, places, trs, st = _net(EpiModel.SIS, nEIP=2, node_types=['m', 'b', 'h'])
        eq = solve_equilibrium(_params('SIS'), cube, places, NF=400.0, NH=1000.0,
                               X=0.1, NH_h=500.0, X_h=0.2)
        assert eq.M0[places.lookup('H_I_3')] == pytest.approx(100.0)
        assert eq.M0[places.lookup('H_S_3')] == pytest.approx(400.0)
        assert np.isinf(eq.params['K'][2])
        assert eq.init.shape == (3, len(eq.init_labels))
        assert np.isnan(eq.init[2, 0])

    def test_pop_ratios(self):
        cube, places, _, _ = _net(EpiModel.LIFECYCLE)
        eq = solve_equilibrium(_params(), cube, places, NF=500.0,
                               pop_ratio_m={'AA': 0.5, 'aa': 0.5})
        assert eq.M0[places.lookup('M_aa')] == pytest.approx(250.0)

    def test_bad_pop_ratio(self):
        cube, places, _, _ = _net(EpiModel.LIFECYCLE)
        with pytest.raises(ConfigError):
            solve_equilibrium(_params(), cube, places, NF=500.0,
                              pop_ratio_f={'AA': 0.5, 'Aa': 0.2})

    def test_per_node_length_mismatch(self):
        cube, places, _, _ = _net(EpiModel.LIFECYCLE, node_types=['m', 'm'])
        with pytest.raises(ConfigError, match="NF"):
            solve_equilibrium(_params(), cube, places, NF=[100.0, 200.0, 300.0])
