"""Tests for spn_genedrive.imperial — age-structured malaria equilibrium."""

import numpy as np
import pytest

from spn_genedrive.cube import mendelian_cube
from spn_genedrive.hazards import build_hazards
from spn_genedrive.imperial import (
    HUMAN_STATE_LABELS,
    imperial_equilibrium,
    imperial_human_equilibrium,
    imperial_params,
    prevalence_to_eir,
)
from spn_genedrive.places import build_places
from spn_genedrive.stoichiometry import build_stoichiometry
from spn_genedrive.transitions import build_transitions
from spn_genedrive.types import ConfigError, EpiModel

AGES = [0, 0.5, 1, 2, 3.5, 5, 7.5, 10, 15, 20, 30, 40, 50, 60, 70, 80]


@pytest.fixture(scope="module")
def params():
    return imperial_params()


class TestImperialParams:
    def test_derived_values(self, params):
        assert params.fv0 == pytest.approx(1 / 3)
        assert params.av0 == pytest.approx(0.92 / 3)
        q = params.nEIP * params.qEIP
        assert params.Surv0 == pytest.approx((q / (q + params.muF)) ** params.nEIP)

    def test_cT_follows_cD(self):
        p = imperial_params(cD=0.1)
        assert p.cT == pytest.approx(0.0322)

    def test_unknown_names_kept_as_extra(self):
        p = imperial_params(my_rate=0.3)
        assert p.as_params()['my_rate'] == 0.3

    def test_flat_params_carry_biting_rate(self, params):
        flat = params.as_params()
        assert flat['a'] == pytest.approx(params.av0)
        assert flat['beta'] == pytest.approx(params.beta)


class TestHumanEquilibrium:
    def test_compartments_cover_population(self, params):
        eq = imperial_human_equilibrium(AGES, 0.0, 10.0, params)
        total = sum(eq.state[k].sum() for k in ('S', 'T', 'D', 'A', 'U', 'P'))
        assert total == pytest.approx(1.0)
        assert 0.0 < eq.prevalence < 1.0
        assert eq.state_matrix().shape == (len(AGES), len(HUMAN_STATE_LABELS))

    def test_heterogeneity_brackets(self, params):
        eq = imperial_human_equilibrium(AGES, 0.2, 10.0, params, het_brackets=3)
        assert eq.FOI.shape == (len(AGES), 3)
        assert eq.state_matrix().shape == (3 * len(AGES), len(HUMAN_STATE_LABELS))

    def test_prevalence_rises_with_eir(self, params):
        low = imperial_human_equilibrium(AGES, 0.0, 1.0, params).prevalence
        high = imperial_human_equilibrium(AGES, 0.0, 50.0, params).prevalence
        assert high > low

    def test_mosquito_sei_sums_to_one(self, params):
        eq = imperial_human_equilibrium(AGES, 0.0, 10.0, params)
        assert eq.Sv + eq.Ev + eq.Iv == pytest.approx(1.0)

    @pytest.mark.parametrize("kwargs, match", [
        ({'eir': 0.0}, "EIR"),
        ({'ft': 1.5}, "ft"),
        ({'age_vector': [0, 1]}, "age_vector"),
    ])
    def test_invalid_inputs(self, params, kwargs, match):
        args = {'age_vector': AGES, 'ft': 0.0, 'eir': 10.0}
        args.update(kwargs)
        with pytest.raises(ConfigError, match=match):
            imperial_human_equilibrium(args['age_vector'], args['ft'], args['eir'], params)


class TestPrevalenceToEIR:
    def test_round_trip(self, params):
        prev = imperial_human_equilibrium(AGES, 0.0, 10.0, params).prevalence
        assert prevalence_to_eir(prev, AGES, 0.0, params) == pytest.approx(10.0, rel=1e-4)

    def test_unattainable(self, params):
        with pytest.raises(ConfigError, match="not attainable"):
            prevalence_to_eir(1.5, AGES, 0.0, params)


@pytest.fixture(scope="module")
def decoupled_net():
    cube = mendelian_cube()
    places = build_places(cube, 2, 3, 2, nEIP=3, model=EpiModel.DECOUPLED)
    return cube, places


class TestCoupledEquilibrium:
    def test_mosquitoes_stationary(self, params, decoupled_net):
        cube, places = decoupled_net
        eq = imperial_equilibrium(AGES, 0.0, params, cube, places, eir=10.0)
        assert eq.n_female > 0
        mq = eq.mosquito
        assert mq.params['foi'][0] == pytest.approx(eq.human.FOIv)
        transitions = build_transitions(places, eq.cube)
        stoich = build_stoichiometry(places, transitions)
        hazards = build_hazards(places, transitions, eq.cube, mq.params)
        dM = stoich.S @ hazards(0.0, mq.M0)
        np.testing.assert_allclose(dM, 0.0, atol=1e-8 * mq.M0.max())

    def test_fixed_point_in_eir(self, params, decoupled_net):
        cube, places = decoupled_net
        forward = imperial_equilibrium(AGES, 0.0, params, cube, places, eir=10.0)
        back = imperial_equilibrium(AGES, 0.0, params, cube, places,
                                    n_female=forward.n_female)
        assert back.eir == pytest.approx(10.0, rel=1e-4)

    def test_transmission_modifiers(self, params, decoupled_net):
        cube, places = decoupled_net
        eq = imperial_equilibrium(AGES, 0.0, params, cube, places, eir=10.0)
        np.testing.assert_allclose(eq.cube.modifier('cD'), params.cD)

    def test_exactly_one_target(self, params, decoupled_net):
        cube, places = decoupled_net
        with pytest.raises(ConfigError, match="exactly one"):
            imperial_equilibrium(AGES, 0.0, params, cube, places)

    def test_needs_decoupled_places(self, params):
        cube = mendelian_cube()
        places = build_places(cube, 2, 3, 2, nEIP=3, model=EpiModel.SIS)
        with pytest.raises(ConfigError, match="decoupled"):
            imperial_equilibrium(AGES, 0.0, params, cube, places, eir=10.0)

    def test_nEIP_mismatch(self, params):
        cube = mendelian_cube()
        places = build_places(cube, 2, 3, 2, nEIP=2, model=EpiModel.DECOUPLED)
        with pytest.raises(ConfigError, match="nEIP"):
            imperial_equilibrium(AGES, 0.0, params, cube, places, eir=10.0)
