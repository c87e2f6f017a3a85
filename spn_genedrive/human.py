"""Human ODE plug-ins for decoupled sampling.

In decoupled models humans are not places of the net. Their state is a
continuous array integrated by the sampler once per macro step, fed by the
infectious mosquitoes of the SPN marking and feeding back a per-node force
of infection on susceptible mosquitoes.

A plug-in implements:

  labels                                      compartment names
  derivative(t, state, coupling, params)      d state / dt, (n_nodes, n_comp)
  mosquito_foi(state, params)                 per-node FOI on F_S females

``coupling`` is the (n_nodes, n_genotypes) array of infectious females.
"""

from __future__ import annotations

from typing import Any, Mapping, Tuple

import numpy as np

from spn_genedrive.equilibrium import node_param
from spn_genedrive.types import ConfigError


class HumanModel:
    """Interface of an externally integrated human model."""

    labels: Tuple[str, ...] = ()

    def derivative(self, t: float, state: np.ndarray, coupling: np.ndarray,
                   params: Mapping[str, Any]) -> np.ndarray:
        raise NotImplementedError

    def mosquito_foi(self, state: np.ndarray, params: Mapping[str, Any],
                     t: float = 0.0) -> np.ndarray:
        raise NotImplementedError

    def check_state(self, state: np.ndarray, n_nodes: int) -> np.ndarray:
        state = np.asarray(state, dtype=np.float64)
        if state.shape != (n_nodes, len(self.labels)):
            raise ConfigError(
                f"human state must have shape ({n_nodes}, {len(self.labels)}), "
                f"got {state.shape}"
            )
        return state.copy()


class SISHuman(HumanModel):
    """Per-node S/I humans with recovery and death-with-replacement.

        dS/dt = -λ S + (r + muH) I
        dI/dt =  λ S - (r + muH) I
        λ     = a·b·Σ_g b_g·Iv_g / NH

    The mosquito FOI returned to the net is a·c·I/NH (the female-genotype
    modifier on c is applied by the hazard itself). a, b, c, r and muH may
    be scalars or hold one entry per node.
    """

    labels = ('S', 'I')

    def __init__(self, b_modifier=None):
        self.b_modifier = None if b_modifier is None else np.asarray(b_modifier, dtype=np.float64)

    def human_foi(self, t: float, state: np.ndarray, coupling: np.ndarray,
                  params: Mapping[str, Any]) -> np.ndarray:
        n = state.shape[0]
        a = node_param(params, 'a', n, t)
        b = node_param(params, 'b', n, t)
        Iv = np.asarray(coupling, dtype=np.float64)
        if self.b_modifier is not None:
            Iv = Iv * self.b_modifier
        NH = state.sum(axis=1)
        return np.divide(a * b * Iv.sum(axis=1), NH,
                         out=np.zeros_like(NH), where=NH > 0)

    def derivative(self, t, state, coupling, params):
        n = state.shape[0]
        r = node_param(params, 'r', n, t)
        muH = node_param(params, 'muH', n, t)
        lam = self.human_foi(t, state, coupling, params)
        S, I = state[:, 0], state[:, 1]
        flow = lam * S - (r + muH) * I
        return np.column_stack([-flow, flow])

    def mosquito_foi(self, state, params, t=0.0):
        n = state.shape[0]
        a = node_param(params, 'a', n, t)
        c = node_param(params, 'c', n, t)
        NH = state.sum(axis=1)
        return np.divide(a * c * state[:, 1], NH,
                         out=np.zeros_like(NH), where=NH > 0)
