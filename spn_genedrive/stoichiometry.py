"""Pre/Post incidence matrices and the state-change matrix S = Post − Pre.

Orientation is places × transitions, so firing transition t once maps a
marking M to M + S[:, t] and the mean-field dynamics read dM/dt = S · h.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np
import scipy.sparse as sp

from spn_genedrive.types import ConfigError, Transition


@dataclass(frozen=True, eq=False)
class Stoichiometry:
    pre: sp.csc_matrix     # (n_places, n_transitions) input arc weights
    post: sp.csc_matrix    # (n_places, n_transitions) output arc weights
    S: sp.csc_matrix       # post - pre

    @property
    def shape(self):
        return self.S.shape

    def column(self, t: int):
        """(place indices, net changes) of transition t, zeros dropped."""
        start, end = self.S.indptr[t], self.S.indptr[t + 1]
        return self.S.indices[start:end], self.S.data[start:end]

    def consumption(self) -> sp.csc_matrix:
        """Net tokens removed per firing: max(pre − post, 0)."""
        return (-self.S).maximum(0).tocsc()


def _incidence(arcs_per_transition, n_places: int, n_trans: int) -> sp.csc_matrix:
    rows, cols, vals = [], [], []
    for t, arcs in enumerate(arcs_per_transition):
        for p, w in arcs:
            rows.append(p)
            cols.append(t)
            vals.append(w)
    return sp.coo_matrix(
        (np.asarray(vals, dtype=np.int64), (rows, cols)),
        shape=(n_places, n_trans),
    ).tocsc()


def build_stoichiometry(places, transitions: Sequence[Transition]) -> Stoichiometry:
    """Derive Pre, Post and S from a place set and its transitions.

    Raises:
        ConfigError: an arc references a place outside the set, carries a
            non-positive weight, or a transition has no input arc.
    """
    n_places = len(places)
    n_trans = len(transitions)
    for tr in transitions:
        if not tr.pre:
            raise ConfigError(f"transition '{tr.name}' has no input arc")
        for p, w in tr.pre + tr.post:
            if not 0 <= p < n_places:
                raise ConfigError(f"transition '{tr.name}' references place {p}")
            if w < 1:
                raise ConfigError(f"transition '{tr.name}' has arc weight {w}")

    pre = _incidence([tr.pre for tr in transitions], n_places, n_trans)
    post = _incidence([tr.post for tr in transitions], n_places, n_trans)
    S = (post - pre).tocsc()
    S.eliminate_zeros()
    return Stoichiometry(pre=pre, post=post, S=S)
