"""Inter-node movement: per-capita migration rates and batch migration.

Continuous migration is part of the Petri net: for every reachable
(origin, destination) pair and every adult place, one transition moves a
token from the origin place to the matching destination place at rate

    move_rate[kind][origin] × routing[origin, destination] × tokens

Reachability is explicit. ``routing`` entries that are NaN, non-positive or
on the diagonal are unreachable and their transitions are never built;
rates are never NaN-propagated through hazards.

Batch migration moves a fraction (or absolute numbers) of adult mosquitoes
between two nodes at a given time, outside of the transition machinery.
In stochastic samplers fractions are drawn binomially.

References:
  - Wu S.L. et al. (2021) Vector bionomics and vectorial capacity as
    emergent properties of mosquito behaviors and ecology.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np

from spn_genedrive.types import ConfigError

Number = Union[int, float]

MOVEMENT_KINDS: Tuple[str, ...] = ('female', 'male', 'human')


# ═══════════════════════════════════════════════════════════════════════
# MOVEMENT NETWORK
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True, eq=False)
class MovementNetwork:
    """Routing probabilities, reachability masks and per-node movement rates."""
    routing: np.ndarray                   # (N, N), zero where unreachable
    reachable: np.ndarray                 # (N, N) bool
    rates: Mapping[str, np.ndarray]       # kind -> (N,) per-capita rates
    human_routing: Optional[np.ndarray] = None
    human_reachable: Optional[np.ndarray] = None

    @property
    def n_nodes(self) -> int:
        return self.routing.shape[0]

    def rate(self, kind: str, node: int) -> float:
        return float(self.rates[kind][node])

    def probability(self, kind: str, origin: int, destination: int) -> float:
        if kind == 'human' and self.human_routing is not None:
            return float(self.human_routing[origin, destination])
        return float(self.routing[origin, destination])

    def edges(self, kind: str) -> List[Tuple[int, int]]:
        """Reachable (origin, destination) pairs for one kind of mover."""
        mask = self.reachable
        if kind == 'human' and self.human_reachable is not None:
            mask = self.human_reachable
        if not np.any(self.rates[kind] > 0):
            return []
        return [(int(o), int(d)) for o, d in zip(*np.nonzero(mask))
                if self.rates[kind][o] > 0]


def _routing_matrix(matrix: Sequence[Sequence[float]], n: int, name: str):
    arr = np.array(matrix, dtype=np.float64)
    if arr.shape != (n, n):
        raise ConfigError(f"{name} must have shape {(n, n)}, got {arr.shape}")
    with np.errstate(invalid='ignore'):
        reachable = np.isfinite(arr) & (arr > 0)
    np.fill_diagonal(reachable, False)
    clean = np.where(reachable, arr, 0.0)
    sums = clean.sum(axis=1)
    if np.any(sums > 1.0 + 1e-8):
        raise ConfigError(f"{name} rows must sum to at most 1 off the diagonal")
    return clean, reachable


def _per_node(value: Union[Number, Sequence[Number]], n: int, name: str) -> np.ndarray:
    arr = np.atleast_1d(np.asarray(value, dtype=np.float64))
    if arr.size == 1:
        arr = np.full(n, float(arr[0]))
    if arr.shape != (n,):
        raise ConfigError(f"{name} must have {n} entries, got {arr.size}")
    # unreachable rates (NaN) are stored as zero
    arr = np.where(np.isfinite(arr), arr, 0.0)
    if np.any(arr < 0):
        raise ConfigError(f"{name} must be non-negative")
    return arr


def build_movement(
    routing: Sequence[Sequence[float]],
    move_female: Union[Number, Sequence[Number]] = 0.0,
    move_male: Union[Number, Sequence[Number]] = 0.0,
    move_human: Union[Number, Sequence[Number]] = 0.0,
    human_routing: Optional[Sequence[Sequence[float]]] = None,
) -> MovementNetwork:
    """Assemble a MovementNetwork.

    Args:
        routing: (N, N) probability that a mosquito leaving node i lands in j.
        move_female, move_male, move_human: per-capita daily movement rates,
            scalar or one per node. NaN entries are treated as zero.
        human_routing: Optional separate routing for humans.

    Returns:
        MovementNetwork with explicit reachability masks.
    """
    arr = np.asarray(routing, dtype=np.float64)
    if arr.ndim != 2:
        raise ConfigError("routing must be a square matrix")
    n = arr.shape[0]
    clean, reachable = _routing_matrix(routing, n, 'routing')
    h_clean = h_reach = None
    if human_routing is not None:
        h_clean, h_reach = _routing_matrix(human_routing, n, 'human_routing')
    rates = {
        'female': _per_node(move_female, n, 'move_female'),
        'male': _per_node(move_male, n, 'move_male'),
        'human': _per_node(move_human, n, 'move_human'),
    }
    return MovementNetwork(
        routing=clean,
        reachable=reachable,
        rates=MappingProxyType(rates),
        human_routing=h_clean,
        human_reachable=h_reach,
    )


def exponential_routing(distances: np.ndarray, scale: float) -> np.ndarray:
    """Routing matrix from a distance matrix with an exponential kernel.

    routing[j, k] ∝ exp(-distances[j, k] / scale) off the diagonal, with each
    row normalised to sum to 1 (rows with no neighbours stay zero).
    """
    distances = np.asarray(distances, dtype=np.float64)
    if scale <= 0:
        raise ConfigError("kernel scale must be positive")
    kernel = np.exp(-distances / scale)
    np.fill_diagonal(kernel, 0.0)
    sums = kernel.sum(axis=1, keepdims=True)
    return np.divide(kernel, sums, out=np.zeros_like(kernel), where=sums > 0)


# ═══════════════════════════════════════════════════════════════════════
# BATCH MIGRATION
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class BatchMigration:
    """Move adult mosquitoes between nodes at one instant.

    Nodes are 0-based. Give either ``fraction`` (applied to every adult place
    of the listed stages) or ``quantities`` keyed by node-less place names
    such as ``'M_AA'`` or ``'F_AA_aa_S'``.
    """
    time: float
    from_node: int
    to_node: int
    fraction: Optional[float] = None
    quantities: Optional[Dict[str, float]] = None
    stages: List[str] = field(default_factory=lambda: ['U', 'F', 'M'])


def _paired_places(places, batch: BatchMigration) -> Dict[str, Tuple[int, int]]:
    """Base name -> (origin index, destination index) for adult places."""
    src = places.nodes[batch.from_node]
    dst = places.nodes[batch.to_node]
    if not (src.has_mosquitoes and dst.has_mosquitoes):
        raise ConfigError(
            f"batch migration {batch.from_node}->{batch.to_node} needs mosquitoes at both nodes"
        )
    pairs = {}
    suffix = f'_{batch.from_node + 1}' if places.network else ''
    for key, a, b in (('U', src.unmated, dst.unmated),
                      ('F', src.females, dst.females),
                      ('M', src.males, dst.males)):
        if key not in batch.stages:
            continue
        for i, j in zip(a.ravel(), b.ravel()):
            name = places.places[i].name
            base = name[:len(name) - len(suffix)] if suffix else name
            pairs[base] = (int(i), int(j))
    return pairs


def validate_batch_migration(places, batches: Sequence[BatchMigration]) -> None:
    """Check node ids, fractions and names before a run. Raises ConfigError."""
    for bm in batches:
        for node in (bm.from_node, bm.to_node):
            if not 0 <= node < places.n_nodes:
                raise ConfigError(f"batch migration node {node} out of range")
        if bm.from_node == bm.to_node:
            raise ConfigError("batch migration must move between two different nodes")
        if (bm.fraction is None) == (bm.quantities is None):
            raise ConfigError("batch migration needs exactly one of fraction or quantities")
        bad_stages = set(bm.stages) - {'U', 'F', 'M'}
        if bad_stages:
            raise ConfigError(f"unknown batch migration stages {sorted(bad_stages)}")
        if bm.fraction is not None and not 0.0 <= bm.fraction <= 1.0:
            raise ConfigError(f"batch migration fraction must be in [0, 1], got {bm.fraction}")
        pairs = _paired_places(places, bm)
        for name, qty in (bm.quantities or {}).items():
            if name not in pairs:
                raise ConfigError(f"batch migration names unknown place '{name}'")
            if qty < 0:
                raise ConfigError("batch migration quantities must be non-negative")


def apply_batch_migration(
    marking: np.ndarray,
    places,
    batch: BatchMigration,
    rng: Optional[np.random.Generator] = None,
) -> np.ndarray:
    """Move tokens in place and return the per-place moved amounts.

    With an ``rng`` (stochastic samplers) fractions are drawn binomially
    from integer token counts; otherwise they move deterministically.
    Absolute quantities are capped at what is present.
    """
    pairs = _paired_places(places, batch)
    moved = np.zeros_like(marking)
    for name, (i, j) in pairs.items():
        present = max(marking[i], 0.0)
        if batch.fraction is not None:
            if rng is not None:
                n = rng.binomial(int(np.floor(present)), batch.fraction)
            else:
                n = present * batch.fraction
        else:
            n = min(float(batch.quantities.get(name, 0.0)), present)
            if rng is not None:
                n = np.floor(n)
        marking[i] -= n
        marking[j] += n
        moved[i] -= n
        moved[j] += n
    return moved
