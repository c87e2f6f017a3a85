"""Inheritance cube adapter.

The cube is the genetic model's contract with the Petri net builders:
  - ordered genotype identifiers (nG of them)
  - offspring[f, m, o]: probability that a female of genotype f mated to a
    male of genotype m lays an egg of genotype o (row-stochastic over o)
  - per-genotype modifier vectors keyed by name, each of length nG

Modifier names understood by the hazard factory:
  omega   adult mortality multiplier
  xi_f    female emergence success
  xi_m    male emergence success
  s       fecundity multiplier (by female genotype)
  eta     mating preference weight (by male genotype)
  b       mosquito → human transmission efficiency
  c       human → mosquito transmission efficiency

Any modifier not supplied defaults to ones. Cubes are immutable; augmenting
one (e.g. with Imperial-model cT/cU/cD vectors) returns a new cube.

References:
  - Sanchez C. et al. (2020) MGDrivE: a modular simulation framework for the
    spread of gene drives through spatially explicit mosquito populations.
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass, field, replace
from typing import Dict, Mapping, Optional, Sequence, Tuple

import numpy as np

from spn_genedrive.types import ConfigError


# ═══════════════════════════════════════════════════════════════════════
# CUBE RECORD
# ═══════════════════════════════════════════════════════════════════════

ROW_SUM_TOL: float = 1e-8


@dataclass(frozen=True)
class InheritanceCube:
    """Immutable genotype set with offspring table and modifiers."""
    genotypes: Tuple[str, ...]
    offspring: np.ndarray                     # (nG, nG, nG)
    wild_type: Tuple[str, ...] = ()
    modifiers: Mapping[str, np.ndarray] = field(default_factory=dict)

    @property
    def n_genotypes(self) -> int:
        return len(self.genotypes)

    def index(self, genotype: str) -> int:
        """Position of a genotype id; ConfigError if unknown."""
        try:
            return self.genotypes.index(genotype)
        except ValueError:
            raise ConfigError(
                f"unknown genotype '{genotype}', expected one of {list(self.genotypes)}"
            ) from None

    def modifier(self, name: str) -> np.ndarray:
        """Per-genotype modifier vector (ones when the cube does not set it)."""
        if name in self.modifiers:
            return np.asarray(self.modifiers[name], dtype=np.float64)
        return np.ones(self.n_genotypes, dtype=np.float64)

    def with_modifiers(self, **vectors: Sequence[float]) -> 'InheritanceCube':
        """Return a new cube with the given modifier vectors set or replaced."""
        merged: Dict[str, np.ndarray] = dict(self.modifiers)
        for name, vec in vectors.items():
            merged[name] = np.asarray(vec, dtype=np.float64)
        cube = replace(self, modifiers=merged)
        validate_cube(cube)
        return cube

    def ratio_vector(self, ratios: Optional[Mapping[str, float]]) -> np.ndarray:
        """Genotype→fraction mapping as a length-nG vector.

        ``None`` puts everything on the first wild-type genotype (or the first
        genotype when no wild type is declared).
        """
        vec = np.zeros(self.n_genotypes)
        if ratios is None:
            wt = self.wild_type[0] if self.wild_type else self.genotypes[0]
            vec[self.index(wt)] = 1.0
            return vec
        for g, frac in ratios.items():
            if frac < 0:
                raise ConfigError(f"genotype ratio for '{g}' must be non-negative")
            vec[self.index(g)] = float(frac)
        if abs(vec.sum() - 1.0) > 1e-6:
            raise ConfigError(f"genotype ratios must sum to 1, got {vec.sum():.6g}")
        return vec


def validate_cube(cube: InheritanceCube) -> None:
    """Check shapes and stochasticity. Raises ConfigError on failure."""
    nG = cube.n_genotypes
    if nG < 1:
        raise ConfigError("cube must define at least one genotype")
    if len(set(cube.genotypes)) != nG:
        raise ConfigError("cube genotype ids must be unique")
    off = np.asarray(cube.offspring)
    if off.shape != (nG, nG, nG):
        raise ConfigError(
            f"offspring table must have shape {(nG, nG, nG)}, got {off.shape}"
        )
    if np.any(off < 0) or not np.all(np.isfinite(off)):
        raise ConfigError("offspring probabilities must be finite and non-negative")
    sums = off.sum(axis=2)
    if np.any(np.abs(sums - 1.0) > ROW_SUM_TOL):
        raise ConfigError("offspring table must be row-stochastic over offspring genotype")
    for name, vec in cube.modifiers.items():
        vec = np.asarray(vec)
        if vec.shape != (nG,):
            raise ConfigError(
                f"modifier '{name}' must have length {nG}, got shape {vec.shape}"
            )
        if np.any(vec < 0) or not np.all(np.isfinite(vec)):
            raise ConfigError(f"modifier '{name}' must be finite and non-negative")
    for wt in cube.wild_type:
        cube.index(wt)


# ═══════════════════════════════════════════════════════════════════════
# MENDELIAN CUBE
# ═══════════════════════════════════════════════════════════════════════

def mendelian_cube(alleles: Sequence[str] = ('A', 'a')) -> InheritanceCube:
    """One-locus Mendelian inheritance for any number of alleles.

    Genotypes are unordered allele pairs written in allele order, so two
    alleles give ``('AA', 'Aa', 'aa')``. Each parent transmits either allele
    with probability 1/2.

    Args:
        alleles: Allele symbols; the first one is the wild type.

    Returns:
        Validated InheritanceCube.
    """
    alleles = tuple(alleles)
    if len(alleles) < 1 or len(set(alleles)) != len(alleles):
        raise ConfigError("alleles must be a non-empty sequence of unique symbols")

    pairs = list(itertools.combinations_with_replacement(range(len(alleles)), 2))
    genotypes = tuple(alleles[i] + alleles[j] for i, j in pairs)
    lookup = {pair: k for k, pair in enumerate(pairs)}
    nG = len(genotypes)

    offspring = np.zeros((nG, nG, nG))
    for f, (f1, f2) in enumerate(pairs):
        for m, (m1, m2) in enumerate(pairs):
            for a in (f1, f2):
                for b in (m1, m2):
                    offspring[f, m, lookup[tuple(sorted((a, b)))]] += 0.25

    cube = InheritanceCube(
        genotypes=genotypes,
        offspring=offspring,
        wild_type=(genotypes[0],),
    )
    validate_cube(cube)
    return cube
