"""Sampled trajectories: one marking per output time.

The in-memory contract is a dense table keyed by time with one column per
place (ordered as the place set) and, for decoupled runs, one column per
human compartment and node. Exporting is a direct serialization of that
table; ``save``/``load`` use a compressed npz file.

Usage:
    traj = sim_trajectory(...)
    traj.column('M_AA')           # time series of one place
    traj.totals(places, Stage.MALE)
    traj.save("run.npz")
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import numpy as np

from spn_genedrive.types import ConfigError, Stage


@dataclass
class Trajectory:
    """Dense sampled output of one run."""
    times: np.ndarray                       # (n_times,)
    place_names: Tuple[str, ...]
    states: np.ndarray                      # (n_times, n_places)
    human_labels: Tuple[str, ...] = ()      # e.g. ('H_S_1', 'H_I_1')
    human_state: Optional[np.ndarray] = None  # (n_times, len(human_labels))
    firings: Optional[np.ndarray] = None    # (n_times, n_transitions) cumulative
    transition_names: Tuple[str, ...] = ()
    n_corrections: int = 0                  # clamped negative updates
    meta: Dict[str, object] = field(default_factory=dict)

    @property
    def n_times(self) -> int:
        return len(self.times)

    @property
    def final(self) -> np.ndarray:
        return self.states[-1]

    def column(self, name: str) -> np.ndarray:
        """Time series of one place or human compartment."""
        if name in self.place_names:
            return self.states[:, self.place_names.index(name)]
        if name in self.human_labels:
            return self.human_state[:, self.human_labels.index(name)]
        raise ConfigError(f"no place or human compartment named '{name}'")

    def totals(self, places, stage: Stage, node: Optional[int] = None) -> np.ndarray:
        """Summed time series of every place of one stage."""
        return self.states[:, places.indices(stage, node)].sum(axis=1)

    def as_table(self) -> Tuple[List[str], np.ndarray]:
        """(header, rows) with a leading time column."""
        header = ['time'] + list(self.place_names) + list(self.human_labels)
        blocks = [self.times[:, None], self.states]
        if self.human_state is not None:
            blocks.append(self.human_state)
        return header, np.hstack(blocks)

    def save(self, path: str) -> None:
        """Save to a compressed npz file."""
        arrays = {
            'times': self.times,
            'place_names': np.array(self.place_names),
            'states': self.states,
            'human_labels': np.array(self.human_labels),
            'transition_names': np.array(self.transition_names),
            'n_corrections': np.array(self.n_corrections),
        }
        if self.human_state is not None:
            arrays['human_state'] = self.human_state
        if self.firings is not None:
            arrays['firings'] = self.firings
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        np.savez_compressed(path, **arrays)

    @classmethod
    def load(cls, path: str) -> 'Trajectory':
        """Load a trajectory written by save()."""
        with np.load(path) as data:
            return cls(
                times=data['times'],
                place_names=tuple(str(s) for s in data['place_names']),
                states=data['states'],
                human_labels=tuple(str(s) for s in data['human_labels']),
                human_state=data['human_state'] if 'human_state' in data else None,
                firings=data['firings'] if 'firings' in data else None,
                transition_names=tuple(str(s) for s in data['transition_names']),
                n_corrections=int(data['n_corrections']),
            )
