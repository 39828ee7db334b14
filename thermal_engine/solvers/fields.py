"""
Thermal Engine - Temperature Fields
===================================
Immutable temperature snapshots and ordered transient series.

Author: Thermal Engine Developers
Version: 1.0.0
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np


@dataclass(frozen=True)
class TemperatureField:
    """
    Per-node temperature (°C) at one time, or at steady state when
    ``time_s`` is None. The value array is a private read-only copy.
    """
    values: np.ndarray
    time_s: Optional[float] = None
    step: int = 0

    def __post_init__(self):
        arr = np.array(self.values, dtype=np.float64, copy=True)
        arr.setflags(write=False)
        object.__setattr__(self, 'values', arr)

    @property
    def is_steady(self) -> bool:
        return self.time_s is None

    @property
    def n_nodes(self) -> int:
        return self.values.shape[0]

    @property
    def min_temp(self) -> float:
        return float(self.values.min())

    @property
    def max_temp(self) -> float:
        return float(self.values.max())

    @property
    def avg_temp(self) -> float:
        return float(self.values.mean())

    @property
    def hottest_node(self) -> int:
        return int(np.argmax(self.values))

    def at(self, node_id: int) -> float:
        return float(self.values[node_id])

    def to_array(self) -> np.ndarray:
        """Writable copy of the values."""
        return self.values.copy()

    def to_rows(self, mesh) -> List[Dict]:
        """Tabular rows: node id, position, temperature, time."""
        xy = mesh.coordinates
        return [
            {
                'node_id': i,
                'x_m': float(xy[i, 0]),
                'y_m': float(xy[i, 1]),
                'temperature_c': float(self.values[i]),
                'time_s': self.time_s,
            }
            for i in range(self.n_nodes)
        ]


@dataclass
class FieldSeries:
    """Ordered sequence of snapshots from one transient run."""
    snapshots: List[TemperatureField] = field(default_factory=list)

    def append(self, snapshot: TemperatureField):
        if self.snapshots and snapshot.time_s is not None:
            last = self.snapshots[-1].time_s
            if last is not None and snapshot.time_s <= last:
                raise ValueError(f"Snapshot at t={snapshot.time_s} does not follow t={last}")
        self.snapshots.append(snapshot)

    def __len__(self) -> int:
        return len(self.snapshots)

    def __iter__(self):
        return iter(self.snapshots)

    def __getitem__(self, index) -> TemperatureField:
        return self.snapshots[index]

    @property
    def times(self) -> List[float]:
        return [s.time_s for s in self.snapshots]

    @property
    def final(self) -> Optional[TemperatureField]:
        return self.snapshots[-1] if self.snapshots else None

    def at_time(self, t: float) -> Optional[TemperatureField]:
        """Snapshot nearest to time t."""
        if not self.snapshots:
            return None
        times = np.array([s.time_s or 0.0 for s in self.snapshots])
        idx = int(np.searchsorted(times, t))
        if idx == 0:
            return self.snapshots[0]
        if idx >= len(self.snapshots):
            return self.snapshots[-1]
        if abs(times[idx] - t) < abs(times[idx - 1] - t):
            return self.snapshots[idx]
        return self.snapshots[idx - 1]

    def node_history(self, node_id: int) -> List[Tuple[float, float]]:
        return [(s.time_s, s.at(node_id)) for s in self.snapshots]

    def to_rows(self, mesh) -> List[Dict]:
        rows = []
        for snapshot in self.snapshots:
            rows.extend(snapshot.to_rows(mesh))
        return rows


__all__ = ['TemperatureField', 'FieldSeries']
