"""
Thermal Engine - Overheat and Time-to-Failure Analysis
======================================================
Scans temperature fields against failure limits derated by a safety margin.

During a transient run the analyzer is handed every step; the first step in
which any node reaches a trigger temperature fixes the failure. Within that
step the node with the largest exceedance wins (lowest node id on ties) and
the crossing time is interpolated linearly between the two snapshots.

Author: Thermal Engine Developers
Version: 1.0.0
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from ..core.constants import FAILURE_TEMPERATURES
from ..solvers.fields import TemperatureField
from ..utils.logger import get_logger


class FailureMode(Enum):
    """Physical mechanism behind a failure limit."""
    SOLDER_MELTING = "SolderMelting"
    GLASS_TRANSITION = "GlassTransition"
    JUNCTION_OVERTEMPERATURE = "JunctionOvertemperature"
    MATERIAL_LIMIT = "MaterialLimit"


@dataclass(frozen=True)
class FailureLimit:
    """
    Temperature limit for a mechanism, optionally restricted to the nodes
    of elements with given materials or to explicit nodes.

    The analyzer triggers at ``limit_c × (1 - safety_margin)``.
    """
    name: str
    mode: FailureMode
    limit_c: float
    safety_margin: float = 0.0
    materials: Tuple[str, ...] = ()
    nodes: Tuple[int, ...] = ()

    def __post_init__(self):
        if not isinstance(self.mode, FailureMode):
            object.__setattr__(self, 'mode', FailureMode(self.mode))
        if not 0.0 <= self.safety_margin < 1.0:
            raise ValueError(f"Safety margin must be in [0, 1), got {self.safety_margin}")
        object.__setattr__(self, 'materials', tuple(self.materials))
        object.__setattr__(self, 'nodes', tuple(int(n) for n in self.nodes))

    @property
    def trigger_c(self) -> float:
        return self.limit_c * (1.0 - self.safety_margin)

    @classmethod
    def from_key(cls, key: str, safety_margin: float = 0.0,
                 materials: Sequence[str] = (), nodes: Sequence[int] = ()) -> 'FailureLimit':
        """Build a limit from the FAILURE_TEMPERATURES table."""
        try:
            mode, limit = FAILURE_TEMPERATURES[key.upper()]
        except KeyError:
            raise ValueError(f"Unknown failure limit '{key}'; "
                             f"known: {sorted(FAILURE_TEMPERATURES)}") from None
        return cls(key.upper(), FailureMode(mode), limit, safety_margin, tuple(materials), tuple(nodes))


@dataclass(frozen=True)
class Violation:
    """One node at or above one limit's trigger temperature."""
    node_id: int
    limit: FailureLimit
    temperature_c: float

    @property
    def exceedance_c(self) -> float:
        return self.temperature_c - self.limit.trigger_c


@dataclass
class TimeToFailureResult:
    """
    Outcome of an overheat scan.

    ``time_to_failure_s`` is ``inf`` for a safe run and ``None`` when a
    steady-state field violates a limit (there is no time axis).
    """
    safe: bool
    time_to_failure_s: Optional[float]
    max_temperature_c: float
    max_temperature_node: int
    failure_mode: Optional[FailureMode] = None
    limit_name: Optional[str] = None
    node_id: Optional[int] = None
    location_m: Optional[Tuple[float, float]] = None
    temperature_c: Optional[float] = None
    trigger_c: Optional[float] = None
    step: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'safe': self.safe,
            'time_to_failure_s': self.time_to_failure_s,
            'failure_mode': self.failure_mode.value if self.failure_mode else None,
            'limit_name': self.limit_name,
            'node_id': self.node_id,
            'location_m': list(self.location_m) if self.location_m else None,
            'temperature_c': self.temperature_c,
            'trigger_c': self.trigger_c,
            'max_temperature_c': self.max_temperature_c,
            'max_temperature_node': self.max_temperature_node,
            'step': self.step,
        }


@dataclass
class Hotspot:
    node_id: int
    x_m: float
    y_m: float
    temperature_c: float
    margin_c: Optional[float] = None  # trigger minus temperature of the tightest limit
    limit_name: Optional[str] = None


@dataclass
class OverheatReport:
    """Hotspots, violations and verdict for one evaluated field."""
    time_to_failure: TimeToFailureResult
    hotspots: List[Hotspot] = field(default_factory=list)
    violations: List[Violation] = field(default_factory=list)
    limits: List[FailureLimit] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def safe(self) -> bool:
        return self.time_to_failure.safe

    @property
    def verdict(self) -> str:
        return "SAFE" if self.safe else "UNSAFE"

    @property
    def max_temperature_c(self) -> float:
        return self.time_to_failure.max_temperature_c

    def to_dict(self) -> Dict[str, Any]:
        return {
            'verdict': self.verdict,
            'time_to_failure': self.time_to_failure.to_dict(),
            'hotspots': [vars(h).copy() for h in self.hotspots],
            'violations': [{'node_id': v.node_id, 'limit': v.limit.name,
                            'temperature_c': v.temperature_c, 'exceedance_c': v.exceedance_c}
                           for v in self.violations],
            'warnings': list(self.warnings),
        }


class OverheatAnalyzer:
    """
    Per-step failure-limit scanner.

    Args:
        mesh: ThermalMesh the fields belong to
        limits: Failure limits to check
        stop_on_failure: Whether ``observe`` asks the solver to halt
    """

    def __init__(self, mesh, limits: Sequence[FailureLimit], stop_on_failure: bool = True):
        if not limits:
            raise ValueError("At least one failure limit is required")
        self.mesh = mesh
        self.limits = list(limits)
        self.stop_on_failure = stop_on_failure
        self.logger = get_logger()
        self._scopes = [self._scope(limit) for limit in self.limits]
        self.reset()

    @classmethod
    def from_config(cls, mesh, config) -> 'OverheatAnalyzer':
        limits = [FailureLimit.from_key(key, config.safety_margin) for key in config.limit_keys]
        return cls(mesh, limits, config.stop_on_failure)

    def _scope(self, limit: FailureLimit) -> np.ndarray:
        if limit.nodes:
            return np.unique(np.asarray(limit.nodes, dtype=np.int64))
        if limit.materials:
            elements = np.concatenate([self.mesh.elements_with_material(m) for m in limit.materials])
            return self.mesh.nodes_of_elements(elements)
        return np.arange(self.mesh.n_nodes)

    def reset(self):
        self._failure: Optional[TimeToFailureResult] = None
        self._max_temp = -np.inf
        self._max_node = 0
        self._last_step: Optional[int] = None

    def cache_token(self) -> str:
        return repr((self.limits, self.stop_on_failure))

    # ------------------------------------------------------------------
    # Scanning
    # ------------------------------------------------------------------
    def violations(self, snapshot: TemperatureField) -> List[Violation]:
        """All (node, limit) pairs at or over trigger, worst first."""
        T = snapshot.values
        found = []
        for limit, scope in zip(self.limits, self._scopes):
            over = scope[T[scope] >= limit.trigger_c]
            found.extend(Violation(int(n), limit, float(T[n])) for n in over)
        found.sort(key=lambda v: (-v.exceedance_c, v.node_id))
        return found

    def _track_max(self, snapshot: TemperatureField):
        node = snapshot.hottest_node
        if snapshot.values[node] > self._max_temp:
            self._max_temp = float(snapshot.values[node])
            self._max_node = node

    def _failure_result(self, v: Violation, time_s: Optional[float], step: Optional[int]) -> TimeToFailureResult:
        x, y = self.mesh.coordinates[v.node_id]
        return TimeToFailureResult(
            safe=False, time_to_failure_s=time_s,
            max_temperature_c=self._max_temp, max_temperature_node=self._max_node,
            failure_mode=v.limit.mode, limit_name=v.limit.name, node_id=v.node_id,
            location_m=(float(x), float(y)), temperature_c=v.temperature_c,
            trigger_c=v.limit.trigger_c, step=step)

    def start(self, initial: TemperatureField) -> bool:
        """Reset and check the initial field (a violation there fails at t0)."""
        self.reset()
        self._track_max(initial)
        found = self.violations(initial)
        if found:
            self._failure = self._failure_result(found[0], initial.time_s or 0.0, initial.step)
            self.logger.warning(f"Initial field already violates {found[0].limit.name} "
                                f"at node {found[0].node_id}")
        return bool(found) and self.stop_on_failure

    def observe(self, previous: TemperatureField, current: TemperatureField) -> bool:
        """
        Scan one step. Returns True when stepping should halt.
        """
        self._track_max(current)
        self._last_step = current.step
        if self._failure is not None:
            return self.stop_on_failure
        found = self.violations(current)
        if not found:
            return False

        worst = found[0]
        trigger = worst.limit.trigger_c
        T0 = previous.at(worst.node_id)
        T1 = worst.temperature_c
        t0, t1 = previous.time_s or 0.0, current.time_s or 0.0
        if T0 >= trigger or T1 <= T0:
            t_cross = t0
        else:
            t_cross = t0 + (trigger - T0) / (T1 - T0) * (t1 - t0)

        self._failure = self._failure_result(worst, t_cross, current.step)
        self.logger.warning(f"{worst.limit.mode.value}: node {worst.node_id} reached "
                            f"{T1:.2f}°C (trigger {trigger:.2f}°C) at t≈{t_cross:.4g}s")
        return self.stop_on_failure

    def result(self) -> TimeToFailureResult:
        """First failure, or a safe result with the maximum observed temperature."""
        if self._failure is not None:
            return self._failure
        return TimeToFailureResult(safe=True, time_to_failure_s=math.inf,
                                   max_temperature_c=self._max_temp,
                                   max_temperature_node=self._max_node,
                                   step=self._last_step)

    def evaluate_steady(self, snapshot: TemperatureField) -> TimeToFailureResult:
        """Single evaluation of a steady-state field."""
        self.reset()
        self._track_max(snapshot)
        found = self.violations(snapshot)
        if found:
            self._failure = self._failure_result(found[0], None, None)
        return self.result()

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------
    def hotspots(self, snapshot: TemperatureField, count: int = 10) -> List[Hotspot]:
        """Hottest nodes with their margin to the tightest applicable limit."""
        T = snapshot.values
        order = np.lexsort((np.arange(T.size), -T))[:count]
        spots = []
        for node in order:
            margin, name = None, None
            for limit, scope in zip(self.limits, self._scopes):
                if np.any(scope == node):
                    m = limit.trigger_c - T[node]
                    if margin is None or m < margin:
                        margin, name = float(m), limit.name
            x, y = self.mesh.coordinates[node]
            spots.append(Hotspot(int(node), float(x), float(y), float(T[node]), margin, name))
        return spots

    def report(self, snapshot: TemperatureField, hotspot_count: int = 10) -> OverheatReport:
        """Overheat report for ``snapshot`` using the failure state gathered so far."""
        if self._failure is None and self._last_step is None and self._max_temp == -np.inf:
            self.evaluate_steady(snapshot)
        else:
            self._track_max(snapshot)
        ttf = self.result()
        warnings = []
        if not ttf.safe:
            when = ("at steady state" if ttf.time_to_failure_s is None
                    else f"at t={ttf.time_to_failure_s:.4g}s")
            warnings.append(f"{ttf.failure_mode.value} limit {ttf.limit_name} crossed at node "
                            f"{ttf.node_id} {when}")
        return OverheatReport(ttf, self.hotspots(snapshot, hotspot_count),
                              self.violations(snapshot), list(self.limits), warnings)


__all__ = [
    'FailureMode',
    'FailureLimit',
    'Violation',
    'TimeToFailureResult',
    'Hotspot',
    'OverheatReport',
    'OverheatAnalyzer',
]
