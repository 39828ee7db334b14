"""
Thermal Engine - Configuration Management
=========================================
Configuration data structures and JSON serialization.

Author: Thermal Engine Developers
Version: 1.0.0
"""

import json
from typing import List, Dict, Optional, Tuple, Any
from dataclasses import dataclass, field, asdict
from enum import Enum
from pathlib import Path
from datetime import datetime

from .constants import SimulationDefaults
from ..utils.logger import get_logger


class CouplingMode(Enum):
    """How the radiosity solve is coupled to conduction."""
    DISABLED = "disabled"   # conduction only; radiative BCs/enclosures are rejected
    ONCE = "once"           # converge radiation once, then hold it as a fixed boundary load
    PER_STEP = "per_step"   # re-converge radiation inside every time step


def _filter_kwargs(dc_type, d: Dict[str, Any]) -> Dict[str, Any]:
    """Filter dict keys to those accepted by the dataclass constructor."""
    allowed = getattr(dc_type, '__dataclass_fields__', {}).keys()
    return {k: v for k, v in (d or {}).items() if k in allowed}


@dataclass
class SolverConfig:
    """Discretization, time integration and linear solver parameters."""
    method: str = "fem"  # fem, fdm
    analysis: str = "transient"  # transient, steady_state
    integrator: str = "implicit"  # explicit, implicit
    linear_solver: str = "direct"  # direct, cg
    dt_s: float = SimulationDefaults.DEFAULT_TIMESTEP_S
    n_steps: int = 1000
    output_interval_steps: int = 1
    max_frames: int = SimulationDefaults.MAX_RESULT_FRAMES
    ambient_temp_c: float = SimulationDefaults.DEFAULT_AMBIENT_TEMP_C
    initial_temp_c: Optional[float] = None  # None = ambient
    lumped_mass: bool = True
    linear_tolerance: float = SimulationDefaults.LINEAR_TOLERANCE
    max_linear_iterations: int = SimulationDefaults.MAX_LINEAR_ITERATIONS

    # Conduction-radiation coupling (None = not chosen)
    coupling_mode: Optional[str] = None
    coupling_tolerance_c: float = SimulationDefaults.COUPLING_TOLERANCE_C
    max_coupling_iterations: int = SimulationDefaults.MAX_COUPLING_ITERATIONS
    relaxation: float = 1.0

    strict_materials: bool = False
    num_threads: int = 1  # assembly workers
    assembly_chunk_size: int = 4096

    @property
    def coupling(self) -> Optional[CouplingMode]:
        if self.coupling_mode is None:
            return None
        if isinstance(self.coupling_mode, CouplingMode):
            return self.coupling_mode
        return CouplingMode(str(self.coupling_mode).lower())

    @property
    def initial_temperature_c(self) -> float:
        return self.ambient_temp_c if self.initial_temp_c is None else self.initial_temp_c

    def validate(self):
        """Raise ValueError for settings no solver accepts."""
        if self.method not in ("fem", "fdm"):
            raise ValueError(f"Unknown discretization method: {self.method}")
        if self.analysis not in ("transient", "steady_state"):
            raise ValueError(f"Unknown analysis type: {self.analysis}")
        if self.integrator not in ("explicit", "implicit"):
            raise ValueError(f"Unknown integrator: {self.integrator}")
        if self.linear_solver not in ("direct", "cg"):
            raise ValueError(f"Unknown linear solver: {self.linear_solver}")
        if self.analysis == "transient" and (self.dt_s <= 0 or self.n_steps < 0):
            raise ValueError(f"Transient runs need dt > 0 and n_steps >= 0 (dt={self.dt_s}, n={self.n_steps})")
        if not 0.0 < self.relaxation <= 1.0:
            raise ValueError(f"Relaxation factor must be in (0, 1], got {self.relaxation}")
        self.coupling  # raises ValueError for unknown modes


@dataclass
class RadiationConfig:
    """View-factor computation parameters."""
    method: str = "analytic"  # analytic, monte_carlo, hemicube
    n_rays: int = 200_000  # upper bound per surface
    batch_size: int = 20_000
    variance_threshold: float = 1e-4  # stop once F(1-F)/N is below this for every F_ij
    seed: int = 0
    hemicube_resolution: int = 64
    source_subdivisions: int = 4
    enforce_closure: bool = True
    closure_tolerance: float = 1e-12
    max_closure_iterations: int = 10_000


@dataclass
class RefinementConfig:
    """Grid convergence study parameters."""
    ratio: int = 2
    gci_target: float = SimulationDefaults.GCI_TARGET
    max_depth: int = SimulationDefaults.MAX_REFINEMENT_DEPTH
    min_levels: int = 3
    safety_factor_two_level: float = 3.0
    safety_factor_multi_level: float = 1.25
    assumed_order: float = 2.0
    num_workers: int = 1


@dataclass
class UncertaintyConfig:
    """Monte Carlo / Sobol sampling parameters."""
    n_samples: int = 256  # base sample size N; total runs = N·(d + 2)
    seed: int = 12345
    confidence: float = 0.95
    percentiles: Tuple[float, ...] = (5.0, 50.0, 95.0)
    compute_sensitivity: bool = True
    num_workers: int = 1


@dataclass
class FailureConfig:
    """Overheat detection parameters."""
    safety_margin: float = 0.1  # trigger at (1 - margin) × limit
    limit_keys: List[str] = field(default_factory=lambda: ['SAC305_SOLIDUS'])
    stop_on_failure: bool = True
    hotspot_count: int = 10


@dataclass
class ThermalEngineConfig:
    """Complete engine configuration."""
    version: str = "1.0.0"
    created: str = ""
    modified: str = ""

    solver: SolverConfig = field(default_factory=SolverConfig)
    radiation: RadiationConfig = field(default_factory=RadiationConfig)
    refinement: RefinementConfig = field(default_factory=RefinementConfig)
    uncertainty: UncertaintyConfig = field(default_factory=UncertaintyConfig)
    failure: FailureConfig = field(default_factory=FailureConfig)
    materials: Dict[str, Dict[str, Any]] = field(default_factory=dict)  # overrides / additions

    def __post_init__(self):
        if not self.created:
            self.created = datetime.now().isoformat()
        self.modified = datetime.now().isoformat()

    def material_table(self) -> Dict[str, Any]:
        """Built-in materials with configured overrides applied."""
        from .constants import MaterialsDatabase, ThermalMaterial

        table = MaterialsDatabase.get_all()
        for key, data in self.materials.items():
            key = key.upper()
            if key in table:
                table[key] = ThermalMaterial.from_dict({**table[key].to_dict(), **data})
            else:
                table[key] = ThermalMaterial.from_dict(data)
        return table

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        self.modified = datetime.now().isoformat()
        data = asdict(self)
        data['uncertainty']['percentiles'] = list(self.uncertainty.percentiles)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ThermalEngineConfig':
        """Create from dictionary; unknown keys are ignored."""
        config = cls()

        if 'version' in data:
            config.version = data['version']
        if 'created' in data:
            config.created = data['created']

        if 'solver' in data:
            config.solver = SolverConfig(**_filter_kwargs(SolverConfig, data['solver']))
        if 'radiation' in data:
            config.radiation = RadiationConfig(**_filter_kwargs(RadiationConfig, data['radiation']))
        if 'refinement' in data:
            config.refinement = RefinementConfig(**_filter_kwargs(RefinementConfig, data['refinement']))
        if 'uncertainty' in data:
            u = _filter_kwargs(UncertaintyConfig, data['uncertainty'])
            if 'percentiles' in u:
                u['percentiles'] = tuple(u['percentiles'])
            config.uncertainty = UncertaintyConfig(**u)
        if 'failure' in data:
            config.failure = FailureConfig(**_filter_kwargs(FailureConfig, data['failure']))
        if 'materials' in data:
            config.materials = dict(data['materials'])

        return config


class ConfigManager:
    """Manages loading and saving configuration next to a project file."""

    def __init__(self, project_path: str = ""):
        self.project_path = Path(project_path) if project_path else None
        self.config: Optional[ThermalEngineConfig] = None
        self._config_path: Optional[Path] = None
        self.logger = get_logger()

        if self.project_path:
            self._config_path = self.project_path.with_name(
                self.project_path.stem + "_thermal_engine.json"
            )

    @property
    def config_path(self) -> Optional[Path]:
        return self._config_path

    def get_config(self) -> ThermalEngineConfig:
        """Get configuration, loading from file if it exists."""
        if self.config:
            return self.config

        if self._config_path and self._config_path.exists():
            try:
                with open(self._config_path, 'r') as f:
                    data = json.load(f)
                self.config = ThermalEngineConfig.from_dict(data)
            except (OSError, ValueError, TypeError) as e:
                self.logger.warning(f"Failed to load config {self._config_path}: {e}")
                self.config = ThermalEngineConfig()
        else:
            self.config = ThermalEngineConfig()

        return self.config

    def save(self) -> bool:
        """Save configuration to the project's config file."""
        if not self.config or not self._config_path:
            return False
        return self.export(str(self._config_path))

    def export(self, path: str) -> bool:
        """Export configuration to the specified path."""
        if not self.config:
            return False

        try:
            data = self.config.to_dict()
            with open(path, 'w') as f:
                json.dump(data, f, indent=2)
            return True
        except OSError as e:
            self.logger.error(f"Failed to save config to {path}: {e}")
            return False

    def import_config(self, path: str) -> bool:
        """Import configuration from file."""
        try:
            with open(path, 'r') as f:
                data = json.load(f)
            self.config = ThermalEngineConfig.from_dict(data)
            return True
        except (OSError, ValueError, TypeError) as e:
            self.logger.error(f"Failed to import config from {path}: {e}")
            return False


__all__ = [
    'CouplingMode',
    'SolverConfig',
    'RadiationConfig',
    'RefinementConfig',
    'UncertaintyConfig',
    'FailureConfig',
    'ThermalEngineConfig',
    'ConfigManager',
]
