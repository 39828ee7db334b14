"""
Thermal Engine - Physical Constants and Materials Database
==========================================================
Physical constants, temperature-dependent material properties with declared
validity ranges and uncertainties, and default failure temperatures.

Author: Thermal Engine Developers
Version: 1.0.0
License: MIT
"""

from dataclasses import dataclass, field, replace
from typing import Dict, Optional, Tuple

import numpy as np


# =============================================================================
# PHYSICAL CONSTANTS
# =============================================================================

class PhysicalConstants:
    """Fundamental physical constants for thermal calculations."""

    # Stefan-Boltzmann constant [W/(m²·K⁴)]
    STEFAN_BOLTZMANN = 5.670374419e-8

    # Absolute zero offset [K]
    CELSIUS_TO_KELVIN = 273.15

    # Reference temperature for material properties [°C]
    REFERENCE_TEMP = 25.0

    # Copper resistivity at the reference temperature [Ω·m]
    COPPER_RESISTIVITY = 1.68e-8

    # Copper temperature coefficient of resistivity [1/K]
    COPPER_TEMPCO = 0.00393


def to_kelvin(temp_c):
    """Convert °C (scalar or array) to K."""
    return np.asarray(temp_c, dtype=np.float64) + PhysicalConstants.CELSIUS_TO_KELVIN


# =============================================================================
# MATERIAL PROPERTIES
# =============================================================================

PROPERTY_NAMES = ('thermal_conductivity', 'density', 'specific_heat', 'emissivity')


@dataclass
class ThermalMaterial:
    """
    Thermal properties of a material.

    Each property is a low-order polynomial in (T - reference_temp_c):
    ``p(T) = p0 + c1·ΔT + c2·ΔT² + ...`` where ``p0`` is the base field and
    the ``c`` terms live in ``temperature_coefficients[property]``. Values
    outside ``valid_range_c`` are extrapolations.
    """
    name: str
    thermal_conductivity: float  # W/(m·K)
    specific_heat: float  # J/(kg·K)
    density: float  # kg/m³
    emissivity: float = 0.9  # dimensionless (0-1)
    temperature_coefficients: Dict[str, Tuple[float, ...]] = field(default_factory=dict)
    valid_range_c: Tuple[float, float] = (-55.0, 150.0)
    reference_temp_c: float = PhysicalConstants.REFERENCE_TEMP
    # One standard deviation per property, same units as the property
    uncertainty: Dict[str, float] = field(default_factory=dict)

    @property
    def diffusivity(self) -> float:
        """Thermal diffusivity κ = k/(ρ·cp) at the reference temperature [m²/s]."""
        return self.thermal_conductivity / (self.density * self.specific_heat)

    @property
    def is_temperature_dependent(self) -> bool:
        return any(any(c != 0.0 for c in coeffs) for coeffs in self.temperature_coefficients.values())

    def property_at(self, name: str, temp_c):
        """Evaluate one property at a temperature (scalar or array, °C)."""
        if name not in PROPERTY_NAMES:
            raise KeyError(f"Unknown material property: {name}")
        base = getattr(self, name)
        coeffs = self.temperature_coefficients.get(name, ())
        temp = np.asarray(temp_c, dtype=np.float64)
        value = np.full_like(temp, base, dtype=np.float64)
        if coeffs:
            dt = temp - self.reference_temp_c
            power = np.ones_like(temp)
            for c in coeffs:
                power = power * dt
                value = value + c * power
        if name == 'emissivity':
            return np.clip(value, 0.0, 1.0)
        # Polynomial extrapolation can go non-physical far outside the fit
        return np.maximum(value, 1e-12 * max(abs(base), 1.0))

    def diffusivity_at(self, temp_c):
        return (self.property_at('thermal_conductivity', temp_c) /
                (self.property_at('density', temp_c) * self.property_at('specific_heat', temp_c)))

    def in_range(self, temp_c) -> np.ndarray:
        lo, hi = self.valid_range_c
        temp = np.asarray(temp_c, dtype=np.float64)
        return (temp >= lo) & (temp <= hi)

    def with_overrides(self, **changes) -> 'ThermalMaterial':
        """Return a copy with some fields replaced (used by UQ sampling)."""
        return replace(self, **changes)

    def to_dict(self) -> Dict:
        return {
            'name': self.name,
            'thermal_conductivity': self.thermal_conductivity,
            'specific_heat': self.specific_heat,
            'density': self.density,
            'emissivity': self.emissivity,
            'temperature_coefficients': {k: list(v) for k, v in self.temperature_coefficients.items()},
            'valid_range_c': list(self.valid_range_c),
            'reference_temp_c': self.reference_temp_c,
            'uncertainty': dict(self.uncertainty),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'ThermalMaterial':
        data = dict(data)
        if 'temperature_coefficients' in data:
            data['temperature_coefficients'] = {
                k: tuple(v) for k, v in data['temperature_coefficients'].items()
            }
        if 'valid_range_c' in data:
            data['valid_range_c'] = tuple(data['valid_range_c'])
        allowed = cls.__dataclass_fields__.keys()
        return cls(**{k: v for k, v in data.items() if k in allowed})


class MaterialsDatabase:
    """Default material table for boards, dies and packages."""

    PCB_SUBSTRATES = {
        'FR4': ThermalMaterial(
            name='FR4 (Standard)',
            thermal_conductivity=0.3,
            specific_heat=1200,
            density=1900,
            emissivity=0.90,
            temperature_coefficients={'specific_heat': (2.5,)},
            valid_range_c=(-55.0, 130.0),  # up to Tg
            uncertainty={'thermal_conductivity': 0.03, 'specific_heat': 60.0, 'density': 40.0},
        ),
        'FR4_HIGH_TG': ThermalMaterial(
            name='FR4 High-Tg',
            thermal_conductivity=0.35,
            specific_heat=1050,
            density=1900,
            emissivity=0.90,
            valid_range_c=(-55.0, 170.0),
            uncertainty={'thermal_conductivity': 0.03},
        ),
        'POLYIMIDE': ThermalMaterial(
            name='Polyimide (Kapton)',
            thermal_conductivity=0.12,
            specific_heat=1090,
            density=1420,
            emissivity=0.85,
            valid_range_c=(-200.0, 400.0),
        ),
        'CERAMIC_ALUMINA': ThermalMaterial(
            name='Ceramic (Al₂O₃)',
            thermal_conductivity=24.0,
            specific_heat=880,
            density=3900,
            emissivity=0.80,
            temperature_coefficients={'thermal_conductivity': (-0.045,)},
            valid_range_c=(-50.0, 400.0),
            uncertainty={'thermal_conductivity': 1.5},
        ),
        'CERAMIC_ALN': ThermalMaterial(
            name='Ceramic (AlN)',
            thermal_conductivity=170.0,
            specific_heat=740,
            density=3260,
            emissivity=0.75,
            valid_range_c=(-50.0, 400.0),
        ),
    }

    CONDUCTORS = {
        'COPPER': ThermalMaterial(
            name='Copper (Annealed)',
            thermal_conductivity=401.0,
            specific_heat=385,
            density=8960,
            emissivity=0.03,
            temperature_coefficients={'thermal_conductivity': (-0.068,)},
            valid_range_c=(-100.0, 500.0),
            uncertainty={'thermal_conductivity': 8.0},
        ),
        'SAC305': ThermalMaterial(
            name='Solder (SAC305)',
            thermal_conductivity=58.0,
            specific_heat=220,
            density=7400,
            emissivity=0.05,
            valid_range_c=(-55.0, 217.0),  # solidus
            uncertainty={'thermal_conductivity': 3.0},
        ),
        'SN63PB37': ThermalMaterial(
            name='Solder (Sn63Pb37)',
            thermal_conductivity=50.0,
            specific_heat=180,
            density=8400,
            emissivity=0.05,
            valid_range_c=(-55.0, 183.0),
        ),
    }

    DIE_AND_PACKAGE = {
        'SILICON': ThermalMaterial(
            name='Silicon',
            thermal_conductivity=148.0,
            specific_heat=705,
            density=2329,
            emissivity=0.65,
            # k falls roughly as 1/T over the operating range
            temperature_coefficients={'thermal_conductivity': (-0.52, 0.0011)},
            valid_range_c=(-55.0, 200.0),
            uncertainty={'thermal_conductivity': 5.0},
        ),
        'MOLD_COMPOUND': ThermalMaterial(
            name='Epoxy Mould Compound',
            thermal_conductivity=0.9,
            specific_heat=880,
            density=1970,
            emissivity=0.92,
            valid_range_c=(-55.0, 175.0),
            uncertainty={'thermal_conductivity': 0.1},
        ),
        'ALUMINUM_6061': ThermalMaterial(
            name='Aluminum 6061-T6',
            thermal_conductivity=167.0,
            specific_heat=896,
            density=2700,
            emissivity=0.09,
            valid_range_c=(-200.0, 400.0),
        ),
    }

    @classmethod
    def get_all(cls) -> Dict[str, ThermalMaterial]:
        """All built-in materials as a flat dictionary."""
        materials = {}
        for category in (cls.PCB_SUBSTRATES, cls.CONDUCTORS, cls.DIE_AND_PACKAGE):
            materials.update(category)
        return materials

    @classmethod
    def get(cls, key: str) -> Optional[ThermalMaterial]:
        return cls.get_all().get(key.upper())


# =============================================================================
# FAILURE TEMPERATURES
# =============================================================================

# key -> (failure mode name, limit °C)
FAILURE_TEMPERATURES: Dict[str, Tuple[str, float]] = {
    'SAC305_SOLIDUS': ('SolderMelting', 217.0),
    'SN63PB37_EUTECTIC': ('SolderMelting', 183.0),
    'FR4_TG': ('GlassTransition', 130.0),
    'FR4_HIGH_TG': ('GlassTransition', 170.0),
    'SILICON_JUNCTION_COMMERCIAL': ('JunctionOvertemperature', 125.0),
    'SILICON_JUNCTION_AUTOMOTIVE': ('JunctionOvertemperature', 150.0),
}


# =============================================================================
# SIMULATION DEFAULTS
# =============================================================================

class SimulationDefaults:
    """Default simulation parameters."""

    DEFAULT_AMBIENT_TEMP_C = 25.0

    DEFAULT_TIMESTEP_S = 0.1
    MIN_TIMESTEP_S = 1e-6

    COUPLING_TOLERANCE_C = 1e-4
    MAX_COUPLING_ITERATIONS = 100

    LINEAR_TOLERANCE = 1e-10
    MAX_LINEAR_ITERATIONS = 1000

    GCI_TARGET = 0.05
    MAX_REFINEMENT_DEPTH = 5

    MAX_RESULT_FRAMES = 1000
    RESULT_CACHE_SIZE = 32


__all__ = [
    'PhysicalConstants',
    'PROPERTY_NAMES',
    'ThermalMaterial',
    'MaterialsDatabase',
    'FAILURE_TEMPERATURES',
    'SimulationDefaults',
    'to_kelvin',
]
