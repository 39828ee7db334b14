"""
Thermal Engine - Material Resolver
==================================
Maps mesh elements to material properties evaluated at the element
temperature. Temperatures outside a material's characterised range are
flagged as extrapolations; strict mode turns them into errors.

Author: Thermal Engine Developers
Version: 1.0.0
"""

from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional

import numpy as np

from .constants import ThermalMaterial, MaterialsDatabase
from .errors import GeometryError, MaterialRangeError
from ..utils.logger import get_logger


@dataclass
class ElementProperties:
    """Per-element property arrays, all of length n_elements."""
    conductivity: np.ndarray
    density: np.ndarray
    specific_heat: np.ndarray
    emissivity: np.ndarray
    extrapolated: np.ndarray  # bool flag per element
    warnings: List[str] = field(default_factory=list)

    @property
    def volumetric_heat_capacity(self) -> np.ndarray:
        """ρ·cp [J/(m³·K)]."""
        return self.density * self.specific_heat

    @property
    def diffusivity(self) -> np.ndarray:
        """κ = k/(ρ·cp) [m²/s]."""
        return self.conductivity / self.volumetric_heat_capacity

    @property
    def any_extrapolated(self) -> bool:
        return bool(self.extrapolated.any())


class MaterialResolver:
    """Resolves element materials to property arrays."""

    def __init__(self, materials: Optional[Mapping[str, ThermalMaterial]] = None,
                 strict: bool = False):
        self.materials: Dict[str, ThermalMaterial] = dict(
            materials if materials is not None else MaterialsDatabase.get_all())
        self.strict = strict
        self.logger = get_logger()

    def get(self, tag: str) -> ThermalMaterial:
        try:
            return self.materials[tag]
        except KeyError:
            raise GeometryError(f"Unknown material '{tag}'",
                                {'available': sorted(self.materials)}) from None

    def is_temperature_dependent(self, mesh) -> bool:
        return any(self.get(tag).is_temperature_dependent for tag in set(mesh.element_materials))

    @staticmethod
    def element_temperatures(mesh, node_temps_c: np.ndarray) -> np.ndarray:
        """Element temperature as the mean of its node temperatures."""
        return np.asarray(node_temps_c, dtype=np.float64)[mesh.connectivity].mean(axis=1)

    def resolve(self, mesh, element_temps_c=None) -> ElementProperties:
        """
        Evaluate every property on every element.

        Args:
            mesh: ThermalMesh to resolve
            element_temps_c: Scalar or per-element temperatures (°C). Defaults
                to each material's reference temperature.

        Raises:
            MaterialRangeError: In strict mode, if any element temperature is
                outside its material's valid range.
        """
        n = mesh.n_elements
        k = np.empty(n)
        rho = np.empty(n)
        cp = np.empty(n)
        eps = np.empty(n)
        extrapolated = np.zeros(n, dtype=bool)
        warnings: List[str] = []

        tags = np.array(mesh.element_materials, dtype=object)
        for tag in sorted(set(mesh.element_materials)):
            mat = self.get(tag)
            idx = np.flatnonzero(tags == tag)
            if element_temps_c is None:
                temps = np.full(idx.size, mat.reference_temp_c)
            else:
                temps = np.broadcast_to(np.asarray(element_temps_c, dtype=np.float64), (n,))[idx]

            k[idx] = mat.property_at('thermal_conductivity', temps)
            rho[idx] = mat.property_at('density', temps)
            cp[idx] = mat.property_at('specific_heat', temps)
            eps[idx] = mat.property_at('emissivity', temps)

            outside = ~mat.in_range(temps)
            if outside.any():
                worst = temps[outside][np.argmax(np.abs(temps[outside] - np.mean(mat.valid_range_c)))]
                err = MaterialRangeError(
                    f"Material '{tag}' evaluated at {worst:.2f}°C outside valid range "
                    f"{mat.valid_range_c[0]:.1f}..{mat.valid_range_c[1]:.1f}°C "
                    f"on {int(outside.sum())} element(s)",
                    material=tag,
                    temperature_c=float(worst),
                    valid_range_c=tuple(mat.valid_range_c),
                    element_ids=idx[outside].tolist(),
                )
                if self.strict:
                    raise err
                self.logger.warning(f"{err} - extrapolating")
                warnings.append(str(err))
                extrapolated[idx[outside]] = True

        return ElementProperties(k, rho, cp, eps, extrapolated, warnings)

    def node_emissivity(self, mesh, props: ElementProperties) -> np.ndarray:
        """Per-node emissivity as the area-weighted mean of adjacent elements."""
        nen = mesh.connectivity.shape[1]
        weights = np.repeat(np.abs(mesh.element_areas), nen)
        num = np.zeros(mesh.n_nodes)
        den = np.zeros(mesh.n_nodes)
        np.add.at(num, mesh.connectivity.ravel(), weights * np.repeat(props.emissivity, nen))
        np.add.at(den, mesh.connectivity.ravel(), weights)
        return num / np.where(den > 0, den, 1.0)


__all__ = ['ElementProperties', 'MaterialResolver']
