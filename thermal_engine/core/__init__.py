"""
Thermal Engine - Core Module
============================
Core data structures: configuration, constants, mesh, materials and the
simulation context.
"""

from .errors import (
    ThermalEngineError, GeometryError, StabilityError, SingularMatrixError,
    ConvergenceError, MaterialRangeError, CancellationError
)

from .config import (
    CouplingMode, SolverConfig, RadiationConfig, RefinementConfig,
    UncertaintyConfig, FailureConfig, ThermalEngineConfig, ConfigManager
)

from .constants import (
    PhysicalConstants, ThermalMaterial, MaterialsDatabase,
    FAILURE_TEMPERATURES, SimulationDefaults, to_kelvin
)

from .mesh import ElementType, MeshNode, MeshElement, GridSpec, ThermalMesh, MeshGenerator

from .materials import ElementProperties, MaterialResolver

from .context import (
    DirichletBC, ConvectiveBC, RadiativeBC, BoundaryCondition,
    CancellationToken, SimulationContext
)

__all__ = [
    # Errors
    'ThermalEngineError', 'GeometryError', 'StabilityError', 'SingularMatrixError',
    'ConvergenceError', 'MaterialRangeError', 'CancellationError',

    # Configuration
    'CouplingMode', 'SolverConfig', 'RadiationConfig', 'RefinementConfig',
    'UncertaintyConfig', 'FailureConfig', 'ThermalEngineConfig', 'ConfigManager',

    # Constants & Materials
    'PhysicalConstants', 'ThermalMaterial', 'MaterialsDatabase',
    'FAILURE_TEMPERATURES', 'SimulationDefaults', 'to_kelvin',
    'ElementProperties', 'MaterialResolver',

    # Mesh
    'ElementType', 'MeshNode', 'MeshElement', 'GridSpec', 'ThermalMesh', 'MeshGenerator',

    # Simulation context
    'DirichletBC', 'ConvectiveBC', 'RadiativeBC', 'BoundaryCondition',
    'CancellationToken', 'SimulationContext',
]
