"""
Thermal Engine
==============
Multi-physics thermal field solver for electronic assemblies.

Features:
- FEM/FDM conduction on 2-D meshes with temperature-dependent materials
- Steady-state and transient (explicit/implicit) solves
- Surface-to-surface radiation with view factors and radiosity coupling
- Overheat and time-to-failure analysis against solder, laminate and
  junction limits
- Mesh refinement studies with the Grid Convergence Index
- Monte Carlo uncertainty quantification with Sobol sensitivity indices

Author: Thermal Engine Developers
Version: 1.0.0
License: MIT
"""

__version__ = "1.0.0"

from .core import (
    ThermalEngineConfig, SolverConfig, RadiationConfig, RefinementConfig,
    UncertaintyConfig, FailureConfig, CouplingMode,
    ThermalMesh, MeshGenerator, GridSpec, ElementType,
    SimulationContext, DirichletBC, ConvectiveBC, RadiativeBC, CancellationToken,
    MaterialsDatabase, ThermalMaterial,
    ThermalEngineError, GeometryError, StabilityError, SingularMatrixError,
    ConvergenceError, MaterialRangeError, CancellationError,
)
from .solvers import (
    TemperatureField, FieldSeries, HeatSource, ComponentPower,
    ThermalSolver, ThermalResults, ThermalAnalysisEngine, run_simulation,
    compute_view_factors, RadiationEnclosure, EnclosureSurface,
)
from .analysis import (
    FailureLimit, OverheatAnalyzer, OverheatReport, TimeToFailureResult,
    MeshRefinementController, RefinementResult,
    ParameterDistribution, UncertaintyEngine, UQResult,
)

__all__ = [
    '__version__',
    # Configuration
    'ThermalEngineConfig', 'SolverConfig', 'RadiationConfig', 'RefinementConfig',
    'UncertaintyConfig', 'FailureConfig', 'CouplingMode',
    # Problem definition
    'ThermalMesh', 'MeshGenerator', 'GridSpec', 'ElementType',
    'SimulationContext', 'DirichletBC', 'ConvectiveBC', 'RadiativeBC', 'CancellationToken',
    'MaterialsDatabase', 'ThermalMaterial', 'HeatSource', 'ComponentPower',
    # Errors
    'ThermalEngineError', 'GeometryError', 'StabilityError', 'SingularMatrixError',
    'ConvergenceError', 'MaterialRangeError', 'CancellationError',
    # Solving
    'TemperatureField', 'FieldSeries', 'ThermalSolver', 'ThermalResults',
    'ThermalAnalysisEngine', 'run_simulation',
    'compute_view_factors', 'RadiationEnclosure', 'EnclosureSurface',
    # Analysis
    'FailureLimit', 'OverheatAnalyzer', 'OverheatReport', 'TimeToFailureResult',
    'MeshRefinementController', 'RefinementResult',
    'ParameterDistribution', 'UncertaintyEngine', 'UQResult',
]
