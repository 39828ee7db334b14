"""
Thermal Engine - Analysis Module
================================
Overheat/time-to-failure scanning, grid convergence studies and
uncertainty quantification built on the solve pipeline.
"""

from .failure import (
    FailureMode,
    FailureLimit,
    Violation,
    TimeToFailureResult,
    Hotspot,
    OverheatReport,
    OverheatAnalyzer,
)

from .refinement import (
    grid_convergence_index,
    observed_order,
    richardson_extrapolate,
    RefinementLevel,
    ExperimentalComparison,
    RefinementResult,
    MeshRefinementController,
)

from .uncertainty import (
    DistributionType,
    ParameterDistribution,
    sobol_indices,
    UQResult,
    UncertaintyEngine,
)

__all__ = [
    # Failure
    'FailureMode',
    'FailureLimit',
    'Violation',
    'TimeToFailureResult',
    'Hotspot',
    'OverheatReport',
    'OverheatAnalyzer',
    # Refinement
    'grid_convergence_index',
    'observed_order',
    'richardson_extrapolate',
    'RefinementLevel',
    'ExperimentalComparison',
    'RefinementResult',
    'MeshRefinementController',
    # Uncertainty
    'DistributionType',
    'ParameterDistribution',
    'sobol_indices',
    'UQResult',
    'UncertaintyEngine',
]
