"""
Thermal Engine - Exceptions
===========================
Structured error hierarchy. Every error carries a ``details`` dict with enough
context (mesh diagnostics, last iterate, offending values) to reproduce it.
"""

from typing import Any, Dict, Optional

import numpy as np


class ThermalEngineError(Exception):
    """Base exception for all thermal engine errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}


class GeometryError(ThermalEngineError):
    """Degenerate mesh or zero/negative volume; raised before assembly."""
    pass


class StabilityError(ThermalEngineError):
    """Explicit time step exceeds the diffusion stability bound."""

    def __init__(self, message: str, dt: float = None, dt_limit: float = None):
        super().__init__(message, {'dt': dt, 'dt_limit': dt_limit})
        self.dt = dt
        self.dt_limit = dt_limit


class SingularMatrixError(ThermalEngineError):
    """Disconnected or under-constrained system (no Dirichlet/Robin anchor)."""

    def __init__(self, message: str, n_components: int = None,
                 unanchored_components: list = None):
        super().__init__(message, {
            'n_components': n_components,
            'unanchored_components': unanchored_components or [],
        })
        self.n_components = n_components
        self.unanchored_components = unanchored_components or []


class ConvergenceError(ThermalEngineError):
    """Iteration budget exhausted; the last iterate is kept for diagnosis."""

    def __init__(self, message: str, iterations: int = None, residual: float = None,
                 last_iterate: Optional[np.ndarray] = None, history: Optional[list] = None):
        super().__init__(message, {
            'iterations': iterations,
            'residual': residual,
        })
        self.iterations = iterations
        self.residual = residual
        self.last_iterate = last_iterate
        self.history = history or []


class MaterialRangeError(ThermalEngineError):
    """Operating temperature is outside a material's characterised range."""

    def __init__(self, message: str, material: str = None, temperature_c: float = None,
                 valid_range_c: tuple = None, element_ids: Optional[list] = None):
        super().__init__(message, {
            'material': material,
            'temperature_c': temperature_c,
            'valid_range_c': valid_range_c,
        })
        self.material = material
        self.temperature_c = temperature_c
        self.valid_range_c = valid_range_c
        self.element_ids = element_ids or []


class CancellationError(ThermalEngineError):
    """Cancellation observed at a checkpoint; completed work is kept."""

    def __init__(self, message: str, partial_result: Any = None, completed: int = 0):
        super().__init__(message, {'completed': completed})
        self.partial_result = partial_result
        self.completed = completed


__all__ = [
    'ThermalEngineError',
    'GeometryError',
    'StabilityError',
    'SingularMatrixError',
    'ConvergenceError',
    'MaterialRangeError',
    'CancellationError',
]
