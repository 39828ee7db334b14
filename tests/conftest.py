"""
Shared fixtures for the thermal engine test suite.
"""

import numpy as np
import pytest

from thermal_engine.core.config import SolverConfig
from thermal_engine.core.constants import ThermalMaterial
from thermal_engine.core.context import ConvectiveBC, DirichletBC, SimulationContext
from thermal_engine.core.mesh import MeshGenerator
from thermal_engine.solvers.fields import TemperatureField
from thermal_engine.solvers.heat_sources import HeatSourceBuilder
from thermal_engine.solvers.radiation import get_view_factor_cache


@pytest.fixture(autouse=True)
def clear_view_factor_cache():
    get_view_factor_cache().clear()
    yield
    get_view_factor_cache().clear()


@pytest.fixture
def board_material():
    """FR4-like laminate with constant properties and a wide valid range."""
    return ThermalMaterial(
        name='Test laminate',
        thermal_conductivity=0.3,
        specific_heat=1200.0,
        density=1900.0,
        emissivity=0.9,
        valid_range_c=(-200.0, 1000.0),
    )


@pytest.fixture
def materials(board_material):
    return {'BOARD': board_material}


@pytest.fixture
def small_mesh():
    """5 x 5 nodes at 2 mm spacing."""
    return MeshGenerator.square_with_spacing(5, 2e-3, 'BOARD')


@pytest.fixture
def grid_20():
    """20 x 20 nodes at 1 mm spacing."""
    return MeshGenerator.square_with_spacing(20, 1e-3, 'BOARD')


@pytest.fixture
def heated_plate(grid_20, materials):
    """
    Steady plate: uniform heating, edges held at 25 C.
    """
    source = HeatSourceBuilder(grid_20).uniform('board', 2e5)
    return SimulationContext(
        mesh=grid_20,
        materials=materials,
        heat_sources=[source],
        boundary_conditions=[DirichletBC('boundary', 25.0)],
        config=SolverConfig(analysis='steady_state'),
    )


@pytest.fixture
def lumped_context(small_mesh, materials):
    """
    Uniformly heated plate cooled on both faces: stays spatially uniform
    and follows T(t) = Ta + Q·t_b/(2h)·(1 - exp(-t/tau)).
    """
    source = HeatSourceBuilder(small_mesh).uniform('board', 3.75e6)
    return SimulationContext(
        mesh=small_mesh,
        materials=materials,
        heat_sources=[source],
        boundary_conditions=[ConvectiveBC('all', h=10.0, ambient_c=25.0, surface='face', sides=2)],
        config=SolverConfig(analysis='transient', integrator='implicit', dt_s=0.1, n_steps=3000,
                            ambient_temp_c=25.0, max_frames=100),
    )


@pytest.fixture
def make_field():
    """Builds a TemperatureField of ``n`` nodes with some nodes overridden."""
    def make(n, value=25.0, time_s=None, step=0, hot=None):
        values = np.full(n, float(value))
        for node, temp in (hot or {}).items():
            values[node] = temp
        return TemperatureField(values, time_s, step)
    return make
