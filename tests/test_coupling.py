"""
Tests for conduction coupled to radiation.
"""

import numpy as np
import pytest

from thermal_engine.core.config import SolverConfig
from thermal_engine.core.constants import to_kelvin
from thermal_engine.core.context import RadiativeBC, SimulationContext
from thermal_engine.core.errors import ConvergenceError
from thermal_engine.solvers.heat_sources import HeatSourceBuilder
from thermal_engine.solvers.radiation import (
    SIGMA, EnclosureSurface, RadiationEnclosure, ViewFactorMatrix,
)
from thermal_engine.solvers.thermal_solver import ThermalSolver

Q = 3.75e5  # W/m³
THICKNESS = 1.6e-3
EPS = 0.9


def _equilibrium_c(flux_w_m2, surroundings_c=25.0, emissivity=EPS):
    """Temperature at which ε·σ·(T⁴ - Ts⁴) carries ``flux_w_m2`` away."""
    tk = (to_kelvin(surroundings_c) ** 4 + flux_w_m2 / (emissivity * SIGMA)) ** 0.25
    return tk - to_kelvin(0.0)


def _radiating_plate(mesh, materials, **config):
    source = HeatSourceBuilder(mesh).uniform('board', Q)
    bc = RadiativeBC('all', surroundings_c=25.0, emissivity=EPS, surface='face', sides=2)
    config.setdefault('ambient_temp_c', 25.0)
    return SimulationContext(mesh, materials, heat_sources=[source], boundary_conditions=[bc],
                             config=SolverConfig(**config))


class TestSteadyRadiation:

    def test_radiative_equilibrium(self, small_mesh, materials):
        ctx = _radiating_plate(small_mesh, materials, analysis='steady_state', coupling_mode='once')
        results = ThermalSolver(ctx).solve()

        expected = _equilibrium_c(Q * THICKNESS / 2.0)
        np.testing.assert_allclose(results.final_temperature, expected, atol=1e-3)
        assert results.coupling_iterations > 1
        assert results.convergence_history[-1] < ctx.config.coupling_tolerance_c

    def test_energy_balance_closes(self, small_mesh, materials):
        ctx = _radiating_plate(small_mesh, materials, analysis='steady_state', coupling_mode='once')
        results = ThermalSolver(ctx).solve()
        balance = results.energy_balance

        assert balance.relative_imbalance < 1e-8
        T = to_kelvin(results.final_field.avg_temp)
        area = 2.0 * small_mesh.element_areas.sum()
        radiated = EPS * SIGMA * (T ** 4 - to_kelvin(25.0) ** 4) * area
        assert balance.boundary_outflow_w['radiative'] == pytest.approx(radiated, rel=1e-4)

    def test_under_relaxation_converges_to_same_field(self, small_mesh, materials):
        plain = ThermalSolver(_radiating_plate(small_mesh, materials, analysis='steady_state',
                                               coupling_mode='once')).solve()
        relaxed = ThermalSolver(_radiating_plate(small_mesh, materials, analysis='steady_state',
                                                 coupling_mode='once', relaxation=0.5)).solve()
        np.testing.assert_allclose(relaxed.final_temperature, plain.final_temperature, atol=1e-3)

    def test_iteration_budget_exhausted(self, small_mesh, materials):
        ctx = _radiating_plate(small_mesh, materials, analysis='steady_state', coupling_mode='once',
                               max_coupling_iterations=1)
        with pytest.raises(ConvergenceError) as exc:
            ThermalSolver(ctx).solve()
        assert exc.value.iterations == 1
        assert len(exc.value.history) == 1
        assert exc.value.last_iterate.shape == (small_mesh.n_nodes,)

    def test_coupling_mode_is_required(self, small_mesh, materials):
        ctx = _radiating_plate(small_mesh, materials, analysis='steady_state')
        with pytest.raises(ValueError, match="coupling mode"):
            ThermalSolver(ctx).solve()

    def test_disabled_coupling_rejects_radiation(self, small_mesh, materials):
        ctx = _radiating_plate(small_mesh, materials, analysis='steady_state',
                               coupling_mode='disabled')
        with pytest.raises(ValueError):
            ThermalSolver(ctx).solve()


class TestEnclosure:

    def test_plate_facing_black_wall(self, small_mesh, materials):
        """
        One face of the plate sees only a black wall at 25 C, so its net
        exchange reduces to ε·σ·(T⁴ - Tw⁴).
        """
        area = small_mesh.element_areas.sum()
        vf = ViewFactorMatrix(np.array([[0.0, 1.0], [0.25, 0.75]]), [area, 4.0 * area],
                              names=('board', 'wall'))
        enclosure = RadiationEnclosure(
            (EnclosureSurface('board', nodes='all'),
             EnclosureSurface('wall', emissivity=1.0, temperature_c=25.0)), vf)
        source = HeatSourceBuilder(small_mesh).uniform('board', Q)
        ctx = SimulationContext(small_mesh, materials, heat_sources=[source], enclosure=enclosure,
                                config=SolverConfig(analysis='steady_state', coupling_mode='once',
                                                    ambient_temp_c=25.0))
        results = ThermalSolver(ctx).solve()

        expected = _equilibrium_c(Q * THICKNESS)
        np.testing.assert_allclose(results.final_temperature, expected, atol=1e-3)
        balance = results.energy_balance
        assert balance.boundary_outflow_w['enclosure'] == pytest.approx(balance.source_power_w, rel=1e-6)


class TestTransientRadiation:

    def test_per_step_tracks_equilibrium(self, small_mesh, materials):
        ctx = _radiating_plate(small_mesh, materials, analysis='transient', integrator='implicit',
                               coupling_mode='per_step', dt_s=5.0, n_steps=800)
        results = ThermalSolver(ctx).solve()
        expected = _equilibrium_c(Q * THICKNESS / 2.0)
        assert results.final_field.max_temp == pytest.approx(expected, abs=0.05)
        assert results.coupling_iterations > ctx.config.n_steps

    def test_once_freezes_boundary_terms(self, small_mesh, materials):
        once = ThermalSolver(_radiating_plate(small_mesh, materials, coupling_mode='once',
                                              dt_s=5.0, n_steps=800)).solve()
        per_step = ThermalSolver(_radiating_plate(small_mesh, materials, coupling_mode='per_step',
                                                  dt_s=5.0, n_steps=800)).solve()
        # Terms linearized near 25 C underestimate the exchange at 100 C
        assert once.final_field.max_temp > per_step.final_field.max_temp + 5.0
        assert once.coupling_iterations < per_step.coupling_iterations

    def test_explicit_reevaluates_each_step(self, small_mesh, materials):
        ctx = _radiating_plate(small_mesh, materials, integrator='explicit',
                               coupling_mode='per_step', dt_s=1.0, n_steps=40)
        explicit = ThermalSolver(ctx).solve()
        implicit = ThermalSolver(ctx.with_config(integrator='implicit')).solve()
        assert explicit.final_field.max_temp == pytest.approx(implicit.final_field.max_temp, abs=0.1)
