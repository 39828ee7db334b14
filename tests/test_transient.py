"""
Tests for transient integration and the solve pipeline around it.
"""

import numpy as np
import pytest

from thermal_engine.core.config import SolverConfig
from thermal_engine.core.constants import MaterialsDatabase
from thermal_engine.core.context import CancellationToken, DirichletBC, SimulationContext
from thermal_engine.core.errors import CancellationError, ConvergenceError, StabilityError
from thermal_engine.core.materials import MaterialResolver
from thermal_engine.core.mesh import MeshGenerator
from thermal_engine.solvers.assembler import SystemAssembler
from thermal_engine.solvers.heat_sources import HeatSource, HeatSourceBuilder
from thermal_engine.solvers.thermal_solver import ResultCache, SolverState, ThermalSolver, run_simulation
from thermal_engine.solvers.transient import (
    ExplicitIntegrator, ImplicitIntegrator, explicit_stability_limit,
)


@pytest.fixture
def hot_edge_system(materials):
    """10 x 10 plate at 25 C with its left edge held at 100 C."""
    mesh = MeshGenerator.square_with_spacing(10, 1e-3, 'BOARD')
    props = MaterialResolver(materials).resolve(mesh)
    system = SystemAssembler(mesh).build(props, np.zeros(mesh.n_elements),
                                         [DirichletBC('left', 100.0)])
    T0 = np.full(mesh.n_nodes, 25.0)
    T0[system.dirichlet_nodes] = 100.0
    return mesh, system, T0


def _transient(mesh, materials, bcs=(), sources=(), **config):
    config.setdefault('analysis', 'transient')
    config.setdefault('ambient_temp_c', 25.0)
    return SimulationContext(mesh, materials, heat_sources=sources, boundary_conditions=bcs,
                             config=SolverConfig(**config))


class TestExplicitStability:

    def test_limit_matches_lumped_diffusion_bound(self, hot_edge_system, board_material):
        _, system, _ = hot_edge_system
        # Interior Quad4 node on a square grid: M_ii / K_ii = 3·h²/(8·κ)
        expected = 3.0 * (1e-3) ** 2 / (8.0 * board_material.diffusivity)
        assert explicit_stability_limit(system) == pytest.approx(expected, rel=1e-9)

    def test_just_below_limit_stays_bounded(self, hot_edge_system):
        _, system, T = hot_edge_system
        integrator = ExplicitIntegrator(system, 0.99 * explicit_stability_limit(system))
        for _ in range(2000):
            T = integrator.step(T)
        assert T.min() >= 25.0 - 1e-9
        assert T.max() <= 100.0 + 1e-9

    def test_just_above_limit_raises(self, hot_edge_system):
        _, system, _ = hot_edge_system
        limit = explicit_stability_limit(system)
        with pytest.raises(StabilityError) as exc:
            ExplicitIntegrator(system, 1.01 * limit)
        assert exc.value.dt_limit == pytest.approx(limit)

    def test_solver_reports_limit(self, grid_20, materials):
        ctx = _transient(grid_20, materials, [DirichletBC('left', 50.0)],
                         integrator='explicit', dt_s=0.5, n_steps=10)
        results = ThermalSolver(ctx).solve()
        assert results.dt_limit_s > 0.5

    def test_solver_refuses_unstable_step(self, grid_20, materials):
        ctx = _transient(grid_20, materials, [DirichletBC('left', 50.0)],
                         integrator='explicit', dt_s=100.0, n_steps=10)
        solver = ThermalSolver(ctx)
        with pytest.raises(StabilityError):
            solver.solve()
        assert solver.state is SolverState.FAILED


class TestExplicitStabilityFDM:

    @pytest.fixture
    def fdm_system(self, materials):
        mesh = MeshGenerator.square_with_spacing(10, 1e-3, 'BOARD')
        props = MaterialResolver(materials).resolve(mesh)
        system = SystemAssembler(mesh, method='fdm').build(props, np.zeros(mesh.n_elements),
                                                            [DirichletBC('left', 100.0)])
        T0 = np.full(mesh.n_nodes, 25.0)
        T0[system.dirichlet_nodes] = 100.0
        return system, T0

    def test_limit_is_five_point_bound(self, fdm_system, board_material):
        system, _ = fdm_system
        expected = (1e-3) ** 2 / (4.0 * board_material.diffusivity)
        assert explicit_stability_limit(system) == pytest.approx(expected, rel=1e-9)

    def test_limit_depends_on_discretization(self, fdm_system, hot_edge_system):
        fdm, _ = fdm_system
        _, fem, _ = hot_edge_system
        assert explicit_stability_limit(fem) / explicit_stability_limit(fdm) == pytest.approx(1.5)

    def test_just_below_limit_stays_bounded(self, fdm_system):
        system, T = fdm_system
        integrator = ExplicitIntegrator(system, 0.99 * explicit_stability_limit(system))
        for _ in range(10_000):
            T = integrator.step(T)
        assert np.all(np.isfinite(T))
        assert T.min() >= 25.0 - 1e-9
        assert T.max() <= 100.0 + 1e-9

    def test_just_above_limit_raises(self, fdm_system):
        system, _ = fdm_system
        limit = explicit_stability_limit(system)
        with pytest.raises(StabilityError) as exc:
            ExplicitIntegrator(system, 1.01 * limit)
        assert exc.value.dt == pytest.approx(1.01 * limit)
        assert exc.value.dt_limit == pytest.approx(limit)
        message = str(exc.value)
        assert "h²/(4κ) for FDM" in message
        assert "3h²/(8κ) for lumped Quad4 FEM" in message


class TestImplicit:

    def test_monotone_heating(self, hot_edge_system):
        mesh, system, T = hot_edge_system
        integrator = ImplicitIntegrator(system, dt=5.0)
        watch = mesh.find_node(4e-3, 4e-3)
        history = [T[watch]]
        for _ in range(40):
            T = integrator.step(T)
            history.append(T[watch])
        assert np.all(np.diff(history) >= -1e-12)
        assert history[-1] > 25.0

    def test_large_step_is_stable(self, hot_edge_system):
        _, system, T = hot_edge_system
        integrator = ImplicitIntegrator(system, dt=1e9)
        T = integrator.step(T)
        np.testing.assert_allclose(T, 100.0, atol=1e-3)

    def test_explicit_and_implicit_converge_together(self, grid_20, materials):
        bcs = [DirichletBC('left', 80.0)]
        explicit = run_simulation(_transient(grid_20, materials, bcs, integrator='explicit',
                                             dt_s=0.05, n_steps=400))
        implicit = run_simulation(_transient(grid_20, materials, bcs, integrator='implicit',
                                             dt_s=0.05, n_steps=400))
        np.testing.assert_allclose(explicit.final_temperature, implicit.final_temperature, atol=0.2)

    def test_cg_step_reports_non_convergence(self, hot_edge_system):
        _, system, T = hot_edge_system
        integrator = ImplicitIntegrator(system, dt=1.0, linear_solver='cg',
                                        tolerance=1e-14, max_iterations=1)
        with pytest.raises(ConvergenceError) as exc:
            integrator.step(T)
        assert exc.value.iterations <= 1
        assert exc.value.residual > 1e-14
        assert exc.value.last_iterate.shape == T.shape

    def test_solver_fails_on_cg_non_convergence(self, grid_20, materials):
        ctx = _transient(grid_20, materials, [DirichletBC('left', 80.0)], dt_s=1.0, n_steps=5,
                         linear_solver='cg', linear_tolerance=1e-14, max_linear_iterations=1)
        solver = ThermalSolver(ctx)
        with pytest.raises(ConvergenceError):
            solver.solve()
        assert solver.state is SolverState.FAILED


class TestTransientPipeline:

    def test_zero_sources_keep_uniform_field(self, grid_20, materials):
        results = run_simulation(_transient(grid_20, materials, dt_s=1.0, n_steps=20,
                                            initial_temp_c=60.0))
        np.testing.assert_allclose(results.final_temperature, 60.0, atol=1e-10)

    def test_point_source_heats_centre(self, grid_20, materials):
        """20 x 20 nodes at 1 mm, one heated element in the middle, edges at 25 C."""
        centre = grid_20.find_element(9.5e-3, 9.5e-3)
        ctx = _transient(grid_20, materials, [DirichletBC('boundary', 25.0)],
                         [HeatSource('chip', (centre,), 5e7)], dt_s=0.5, n_steps=60)
        results = ThermalSolver(ctx).solve()

        assert results.steps_completed == 60
        assert results.simulated_time_s == pytest.approx(30.0)
        assert results.final_field.hottest_node in grid_20.connectivity[centre]
        assert np.all(np.diff(results.max_temp_history) >= -1e-12)
        assert results.final_field.min_temp == pytest.approx(25.0)
        assert results.final_field.max_temp > 26.0

    def test_small_point_source_stays_below_steady_state(self, grid_20):
        """FR4 plate, 50 W/m³ on the centre element, 1000 steps of 0.1 s."""
        fr4 = {'BOARD': MaterialsDatabase.get('FR4')}
        source = HeatSourceBuilder(grid_20).point_source('chip', 9.5e-3, 9.5e-3, 50.0)
        bcs = [DirichletBC('boundary', 25.0)]

        transient = run_simulation(_transient(grid_20, fr4, bcs, [source], dt_s=0.1, n_steps=1000))
        steady = run_simulation(_transient(grid_20, fr4, bcs, [source], analysis='steady_state'))

        assert transient.steps_completed == 1000
        assert transient.simulated_time_s == pytest.approx(100.0)
        assert 25.0 < transient.final_field.max_temp < steady.final_field.max_temp
        assert transient.final_field.hottest_node in grid_20.connectivity[source.element_ids[0]]

    def test_frames_are_thinned(self, grid_20, materials):
        ctx = _transient(grid_20, materials, [DirichletBC('left', 50.0)],
                         dt_s=0.1, n_steps=95, max_frames=10)
        results = run_simulation(ctx)
        times = results.time_points
        assert times[0] == 0.0
        assert times[-1] == pytest.approx(9.5)
        assert len(results.frames) <= 12
        assert all(b > a for a, b in zip(times, times[1:]))

    def test_time_varying_source(self, small_mesh, materials):
        builder = HeatSourceBuilder(small_mesh)
        source = builder.from_power('pulse', 1.0, range(small_mesh.n_elements),
                                    time_table=((0.0, 1.0), (1.0, 1.0), (1.01, 0.0)))
        ctx = _transient(small_mesh, materials, sources=[source], dt_s=0.1, n_steps=30)
        results = run_simulation(ctx)
        history = results.max_temp_history
        # Heating stops after 1 s and the insulated plate holds its temperature
        assert history[10] > 25.0
        assert history[-1] == pytest.approx(history[11], abs=1e-9)

    def test_temperature_dependent_material(self, grid_20):
        fr4 = MaterialsDatabase.get('FR4')
        ctx = _transient(grid_20, {'BOARD': fr4}, [DirichletBC('left', 120.0)],
                         dt_s=0.5, n_steps=20)
        results = run_simulation(ctx)
        assert results.final_field.max_temp == pytest.approx(120.0)
        assert not results.warnings

    def test_extrapolation_is_reported(self, grid_20):
        fr4 = MaterialsDatabase.get('FR4')
        ctx = _transient(grid_20, {'BOARD': fr4}, [DirichletBC('left', 300.0)],
                         dt_s=0.5, n_steps=5)
        results = run_simulation(ctx)
        assert results.extrapolated_elements > 0
        assert any('outside valid range' in w for w in results.warnings)

    def test_frame_callback(self, small_mesh, materials):
        seen = []
        solver = ThermalSolver(_transient(small_mesh, materials, [DirichletBC('left', 40.0)],
                                          dt_s=0.1, n_steps=5))
        solver.set_frame_callback(seen.append)
        solver.solve()
        assert [f.step for f in seen] == [0, 1, 2, 3, 4, 5]

    def test_node_history(self, small_mesh, materials):
        results = run_simulation(_transient(small_mesh, materials, [DirichletBC('left', 40.0)],
                                            dt_s=0.1, n_steps=5))
        history = results.get_temperature_at_node(0)
        assert history[0] == (0.0, 40.0)
        assert len(history) == 6


class TestCancellationAndCache:

    def test_cancel_before_first_step(self, grid_20, materials):
        token = CancellationToken()
        token.cancel()
        ctx = _transient(grid_20, materials, [DirichletBC('left', 50.0)], dt_s=0.1, n_steps=10)
        solver = ThermalSolver(ctx, token=token)
        with pytest.raises(CancellationError) as exc:
            solver.solve()
        assert solver.state is SolverState.CANCELLED
        assert exc.value.partial_result.steps_completed == 0
        assert exc.value.completed == 0

    def test_cancel_mid_run_keeps_partial_result(self, grid_20, materials):
        token = CancellationToken()
        ctx = _transient(grid_20, materials, [DirichletBC('left', 50.0)], dt_s=0.1, n_steps=100)

        def progress(fraction, message):
            if fraction >= 0.25:
                token.cancel()

        with pytest.raises(CancellationError) as exc:
            ThermalSolver(ctx, progress_callback=progress, token=token).solve()
        partial = exc.value.partial_result
        assert partial.steps_completed == 25
        assert partial.final_field.time_s == pytest.approx(2.5)

    def test_cache_returns_published_result(self, grid_20, materials):
        cache = ResultCache()
        ctx = _transient(grid_20, materials, [DirichletBC('left', 50.0)], dt_s=0.1, n_steps=5)
        first = ThermalSolver(ctx, cache=cache).solve()
        second = ThermalSolver(ctx, cache=cache).solve()
        assert second is not first
        assert second.final_field is first.final_field
        assert len(cache) == 1
        assert first.cache_key

    def test_cached_result_is_isolated_from_callers(self, grid_20, materials):
        cache = ResultCache()
        ctx = _transient(grid_20, materials, [DirichletBC('left', 50.0)], dt_s=0.1, n_steps=5)
        ThermalSolver(ctx, cache=cache).solve().warnings.append("caller note")
        for _ in range(3):
            again = ThermalSolver(ctx, cache=cache).solve()
            assert "caller note" not in again.warnings
            again.warnings.append("caller note")

    def test_cache_key_changes_with_inputs(self, grid_20, materials):
        cache = ResultCache()
        a = _transient(grid_20, materials, [DirichletBC('left', 50.0)], dt_s=0.1, n_steps=5)
        b = _transient(grid_20, materials, [DirichletBC('left', 51.0)], dt_s=0.1, n_steps=5)
        ThermalSolver(a, cache=cache).solve()
        ThermalSolver(b, cache=cache).solve()
        assert len(cache) == 2
        assert a.cache_key() != b.cache_key()

    def test_cache_evicts_oldest(self):
        cache = ResultCache(max_entries=2)
        for key in ('a', 'b', 'c'):
            cache.put(key, object())
        assert 'a' not in cache
        assert 'c' in cache
