"""
Tests for grid convergence studies.
"""

import math

import numpy as np
import pytest

from thermal_engine.analysis.refinement import (
    MeshRefinementController, grid_convergence_index, observed_order, richardson_extrapolate,
)
from thermal_engine.core.config import RefinementConfig, SolverConfig
from thermal_engine.core.context import CancellationToken, DirichletBC, SimulationContext
from thermal_engine.core.errors import CancellationError
from thermal_engine.core.mesh import ElementType, MeshGenerator
from thermal_engine.solvers.heat_sources import HeatSourceBuilder

L = 0.01
Q0 = 1e6


@pytest.fixture
def sine_builder(materials):
    """
    Builds Q = Q0·sin(πx/L)·sin(πy/L) on a square held at 0 C, whose exact
    peak is Q0·L²/(2π²k) at the centre.
    """
    def build(mesh):
        sources = HeatSourceBuilder(mesh).from_function(
            'sine', lambda x, y: Q0 * np.sin(np.pi * x / L) * np.sin(np.pi * y / L))
        return SimulationContext(mesh, materials, heat_sources=sources,
                                 boundary_conditions=[DirichletBC('boundary', 0.0)],
                                 config=SolverConfig(analysis='steady_state', ambient_temp_c=0.0))
    return build


@pytest.fixture
def exact_peak(board_material):
    return Q0 * L ** 2 / (2.0 * math.pi ** 2 * board_material.thermal_conductivity)


@pytest.fixture
def base_mesh():
    return MeshGenerator.rectangle(L, L, 5, 5, 'BOARD')


class TestConvergenceFormulas:

    def test_gci(self):
        assert grid_convergence_index(1.0, 1.1, 2.0, 2.0, 3.0) == pytest.approx(0.1)

    def test_gci_of_zero_fine_value(self):
        assert grid_convergence_index(0.0, 0.5, 2.0, 2.0, 3.0) == math.inf
        assert grid_convergence_index(0.0, 0.0, 2.0, 2.0, 3.0) == 0.0

    def test_observed_order(self):
        assert observed_order(1.0, 1.04, 1.2, 2.0) == pytest.approx(2.0)

    def test_oscillatory_convergence_has_no_order(self):
        assert observed_order(1.0, 1.1, 1.05, 2.0) is None
        assert observed_order(1.0, 1.0, 1.05, 2.0) is None

    def test_richardson(self):
        assert richardson_extrapolate(1.01, 1.04, 2.0, 2.0) == pytest.approx(1.0)


class TestRefinementStudy:

    def test_converges_to_exact_peak(self, sine_builder, base_mesh, exact_peak):
        result = MeshRefinementController(sine_builder, base_mesh,
                                          RefinementConfig(max_depth=4)).run()
        assert result.converged
        assert len(result.levels) >= 3
        assert result.final_level.value == pytest.approx(exact_peak, rel=0.05)
        assert result.extrapolated_value == pytest.approx(exact_peak, rel=0.03)
        assert result.final_gci < 0.05
        assert result.final_level.safety_factor == 1.25
        assert result.final_level.order > 1.0

    def test_levels_refine_and_gci_decreases(self, sine_builder, base_mesh):
        result = MeshRefinementController(sine_builder, base_mesh,
                                          RefinementConfig(max_depth=3, gci_target=1e-9)).run()
        levels = result.levels
        assert [lv.n_nodes for lv in levels] == [25, 81, 289, 1089]
        sizes = [lv.element_size_m for lv in levels]
        assert sizes == pytest.approx([L / 4, L / 8, L / 16, L / 32])
        assert levels[0].gci is None
        assert levels[1].safety_factor == 3.0
        gcis = [lv.gci for lv in levels[1:]]
        assert all(b < a for a, b in zip(gcis, gcis[1:]))

    def test_unmet_target_is_flagged(self, sine_builder, base_mesh):
        result = MeshRefinementController(sine_builder, base_mesh,
                                          RefinementConfig(max_depth=2, gci_target=1e-9)).run()
        assert not result.converged
        assert len(result.levels) == 3
        assert any('not met' in w for w in result.warnings)

    def test_parallel_levels_match_serial(self, sine_builder, base_mesh):
        serial = MeshRefinementController(sine_builder, base_mesh,
                                          RefinementConfig(max_depth=3)).run()
        parallel = MeshRefinementController(sine_builder, base_mesh,
                                            RefinementConfig(max_depth=3, num_workers=2)).run()
        assert [lv.level for lv in parallel.levels] == [lv.level for lv in serial.levels]
        np.testing.assert_allclose([lv.value for lv in parallel.levels],
                                   [lv.value for lv in serial.levels], rtol=1e-12)

    def test_gci_table_rows(self, sine_builder, base_mesh):
        result = MeshRefinementController(sine_builder, base_mesh,
                                          RefinementConfig(max_depth=2, gci_target=1e-9)).run()
        rows = result.gci_table()
        assert [r['level'] for r in rows] == [0, 1, 2]
        assert rows[0]['gci'] is None
        assert rows[2]['rise_c'] == pytest.approx(rows[2]['value_c'])

    def test_measurement_comparison(self, sine_builder, base_mesh, exact_peak):
        result = MeshRefinementController(sine_builder, base_mesh,
                                          RefinementConfig(max_depth=2, gci_target=1e-9)).run(
            measurements=[(L / 2, L / 2, exact_peak), (0.0, 0.0, 1.0)])
        comparison = result.comparison
        assert comparison.simulated_c[0] == pytest.approx(result.final_level.value)
        assert comparison.residuals[1] == pytest.approx(-1.0)
        assert comparison.max_abs_c >= comparison.rms_c

    def test_cancelled_before_first_level(self, sine_builder, base_mesh):
        token = CancellationToken()
        token.cancel()
        controller = MeshRefinementController(sine_builder, base_mesh, token=token)
        with pytest.raises(CancellationError) as exc:
            controller.run()
        assert exc.value.partial_result.levels == []

    def test_cancel_during_level_keeps_finished_levels(self, sine_builder, base_mesh):
        token = CancellationToken()

        def build(mesh):
            if mesh.n_nodes == 289:
                token.cancel()
            return sine_builder(mesh)

        controller = MeshRefinementController(build, base_mesh,
                                              RefinementConfig(max_depth=3, gci_target=1e-9),
                                              token=token)
        with pytest.raises(CancellationError) as exc:
            controller.run()
        partial = exc.value.partial_result
        assert exc.value.completed == 2
        assert [lv.level for lv in partial.levels] == [0, 1]
        assert [lv.n_nodes for lv in partial.levels] == [25, 81]
        assert partial.levels[1].gci is not None
        assert not partial.converged

    def test_parallel_cancel_keeps_finished_levels(self, sine_builder, base_mesh):
        token = CancellationToken()

        def build(mesh):
            if mesh.n_nodes == 289:
                token.cancel()
            return sine_builder(mesh)

        controller = MeshRefinementController(build, base_mesh,
                                              RefinementConfig(max_depth=3, gci_target=1e-9,
                                                               num_workers=2),
                                              token=token)
        with pytest.raises(CancellationError) as exc:
            controller.run()
        assert [lv.level for lv in exc.value.partial_result.levels] == [0, 1]

    def test_ratio_must_be_at_least_two(self, sine_builder, base_mesh):
        with pytest.raises(ValueError):
            MeshRefinementController(sine_builder, base_mesh, RefinementConfig(ratio=1))


class TestTriangleRefinement:

    @pytest.fixture
    def tri_mesh(self):
        return MeshGenerator.rectangle(L, L, 5, 5, lambda ix, iy: 'CU' if ix == 0 else 'BOARD',
                                       element_type=ElementType.TRI3)

    def test_refined_tri3_mesh(self, tri_mesh):
        fine = tri_mesh.refined(2)
        assert fine.element_type is ElementType.TRI3
        assert fine.n_nodes == 81
        assert fine.n_elements == 128
        # Column ix == 0 of the coarse grid becomes two fine columns of 8 cells
        assert fine.element_materials.count('CU') == 2 * 8 * 2
        assert fine.element_materials[0::2] == fine.element_materials[1::2]

    def test_study_on_triangles(self, sine_builder, exact_peak):
        base = MeshGenerator.rectangle(L, L, 5, 5, 'BOARD', element_type=ElementType.TRI3)
        result = MeshRefinementController(sine_builder, base,
                                          RefinementConfig(max_depth=2, gci_target=1e-9)).run()
        assert [lv.n_nodes for lv in result.levels] == [25, 81, 289]
        assert result.levels[-1].gci is not None
        assert result.final_level.value == pytest.approx(exact_peak, rel=0.1)
