"""
Tests for view factors, closure and the radiosity solve.
"""

import numpy as np
import pytest

from thermal_engine.core.config import RadiationConfig
from thermal_engine.core.constants import to_kelvin
from thermal_engine.core.errors import SingularMatrixError
from thermal_engine.solvers.radiation import (
    SIGMA, AnalyticViewFactors, EnclosureSurface, PlanarSurface, RadiationEnclosure,
    RadiositySolver, ViewFactorCache, ViewFactorMatrix, box_surfaces, compute_view_factors,
    concentric_cylinders, concentric_spheres, parallel_rectangles, perpendicular_rectangles,
)

PARALLEL_UNIT = 0.19982
PERPENDICULAR_UNIT = 0.20004


@pytest.fixture
def cube():
    return box_surfaces(1.0, 1.0, 1.0)


def _assert_cube_factors(vf, atol):
    # Order: x-, x+, y-, y+, z-, z+; opposite walls are (0, 1), (2, 3), (4, 5)
    for i in range(6):
        opposite = i + 1 if i % 2 == 0 else i - 1
        for j in range(6):
            if j == i:
                assert vf.F[i, j] == pytest.approx(0.0, abs=1e-12)
            elif j == opposite:
                assert vf.F[i, j] == pytest.approx(PARALLEL_UNIT, abs=atol)
            else:
                assert vf.F[i, j] == pytest.approx(PERPENDICULAR_UNIT, abs=atol)


class TestClosedForms:

    def test_parallel_unit_squares(self):
        assert parallel_rectangles(1.0, 1.0, 1.0) == pytest.approx(PARALLEL_UNIT, abs=1e-5)

    def test_perpendicular_unit_squares(self):
        assert perpendicular_rectangles(1.0, 1.0, 1.0) == pytest.approx(PERPENDICULAR_UNIT, abs=1e-5)

    def test_perpendicular_reciprocity(self):
        f_ij = perpendicular_rectangles(2.0, 1.0, 3.0)
        f_ji = perpendicular_rectangles(2.0, 3.0, 1.0)
        assert 2.0 * 1.0 * f_ij == pytest.approx(2.0 * 3.0 * f_ji)

    def test_concentric_spheres(self):
        F = concentric_spheres(1.0, 2.0)
        np.testing.assert_allclose(F, [[0.0, 1.0], [0.25, 0.75]])

    def test_concentric_cylinders(self):
        F = concentric_cylinders(1.0, 4.0)
        np.testing.assert_allclose(F, [[0.0, 1.0], [0.25, 0.75]])


class TestViewFactorMatrix:

    def test_box_walls_face_inwards(self, cube):
        centre = np.array([0.5, 0.5, 0.5])
        for surface in cube:
            assert np.dot(centre - surface.centroid, surface.normal) > 0
            assert surface.area == pytest.approx(1.0)

    def test_analytic_cube(self, cube):
        vf = AnalyticViewFactors().compute(cube)
        _assert_cube_factors(vf, 1e-4)
        assert vf.reciprocity_error() < 1e-12
        assert vf.summation_error() < 1e-3

    def test_closure_restores_summation(self, cube):
        vf = AnalyticViewFactors().compute(cube).enforce_closure()
        assert vf.summation_error() < 1e-10
        assert vf.reciprocity_error() < 1e-10
        _assert_cube_factors(vf, 1e-3)

    def test_closure_of_noisy_matrix(self):
        rng = np.random.default_rng(3)
        areas = np.array([1.0, 2.0, 3.0])
        F = np.array([[0.0, 0.4, 0.6], [0.2, 0.1, 0.7], [0.2, 0.47, 0.33]])
        noisy = ViewFactorMatrix(F + rng.normal(0.0, 0.01, F.shape).clip(-0.09, 0.09) * (F > 0), areas)
        balanced = noisy.enforce_closure()
        assert balanced.reciprocity_error() < 1e-10
        assert balanced.summation_error() < 1e-10

    def test_open_enclosure_keeps_escape(self):
        # Two facing unit squares, 1 m apart, nothing else
        lower = PlanarSurface('lower', [[0, 0, 0], [1, 0, 0], [1, 1, 0], [0, 1, 0]])
        upper = PlanarSurface('upper', [[0, 0, 1], [0, 1, 1], [1, 1, 1], [1, 0, 1]])
        vf = AnalyticViewFactors().compute([lower, upper], closed=False).enforce_closure()
        assert vf.F[0, 1] == pytest.approx(PARALLEL_UNIT, abs=1e-4)
        assert vf.summation_error() == 0.0

    def test_non_rectangle_has_no_closed_form(self):
        tri = PlanarSurface('tri', [[0, 0, 0], [1, 0, 0], [0, 1, 0]])
        with pytest.raises(ValueError):
            AnalyticViewFactors().compute([tri])

    def test_degenerate_surface(self):
        with pytest.raises(ValueError):
            PlanarSurface('line', [[0, 0, 0], [1, 0, 0], [2, 0, 0]])


class TestSampledViewFactors:

    def test_monte_carlo_matches_analytic(self, cube):
        config = RadiationConfig(method='monte_carlo', n_rays=40_000, batch_size=20_000,
                                 variance_threshold=1e-7, seed=7)
        vf = compute_view_factors(cube, config)
        _assert_cube_factors(vf, 0.02)
        assert vf.summation_error() < 1e-10
        assert np.all(vf.rays_per_surface == 40_000)

    def test_monte_carlo_is_reproducible(self, cube):
        config = RadiationConfig(method='monte_carlo', n_rays=10_000, batch_size=5_000, seed=11)
        a = compute_view_factors(cube, config, cache=ViewFactorCache())
        b = compute_view_factors(cube, config, cache=ViewFactorCache())
        np.testing.assert_array_equal(a.F, b.F)

    def test_variance_threshold_stops_early(self, cube):
        config = RadiationConfig(method='monte_carlo', n_rays=100_000, batch_size=5_000,
                                 variance_threshold=1e-4, seed=1, enforce_closure=False)
        vf = compute_view_factors(cube, config)
        assert np.all(vf.rays_per_surface < 100_000)

    def test_hemicube_matches_analytic(self, cube):
        config = RadiationConfig(method='hemicube', hemicube_resolution=32, source_subdivisions=4)
        vf = compute_view_factors(cube, config)
        _assert_cube_factors(vf, 0.03)

    def test_unknown_method(self, cube):
        with pytest.raises(ValueError):
            compute_view_factors(cube, RadiationConfig(method='raytrace'))


class TestViewFactorCache:

    def test_repeat_geometry_hits(self, cube):
        cache = ViewFactorCache()
        first = compute_view_factors(cube, cache=cache)
        second = compute_view_factors(box_surfaces(1.0, 1.0, 1.0), cache=cache)
        assert second is first
        assert cache.hits == 1
        assert cache.misses == 1

    def test_geometry_change_misses(self, cube):
        cache = ViewFactorCache()
        compute_view_factors(cube, cache=cache)
        compute_view_factors(box_surfaces(1.0, 1.0, 2.0), cache=cache)
        assert cache.misses == 2
        assert len(cache) == 2

    def test_lru_bound(self):
        cache = ViewFactorCache(max_entries=2)
        for depth in (1.0, 2.0, 3.0):
            compute_view_factors(box_surfaces(1.0, 1.0, depth), cache=cache)
        assert len(cache) == 2


class TestRadiosity:

    def test_isothermal_enclosure(self, cube):
        vf = compute_view_factors(cube)
        result = RadiositySolver().solve(vf, [0.3, 0.5, 0.7, 0.9, 0.2, 1.0], 150.0)
        np.testing.assert_allclose(result.radiosity, SIGMA * to_kelvin(150.0) ** 4, rtol=1e-10)
        np.testing.assert_allclose(result.net_flux, 0.0, atol=1e-8)

    def test_concentric_cylinders_exchange(self):
        r1, r2, eps1, eps2 = 1.0, 2.0, 0.8, 0.5
        vf = ViewFactorMatrix(concentric_cylinders(r1, r2), [2 * np.pi * r1, 2 * np.pi * r2])
        T1, T2 = 400.0, 100.0
        result = RadiositySolver().solve(vf, [eps1, eps2], [T1, T2])

        expected = (SIGMA * (to_kelvin(T1) ** 4 - to_kelvin(T2) ** 4)
                    / (1 / eps1 + (1 - eps2) / eps2 * r1 / r2))
        assert result.net_flux[0] == pytest.approx(expected, rel=1e-10)
        # Energy leaving the inner surface arrives at the outer one
        assert result.net_power.sum() == pytest.approx(0.0, abs=1e-9 * abs(result.net_power[0]))

    def test_open_enclosure_sees_surroundings(self):
        vf = ViewFactorMatrix(np.array([[0.0, 0.2], [0.2, 0.0]]), [1.0, 1.0], closed=False)
        cold = RadiositySolver().solve(vf, 1.0, [100.0, 100.0])
        warm = RadiositySolver().solve(vf, 1.0, [100.0, 100.0], surroundings_c=100.0)
        assert np.all(cold.net_flux > 0)
        np.testing.assert_allclose(warm.net_flux, 0.0, atol=1e-9)

    def test_perfect_reflector_enclosure_is_singular(self, cube):
        vf = compute_view_factors(cube)
        with pytest.raises(SingularMatrixError) as exc:
            RadiositySolver().solve(vf, 0.0, 150.0)
        assert exc.value.unanchored_components == [list(vf.names)]

    def test_single_emitter_anchors_reflectors(self, cube):
        vf = compute_view_factors(cube)
        result = RadiositySolver().solve(vf, [0.0, 0.0, 0.0, 0.0, 0.0, 0.5], 150.0)
        np.testing.assert_allclose(result.radiosity, SIGMA * to_kelvin(150.0) ** 4, rtol=1e-8)

    def test_isolated_reflector_pair(self):
        # Surfaces 0 and 1 only see each other; surface 2 is on its own
        F = np.array([[0.0, 1.0, 0.0], [1.0, 0.0, 0.0], [0.0, 0.0, 1.0]])
        vf = ViewFactorMatrix(F, [1.0, 1.0, 1.0], names=('a', 'b', 'c'))
        with pytest.raises(SingularMatrixError) as exc:
            RadiositySolver().solve(vf, [0.0, 0.0, 0.9], 50.0)
        assert exc.value.unanchored_components == [['a', 'b']]

    def test_open_reflectors_are_determined(self):
        vf = ViewFactorMatrix(np.array([[0.0, 0.2], [0.2, 0.0]]), [1.0, 1.0], closed=False)
        result = RadiositySolver().solve(vf, 0.0, [100.0, 100.0], surroundings_c=20.0)
        np.testing.assert_allclose(result.net_flux, 0.0, atol=1e-9)


class TestEnclosureDefinition:

    def test_surface_needs_nodes_or_temperature(self):
        with pytest.raises(ValueError):
            EnclosureSurface('wall')
        with pytest.raises(ValueError):
            EnclosureSurface('wall', 0.9, nodes='all', temperature_c=25.0)

    def test_fixed_surface_needs_emissivity(self):
        with pytest.raises(ValueError):
            EnclosureSurface('wall', temperature_c=25.0)

    def test_surface_count_must_match(self):
        vf = ViewFactorMatrix(concentric_spheres(1.0, 2.0), [1.0, 4.0])
        with pytest.raises(ValueError):
            RadiationEnclosure((EnclosureSurface('board', nodes='all'),), vf)

    def test_cache_token_tracks_surfaces(self):
        vf = ViewFactorMatrix(concentric_spheres(1.0, 2.0), [1.0, 4.0])
        a = RadiationEnclosure((EnclosureSurface('board', nodes='all'),
                                EnclosureSurface('wall', 1.0, temperature_c=25.0)), vf)
        b = RadiationEnclosure((EnclosureSurface('board', nodes='all'),
                                EnclosureSurface('wall', 1.0, temperature_c=30.0)), vf)
        assert a.cache_token() != b.cache_token()
