"""
Tests for overheat detection and time-to-failure.
"""

import math

import pytest

from thermal_engine.analysis.failure import FailureLimit, FailureMode, OverheatAnalyzer
from thermal_engine.core.config import FailureConfig, ThermalEngineConfig
from thermal_engine.core.mesh import MeshGenerator
from thermal_engine.solvers.thermal_solver import ResultCache, ThermalAnalysisEngine, ThermalSolver


@pytest.fixture
def solder_limit():
    return FailureLimit.from_key('SAC305_SOLIDUS', 0.0)


class TestFailureLimit:

    def test_margin_derates_trigger(self):
        limit = FailureLimit.from_key('fr4_tg', 0.1)
        assert limit.name == 'FR4_TG'
        assert limit.mode is FailureMode.GLASS_TRANSITION
        assert limit.trigger_c == pytest.approx(117.0)

    def test_margin_must_be_fraction(self):
        with pytest.raises(ValueError):
            FailureLimit('x', FailureMode.MATERIAL_LIMIT, 100.0, safety_margin=1.0)

    def test_unknown_key(self):
        with pytest.raises(ValueError, match="Unknown failure limit"):
            FailureLimit.from_key('UNOBTAINIUM')

    def test_mode_from_string(self):
        limit = FailureLimit('x', 'SolderMelting', 100.0)
        assert limit.mode is FailureMode.SOLDER_MELTING


class TestStepScan:

    def test_equal_exceedance_picks_lowest_node(self, small_mesh, solder_limit, make_field):
        analyzer = OverheatAnalyzer(small_mesh, [solder_limit])
        result = analyzer.evaluate_steady(make_field(25, hot={7: 230.0, 3: 230.0}))
        assert result.node_id == 3

    def test_largest_exceedance_wins(self, small_mesh, solder_limit, make_field):
        analyzer = OverheatAnalyzer(small_mesh, [solder_limit])
        result = analyzer.evaluate_steady(make_field(25, hot={3: 220.0, 7: 240.0}))
        assert result.node_id == 7
        assert result.temperature_c == 240.0
        assert result.location_m == pytest.approx(tuple(small_mesh.coordinates[7]))

    def test_crossing_time_is_interpolated(self, small_mesh, solder_limit, make_field):
        analyzer = OverheatAnalyzer(small_mesh, [solder_limit])
        assert not analyzer.start(make_field(25, time_s=0.0))
        previous = make_field(25, 200.0, time_s=1.0, step=1)
        current = make_field(25, 200.0, time_s=2.0, step=2, hot={12: 230.0})
        assert analyzer.observe(previous, current)

        result = analyzer.result()
        assert not result.safe
        assert result.time_to_failure_s == pytest.approx(1.0 + 17.0 / 30.0)
        assert result.step == 2
        assert result.failure_mode is FailureMode.SOLDER_MELTING

    def test_first_failure_is_kept(self, small_mesh, solder_limit, make_field):
        analyzer = OverheatAnalyzer(small_mesh, [solder_limit], stop_on_failure=False)
        analyzer.start(make_field(25, time_s=0.0))
        assert not analyzer.observe(make_field(25, time_s=0.0),
                                    make_field(25, time_s=1.0, step=1, hot={4: 250.0}))
        analyzer.observe(make_field(25, time_s=1.0, step=1),
                         make_field(25, time_s=2.0, step=2, hot={9: 400.0}))
        result = analyzer.result()
        assert result.node_id == 4
        assert result.max_temperature_c == 400.0
        assert result.max_temperature_node == 9

    def test_initial_violation_fails_at_start(self, small_mesh, solder_limit, make_field):
        analyzer = OverheatAnalyzer(small_mesh, [solder_limit])
        assert analyzer.start(make_field(25, 300.0, time_s=0.0))
        assert analyzer.result().time_to_failure_s == 0.0

    def test_node_scope(self, small_mesh, make_field):
        limit = FailureLimit('sensor', FailureMode.JUNCTION_OVERTEMPERATURE, 100.0, nodes=(0,))
        analyzer = OverheatAnalyzer(small_mesh, [limit])
        assert analyzer.evaluate_steady(make_field(25, hot={5: 500.0})).safe
        assert not analyzer.evaluate_steady(make_field(25, hot={0: 150.0})).safe

    def test_material_scope(self, make_field):
        mesh = MeshGenerator.rectangle(3.0, 1.0, 4, 2, lambda ix, iy: 'CU' if ix == 2 else 'FR4')
        limit = FailureLimit.from_key('FR4_TG', materials=('CU',))
        analyzer = OverheatAnalyzer(mesh, [limit])
        # Nodes 0 and 4 only touch FR4 elements
        assert analyzer.evaluate_steady(make_field(8, hot={0: 200.0, 4: 200.0})).safe
        assert not analyzer.evaluate_steady(make_field(8, hot={3: 200.0})).safe

    def test_requires_a_limit(self, small_mesh):
        with pytest.raises(ValueError):
            OverheatAnalyzer(small_mesh, [])


class TestTimeToFailure:

    def test_lumped_plate_crossing_time(self, lumped_context, solder_limit):
        # tau = rho·cp·t/(2h) = 182.4 s, steady rise 300 K, trigger at 192 K of rise
        tau = 1900.0 * 1200.0 * 1.6e-3 / 20.0
        expected = -tau * math.log(1.0 - 192.0 / 300.0)

        analyzer = OverheatAnalyzer(lumped_context.mesh, [solder_limit])
        results = ThermalSolver(lumped_context, analyzer=analyzer).solve()

        ttf = results.time_to_failure
        assert not ttf.safe
        assert ttf.time_to_failure_s == pytest.approx(expected, rel=0.01)
        assert results.halted_on_failure
        assert results.steps_completed < lumped_context.config.n_steps
        assert results.simulated_time_s == pytest.approx(results.steps_completed * 0.1)

    def test_safe_run_reports_infinity(self, lumped_context, solder_limit):
        ctx = lumped_context.with_config(n_steps=100)
        analyzer = OverheatAnalyzer(ctx.mesh, [solder_limit])
        results = ThermalSolver(ctx, analyzer=analyzer).solve()

        ttf = results.time_to_failure
        assert ttf.safe
        assert ttf.time_to_failure_s == math.inf
        assert ttf.max_temperature_c == pytest.approx(results.final_field.max_temp)
        assert not results.halted_on_failure

    def test_steady_violation_has_no_time(self, heated_plate):
        limit = FailureLimit('hot', FailureMode.MATERIAL_LIMIT, 35.0)
        analyzer = OverheatAnalyzer(heated_plate.mesh, [limit])
        results = ThermalSolver(heated_plate, analyzer=analyzer).solve()

        ttf = results.time_to_failure
        assert not ttf.safe
        assert ttf.time_to_failure_s is None
        assert ttf.node_id == results.final_field.hottest_node

    def test_initial_violation_takes_no_steps(self, lumped_context, solder_limit):
        ctx = lumped_context.with_config(initial_temp_c=300.0)
        analyzer = OverheatAnalyzer(ctx.mesh, [solder_limit])
        results = ThermalSolver(ctx, analyzer=analyzer).solve()

        assert results.halted_on_failure
        assert results.steps_completed == 0
        assert results.simulated_time_s == 0.0
        assert results.final_field.max_temp == pytest.approx(300.0)
        assert results.time_to_failure.time_to_failure_s == 0.0


class TestOverheatReport:

    def test_hotspots_sorted_with_margin(self, small_mesh, solder_limit, make_field):
        analyzer = OverheatAnalyzer(small_mesh, [solder_limit])
        snapshot = make_field(25, hot={6: 150.0, 18: 180.0, 2: 150.0})
        spots = analyzer.hotspots(snapshot, count=3)
        assert [s.node_id for s in spots] == [18, 2, 6]
        assert spots[0].margin_c == pytest.approx(37.0)
        assert spots[0].limit_name == 'SAC305_SOLIDUS'

    def test_report_of_unsafe_field(self, small_mesh, solder_limit, make_field):
        analyzer = OverheatAnalyzer(small_mesh, [solder_limit])
        report = analyzer.report(make_field(25, hot={12: 260.0, 13: 220.0}), hotspot_count=5)
        assert report.verdict == "UNSAFE"
        assert [v.node_id for v in report.violations] == [12, 13]
        assert report.warnings and "at steady state" in report.warnings[0]

        data = report.to_dict()
        assert data['verdict'] == "UNSAFE"
        assert data['time_to_failure']['failure_mode'] == "SolderMelting"
        assert data['time_to_failure']['time_to_failure_s'] is None
        assert len(data['hotspots']) == 5

    def test_report_of_safe_field(self, small_mesh, solder_limit, make_field):
        report = OverheatAnalyzer(small_mesh, [solder_limit]).report(make_field(25, 60.0))
        assert report.safe
        assert report.max_temperature_c == 60.0
        assert not report.violations
        assert not report.warnings


class TestAnalysisEngine:

    def test_run_analysis(self, lumped_context):
        config = ThermalEngineConfig(failure=FailureConfig(safety_margin=0.0,
                                                           limit_keys=['SAC305_SOLIDUS']))
        engine = ThermalAnalysisEngine(config)
        progress = []
        engine.set_progress_callback(lambda p, m: progress.append(p))

        results, report = engine.run_analysis(lumped_context)
        assert report.verdict == "UNSAFE"
        assert results.halted_on_failure
        assert any('SAC305_SOLIDUS' in w for w in results.warnings)
        assert progress[0] == 0.0
        assert progress[-1] == 1.0

    def test_margin_brings_failure_forward(self, lumped_context):
        times = []
        for margin in (0.0, 0.2):
            config = ThermalEngineConfig(failure=FailureConfig(safety_margin=margin))
            results, _ = ThermalAnalysisEngine(config).run_analysis(lumped_context)
            times.append(results.time_to_failure.time_to_failure_s)
        assert times[1] < times[0]

    def test_repeat_runs_leave_cached_result_alone(self, lumped_context):
        cache = ResultCache()
        engine = ThermalAnalysisEngine(ThermalEngineConfig(), cache=cache)
        first, _ = engine.run_analysis(lumped_context)
        stored = list(cache.get(first.cache_key).warnings)

        second, _ = engine.run_analysis(lumped_context)
        third, _ = engine.run_analysis(lumped_context)
        assert second is not first
        assert second.warnings == first.warnings
        assert third.warnings == first.warnings
        assert len(third.warnings) == len(set(third.warnings))
        assert cache.get(first.cache_key).warnings == stored
