"""
Unit tests for execution strategies, recording schedule and record buffers.
"""
import threading
import weakref

import pytest
import numpy as np

import execution
from config_utils import EngineConfig
from execution import (
    RecordingSchedule, RecordStore, SequentialStrategy, DataParallelStrategy,
    SimulationCancelled, select_strategy
)
from simulation import SimulationParams
from stepper import StepModel, drive_scenarios, GROWTH, WITHDRAWAL


def make_model(params, mode=GROWTH):
    schedule = RecordingSchedule.for_params(params.total_steps, params.steps_per_year, params.num_paths)
    return StepModel.from_params(params, mode, schedule.record_frequency, schedule.num_records)


class TestRecordingSchedule:
    """Test recording stride selection"""

    def test_records_every_step_when_small(self):
        """Test that short runs record every step"""
        schedule = RecordingSchedule.for_params(360, 12, 1_000)
        assert schedule.record_frequency == 1
        assert schedule.num_records == 360

    def test_chart_step_cap(self):
        """Test that long runs are capped at the chart step limit"""
        schedule = RecordingSchedule.for_params(52 * 50, 52, 1_000)
        assert schedule.record_frequency == 6
        assert schedule.num_records == 2600 // 6

    def test_memory_budget(self):
        """Test that many paths shrink the number of records"""
        schedule = RecordingSchedule.for_params(52 * 100, 52, 100_000)
        assert schedule.record_frequency == 52
        assert schedule.num_records == 100
        assert (schedule.num_records + 1) * 100_000 <= 10_100_000

    def test_minimum_two_targets(self):
        """Test the floor of two recorded points for huge path counts"""
        schedule = RecordingSchedule.for_params(360, 12, 50_000_000)
        assert schedule.record_frequency == 180
        assert schedule.num_records == 2

    def test_custom_config(self):
        """Test that engine limits come from the config"""
        config = EngineConfig(max_chart_steps=10)
        schedule = RecordingSchedule.for_params(100, 1, 10, config)
        assert schedule.record_frequency == 10
        assert schedule.num_records == 10

    def test_record_years(self):
        """Test elapsed years at each recorded point"""
        schedule = RecordingSchedule.for_params(24, 12, 10, EngineConfig(max_chart_steps=4))
        np.testing.assert_allclose(schedule.record_years, [0.0, 0.5, 1.0, 1.5, 2.0])


class TestRecordStore:
    """Test scoped record buffers"""

    def test_take_releases_buffer(self):
        """Test that a taken buffer is freed once the caller drops it"""
        store = RecordStore.allocate(3, 5)
        with store.take("net") as net:
            assert net.shape == (4, 5)
            net_ref = weakref.ref(net)
        del net
        assert net_ref() is None
        assert "net" not in store
        assert "gross" in store

    def test_views_share_store_memory(self):
        """Test that lane views write straight into the store buffers"""
        store = RecordStore.allocate(2, 6)
        net, gross, performance = store.views(slice(2, 4))
        assert net.shape == (3, 2)
        net[:] = 7.0
        with store.take("net") as buffer:
            np.testing.assert_array_equal(buffer[:, 2:4], 7.0)

    def test_take_twice_fails(self):
        """Test that a released buffer cannot be taken again"""
        store = RecordStore.allocate(1, 1)
        with store.take("gross"):
            pass
        with pytest.raises(KeyError):
            with store.take("gross"):
                pass

    def test_release_all(self):
        """Test dropping every remaining buffer"""
        store = RecordStore.allocate(1, 1)
        store.release()
        assert "performance" not in store


class TestStrategySelection:
    """Test strategy choice and capability fallback"""

    def test_auto_small_runs_sequential(self):
        """Test that small runs use the sequential strategy"""
        assert isinstance(select_strategy(100), SequentialStrategy)

    def test_auto_large_runs_parallel(self):
        """Test that large runs use the data-parallel strategy"""
        strategy = select_strategy(10_000)
        assert isinstance(strategy, DataParallelStrategy)
        assert strategy.name == "parallel"

    def test_forced_backends(self):
        """Test explicit backend selection"""
        assert isinstance(select_strategy(10_000, EngineConfig(backend="sequential")), SequentialStrategy)
        assert isinstance(select_strategy(10, EngineConfig(backend="parallel")), DataParallelStrategy)

    def test_gpu_unavailable_falls_back(self, monkeypatch):
        """Test that a missing GPU falls back to the sequential strategy"""
        monkeypatch.setattr(execution, "load_gpu_module", lambda: None)
        strategy = select_strategy(10_000, EngineConfig(backend="gpu"))
        assert isinstance(strategy, SequentialStrategy)


class TestStrategies:
    """Test strategy outputs"""

    def test_sequential_repeatable(self):
        """Test exact repeatability of the sequential strategy"""
        params = SimulationParams(duration=5, num_paths=20, cashflow_frequency="monthly")
        model = make_model(params)
        a = SequentialStrategy().run(model, 42, 20)
        b = SequentialStrategy().run(model, 42, 20)
        np.testing.assert_array_equal(a.ending_values, b.ending_values)
        np.testing.assert_array_equal(a.max_drawdowns, b.max_drawdowns)

    def test_sequential_seed_changes_output(self):
        """Test that different seeds give different paths"""
        params = SimulationParams(duration=5, num_paths=10)
        model = make_model(params)
        a = SequentialStrategy().run(model, 1, 10)
        b = SequentialStrategy().run(model, 2, 10)
        assert not np.array_equal(a.ending_values, b.ending_values)

    def test_parallel_independent_of_block_size(self):
        """Test that grouping lanes into blocks does not change results"""
        params = SimulationParams(duration=3, num_paths=50, cashflow_amount=100)
        model = make_model(params)
        small = DataParallelStrategy(block_size=7, n_jobs=2).run(model, 9, 50)
        large = DataParallelStrategy(block_size=64).run(model, 9, 50)
        np.testing.assert_allclose(small.ending_values, large.ending_values, rtol=1e-12)
        with small.records.take("net") as a, large.records.take("net") as b:
            np.testing.assert_allclose(a, b, rtol=1e-12)

    def test_parallel_withdrawal_outputs_in_domain(self):
        """Test data-parallel withdrawal outputs"""
        params = SimulationParams(initial_value=10_000, duration=20, num_paths=200,
                                  cashflow_amount=100, volatility=0.3)
        model = make_model(params, WITHDRAWAL)
        output = DataParallelStrategy(block_size=32, n_jobs=2).run(model, 3, 200)
        assert output.strategy == "parallel"
        assert (output.ending_values >= 0).all()
        assert ((output.max_drawdowns >= 0) & (output.max_drawdowns <= 1)).all()

    @pytest.mark.parametrize("strategy", [SequentialStrategy(), DataParallelStrategy(block_size=8, n_jobs=2)])
    def test_snapshots_written_in_place(self, strategy, monkeypatch):
        """Test that the driver records into the run's own buffers instead of a second copy"""
        outs = []

        def recording_driver(*args, **kwargs):
            outs.append(kwargs["out"])
            return drive_scenarios(*args, **kwargs)

        monkeypatch.setattr(execution, "drive_scenarios", recording_driver)
        params = SimulationParams(duration=2, num_paths=16)
        output = strategy.run(make_model(params), 5, 16)
        assert outs and all(out is not None for out in outs)
        with output.records.take("net") as net:
            assert all(np.shares_memory(out[0], net) for out in outs)

    @pytest.mark.parametrize("strategy", [SequentialStrategy(), DataParallelStrategy(block_size=4)])
    def test_cancelled_run_raises(self, strategy):
        """Test cooperative cancellation"""
        params = SimulationParams(duration=1, num_paths=16)
        event = threading.Event()
        event.set()
        with pytest.raises(SimulationCancelled):
            strategy.run(make_model(params), 1, 16, cancel_event=event)
