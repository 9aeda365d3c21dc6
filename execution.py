"""
Execution strategies for the Monte Carlo engine.

The strategy decides how scenarios are mapped onto hardware; the per-step
math always comes from stepper.py. Every scenario writes only its own slot of
the output arrays, so the only synchronisation is the barrier at the end of
a run before the reducer reads the buffers.
"""
import logging
import math
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Iterator, Optional

import numpy as np
from joblib import Parallel, delayed

from config_utils import DEFAULT_ENGINE_CONFIG, EngineConfig
from rng import ScenarioNormalStream, XorShiftLanes
from stepper import ScenarioBlock, StepModel, drive_scenarios

logger = logging.getLogger(__name__)

RECORD_NAMES = ("net", "gross", "performance")


class SimulationCancelled(RuntimeError):
    """Raised when a run is cancelled before it completes"""


@dataclass(frozen=True)
class RecordingSchedule:
    """How often snapshots are recorded so the record buffers fit the memory budget"""
    record_frequency: int
    num_records: int
    total_steps: int
    steps_per_year: int

    @classmethod
    def for_params(cls, total_steps: int, steps_per_year: int, num_paths: int,
                   config: EngineConfig = DEFAULT_ENGINE_CONFIG) -> "RecordingSchedule":
        memory_allowed = config.max_total_data_points // num_paths
        target_points = max(2, min(memory_allowed, config.max_chart_steps))
        record_frequency = max(1, math.ceil(total_steps / target_points))
        num_records = total_steps // record_frequency
        logger.debug(
            "Recording every %d steps (%d records for %d steps, %d paths)",
            record_frequency, num_records, total_steps, num_paths,
        )
        return cls(record_frequency, num_records, total_steps, steps_per_year)

    @property
    def record_years(self) -> np.ndarray:
        """Elapsed years at each recorded point, starting at year 0"""
        steps = np.arange(self.num_records + 1) * self.record_frequency
        return steps / self.steps_per_year


class RecordStore:
    """
    Per-run record buffers (net, gross and pure-performance values).

    Buffers are (num_records + 1, num_paths). `take` hands one buffer to the
    caller and drops the store's reference on exit, so at most one full buffer
    is being reduced at a time.
    """

    def __init__(self, buffers: Dict[str, object], xp=np):
        self._buffers = dict(buffers)
        self.xp = xp

    @classmethod
    def allocate(cls, num_records: int, num_paths: int, xp=np) -> "RecordStore":
        shape = (num_records + 1, num_paths)
        return cls({name: xp.empty(shape, dtype=xp.float64) for name in RECORD_NAMES}, xp)

    def views(self, lanes: slice):
        """(net, gross, performance) column views owned by `lanes`, written in place by the driver"""
        return tuple(self._buffers[name][:, lanes] for name in RECORD_NAMES)

    def __contains__(self, name: str) -> bool:
        return name in self._buffers

    @contextmanager
    def take(self, name: str) -> Iterator[np.ndarray]:
        """Yield the named buffer as a host numpy array, then release it"""
        if name not in self._buffers:
            raise KeyError(f"Record buffer '{name}' is not available (already released?)")
        buffer = self._buffers.pop(name)
        try:
            if self.xp is np:
                yield buffer
            else:
                yield self.xp.asnumpy(buffer)
        finally:
            del buffer
            if self.xp is not np:
                self.xp.get_default_memory_pool().free_all_blocks()

    def release(self):
        """Drop every remaining buffer"""
        self._buffers.clear()
        if self.xp is not np:
            self.xp.get_default_memory_pool().free_all_blocks()


class RunOutput:
    """Host-side per-scenario outputs plus the record buffers of a run"""

    def __init__(self, num_paths: int, records: RecordStore, strategy: str):
        self.ending_values = np.empty(num_paths)
        self.pre_tax_ending_values = np.empty(num_paths)
        self.lowest_values = np.empty(num_paths)
        self.max_drawdowns = np.empty(num_paths)
        self.total_invested = np.empty(num_paths)
        self.records = records
        self.strategy = strategy

    def store(self, block: ScenarioBlock, lanes: slice, to_host=np.asarray):
        self.ending_values[lanes] = to_host(block.ending_values)
        self.pre_tax_ending_values[lanes] = to_host(block.pre_tax_ending_values)
        self.lowest_values[lanes] = to_host(block.lowest_values)
        self.max_drawdowns[lanes] = to_host(block.max_drawdowns)
        self.total_invested[lanes] = to_host(block.total_invested)


def _check_cancelled(cancel_event):
    if cancel_event is not None and cancel_event.is_set():
        raise SimulationCancelled("Simulation was cancelled")


class ExecutionStrategy:
    """Maps scenarios onto hardware and runs the scenario driver for each"""

    name = "base"

    def run(self, model: StepModel, run_seed: int, num_paths: int,
            cancel_event=None) -> RunOutput:
        raise NotImplementedError


class SequentialStrategy(ExecutionStrategy):
    """One scenario at a time on its own PCG64 stream"""

    name = "sequential"

    def run(self, model: StepModel, run_seed: int, num_paths: int,
            cancel_event=None) -> RunOutput:
        output = RunOutput(num_paths, RecordStore.allocate(model.num_records, num_paths), self.name)

        for index in range(num_paths):
            _check_cancelled(cancel_event)
            normals = ScenarioNormalStream(run_seed, index).normals(model.total_steps)
            draws = iter(normals.reshape(-1, 1))
            lanes = slice(index, index + 1)
            block = drive_scenarios(model, lambda: next(draws), 1, out=output.records.views(lanes))
            output.store(block, lanes)

        return output


class DataParallelStrategy(ExecutionStrategy):
    """
    Blocks of scenarios advanced in lock-step as array lanes.

    On the CPU, blocks of `block_size` lanes run on a joblib thread pool (numpy
    releases the GIL inside its kernels). On a GPU, all lanes run as a single
    CuPy invocation.
    """

    def __init__(self, xp=np, block_size: int = DEFAULT_ENGINE_CONFIG.block_size,
                 n_jobs: int = DEFAULT_ENGINE_CONFIG.n_jobs):
        self.xp = xp
        self.block_size = block_size
        self.n_jobs = n_jobs

    @property
    def name(self) -> str:
        return "gpu" if self.xp is not np else "parallel"

    def _run_block(self, model: StepModel, run_seed: int, start: int, stop: int,
                   output: RunOutput, cancel_event=None):
        _check_cancelled(cancel_event)
        xp = self.xp
        lanes = XorShiftLanes(run_seed, xp.arange(start, stop), xp)
        block = drive_scenarios(model, lanes.normals, stop - start, xp,
                                out=output.records.views(slice(start, stop)))
        to_host = np.asarray if xp is np else xp.asnumpy
        output.store(block, slice(start, stop), to_host)

    def run(self, model: StepModel, run_seed: int, num_paths: int,
            cancel_event=None) -> RunOutput:
        records = RecordStore.allocate(model.num_records, num_paths, self.xp)
        output = RunOutput(num_paths, records, self.name)

        if self.xp is not np:
            logger.debug("Dispatching %d lanes to the GPU", num_paths)
            self._run_block(model, run_seed, 0, num_paths, output, cancel_event)
            return output

        bounds = [(start, min(start + self.block_size, num_paths))
                  for start in range(0, num_paths, self.block_size)]
        logger.debug("Dispatching %d blocks of up to %d lanes", len(bounds), self.block_size)

        if len(bounds) == 1:
            self._run_block(model, run_seed, 0, num_paths, output, cancel_event)
        else:
            Parallel(n_jobs=self.n_jobs, backend="threading")(
                delayed(self._run_block)(model, run_seed, start, stop, output, cancel_event)
                for start, stop in bounds
            )
        return output


def load_gpu_module():
    """Return the cupy module when CuPy and a CUDA device are usable, otherwise None"""
    try:
        import cupy
    except ImportError:
        logger.warning("GPU backend requested but CuPy is not installed "
                       "(pip install cupy-cuda12x); falling back to CPU execution")
        return None
    try:
        device_count = cupy.cuda.runtime.getDeviceCount()
    except cupy.cuda.runtime.CUDARuntimeError as e:
        logger.warning("GPU initialization failed: %s; falling back to CPU execution", e)
        return None
    if device_count < 1:
        logger.warning("No CUDA device found; falling back to CPU execution")
        return None
    return cupy


def select_strategy(num_paths: int, config: Optional[EngineConfig] = None) -> ExecutionStrategy:
    """
    Pick the execution strategy for a run.

    Args:
        num_paths: Number of scenarios in the run
        config: Engine configuration (backend, path limit, block size)

    Returns:
        ExecutionStrategy instance
    """
    config = config or DEFAULT_ENGINE_CONFIG

    if config.backend == "gpu":
        cupy = load_gpu_module()
        if cupy is not None:
            strategy = DataParallelStrategy(cupy, config.block_size, config.n_jobs)
        else:
            strategy = SequentialStrategy()
    elif config.backend == "sequential":
        strategy = SequentialStrategy()
    elif config.backend == "parallel":
        strategy = DataParallelStrategy(np, config.block_size, config.n_jobs)
    elif num_paths <= config.sequential_path_limit:
        strategy = SequentialStrategy()
    else:
        strategy = DataParallelStrategy(np, config.block_size, config.n_jobs)

    logger.info("Using %s execution strategy for %d paths", strategy.name, num_paths)
    return strategy
