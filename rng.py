"""
Seeded random variate sources for the Monte Carlo engine.

Two generator families are provided:
- a per-scenario numpy PCG64 stream used by the sequential strategy
- a vectorised xorshift32 lane generator used by the data-parallel strategy
  (works on numpy or CuPy arrays)

Both map raw integers into uniforms on (0, 1] and turn uniform pairs into
standard normal draws with the Box-Muller transform.
"""
import time
import secrets
from typing import Union

import numpy as np

SeedLike = Union[str, int, None]

FNV_OFFSET_BASIS = 0x811C9DC5
FNV_PRIME = 0x01000193
U32_MASK = 0xFFFFFFFF

# Lane offset constants (PCG-style multiplier/increment)
LANE_MULTIPLIER = 747796405
LANE_INCREMENT = 2891336453

MIN_UNIFORM = 1e-12
TWO_PI = 2.0 * np.pi


def new_seed() -> str:
    """Create a fresh seed string so an unseeded run can still be replayed"""
    return f"monte-carlo-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


def fnv1a_32(text: str) -> int:
    """32-bit FNV-1a hash of a string"""
    h = FNV_OFFSET_BASIS
    for ch in text:
        h ^= ord(ch)
        h = (h * FNV_PRIME) & U32_MASK
    return h


def seed_to_u32(seed: SeedLike) -> int:
    """
    Reduce a run seed to an unsigned 32-bit integer.

    Args:
        seed: String (hashed with FNV-1a) or integer (taken modulo 2**32)

    Returns:
        Seed in [0, 2**32)
    """
    if seed is None:
        raise ValueError("seed must be resolved before hashing")
    if isinstance(seed, bool):
        raise TypeError("seed must be a string or an integer")
    if isinstance(seed, (int, np.integer)):
        return int(seed) & U32_MASK
    if isinstance(seed, str):
        return fnv1a_32(seed)
    raise TypeError(f"seed must be a string or an integer, got {type(seed).__name__}")


def box_muller(u1, u2):
    """Standard normal draws from two uniforms on (0, 1]"""
    xp = array_module(u1)
    u1 = xp.maximum(u1, MIN_UNIFORM)
    return xp.sqrt(-2.0 * xp.log(u1)) * xp.cos(TWO_PI * u2)


def array_module(values):
    """numpy, or CuPy when the values live on a GPU"""
    module = type(values).__module__
    if module.startswith("cupy"):
        import cupy
        return cupy
    return np


class ScenarioNormalStream:
    """
    Per-scenario standard normal stream (sequential strategy).

    Each scenario owns an independent PCG64 generator derived from
    SeedSequence([run_seed, scenario_index]), so no generator state is shared
    between scenarios and any scenario can be regenerated on its own.
    """

    def __init__(self, run_seed: int, scenario_index: int):
        self.run_seed = run_seed
        self.scenario_index = scenario_index
        self._rng = np.random.default_rng(np.random.SeedSequence([run_seed, scenario_index]))

    def uniforms(self, size: int) -> np.ndarray:
        """Uniform draws on (0, 1]"""
        return 1.0 - self._rng.random(size)

    def normals(self, size: int) -> np.ndarray:
        """`size` standard normal draws, one per time step"""
        u = self.uniforms(2 * size).reshape(size, 2)
        return box_muller(u[:, 0], u[:, 1])


class XorShiftLanes:
    """
    Vectorised xorshift32 generator with one state word per lane (data-parallel strategy).

    Lane `i` is seeded from `seed ^ (i * 747796405 + 2891336453)`, so a lane's
    stream depends only on the run seed and its global scenario index, not on
    how lanes are grouped into blocks.
    """

    def __init__(self, run_seed: int, lane_indices, xp=np):
        self.xp = xp
        idx = xp.asarray(lane_indices, dtype=xp.uint64)
        offsets = (idx * LANE_MULTIPLIER + LANE_INCREMENT) & U32_MASK
        state = (offsets ^ (run_seed & U32_MASK)).astype(xp.uint32)
        # xorshift has a fixed point at zero
        state = xp.where(state == 0, xp.uint32(0x9E3779B9), state)
        self.state = state

    def _next_u32(self):
        x = self.state
        x = x ^ (x << 13)
        x = x ^ (x >> 17)
        x = x ^ (x << 5)
        self.state = x
        return x

    def uniforms(self):
        """One uniform on (0, 1] per lane"""
        x = self._next_u32()
        return (x.astype(self.xp.float64) + 1.0) * (1.0 / 4294967296.0)

    def normals(self):
        """One standard normal draw per lane"""
        u1 = self.uniforms()
        u2 = self.uniforms()
        return box_muller(u1, u2)


def resolve_seed(seed: SeedLike) -> Union[str, int]:
    """Return the seed to use for a run, creating one when none was given"""
    return new_seed() if seed is None else seed
