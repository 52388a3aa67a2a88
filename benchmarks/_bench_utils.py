"""Shared benchmark runtime helpers."""

from __future__ import annotations

import math
import os
import platform
import time
from dataclasses import dataclass
from typing import Any

import jax

THREAD_ENV_VARS = (
    "OMP_NUM_THREADS",
    "OPENBLAS_NUM_THREADS",
    "MKL_NUM_THREADS",
    "JAX_NUM_THREADS",
    "XLA_FLAGS",
    "STAGEJAX_CACHE",
)


def configure_cpu_affinity_from_env() -> dict[str, Any]:
    requested = os.environ.get("STAGEJAX_BENCH_CPU_AFFINITY", "").strip()
    info: dict[str, Any] = {"requested": requested or None, "applied": False, "active": None}
    if not requested:
        return info
    if not hasattr(os, "sched_setaffinity") or not hasattr(os, "sched_getaffinity"):
        return info

    cpus = _parse_affinity_spec(requested)
    if not cpus:
        return info
    try:
        os.sched_setaffinity(0, cpus)
        info["applied"] = True
        info["active"] = sorted(int(cpu) for cpu in os.sched_getaffinity(0))
    except OSError:
        info["applied"] = False
    return info


def _parse_affinity_spec(spec: str) -> set[int]:
    out: set[int] = set()
    for part in spec.split(","):
        token = part.strip()
        if not token:
            continue
        if "-" in token:
            lo_raw, hi_raw = token.split("-", 1)
            lo, hi = sorted((int(lo_raw.strip()), int(hi_raw.strip())))
            out.update(range(lo, hi + 1))
            continue
        out.add(int(token))
    return out


def host_metadata() -> dict[str, Any]:
    active_affinity = None
    if hasattr(os, "sched_getaffinity"):
        try:
            active_affinity = sorted(int(cpu) for cpu in os.sched_getaffinity(0))
        except OSError:
            active_affinity = None
    return {
        "platform": platform.platform(),
        "python": platform.python_version(),
        "jax": getattr(jax, "__version__", "unknown"),
        "backend": jax.default_backend(),
        "cpu_count": os.cpu_count(),
        "active_cpu_affinity": active_affinity,
        "thread_env": {name: os.environ[name] for name in THREAD_ENV_VARS if name in os.environ},
    }


def percentile(values: list[float], q: float) -> float:
    ordered = sorted(values)
    if len(ordered) == 1:
        return ordered[0]
    pos = (len(ordered) - 1) * q
    lo = int(math.floor(pos))
    hi = int(math.ceil(pos))
    if lo == hi:
        return ordered[lo]
    alpha = pos - lo
    return ordered[lo] * (1.0 - alpha) + ordered[hi] * alpha


def mean(values: list[float]) -> float:
    return sum(values) / len(values)


def stddev(values: list[float]) -> float:
    if len(values) < 2:
        return 0.0
    m = mean(values)
    var = sum((v - m) ** 2 for v in values) / (len(values) - 1)
    return math.sqrt(var)


@dataclass(frozen=True)
class TimingStats:
    mean_us: float
    stdev_us: float
    cv_pct: float
    p50_us: float
    p95_us: float
    min_us: float


def summarize_us(samples: list[float]) -> TimingStats:
    avg = mean(samples)
    sd = stddev(samples)
    return TimingStats(
        mean_us=avg,
        stdev_us=sd,
        cv_pct=(sd / avg) * 100.0 if avg > 0 else 0.0,
        p50_us=percentile(samples, 0.50),
        p95_us=percentile(samples, 0.95),
        min_us=min(samples),
    )


def calibrate_repeats(fn, *, target_sample_ms: float, min_repeats: int, max_repeats: int = 100_000) -> int:
    """Repeats per sample so one sample lasts roughly `target_sample_ms`."""
    trial = max(4, min_repeats // 4)
    start_ns = time.perf_counter_ns()
    for _ in range(trial):
        fn()
    per_call_ns = max((time.perf_counter_ns() - start_ns) / trial, 500.0)
    dynamic = int(math.ceil(max(target_sample_ms, 1.0) * 1e6 / per_call_ns))
    return int(max(min_repeats, min(dynamic, max_repeats)))


def sample_adaptive_us(
    fn,
    *,
    repeats: int,
    warmup: int,
    samples: int,
    cv_target_pct: float,
    max_samples: int,
) -> list[float]:
    """Per-call microseconds, one entry per sample; stops once the CV settles."""
    for _ in range(max(0, warmup)):
        fn()

    rows: list[float] = []

    def _once() -> None:
        start_ns = time.perf_counter_ns()
        for _ in range(repeats):
            fn()
        rows.append((time.perf_counter_ns() - start_ns) / repeats / 1e3)

    for _ in range(samples):
        _once()
    while len(rows) < max_samples:
        stats = summarize_us(rows)
        if stats.mean_us <= 0 or stats.cv_pct <= cv_target_pct:
            break
        _once()
    return rows
