"""Benchmark slice: dispatch overhead of the transform front door and staging passes."""

from __future__ import annotations

import argparse
import json
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from pathlib import Path

from stagejax import (
    CompatibilityMode,
    DispatchRequest,
    Dispatcher,
    InMemoryResponseCache,
    NullResponseCache,
    Primitive,
    ProgramBuilder,
    ProgramSpec,
    Transform,
    build_program,
    eliminate_dead_code,
    grad,
    jit,
    partial_eval,
    pvals_for,
    scalar_f64,
    scalar_i64,
    vector_i64,
    vmap,
)
from _bench_utils import (
    TimingStats,
    calibrate_repeats,
    configure_cpu_affinity_from_env,
    host_metadata,
    sample_adaptive_us,
    summarize_us,
)


PROFILE_PRESETS: dict[str, dict[str, float | int]] = {
    "quick": {"samples": 3, "warmup": 2, "target_sample_ms": 10.0, "min_repeats": 8, "cv_target_pct": 25.0, "max_samples": 7},
    "full": {"samples": 7, "warmup": 5, "target_sample_ms": 40.0, "min_repeats": 32, "cv_target_pct": 12.0, "max_samples": 15},
}


@dataclass(frozen=True)
class DispatchRow:
    workload: str
    group: str
    repeats: int
    samples: int
    timing: TimingStats
    note: str


def _chain_program(length: int, *, live_tail: bool):
    b = ProgramBuilder()
    x, y = b.input(), b.input()
    head = b.emit(Primitive.MUL, x, y)
    cur = head
    for _ in range(length - 1):
        cur = b.emit(Primitive.ADD, cur, 1.0)
    return b.build(cur if live_tail else head)


def _workloads() -> list[tuple[str, str, Callable[[], object], str]]:
    add2 = build_program(ProgramSpec.ADD2)
    square = build_program(ProgramSpec.SQUARE)
    add_one = build_program(ProgramSpec.ADD_ONE)
    ints = (scalar_i64(2), scalar_i64(3))
    x = (scalar_f64(1.5),)
    batch = (vector_i64(list(range(64))),)

    memory = InMemoryResponseCache()
    raw = Dispatcher(cache=NullResponseCache())
    plain_request = DispatchRequest(add2, (), args=ints)
    strict_request = DispatchRequest(add2, [Transform.JIT], args=ints, mode=CompatibilityMode.STRICT)
    hardened_request = DispatchRequest(
        add2, [Transform.JIT], args=ints, mode=CompatibilityMode.HARDENED, unknown_features=("donate",)
    )
    cached = Dispatcher(cache=memory)

    chain_live = _chain_program(1_000, live_tail=True)
    chain_dead = _chain_program(10_000, live_tail=False)
    chain_args = (scalar_f64(2.0), scalar_f64(3.0))

    return [
        ("jit_cache_hit", "api", lambda: jit(add2).with_cache(memory).call(ints), "repeat call served from the in-memory cache"),
        ("jit_uncached", "api", lambda: jit(add2).with_cache(NullResponseCache()).call(ints), "full execution every call"),
        ("grad_tape", "api", lambda: grad(square).call(x), "one forward and one backward pass"),
        ("vmap_64", "api", lambda: vmap(add_one).call(batch), "per-row dispatch over 64 rows"),
        (
            "jit_vmap_grad",
            "composition",
            lambda: jit(square).compose_vmap().compose_grad().with_cache(NullResponseCache()).call((vector_i64(list(range(16))),)),
            "three-marker stack, 16 rows",
        ),
        ("dispatch_base", "dispatch", lambda: raw.dispatch(plain_request), "empty stack, no cache participation"),
        ("mode_strict", "mode", lambda: cached.dispatch(strict_request), "strict key computation and hit"),
        ("mode_hardened", "mode", lambda: cached.dispatch(hardened_request), "hardened key with one unknown feature"),
        (
            "partial_eval_1k",
            "staging",
            lambda: partial_eval(chain_live, pvals_for(chain_args, [0])),
            "1k-equation chain, one known input",
        ),
        ("dce_10k", "staging", lambda: eliminate_dead_code(chain_dead), "10k-equation chain with one live equation"),
    ]


def run_benchmarks(
    *,
    profile: str,
    warmup: int,
    samples: int,
    target_sample_ms: float,
    min_repeats: int,
    cv_target_pct: float,
    max_samples: int,
) -> list[DispatchRow]:
    print("Benchmark: stagejax dispatch and staging overhead")
    print(
        f"profile={profile} samples={samples} warmup={warmup} target_sample_ms={target_sample_ms:.1f} "
        f"min_repeats={min_repeats} cv_target={cv_target_pct:.1f}% max_samples={max_samples}"
    )
    print()

    rows: list[DispatchRow] = []
    for name, group, fn, note in _workloads():
        repeats = calibrate_repeats(fn, target_sample_ms=target_sample_ms, min_repeats=min_repeats)
        measured = sample_adaptive_us(
            fn,
            repeats=repeats,
            warmup=warmup,
            samples=samples,
            cv_target_pct=cv_target_pct,
            max_samples=max_samples,
        )
        rows.append(
            DispatchRow(
                workload=name,
                group=group,
                repeats=repeats,
                samples=len(measured),
                timing=summarize_us(measured),
                note=note,
            )
        )

    print("workload            group        mean(us)    p95(us)   cv(%)")
    print("------------------  -----------  ---------  ---------  ------")
    for row in rows:
        print(
            f"{row.workload:18}  {row.group:11}  {row.timing.mean_us:9.2f}  "
            f"{row.timing.p95_us:9.2f}  {row.timing.cv_pct:6.1f}"
        )
    print()

    by_name = {row.workload: row for row in rows}
    hit = by_name["jit_cache_hit"].timing.mean_us
    miss = by_name["jit_uncached"].timing.mean_us
    if hit > 0:
        print(f"uncached/cached ratio  {miss / hit:8.3f}x")
    strict = by_name["mode_strict"].timing.mean_us
    hardened = by_name["mode_hardened"].timing.mean_us
    if strict > 0:
        print(f"hardened/strict ratio  {hardened / strict:8.3f}x")
    print()

    return rows


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--profile", choices=sorted(PROFILE_PRESETS), default="quick", help="fixed benchmark profile")
    parser.add_argument("--samples", type=int, default=None, help="override sample count")
    parser.add_argument("--warmup", type=int, default=None, help="override warmup rounds")
    parser.add_argument("--target-sample-ms", type=float, default=None, help="target wall time per sample")
    parser.add_argument("--min-repeats", type=int, default=None, help="minimum repeats after calibration")
    parser.add_argument("--cv-target", type=float, default=None, help="adaptive sampling CV target percent")
    parser.add_argument("--max-samples", type=int, default=None, help="adaptive sampling cap")
    parser.add_argument("--json-out", default="", help="optional path to write machine-readable results")
    args = parser.parse_args()
    affinity_info = configure_cpu_affinity_from_env()

    profile = PROFILE_PRESETS[args.profile]
    samples = int(profile["samples"] if args.samples is None else args.samples)
    warmup = int(profile["warmup"] if args.warmup is None else args.warmup)
    target_sample_ms = float(profile["target_sample_ms"] if args.target_sample_ms is None else args.target_sample_ms)
    min_repeats = int(profile["min_repeats"] if args.min_repeats is None else args.min_repeats)
    cv_target_pct = float(profile["cv_target_pct"] if args.cv_target is None else args.cv_target)
    max_samples = max(samples, int(profile["max_samples"] if args.max_samples is None else args.max_samples))

    rows = run_benchmarks(
        profile=args.profile,
        warmup=warmup,
        samples=samples,
        target_sample_ms=target_sample_ms,
        min_repeats=min_repeats,
        cv_target_pct=cv_target_pct,
        max_samples=max_samples,
    )
    if args.json_out:
        outpath = Path(args.json_out)
        outpath.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "timestamp_utc": datetime.now(UTC).strftime("%Y%m%dT%H%M%SZ"),
            "profile": args.profile,
            "samples": samples,
            "warmup": warmup,
            "target_sample_ms": target_sample_ms,
            "min_repeats": min_repeats,
            "cv_target_pct": cv_target_pct,
            "max_samples": max_samples,
            "affinity": affinity_info,
            "host": host_metadata(),
            "rows": [asdict(row) for row in rows],
        }
        outpath.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        print(f"Wrote JSON benchmark output: {outpath}")
