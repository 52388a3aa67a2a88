"""Request dispatch: validation, cache keying, transform application.

A request moves through

    VALIDATING -> KEY_COMPUTED -> CACHE_LOOKUP -> CACHE_HIT
                                               -> EXECUTING -> RESPONDING
    (any state) -> FAILED

Composition and argument-free checks run in VALIDATING, so an illegal request
never computes a key and never touches the cache. The cache is consulted only
when the transform stack contains Jit.

Transforms are applied by wrapping the base function once per marker, from the
innermost marker outwards, and calling the result. Grad and Vmap validate their
arguments before any tape is built or any iteration starts.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping, Sequence
from contextvars import ContextVar
from dataclasses import dataclass, field
from enum import Enum

from .ad import DEFAULT_DERIVATIVE_RULES, DerivativeRule, finite_difference_grad, tape_grad
from .batching import leading_batch_size, slice_args, stack_leading
from .cache import InMemoryResponseCache, ResponseCache, cache_from_env
from .cache_key import BackendId, CacheKey, CompatibilityMode, args_fingerprint, build_key
from .errors import (
    ArgumentIndexError,
    EmptyArgumentsError,
    InterpreterFailureError,
    OutputArityMismatchError,
    ScalarRequiredError,
    StageJaxError,
    TransformArgumentError,
)
from .interpreter import DEFAULT_INTERPRETER, Interpreter
from .program import Primitive, Program
from .staging import eliminate_dead_code, partial_eval, pvals_for
from .transforms import Transform, TransformMarker, TransformStack, validate_composition
from .values import Aval, DType, Value, as_value

logger = logging.getLogger(__name__)

BaseFn = Callable[[tuple[Value, ...]], tuple[Value, ...]]

# Number of Grad transforms active on the current call stack.
_GRAD_DEPTH: ContextVar[int] = ContextVar("stagejax_grad_depth", default=0)


class DispatchState(str, Enum):
    VALIDATING = "validating"
    KEY_COMPUTED = "key_computed"
    CACHE_LOOKUP = "cache_lookup"
    CACHE_HIT = "cache_hit"
    EXECUTING = "executing"
    RESPONDING = "responding"
    FAILED = "failed"


def _freeze_options(options) -> tuple[tuple[str, str], ...]:
    if not options:
        return ()
    items = options.items() if isinstance(options, Mapping) else options
    return tuple(sorted((str(k), str(v)) for k, v in items))


@dataclass(frozen=True)
class DispatchRequest:
    program: Program
    transforms: TransformStack = field(default_factory=TransformStack)
    args: tuple[Value, ...] = ()
    backend: BackendId = field(default_factory=BackendId)
    mode: CompatibilityMode = CompatibilityMode.STRICT
    compile_options: tuple[tuple[str, str], ...] = ()
    hook: str | None = None
    unknown_features: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        transforms = self.transforms
        if not isinstance(transforms, TransformStack):
            transforms = TransformStack.from_iterable(transforms)
        backend = self.backend if isinstance(self.backend, BackendId) else BackendId(str(self.backend))
        object.__setattr__(self, "transforms", transforms)
        object.__setattr__(self, "args", tuple(as_value(arg) for arg in self.args))
        object.__setattr__(self, "backend", backend)
        object.__setattr__(self, "mode", CompatibilityMode(self.mode))
        object.__setattr__(self, "compile_options", _freeze_options(self.compile_options))
        object.__setattr__(self, "unknown_features", tuple(self.unknown_features))

    def option(self, name: str, default: str | None = None) -> str | None:
        for key, value in self.compile_options:
            if key == name:
                return value
        return default


@dataclass(frozen=True)
class DispatchResponse:
    outputs: tuple[Value, ...]
    cache_key: str
    diagnostics: tuple[tuple[str, str], ...] = ()

    def diagnostic(self, name: str, default: str | None = None) -> str | None:
        for key, value in self.diagnostics:
            if key == name:
                return value
        return default


@dataclass
class _Stage:
    """Callable layer; `program` is set while the layer is still a plain program."""

    fn: BaseFn
    program: Program | None = None

    def __call__(self, args: tuple[Value, ...]) -> tuple[Value, ...]:
        return self.fn(args)


def _parse_static_argnums(raw: str | None, count: int) -> tuple[int, ...]:
    if raw is None or not raw.strip():
        return ()
    try:
        positions = tuple(sorted({int(part) for part in raw.split(",") if part.strip()}))
    except ValueError as err:
        raise TransformArgumentError(f"static_argnums must be comma separated integers, got {raw!r}") from err
    for pos in positions:
        if pos < 0 or pos >= count:
            raise ArgumentIndexError(argnum=pos, count=count)
    return positions


def _check_grad_args(args: Sequence[Value], argnum: int) -> None:
    if not args:
        raise EmptyArgumentsError(transform="grad")
    if argnum >= len(args):
        raise ArgumentIndexError(argnum=argnum, count=len(args))
    target = args[argnum]
    if target.shape:
        raise ScalarRequiredError(what="input", shape=tuple(target.shape))


class Dispatcher:
    """Runs requests against an injected cache, interpreter and rule table."""

    def __init__(
        self,
        cache: ResponseCache | None = None,
        interpreter: Interpreter | None = None,
        derivative_rules: Mapping[Primitive, DerivativeRule] | None = None,
        *,
        observer: Callable[[DispatchRequest, DispatchState], None] | None = None,
    ) -> None:
        self.cache: ResponseCache = InMemoryResponseCache() if cache is None else cache
        self.interpreter: Interpreter = interpreter or DEFAULT_INTERPRETER
        self.derivative_rules = DEFAULT_DERIVATIVE_RULES if derivative_rules is None else derivative_rules
        self._observer = observer
        self._lock = threading.Lock()
        self._stats = {"requests": 0, "cache_hits": 0, "cache_misses": 0, "executions": 0, "failures": 0}

    def _count(self, name: str) -> None:
        with self._lock:
            self._stats[name] += 1

    def stats(self, *, reset: bool = False) -> dict[str, float | int]:
        with self._lock:
            stats: dict[str, float | int] = dict(self._stats)
            if reset:
                for name in self._stats:
                    self._stats[name] = 0
        lookups = stats["cache_hits"] + stats["cache_misses"]
        stats["hit_rate"] = float(stats["cache_hits"] / lookups) if lookups else 0.0
        return stats

    def _enter(self, request: DispatchRequest, state: DispatchState) -> DispatchState:
        logger.debug(f"dispatch {request.program.fingerprint[:12]}: {state.value}")
        if self._observer is not None:
            self._observer(request, state)
        return state

    def dispatch(self, request: DispatchRequest) -> DispatchResponse:
        self._count("requests")
        state = self._enter(request, DispatchState.VALIDATING)
        try:
            validate_composition(request.transforms)
            stack = request.transforms.normalized()
            static_argnums = _parse_static_argnums(request.option("static_argnums"), len(request.args))

            key = build_key(
                request.mode,
                request.backend,
                request.program.fingerprint,
                stack,
                request.compile_options,
                request.hook,
                request.unknown_features,
                args_fingerprint=args_fingerprint(request.args),
            )
            state = self._enter(request, DispatchState.KEY_COMPUTED)

            use_cache = stack.contains(Transform.JIT)
            if use_cache:
                state = self._enter(request, DispatchState.CACHE_LOOKUP)
                cached = self.cache.get(key)
                if cached is not None:
                    self._count("cache_hits")
                    self._enter(request, DispatchState.CACHE_HIT)
                    logger.debug(f"cache hit {key.digest[:12]}")
                    return cached
                self._count("cache_misses")

            state = self._enter(request, DispatchState.EXECUTING)
            response = self._execute(request, stack, static_argnums, key)

            state = self._enter(request, DispatchState.RESPONDING)
            if use_cache:
                self.cache.put(key, response)
            return response
        except StageJaxError as err:
            self._count("failures")
            self._enter(request, DispatchState.FAILED)
            logger.debug(f"dispatch failed during {state.value}: {err}")
            raise

    def _execute(
        self,
        request: DispatchRequest,
        stack: TransformStack,
        static_argnums: tuple[int, ...],
        key: CacheKey,
    ) -> DispatchResponse:
        self._count("executions")
        program = request.program
        info: dict[str, str] = {}
        if stack.contains(Transform.JIT) and request.option("dce", "1") != "0":
            pruned = eliminate_dead_code(program)
            info["dce_removed"] = str(len(program.equations) - len(pruned.equations))
            program = pruned

        base = _Stage(self._base_fn(program, static_argnums, info), program)
        path: list[str] = []
        outputs = self._compose(stack, base, path)(request.args)

        diagnostics = {
            "mode": request.mode.value,
            "backend": request.backend.name,
            "transforms": stack.canonical() or "none",
            "equations": str(len(program.equations)),
        }
        if path:
            diagnostics["grad_path"] = ",".join(dict.fromkeys(path))
        diagnostics.update(info)
        return DispatchResponse(
            outputs=tuple(outputs),
            cache_key=key.digest,
            diagnostics=tuple(sorted(diagnostics.items())),
        )

    def run_transforms(
        self,
        stack: TransformStack,
        args: Sequence[Value],
        base: BaseFn,
    ) -> tuple[Value, ...]:
        """Apply a validated stack over an arbitrary callable, without caching."""
        validate_composition(stack)
        fn = self._compose(stack.normalized(), _Stage(base), [])
        return tuple(fn(tuple(as_value(arg) for arg in args)))

    def _base_fn(self, program: Program, static_argnums: tuple[int, ...], info: dict[str, str]) -> BaseFn:
        interp = self.interpreter

        def evaluate(args: tuple[Value, ...]) -> tuple[Value, ...]:
            try:
                if not static_argnums:
                    return tuple(interp.evaluate(program, args))
                result = partial_eval(program, pvals_for(args, static_argnums), interpreter=interp)
                info["residual_equations"] = str(len(result.residual.equations))
                return tuple(interp.evaluate(result.residual, result.unknown_subset(args, program)))
            except StageJaxError:
                raise
            except Exception as err:
                raise InterpreterFailureError(f"interpreter failed: {err}") from err

        return evaluate

    def _compose(self, stack: TransformStack, base: _Stage, path: list[str]) -> _Stage:
        stage = base
        for marker in reversed(stack.markers):
            if marker.kind is Transform.JIT:
                continue
            if marker.kind is Transform.GRAD:
                stage = self._grad_stage(marker, stage, path)
            else:
                stage = self._vmap_stage(stage)
        return stage

    def _grad_stage(self, marker: TransformMarker, inner: _Stage, path: list[str]) -> _Stage:
        argnum = marker.argnum
        rules = self.derivative_rules
        interp = self.interpreter

        def run(args: tuple[Value, ...]) -> tuple[Value, ...]:
            _check_grad_args(args, argnum)
            depth = _GRAD_DEPTH.get()
            token = _GRAD_DEPTH.set(depth + 1)
            try:
                if inner.program is not None:
                    avals = [Aval.of(arg) for arg in args]
                    avals[argnum] = Aval(shape=(), dtype=DType.F64)
                    out_avals = interp.output_avals(inner.program, avals)
                    if len(out_avals) != 1 or out_avals[0].shape:
                        shape = out_avals[0].shape if len(out_avals) == 1 else (len(out_avals),)
                        raise ScalarRequiredError(what="output", shape=tuple(shape))
                if inner.program is not None and depth == 0:
                    path.append("tape")
                    return (tape_grad(inner.program, args, argnum, rules),)
                logger.debug(f"grad at depth {depth}: using finite differences")
                path.append("finite_difference")
                return (finite_difference_grad(inner, args, argnum),)
            finally:
                _GRAD_DEPTH.reset(token)

        return _Stage(run)

    def _vmap_stage(self, inner: _Stage) -> _Stage:
        def run(args: tuple[Value, ...]) -> tuple[Value, ...]:
            size = leading_batch_size(args)
            rows: list[tuple[Value, ...]] = []
            for index in range(size):
                outs = tuple(inner(slice_args(args, index)))
                if rows and len(outs) != len(rows[0]):
                    raise OutputArityMismatchError(expected=len(rows[0]), actual=len(outs), iteration=index)
                rows.append(outs)
            return tuple(stack_leading([row[k] for row in rows]) for k in range(len(rows[0])))

        return _Stage(run)


_DEFAULT_DISPATCHER: Dispatcher | None = None
_DEFAULT_LOCK = threading.Lock()


def default_dispatcher() -> Dispatcher:
    """Process-wide dispatcher over the cache selected by STAGEJAX_CACHE."""
    global _DEFAULT_DISPATCHER
    with _DEFAULT_LOCK:
        if _DEFAULT_DISPATCHER is None:
            _DEFAULT_DISPATCHER = Dispatcher(cache=cache_from_env())
        return _DEFAULT_DISPATCHER


def dispatch(request: DispatchRequest, *, cache: ResponseCache | None = None) -> DispatchResponse:
    if cache is None:
        return default_dispatcher().dispatch(request)
    return Dispatcher(cache=cache).dispatch(request)
