"""Transform front door: `jit`, `grad`, `vmap`, `value_and_grad`, `compose`.

Each entry point returns a callable object. Builder methods add a marker as
the new innermost transform, so `jit(p).compose_grad()` computes
`jit(grad(p))` in a single dispatch. Wrapping an already transformed callable
(`grad(grad(p))`) nests at call time instead, and inner Grad transforms then
take the finite-difference path.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from typing import Union

from .cache import ResponseCache
from .cache_key import BackendId, CompatibilityMode
from .dispatch import DispatchRequest, DispatchResponse, Dispatcher, default_dispatcher
from .program import Program
from .transforms import Transform, TransformMarker, TransformStack
from .values import Value, as_value

Target = Union[Program, "Transformed", Callable[[tuple[Value, ...]], tuple[Value, ...]]]


def _dispatcher_for(cache: ResponseCache | None) -> Dispatcher:
    if cache is None:
        return default_dispatcher()
    return Dispatcher(cache=cache)


@dataclass(frozen=True)
class Transformed:
    target: Target
    transforms: TransformStack = field(default_factory=TransformStack)
    mode: CompatibilityMode = CompatibilityMode.STRICT
    backend: BackendId = field(default_factory=BackendId)
    compile_options: tuple[tuple[str, str], ...] = ()
    unknown_features: tuple[str, ...] = ()
    cache: ResponseCache | None = field(default=None, compare=False)

    def request(self, args: Sequence[object]) -> DispatchRequest:
        if not isinstance(self.target, Program):
            raise TypeError("only program targets build dispatch requests")
        return DispatchRequest(
            program=self.target,
            transforms=self.transforms,
            args=tuple(args),
            backend=self.backend,
            mode=self.mode,
            compile_options=self.compile_options,
            unknown_features=self.unknown_features,
        )

    def dispatch(self, args: Sequence[object]) -> DispatchResponse:
        """Run on a program target and return the full response."""
        return _dispatcher_for(self.cache).dispatch(self.request(args))

    def call(self, args: Sequence[object]) -> tuple[Value, ...]:
        if isinstance(self.target, Program):
            return self.dispatch(args).outputs
        inner = self.target.call if isinstance(self.target, Transformed) else self.target
        return _dispatcher_for(self.cache).run_transforms(self.transforms, args, inner)

    def __call__(self, *args: object):
        outputs = self.call(args)
        if len(outputs) == 1:
            return outputs[0]
        return outputs

    def compose_jit(self) -> "Transformed":
        return replace(self, transforms=self.transforms.appended(Transform.JIT))

    def compose_grad(self, argnum: int = 0) -> "Transformed":
        return replace(self, transforms=self.transforms.appended(TransformMarker(Transform.GRAD, argnum)))

    def compose_vmap(self) -> "Transformed":
        return replace(self, transforms=self.transforms.appended(Transform.VMAP))

    def with_mode(self, mode: CompatibilityMode | str) -> "Transformed":
        return replace(self, mode=CompatibilityMode(mode))

    def with_backend(self, backend: BackendId | str) -> "Transformed":
        if not isinstance(backend, BackendId):
            backend = BackendId(str(backend))
        return replace(self, backend=backend)

    def with_compile_options(self, options: Mapping[str, object]) -> "Transformed":
        merged = dict(self.compile_options)
        merged.update((str(k), str(v)) for k, v in options.items())
        return replace(self, compile_options=tuple(sorted(merged.items())))

    def with_unknown_features(self, *features: str) -> "Transformed":
        return replace(self, unknown_features=self.unknown_features + tuple(features))

    def with_cache(self, cache: ResponseCache | None) -> "Transformed":
        return replace(self, cache=cache)


@dataclass(frozen=True)
class ValueAndGrad:
    """Returns `(outputs, (gradient,))` from one call."""

    program: Program
    argnum: int = 0
    cache: ResponseCache | None = field(default=None, compare=False)

    def call(self, args: Sequence[object]) -> tuple[tuple[Value, ...], tuple[Value, ...]]:
        values = tuple(as_value(arg) for arg in args)
        base = Transformed(self.program, cache=self.cache)
        value = base.call(values)
        gradient = base.compose_grad(self.argnum).call(values)
        return value, gradient

    def __call__(self, *args: object):
        value, gradient = self.call(args)
        return value[0] if len(value) == 1 else value, gradient[0]


def _wrap(target: Target, marker: TransformMarker) -> Transformed:
    return Transformed(target, TransformStack.of(marker))


def jit(target: Target) -> Transformed:
    return _wrap(target, TransformMarker(Transform.JIT))


def grad(target: Target, argnum: int = 0) -> Transformed:
    return _wrap(target, TransformMarker(Transform.GRAD, argnum))


def vmap(target: Target) -> Transformed:
    return _wrap(target, TransformMarker(Transform.VMAP))


def value_and_grad(program: Program, argnum: int = 0) -> ValueAndGrad:
    return ValueAndGrad(program, argnum)


def compose(program: Target, transforms: Iterable[TransformMarker | Transform | str]) -> Transformed:
    """Apply `transforms`, outermost first, in one dispatch."""
    return Transformed(program, TransformStack.from_iterable(transforms))
