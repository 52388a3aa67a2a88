"""Base interpreter: executes programs and primitives with jax.numpy."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from functools import partial
from typing import Protocol

import jax
import jax.numpy as jnp

from .errors import EvaluationError, StageJaxError
from .program import Equation, Primitive, Program, Var
from .values import Aval, DType, Value, from_array, to_array


def _reduce_sum(x, *, axes=None):
    if axes is None:
        return jnp.sum(x)
    return jnp.sum(x, axis=tuple(axes))


def _dot(x, y):
    if x.ndim > 2 or y.ndim > 2:
        raise EvaluationError(f"dot supports rank <= 2 operands, got ranks {x.ndim} and {y.ndim}")
    return jnp.dot(x, y)


# primitive -> implementation over arrays
_PRIMITIVE_IMPLS: dict[Primitive, Callable[..., object]] = {
    Primitive.ADD: jnp.add,
    Primitive.SUB: jnp.subtract,
    Primitive.MUL: jnp.multiply,
    Primitive.DIV: jnp.true_divide,
    Primitive.NEG: jnp.negative,
    Primitive.EXP: jnp.exp,
    Primitive.LOG: jnp.log,
    Primitive.SIN: jnp.sin,
    Primitive.COS: jnp.cos,
    Primitive.DOT: _dot,
    Primitive.REDUCE_SUM: _reduce_sum,
}


def primitive_arity(primitive: Primitive) -> int:
    if primitive not in _PRIMITIVE_IMPLS:
        raise EvaluationError(f"unknown primitive {primitive!r}")
    return Primitive(primitive).arity


def apply_arrays(primitive: Primitive, arrays: Sequence[object], params: tuple[tuple[str, object], ...] = ()):
    """Apply one primitive to jax arrays and return a single array."""
    impl = _PRIMITIVE_IMPLS.get(primitive)
    if impl is None:
        raise EvaluationError(f"unknown primitive {primitive!r}")
    arity = primitive.arity
    if len(arrays) != arity:
        raise EvaluationError(f"{primitive.value} expects {arity} input(s), got {len(arrays)}")
    kwargs = dict(params)
    try:
        return impl(*arrays, **kwargs)
    except StageJaxError:
        raise
    except (TypeError, ValueError) as err:
        raise EvaluationError(f"{primitive.value} failed: {err}") from err


def _aval_from_struct(struct) -> Aval:
    dtype = DType.F64 if jnp.dtype(struct.dtype).kind == "f" else DType.I64
    return Aval(shape=tuple(int(d) for d in struct.shape), dtype=dtype)


def _struct_for(aval: Aval):
    return jax.ShapeDtypeStruct(aval.shape, aval.dtype.jnp_dtype)


def evaluate_arrays(program: Program, arrays: Sequence[object]) -> tuple[object, ...]:
    """Execute a program over jax arrays (also traceable by jax)."""
    if len(arrays) != len(program.invars):
        raise EvaluationError(f"Expected {len(program.invars)} arguments, got {len(arrays)}")

    env: list[object] = [None] * program.num_vars
    for var, arr in zip(program.invars, arrays, strict=True):
        env[var.id] = arr
    for var, value in program.consts:
        env[var.id] = to_array(value)

    for eqn in program.equations:
        ins = [env[atom.id] if isinstance(atom, Var) else to_array(atom) for atom in eqn.inputs]
        out = apply_arrays(eqn.primitive, ins, eqn.params)
        env[eqn.outputs[0].id] = out

    return tuple(env[var.id] for var in program.outvars)


class Interpreter(Protocol):
    """Capability the core requires from the base interpreter."""

    def evaluate(self, program: Program, args: Sequence[Value]) -> tuple[Value, ...]: ...

    def apply(self, equation: Equation, inputs: Sequence[Value]) -> tuple[Value, ...]: ...

    def abstract_apply(self, equation: Equation, inputs: Sequence[Aval]) -> tuple[Aval, ...]: ...

    def output_avals(self, program: Program, args: Sequence[Aval]) -> tuple[Aval, ...]: ...


class JaxInterpreter:
    """Deterministic, side-effect-free evaluator on jax.numpy."""

    def evaluate(self, program: Program, args: Sequence[Value]) -> tuple[Value, ...]:
        arrays = [to_array(arg) for arg in args]
        return tuple(from_array(out) for out in evaluate_arrays(program, arrays))

    def apply(self, equation: Equation, inputs: Sequence[Value]) -> tuple[Value, ...]:
        out = apply_arrays(equation.primitive, [to_array(v) for v in inputs], equation.params)
        return (from_array(out),)

    def abstract_apply(self, equation: Equation, inputs: Sequence[Aval]) -> tuple[Aval, ...]:
        fn = partial(_apply_traced, equation.primitive, equation.params)
        try:
            struct = jax.eval_shape(fn, *[_struct_for(aval) for aval in inputs])
        except StageJaxError:
            raise
        except (TypeError, ValueError) as err:
            raise EvaluationError(f"{equation.primitive.value} failed: {err}") from err
        return (_aval_from_struct(struct),)

    def output_avals(self, program: Program, args: Sequence[Aval]) -> tuple[Aval, ...]:
        fn = partial(_evaluate_traced, program)
        try:
            structs = jax.eval_shape(fn, *[_struct_for(aval) for aval in args])
        except StageJaxError:
            raise
        except (TypeError, ValueError) as err:
            raise EvaluationError(f"abstract evaluation failed: {err}") from err
        return tuple(_aval_from_struct(struct) for struct in structs)


def _apply_traced(primitive: Primitive, params, *arrays):
    return apply_arrays(primitive, arrays, params)


def _evaluate_traced(program: Program, *arrays):
    return evaluate_arrays(program, arrays)


DEFAULT_INTERPRETER = JaxInterpreter()