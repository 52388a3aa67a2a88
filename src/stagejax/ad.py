"""Reverse-mode differentiation: derivative rules, gradient tape, finite differences."""

from __future__ import annotations

import os
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from types import MappingProxyType

import jax.numpy as jnp

from .errors import MissingDerivativeRuleError, ScalarRequiredError
from .interpreter import apply_arrays
from .program import Equation, Primitive, Program, Var
from .values import Literal, Value, from_array, to_array

# rule(inputs, output, upstream, params) -> one cotangent per input
DerivativeRule = Callable[[Sequence[object], object, object, Mapping[str, object]], tuple[object, ...]]


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


FD_STEP = _env_float("STAGEJAX_FD_STEP", 1e-6)


def _unbroadcast(g, shape: tuple[int, ...]):
    """Sum `g` down to `shape`, undoing numpy broadcasting."""
    g = jnp.asarray(g)
    if g.shape == tuple(shape):
        return g
    extra = g.ndim - len(shape)
    if extra > 0:
        g = jnp.sum(g, axis=tuple(range(extra)))
    axes = tuple(i for i, dim in enumerate(shape) if dim == 1 and g.shape[i] != 1)
    if axes:
        g = jnp.sum(g, axis=axes, keepdims=True)
    return jnp.reshape(g, shape)


def _add_rule(inputs, output, g, params):
    x, y = inputs
    return _unbroadcast(g, jnp.shape(x)), _unbroadcast(g, jnp.shape(y))


def _sub_rule(inputs, output, g, params):
    x, y = inputs
    return _unbroadcast(g, jnp.shape(x)), _unbroadcast(-g, jnp.shape(y))


def _mul_rule(inputs, output, g, params):
    x, y = inputs
    return _unbroadcast(g * y, jnp.shape(x)), _unbroadcast(g * x, jnp.shape(y))


def _div_rule(inputs, output, g, params):
    x, y = inputs
    return _unbroadcast(g / y, jnp.shape(x)), _unbroadcast(-g * x / (y * y), jnp.shape(y))


def _neg_rule(inputs, output, g, params):
    return (-g,)


def _exp_rule(inputs, output, g, params):
    return (g * output,)


def _log_rule(inputs, output, g, params):
    (x,) = inputs
    return (g / x,)


def _sin_rule(inputs, output, g, params):
    (x,) = inputs
    return (g * jnp.cos(x),)


def _cos_rule(inputs, output, g, params):
    (x,) = inputs
    return (-g * jnp.sin(x),)


def _dot_rule(inputs, output, g, params):
    x, y = (jnp.asarray(v) for v in inputs)
    if x.ndim == 0 or y.ndim == 0:
        return _mul_rule((x, y), output, g, params)
    if x.ndim == 1 and y.ndim == 1:
        return g * y, g * x
    if x.ndim == 2 and y.ndim == 1:
        return jnp.outer(g, y), jnp.dot(x.T, g)
    if x.ndim == 1 and y.ndim == 2:
        return jnp.dot(y, g), jnp.outer(x, g)
    return jnp.dot(g, y.T), jnp.dot(x.T, g)


def _reduce_sum_rule(inputs, output, g, params):
    (x,) = inputs
    shape = jnp.shape(x)
    axes = params.get("axes")
    if axes is not None:
        g = jnp.expand_dims(g, tuple(sorted(a % len(shape) for a in axes)))
    return (jnp.broadcast_to(g, shape),)


DEFAULT_DERIVATIVE_RULES: Mapping[Primitive, DerivativeRule] = MappingProxyType(
    {
        Primitive.ADD: _add_rule,
        Primitive.SUB: _sub_rule,
        Primitive.MUL: _mul_rule,
        Primitive.DIV: _div_rule,
        Primitive.NEG: _neg_rule,
        Primitive.EXP: _exp_rule,
        Primitive.LOG: _log_rule,
        Primitive.SIN: _sin_rule,
        Primitive.COS: _cos_rule,
        Primitive.DOT: _dot_rule,
        Primitive.REDUCE_SUM: _reduce_sum_rule,
    }
)


def check_rules(rules: Mapping[Primitive, DerivativeRule], program: Program) -> None:
    for eqn in program.equations:
        if eqn.primitive not in rules:
            raise MissingDerivativeRuleError(primitive=eqn.primitive.value)


def local_derivative(
    rules: Mapping[Primitive, DerivativeRule],
    primitive: Primitive,
    inputs: Sequence[object],
    output: object,
    upstream: object,
    params: Mapping[str, object] | None = None,
) -> tuple[object, ...]:
    rule = rules.get(primitive)
    if rule is None:
        raise MissingDerivativeRuleError(primitive=Primitive(primitive).value)
    return tuple(rule(inputs, output, upstream, dict(params or {})))


@dataclass(frozen=True)
class TapeEntry:
    equation: Equation
    inputs: tuple[object, ...]
    output: object


class GradientTape:
    """One forward pass recording every equation, then one backward pass."""

    def __init__(self, program: Program, rules: Mapping[Primitive, DerivativeRule] = DEFAULT_DERIVATIVE_RULES) -> None:
        check_rules(rules, program)
        self.program = program
        self.rules = rules
        self.entries: list[TapeEntry] = []
        self._env: list[object] = []

    def forward(self, arrays: Sequence[object]) -> tuple[object, ...]:
        program = self.program
        env: list[object] = [None] * program.num_vars
        for var, arr in zip(program.invars, arrays, strict=True):
            env[var.id] = arr
        for var, value in program.consts:
            env[var.id] = to_array(value)
        entries: list[TapeEntry] = []
        for eqn in program.equations:
            ins = tuple(env[a.id] if isinstance(a, Var) else to_array(a) for a in eqn.inputs)
            out = apply_arrays(eqn.primitive, ins, eqn.params)
            env[eqn.outputs[0].id] = out
            entries.append(TapeEntry(eqn, ins, out))
        self.entries = entries
        self._env = env
        return tuple(env[var.id] for var in program.outvars)

    def backward(self, output_index: int = 0) -> list[object]:
        """Cotangent of the selected output with respect to every input."""
        program = self.program
        cts: list[object] = [None] * program.num_vars
        out_var = program.outvars[output_index]
        cts[out_var.id] = jnp.ones_like(jnp.asarray(self._env[out_var.id], dtype=jnp.float64))

        for entry in reversed(self.entries):
            g = cts[entry.equation.outputs[0].id]
            if g is None:
                continue
            grads = local_derivative(
                self.rules, entry.equation.primitive, entry.inputs, entry.output, g, dict(entry.equation.params)
            )
            for atom, ct in zip(entry.equation.inputs, grads, strict=True):
                if not isinstance(atom, Var):
                    continue
                prev = cts[atom.id]
                cts[atom.id] = ct if prev is None else prev + ct

        result = []
        for var in program.invars:
            ct = cts[var.id]
            if ct is None:
                ct = jnp.zeros_like(jnp.asarray(self._env[var.id], dtype=jnp.float64))
            result.append(ct)
        return result


def _float_args(args: Sequence[Value], argnum: int) -> list[object]:
    arrays = [to_array(arg) for arg in args]
    arrays[argnum] = arrays[argnum].astype(jnp.float64)
    return arrays


def tape_value_and_grad(
    program: Program,
    args: Sequence[Value],
    argnum: int = 0,
    rules: Mapping[Primitive, DerivativeRule] = DEFAULT_DERIVATIVE_RULES,
) -> tuple[Value, Literal]:
    tape = GradientTape(program, rules)
    outs = tape.forward(_float_args(args, argnum))
    if len(outs) != 1 or jnp.ndim(outs[0]) != 0:
        shape = tuple(jnp.shape(outs[0])) if len(outs) == 1 else (len(outs),)
        raise ScalarRequiredError(what="output", shape=shape)
    grads = tape.backward()
    return from_array(outs[0]), Literal.f64(float(grads[argnum]))


def tape_grad(
    program: Program,
    args: Sequence[Value],
    argnum: int = 0,
    rules: Mapping[Primitive, DerivativeRule] = DEFAULT_DERIVATIVE_RULES,
) -> Literal:
    return tape_value_and_grad(program, args, argnum, rules)[1]


def _scalar_output(outs: Sequence[Value]) -> float:
    if len(outs) != 1 or not isinstance(outs[0], Literal):
        shape = tuple(outs[0].shape) if len(outs) == 1 else (len(outs),)
        raise ScalarRequiredError(what="output", shape=shape)
    return outs[0].as_float()


def finite_difference_grad(
    fn: Callable[[tuple[Value, ...]], tuple[Value, ...]],
    args: Sequence[Value],
    argnum: int = 0,
    step: float | None = None,
) -> Literal:
    """Symmetric difference quotient of the single scalar output of `fn`.

    The output is checked at the unshifted point before either step is taken.
    """
    h = FD_STEP if step is None else step
    x = float(to_array(args[argnum]))

    def at(point: float) -> float:
        shifted = list(args)
        shifted[argnum] = Literal.f64(point)
        return _scalar_output(fn(tuple(shifted)))

    at(x)
    return Literal.f64((at(x + h) - at(x - h)) / (2.0 * h))
