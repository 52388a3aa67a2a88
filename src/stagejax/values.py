"""Runtime value model: literals, length-checked tensors and array conversion."""

from __future__ import annotations

import math
import numbers
from dataclasses import dataclass
from enum import Enum
from typing import Union

import jax
import jax.numpy as jnp

from .errors import EvaluationError, ValueShapeError

# Literals and tensors are 64-bit; without this jax silently truncates to 32 bits.
jax.config.update("jax_enable_x64", True)


class DType(str, Enum):
    I64 = "i64"
    F64 = "f64"

    @property
    def jnp_dtype(self):
        return jnp.int64 if self is DType.I64 else jnp.float64


def _coerce_element(dtype: DType, value: object, *, where: str) -> int | float:
    if isinstance(value, bool):
        value = int(value)
    if dtype is DType.I64:
        if isinstance(value, numbers.Integral):
            return int(value)
        if isinstance(value, numbers.Real) and float(value).is_integer():
            return int(value)
        raise ValueShapeError(f"{where}: {value!r} is not an i64 element")
    if isinstance(value, numbers.Real):
        return float(value)
    raise ValueShapeError(f"{where}: {value!r} is not an f64 element")


@dataclass(frozen=True)
class Literal:
    """Rank-0 scalar of one numeric kind."""

    dtype: DType
    value: int | float

    def __post_init__(self) -> None:
        object.__setattr__(self, "value", _coerce_element(self.dtype, self.value, where="literal"))

    @classmethod
    def i64(cls, value: int) -> "Literal":
        return cls(DType.I64, value)

    @classmethod
    def f64(cls, value: float) -> "Literal":
        return cls(DType.F64, value)

    @property
    def shape(self) -> tuple[int, ...]:
        return ()

    def as_float(self) -> float:
        return float(self.value)


@dataclass(frozen=True)
class TensorValue:
    """Shaped value backed by a flat element buffer in row-major order."""

    dtype: DType
    shape: tuple[int, ...]
    elements: tuple[int | float, ...]

    def __post_init__(self) -> None:
        shape = tuple(self.shape)
        for dim in shape:
            if isinstance(dim, bool) or not isinstance(dim, numbers.Integral) or dim < 0:
                raise ValueShapeError(f"tensor dimensions must be non-negative integers, got {shape}")
        shape = tuple(int(d) for d in shape)
        elements = tuple(self.elements)
        expected = math.prod(shape)
        if len(elements) != expected:
            raise ValueShapeError(
                f"tensor of shape {shape} needs {expected} element(s), got {len(elements)}"
            )
        coerced = tuple(
            _coerce_element(self.dtype, item, where=f"element[{idx}]") for idx, item in enumerate(elements)
        )
        object.__setattr__(self, "shape", shape)
        object.__setattr__(self, "elements", coerced)

    @property
    def rank(self) -> int:
        return len(self.shape)

    @property
    def leading_dim(self) -> int | None:
        if not self.shape:
            return None
        return self.shape[0]


Value = Union[Literal, TensorValue]


@dataclass(frozen=True)
class Aval:
    """Abstract value: shape and element kind without data."""

    shape: tuple[int, ...]
    dtype: DType

    @classmethod
    def of(cls, value: Value) -> "Aval":
        return cls(shape=tuple(value.shape), dtype=value.dtype)

    @property
    def is_scalar(self) -> bool:
        return not self.shape


def scalar_i64(value: int) -> Literal:
    return Literal.i64(value)


def scalar_f64(value: float) -> Literal:
    return Literal.f64(value)


def vector_i64(values) -> TensorValue:
    items = tuple(values)
    return TensorValue(DType.I64, (len(items),), items)


def vector_f64(values) -> TensorValue:
    items = tuple(values)
    return TensorValue(DType.F64, (len(items),), items)


def _nested_shape(data, *, where: str) -> tuple[int, ...]:
    if not isinstance(data, (list, tuple)):
        return ()
    if not data:
        return (0,)
    inner = [_nested_shape(item, where=where) for item in data]
    if any(shape != inner[0] for shape in inner):
        raise ValueShapeError(f"{where} is ragged; nested lists must be rectangular")
    return (len(data),) + inner[0]


def _flatten(data) -> list[object]:
    if not isinstance(data, (list, tuple)):
        return [data]
    out: list[object] = []
    for item in data:
        out.extend(_flatten(item))
    return out


def tensor_from_nested(data, dtype: DType | None = None) -> TensorValue:
    """Build a tensor from (rectangular) nested python lists."""
    shape = _nested_shape(data, where="tensor data")
    flat = _flatten(data)
    if dtype is None:
        dtype = DType.F64 if any(isinstance(item, float) for item in flat) else DType.I64
    return TensorValue(dtype, shape, tuple(flat))


def is_value(obj: object) -> bool:
    return isinstance(obj, (Literal, TensorValue))


def as_value(obj: object) -> Value:
    """Coerce python scalars, nested lists and arrays to a runtime value."""
    if isinstance(obj, (Literal, TensorValue)):
        return obj
    if isinstance(obj, bool):
        return Literal.i64(int(obj))
    if isinstance(obj, numbers.Integral):
        return Literal.i64(int(obj))
    if isinstance(obj, numbers.Real):
        return Literal.f64(float(obj))
    if isinstance(obj, (list, tuple)):
        return tensor_from_nested(obj)
    if hasattr(obj, "shape") and hasattr(obj, "dtype"):
        return from_array(obj)
    raise EvaluationError(f"unsupported argument type {type(obj).__name__}")


def to_array(value: Value):
    if isinstance(value, Literal):
        return jnp.asarray(value.value, dtype=value.dtype.jnp_dtype)
    flat = jnp.asarray(value.elements, dtype=value.dtype.jnp_dtype)
    return flat.reshape(value.shape)


def from_array(array) -> Value:
    arr = jnp.asarray(array)
    kind = arr.dtype.kind
    if kind == "f":
        dtype = DType.F64
    elif kind in ("i", "u", "b"):
        dtype = DType.I64
    else:
        raise EvaluationError(f"unsupported array dtype {arr.dtype}")
    if arr.ndim == 0:
        return Literal(dtype, arr.item())
    shape = tuple(int(d) for d in arr.shape)
    return TensorValue(dtype, shape, tuple(arr.reshape(-1).tolist()))


def shape_of(value: Value) -> tuple[int, ...]:
    return tuple(value.shape)


def is_scalar(value: Value) -> bool:
    return not value.shape


def _element_token(dtype: DType, item: int | float) -> str:
    if dtype is DType.F64:
        return float(item).hex()
    return str(int(item))


def value_token(value: Value) -> str:
    """Exact, canonical text encoding of a value for fingerprinting."""
    if isinstance(value, Literal):
        return f"lit:{value.dtype.value}:{_element_token(value.dtype, value.value)}"
    dims = "x".join(str(d) for d in value.shape)
    items = ",".join(_element_token(value.dtype, item) for item in value.elements)
    return f"tensor:{value.dtype.value}:[{dims}]:{items}"
