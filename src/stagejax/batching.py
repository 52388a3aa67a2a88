"""Generic leading-axis batching: slice arguments, stack outputs."""

from __future__ import annotations

import math
from collections.abc import Sequence

import jax.numpy as jnp

from .errors import EmptyArgumentsError, EmptyBatchError, LeadingDimensionMismatchError
from .values import Literal, TensorValue, Value, from_array, to_array


def leading_batch_size(args: Sequence[Value]) -> int:
    """Shared leading dimension of every tensor argument.

    Scalar arguments are broadcast and do not take part. Raises before any
    iteration when the sizes disagree, nothing is batched, or the batch is
    empty.
    """
    if not args:
        raise EmptyArgumentsError(transform="vmap")
    sizes = tuple(arg.shape[0] for arg in args if isinstance(arg, TensorValue) and arg.shape)
    if not sizes:
        raise LeadingDimensionMismatchError(sizes=())
    if any(size != sizes[0] for size in sizes):
        raise LeadingDimensionMismatchError(sizes=sizes)
    if sizes[0] == 0:
        raise EmptyBatchError()
    return sizes[0]


def slice_leading(value: Value, index: int) -> Value:
    """Row `index` along the leading axis; scalars pass through unchanged."""
    if not isinstance(value, TensorValue) or not value.shape:
        return value
    inner = value.shape[1:]
    width = math.prod(inner)
    chunk = value.elements[index * width : (index + 1) * width]
    if not inner:
        return Literal(value.dtype, chunk[0])
    return TensorValue(value.dtype, inner, chunk)


def slice_args(args: Sequence[Value], index: int) -> tuple[Value, ...]:
    return tuple(slice_leading(arg, index) for arg in args)


def stack_leading(values: Sequence[Value]) -> Value:
    """Stack per-iteration values along a new leading axis, in order."""
    return from_array(jnp.stack([to_array(value) for value in values]))
