"""Transform markers, transform stacks and composition legality."""

from __future__ import annotations

import os
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from enum import Enum

from .errors import CompositionInvalidError


class Transform(str, Enum):
    JIT = "jit"
    GRAD = "grad"
    VMAP = "vmap"


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


MAX_TRANSFORM_DEPTH = _env_int("STAGEJAX_MAX_TRANSFORM_DEPTH", 8)


@dataclass(frozen=True)
class TransformMarker:
    kind: Transform
    argnum: int = 0
    # Audit metadata only: never compared, never hashed.
    evidence_id: str | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", Transform(self.kind))

    def canonical(self) -> str:
        if self.kind is Transform.GRAD:
            return f"{self.kind.value}(argnum={self.argnum})"
        return self.kind.value


def _as_marker(item: TransformMarker | Transform | str) -> TransformMarker:
    if isinstance(item, TransformMarker):
        return item
    return TransformMarker(Transform(item))


@dataclass(frozen=True)
class TransformStack:
    """Ordered transform markers, outermost first."""

    markers: tuple[TransformMarker, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "markers", tuple(_as_marker(m) for m in self.markers))

    @classmethod
    def of(cls, *items: TransformMarker | Transform | str) -> "TransformStack":
        return cls(tuple(items))

    @classmethod
    def from_iterable(cls, items: Iterable[TransformMarker | Transform | str]) -> "TransformStack":
        return cls(tuple(items))

    def __iter__(self) -> Iterator[TransformMarker]:
        return iter(self.markers)

    def __len__(self) -> int:
        return len(self.markers)

    def __bool__(self) -> bool:
        return bool(self.markers)

    def kinds(self) -> tuple[Transform, ...]:
        return tuple(marker.kind for marker in self.markers)

    def contains(self, kind: Transform) -> bool:
        return any(marker.kind is kind for marker in self.markers)

    def normalized(self) -> "TransformStack":
        """Keep the first Jit marker and drop every later one."""
        out: list[TransformMarker] = []
        seen_jit = False
        for marker in self.markers:
            if marker.kind is Transform.JIT:
                if seen_jit:
                    continue
                seen_jit = True
            out.append(marker)
        return TransformStack(tuple(out))

    def appended(self, marker: TransformMarker | Transform | str) -> "TransformStack":
        """Add `marker` as the new innermost transform."""
        return TransformStack(self.markers + (_as_marker(marker),))

    def canonical(self) -> str:
        return ">".join(marker.canonical() for marker in self.markers)


def validate_composition(stack: TransformStack, *, max_depth: int | None = None) -> None:
    """Reject illegal stacks before any key computation or numeric work."""
    limit = MAX_TRANSFORM_DEPTH if max_depth is None else max_depth
    if len(stack) > limit:
        last = stack.markers[limit]
        raise CompositionInvalidError(
            kind=last.kind.value,
            position=limit,
            reason=f"transform stack depth {len(stack)} exceeds the limit of {limit}",
        )

    seen: dict[Transform, int] = {}
    for position, marker in enumerate(stack):
        if marker.kind is Transform.GRAD and marker.argnum < 0:
            raise CompositionInvalidError(
                kind=marker.kind.value,
                position=position,
                reason=f"grad argnum must be non-negative, got {marker.argnum}",
            )
        if marker.kind is Transform.JIT:
            continue
        if marker.kind in seen:
            raise CompositionInvalidError(
                kind=marker.kind.value,
                position=position,
                reason=f"{marker.kind.value} already appears at position {seen[marker.kind]}",
            )
        seen[marker.kind] = position
