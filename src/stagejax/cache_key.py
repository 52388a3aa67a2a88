"""Deterministic cache keys over a canonical encoding of a request."""

from __future__ import annotations

import hashlib
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from enum import Enum

from .errors import UnknownFeatureRejectedError
from .transforms import TransformStack
from .values import Value, value_token

KEY_SCHEMA_VERSION = "stagejax-key-v1"


class CompatibilityMode(str, Enum):
    STRICT = "strict"
    HARDENED = "hardened"


@dataclass(frozen=True)
class BackendId:
    """Opaque backend/device label. Only consumed by key computation."""

    name: str = "cpu"

    def canonical_bytes(self) -> bytes:
        return self.name.encode("utf-8")


@dataclass(frozen=True)
class CacheKey:
    digest: str

    def __str__(self) -> str:
        return self.digest


class _Encoder:
    """Tagged, length-prefixed field encoding; no two field lists share bytes."""

    def __init__(self) -> None:
        self._hasher = hashlib.sha256()

    def field(self, tag: str, payload: bytes) -> None:
        head = tag.encode("ascii")
        self._hasher.update(len(head).to_bytes(2, "big"))
        self._hasher.update(head)
        self._hasher.update(len(payload).to_bytes(8, "big"))
        self._hasher.update(payload)

    def text(self, tag: str, value: str) -> None:
        self.field(tag, value.encode("utf-8"))

    def hexdigest(self) -> str:
        return self._hasher.hexdigest()


def _frozen_options(options: Mapping[str, str] | Iterable[tuple[str, str]] | None) -> tuple[tuple[str, str], ...]:
    if options is None:
        return ()
    items = options.items() if isinstance(options, Mapping) else options
    return tuple(sorted((str(k), str(v)) for k, v in items))


def args_fingerprint(args: Sequence[Value]) -> str:
    """SHA-256 over the exact canonical text of concrete argument values."""
    enc = _Encoder()
    enc.text("count", str(len(args)))
    for arg in args:
        enc.text("arg", value_token(arg))
    return enc.hexdigest()


def build_key(
    mode: CompatibilityMode,
    backend: BackendId,
    program_fingerprint: str,
    transform_stack: TransformStack,
    compile_options: Mapping[str, str] | Iterable[tuple[str, str]] | None,
    hook: str | None,
    unknown_features: Iterable[str],
    *,
    args_fingerprint: str | None = None,
) -> CacheKey:
    mode = CompatibilityMode(mode)
    features = tuple(sorted(set(unknown_features)))
    if mode is CompatibilityMode.STRICT and features:
        raise UnknownFeatureRejectedError(features=features)

    enc = _Encoder()
    enc.text("schema", KEY_SCHEMA_VERSION)
    enc.text("mode", mode.value)
    enc.field("backend", backend.canonical_bytes())
    enc.text("program", program_fingerprint)
    stack = transform_stack.normalized()
    enc.text("transforms", str(len(stack)))
    for marker in stack:
        enc.text("transform", marker.canonical())
    options = _frozen_options(compile_options)
    enc.text("options", str(len(options)))
    for key, value in options:
        enc.text("option.key", key)
        enc.text("option.value", value)
    # None and "" must not collide.
    enc.text("hook", "none" if hook is None else "some:" + hook)
    enc.text("features", str(len(features)))
    for feature in features:
        enc.text("feature", feature)
    if args_fingerprint is not None:
        enc.text("args", args_fingerprint)
    return CacheKey(enc.hexdigest())
