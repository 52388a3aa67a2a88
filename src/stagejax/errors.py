"""Structured error types for validation, staging and dispatch failures."""

from __future__ import annotations

from dataclasses import dataclass


class StageJaxError(Exception):
    """Base class for structured stagejax errors."""


class ValueShapeError(StageJaxError):
    """Tensor construction with an element count that does not match its shape."""


class ProgramStructureError(StageJaxError):
    """Program references a variable that is not bound before its use."""


class InterpreterFailureError(StageJaxError):
    """Base evaluation failed inside the interpreter collaborator."""


class EvaluationError(InterpreterFailureError):
    """Base interpreter failure on concrete inputs (arity, primitive or shape)."""


class StagingInvariantError(StageJaxError):
    """Internal post-condition of partial evaluation was violated."""


@dataclass(eq=False)
class CompositionInvalidError(StageJaxError):
    """Illegal transform stack, rejected before any key or numeric work."""

    kind: str
    position: int
    reason: str

    def __str__(self) -> str:
        return f"invalid transform composition at position {self.position} ({self.kind}): {self.reason}"


@dataclass(eq=False)
class UnknownFeatureRejectedError(StageJaxError):
    """Strict mode refuses to key a request carrying unrecognized features."""

    features: tuple[str, ...]

    def __str__(self) -> str:
        return f"strict mode rejected unknown features: {', '.join(self.features)}"


@dataclass(eq=False)
class MissingDerivativeRuleError(StageJaxError):
    """No reverse-mode rule is registered for a primitive used under grad."""

    primitive: str

    def __str__(self) -> str:
        return f"no derivative rule registered for primitive {self.primitive!r}"


class TransformArgumentError(StageJaxError):
    """Arguments do not satisfy the requirements of a transform."""


@dataclass(eq=False)
class ScalarRequiredError(TransformArgumentError):
    what: str
    shape: tuple[int, ...]

    def __str__(self) -> str:
        return f"grad requires a scalar {self.what}, got shape {self.shape}"


@dataclass(eq=False)
class EmptyArgumentsError(TransformArgumentError):
    transform: str

    def __str__(self) -> str:
        return f"{self.transform} requires at least one argument"


@dataclass(eq=False)
class ArgumentIndexError(TransformArgumentError):
    argnum: int
    count: int

    def __str__(self) -> str:
        return f"argnum {self.argnum} is out of range for {self.count} argument(s)"


@dataclass(eq=False)
class LeadingDimensionMismatchError(TransformArgumentError):
    sizes: tuple[int, ...]

    def __str__(self) -> str:
        if not self.sizes:
            return "vmap requires at least one argument with a leading axis"
        return f"vmap arguments disagree on leading dimension: {list(self.sizes)}"


class EmptyBatchError(TransformArgumentError):
    """Vmap over a leading dimension of zero."""

    def __str__(self) -> str:
        return "vmap requires a non-empty batch"


@dataclass(eq=False)
class OutputArityMismatchError(TransformArgumentError):
    expected: int
    actual: int
    iteration: int

    def __str__(self) -> str:
        return (
            f"vmap iteration {self.iteration} produced {self.actual} output(s), "
            f"expected {self.expected}"
        )
