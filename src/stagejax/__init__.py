"""stagejax public API."""

from .errors import (
    ArgumentIndexError,
    CompositionInvalidError,
    EmptyArgumentsError,
    EmptyBatchError,
    EvaluationError,
    InterpreterFailureError,
    LeadingDimensionMismatchError,
    MissingDerivativeRuleError,
    OutputArityMismatchError,
    ProgramStructureError,
    ScalarRequiredError,
    StageJaxError,
    StagingInvariantError,
    TransformArgumentError,
    UnknownFeatureRejectedError,
    ValueShapeError,
)
from .values import (
    Aval,
    DType,
    Literal,
    TensorValue,
    Value,
    as_value,
    from_array,
    scalar_f64,
    scalar_i64,
    tensor_from_nested,
    to_array,
    vector_f64,
    vector_i64,
)
from .program import Equation, Primitive, Program, ProgramBuilder, ProgramSpec, Var, build_program
from .interpreter import DEFAULT_INTERPRETER, Interpreter, JaxInterpreter
from .staging import (
    AbstractStatusTable,
    Known,
    PartialEvalResult,
    Unknown,
    eliminate_dead_code,
    partial_eval,
    pvals_for,
    staged_evaluate,
)
from .transforms import MAX_TRANSFORM_DEPTH, Transform, TransformMarker, TransformStack, validate_composition
from .cache_key import BackendId, CacheKey, CompatibilityMode, args_fingerprint, build_key
from .cache import (
    InMemoryResponseCache,
    NullResponseCache,
    PersistentResponseCache,
    ResponseCache,
    cache_from_env,
)
from .ad import DEFAULT_DERIVATIVE_RULES, GradientTape, finite_difference_grad, local_derivative, tape_grad
from .dispatch import DispatchRequest, DispatchResponse, DispatchState, Dispatcher, default_dispatcher, dispatch
from .api import Transformed, ValueAndGrad, compose, grad, jit, value_and_grad, vmap

__all__ = [
    "AbstractStatusTable",
    "ArgumentIndexError",
    "Aval",
    "BackendId",
    "CacheKey",
    "CompatibilityMode",
    "CompositionInvalidError",
    "DEFAULT_DERIVATIVE_RULES",
    "DEFAULT_INTERPRETER",
    "DType",
    "DispatchRequest",
    "DispatchResponse",
    "DispatchState",
    "Dispatcher",
    "EmptyArgumentsError",
    "EmptyBatchError",
    "Equation",
    "EvaluationError",
    "GradientTape",
    "InMemoryResponseCache",
    "Interpreter",
    "InterpreterFailureError",
    "JaxInterpreter",
    "Known",
    "LeadingDimensionMismatchError",
    "Literal",
    "MAX_TRANSFORM_DEPTH",
    "MissingDerivativeRuleError",
    "NullResponseCache",
    "OutputArityMismatchError",
    "PartialEvalResult",
    "PersistentResponseCache",
    "Primitive",
    "Program",
    "ProgramBuilder",
    "ProgramSpec",
    "ProgramStructureError",
    "ResponseCache",
    "ScalarRequiredError",
    "StageJaxError",
    "StagingInvariantError",
    "TensorValue",
    "Transform",
    "TransformArgumentError",
    "TransformMarker",
    "TransformStack",
    "Transformed",
    "Unknown",
    "UnknownFeatureRejectedError",
    "Value",
    "ValueAndGrad",
    "ValueShapeError",
    "Var",
    "args_fingerprint",
    "as_value",
    "build_key",
    "build_program",
    "cache_from_env",
    "compose",
    "default_dispatcher",
    "dispatch",
    "eliminate_dead_code",
    "finite_difference_grad",
    "from_array",
    "grad",
    "jit",
    "local_derivative",
    "partial_eval",
    "pvals_for",
    "scalar_f64",
    "scalar_i64",
    "staged_evaluate",
    "tape_grad",
    "tensor_from_nested",
    "to_array",
    "validate_composition",
    "value_and_grad",
    "vector_f64",
    "vector_i64",
    "vmap",
]
