"""Traced program representation: variables, equations and programs."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from enum import Enum
from functools import cached_property
from typing import Union

from .errors import ProgramStructureError
from .values import Literal, Value, as_value, value_token


class Primitive(str, Enum):
    ADD = "add"
    SUB = "sub"
    MUL = "mul"
    DIV = "div"
    NEG = "neg"
    EXP = "exp"
    LOG = "log"
    SIN = "sin"
    COS = "cos"
    DOT = "dot"
    REDUCE_SUM = "reduce_sum"

    @property
    def arity(self) -> int:
        return 1 if self.value in _UNARY else 2


_UNARY = frozenset({"neg", "exp", "log", "sin", "cos", "reduce_sum"})


@dataclass(frozen=True)
class Var:
    """Single-assignment variable; ids are dense and unique per program."""

    id: int

    def __repr__(self) -> str:
        return f"v{self.id}"


Atom = Union[Var, Literal]


@dataclass(frozen=True)
class Equation:
    """One primitive application binding inputs to output variable(s)."""

    primitive: Primitive
    inputs: tuple[Atom, ...]
    outputs: tuple[Var, ...]
    params: tuple[tuple[str, object], ...] = ()

    def input_vars(self) -> tuple[Var, ...]:
        return tuple(atom for atom in self.inputs if isinstance(atom, Var))

    def param(self, name: str, default: object = None) -> object:
        for key, value in self.params:
            if key == name:
                return value
        return default


def _atom_token(atom: Atom, names: dict[int, int] | None = None) -> str:
    if isinstance(atom, Var):
        if names is None:
            return f"v{atom.id}"
        return f"v{names[atom.id]}"
    return value_token(atom)


@dataclass(frozen=True)
class Program:
    """Ordered equation list with declared inputs, outputs and constant pool.

    Construction validates that every referenced variable is bound before use
    (declared input, constant, or output of an earlier equation) and that no
    variable is bound twice.
    """

    invars: tuple[Var, ...]
    equations: tuple[Equation, ...]
    outvars: tuple[Var, ...]
    consts: tuple[tuple[Var, Value], ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "invars", tuple(self.invars))
        object.__setattr__(self, "equations", tuple(self.equations))
        object.__setattr__(self, "outvars", tuple(self.outvars))
        object.__setattr__(self, "consts", tuple((var, value) for var, value in self.consts))
        self._validate()

    def _validate(self) -> None:
        bound: set[int] = set()

        def bind(var: Var, where: str) -> None:
            if not isinstance(var, Var) or var.id < 0:
                raise ProgramStructureError(f"{where}: {var!r} is not a valid variable")
            if var.id in bound:
                raise ProgramStructureError(f"{where}: variable {var!r} is bound more than once")
            bound.add(var.id)

        for var in self.invars:
            bind(var, "input")
        for var, _value in self.consts:
            bind(var, "constant")
        for idx, eqn in enumerate(self.equations):
            try:
                primitive = Primitive(eqn.primitive)
            except ValueError as err:
                raise ProgramStructureError(f"equation {idx} has unknown primitive {eqn.primitive!r}") from err
            if len(eqn.inputs) != primitive.arity:
                raise ProgramStructureError(
                    f"equation {idx} ({primitive.value}) takes {primitive.arity} input(s), got {len(eqn.inputs)}"
                )
            if len(eqn.outputs) != 1:
                raise ProgramStructureError(
                    f"equation {idx} ({primitive.value}) binds {len(eqn.outputs)} output(s), expected 1"
                )
            for atom in eqn.inputs:
                if isinstance(atom, Var):
                    if atom.id not in bound:
                        raise ProgramStructureError(
                            f"equation {idx} ({eqn.primitive.value}) reads {atom!r} before it is bound"
                        )
                elif not isinstance(atom, Literal):
                    raise ProgramStructureError(f"equation {idx} has non-atom input {atom!r}")
            for var in eqn.outputs:
                bind(var, f"equation {idx} output")
        for var in self.outvars:
            if var.id not in bound:
                raise ProgramStructureError(f"output {var!r} is never bound")

    @cached_property
    def max_var_id(self) -> int:
        """Largest variable id bound in the program, or -1 for an empty program."""
        best = -1
        for var in self.invars:
            best = max(best, var.id)
        for var, _value in self.consts:
            best = max(best, var.id)
        for eqn in self.equations:
            for var in eqn.outputs:
                best = max(best, var.id)
        return best

    @property
    def num_vars(self) -> int:
        return self.max_var_id + 1

    def const_map(self) -> dict[int, Value]:
        return {var.id: value for var, value in self.consts}

    def primitives(self) -> frozenset[Primitive]:
        return frozenset(eqn.primitive for eqn in self.equations)

    def _canonical_lines(self, names: dict[int, int] | None) -> list[str]:
        lines = ["in " + " ".join(_atom_token(v, names) for v in self.invars)]
        for var, value in self.consts:
            lines.append(f"const {_atom_token(var, names)} = {value_token(value)}")
        for eqn in self.equations:
            ins = " ".join(_atom_token(a, names) for a in eqn.inputs)
            outs = " ".join(_atom_token(v, names) for v in eqn.outputs)
            params = ";".join(f"{k}={v!r}" for k, v in eqn.params)
            lines.append(f"{outs} = {eqn.primitive.value}[{params}] {ins}")
        lines.append("out " + " ".join(_atom_token(v, names) for v in self.outvars))
        return lines

    def _binding_order(self) -> dict[int, int]:
        names: dict[int, int] = {}
        for var in self.invars:
            names[var.id] = len(names)
        for var, _value in self.consts:
            names[var.id] = len(names)
        for eqn in self.equations:
            for var in eqn.outputs:
                names[var.id] = len(names)
        return names

    @cached_property
    def fingerprint(self) -> str:
        """SHA-256 over the canonical text of the program content."""
        text = "\n".join(self._canonical_lines(None)).encode("utf-8")
        return hashlib.sha256(text).hexdigest()

    def structurally_equal(self, other: "Program") -> bool:
        """Equality up to a consistent renaming of variables."""
        if len(self.equations) != len(other.equations):
            return False
        return self._canonical_lines(self._binding_order()) == other._canonical_lines(other._binding_order())

    def pretty(self) -> str:
        return "\n".join(self._canonical_lines(None))


class ProgramBuilder:
    """Incremental program construction with dense variable allocation."""

    def __init__(self) -> None:
        self._next_id = 0
        self._invars: list[Var] = []
        self._consts: list[tuple[Var, Value]] = []
        self._equations: list[Equation] = []

    def _fresh(self) -> Var:
        var = Var(self._next_id)
        self._next_id += 1
        return var

    def input(self) -> Var:
        var = self._fresh()
        self._invars.append(var)
        return var

    def const(self, value: object) -> Var:
        var = self._fresh()
        self._consts.append((var, as_value(value)))
        return var

    @staticmethod
    def _atom(value: object) -> Atom:
        if isinstance(value, Var):
            return value
        coerced = as_value(value)
        if not isinstance(coerced, Literal):
            raise ProgramStructureError("tensor operands must be bound with const() before use")
        return coerced

    def emit(self, primitive: Primitive, *inputs: object, params: dict[str, object] | None = None) -> Var:
        out = self._fresh()
        frozen_params = tuple(sorted((params or {}).items()))
        self._equations.append(
            Equation(
                primitive=Primitive(primitive),
                inputs=tuple(self._atom(item) for item in inputs),
                outputs=(out,),
                params=frozen_params,
            )
        )
        return out

    def build(self, *outputs: Var) -> Program:
        return Program(
            invars=tuple(self._invars),
            equations=tuple(self._equations),
            outvars=tuple(outputs),
            consts=tuple(self._consts),
        )


class ProgramSpec(str, Enum):
    ADD2 = "add2"
    SQUARE = "square"
    ADD_ONE = "add_one"
    SIN_X = "sin_x"
    COS_X = "cos_x"
    NEGATE = "negate"
    NEG_MUL = "neg_mul"
    DOT = "dot"
    SUM_OF_SQUARES = "sum_of_squares"


def build_program(spec: ProgramSpec) -> Program:
    """Canonical small programs used by tests, examples and benchmarks."""
    spec = ProgramSpec(spec)
    b = ProgramBuilder()
    if spec is ProgramSpec.ADD2:
        x, y = b.input(), b.input()
        return b.build(b.emit(Primitive.ADD, x, y))
    if spec is ProgramSpec.SQUARE:
        x = b.input()
        return b.build(b.emit(Primitive.MUL, x, x))
    if spec is ProgramSpec.ADD_ONE:
        x = b.input()
        return b.build(b.emit(Primitive.ADD, x, 1))
    if spec is ProgramSpec.SIN_X:
        x = b.input()
        return b.build(b.emit(Primitive.SIN, x))
    if spec is ProgramSpec.COS_X:
        x = b.input()
        return b.build(b.emit(Primitive.COS, x))
    if spec is ProgramSpec.NEGATE:
        x = b.input()
        return b.build(b.emit(Primitive.NEG, x))
    if spec is ProgramSpec.NEG_MUL:
        x, y = b.input(), b.input()
        return b.build(b.emit(Primitive.MUL, b.emit(Primitive.NEG, x), y))
    if spec is ProgramSpec.DOT:
        x, y = b.input(), b.input()
        return b.build(b.emit(Primitive.DOT, x, y))
    x = b.input()
    return b.build(b.emit(Primitive.REDUCE_SUM, b.emit(Primitive.MUL, x, x)))
