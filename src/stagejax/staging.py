"""Partial evaluation, constant folding and dead-code elimination.

`partial_eval` splits a program, given a known/unknown classification of its
declared inputs, into

- a *known* program: every equation whose operands are all known, folded
  immediately through the interpreter, and
- a *residual* program: every remaining equation, renumbered into a fresh
  identifier range and closed over the folded values it still reads (carried
  in its constant pool).

Executing the residual program on the unknown inputs reproduces the outputs of
the original program on the full input vector.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from types import MappingProxyType
from typing import Union

from .errors import EvaluationError, StagingInvariantError
from .interpreter import DEFAULT_INTERPRETER, Interpreter
from .program import Atom, Equation, Program, Var
from .values import Aval, Literal, Value

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Known:
    value: Value

    @property
    def aval(self) -> Aval:
        return Aval.of(self.value)


@dataclass(frozen=True)
class Unknown:
    aval: Aval


PartialValue = Union[Known, Unknown]


class AbstractStatusTable:
    """Per-variable Known/Unknown status, indexed by variable id.

    Storage is a bytearray of flags plus one slot per id, so memory follows
    the number of variables rather than the number of equations.
    """

    __slots__ = ("_known", "_slots")

    def __init__(self, size: int) -> None:
        self._known = bytearray(size)
        self._slots: list[object] = [None] * size

    def __len__(self) -> int:
        return len(self._slots)

    def set_known(self, var: Var, value: Value) -> None:
        self._known[var.id] = 1
        self._slots[var.id] = value

    def set_unknown(self, var: Var, aval: Aval) -> None:
        self._known[var.id] = 0
        self._slots[var.id] = aval

    def is_known(self, atom: Atom) -> bool:
        if isinstance(atom, Literal):
            return True
        return bool(self._known[atom.id])

    def value(self, atom: Atom) -> Value:
        if isinstance(atom, Literal):
            return atom
        if not self._known[atom.id]:
            raise StagingInvariantError(f"{atom!r} is not known")
        return self._slots[atom.id]

    def aval(self, atom: Atom) -> Aval:
        if isinstance(atom, Literal):
            return Aval.of(atom)
        slot = self._slots[atom.id]
        if self._known[atom.id]:
            return Aval.of(slot)
        return slot

    def status(self, atom: Atom) -> PartialValue:
        if self.is_known(atom):
            return Known(self.value(atom))
        return Unknown(self.aval(atom))


@dataclass(frozen=True)
class PartialEvalResult:
    known: Program
    residual: Program
    # original unknown input id -> residual input id
    residual_inputs: Mapping[int, int]
    # original variable id -> folded value
    known_values: Mapping[int, Value]
    out_unknowns: tuple[bool, ...]

    def unknown_subset(self, args: Sequence[Value], program: Program) -> tuple[Value, ...]:
        """Pick the arguments the residual program consumes, in residual order."""
        by_id = {var.id: arg for var, arg in zip(program.invars, args, strict=True)}
        return tuple(by_id[orig] for orig in self.residual_inputs)


def pvals_for(args: Sequence[Value], known_positions: Iterable[int]) -> tuple[PartialValue, ...]:
    """Partial values marking `known_positions` known and the rest unknown."""
    known = set(known_positions)
    return tuple(Known(arg) if idx in known else Unknown(Aval.of(arg)) for idx, arg in enumerate(args))


def known_mask(pvals: Sequence[PartialValue]) -> tuple[bool, ...]:
    return tuple(isinstance(pval, Known) for pval in pvals)


def _check_pvals(program: Program, in_pvals: Sequence[PartialValue]) -> None:
    if len(in_pvals) != len(program.invars):
        raise EvaluationError(f"Expected {len(program.invars)} partial values, got {len(in_pvals)}")
    for idx, pval in enumerate(in_pvals):
        if not isinstance(pval, (Known, Unknown)):
            raise EvaluationError(f"partial value {idx} must be Known or Unknown, got {type(pval).__name__}")


def _all_unknown(program: Program) -> PartialEvalResult:
    known = Program(invars=(), equations=(), outvars=())
    return PartialEvalResult(
        known=known,
        residual=program,
        residual_inputs=MappingProxyType({var.id: var.id for var in program.invars}),
        known_values=MappingProxyType({}),
        out_unknowns=tuple(True for _ in program.outvars),
    )


def partial_eval(
    program: Program,
    in_pvals: Sequence[PartialValue],
    *,
    interpreter: Interpreter | None = None,
) -> PartialEvalResult:
    """Split `program` into a folded known part and a deferred residual part."""
    _check_pvals(program, in_pvals)
    interp = interpreter or DEFAULT_INTERPRETER

    if program.invars and not any(isinstance(p, Known) for p in in_pvals):
        logger.debug(f"partial_eval: all {len(program.invars)} input(s) unknown, residual is the original program")
        return _all_unknown(program)

    table = AbstractStatusTable(program.num_vars)
    for var, pval in zip(program.invars, in_pvals, strict=True):
        if isinstance(pval, Known):
            table.set_known(var, pval.value)
        else:
            table.set_unknown(var, pval.aval)
    for var, value in program.consts:
        table.set_known(var, value)

    known_eqns: list[Equation] = []
    residual_eqns: list[Equation] = []
    for eqn in program.equations:
        if all(table.is_known(atom) for atom in eqn.inputs):
            outs = interp.apply(eqn, [table.value(atom) for atom in eqn.inputs])
            for var, value in zip(eqn.outputs, outs, strict=True):
                table.set_known(var, value)
            known_eqns.append(eqn)
        else:
            # Mixed equations are deferred whole, never partially folded.
            avals = interp.abstract_apply(eqn, [table.aval(atom) for atom in eqn.inputs])
            for var, aval in zip(eqn.outputs, avals, strict=True):
                table.set_unknown(var, aval)
            residual_eqns.append(eqn)

    known_inputs = tuple(var for var, pval in zip(program.invars, in_pvals, strict=True) if isinstance(pval, Known))
    unknown_inputs = tuple(var for var, pval in zip(program.invars, in_pvals, strict=True) if isinstance(pval, Unknown))

    # Known variables the residual side reads: residual operands and known outputs.
    residual_reads: list[Var] = []
    seen = bytearray(program.num_vars)

    def note_read(var: Var) -> None:
        if table.is_known(var) and not seen[var.id]:
            seen[var.id] = 1
            residual_reads.append(var)

    for eqn in residual_eqns:
        for atom in eqn.inputs:
            if isinstance(atom, Var):
                note_read(atom)
    for var in program.outvars:
        note_read(var)

    # Fully folded: the known program reproduces every declared output, duplicates included.
    fully_folded = not residual_eqns and all(table.is_known(var) for var in program.outvars)
    known = Program(
        invars=known_inputs,
        equations=tuple(known_eqns),
        outvars=program.outvars if fully_folded else tuple(residual_reads),
        consts=program.consts,
    )

    residual, residual_inputs = _build_residual(
        program,
        known,
        table,
        unknown_inputs=unknown_inputs,
        residual_reads=residual_reads,
        residual_eqns=residual_eqns,
    )

    known_values = {}
    for var in program.invars:
        if table.is_known(var):
            known_values[var.id] = table.value(var)
    for var, value in program.consts:
        known_values[var.id] = value
    for eqn in known_eqns:
        for var in eqn.outputs:
            known_values[var.id] = table.value(var)

    logger.debug(
        f"partial_eval: folded {len(known_eqns)} equation(s), deferred {len(residual_eqns)}, "
        f"{len(residual.consts)} folded value(s) carried into the residual"
    )
    return PartialEvalResult(
        known=known,
        residual=residual,
        residual_inputs=MappingProxyType(residual_inputs),
        known_values=MappingProxyType(known_values),
        out_unknowns=tuple(not table.is_known(var) for var in program.outvars),
    )


def _build_residual(
    program: Program,
    known: Program,
    table: AbstractStatusTable,
    *,
    unknown_inputs: tuple[Var, ...],
    residual_reads: list[Var],
    residual_eqns: list[Equation],
) -> tuple[Program, dict[int, int]]:
    # old id -> new id, built once; new ids start past every known id.
    renumber: list[int] = [-1] * program.num_vars
    next_id = known.max_var_id + 1

    def fresh(var: Var) -> Var:
        nonlocal next_id
        if renumber[var.id] < 0:
            renumber[var.id] = next_id
            next_id += 1
        return Var(renumber[var.id])

    def remap(atom: Atom) -> Atom:
        if isinstance(atom, Literal):
            return atom
        if renumber[atom.id] < 0:
            raise StagingInvariantError(f"residual reads {atom!r} before it is bound")
        return Var(renumber[atom.id])

    new_inputs = tuple(fresh(var) for var in unknown_inputs)
    new_consts = tuple((fresh(var), table.value(var)) for var in residual_reads)
    new_eqns: list[Equation] = []
    for eqn in residual_eqns:
        inputs = tuple(remap(atom) for atom in eqn.inputs)
        outputs = tuple(fresh(var) for var in eqn.outputs)
        new_eqns.append(Equation(primitive=eqn.primitive, inputs=inputs, outputs=outputs, params=eqn.params))
    new_outvars = tuple(remap(var) for var in program.outvars)

    _check_residual_closed(new_inputs, new_consts, new_eqns, new_outvars, floor=known.max_var_id)
    residual = Program(invars=new_inputs, equations=tuple(new_eqns), outvars=new_outvars, consts=new_consts)
    mapping = {var.id: renumber[var.id] for var in unknown_inputs}
    return residual, mapping


def _check_residual_closed(
    invars: tuple[Var, ...],
    consts: tuple[tuple[Var, Value], ...],
    eqns: Sequence[Equation],
    outvars: tuple[Var, ...],
    *,
    floor: int,
) -> None:
    """Every residual read resolves to a residual input, constant or earlier output."""
    bound: set[int] = set()
    for var in invars:
        bound.add(var.id)
    for var, _value in consts:
        bound.add(var.id)
    for var_id in bound:
        if var_id <= floor:
            raise StagingInvariantError(f"residual id v{var_id} collides with the known id range")
    for idx, eqn in enumerate(eqns):
        for atom in eqn.inputs:
            if isinstance(atom, Var) and atom.id not in bound:
                raise StagingInvariantError(f"residual equation {idx} reads dangling {atom!r}")
        for var in eqn.outputs:
            if var.id <= floor:
                raise StagingInvariantError(f"residual id {var!r} collides with the known id range")
            bound.add(var.id)
    for var in outvars:
        if var.id not in bound:
            raise StagingInvariantError(f"residual output {var!r} is dangling")


def staged_evaluate(
    program: Program,
    args: Sequence[Value],
    known_positions: Iterable[int],
    *,
    interpreter: Interpreter | None = None,
) -> tuple[Value, ...]:
    """Fold the known arguments, then execute the residual on the rest."""
    interp = interpreter or DEFAULT_INTERPRETER
    result = partial_eval(program, pvals_for(args, known_positions), interpreter=interp)
    return interp.evaluate(result.residual, result.unknown_subset(args, program))


def eliminate_dead_code(program: Program) -> Program:
    """Drop equations and constants not transitively needed by the outputs."""
    needed = bytearray(program.num_vars)
    for var in program.outvars:
        needed[var.id] = 1

    kept_reversed: list[Equation] = []
    for eqn in reversed(program.equations):
        if not any(needed[var.id] for var in eqn.outputs):
            continue
        kept_reversed.append(eqn)
        for atom in eqn.inputs:
            if isinstance(atom, Var):
                needed[atom.id] = 1

    consts = tuple((var, value) for var, value in program.consts if needed[var.id])
    if len(kept_reversed) == len(program.equations) and len(consts) == len(program.consts):
        return program

    logger.debug(f"eliminate_dead_code: kept {len(kept_reversed)} of {len(program.equations)} equation(s)")
    return Program(
        invars=program.invars,
        equations=tuple(reversed(kept_reversed)),
        outvars=program.outvars,
        consts=consts,
    )
