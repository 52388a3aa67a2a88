from __future__ import annotations

import importlib.util
import random
import unittest


JAX_AVAILABLE = importlib.util.find_spec("jax") is not None


def _random_program(rng: random.Random, n_inputs: int, n_eqns: int):
    from stagejax import Primitive, ProgramBuilder, scalar_f64

    b = ProgramBuilder()
    pool = [b.input() for _ in range(n_inputs)]
    unary = (Primitive.NEG, Primitive.SIN, Primitive.COS)
    binary = (Primitive.ADD, Primitive.SUB)
    for _ in range(n_eqns):
        roll = rng.random()
        if roll < 0.3:
            pool.append(b.emit(rng.choice(unary), rng.choice(pool)))
        elif roll < 0.5:
            # Scaling by a bounded literal keeps values finite.
            pool.append(b.emit(Primitive.MUL, rng.choice(pool), scalar_f64(rng.uniform(-1.5, 1.5))))
        else:
            pool.append(b.emit(rng.choice(binary), rng.choice(pool), rng.choice(pool)))
    produced = pool[n_inputs:]
    return b.build(*rng.sample(produced, min(len(produced), rng.randint(1, 3))))


@unittest.skipUnless(JAX_AVAILABLE, "jax is required for staging tests")
class PartialEvaluationTests(unittest.TestCase):
    def test_staging_roundtrip_on_random_programs(self) -> None:
        from stagejax import DEFAULT_INTERPRETER, partial_eval, pvals_for, scalar_f64

        rng = random.Random(20240611)
        for trial in range(40):
            n_inputs = rng.randint(1, 4)
            program = _random_program(rng, n_inputs, rng.randint(1, 25))
            args = [scalar_f64(rng.uniform(-3.0, 3.0)) for _ in range(n_inputs)]
            known = [idx for idx in range(n_inputs) if rng.random() < 0.5]
            with self.subTest(trial=trial, known=known):
                expected = DEFAULT_INTERPRETER.evaluate(program, args)
                result = partial_eval(program, pvals_for(args, known))
                staged = DEFAULT_INTERPRETER.evaluate(result.residual, result.unknown_subset(args, program))
                self.assertEqual(len(staged), len(expected))
                for got, want in zip(staged, expected):
                    self.assertAlmostEqual(got.value, want.value, places=9)
                self.assertEqual(
                    len(result.known.equations) + len(result.residual.equations),
                    len(program.equations),
                )

    def test_residual_ids_are_disjoint_from_known_ids(self) -> None:
        from stagejax import partial_eval, pvals_for, scalar_f64

        rng = random.Random(7)
        for _ in range(20):
            program = _random_program(rng, 3, 15)
            args = [scalar_f64(1.0), scalar_f64(2.0), scalar_f64(3.0)]
            result = partial_eval(program, pvals_for(args, [1]))
            if result.residual is program:
                continue
            floor = result.known.max_var_id
            ids = [var.id for var in result.residual.invars]
            ids += [var.id for var, _value in result.residual.consts]
            ids += [var.id for eqn in result.residual.equations for var in eqn.outputs]
            self.assertTrue(all(i > floor for i in ids))
            self.assertEqual(len(ids), len(set(ids)))
            self.assertEqual(
                sorted(result.residual_inputs.values()),
                sorted(var.id for var in result.residual.invars),
            )

    def test_all_known_equals_full_evaluation(self) -> None:
        from stagejax import DEFAULT_INTERPRETER, ProgramSpec, build_program, partial_eval, pvals_for, scalar_i64

        program = build_program(ProgramSpec.NEG_MUL)
        args = [scalar_i64(4), scalar_i64(6)]
        result = partial_eval(program, pvals_for(args, [0, 1]))
        self.assertEqual(result.residual.equations, ())
        self.assertEqual(result.residual.invars, ())
        self.assertEqual(result.out_unknowns, (False,))
        self.assertEqual(DEFAULT_INTERPRETER.evaluate(result.residual, ()), DEFAULT_INTERPRETER.evaluate(program, args))
        self.assertEqual(DEFAULT_INTERPRETER.evaluate(result.known, args), DEFAULT_INTERPRETER.evaluate(program, args))

    def test_known_program_keeps_repeated_outputs(self) -> None:
        from stagejax import DEFAULT_INTERPRETER, Primitive, ProgramBuilder, partial_eval, pvals_for, scalar_i64

        b = ProgramBuilder()
        x = b.input()
        n = b.emit(Primitive.NEG, x)
        program = b.build(n, x, n)
        args = [scalar_i64(5)]
        full = DEFAULT_INTERPRETER.evaluate(program, args)
        self.assertEqual(full, (scalar_i64(-5), scalar_i64(5), scalar_i64(-5)))

        result = partial_eval(program, pvals_for(args, [0]))
        self.assertEqual(result.out_unknowns, (False, False, False))
        self.assertEqual(DEFAULT_INTERPRETER.evaluate(result.known, args), full)
        self.assertEqual(DEFAULT_INTERPRETER.evaluate(result.residual, ()), full)

    def test_all_unknown_is_identity(self) -> None:
        from stagejax import ProgramSpec, build_program, partial_eval, pvals_for, scalar_i64

        for spec in ProgramSpec:
            with self.subTest(spec=spec.value):
                program = build_program(spec)
                args = [scalar_i64(1)] * len(program.invars)
                result = partial_eval(program, pvals_for(args, []))
                self.assertTrue(result.residual.structurally_equal(program))
                self.assertEqual(result.known.equations, ())
                self.assertTrue(all(result.out_unknowns))

    def test_negation_with_known_input_folds_completely(self) -> None:
        from stagejax import DEFAULT_INTERPRETER, ProgramSpec, build_program, partial_eval, pvals_for, scalar_i64

        program = build_program(ProgramSpec.NEGATE)
        result = partial_eval(program, pvals_for([scalar_i64(5)], [0]))
        self.assertEqual(result.residual.equations, ())
        out_id = program.outvars[0].id
        self.assertEqual(result.known_values[out_id], scalar_i64(-5))
        self.assertEqual(DEFAULT_INTERPRETER.evaluate(result.residual, ()), (scalar_i64(-5),))

    def test_mixed_split_folds_negation_and_defers_multiply(self) -> None:
        from stagejax import (
            DEFAULT_INTERPRETER,
            Primitive,
            ProgramSpec,
            build_program,
            partial_eval,
            pvals_for,
            scalar_i64,
            staged_evaluate,
        )

        program = build_program(ProgramSpec.NEG_MUL)
        args = [scalar_i64(5), scalar_i64(3)]
        result = partial_eval(program, pvals_for(args, [0]))

        self.assertEqual([eqn.primitive for eqn in result.known.equations], [Primitive.NEG])
        self.assertEqual([eqn.primitive for eqn in result.residual.equations], [Primitive.MUL])
        self.assertEqual([value for _var, value in result.residual.consts], [scalar_i64(-5)])
        self.assertEqual(len(result.residual.invars), 1)

        out = DEFAULT_INTERPRETER.evaluate(result.residual, (scalar_i64(3),))
        self.assertEqual(out, (scalar_i64(-15),))
        self.assertEqual(staged_evaluate(program, args, [0]), (scalar_i64(-15),))

    def test_literal_only_equations_fold(self) -> None:
        from stagejax import Primitive, ProgramBuilder, partial_eval, pvals_for, scalar_f64

        b = ProgramBuilder()
        x, y = b.input(), b.input()
        c = b.emit(Primitive.ADD, 1.0, 2.0)
        program = b.build(b.emit(Primitive.ADD, b.emit(Primitive.MUL, x, c), y))

        result = partial_eval(program, pvals_for([scalar_f64(2.0), scalar_f64(0.5)], [1]))
        self.assertEqual([eqn.primitive for eqn in result.known.equations], [Primitive.ADD])
        self.assertEqual([eqn.primitive for eqn in result.residual.equations], [Primitive.MUL, Primitive.ADD])
        self.assertIn(scalar_f64(3.0), [value for _var, value in result.residual.consts])

    def test_unknown_input_passed_straight_to_output(self) -> None:
        from stagejax import DEFAULT_INTERPRETER, Primitive, ProgramBuilder, partial_eval, pvals_for, scalar_i64

        b = ProgramBuilder()
        x, y = b.input(), b.input()
        program = b.build(b.emit(Primitive.NEG, x), y)
        args = [scalar_i64(2), scalar_i64(9)]
        result = partial_eval(program, pvals_for(args, [0]))
        self.assertEqual(result.out_unknowns, (False, True))
        out = DEFAULT_INTERPRETER.evaluate(result.residual, result.unknown_subset(args, program))
        self.assertEqual(out, (scalar_i64(-2), scalar_i64(9)))

    def test_tensor_partial_values(self) -> None:
        from stagejax import (
            DEFAULT_INTERPRETER,
            ProgramSpec,
            build_program,
            partial_eval,
            pvals_for,
            scalar_f64,
            vector_f64,
        )

        program = build_program(ProgramSpec.DOT)
        args = [vector_f64([1.0, 2.0]), vector_f64([3.0, 4.0])]
        result = partial_eval(program, pvals_for(args, [0]))
        out = DEFAULT_INTERPRETER.evaluate(result.residual, result.unknown_subset(args, program))
        self.assertEqual(out, (scalar_f64(11.0),))

    def test_partial_value_count_must_match(self) -> None:
        from stagejax import EvaluationError, Known, ProgramSpec, build_program, partial_eval, scalar_i64

        with self.assertRaises(EvaluationError):
            partial_eval(build_program(ProgramSpec.ADD2), [Known(scalar_i64(1))])

    def test_residual_closure_check_reports_dangling_reads(self) -> None:
        from stagejax import Equation, Primitive, StagingInvariantError, Var
        from stagejax.staging import _check_residual_closed

        dangling = [Equation(Primitive.NEG, (Var(9),), (Var(5),))]
        with self.assertRaises(StagingInvariantError):
            _check_residual_closed((Var(4),), (), dangling, (Var(5),), floor=3)
        with self.assertRaises(StagingInvariantError):
            _check_residual_closed((Var(2),), (), [], (Var(2),), floor=3)


@unittest.skipUnless(JAX_AVAILABLE, "jax is required for staging tests")
class AbstractStatusTableTests(unittest.TestCase):
    def test_tracks_known_and_unknown_status(self) -> None:
        from stagejax import AbstractStatusTable, Aval, DType, Known, Unknown, Var, scalar_i64

        table = AbstractStatusTable(3)
        self.assertEqual(len(table), 3)
        table.set_known(Var(0), scalar_i64(4))
        table.set_unknown(Var(1), Aval((2,), DType.F64))

        self.assertTrue(table.is_known(Var(0)))
        self.assertFalse(table.is_known(Var(1)))
        self.assertTrue(table.is_known(scalar_i64(1)))
        self.assertEqual(table.status(Var(0)), Known(scalar_i64(4)))
        self.assertEqual(table.status(Var(1)), Unknown(Aval((2,), DType.F64)))
        self.assertEqual(table.aval(Var(0)), Aval((), DType.I64))

    def test_reading_unknown_value_is_an_invariant_error(self) -> None:
        from stagejax import AbstractStatusTable, Aval, DType, StagingInvariantError, Var

        table = AbstractStatusTable(1)
        table.set_unknown(Var(0), Aval((), DType.F64))
        with self.assertRaises(StagingInvariantError):
            table.value(Var(0))


if __name__ == "__main__":
    unittest.main()
