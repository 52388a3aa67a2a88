from __future__ import annotations

import importlib.util
import unittest


JAX_AVAILABLE = importlib.util.find_spec("jax") is not None


@unittest.skipUnless(JAX_AVAILABLE, "jax is required for transform API tests")
class TransformOracleTests(unittest.TestCase):
    def test_jit_matches_direct_evaluation(self) -> None:
        from stagejax import DEFAULT_INTERPRETER, ProgramSpec, build_program, jit, scalar_f64, scalar_i64

        cases = [
            (ProgramSpec.ADD2, [scalar_i64(7), scalar_i64(13)]),
            (ProgramSpec.SQUARE, [scalar_f64(2.5)]),
            (ProgramSpec.ADD_ONE, [scalar_i64(99)]),
        ]
        for spec, args in cases:
            with self.subTest(spec=spec.value):
                program = build_program(spec)
                self.assertEqual(jit(program).call(args), DEFAULT_INTERPRETER.evaluate(program, args))

    def test_grad_matches_jax_grad(self) -> None:
        import jax
        import jax.numpy as jnp

        from stagejax import ProgramSpec, build_program, grad, scalar_f64

        oracles = {
            ProgramSpec.SQUARE: lambda x: x * x,
            ProgramSpec.SIN_X: jnp.sin,
            ProgramSpec.COS_X: jnp.cos,
            ProgramSpec.NEGATE: jnp.negative,
            ProgramSpec.ADD_ONE: lambda x: x + 1.0,
        }
        points = [0.0, 1.0, -1.0, 2.71, -7.5, 100.0, -0.001]
        for spec, fn in oracles.items():
            reference = jax.grad(fn)
            transformed = grad(build_program(spec))
            for x in points:
                with self.subTest(spec=spec.value, x=x):
                    (got,) = transformed.call([scalar_f64(x)])
                    self.assertAlmostEqual(got.value, float(reference(jnp.float64(x))), places=9)

    def test_grad_with_respect_to_second_argument(self) -> None:
        from stagejax import ProgramSpec, build_program, grad, scalar_f64

        (dy,) = grad(build_program(ProgramSpec.NEG_MUL), argnum=1).call([scalar_f64(5.0), scalar_f64(3.0)])
        (dx,) = grad(build_program(ProgramSpec.NEG_MUL), argnum=0).call([scalar_f64(5.0), scalar_f64(3.0)])
        self.assertAlmostEqual(dy.value, -5.0)
        self.assertAlmostEqual(dx.value, -3.0)

    def test_grad_accepts_integer_input(self) -> None:
        from stagejax import DType, ProgramSpec, build_program, grad

        out = grad(build_program(ProgramSpec.SQUARE))(3)
        self.assertEqual(out.dtype, DType.F64)
        self.assertAlmostEqual(out.value, 6.0)

    def test_grad_through_tensor_constants(self) -> None:
        import jax
        import jax.numpy as jnp

        from stagejax import Primitive, ProgramBuilder, grad

        weights = [[1.0, -2.0], [0.5, 3.0]]
        b = ProgramBuilder()
        x = b.input()
        w = b.const(weights)
        v = b.const([0.25, -1.0])
        scaled = b.emit(Primitive.MUL, x, v)
        hidden = b.emit(Primitive.SIN, b.emit(Primitive.DOT, w, scaled))
        out = b.emit(Primitive.REDUCE_SUM, b.emit(Primitive.EXP, hidden))
        program = b.build(b.emit(Primitive.DIV, out, b.emit(Primitive.ADD, x, 4.0)))

        def reference(x):
            h = jnp.sin(jnp.dot(jnp.asarray(weights), x * jnp.asarray([0.25, -1.0])))
            return jnp.sum(jnp.exp(h)) / (x + 4.0)

        for x in (0.3, -1.2, 2.0):
            with self.subTest(x=x):
                got = grad(program)(x)
                self.assertAlmostEqual(got.value, float(jax.grad(reference)(jnp.float64(x))), places=9)

    def test_vmap_distributes_over_the_batch(self) -> None:
        from stagejax import DEFAULT_INTERPRETER, ProgramSpec, build_program, scalar_i64, vector_i64, vmap

        program = build_program(ProgramSpec.ADD_ONE)
        batch = [10, 20, 30, 40, 50, 60, 70, 80, 90, 100]
        (out,) = vmap(program).call([vector_i64(batch)])
        self.assertEqual(out.shape, (len(batch),))
        for i, x in enumerate(batch):
            (expected,) = DEFAULT_INTERPRETER.evaluate(program, [scalar_i64(x)])
            self.assertEqual(out.elements[i], expected.value)

    def test_jit_of_grad_matches_grad(self) -> None:
        from stagejax import ProgramSpec, build_program, grad, jit, scalar_f64

        program = build_program(ProgramSpec.SQUARE)
        for x in (1.0, -2.0, 0.5, 10.0):
            with self.subTest(x=x):
                (plain,) = grad(program).call([scalar_f64(x)])
                (composed,) = jit(program).compose_grad().call([scalar_f64(x)])
                self.assertAlmostEqual(plain.value, composed.value, places=12)

    def test_value_and_grad_agrees_with_jit_and_grad(self) -> None:
        from stagejax import ProgramSpec, build_program, grad, jit, scalar_f64, value_and_grad

        program = build_program(ProgramSpec.SQUARE)
        for x in (0.0, 1.0, -1.0, 2.71, 10.0, -5.5):
            with self.subTest(x=x):
                value, gradient = value_and_grad(program).call([scalar_f64(x)])
                self.assertEqual(value, jit(program).call([scalar_f64(x)]))
                (standalone,) = grad(program).call([scalar_f64(x)])
                self.assertAlmostEqual(gradient[0].value, standalone.value, places=12)

    def test_call_accepts_python_values(self) -> None:
        from stagejax import ProgramSpec, build_program, jit, scalar_i64, value_and_grad, vector_i64, vmap

        self.assertEqual(jit(build_program(ProgramSpec.ADD2))(3, 4), scalar_i64(7))
        self.assertEqual(vmap(build_program(ProgramSpec.ADD_ONE))([1, 2, 3]), vector_i64([2, 3, 4]))
        value, gradient = value_and_grad(build_program(ProgramSpec.SQUARE))(3.0)
        self.assertEqual(value.value, 9.0)
        self.assertAlmostEqual(gradient.value, 6.0)


@unittest.skipUnless(JAX_AVAILABLE, "jax is required for transform API tests")
class TransformAdversarialTests(unittest.TestCase):
    def test_vector_to_grad(self) -> None:
        from stagejax import ProgramSpec, ScalarRequiredError, build_program, grad, vector_f64

        with self.assertRaises(ScalarRequiredError):
            grad(build_program(ProgramSpec.SQUARE)).call([vector_f64([1.0, 2.0])])

    def test_scalar_to_vmap(self) -> None:
        from stagejax import LeadingDimensionMismatchError, ProgramSpec, build_program, scalar_i64, vmap

        with self.assertRaises(LeadingDimensionMismatchError) as ctx:
            vmap(build_program(ProgramSpec.ADD_ONE)).call([scalar_i64(42)])
        self.assertTrue(str(ctx.exception))

    def test_empty_batch_vmap(self) -> None:
        from stagejax import EmptyBatchError, ProgramSpec, build_program, vector_i64, vmap

        with self.assertRaises(EmptyBatchError):
            vmap(build_program(ProgramSpec.ADD_ONE)).call([vector_i64([])])

    def test_vmap_without_arguments(self) -> None:
        from stagejax import EmptyArgumentsError, ProgramSpec, build_program, vmap

        with self.assertRaises(EmptyArgumentsError):
            vmap(build_program(ProgramSpec.ADD_ONE)).call([])

    def test_double_jit_is_transparent(self) -> None:
        from stagejax import ProgramSpec, Transform, build_program, compose, scalar_i64

        out = compose(build_program(ProgramSpec.ADD2), [Transform.JIT, Transform.JIT]).call([scalar_i64(3), scalar_i64(4)])
        self.assertEqual(out, (scalar_i64(7),))

    def test_grad_without_arguments(self) -> None:
        from stagejax import EmptyArgumentsError, ProgramSpec, build_program, grad

        with self.assertRaises(EmptyArgumentsError) as ctx:
            grad(build_program(ProgramSpec.SQUARE)).call([])
        self.assertTrue(str(ctx.exception))

    def test_grad_of_vmap_with_vector_input(self) -> None:
        from stagejax import ProgramSpec, ScalarRequiredError, Transform, build_program, compose, vector_f64

        with self.assertRaises(ScalarRequiredError):
            compose(build_program(ProgramSpec.SQUARE), [Transform.GRAD, Transform.VMAP]).call(
                [vector_f64([1.0, 2.0, 3.0])]
            )

    def test_vmap_mismatched_dims(self) -> None:
        from stagejax import LeadingDimensionMismatchError, ProgramSpec, build_program, vector_i64, vmap

        with self.assertRaises(LeadingDimensionMismatchError):
            vmap(build_program(ProgramSpec.ADD2)).call([vector_i64([1, 2, 3]), vector_i64([1, 2])])

    def test_duplicate_grad_in_one_stack(self) -> None:
        from stagejax import CompositionInvalidError, ProgramSpec, build_program, grad, scalar_f64

        with self.assertRaises(CompositionInvalidError):
            grad(build_program(ProgramSpec.SQUARE)).compose_grad().call([scalar_f64(1.0)])


@unittest.skipUnless(JAX_AVAILABLE, "jax is required for transform API tests")
class TransformNestingTests(unittest.TestCase):
    def test_grad_of_grad_falls_back_to_finite_differences(self) -> None:
        from stagejax import ProgramSpec, build_program, grad, scalar_f64

        second = grad(grad(build_program(ProgramSpec.SQUARE)))
        (out,) = second.call([scalar_f64(3.0)])
        self.assertAlmostEqual(out.value, 2.0, delta=5e-2)

    def test_grad_of_grad_of_sin(self) -> None:
        import math

        from stagejax import ProgramSpec, build_program, grad

        out = grad(grad(build_program(ProgramSpec.SIN_X)))(0.7)
        self.assertAlmostEqual(out.value, -math.sin(0.7), delta=5e-2)

    def test_finite_difference_checks_output_before_stepping(self) -> None:
        from stagejax import ScalarRequiredError, finite_difference_grad, scalar_f64, vector_f64

        points: list[float] = []

        def vector_valued(args):
            points.append(args[0].value)
            return (vector_f64([args[0].value, args[0].value]),)

        with self.assertRaises(ScalarRequiredError) as ctx:
            finite_difference_grad(vector_valued, [scalar_f64(2.0)])
        self.assertEqual(points, [2.0])
        self.assertEqual(ctx.exception.shape, (2,))

    def test_nested_grad_checks_program_output_shape(self) -> None:
        from stagejax import Primitive, ProgramBuilder, ScalarRequiredError, grad, scalar_f64
        from stagejax.dispatch import _GRAD_DEPTH

        b = ProgramBuilder()
        x = b.input()
        program = b.build(b.emit(Primitive.SIN, x), x)
        token = _GRAD_DEPTH.set(1)
        try:
            with self.assertRaises(ScalarRequiredError) as ctx:
                grad(program).call([scalar_f64(0.5)])
        finally:
            _GRAD_DEPTH.reset(token)
        self.assertEqual(ctx.exception.shape, (2,))

    def test_vmap_of_transformed_callable(self) -> None:
        from stagejax import ProgramSpec, build_program, grad, vector_f64, vmap

        (out,) = vmap(grad(build_program(ProgramSpec.SQUARE))).call([vector_f64([1.0, 2.0, 3.0])])
        for got, want in zip(out.elements, (2.0, 4.0, 6.0)):
            self.assertAlmostEqual(got, want, places=12)

    def test_jit_wrapping_a_transformed_callable_is_transparent(self) -> None:
        from stagejax import ProgramSpec, build_program, jit, vmap

        inner = vmap(build_program(ProgramSpec.ADD_ONE))
        self.assertEqual(jit(inner).call([[1, 2]]), inner.call([[1, 2]]))


@unittest.skipUnless(JAX_AVAILABLE, "jax is required for transform API tests")
class TransformBuilderTests(unittest.TestCase):
    def test_builders_extend_the_stack_innermost(self) -> None:
        from stagejax import ProgramSpec, Transform, build_program, jit

        t = jit(build_program(ProgramSpec.SQUARE)).compose_vmap().compose_grad()
        self.assertEqual(t.transforms.kinds(), (Transform.JIT, Transform.VMAP, Transform.GRAD))

    def test_mode_backend_and_options_flow_into_the_key(self) -> None:
        from stagejax import InMemoryResponseCache, ProgramSpec, build_program, jit, scalar_i64

        cache = InMemoryResponseCache()
        base = jit(build_program(ProgramSpec.ADD_ONE)).with_cache(cache)
        keys = {
            base.dispatch([scalar_i64(1)]).cache_key,
            base.with_mode("hardened").dispatch([scalar_i64(1)]).cache_key,
            base.with_backend("gpu").dispatch([scalar_i64(1)]).cache_key,
            base.with_compile_options({"opt_level": 3}).dispatch([scalar_i64(1)]).cache_key,
            base.with_mode("hardened").with_unknown_features("donate").dispatch([scalar_i64(1)]).cache_key,
        }
        self.assertEqual(len(keys), 5)
        self.assertEqual(len(cache), 5)

    def test_strict_mode_rejects_unknown_features_through_the_api(self) -> None:
        from stagejax import ProgramSpec, UnknownFeatureRejectedError, build_program, jit

        with self.assertRaises(UnknownFeatureRejectedError):
            jit(build_program(ProgramSpec.ADD_ONE)).with_unknown_features("donate")(1)

    def test_repeated_call_hits_the_injected_cache(self) -> None:
        from stagejax import InMemoryResponseCache, ProgramSpec, build_program, jit

        cache = InMemoryResponseCache()
        fn = jit(build_program(ProgramSpec.SQUARE)).with_cache(cache)
        self.assertEqual(fn(4.0).value, 16.0)
        self.assertEqual(fn(4.0).value, 16.0)
        stats = cache.stats()
        self.assertEqual((stats["hits"], stats["misses"]), (1, 1))


if __name__ == "__main__":
    unittest.main()
