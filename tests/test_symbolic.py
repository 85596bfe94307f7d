"""Symbolic dimension expression tests.

Tests cover:
1. Canonical forms: identities, like-term collection, ordering
2. min/max domination and floor-div/mod splitting
3. Equality of semantically equal expressions, including floor-div and mod
   identities checked over a sweep of bindings
4. substitute / evaluate / UnresolvedSymbol
5. JSON encoding and shape helpers
"""

import itertools

import pytest
import sympy as sp

from tensorplan.errors import UnresolvedSymbol
from tensorplan.symbolic import (
    Const,
    FloorDiv,
    Var,
    as_shape,
    equals,
    evaluate_shape,
    expr_from_json,
    format_shape,
    maximum,
    minimum,
    numel,
    shapes_equal,
    simplify,
    sym,
)

n = Var("n")
m = Var("m")


# =============================================================================
# 1. Canonical forms
# =============================================================================


class TestCanonicalForm:
    def test_identities(self):
        assert n + 0 == n
        assert n * 1 == n
        assert n * 0 == Const(0)
        assert n // 1 == n
        assert n % 1 == Const(0)
        assert minimum(n, n) == n
        assert maximum(n, n) == n

    def test_literals_fold(self):
        assert Const(3) * 4 + 2 == Const(14)
        assert Const(17) // 5 == Const(3)
        assert Const(17) % 5 == Const(2)
        assert Const(-7) // 2 == Const(-4)
        assert minimum(3, 9, 4) == Const(3)

    def test_results_keep_their_kind(self):
        assert isinstance(n - n + 3, Const)
        assert isinstance(2 * n - n, Var)
        assert (n - n + 3).value == 3
        assert (2 * n - n).name == "n"

    def test_like_terms_collected(self):
        expr = n + n + 2 * n - m + m
        assert expr == 4 * n
        assert str(expr) == "4*n"

    def test_constant_term_renders_last(self):
        assert str(2 + n * 4) == "4*n + 2"

    def test_commutative_order_is_irrelevant(self):
        assert n * m + 1 == 1 + m * n
        assert n + m == m + n

    def test_distribution(self):
        assert (n + 1) * (n - 1) == n * n - 1

    def test_simplify_is_idempotent(self):
        exprs = [
            (n + 3) // 4,
            minimum(n + 2, m) * 3,
            maximum(n, n + 1, m) % 8,
            (n * m + 2 * n) // n,
        ]
        for e in exprs:
            once = e.simplify()
            assert once.simplify() == once
            assert once == e

    def test_nested_sums_flatten(self):
        assert (n + 1) + (m + 2) == n + m + 3


# =============================================================================
# 2. min / max / floordiv / mod
# =============================================================================


class TestExtremaAndDivision:
    def test_min_drops_dominated_argument(self):
        assert minimum(n, n + 3) == n
        assert maximum(n, n + 3) == n + 3

    def test_min_keeps_incomparable_arguments(self):
        expr = minimum(n, m)
        assert isinstance(expr.sympy, sp.Min)
        assert expr.free_symbols() == frozenset({"n", "m"})
        assert expr.evaluate({"n": 5, "m": 2}) == 2

    def test_nested_min_flattens(self):
        assert minimum(minimum(n, 4), m) == minimum(4, n, m)

    def test_floordiv_splits_multiples(self):
        assert (4 * n + 2) // 4 == n
        assert (8 * n + 12) // 4 == 2 * n + 3

    def test_mod_drops_multiples(self):
        assert (4 * n + 6) % 4 == Const(2)
        assert (4 * n) % 4 == Const(0)

    def test_floordiv_keeps_indivisible_remainder(self):
        expr = (n + 3) // 4
        assert isinstance(expr.sympy, FloorDiv)
        assert str(expr) == "((n + 3) // 4)"

    def test_common_factor_divides_out(self):
        assert (2 * n) // 4 == n // 2
        assert (6 * n + 3) // 9 == (2 * n + 1) // 3

    def test_mod_is_written_with_floordiv(self):
        expr = n % 4
        assert expr == n - 4 * (n // 4)
        assert expr.evaluate({"n": -5}) == 3

    def test_symbolic_divisor_is_an_atom(self):
        expr = n // m
        assert isinstance(expr.sympy, FloorDiv)
        assert Const(0) // m == Const(0)
        assert (n % m).evaluate({"n": 7, "m": -3}) == 7 % -3

    def test_literal_zero_divisor_raises(self):
        with pytest.raises(ZeroDivisionError):
            n // 0
        with pytest.raises(ZeroDivisionError):
            n % 0


# =============================================================================
# 3. Equality
# =============================================================================


SWEEP = range(-20, 21)


class TestEquality:
    def test_equal_polynomials_are_structurally_identical(self):
        pairs = [
            ((n + 1) * (n + 1), n * n + 2 * n + 1),
            ((n + m) * 2 - m, 2 * n + m),
            (n * 4 // 2, 2 * n),
            (minimum(n + 1, n + 5) * 2, 2 * n + 2),
        ]
        for a, b in pairs:
            assert a.simplify() == b.simplify()
            assert equals(a, b)

    @pytest.mark.parametrize(
        "lhs, rhs",
        [
            ((n % 4) % 4, n % 4),
            ((n % 8) % 2, n % 2),
            ((n // 2) // 3, n // 6),
            ((n + 1) // 2 + n // 2, n),
            (4 * (n // 4) + n % 4, n),
            ((n % 4) // 4, Const(0)),
            ((n % 4 + 8) // 8, Const(1)),
            ((2 * n + 2) // 4, (n + 1) // 2),
            ((n + 5) // 2, n + 2 - n // 2),
            ((3 * n) // 2, n + n // 2),
            (n // -2, (-n) // 2),
            (n % -3, -((-n) % 3)),
        ],
    )
    def test_division_identities_share_one_canonical_form(self, lhs, rhs):
        for value in SWEEP:
            assert lhs.evaluate({"n": value}) == rhs.evaluate({"n": value})
        assert lhs.simplify() == rhs.simplify()
        assert str(lhs) == str(rhs)

    def test_two_variable_residue(self):
        inner = (n + m) % 3
        assert inner % 3 == inner
        assert inner // 3 == Const(0)
        for nv, mv in itertools.product(range(-6, 7), range(0, 5)):
            assert (inner % 3).evaluate({"n": nv, "m": mv}) == (nv + mv) % 3

    def test_substitution_agrees_with_canonical_form(self):
        a = (n + 2) * (m + 3)
        b = n * m + 3 * n + 2 * m + 6
        for nv, mv in itertools.product(range(-3, 4), range(0, 5)):
            assert a.evaluate({"n": nv, "m": mv}) == b.evaluate({"n": nv, "m": mv})

    def test_division_rewrites_match_python(self):
        exprs = [
            (n + 3) // 4,
            (2 * n + 1) % 6,
            ((n // 3) + 1) // 5,
            (5 * n - 2) // -3,
            ((n % 4) + 2) // 4,
        ]
        for expr in exprs:
            for value in SWEEP:
                expected = eval(str(expr), {}, {"n": value})
                assert expr.evaluate({"n": value}) == expected

    def test_unequal_expressions(self):
        assert not equals(n, m)
        assert not equals(n + 1, n)
        assert not equals(minimum(n, m), maximum(n, m))
        assert not equals(n // 2, n // 3)

    def test_hash_matches_canonical_equality(self):
        assert hash(n + m) == hash(m + n)
        assert len({n * 2, n + n}) == 1


# =============================================================================
# 4. Substitution and evaluation
# =============================================================================


class TestSubstitution:
    def test_substitute_ints(self):
        assert (4 * n + 2).substitute({"n": 3}) == Const(14)

    def test_substitute_partial(self):
        expr = (n * m + n).substitute({"m": 2})
        assert expr == 3 * n

    def test_substitute_expression(self):
        expr = (n + 1).substitute({"n": m * 2})
        assert expr == 2 * m + 1

    def test_substitute_recanonicalizes_division(self):
        expr = ((n + m) // 2).substitute({"m": 1})
        assert expr == n - n // 2

    def test_evaluate_floor_semantics(self):
        assert ((n + 3) // 4).evaluate({"n": 5}) == 2
        assert ((n + 3) % 4).evaluate({"n": 6}) == 1
        assert minimum(n, m).evaluate({"n": 5, "m": 2}) == 2

    def test_evaluate_reports_every_unbound_symbol(self):
        with pytest.raises(UnresolvedSymbol) as exc_info:
            (n * m + Var("k")).evaluate({"m": 2})
        assert exc_info.value.symbols == ("k", "n")
        assert "n" in str(exc_info.value)

    def test_free_symbols_and_constants(self):
        assert (n * m + 1).free_symbols() == frozenset({"n", "m"})
        assert Const(5).is_constant
        assert (n - n + 3).is_constant
        assert (n - n + 3).as_int() == 3

    def test_sym_coercion(self):
        assert sym(4) == Const(4)
        assert sym("batch") == Var("batch")
        with pytest.raises(TypeError):
            sym(1.5)
        with pytest.raises(TypeError):
            sym(True)
        with pytest.raises(ValueError):
            Var("not a name")

    def test_operators_accept_ints_on_either_side(self):
        assert 3 - n + n == Const(3)
        assert 12 // Const(4) == Const(3)
        assert -n + n == Const(0)
        assert n != 3


# =============================================================================
# 5. JSON and shape helpers
# =============================================================================


class TestEncodingAndShapes:
    def test_json_roundtrip_preserves_structure(self):
        exprs = [4 * n + 2, minimum(n, m + 1), (n + 3) // 4 * 64, n * n - n % 3]
        for expr in exprs:
            assert expr_from_json(expr.to_json()) == expr

    def test_malformed_json_rejected(self):
        with pytest.raises(ValueError):
            expr_from_json(["sqrt", 4])
        with pytest.raises(ValueError):
            expr_from_json([])

    def test_shape_helpers(self):
        shape = as_shape(["n", 4])
        assert shape == (n, Const(4))
        assert numel(shape) == 4 * n
        assert format_shape(shape) == "[n, 4]"
        assert shapes_equal(shape, as_shape([n + 0, 2 * 2]))
        assert not shapes_equal(shape, as_shape(["n"]))
        assert evaluate_shape(shape, {"n": 3}) == (3, 4)

    def test_simplify_helper(self):
        assert simplify("n") == n
        assert simplify(7) == Const(7)
