"""Symbolic dimension expressions.

An `Expr` wraps a sympy expression over integer literals and integer
dimension symbols. Every `Expr` is kept in canonical form, so structural
equality (`==`, `equals()`) is exact equality for all bindings:

- sums and products are expanded (`sympy.expand`) into a polynomial whose
  terms sympy orders deterministically;
- `min`/`max` are `sympy.Min`/`sympy.Max`, which flatten, deduplicate and
  drop arguments that are dominated by a literal offset;
- `x % k` is rewritten to `x - k*(x // k)`, so floor division is the only
  integer-division atom and `k*(x // k) + x % k` collapses to `x`;
- `FloorDiv` by a literal splits off every term whose coefficient is a
  multiple of the divisor, divides out common factors, merges nested
  divisions (`(x // a) // b == x // (a*b)`), folds residues that stay inside
  one block (`(x % 4) // 4 == 0`) and recombines halves
  (`(x + 1) // 2 == x - x // 2`).
"""

from __future__ import annotations

import functools
import math
import numbers
from typing import Any, Mapping, Union

import sympy as sp
from sympy.printing.precedence import PRECEDENCE

from tensorplan.errors import UnresolvedSymbol

ExprLike = Union["Expr", int, str]

_MAX_REWRITES = 16


# =============================================================================
# sympy functions
# =============================================================================


class FloorDiv(sp.Function):
    """Python floor division `base // divisor` over the integers."""

    nargs = (2,)
    is_integer = True

    def _sympystr(self, printer) -> str:
        base = printer.parenthesize(self.args[0], PRECEDENCE["Mul"], strict=True)
        divisor = printer.parenthesize(self.args[1], PRECEDENCE["Mul"], strict=True)
        return f"({base} // {divisor})"

    @classmethod
    def eval(cls, base, divisor):
        if divisor.is_zero:
            raise ZeroDivisionError(f"dimension expression divides by zero: {base} // 0")
        if base.is_zero:
            return sp.S.Zero
        if not divisor.is_Integer:
            return sp.S.One if base == divisor else None

        k = int(divisor)
        if base.is_Integer:
            return sp.Integer(int(base) // k)
        if k == 1:
            return base
        if k < 0:
            return cls(-base, -k)
        if isinstance(base, FloorDiv) and base.args[1].is_Integer and base.args[1] > 0:
            return cls(base.args[0], int(base.args[1]) * k)

        expanded = sp.expand(base)
        block = _residue_block(expanded, k)
        if block is not None:
            return sp.Integer(block)

        quotient, remainder = _split(expanded, k)
        if remainder.is_Integer:
            return quotient + int(remainder) // k
        g = _common_factor(remainder, k)
        if g > 1:
            return quotient + cls(sp.expand(remainder / g), k // g)
        if k == 2 and remainder.as_coeff_Add()[0] == 1:
            rest = remainder - 1
            return quotient + rest - cls(rest, 2)
        if quotient == 0 and remainder == base:
            return None
        return quotient + cls(remainder, k)


def _split(base: sp.Expr, k: int) -> tuple[sp.Expr, sp.Expr]:
    """Split `base` into (q, r) with base == k*q + r and every integer
    coefficient of r in [0, k)."""
    quotient = []
    remainder = []
    for term in sp.Add.make_args(base):
        coeff, rest = term.as_coeff_Mul()
        if not coeff.is_Integer:
            remainder.append(term)
            continue
        q, r = divmod(int(coeff), k)
        quotient.append(q * rest)
        remainder.append(r * rest)
    return sp.Add(*quotient), sp.Add(*remainder)


def _common_factor(expr: sp.Expr, k: int) -> int:
    coeffs = []
    for term in sp.Add.make_args(expr):
        coeff, _ = term.as_coeff_Mul()
        if not coeff.is_Integer:
            return 1
        coeffs.append(int(coeff))
    return math.gcd(k, *coeffs)


def _residue_block(expr: sp.Expr, k: int) -> int | None:
    """If `expr == y % a + c` and that range lies inside one block of
    `k`, return the block index `expr // k`."""
    coeffs = expr.as_coefficients_dict()
    for atom in expr.atoms(FloorDiv):
        y, a = atom.args
        if not a.is_Integer or a <= 0 or coeffs.get(atom) != -a:
            continue
        c = sp.expand(expr + a * atom - y)
        if not c.is_Integer:
            continue
        low, high = int(c), int(c) + int(a) - 1
        if low // k == high // k:
            return low // k
    return None


def _mod(base: sp.Expr, divisor: sp.Expr) -> sp.Expr:
    return base - divisor * FloorDiv(base, divisor)


def _symbol(name: str) -> sp.Symbol:
    return sp.Symbol(name, integer=True)


@functools.lru_cache(maxsize=8192)
def _canonical(expr: sp.Expr) -> sp.Expr:
    current = expr
    for _ in range(_MAX_REWRITES):
        nxt = sp.expand(current)
        if nxt == current:
            return current
        current = nxt
    raise RuntimeError(f"simplify() did not reach a fixpoint for {expr}")


# =============================================================================
# Expr
# =============================================================================


class Expr:
    """A dimension expression in canonical form.

    Instances are built from `Const`, `Var`, `sym()` and the arithmetic
    operators (`+ - * // %`, `minimum`, `maximum`); the underlying sympy
    expression is available as `.sympy`.
    """

    __slots__ = ("_sym",)

    @classmethod
    def from_sympy(cls, value: sp.Expr) -> Expr:
        canon = _canonical(sp.sympify(value))
        if canon.is_Integer:
            kind = Const
        elif canon.is_Symbol:
            kind = Var
        else:
            kind = Expr
        obj = object.__new__(kind)
        obj._sym = canon
        return obj

    @property
    def sympy(self) -> sp.Expr:
        return self._sym

    # -------------------------------------------------------------------------
    # Operators
    # -------------------------------------------------------------------------

    def __add__(self, other: ExprLike) -> Expr:
        rhs = _coerce(other)
        return NotImplemented if rhs is None else Expr.from_sympy(self._sym + rhs._sym)

    def __radd__(self, other: ExprLike) -> Expr:
        lhs = _coerce(other)
        return NotImplemented if lhs is None else Expr.from_sympy(lhs._sym + self._sym)

    def __sub__(self, other: ExprLike) -> Expr:
        rhs = _coerce(other)
        return NotImplemented if rhs is None else Expr.from_sympy(self._sym - rhs._sym)

    def __rsub__(self, other: ExprLike) -> Expr:
        lhs = _coerce(other)
        return NotImplemented if lhs is None else Expr.from_sympy(lhs._sym - self._sym)

    def __mul__(self, other: ExprLike) -> Expr:
        rhs = _coerce(other)
        return NotImplemented if rhs is None else Expr.from_sympy(self._sym * rhs._sym)

    def __rmul__(self, other: ExprLike) -> Expr:
        lhs = _coerce(other)
        return NotImplemented if lhs is None else Expr.from_sympy(lhs._sym * self._sym)

    def __neg__(self) -> Expr:
        return Expr.from_sympy(-self._sym)

    def __floordiv__(self, other: ExprLike) -> Expr:
        rhs = _coerce(other)
        return NotImplemented if rhs is None else Expr.from_sympy(FloorDiv(self._sym, rhs._sym))

    def __rfloordiv__(self, other: ExprLike) -> Expr:
        lhs = _coerce(other)
        return NotImplemented if lhs is None else Expr.from_sympy(FloorDiv(lhs._sym, self._sym))

    def __mod__(self, other: ExprLike) -> Expr:
        rhs = _coerce(other)
        return NotImplemented if rhs is None else Expr.from_sympy(_mod(self._sym, rhs._sym))

    def __rmod__(self, other: ExprLike) -> Expr:
        lhs = _coerce(other)
        return NotImplemented if lhs is None else Expr.from_sympy(_mod(lhs._sym, self._sym))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Expr):
            return NotImplemented
        return self._sym == other._sym

    def __hash__(self) -> int:
        return hash(self._sym)

    def __str__(self) -> str:
        return sp.sstr(self._sym)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self})"

    # -------------------------------------------------------------------------
    # Algebra
    # -------------------------------------------------------------------------

    def simplify(self) -> Expr:
        """Return the canonical form. Expressions are canonical on
        construction, so this is the expression itself."""
        return self

    def equals(self, other: ExprLike) -> bool:
        """Exact equality: canonical forms are structurally identical."""
        return self == sym(other)

    def substitute(self, bindings: Mapping[str, ExprLike]) -> Expr:
        """Bind variables to integers or expressions and re-canonicalize."""
        mapping = {_symbol(name): sym(value)._sym for name, value in bindings.items()}
        return Expr.from_sympy(self._sym.xreplace(mapping))

    def evaluate(self, bindings: Mapping[str, ExprLike] | None = None) -> int:
        """Return the concrete value, raising `UnresolvedSymbol` if any
        variable is left unbound."""
        result = self.substitute(bindings or {})
        if not result.is_constant:
            raise UnresolvedSymbol(
                result.free_symbols(),
                f"cannot evaluate {self}: unbound dimension variable(s) "
                + ", ".join(sorted(result.free_symbols())),
            )
        return int(result._sym)

    def free_symbols(self) -> frozenset[str]:
        return frozenset(s.name for s in self._sym.free_symbols)

    @property
    def is_constant(self) -> bool:
        return bool(self._sym.is_Integer)

    def as_int(self) -> int:
        return self.evaluate({})

    def to_json(self) -> Any:
        """Lossless JSON-compatible encoding (see `expr_from_json`)."""
        return _to_json(self._sym)


class Const(Expr):
    """An integer literal."""

    __slots__ = ()

    def __init__(self, value: int) -> None:
        if isinstance(value, bool) or not isinstance(value, numbers.Integral):
            raise TypeError(f"Const expects an integer, got {value!r}")
        self._sym = sp.Integer(int(value))

    @property
    def value(self) -> int:
        return int(self._sym)


class Var(Expr):
    """A named integer dimension variable."""

    __slots__ = ()

    def __init__(self, name: str) -> None:
        if not isinstance(name, str) or not name.isidentifier():
            raise ValueError(f"invalid dimension variable name: {name!r}")
        self._sym = _symbol(name)

    @property
    def name(self) -> str:
        return self._sym.name


# =============================================================================
# Construction helpers
# =============================================================================


def _coerce(value: object) -> Expr | None:
    if isinstance(value, Expr):
        return value
    if isinstance(value, bool):
        return None
    if isinstance(value, numbers.Integral):
        return Const(int(value))
    if isinstance(value, str):
        return Var(value)
    return None


def sym(value: ExprLike) -> Expr:
    """Coerce an int, a variable name or an `Expr` into an `Expr`."""
    result = _coerce(value)
    if result is None:
        raise TypeError(f"cannot convert {value!r} to a dimension expression")
    return result


def minimum(*args: ExprLike) -> Expr:
    if not args:
        raise ValueError("minimum() needs at least one argument")
    return Expr.from_sympy(sp.Min(*(sym(a)._sym for a in args)))


def maximum(*args: ExprLike) -> Expr:
    if not args:
        raise ValueError("maximum() needs at least one argument")
    return Expr.from_sympy(sp.Max(*(sym(a)._sym for a in args)))


def equals(a: ExprLike, b: ExprLike) -> bool:
    return sym(a).equals(b)


def simplify(value: ExprLike) -> Expr:
    return sym(value).simplify()


# =============================================================================
# JSON encoding
# =============================================================================


def _to_json(value: sp.Expr) -> Any:
    if value.is_Integer:
        return int(value)
    if value.is_Symbol:
        return value.name
    if value.is_Add:
        return ["add", *(_to_json(a) for a in value.args)]
    if value.is_Mul:
        return ["mul", *(_to_json(a) for a in value.args)]
    if value.is_Pow:
        return ["pow", _to_json(value.base), _to_json(value.exp)]
    if isinstance(value, sp.Min):
        return ["min", *(_to_json(a) for a in value.args)]
    if isinstance(value, sp.Max):
        return ["max", *(_to_json(a) for a in value.args)]
    if isinstance(value, FloorDiv):
        return ["floordiv", *(_to_json(a) for a in value.args)]
    raise ValueError(f"cannot encode dimension expression {value}")


_JSON_TAGS = {
    "add": lambda args: sp.Add(*args),
    "mul": lambda args: sp.Mul(*args),
    "pow": lambda args: sp.Pow(*args),
    "min": lambda args: sp.Min(*args),
    "max": lambda args: sp.Max(*args),
    "floordiv": lambda args: FloorDiv(*args),
    "mod": lambda args: _mod(*args),
}


def _from_json(data: Any) -> sp.Expr:
    if isinstance(data, list):
        if not data or data[0] not in _JSON_TAGS:
            raise ValueError(f"malformed expression encoding: {data!r}")
        return _JSON_TAGS[data[0]]([_from_json(d) for d in data[1:]])
    return sym(data)._sym


def expr_from_json(data: Any) -> Expr:
    """Inverse of `Expr.to_json()`."""
    return Expr.from_sympy(_from_json(data))
