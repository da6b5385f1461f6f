"""
Formula compiler for the simulator.

A formula body is a short, JavaScript-flavoured program produced by the
model provider, e.g.::

    const r = 0.05;
    return { A: 14*t, B: 11*t + 6, C: 1000 * Math.pow(1 + r, t) };

The body is never executed.  It is tokenized, parsed by a small
recursive-descent parser into SymPy expressions, and each output expression
is turned into a plain-Python callable with ``lambdify``.  Only arithmetic,
comparisons, the ternary operator, ``if``/``else`` blocks and an allow-listed
set of math functions are understood.  ``%`` is the truncated remainder and
``round`` rounds halves up, as in JavaScript.
"""

import functools
import logging
import math
import re
from dataclasses import dataclass, field

import sympy
from sympy.core.relational import Relational
from sympy.logic.boolalg import BooleanAtom, BooleanFunction
from sympy.utilities.lambdify import implemented_function

logger = logging.getLogger(__name__)


# ── Errors ──────────────────────────────────────────────────────────────

class FormulaError(ValueError):
    """Base class for every formula problem."""


class FormulaSyntaxError(FormulaError):
    """The formula body could not be tokenized, parsed or compiled."""


class FormulaEvaluationError(FormulaError):
    """Evaluating a compiled formula against one binding failed."""


# ── Lexer ───────────────────────────────────────────────────────────────

_TOKEN_PATTERNS = [
    ("COMMENT", r"//[^\n]*|/\*.*?\*/"),
    ("NUMBER", r"(?:\d+\.\d*|\.\d+|\d+)(?:[eE][+-]?\d+)?"),
    ("STRING", r"\"[^\"\n]*\"|'[^'\n]*'"),
    ("IDENT", r"(?:Math\.)?[A-Za-z_$][A-Za-z0-9_$]*"),
    ("OP", r"===|!==|\*\*|==|!=|<=|>=|&&|\|\||[-+*/%^<>!?:=(){},;]"),
    ("SKIP", r"\s+"),
    ("MISMATCH", r"."),
]
_TOKEN_RE = re.compile(
    "|".join(f"(?P<{name}>{pattern})" for name, pattern in _TOKEN_PATTERNS),
    re.DOTALL,
)

_DECLARATIONS = {"const", "let", "var"}


@dataclass(frozen=True)
class Token:
    kind: str   # NUMBER, STRING, IDENT, OP, EOF
    value: str
    pos: int = 0


def tokenize(body: str) -> list:
    """Split *body* into tokens, dropping whitespace and comments.

    ``Math.`` prefixes are stripped from identifiers so ``Math.pow`` and
    ``pow`` are the same function.
    """
    tokens = []
    for m in _TOKEN_RE.finditer(body):
        kind = m.lastgroup
        text = m.group()
        if kind in ("SKIP", "COMMENT"):
            continue
        if kind == "MISMATCH":
            raise FormulaSyntaxError(
                f"Unexpected character '{text}' at position {m.start()}"
            )
        if kind == "IDENT" and text.startswith("Math."):
            text = text[len("Math."):]
        elif kind == "STRING":
            text = text[1:-1]
        tokens.append(Token(kind, text, m.start()))
    tokens.append(Token("EOF", "", len(body)))
    return tokens


# ── Allow-listed functions and constants ────────────────────────────────

def _log_base(base):
    return lambda a: sympy.log(a, base)


def _trunc(a):
    """Drop the fractional part, rounding towards zero."""
    return sympy.Piecewise((sympy.floor(a), a >= 0), (sympy.ceiling(a), True))


def _round_half_up(a):
    """JavaScript rounding: halves go towards +infinity (-2.5 -> -2)."""
    return sympy.floor(a + sympy.Rational(1, 2))


def _real_cbrt(a):
    """Real cube root, negative for negative input."""
    return sympy.sign(a) * sympy.Abs(a) ** sympy.Rational(1, 3)


def _hypot(*args):
    return sympy.sqrt(sympy.Add(*[a ** 2 for a in args]))


# Truncated remainder (sign of the dividend), evaluated by math.fmod.
_fmod = implemented_function("fmod", math.fmod)


# name -> (arity or None for "one or more", builder)
_FUNCTIONS = {
    "pow":   (2, lambda a, b: a ** b),
    "exp":   (1, sympy.exp),
    "log":   (1, sympy.log),
    "log10": (1, _log_base(10)),
    "log2":  (1, _log_base(2)),
    "sqrt":  (1, sympy.sqrt),
    "cbrt":  (1, _real_cbrt),
    "abs":   (1, sympy.Abs),
    "sin":   (1, sympy.sin),
    "cos":   (1, sympy.cos),
    "tan":   (1, sympy.tan),
    "asin":  (1, sympy.asin),
    "acos":  (1, sympy.acos),
    "atan":  (1, sympy.atan),
    "atan2": (2, sympy.atan2),
    "sinh":  (1, sympy.sinh),
    "cosh":  (1, sympy.cosh),
    "tanh":  (1, sympy.tanh),
    "floor": (1, sympy.floor),
    "ceil":  (1, sympy.ceiling),
    "round": (1, _round_half_up),
    "trunc": (1, _trunc),
    "sign":  (1, sympy.sign),
    "hypot": (None, _hypot),
    "min":   (None, sympy.Min),
    "max":   (None, sympy.Max),
}

_CONSTANTS = {
    "pi": sympy.pi,
    "PI": sympy.pi,
    "E": sympy.E,
    "e": sympy.E,
    "LN2": sympy.log(2),
    "LN10": sympy.log(10),
    "LOG2E": 1 / sympy.log(2),
    "LOG10E": 1 / sympy.log(10),
    "SQRT2": sympy.sqrt(2),
    "SQRT1_2": sympy.sqrt(2) / 2,
}

_COMPARISONS = {
    "<": sympy.Lt,
    "<=": sympy.Le,
    ">": sympy.Gt,
    ">=": sympy.Ge,
}
_EQUALITIES = {
    "==": sympy.Eq,
    "===": sympy.Eq,
    "!=": sympy.Ne,
    "!==": sympy.Ne,
}

# Symbols are sympy Booleans too, so test for the truth-valued node types.
_TRUTH_VALUED = (Relational, BooleanFunction, BooleanAtom)


def _as_number(expr):
    """Booleans used in arithmetic count as 1 / 0, like in JavaScript."""
    if isinstance(expr, _TRUTH_VALUED):
        return sympy.Piecewise((sympy.Integer(1), expr), (sympy.Integer(0), True))
    return expr


def _as_condition(expr):
    """Numbers used as conditions are true when non-zero."""
    if isinstance(expr, _TRUTH_VALUED):
        return expr
    return sympy.Ne(expr, 0)


def _merge_scopes(cond, before: dict, when_true: dict, when_false: dict) -> dict:
    """Locals after an ``if``: each changed name picks its branch's value."""
    merged = dict(before)
    for name in dict.fromkeys([*when_true, *when_false]):
        a = when_true.get(name, before.get(name))
        b = when_false.get(name, before.get(name))
        if a is None or b is None or a == b:
            merged[name] = b if a is None else a
        else:
            merged[name] = sympy.Piecewise((_as_number(a), cond), (_as_number(b), True))
    return merged


def _merge_returns(entries: list, complete: bool):
    """Fold guarded ``(value, condition)`` returns into one result.

    The first entry whose condition holds wins.  When some path falls
    through without returning, its outputs are NaN.
    """
    values = [value for value, _ in entries]
    named = [isinstance(value, dict) for value in values]
    if any(named) and not all(named):
        raise FormulaSyntaxError(
            "Every return must give either a number or an object of outputs."
        )
    if complete and len(entries) == 1:
        return values[0]

    conditions = [cond for _, cond in entries]
    if complete:
        conditions[-1] = sympy.true
    else:
        values.append({} if named[0] else sympy.nan)
        conditions.append(sympy.true)

    if not named[0]:
        return sympy.Piecewise(*zip(values, conditions))
    keys = dict.fromkeys(key for value in values for key in value)
    return {
        key: sympy.Piecewise(*[
            (value.get(key, sympy.nan), cond) for value, cond in zip(values, conditions)
        ])
        for key in keys
    }


# ── Parser ──────────────────────────────────────────────────────────────

class _Parser:
    """Recursive-descent parser producing SymPy expressions.

    Grammar (statements, then expressions lowest to highest precedence)::

        statement := [const|let|var] name '=' ternary
                   | 'return' (ternary | '{' key ':' ternary, ... '}')
                   | 'if' '(' ternary ')' statement ['else' statement]
                   | '{' statement* '}' | ternary

        ternary  := or ('?' ternary ':' ternary)?
        or       := and ('||' and)*
        and      := equality ('&&' equality)*
        equality := compare (('=='|'!='|'==='|'!==') compare)*
        compare  := additive (('<'|'<='|'>'|'>=') additive)*
        additive := term (('+'|'-') term)*
        term     := unary (('*'|'/'|'%') unary)*
        unary    := ('-'|'+'|'!') unary | power
        power    := primary (('**'|'^') unary)?
        primary  := NUMBER | IDENT | IDENT '(' args ')' | '(' ternary ')'
    """

    def __init__(self, tokens: list, symbols):
        self.tokens = tokens
        self.pos = 0
        self.scope = {name: sympy.Symbol(name, real=True) for name in symbols}

    # -- token helpers --------------------------------------------------

    def _peek(self, offset: int = 0) -> Token:
        return self.tokens[min(self.pos + offset, len(self.tokens) - 1)]

    def _advance(self) -> Token:
        tok = self.tokens[self.pos]
        if tok.kind != "EOF":
            self.pos += 1
        return tok

    def _at_op(self, *ops) -> bool:
        tok = self._peek()
        return tok.kind == "OP" and tok.value in ops

    def _accept(self, op: str) -> bool:
        if self._at_op(op):
            self._advance()
            return True
        return False

    def _expect(self, op: str) -> Token:
        tok = self._peek()
        if not self._at_op(op):
            found = tok.value or "end of formula"
            raise FormulaSyntaxError(
                f"Expected '{op}' but found '{found}' at position {tok.pos}"
            )
        return self._advance()

    def _expect_name(self) -> str:
        tok = self._advance()
        if tok.kind != "IDENT":
            raise FormulaSyntaxError(
                f"Expected a name but found '{tok.value}' at position {tok.pos}"
            )
        return tok.value

    # -- statements -----------------------------------------------------

    def parse_body(self):
        """Parse every statement; return what the body returns.

        Returns are collected as ``(value, condition)`` pairs so that
        ``if``/``else`` branches fold into ``Piecewise`` expressions.
        """
        entries, complete = self._sequence()
        if not entries:
            raise FormulaSyntaxError("Formula has no return statement.")
        return _merge_returns(entries, complete)

    def _at_keyword(self, word: str, offset: int = 0) -> bool:
        tok = self._peek(offset)
        return tok.kind == "IDENT" and tok.value == word

    def _sequence(self, closing: str | None = None):
        """Statements up to *closing* (or the end of the body)."""
        entries, complete = [], False
        while self._peek().kind != "EOF" and not (closing and self._at_op(closing)):
            if self._accept(";"):
                continue
            if complete:
                # Unreachable after an unconditional return: parsed, not run.
                saved = dict(self.scope)
                self._guarded_statement()
                self.scope = saved
                continue
            found, complete = self._guarded_statement()
            entries += found
        return entries, complete

    def _guarded_statement(self):
        """One statement as ``(returns, always_returns)``."""
        if self._at_keyword("if"):
            return self._if_statement()
        if self._at_keyword("else"):
            tok = self._peek()
            raise FormulaSyntaxError(f"Unexpected 'else' at position {tok.pos}")
        if self._accept("{"):
            found = self._sequence("}")
            self._expect("}")
            return found
        value = self._statement()
        if value is None:
            return [], False
        return [(value, sympy.true)], True

    def _if_statement(self):
        self._advance()
        self._expect("(")
        cond = _as_condition(self._ternary())
        self._expect(")")

        before = dict(self.scope)
        then_returns, then_done = self._guarded_statement()
        then_scope, self.scope = self.scope, dict(before)

        else_returns, else_done = [], False
        if self._at_op(";") and self._at_keyword("else", 1):
            self._advance()
        if self._at_keyword("else"):
            self._advance()
            else_returns, else_done = self._guarded_statement()
        self.scope = _merge_scopes(cond, before, then_scope, self.scope)

        entries = [(value, sympy.And(cond, guard)) for value, guard in then_returns]
        entries += [(value, sympy.And(sympy.Not(cond), guard))
                    for value, guard in else_returns]
        return entries, then_done and else_done

    def _statement(self):
        tok = self._peek()
        if tok.kind == "IDENT" and tok.value in _DECLARATIONS:
            self._advance()
            self._assignment(self._expect_name())
            return None
        if tok.kind == "IDENT" and tok.value == "return":
            self._advance()
            if self._at_op("{"):
                return self._mapping()
            return _as_number(self._ternary())
        nxt = self._peek(1)
        if tok.kind == "IDENT" and nxt.kind == "OP" and nxt.value == "=":
            self._advance()
            self._assignment(tok.value)
            return None
        # Bare expression statement: parsed for validity, value discarded.
        self._ternary()
        return None

    def _assignment(self, name: str) -> None:
        self._expect("=")
        self.scope[name] = self._ternary()

    def _mapping(self) -> dict:
        self._expect("{")
        values = {}
        while not self._at_op("}"):
            tok = self._advance()
            if tok.kind not in ("IDENT", "STRING", "NUMBER"):
                raise FormulaSyntaxError(
                    f"Expected an output key but found '{tok.value}' at position {tok.pos}"
                )
            self._expect(":")
            values[tok.value] = _as_number(self._ternary())
            if not self._accept(","):
                break
        self._expect("}")
        return values

    # -- expressions ----------------------------------------------------

    def _ternary(self):
        cond = self._or()
        if not self._accept("?"):
            return cond
        when_true = _as_number(self._ternary())
        self._expect(":")
        when_false = _as_number(self._ternary())
        return sympy.Piecewise((when_true, _as_condition(cond)), (when_false, True))

    def _or(self):
        left = self._and()
        while self._accept("||"):
            left = sympy.Or(_as_condition(left), _as_condition(self._and()))
        return left

    def _and(self):
        left = self._equality()
        while self._accept("&&"):
            left = sympy.And(_as_condition(left), _as_condition(self._equality()))
        return left

    def _equality(self):
        left = self._compare()
        while self._at_op(*_EQUALITIES):
            op = self._advance().value
            left = _EQUALITIES[op](_as_number(left), _as_number(self._compare()))
        return left

    def _compare(self):
        left = self._additive()
        while self._at_op(*_COMPARISONS):
            op = self._advance().value
            left = _COMPARISONS[op](_as_number(left), _as_number(self._additive()))
        return left

    def _additive(self):
        left = self._term()
        while self._at_op("+", "-"):
            op = self._advance().value
            right = _as_number(self._term())
            left = _as_number(left) + right if op == "+" else _as_number(left) - right
        return left

    def _implicit_product(self) -> bool:
        """True for a number written directly against a name or '(' (``2x``)."""
        prev = self.tokens[self.pos - 1] if self.pos else None
        tok = self._peek()
        if prev is None or prev.kind != "NUMBER":
            return False
        if tok.pos != prev.pos + len(prev.value):
            return False
        if tok.kind == "IDENT":
            return tok.value not in _DECLARATIONS and tok.value != "return"
        return tok.kind == "OP" and tok.value == "("

    def _term(self):
        left = self._unary()
        while True:
            if self._implicit_product():
                left = _as_number(left) * _as_number(self._unary())
                continue
            if not self._at_op("*", "/", "%"):
                break
            op = self._advance().value
            right = _as_number(self._unary())
            left = _as_number(left)
            if op == "*":
                left = left * right
            elif op == "/":
                left = left / right
            else:
                left = _fmod(left, right)
        return left

    def _unary(self):
        if self._accept("-"):
            return -_as_number(self._unary())
        if self._accept("+"):
            return _as_number(self._unary())
        if self._accept("!"):
            return sympy.Not(_as_condition(self._unary()))
        return self._power()

    def _power(self):
        base = self._primary()
        if self._at_op("**", "^"):
            self._advance()
            # Right-associative: 2^3^2 == 2^(3^2)
            return _as_number(base) ** _as_number(self._unary())
        return base

    def _primary(self):
        tok = self._advance()
        if tok.kind == "NUMBER":
            if any(ch in tok.value for ch in ".eE"):
                return sympy.Float(tok.value)
            return sympy.Integer(int(tok.value))
        if tok.kind == "IDENT":
            if self._at_op("("):
                return self._call(tok)
            return self._name(tok.value)
        if tok.kind == "OP" and tok.value == "(":
            inner = self._ternary()
            self._expect(")")
            return inner
        found = tok.value or "end of formula"
        raise FormulaSyntaxError(f"Unexpected '{found}' at position {tok.pos}")

    def _name(self, name: str):
        if name in self.scope:
            return self.scope[name]
        if name in _CONSTANTS:
            return _CONSTANTS[name]
        # Unknown names stay free; evaluation fails if the binding lacks them.
        return sympy.Symbol(name, real=True)

    def _call(self, tok: Token):
        if tok.value not in _FUNCTIONS:
            raise FormulaSyntaxError(
                f"Unknown function '{tok.value}' at position {tok.pos}"
            )
        arity, builder = _FUNCTIONS[tok.value]
        self._expect("(")
        args = []
        while not self._at_op(")"):
            args.append(_as_number(self._ternary()))
            if not self._accept(","):
                break
        self._expect(")")
        if (arity is None and not args) or (arity is not None and len(args) != arity):
            expected = "at least 1" if arity is None else str(arity)
            raise FormulaSyntaxError(
                f"{tok.value}() takes {expected} argument(s), got {len(args)}"
            )
        return builder(*args)


# ── Compiled formula ────────────────────────────────────────────────────

@dataclass(frozen=True)
class FormulaResult:
    """Outcome of one evaluation: a single number or named outputs."""

    kind: str                      # "scalar" | "named"
    value: float = 0.0
    values: dict = field(default_factory=dict)

    @classmethod
    def scalar(cls, value: float) -> "FormulaResult":
        return cls("scalar", value=value)

    @classmethod
    def named(cls, values: dict) -> "FormulaResult":
        return cls("named", values=values)

    def as_outputs(self, default_symbol: str) -> dict:
        """Return the outputs as a mapping; a scalar lands on *default_symbol*."""
        if self.kind == "scalar":
            return {default_symbol: self.value}
        return dict(self.values)


class CompiledFormula:
    """A parsed formula bound to an ordered parameter list.

    ``parameters`` are the declared variable symbols the formula was compiled
    for.  ``arguments`` are the symbols the outputs actually reference, which
    may include names missing from ``parameters``; those make every
    evaluation fail.
    """

    def __init__(self, body: str, parameters: tuple, returned):
        self.body = body
        self.parameters = parameters
        self.is_named = isinstance(returned, dict)
        self.keys = tuple(returned) if self.is_named else ()
        exprs = list(returned.values()) if self.is_named else [returned]

        free = set()
        for expr in exprs:
            free |= expr.free_symbols
        ordered = sorted(free, key=lambda s: s.name)
        self.arguments = tuple(s.name for s in ordered)
        self.expressions = tuple(exprs)
        target = exprs if self.is_named else exprs[0]
        self._func = sympy.lambdify(ordered, target, modules="math")

    def evaluate(self, bindings) -> FormulaResult:
        """Evaluate against *bindings* (symbol -> number).

        Raises ``FormulaEvaluationError`` for missing symbols, division by
        zero, overflow, math-domain errors and complex results.
        """
        try:
            args = [bindings[name] for name in self.arguments]
        except KeyError as e:
            raise FormulaEvaluationError(f"Undefined symbol '{e.args[0]}'") from e
        try:
            raw = self._func(*args)
            if self.is_named:
                return FormulaResult.named(
                    {key: float(val) for key, val in zip(self.keys, raw)}
                )
            return FormulaResult.scalar(float(raw))
        except (ArithmeticError, ValueError, TypeError) as e:
            raise FormulaEvaluationError(str(e) or type(e).__name__) from e

    def __repr__(self) -> str:
        return f"CompiledFormula(parameters={self.parameters!r}, keys={self.keys!r})"


@functools.lru_cache(maxsize=128)
def _compile_cached(body: str, parameters: tuple) -> CompiledFormula:
    tokens = tokenize(body)
    try:
        returned = _Parser(tokens, parameters).parse_body()
        return CompiledFormula(body, parameters, returned)
    except FormulaError:
        raise
    except (ArithmeticError, TypeError, ValueError, sympy.SympifyError) as e:
        raise FormulaSyntaxError(f"Could not build formula: {e}") from e


def compile_formula(body: str, symbols) -> CompiledFormula:
    """Compile *body* with *symbols* as its parameters.

    The result is memoized on ``(body, tuple(symbols))`` so a changed
    variable set always produces a fresh callable.
    """
    parameters = tuple(symbols)
    compiled = _compile_cached(body or "", parameters)
    logger.debug("Compiled formula with parameters %s", parameters)
    return compiled
