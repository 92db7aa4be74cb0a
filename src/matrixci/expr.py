# expr.py
# Condition expressions over a matrix binding.
#
# A step is either unconditional (condition=None) or guarded by one of the
# Condition variants below. Evaluation is pure: no I/O, no globals, the same
# binding always gives the same answer.
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Optional, Set, Tuple, Union

from .errors import ConditionReferenceError, DefinitionError
from .model import MatrixBinding


# ----------------------------------------------------------------------
# Condition variants
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class Equals:
    dim: str
    value: str


@dataclass(frozen=True)
class NotEquals:
    dim: str
    value: str


@dataclass(frozen=True)
class StartsWith:
    dim: str
    prefix: str


@dataclass(frozen=True)
class EndsWith:
    dim: str
    suffix: str


@dataclass(frozen=True)
class Contains:
    dim: str
    fragment: str


@dataclass(frozen=True)
class Not:
    inner: "Condition"


@dataclass(frozen=True)
class All:
    items: Tuple["Condition", ...]


@dataclass(frozen=True)
class AnyOf:
    items: Tuple["Condition", ...]


Condition = Union[Equals, NotEquals, StartsWith, EndsWith, Contains, Not, All, AnyOf]


# ----------------------------------------------------------------------
# Evaluation
# ----------------------------------------------------------------------

def _lookup(binding: MatrixBinding, dim: str) -> str:
    if dim not in binding:
        raise ConditionReferenceError(
            f"condition references undeclared matrix dimension '{dim}'",
            details={"declared": list(binding)},
        )
    return binding[dim]


def _fold(text: str) -> str:
    # workflow string comparisons ignore case
    return text.casefold()


def evaluate(condition: Optional[Condition], binding: MatrixBinding) -> bool:
    """Evaluate a condition against a binding. `None` is unconditional (True)."""
    if condition is None:
        return True
    if isinstance(condition, Equals):
        return _fold(_lookup(binding, condition.dim)) == _fold(condition.value)
    if isinstance(condition, NotEquals):
        return _fold(_lookup(binding, condition.dim)) != _fold(condition.value)
    if isinstance(condition, StartsWith):
        return _fold(_lookup(binding, condition.dim)).startswith(_fold(condition.prefix))
    if isinstance(condition, EndsWith):
        return _fold(_lookup(binding, condition.dim)).endswith(_fold(condition.suffix))
    if isinstance(condition, Contains):
        return _fold(condition.fragment) in _fold(_lookup(binding, condition.dim))
    if isinstance(condition, Not):
        return not evaluate(condition.inner, binding)
    if isinstance(condition, All):
        # evaluate every branch so a bad reference is never hidden by short-circuiting
        results = [evaluate(c, binding) for c in condition.items]
        return all(results)
    if isinstance(condition, AnyOf):
        results = [evaluate(c, binding) for c in condition.items]
        return any(results)
    raise DefinitionError(f"unsupported condition: {condition!r}")


def references(condition: Optional[Condition]) -> Set[str]:
    """Dimension names a condition reads."""
    if condition is None:
        return set()
    if isinstance(condition, Not):
        return references(condition.inner)
    if isinstance(condition, (All, AnyOf)):
        out: Set[str] = set()
        for c in condition.items:
            out |= references(c)
        return out
    return {condition.dim}


def describe(condition: Optional[Condition]) -> str:
    """Render a condition back into workflow expression syntax."""
    if condition is None:
        return "always"
    if isinstance(condition, Equals):
        return f"matrix.{condition.dim} == '{condition.value}'"
    if isinstance(condition, NotEquals):
        return f"matrix.{condition.dim} != '{condition.value}'"
    if isinstance(condition, StartsWith):
        return f"startsWith(matrix.{condition.dim}, '{condition.prefix}')"
    if isinstance(condition, EndsWith):
        return f"endsWith(matrix.{condition.dim}, '{condition.suffix}')"
    if isinstance(condition, Contains):
        return f"contains(matrix.{condition.dim}, '{condition.fragment}')"
    if isinstance(condition, Not):
        return f"!({describe(condition.inner)})"
    joiner = " && " if isinstance(condition, All) else " || "
    return "(" + joiner.join(describe(c) for c in condition.items) + ")"


# ----------------------------------------------------------------------
# Parsing
# ----------------------------------------------------------------------
# Accepted surface:
#   matrix.rust == 'nightly'
#   matrix.os != "windows-latest"
#   startsWith(matrix.rust, 'nightly')   (also endsWith / contains)
#   !expr, expr && expr, expr || expr, (expr)
#   optionally wrapped in ${{ ... }}

_TOKEN = re.compile(
    r"""\s*(?:
        (?P<str>'(?:[^']|'')*'|"[^"]*")
      | (?P<op>==|!=|&&|\|\||!|\(|\)|,)
      | (?P<ref>matrix\.[A-Za-z_][\w-]*)
      | (?P<name>[A-Za-z_]\w*)
    )""",
    re.VERBOSE,
)

_FUNCS = {
    "startswith": StartsWith,
    "endswith": EndsWith,
    "contains": Contains,
}

_WRAPPED = re.compile(r"^\s*\$\{\{(.*)\}\}\s*$", re.DOTALL)


def _tokenize(text: str) -> List[Tuple[str, str]]:
    tokens: List[Tuple[str, str]] = []
    pos = 0
    text = text.rstrip()
    while pos < len(text):
        m = _TOKEN.match(text, pos)
        if not m or m.end() == pos:
            raise DefinitionError(f"cannot parse condition at offset {pos}: {text!r}")
        pos = m.end()
        kind = m.lastgroup
        value = m.group(kind)
        if kind == "str":
            quote = value[0]
            value = value[1:-1]
            if quote == "'":
                value = value.replace("''", "'")
        elif kind == "ref":
            value = value[len("matrix."):]
        tokens.append((kind, value))
    return tokens


class _Parser:
    def __init__(self, text: str):
        self.text = text
        self.tokens = _tokenize(text)
        self.pos = 0

    def _peek(self) -> Optional[Tuple[str, str]]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _next(self) -> Tuple[str, str]:
        tok = self._peek()
        if tok is None:
            raise DefinitionError(f"unexpected end of condition: {self.text!r}")
        self.pos += 1
        return tok

    def _expect(self, op: str) -> None:
        kind, value = self._next()
        if kind != "op" or value != op:
            raise DefinitionError(f"expected '{op}' but found '{value}' in condition: {self.text!r}")

    def _accept(self, op: str) -> bool:
        tok = self._peek()
        if tok == ("op", op):
            self.pos += 1
            return True
        return False

    def parse(self) -> Condition:
        cond = self._or()
        if self._peek() is not None:
            raise DefinitionError(f"trailing input '{self._peek()[1]}' in condition: {self.text!r}")
        return cond

    def _or(self) -> Condition:
        items = [self._and()]
        while self._accept("||"):
            items.append(self._and())
        return items[0] if len(items) == 1 else AnyOf(tuple(items))

    def _and(self) -> Condition:
        items = [self._unary()]
        while self._accept("&&"):
            items.append(self._unary())
        return items[0] if len(items) == 1 else All(tuple(items))

    def _unary(self) -> Condition:
        if self._accept("!"):
            return Not(self._unary())
        return self._primary()

    def _operand(self) -> Tuple[str, str]:
        kind, value = self._next()
        if kind not in ("ref", "str"):
            raise DefinitionError(f"expected matrix reference or string, got '{value}' in: {self.text!r}")
        return kind, value

    def _primary(self) -> Condition:
        if self._accept("("):
            cond = self._or()
            self._expect(")")
            return cond

        tok = self._peek()
        if tok is not None and tok[0] == "name":
            self._next()
            factory = _FUNCS.get(tok[1].lower())
            if factory is None:
                raise DefinitionError(f"unknown function '{tok[1]}' in condition: {self.text!r}")
            self._expect("(")
            kind, dim = self._operand()
            self._expect(",")
            lit_kind, literal = self._operand()
            self._expect(")")
            if kind != "ref" or lit_kind != "str":
                raise DefinitionError(
                    f"{tok[1]}() takes (matrix.<dimension>, 'literal') in condition: {self.text!r}"
                )
            return factory(dim, literal)

        left = self._operand()
        kind, op = self._next()
        if kind != "op" or op not in ("==", "!="):
            raise DefinitionError(f"expected '==' or '!=' but found '{op}' in condition: {self.text!r}")
        right = self._operand()

        refs = [v for k, v in (left, right) if k == "ref"]
        lits = [v for k, v in (left, right) if k == "str"]
        if len(refs) != 1 or len(lits) != 1:
            raise DefinitionError(
                f"comparison needs one matrix reference and one literal in condition: {self.text!r}"
            )
        return Equals(refs[0], lits[0]) if op == "==" else NotEquals(refs[0], lits[0])


def parse_condition(text: str) -> Condition:
    """Parse workflow expression text into a Condition. Raises DefinitionError."""
    m = _WRAPPED.match(text)
    if m:
        text = m.group(1)
    if not text.strip():
        raise DefinitionError("empty condition expression")
    return _Parser(text).parse()


# ----------------------------------------------------------------------
# Interpolation: "Install ${{ matrix.rust }}" -> "Install nightly"
# ----------------------------------------------------------------------

_PLACEHOLDER = re.compile(r"\$\{\{\s*matrix\.([A-Za-z_][\w-]*)\s*\}\}")


def placeholders(text: str | None) -> Set[str]:
    if not text:
        return set()
    return set(_PLACEHOLDER.findall(text))


def interpolate(text: str | None, binding: MatrixBinding) -> str | None:
    if not text:
        return text
    return _PLACEHOLDER.sub(lambda m: _lookup(binding, m.group(1)), text)
