"""
Condition evaluator for workflow steps.

Conditions are small boolean expressions over workflow variables:

    ${LEVEL} === 0
    ${TEAM_SIZE} > 5 && ${SECURITY} === 'high'
    !{{DEBUG_MODE}}

Evaluation happens in two passes. First every ${name} / {{name}} is
replaced by a literal rendering of the bound value (strings quoted,
structured values as JSON). Then the text is tokenized and parsed by a
recursive-descent parser into an AST of literals, unary, binary and
logical nodes, which is evaluated with JavaScript-style comparison
semantics. The grammar has no identifiers, calls, member access or
statements, so anything outside it is a parse error:

    expr       := or
    or         := and ('||' and)*
    and        := equality ('&&' equality)*
    equality   := relational (('===' | '!==' | '==' | '!=') relational)*
    relational := additive (('<' | '>' | '<=' | '>=') additive)*
    additive   := term (('+' | '-') term)*
    term       := unary (('*' | '/' | '%') unary)*
    unary      := ('!' | '-' | '+') unary | primary
    primary    := NUMBER | STRING | true | false | null | undefined
                | '(' expr ')' | '[' items ']' | '{' pairs '}'
"""

import json
import logging
import math
import re
from dataclasses import dataclass
from typing import Any

from stepflow.lib.errors import StepflowError

logger = logging.getLogger(__name__)


class ConditionError(StepflowError):
    """A condition could not be substituted, parsed, or evaluated to a boolean."""

    def __init__(self, message: str, condition: str):
        self.condition = condition
        self.message = message
        super().__init__(f"{message} (condition: {condition})")


class _Undefined:
    """The value of an unresolved variable in permissive mode."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "undefined"


UNDEFINED = _Undefined()

_VARIABLE_PATTERN = re.compile(
    r"\$\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}|\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}"
)


# ---------------------------------------------------------------------------
# Substitution
# ---------------------------------------------------------------------------


def format_value(value: Any) -> str:
    """Render a variable as a literal the parser accepts."""
    if value is None:
        return "null"
    if value is UNDEFINED:
        return "undefined"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            return "null"
        return repr(value)
    if isinstance(value, str):
        escaped = value.replace("\\", "\\\\").replace("'", "\\'")
        return f"'{escaped}'"
    return json.dumps(value, default=str)


def substitute_variables(condition: str, variables: dict[str, Any], strict: bool = True) -> str:
    """Replace ${name} and {{name}} with literal renderings of their values.

    Raises:
        ConditionError: in strict mode, if a referenced variable is not bound
    """

    def _sub(match: re.Match) -> str:
        name = match.group(1) or match.group(2)
        if name not in variables:
            if strict:
                raise ConditionError(f"Variable not found: {name}", condition)
            return "undefined"
        return format_value(variables[name])

    return _VARIABLE_PATTERN.sub(_sub, condition)


# ---------------------------------------------------------------------------
# Tokenizer
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Token:
    kind: str  # NUMBER, STRING, KEYWORD, OP, EOF
    value: Any
    pos: int


KEYWORDS = {"true": True, "false": False, "null": None, "undefined": UNDEFINED}

# Longest operators first so '===' wins over '=='
OPERATORS = (
    "===", "!==", "==", "!=", "<=", ">=", "&&", "||",
    "<", ">", "!", "+", "-", "*", "/", "%", "(", ")", "[", "]", "{", "}", ",", ":",
)

_NUMBER_PATTERN = re.compile(r"\d+(?:\.\d+)?(?:[eE][+-]?\d+)?|\.\d+(?:[eE][+-]?\d+)?")
_WORD_PATTERN = re.compile(r"[A-Za-z_$][A-Za-z0-9_$]*")
_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "\\": "\\", "'": "'", '"': '"', "/": "/", "b": "\b", "f": "\f"}


def _read_string(text: str, start: int, condition: str) -> tuple[str, int]:
    quote = text[start]
    out = []
    i = start + 1
    while i < len(text):
        ch = text[i]
        if ch == "\\":
            if i + 1 >= len(text):
                break
            nxt = text[i + 1]
            if nxt == "u" and re.fullmatch(r"[0-9a-fA-F]{4}", text[i + 2:i + 6] or ""):
                out.append(chr(int(text[i + 2:i + 6], 16)))
                i += 6
                continue
            out.append(_ESCAPES.get(nxt, nxt))
            i += 2
            continue
        if ch == quote:
            return "".join(out), i + 1
        out.append(ch)
        i += 1
    raise ConditionError(f"Unterminated string starting at position {start}", condition)


def tokenize(text: str, condition: str | None = None) -> list[Token]:
    """Split an expression into tokens.

    Raises:
        ConditionError: on any character or word outside the grammar
    """
    condition = condition if condition is not None else text
    tokens: list[Token] = []
    i = 0
    while i < len(text):
        ch = text[i]
        if ch.isspace():
            i += 1
            continue

        if ch in "'\"":
            value, i_next = _read_string(text, i, condition)
            tokens.append(Token("STRING", value, i))
            i = i_next
            continue

        match = _NUMBER_PATTERN.match(text, i)
        if match:
            literal = match.group(0)
            end = match.end()
            if end < len(text) and (text[end] == "." or _WORD_PATTERN.match(text, end)):
                raise ConditionError(f"Unsupported token at position {i}: '{text[i:end + 1]}'", condition)
            number = float(literal)
            tokens.append(Token("NUMBER", int(number) if number.is_integer() and "." not in literal
                                and "e" not in literal.lower() else number, i))
            i = end
            continue

        match = _WORD_PATTERN.match(text, i)
        if match:
            word = match.group(0)
            if word not in KEYWORDS:
                raise ConditionError(f"Unsupported token '{word}' at position {i}", condition)
            tokens.append(Token("KEYWORD", KEYWORDS[word], i))
            i = match.end()
            continue

        for op in OPERATORS:
            if text.startswith(op, i):
                tokens.append(Token("OP", op, i))
                i += len(op)
                break
        else:
            raise ConditionError(f"Unsupported character '{ch}' at position {i}", condition)

    tokens.append(Token("EOF", None, len(text)))
    return tokens


# ---------------------------------------------------------------------------
# AST and semantics
# ---------------------------------------------------------------------------


def _kind(value: Any) -> str:
    if value is UNDEFINED:
        return "undefined"
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    return "object"


def truthy(value: Any) -> bool:
    """JavaScript truthiness."""
    kind = _kind(value)
    if kind in ("undefined", "null"):
        return False
    if kind == "boolean":
        return value
    if kind == "number":
        return value != 0 and not math.isnan(value)
    if kind == "string":
        return value != ""
    return True


def _to_number(value: Any) -> float:
    kind = _kind(value)
    if kind == "number":
        return value
    if kind == "boolean":
        return 1 if value else 0
    if kind == "null":
        return 0
    if kind == "string":
        stripped = value.strip()
        if stripped == "":
            return 0
        try:
            return float(stripped)
        except ValueError:
            return math.nan
    return math.nan


def _to_text(value: Any) -> str:
    kind = _kind(value)
    if kind in ("undefined", "null", "boolean"):
        return {"undefined": "undefined", "null": "null"}.get(kind) or ("true" if value else "false")
    if kind == "number":
        return str(int(value)) if float(value).is_integer() else repr(value)
    if kind == "string":
        return value
    if kind == "array":
        return ",".join(_to_text(v) for v in value)
    return "[object Object]"


def strict_equals(left: Any, right: Any) -> bool:
    kind = _kind(left)
    if kind != _kind(right):
        return False
    if kind in ("undefined", "null"):
        return True
    if kind == "number":
        return left == right and not math.isnan(left)
    return left == right


def loose_equals(left: Any, right: Any) -> bool:
    lk, rk = _kind(left), _kind(right)
    if lk == rk:
        return strict_equals(left, right)
    nullish = ("undefined", "null")
    if lk in nullish or rk in nullish:
        return lk in nullish and rk in nullish
    if lk in ("array", "object") or rk in ("array", "object"):
        return False
    return _to_number(left) == _to_number(right)


def _compare(op: str, left: Any, right: Any) -> bool:
    if _kind(left) == "string" and _kind(right) == "string":
        a, b = left, right
    else:
        a, b = _to_number(left), _to_number(right)
        if math.isnan(a) or math.isnan(b):
            return False
    if op == "<":
        return a < b
    if op == ">":
        return a > b
    if op == "<=":
        return a <= b
    return a >= b


def _arithmetic(op: str, left: Any, right: Any) -> Any:
    if op == "+" and (_kind(left) == "string" or _kind(right) == "string"):
        return _to_text(left) + _to_text(right)
    a, b = _to_number(left), _to_number(right)
    if op == "+":
        return a + b
    if op == "-":
        return a - b
    if op == "*":
        return a * b
    if b == 0:
        if op == "%" or a == 0 or math.isnan(a):
            return math.nan
        return math.copysign(math.inf, a) * math.copysign(1, b)
    if op == "/":
        return a / b
    return math.fmod(a, b)


class Node:
    def evaluate(self) -> Any:
        raise NotImplementedError


@dataclass(frozen=True)
class Literal(Node):
    value: Any

    def evaluate(self) -> Any:
        return self.value


@dataclass(frozen=True)
class ArrayLiteral(Node):
    items: tuple[Node, ...]

    def evaluate(self) -> Any:
        return [item.evaluate() for item in self.items]


@dataclass(frozen=True)
class ObjectLiteral(Node):
    pairs: tuple[tuple[str, Node], ...]

    def evaluate(self) -> Any:
        return {key: value.evaluate() for key, value in self.pairs}


@dataclass(frozen=True)
class Unary(Node):
    op: str
    operand: Node

    def evaluate(self) -> Any:
        value = self.operand.evaluate()
        if self.op == "!":
            return not truthy(value)
        number = _to_number(value)
        return -number if self.op == "-" else number


@dataclass(frozen=True)
class Binary(Node):
    op: str
    left: Node
    right: Node

    def evaluate(self) -> Any:
        left = self.left.evaluate()
        right = self.right.evaluate()
        if self.op == "===":
            return strict_equals(left, right)
        if self.op == "!==":
            return not strict_equals(left, right)
        if self.op == "==":
            return loose_equals(left, right)
        if self.op == "!=":
            return not loose_equals(left, right)
        if self.op in ("<", ">", "<=", ">="):
            return _compare(self.op, left, right)
        return _arithmetic(self.op, left, right)


@dataclass(frozen=True)
class Logical(Node):
    """Short-circuit && / || returning the deciding operand, as in JavaScript."""
    op: str
    left: Node
    right: Node

    def evaluate(self) -> Any:
        left = self.left.evaluate()
        if self.op == "&&":
            return self.right.evaluate() if truthy(left) else left
        return left if truthy(left) else self.right.evaluate()


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


class _Parser:
    def __init__(self, tokens: list[Token], condition: str):
        self.tokens = tokens
        self.pos = 0
        self.condition = condition

    def _peek(self) -> Token:
        return self.tokens[self.pos]

    def _advance(self) -> Token:
        token = self.tokens[self.pos]
        self.pos += 1
        return token

    def _at_op(self, *ops: str) -> bool:
        token = self._peek()
        return token.kind == "OP" and token.value in ops

    def _expect(self, op: str) -> None:
        token = self._advance()
        if token.kind != "OP" or token.value != op:
            found = "end of expression" if token.kind == "EOF" else repr(token.value)
            raise ConditionError(f"Expected '{op}' at position {token.pos}, found {found}", self.condition)

    def parse(self) -> Node:
        node = self._or()
        token = self._peek()
        if token.kind != "EOF":
            if token.kind == "OP" and token.value in ("[", "("):
                raise ConditionError(f"Member access or calls are not allowed (position {token.pos})",
                                     self.condition)
            raise ConditionError(f"Unexpected token {token.value!r} at position {token.pos}", self.condition)
        return node

    def _binary_level(self, next_level, ops: tuple[str, ...], node_type=Binary) -> Node:
        node = next_level()
        while self._at_op(*ops):
            op = self._advance().value
            node = node_type(op, node, next_level())
        return node

    def _or(self) -> Node:
        return self._binary_level(self._and, ("||",), Logical)

    def _and(self) -> Node:
        return self._binary_level(self._equality, ("&&",), Logical)

    def _equality(self) -> Node:
        return self._binary_level(self._relational, ("===", "!==", "==", "!="))

    def _relational(self) -> Node:
        return self._binary_level(self._additive, ("<", ">", "<=", ">="))

    def _additive(self) -> Node:
        return self._binary_level(self._term, ("+", "-"))

    def _term(self) -> Node:
        return self._binary_level(self._unary, ("*", "/", "%"))

    def _unary(self) -> Node:
        if self._at_op("!", "-", "+"):
            op = self._advance().value
            return Unary(op, self._unary())
        return self._primary()

    def _primary(self) -> Node:
        token = self._advance()
        if token.kind in ("NUMBER", "STRING", "KEYWORD"):
            return Literal(token.value)
        if token.kind == "OP" and token.value == "(":
            node = self._or()
            self._expect(")")
            return node
        if token.kind == "OP" and token.value == "[":
            items = []
            if not self._at_op("]"):
                items.append(self._or())
                while self._at_op(","):
                    self._advance()
                    items.append(self._or())
            self._expect("]")
            return ArrayLiteral(tuple(items))
        if token.kind == "OP" and token.value == "{":
            pairs = []
            if not self._at_op("}"):
                pairs.append(self._pair())
                while self._at_op(","):
                    self._advance()
                    pairs.append(self._pair())
            self._expect("}")
            return ObjectLiteral(tuple(pairs))
        found = "end of expression" if token.kind == "EOF" else repr(token.value)
        raise ConditionError(f"Unexpected {found} at position {token.pos}", self.condition)

    def _pair(self) -> tuple[str, Node]:
        token = self._advance()
        if token.kind != "STRING":
            raise ConditionError(f"Object keys must be strings (position {token.pos})", self.condition)
        self._expect(":")
        return token.value, self._or()


def parse_expression(expression: str, condition: str | None = None) -> Node:
    """Parse a substituted expression into an AST.

    Raises:
        ConditionError: if the expression falls outside the grammar
    """
    condition = condition if condition is not None else expression
    if not expression or not expression.strip():
        raise ConditionError("Condition cannot be empty", condition)
    return _Parser(tokenize(expression, condition), condition).parse()


def evaluate_condition(condition: str, variables: dict[str, Any], strict: bool = True) -> bool:
    """Evaluate a condition string against workflow variables.

    Args:
        condition: Expression such as "${LEVEL} === 0 && ${READY} === true"
        variables: Workflow variables
        strict: If False, unresolved variables evaluate as `undefined`
                instead of raising

    Raises:
        ConditionError: on unresolved variables (strict), syntax outside the
                        grammar, or a non-boolean result
    """
    if not condition or not condition.strip():
        raise ConditionError("Condition cannot be empty", condition or "")

    resolved = substitute_variables(condition, variables, strict)
    result = parse_expression(resolved, condition).evaluate()

    if not isinstance(result, bool):
        raise ConditionError(f"Condition must evaluate to boolean, got {_kind(result)}", condition)

    logger.debug(f"Condition {condition!r} -> {resolved!r} = {result}")
    return result
