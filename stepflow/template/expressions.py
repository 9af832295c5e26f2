"""
Template expression parsing and evaluation.

Template strings mix literal text with ${...} blocks. Each block holds a small
expression: literals, key lookups (steps.build.outputs.stdout, args["$all"]),
function calls, comparisons, &&, ||, ! and the ternary operator. $${ escapes a
literal ${.

A string made of exactly one ${...} block evaluates to the raw value, anything
else is rendered as a string.
"""

import json
import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Union

from ..exceptions import ContextKeyError, StepflowError, TemplateStringError


# Nodes

@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Lookup:
    """Key lookup. The first part is the root identifier, the rest are str/int keys or nodes."""
    parts: Tuple[Any, ...]


@dataclass(frozen=True)
class Call:
    name: str
    args: Tuple[Any, ...]


@dataclass(frozen=True)
class Not:
    operand: Any


@dataclass(frozen=True)
class Binary:
    op: str
    left: Any
    right: Any


@dataclass(frozen=True)
class Ternary:
    condition: Any
    if_true: Any
    if_false: Any


Node = Union[Literal, Lookup, Call, Not, Binary, Ternary]


@dataclass(frozen=True)
class ParsedTemplate:
    """A template string split into literal text and expression nodes."""
    source: str
    parts: Tuple[Union[str, Node], ...]

    @property
    def is_single_expression(self) -> bool:
        return len(self.parts) == 1 and not isinstance(self.parts[0], str)

    @property
    def has_expressions(self) -> bool:
        return any(not isinstance(p, str) for p in self.parts)


# Tokenizer

_TOKEN_PATTERN = re.compile(r"""
    (?P<ws>\s+)
  | (?P<number>-?\d+(?:\.\d+)?)
  | (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
  | (?P<op>==|!=|<=|>=|&&|\|\||[.\[\](),!<>+?:])
  | (?P<ident>[A-Za-z_$][A-Za-z0-9_$\-]*)
""", re.VERBOSE)

# Keys after a dot may also start with a digit or a dash (args.--, steps.1-init)
_SEGMENT_PATTERN = re.compile(r"[A-Za-z0-9_$\-]+")

_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "\\": "\\", '"': '"', "'": "'"}


@dataclass
class _Token:
    kind: str
    value: Any
    pos: int


def _unquote(raw: str) -> str:
    body = raw[1:-1]
    return re.sub(r"\\(.)", lambda m: _ESCAPES.get(m.group(1), m.group(1)), body)


def _tokenize(expr: str, template: str) -> List[_Token]:
    tokens: List[_Token] = []
    pos = 0
    while pos < len(expr):
        if tokens and tokens[-1].kind == "op" and tokens[-1].value == ".":
            match = _SEGMENT_PATTERN.match(expr, pos)
            if match:
                tokens.append(_Token("ident", match.group(0), pos))
                pos = match.end()
                continue

        match = _TOKEN_PATTERN.match(expr, pos)
        if not match:
            raise TemplateStringError(
                f"Invalid template string ({template}): unexpected character "
                f"'{expr[pos]}' at position {pos} of '{expr}'",
                context={"template": template},
            )
        kind = match.lastgroup
        text = match.group(0)
        pos = match.end()

        if kind == "ws":
            continue
        if kind == "number":
            tokens.append(_Token("literal", float(text) if "." in text else int(text), match.start()))
        elif kind == "string":
            tokens.append(_Token("literal", _unquote(text), match.start()))
        elif kind == "ident" and text in ("true", "false", "null"):
            tokens.append(_Token("literal", {"true": True, "false": False, "null": None}[text], match.start()))
        else:
            tokens.append(_Token(kind, text, match.start()))

    tokens.append(_Token("end", None, len(expr)))
    return tokens


# Parser

class _Parser:
    """Recursive-descent parser for a single ${...} expression."""

    def __init__(self, expr: str, template: str):
        self.expr = expr
        self.template = template
        self.tokens = _tokenize(expr, template)
        self.index = 0

    def error(self, message: str) -> TemplateStringError:
        return TemplateStringError(
            f"Invalid template string ({self.template}): {message}",
            context={"template": self.template, "expression": self.expr},
        )

    def peek(self) -> _Token:
        return self.tokens[self.index]

    def advance(self) -> _Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def accept(self, op: str) -> bool:
        token = self.peek()
        if token.kind == "op" and token.value == op:
            self.index += 1
            return True
        return False

    def expect(self, op: str):
        if not self.accept(op):
            token = self.peek()
            found = "end of expression" if token.kind == "end" else repr(token.value)
            raise self.error(f"expected '{op}' but found {found} in '{self.expr}'")

    def parse(self) -> Node:
        if self.peek().kind == "end":
            raise self.error("empty expression")
        node = self.parse_ternary()
        if self.peek().kind != "end":
            raise self.error(f"unexpected {self.peek().value!r} in '{self.expr}'")
        return node

    def parse_ternary(self) -> Node:
        condition = self.parse_or()
        if self.accept("?"):
            if_true = self.parse_ternary()
            self.expect(":")
            if_false = self.parse_ternary()
            return Ternary(condition, if_true, if_false)
        return condition

    def parse_or(self) -> Node:
        node = self.parse_and()
        while self.accept("||"):
            node = Binary("||", node, self.parse_and())
        return node

    def parse_and(self) -> Node:
        node = self.parse_comparison()
        while self.accept("&&"):
            node = Binary("&&", node, self.parse_comparison())
        return node

    def parse_comparison(self) -> Node:
        node = self.parse_additive()
        while True:
            token = self.peek()
            if token.kind == "op" and token.value in ("==", "!=", "<", ">", "<=", ">="):
                self.advance()
                node = Binary(token.value, node, self.parse_additive())
            else:
                return node

    def parse_additive(self) -> Node:
        node = self.parse_unary()
        while self.accept("+"):
            node = Binary("+", node, self.parse_unary())
        return node

    def parse_unary(self) -> Node:
        if self.accept("!"):
            return Not(self.parse_unary())
        return self.parse_primary()

    def parse_primary(self) -> Node:
        token = self.advance()

        if token.kind == "literal":
            return Literal(token.value)

        if token.kind == "op" and token.value == "(":
            node = self.parse_ternary()
            self.expect(")")
            return node

        if token.kind == "op" and token.value == "[":
            items = []
            if not self.accept("]"):
                items.append(self.parse_ternary())
                while self.accept(","):
                    items.append(self.parse_ternary())
                self.expect("]")
            return Call("list", tuple(items))

        if token.kind == "ident":
            if self.accept("("):
                args = []
                if not self.accept(")"):
                    args.append(self.parse_ternary())
                    while self.accept(","):
                        args.append(self.parse_ternary())
                    self.expect(")")
                return Call(token.value, tuple(args))
            return self.parse_lookup(token.value)

        found = "end of expression" if token.kind == "end" else repr(token.value)
        raise self.error(f"unexpected {found} in '{self.expr}'")

    def parse_lookup(self, root: str) -> Lookup:
        parts: List[Any] = [root]
        while True:
            if self.accept("."):
                token = self.advance()
                if token.kind == "ident":
                    parts.append(token.value)
                elif token.kind == "literal" and isinstance(token.value, int):
                    parts.append(token.value)
                else:
                    raise self.error(f"expected a key after '.' in '{self.expr}'")
            elif self.accept("["):
                key = self.parse_ternary()
                self.expect("]")
                parts.append(key.value if isinstance(key, Literal) else key)
            else:
                return Lookup(tuple(parts))


def _find_expression_end(text: str, start: int) -> int:
    """Return the index of the closing brace of the block starting at `start`, or -1."""
    quote = None
    i = start
    while i < len(text):
        char = text[i]
        if quote:
            if char == "\\":
                i += 1
            elif char == quote:
                quote = None
        elif char in ("'", '"'):
            quote = char
        elif char == "}":
            return i
        i += 1
    return -1


@lru_cache(maxsize=1024)
def parse_template(text: str) -> ParsedTemplate:
    """
    Split a template string into literal text and parsed expressions.

    Args:
        text: Template string

    Returns:
        ParsedTemplate

    Raises:
        TemplateStringError: On unterminated blocks or invalid expressions
    """
    parts: List[Union[str, Node]] = []
    buffer = []
    i = 0
    while i < len(text):
        if text.startswith("$${", i):
            buffer.append("${")
            i += 3
            continue
        if text.startswith("${", i):
            end = _find_expression_end(text, i + 2)
            if end < 0:
                raise TemplateStringError(
                    f"Invalid template string ({text}): unterminated '${{' block",
                    context={"template": text},
                )
            if buffer:
                parts.append("".join(buffer))
                buffer = []
            parts.append(_Parser(text[i + 2:end], text).parse())
            i = end + 1
            continue
        buffer.append(text[i])
        i += 1

    if buffer:
        parts.append("".join(buffer))
    return ParsedTemplate(source=text, parts=tuple(parts))


def iter_lookups(node: Any) -> Iterator[Lookup]:
    """Yield every Lookup node contained in a node, including lookups nested in keys."""
    if isinstance(node, Lookup):
        yield node
        for part in node.parts[1:]:
            if not isinstance(part, (str, int)):
                yield from iter_lookups(part)
    elif isinstance(node, Call):
        for arg in node.args:
            yield from iter_lookups(arg)
    elif isinstance(node, Not):
        yield from iter_lookups(node.operand)
    elif isinstance(node, Binary):
        yield from iter_lookups(node.left)
        yield from iter_lookups(node.right)
    elif isinstance(node, Ternary):
        yield from iter_lookups(node.condition)
        yield from iter_lookups(node.if_true)
        yield from iter_lookups(node.if_false)


# Evaluation

def stringify(value: Any) -> str:
    """Render a value for interpolation into a larger string."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)):
        return str(value)
    return json.dumps(value, default=str)


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (str, list, tuple, dict)):
        return len(value) == 0
    return False


def _json_decode(value: str) -> Any:
    try:
        return json.loads(value)
    except (TypeError, ValueError) as e:
        raise TemplateStringError(f"json_decode: could not parse value as JSON: {e}")


FUNCTIONS: Dict[str, Callable[..., Any]] = {
    "join": lambda items, separator="": separator.join(stringify(i) for i in items),
    "split": lambda value, separator: value.split(separator),
    "lower": lambda value: value.lower(),
    "upper": lambda value: value.upper(),
    "trim": lambda value: value.strip(),
    "replace": lambda value, old, new: value.replace(old, new),
    "length": lambda value: len(value),
    "json_encode": lambda value: json.dumps(value, default=str),
    "json_decode": _json_decode,
    "is_empty": _is_empty,
    "string": stringify,
    "list": lambda *items: list(items),
}


class Evaluator:
    """Evaluates parsed expression nodes against a context exposing `resolve(key_path)`."""

    def __init__(self, context: Any):
        self.context = context

    def lookup_path(self, node: Lookup) -> List[Any]:
        path = [node.parts[0]]
        for part in node.parts[1:]:
            if isinstance(part, (str, int)):
                path.append(part)
            else:
                key = self.evaluate(part)
                if not isinstance(key, (str, int)) or isinstance(key, bool):
                    raise TemplateStringError(
                        f"Lookup keys must be strings or integers, got {type(key).__name__}"
                    )
                path.append(key)
        return path

    def evaluate(self, node: Node) -> Any:
        if isinstance(node, Literal):
            return node.value

        if isinstance(node, Lookup):
            return self.context.resolve(self.lookup_path(node))

        if isinstance(node, Call):
            func = FUNCTIONS.get(node.name)
            if func is None:
                raise TemplateStringError(
                    f"Unknown template function '{node.name}'. "
                    f"Available functions: {', '.join(sorted(k for k in FUNCTIONS if k != 'list'))}"
                )
            args = [self.evaluate(arg) for arg in node.args]
            try:
                return func(*args)
            except StepflowError:
                raise
            except (TypeError, AttributeError, ValueError) as e:
                raise TemplateStringError(f"Error calling {node.name}(): {e}")

        if isinstance(node, Not):
            return not self.evaluate(node.operand)

        if isinstance(node, Ternary):
            if self.evaluate(node.condition):
                return self.evaluate(node.if_true)
            return self.evaluate(node.if_false)

        if isinstance(node, Binary):
            return self._evaluate_binary(node)

        raise TemplateStringError(f"Cannot evaluate node {node!r}")

    def _evaluate_binary(self, node: Binary) -> Any:
        if node.op == "||":
            try:
                left = self.evaluate(node.left)
            except ContextKeyError:
                # Missing keys fall through to the right hand side
                return self.evaluate(node.right)
            return left if left else self.evaluate(node.right)

        if node.op == "&&":
            left = self.evaluate(node.left)
            return self.evaluate(node.right) if left else left

        left = self.evaluate(node.left)
        right = self.evaluate(node.right)

        if node.op == "==":
            return left == right
        if node.op == "!=":
            return left != right
        if node.op == "+":
            if isinstance(left, (int, float)) and isinstance(right, (int, float)) \
                    and not isinstance(left, bool) and not isinstance(right, bool):
                return left + right
            if isinstance(left, list) and isinstance(right, list):
                return left + right
            return stringify(left) + stringify(right)

        try:
            if node.op == "<":
                return left < right
            if node.op == ">":
                return left > right
            if node.op == "<=":
                return left <= right
            if node.op == ">=":
                return left >= right
        except TypeError:
            raise TemplateStringError(
                f"Cannot compare {type(left).__name__} and {type(right).__name__} with '{node.op}'"
            )
        raise TemplateStringError(f"Unknown operator '{node.op}'")


def evaluate_template(text: str, context: Any) -> Any:
    """
    Evaluate a template string.

    Args:
        text: Template string, possibly containing ${...} blocks
        context: Context exposing resolve(key_path)

    Returns:
        The raw value for a single-expression string, otherwise the rendered string
    """
    parsed = parse_template(text)
    if not parsed.has_expressions:
        return parsed.parts[0] if parsed.parts else ""

    evaluator = Evaluator(context)
    if parsed.is_single_expression:
        return evaluator.evaluate(parsed.parts[0])

    rendered = []
    for part in parsed.parts:
        if isinstance(part, str):
            rendered.append(part)
        else:
            rendered.append(stringify(evaluator.evaluate(part)))
    return "".join(rendered)


def deep_evaluate(value: Any, context: Any) -> Any:
    """
    Evaluate every template string in a nested structure.

    Dict keys are left as they are; lists, tuples and dict values are walked.

    Args:
        value: String, list, dict or any other value
        context: Context exposing resolve(key_path)

    Returns:
        A new structure with templates evaluated
    """
    if isinstance(value, str):
        return evaluate_template(value, context)
    elif isinstance(value, (list, tuple)):
        return [deep_evaluate(item, context) for item in value]
    elif isinstance(value, dict):
        return {k: deep_evaluate(v, context) for k, v in value.items()}
    else:
        return value
