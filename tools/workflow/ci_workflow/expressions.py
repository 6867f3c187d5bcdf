"""Evaluator for ``${{ ... }}`` workflow expressions.

Covers the subset of the hosted-runner expression language used by workflow
files: literals, context lookups (``matrix.platform.runs-on``), object filters
(``needs.*.result``), index access, logical and comparison operators, and the
common functions including the job status checks.
"""

from __future__ import annotations

import functools
import json
import math
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple


class ExpressionError(ValueError):
    """Raised when an expression cannot be parsed or evaluated."""


@dataclass(frozen=True)
class StatusState:
    """Job state consulted by ``success()``, ``failure()`` and ``cancelled()``."""

    failed: bool = False
    cancelled: bool = False


DEFAULT_STATUS = StatusState()

STATUS_FUNCTIONS = frozenset({"success", "failure", "cancelled", "always"})

_OPEN = "${{"
_CLOSE = "}}"

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
    |(?P<number>0x[0-9a-fA-F]+|-?\d+(?:\.\d+)?(?:[eE][+-]?\d+)?)
    |(?P<string>'(?:[^']|'')*')
    |(?P<op>==|!=|<=|>=|&&|\|\||[<>!()\[\].,*])
    |(?P<ident>[A-Za-z_][A-Za-z0-9_-]*)
    """,
    re.VERBOSE,
)


@dataclass(frozen=True, slots=True)
class _Token:
    kind: str
    value: str
    pos: int


def _tokenize(source: str) -> List[_Token]:
    tokens: List[_Token] = []
    pos = 0
    while pos < len(source):
        match = _TOKEN_RE.match(source, pos)
        if match is None:
            raise ExpressionError(f"Unexpected character {source[pos]!r} at {pos} in expression '{source}'")
        kind = match.lastgroup or ""
        if kind != "ws":
            tokens.append(_Token(kind, match.group(), pos))
        pos = match.end()
    return tokens


class _FilteredArray(list):
    """Result of an object filter; property access maps over the elements."""


# AST nodes are plain tuples: (kind, *payload).
_Node = Tuple[Any, ...]


class _Parser:
    def __init__(self, source: str) -> None:
        self.source = source
        self.tokens = _tokenize(source)
        self.index = 0

    def parse(self) -> _Node:
        if not self.tokens:
            raise ExpressionError("Empty expression")
        node = self._or()
        if self.index < len(self.tokens):
            token = self.tokens[self.index]
            raise ExpressionError(f"Unexpected token '{token.value}' at {token.pos} in expression '{self.source}'")
        return node

    def _peek(self) -> Optional[_Token]:
        return self.tokens[self.index] if self.index < len(self.tokens) else None

    def _accept(self, value: str) -> bool:
        token = self._peek()
        if token is not None and token.kind == "op" and token.value == value:
            self.index += 1
            return True
        return False

    def _expect(self, value: str) -> None:
        if not self._accept(value):
            token = self._peek()
            found = token.value if token else "end of expression"
            raise ExpressionError(f"Expected '{value}' but found '{found}' in expression '{self.source}'")

    def _or(self) -> _Node:
        node = self._and()
        while self._accept("||"):
            node = ("or", node, self._and())
        return node

    def _and(self) -> _Node:
        node = self._equality()
        while self._accept("&&"):
            node = ("and", node, self._equality())
        return node

    def _equality(self) -> _Node:
        node = self._comparison()
        while True:
            token = self._peek()
            if token is not None and token.kind == "op" and token.value in ("==", "!="):
                self.index += 1
                node = ("cmp", token.value, node, self._comparison())
            else:
                return node

    def _comparison(self) -> _Node:
        node = self._unary()
        while True:
            token = self._peek()
            if token is not None and token.kind == "op" and token.value in ("<", "<=", ">", ">="):
                self.index += 1
                node = ("cmp", token.value, node, self._unary())
            else:
                return node

    def _unary(self) -> _Node:
        if self._accept("!"):
            return ("not", self._unary())
        return self._postfix(self._primary())

    def _primary(self) -> _Node:
        token = self._peek()
        if token is None:
            raise ExpressionError(f"Unexpected end of expression '{self.source}'")
        self.index += 1
        if token.kind == "number":
            return ("lit", _parse_number(token.value))
        if token.kind == "string":
            return ("lit", token.value[1:-1].replace("''", "'"))
        if token.kind == "op" and token.value == "(":
            node = self._or()
            self._expect(")")
            return node
        if token.kind == "ident":
            lowered = token.value.lower()
            if lowered == "true":
                return ("lit", True)
            if lowered == "false":
                return ("lit", False)
            if lowered == "null":
                return ("lit", None)
            if self._accept("("):
                args: List[_Node] = []
                if not self._accept(")"):
                    args.append(self._or())
                    while self._accept(","):
                        args.append(self._or())
                    self._expect(")")
                return ("call", lowered, args)
            return ("ctx", token.value)
        raise ExpressionError(f"Unexpected token '{token.value}' at {token.pos} in expression '{self.source}'")

    def _postfix(self, node: _Node) -> _Node:
        while True:
            if self._accept("."):
                token = self._peek()
                if token is not None and token.kind == "op" and token.value == "*":
                    self.index += 1
                    node = ("star", node)
                elif token is not None and token.kind == "ident":
                    self.index += 1
                    node = ("prop", node, token.value)
                else:
                    raise ExpressionError(f"Expected property name after '.' in expression '{self.source}'")
            elif self._accept("["):
                if self._accept("*"):
                    node = ("star", node)
                else:
                    node = ("index", node, self._or())
                self._expect("]")
            else:
                return node


def _parse_number(text: str) -> float | int:
    if text.lower().startswith("0x"):
        return int(text, 16)
    value = float(text)
    return int(value) if value.is_integer() and "." not in text and "e" not in text.lower() else value


@functools.lru_cache(maxsize=1024)
def parse(source: str) -> _Node:
    return _Parser(source).parse()


def uses_status_function(source: str) -> bool:
    return _contains_status_call(parse(source))


def _contains_status_call(node: _Node) -> bool:
    kind = node[0]
    if kind == "call":
        if node[1] in STATUS_FUNCTIONS:
            return True
        return any(_contains_status_call(arg) for arg in node[2])
    for child in node[1:]:
        if isinstance(child, tuple) and child and isinstance(child[0], str):
            if _contains_status_call(child):
                return True
    return False


# -- value semantics ---------------------------------------------------------


def is_truthy(value: Any) -> bool:
    if value is None or value is False:
        return False
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value != 0 and not math.isnan(value)
    if isinstance(value, str):
        return value != ""
    return True


def _to_number(value: Any) -> float:
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return 0.0
        try:
            return float(int(stripped, 16)) if stripped.lower().startswith("0x") else float(stripped)
        except ValueError:
            return math.nan
    return math.nan


def _compare(op: str, left: Any, right: Any) -> bool:
    if isinstance(left, str) and isinstance(right, str):
        a: Any = left.casefold()
        b: Any = right.casefold()
    elif isinstance(left, (dict, list)) or isinstance(right, (dict, list)):
        if op == "==":
            return left is right
        if op == "!=":
            return left is not right
        return False
    else:
        a, b = _to_number(left), _to_number(right)
        if math.isnan(a) or math.isnan(b):
            return op == "!="
    if op == "==":
        return a == b
    if op == "!=":
        return a != b
    if op == "<":
        return a < b
    if op == "<=":
        return a <= b
    if op == ">":
        return a > b
    return a >= b


def to_display_string(value: Any) -> str:
    """Convert an evaluated value the way interpolation into a string does."""

    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return repr(value)
    if isinstance(value, (dict, list)):
        return json.dumps(value, indent=2)
    return str(value)


def _format(template: str, *args: Any) -> str:
    out: List[str] = []
    index = 0
    while index < len(template):
        char = template[index]
        if template.startswith("{{", index):
            out.append("{")
            index += 2
            continue
        if template.startswith("}}", index):
            out.append("}")
            index += 2
            continue
        if char == "{":
            end = template.find("}", index)
            if end == -1:
                raise ExpressionError(f"Unclosed placeholder in format string '{template}'")
            key = template[index + 1 : end]
            if not key.isdigit() or int(key) >= len(args):
                raise ExpressionError(f"Invalid placeholder '{{{key}}}' in format string '{template}'")
            out.append(to_display_string(args[int(key)]))
            index = end + 1
            continue
        out.append(char)
        index += 1
    return "".join(out)


def _contains(search: Any, item: Any) -> bool:
    if isinstance(search, list):
        return any(_compare("==", element, item) for element in search)
    return to_display_string(item).casefold() in to_display_string(search).casefold()


def _from_json(value: Any) -> Any:
    try:
        return json.loads(to_display_string(value))
    except json.JSONDecodeError as exc:
        raise ExpressionError(f"fromJSON could not parse {value!r}: {exc}") from exc


def _join(value: Any, separator: Any = ",") -> str:
    if isinstance(value, list):
        return to_display_string(separator).join(to_display_string(item) for item in value)
    return to_display_string(value)


_FUNCTIONS: Dict[str, Tuple[int, int, Callable[..., Any]]] = {
    "contains": (2, 2, _contains),
    "startswith": (2, 2, lambda s, p: to_display_string(s).casefold().startswith(to_display_string(p).casefold())),
    "endswith": (2, 2, lambda s, p: to_display_string(s).casefold().endswith(to_display_string(p).casefold())),
    "format": (1, 255, lambda t, *a: _format(to_display_string(t), *a)),
    "join": (1, 2, _join),
    "tojson": (1, 1, lambda v: json.dumps(v, indent=2)),
    "fromjson": (1, 1, _from_json),
}


class _Evaluator:
    def __init__(self, contexts: Mapping[str, Any], status: StatusState) -> None:
        self.contexts = contexts
        self.status = status

    def eval(self, node: _Node) -> Any:
        kind = node[0]
        if kind == "lit":
            return node[1]
        if kind == "ctx":
            return _lookup(self.contexts, node[1])
        if kind == "prop":
            return _property(self.eval(node[1]), node[2])
        if kind == "index":
            target = self.eval(node[1])
            key = self.eval(node[2])
            if isinstance(target, list) and not isinstance(key, str):
                position = _to_number(key)
                if math.isnan(position) or int(position) != position:
                    return None
                position_int = int(position)
                return target[position_int] if 0 <= position_int < len(target) else None
            return _property(target, to_display_string(key))
        if kind == "star":
            target = self.eval(node[1])
            if isinstance(target, dict):
                return _FilteredArray(target.values())
            if isinstance(target, list):
                return _FilteredArray(target)
            return _FilteredArray()
        if kind == "not":
            return not is_truthy(self.eval(node[1]))
        if kind == "and":
            left = self.eval(node[1])
            return self.eval(node[2]) if is_truthy(left) else left
        if kind == "or":
            left = self.eval(node[1])
            return left if is_truthy(left) else self.eval(node[2])
        if kind == "cmp":
            return _compare(node[1], self.eval(node[2]), self.eval(node[3]))
        if kind == "call":
            return self._call(node[1], node[2])
        raise ExpressionError(f"Unknown expression node '{kind}'")  # pragma: no cover - parser invariant

    def _call(self, name: str, arg_nodes: Sequence[_Node]) -> Any:
        if name in STATUS_FUNCTIONS:
            if arg_nodes:
                raise ExpressionError(f"Function '{name}()' takes no arguments")
            if name == "always":
                return True
            if name == "cancelled":
                return self.status.cancelled
            if name == "failure":
                return self.status.failed and not self.status.cancelled
            return not self.status.failed and not self.status.cancelled
        try:
            minimum, maximum, func = _FUNCTIONS[name]
        except KeyError as exc:
            raise ExpressionError(f"Unknown function '{name}'") from exc
        if not minimum <= len(arg_nodes) <= maximum:
            raise ExpressionError(f"Function '{name}' expects {minimum}..{maximum} arguments, got {len(arg_nodes)}")
        args = [_plain(self.eval(arg)) for arg in arg_nodes]
        return func(*args)


def _plain(value: Any) -> Any:
    if isinstance(value, _FilteredArray):
        return list(value)
    return value


def _lookup(contexts: Mapping[str, Any], name: str) -> Any:
    if name in contexts:
        return contexts[name]
    lowered = name.lower()
    for key, value in contexts.items():
        if key.lower() == lowered:
            return value
    raise ExpressionError(f"Unrecognized named-value '{name}'")


def _property(target: Any, name: str) -> Any:
    if isinstance(target, _FilteredArray):
        mapped = _FilteredArray()
        for element in target:
            value = _property(element, name)
            if isinstance(value, _FilteredArray):
                mapped.extend(value)
            elif value is not None:
                mapped.append(value)
        return mapped
    if isinstance(target, Mapping):
        if name in target:
            return target[name]
        lowered = name.lower()
        for key, value in target.items():
            if isinstance(key, str) and key.lower() == lowered:
                return value
    return None


def evaluate(source: str, contexts: Mapping[str, Any], *, status: StatusState = DEFAULT_STATUS) -> Any:
    """Evaluate a bare expression (no ``${{ }}`` wrapper)."""

    return _plain(_Evaluator(contexts, status).eval(parse(source.strip())))


def _find_close(template: str, start: int) -> int:
    index = start
    in_string = False
    while index < len(template):
        char = template[index]
        if char == "'":
            in_string = not in_string
        elif not in_string and template.startswith(_CLOSE, index):
            return index
        index += 1
    raise ExpressionError(f"Unterminated expression in '{template}'")


def split_template(template: str) -> List[Tuple[bool, str]]:
    """Split ``template`` into ``(is_expression, text)`` segments."""

    segments: List[Tuple[bool, str]] = []
    cursor = 0
    while True:
        start = template.find(_OPEN, cursor)
        if start == -1:
            if cursor < len(template):
                segments.append((False, template[cursor:]))
            return segments
        if start > cursor:
            segments.append((False, template[cursor:start]))
        end = _find_close(template, start + len(_OPEN))
        segments.append((True, template[start + len(_OPEN) : end].strip()))
        cursor = end + len(_CLOSE)


def interpolate(template: Any, contexts: Mapping[str, Any], *, status: StatusState = DEFAULT_STATUS) -> Any:
    """Resolve expressions embedded in ``template``.

    A string that is exactly one ``${{ expr }}`` keeps the evaluated type, so a
    ``continue-on-error`` or ``matrix`` expression yields a bool or mapping.
    Anything else is rendered to a string. Mappings and lists are resolved
    recursively.
    """

    if isinstance(template, str):
        segments = split_template(template)
        if len(segments) == 1 and segments[0][0]:
            return evaluate(segments[0][1], contexts, status=status)
        if not any(is_expr for is_expr, _ in segments):
            return template
        return "".join(
            to_display_string(evaluate(text, contexts, status=status)) if is_expr else text
            for is_expr, text in segments
        )
    if isinstance(template, Mapping):
        return {key: interpolate(value, contexts, status=status) for key, value in template.items()}
    if isinstance(template, list):
        return [interpolate(item, contexts, status=status) for item in template]
    return template


def _strip_wrapper(condition: str) -> str:
    stripped = condition.strip()
    segments = split_template(stripped)
    if len(segments) == 1 and segments[0][0]:
        return segments[0][1]
    if any(is_expr for is_expr, _ in segments):
        # Mixed literal text and expressions always renders a non-empty string.
        return "'" + stripped.replace("'", "''") + "'"
    return stripped


def evaluate_condition(
    condition: Optional[object],
    contexts: Mapping[str, Any],
    *,
    status: StatusState = DEFAULT_STATUS,
) -> bool:
    """Evaluate an ``if:`` condition.

    Conditions without a status function are implicitly ``success() && (...)``.
    """

    if condition is None:
        return evaluate("success()", contexts, status=status)
    if isinstance(condition, bool):
        return condition and evaluate("success()", contexts, status=status)
    if isinstance(condition, (int, float)):
        return is_truthy(condition) and evaluate("success()", contexts, status=status)
    source = _strip_wrapper(str(condition))
    if not source:
        return evaluate("success()", contexts, status=status)
    if not uses_status_function(source):
        source = f"success() && ({source})"
    return is_truthy(evaluate(source, contexts, status=status))


def collect_references(template: Any, context_name: str) -> List[str]:
    """Return property names referenced as ``<context_name>.<NAME>`` in ``template``."""

    found: List[str] = []

    def _walk_node(node: _Node) -> None:
        if node[0] == "prop" and node[1][0] == "ctx" and node[1][1].lower() == context_name.lower():
            if node[2] not in found:
                found.append(node[2])
        for child in node[1:]:
            if isinstance(child, tuple) and child and isinstance(child[0], str):
                _walk_node(child)
            elif isinstance(child, list):
                for item in child:
                    _walk_node(item)

    def _walk(value: Any) -> None:
        if isinstance(value, str):
            for is_expr, text in split_template(value):
                if is_expr:
                    _walk_node(parse(text))
        elif isinstance(value, Mapping):
            for item in value.values():
                _walk(item)
        elif isinstance(value, list):
            for item in value:
                _walk(item)

    _walk(template)
    return found
