"""
Template values.

Values are a tree of nested dicts, lists and scalars built from JSON
"balances" files, then overridden by ``--set`` / ``--set-string``
expressions::

    image.tag=1.2.3,replicas=3        nested keys, typed scalars
    hosts[0]=a.example.com            list elements
    ports={80,443}                    list literal
    motd=hello\\, world               backslash escapes a separator
"""
import json
import logging
import re
from typing import Any, Dict, Iterable, List, Tuple, Union

from ecs_rollout.exceptions import TemplateError
from ecs_rollout.templates.loader import read_file_or_uri

logger = logging.getLogger(__name__)

MAX_LIST_INDEX = 65536

_INT_RE = re.compile(r"^-?(0|[1-9][0-9]*)$")

PathSegment = Union[str, int]


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge ``override`` into a copy of ``base``; override wins."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            if key in result:
                logger.debug(f"Override: {key} = {value!r} (was: {result[key]!r})")
            result[key] = value
    return result


def parse_balances(location: str, s3_client=None) -> Dict[str, Any]:
    """Load one JSON balances file (local path or URI)."""
    raw = read_file_or_uri(location, s3_client=s3_client)
    try:
        balances = json.loads(raw)
    except ValueError as e:
        raise TemplateError(f"Error parsing JSON of balances file {location}: {e}") from e
    if not isinstance(balances, dict):
        raise TemplateError(f"Balances file {location} must contain a JSON object")
    return balances


def typed_value(raw: str) -> Any:
    """``true``/``false`` -> bool, ``null`` -> None, integers -> int, else str."""
    lowered = raw.lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    if lowered == "null":
        return None
    if _INT_RE.match(raw):
        return int(raw)
    return raw


class _ExpressionParser:
    """Parses one ``key=value[,key=value...]`` expression into assignments."""

    def __init__(self, text: str, typed: bool):
        self.text = text
        self.typed = typed
        self.pos = 0

    def parse(self) -> List[Tuple[List[PathSegment], Any]]:
        assignments = []
        while self.pos < len(self.text):
            path = self._read_path()
            assignments.append((path, self._read_value()))
        return assignments

    def _error(self, message: str) -> TemplateError:
        return TemplateError(f"Invalid value expression {self.text!r}: {message}")

    def _read_path(self) -> List[PathSegment]:
        path: List[PathSegment] = []
        key = []
        while self.pos < len(self.text):
            char = self.text[self.pos]
            self.pos += 1
            if char == "\\":
                key.append(self._escaped())
            elif char == ".":
                path.append(self._segment(key))
                key = []
            elif char == "[":
                if key:
                    path.append("".join(key))
                    key = []
                path.append(self._read_index())
                if self.pos < len(self.text) and self.text[self.pos] == ".":
                    self.pos += 1
            elif char == "=":
                if key:
                    path.append("".join(key))
                if not path:
                    raise self._error("empty key")
                return path
            elif char == ",":
                raise self._error(f"key {''.join(key)!r} has no value")
            else:
                key.append(char)
        raise self._error(f"key {''.join(key)!r} has no value")

    def _segment(self, key: List[str]) -> str:
        if not key:
            raise self._error("empty key segment")
        return "".join(key)

    def _read_index(self) -> int:
        end = self.text.find("]", self.pos)
        if end == -1:
            raise self._error("unterminated list index")
        raw = self.text[self.pos:end]
        self.pos = end + 1
        if not raw.isdigit():
            raise self._error(f"list index {raw!r} is not a non-negative integer")
        index = int(raw)
        if index > MAX_LIST_INDEX:
            raise self._error(f"list index {index} exceeds {MAX_LIST_INDEX}")
        return index

    def _escaped(self) -> str:
        if self.pos >= len(self.text):
            raise self._error("dangling backslash")
        char = self.text[self.pos]
        self.pos += 1
        return char

    def _read_value(self) -> Any:
        if self.pos < len(self.text) and self.text[self.pos] == "{":
            self.pos += 1
            return self._read_list()
        return self._convert(self._read_scalar(stops=","))

    def _read_list(self) -> List[Any]:
        items = []
        while True:
            if self.pos >= len(self.text):
                raise self._error("unterminated list literal")
            if self.text[self.pos] == "}":
                self.pos += 1
                break
            items.append(self._convert(self._read_scalar(stops=",}")))
            if self.pos < len(self.text) and self.text[self.pos] == ",":
                self.pos += 1
        if self.pos < len(self.text):
            if self.text[self.pos] != ",":
                raise self._error("unexpected text after list literal")
            self.pos += 1
        return items

    def _read_scalar(self, stops: str) -> str:
        chars = []
        while self.pos < len(self.text):
            char = self.text[self.pos]
            if char in stops:
                if char == ",":
                    # A trailing comma ends a top-level value; inside a list the
                    # caller consumes it
                    if stops == ",":
                        self.pos += 1
                return "".join(chars)
            self.pos += 1
            if char == "\\":
                chars.append(self._escaped())
            else:
                chars.append(char)
        return "".join(chars)

    def _convert(self, raw: str) -> Any:
        return typed_value(raw) if self.typed else raw


def _put(container: Union[Dict[str, Any], List[Any]], key: PathSegment, value: Any) -> None:
    if isinstance(key, int):
        if not isinstance(container, list):
            raise TemplateError(f"Cannot index a mapping with [{key}]")
        while len(container) <= key:
            container.append(None)
        container[key] = value
    else:
        if not isinstance(container, dict):
            raise TemplateError(f"Cannot set key {key!r} on a list")
        container[key] = value


def _get(container: Union[Dict[str, Any], List[Any]], key: PathSegment) -> Any:
    if isinstance(key, int):
        if isinstance(container, list) and key < len(container):
            return container[key]
        return None
    if isinstance(container, dict):
        return container.get(key)
    return None


def _assign(container: Union[Dict[str, Any], List[Any]], path: List[PathSegment], value: Any) -> None:
    head, rest = path[0], path[1:]
    if not rest:
        _put(container, head, value)
        return
    child = _get(container, head)
    wanted = list if isinstance(rest[0], int) else dict
    if not isinstance(child, wanted):
        child = wanted()
        _put(container, head, child)
    _assign(child, rest, value)


def parse_into(expression: str, values: Dict[str, Any], typed: bool = True) -> Dict[str, Any]:
    """Apply a ``--set`` (typed) or ``--set-string`` expression to ``values`` in place."""
    for path, value in _ExpressionParser(expression, typed).parse():
        _assign(values, path, value)
    return values


def merge_values(balance_files: Iterable[str] = (), values: Iterable[str] = (),
                 string_values: Iterable[str] = (), s3_client=None) -> Dict[str, Any]:
    """Build the template values tree.

    Balances files are deep-merged in order (later files win), then each
    ``--set`` expression is applied with typed scalars, then each
    ``--set-string`` expression with plain strings.
    """
    base: Dict[str, Any] = {}
    for location in balance_files:
        base = deep_merge(base, parse_balances(location, s3_client=s3_client))
    for expression in values:
        parse_into(expression, base, typed=True)
    for expression in string_values:
        parse_into(expression, base, typed=False)
    return base
