"""
PATCH path expressions.

Supported forms:
- ``displayName``                    attribute
- ``members``                        collection
- ``members[value eq "<literal>"]``  single equality filter on a collection

Anything else parses to InvalidTarget, which the interpreter applies as a
no-op. A bad path never fails the request.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Union

import structlog

logger = structlog.get_logger()


@dataclass(frozen=True, slots=True)
class EmptyTarget:
    pass


@dataclass(frozen=True, slots=True)
class AttributeTarget:
    name: str


@dataclass(frozen=True, slots=True)
class CollectionTarget:
    name: str


@dataclass(frozen=True, slots=True)
class FilteredCollectionTarget:
    collection: str
    attribute: str
    literal: str


@dataclass(frozen=True, slots=True)
class InvalidTarget:
    path: str
    reason: str


PathTarget = Union[
    EmptyTarget,
    AttributeTarget,
    CollectionTarget,
    FilteredCollectionTarget,
    InvalidTarget,
]


class PathSyntaxError(ValueError):
    def __init__(self, message: str, position: int) -> None:
        super().__init__(f"{message} at position {position}")
        self.position = position


class _Scanner:
    def __init__(self, text: str) -> None:
        self.text = text
        self.pos = 0

    def at_end(self) -> bool:
        return self.pos >= len(self.text)

    def peek(self) -> str:
        return "" if self.at_end() else self.text[self.pos]

    def skip_whitespace(self) -> None:
        while not self.at_end() and self.text[self.pos].isspace():
            self.pos += 1

    def expect(self, char: str) -> None:
        self.skip_whitespace()
        if self.peek() != char:
            found = self.peek() or "end of input"
            raise PathSyntaxError(f"expected '{char}', found '{found}'", self.pos)
        self.pos += 1

    def identifier(self) -> str:
        self.skip_whitespace()
        start = self.pos
        if self.peek() == "$":
            self.pos += 1
        if not self.peek().isalpha():
            raise PathSyntaxError("expected attribute name", self.pos)
        while not self.at_end() and (
            self.text[self.pos].isalnum() or self.text[self.pos] in "_-"
        ):
            self.pos += 1
        return self.text[start : self.pos]

    def keyword(self, word: str) -> None:
        self.skip_whitespace()
        start = self.pos
        end = start + len(word)
        if self.text[start:end].lower() != word:
            raise PathSyntaxError(f"expected operator '{word}'", start)
        # The operator must stand alone: `valueeq"x"` is not a predicate.
        if end >= len(self.text) or not self.text[end].isspace():
            raise PathSyntaxError(f"expected whitespace after '{word}'", end)
        self.pos = end

    def string_literal(self) -> str:
        self.skip_whitespace()
        if self.peek() != '"':
            raise PathSyntaxError("expected double-quoted literal", self.pos)
        self.pos += 1
        chars: list[str] = []
        while not self.at_end():
            char = self.text[self.pos]
            if char == "\\":
                if self.pos + 1 >= len(self.text):
                    break
                escaped = self.text[self.pos + 1]
                if escaped not in ('"', "\\"):
                    raise PathSyntaxError(f"unsupported escape '\\{escaped}'", self.pos)
                chars.append(escaped)
                self.pos += 2
                continue
            if char == '"':
                self.pos += 1
                return "".join(chars)
            chars.append(char)
            self.pos += 1
        raise PathSyntaxError("unterminated string literal", self.pos)

    def expect_end(self) -> None:
        self.skip_whitespace()
        if not self.at_end():
            raise PathSyntaxError(f"unexpected '{self.peek()}'", self.pos)


def _parse(text: str, collections: frozenset[str]) -> PathTarget:
    scanner = _Scanner(text)
    name = scanner.identifier()
    is_collection = name.lower() in collections

    scanner.skip_whitespace()
    if scanner.peek() != "[":
        scanner.expect_end()
        if is_collection:
            return CollectionTarget(name)
        return AttributeTarget(name)

    if not is_collection:
        raise PathSyntaxError(f"'{name}' is not a multi-valued attribute", 0)
    scanner.expect("[")
    attribute = scanner.identifier()
    scanner.keyword("eq")
    literal = scanner.string_literal()
    scanner.expect("]")
    scanner.expect_end()
    return FilteredCollectionTarget(name, attribute, literal)


def parse_path(path: str | None, collections: Iterable[str] = ()) -> PathTarget:
    """
    Parse a PATCH `path` into a target.

    `collections` names the multi-valued attributes of the resource; only those
    may carry a filter, and a bare collection name yields CollectionTarget.
    """
    if path is None or not path.strip():
        return EmptyTarget()

    known = frozenset(name.lower() for name in collections)
    try:
        return _parse(path, known)
    except PathSyntaxError as exc:
        logger.warning("scim_patch_path_invalid", path=path, reason=str(exc))
        return InvalidTarget(path=path, reason=str(exc))
