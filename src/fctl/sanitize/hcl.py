"""
Structural Terraform Configuration Editor

Splits a ``.tf`` file into blocks and attributes and records the raw text span
of every attribute expression. Edits are span replacements on the original
text, so comments, alignment and anything the editor does not touch survive
byte for byte. Expressions are never interpreted beyond bracket, string,
heredoc and comment boundaries.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass, field

_PAIRS = {"(": ")", "[": "]", "{": "}"}
_HEREDOC = re.compile(r"<<-?([A-Za-z_][A-Za-z0-9_]*)[ \t]*\r?\n")
_IDENTIFIER = re.compile(r"[A-Za-z_][A-Za-z0-9_-]*")
_EMPTY_COLLECTIONS = ("", "{}", "[]")


class HCLSyntaxError(ValueError):
    """Raised when text cannot be split into blocks and attributes."""


@dataclass(slots=True)
class _Attribute:
    name: str
    name_start: int
    start: int
    end: int
    expr_start: int
    expr_end: int


@dataclass(slots=True)
class _Node:
    type: str
    labels: tuple[str, ...]
    start: int
    end: int
    body_start: int
    body_end: int
    attributes: list[_Attribute] = field(default_factory=list)
    blocks: list[_Node] = field(default_factory=list)


class _Scanner:
    """Bracket-aware scanner over one text buffer."""

    def __init__(self, text: str) -> None:
        self.text = text

    def error(self, pos: int, message: str) -> HCLSyntaxError:
        line = self.text.count("\n", 0, pos) + 1
        return HCLSyntaxError(f"line {line}: {message}")

    def skip_comment(self, pos: int) -> int:
        """Return the offset after a comment starting at ``pos``, or ``pos``."""
        text = self.text
        if text.startswith("#", pos) or text.startswith("//", pos):
            newline = text.find("\n", pos)
            return len(text) if newline == -1 else newline
        if text.startswith("/*", pos):
            close = text.find("*/", pos + 2)
            if close == -1:
                raise self.error(pos, "unterminated comment")
            return close + 2
        return pos

    def skip_trivia(self, pos: int, end: int) -> int:
        while pos < end:
            if self.text[pos] in " \t\r\n":
                pos += 1
                continue
            after = self.skip_comment(pos)
            if after == pos:
                break
            pos = after
        return pos

    def skip_inline_space(self, pos: int) -> int:
        while pos < len(self.text) and self.text[pos] in " \t":
            pos += 1
        return pos

    def skip_string(self, pos: int) -> int:
        text = self.text
        pos += 1
        while pos < len(text):
            char = text[pos]
            if char == "\\":
                pos += 2
            elif char == '"':
                return pos + 1
            elif char == "\n":
                break
            elif text.startswith(("$${", "%%{"), pos):
                pos += 3
            elif text.startswith(("${", "%{"), pos):
                pos = self.match_close(pos + 1) + 1
            else:
                pos += 1
        raise self.error(pos, "unterminated string")

    def skip_heredoc(self, pos: int) -> int:
        text = self.text
        match = _HEREDOC.match(text, pos)
        if match is None:
            raise self.error(pos, "malformed heredoc")
        marker = match.group(1)
        cursor = match.end()
        while cursor <= len(text):
            newline = text.find("\n", cursor)
            line_end = len(text) if newline == -1 else newline
            if text[cursor:line_end].strip() == marker:
                return line_end
            if newline == -1:
                break
            cursor = newline + 1
        raise self.error(pos, f"unterminated heredoc {marker}")

    def match_close(self, pos: int) -> int:
        """Return the offset of the bracket closing the one at ``pos``."""
        text = self.text
        stack = [_PAIRS[text[pos]]]
        pos += 1
        while pos < len(text):
            char = text[pos]
            if char == '"':
                pos = self.skip_string(pos)
                continue
            if char == "<" and _HEREDOC.match(text, pos):
                pos = self.skip_heredoc(pos)
                continue
            after = self.skip_comment(pos)
            if after != pos:
                pos = after
                continue
            if char in _PAIRS:
                stack.append(_PAIRS[char])
            elif char in ")]}":
                if char != stack.pop():
                    raise self.error(pos, f"unexpected {char!r}")
                if not stack:
                    return pos
            pos += 1
        raise self.error(pos, "unbalanced brackets")

    def expression_end(self, pos: int, end: int, commas: bool) -> int:
        """Return the offset just past the last significant character of an expression."""
        text = self.text
        last = pos
        while pos < end:
            char = text[pos]
            if char == "\n" or (commas and char == ","):
                break
            if char in " \t\r":
                pos += 1
                continue
            if char == '"':
                pos = self.skip_string(pos)
            elif char == "<" and _HEREDOC.match(text, pos):
                pos = self.skip_heredoc(pos)
            elif char in _PAIRS:
                pos = self.match_close(pos) + 1
            elif char in ")]}":
                raise self.error(pos, f"unexpected {char!r}")
            elif self.skip_comment(pos) != pos:
                break
            else:
                pos += 1
            last = pos
        if last > end:
            raise self.error(end, "expression runs past the end of its body")
        return last

    def line_start(self, pos: int) -> int:
        """Start of the line if only whitespace precedes ``pos`` on it."""
        cursor = pos
        while cursor > 0 and self.text[cursor - 1] in " \t":
            cursor -= 1
        if cursor == 0 or self.text[cursor - 1] == "\n":
            return cursor
        return pos

    def span_end(self, pos: int, limit: int) -> int:
        """Extend ``pos`` over trailing blanks, a line comment and the newline."""
        text = self.text
        cursor = pos
        while cursor < limit and text[cursor] in " \t\r":
            cursor += 1
        if text.startswith(("#", "//"), cursor):
            cursor = min(self.skip_comment(cursor), limit)
        if cursor >= limit:
            return limit
        if text[cursor] == "\n":
            return cursor + 1
        return pos

    def read_name(self, pos: int, quoted: bool) -> tuple[str, int]:
        if quoted and self.text.startswith('"', pos):
            end = self.skip_string(pos)
            return self.text[pos + 1 : end - 1], end
        match = _IDENTIFIER.match(self.text, pos)
        if match is None:
            raise self.error(pos, "expected identifier")
        return match.group(0), match.end()

    def parse_body(
        self, start: int, end: int, commas: bool = False
    ) -> tuple[list[_Attribute], list[_Node]]:
        text = self.text
        attributes: list[_Attribute] = []
        blocks: list[_Node] = []
        pos = start
        while True:
            pos = self.skip_trivia(pos, end)
            while commas and pos < end and text[pos] == ",":
                pos = self.skip_trivia(pos + 1, end)
            if pos >= end:
                break
            name_start = pos
            name, pos = self.read_name(pos, quoted=commas)
            pos = self.skip_inline_space(pos)
            is_assignment = text.startswith("=", pos) and not text.startswith("==", pos)
            if is_assignment or (commas and text.startswith(":", pos)):
                expr_start = self.skip_inline_space(pos + 1)
                expr_end = self.expression_end(expr_start, end, commas)
                if expr_end == expr_start:
                    raise self.error(expr_start, f"missing value for {name!r}")
                span = expr_end
                if commas:
                    cursor = self.skip_inline_space(expr_end)
                    if cursor < end and text[cursor] == ",":
                        span = cursor + 1
                attributes.append(
                    _Attribute(
                        name=name,
                        name_start=name_start,
                        start=self.line_start(name_start),
                        end=self.span_end(span, end),
                        expr_start=expr_start,
                        expr_end=expr_end,
                    )
                )
                pos = expr_end
                continue
            if commas:
                raise self.error(pos, f"expected '=' after {name!r}")
            labels: list[str] = []
            while True:
                pos = self.skip_inline_space(pos)
                if text.startswith("{", pos):
                    break
                if text.startswith('"', pos):
                    label_end = self.skip_string(pos)
                    labels.append(text[pos + 1 : label_end - 1])
                    pos = label_end
                    continue
                match = _IDENTIFIER.match(text, pos)
                if match is None:
                    raise self.error(pos, f"expected block body for {name!r}")
                labels.append(match.group(0))
                pos = match.end()
            close = self.match_close(pos)
            if close >= end:
                raise self.error(pos, f"block {name!r} is not closed")
            node = _Node(
                type=name,
                labels=tuple(labels),
                start=self.line_start(name_start),
                end=self.span_end(close + 1, end),
                body_start=pos + 1,
                body_end=close,
            )
            node.attributes, node.blocks = self.parse_body(pos + 1, close)
            blocks.append(node)
            pos = close + 1
        return attributes, blocks


def _parse(text: str) -> _Node:
    root = _Node(type="", labels=(), start=0, end=len(text), body_start=0, body_end=len(text))
    root.attributes, root.blocks = _Scanner(text).parse_body(0, len(text))
    return root


def _indent_at(text: str, pos: int) -> str:
    line_begin = text.rfind("\n", 0, pos) + 1
    cursor = line_begin
    while cursor < len(text) and text[cursor] in " \t":
        cursor += 1
    return text[line_begin:cursor]


class Document:
    """One configuration file held as text plus its block/attribute structure."""

    def __init__(self, text: str) -> None:
        self._text = text
        self._root = _parse(text)

    @property
    def text(self) -> str:
        return self._text

    @property
    def body(self) -> Block:
        return Block(self, ())

    def blocks(self, block_type: str | None = None) -> list[Block]:
        return self.body.blocks(block_type)

    def find_block(self, block_type: str, *labels: str) -> Block | None:
        for block in self.blocks(block_type):
            if block.labels[: len(labels)] == labels:
                return block
        return None

    def attribute_names(self) -> list[str]:
        return self.body.attribute_names()

    def is_empty(self) -> bool:
        """True when no blocks and no attributes remain (comments do not count)."""
        return not self._root.blocks and not self._root.attributes

    def clear(self) -> bool:
        if not self._text:
            return False
        self._replace(0, len(self._text), "")
        return True

    def append(self, snippet: str) -> None:
        """Append a top-level snippet separated from existing content by a blank line."""
        text = self._text
        prefix = ""
        if text.strip():
            prefix = "\n" if text.endswith("\n") else "\n\n"
        self._replace(len(text), len(text), f"{prefix}{snippet.rstrip()}\n")

    def _node(self, path: tuple[int, ...]) -> _Node:
        node = self._root
        for index in path:
            node = node.blocks[index]
        return node

    def _replace(self, start: int, end: int, replacement: str) -> None:
        text = self._text[:start] + replacement + self._text[end:]
        self._root = _parse(text)
        self._text = text


@dataclass(frozen=True, slots=True)
class Block:
    """View of one block addressed by its index path from the document root.

    Views stay valid across attribute edits; removing a block shifts the
    indices of its later siblings, so callers iterate removals in reverse.
    """

    document: Document
    path: tuple[int, ...]

    @property
    def _node(self) -> _Node:
        return self.document._node(self.path)

    @property
    def type(self) -> str:
        return self._node.type

    @property
    def labels(self) -> tuple[str, ...]:
        return self._node.labels

    @property
    def name(self) -> str:
        labels = self._node.labels
        return labels[-1] if labels else ""

    @property
    def text(self) -> str:
        node = self._node
        return self.document.text[node.start : node.end]

    def blocks(self, block_type: str | None = None) -> list[Block]:
        return [
            Block(self.document, (*self.path, index))
            for index, child in enumerate(self._node.blocks)
            if block_type is None or child.type == block_type
        ]

    def find_block(self, block_type: str) -> Block | None:
        found = self.blocks(block_type)
        return found[0] if found else None

    def attribute_names(self) -> list[str]:
        return [attribute.name for attribute in self._node.attributes]

    def has_attribute(self, name: str) -> bool:
        return self._attribute(name) is not None

    def expression(self, name: str) -> str | None:
        attribute = self._attribute(name)
        if attribute is None:
            return None
        return self.document.text[attribute.expr_start : attribute.expr_end]

    def remove_attribute(self, name: str) -> bool:
        attribute = self._attribute(name)
        if attribute is None:
            return False
        self.document._replace(attribute.start, attribute.end, "")
        return True

    def remove_attributes(self, names: tuple[str, ...] | frozenset[str]) -> bool:
        changed = False
        for name in names:
            changed |= self.remove_attribute(name)
        return changed

    def set_attribute(self, name: str, expression: str) -> bool:
        """Set an attribute's raw expression, appending it when absent."""
        attribute = self._attribute(name)
        if attribute is not None:
            current = self.document.text[attribute.expr_start : attribute.expr_end]
            if current == expression:
                return False
            self.document._replace(attribute.expr_start, attribute.expr_end, expression)
            return True
        self._append_lines([f"{name} = {expression}"])
        return True

    def set_default(self, name: str, expression: str) -> bool:
        """Add an attribute only if it is missing."""
        if self.has_attribute(name):
            return False
        return self.set_attribute(name, expression)

    def append_block(self, block_type: str, lines: list[str]) -> Block:
        """Append a nested block holding ``lines`` and return a view of it."""
        body = [f"  {line}" for line in lines]
        self._append_lines([f"{block_type} {{", *body, "}"])
        return Block(self.document, (*self.path, len(self._node.blocks) - 1))

    def remove(self) -> bool:
        node = self._node
        self.document._replace(node.start, node.end, "")
        return True

    def _attribute(self, name: str) -> _Attribute | None:
        for attribute in self._node.attributes:
            if attribute.name == name:
                return attribute
        return None

    def _body_indent(self) -> str:
        node = self._node
        text = self.document.text
        members = sorted(
            [attribute.name_start for attribute in node.attributes]
            + [child.start for child in node.blocks]
        )
        for member in members:
            # only members on their own line carry a usable indent
            if text.rfind("\n", 0, member) >= node.body_start:
                return _indent_at(text, member)
        return _indent_at(text, node.start) + "  "

    def _append_lines(self, lines: list[str]) -> None:
        if not self.path:
            self.document.append("\n".join(lines))
            return
        node = self._node
        text = self.document.text
        indent = self._body_indent()
        chunk = "".join(f"{indent}{line}\n" for line in lines)
        close = node.body_end
        newline = text.rfind("\n", node.body_start, close)
        if newline != -1 and not text[newline + 1 : close].strip():
            self.document._replace(newline + 1, newline + 1, chunk)
            return
        # single-line body: reopen it across lines
        inner = text[node.body_start : close].strip()
        closing_indent = _indent_at(text, node.start)
        existing = f"{indent}{inner}\n" if inner else ""
        self.document._replace(
            node.body_start, close, f"\n{existing}{chunk}{closing_indent}"
        )


def references(expression: str, symbol: str) -> bool:
    """True when ``symbol`` appears as a whole identifier in ``expression``."""
    return re.search(rf"(?<![\w-]){re.escape(symbol)}(?![\w-])", expression) is not None


def is_empty_collection(expression: str | None) -> bool:
    if expression is None:
        return False
    return "".join(expression.split()) in _EMPTY_COLLECTIONS


def drop_object_items(expression: str, predicate: Callable[[str, str], bool]) -> str:
    """Remove items of an object-literal expression for which ``predicate(key, value)`` holds.

    Returns ``{}`` when every item is removed, and the expression unchanged when
    it is not a plain object literal or nothing matches.
    """
    scanner = _Scanner(expression)
    try:
        open_pos = scanner.skip_trivia(0, len(expression))
        if not expression.startswith("{", open_pos):
            return expression
        close = scanner.match_close(open_pos)
        if expression[close + 1 :].strip():
            return expression
        items, _ = scanner.parse_body(open_pos + 1, close, commas=True)
    except HCLSyntaxError:
        return expression
    doomed = [
        item
        for item in items
        if predicate(item.name, expression[item.expr_start : item.expr_end])
    ]
    if not doomed:
        return expression
    if len(doomed) == len(items):
        return "{}"
    if "\n" not in expression[open_pos:close]:
        kept = [
            expression[item.name_start : item.expr_end] for item in items if item not in doomed
        ]
        return "{ " + ", ".join(kept) + " }"
    result = expression
    for item in sorted(doomed, key=lambda entry: entry.start, reverse=True):
        result = result[: item.start] + result[item.end :]
    return result


def drop_lines_referencing(expression: str, marker: str) -> str:
    """Remove single-line ``key = value`` items whose line mentions ``marker``."""
    kept: list[str] = []
    item = re.compile(r"^\s*\"?[\w.-]+\"?\s*[=:]")
    for line in expression.splitlines(keepends=True):
        if marker in line and item.match(line) and _balanced(line):
            continue
        kept.append(line)
    return "".join(kept)


def _balanced(line: str) -> bool:
    depth = 0
    for char in re.sub(r'"(?:\\.|[^"\\])*"', '""', line):
        if char in "([{":
            depth += 1
        elif char in ")]}":
            depth -= 1
            if depth < 0:
                return False
    return depth == 0
