"""Access-policy compilation.

A policy label is either a single partition label ("this partition only")
or a monotone boolean formula over labels:

    grpA
    grpA or audit
    (grpA and eu-west) or admin

Labels are rewritten into engine-safe attribute tokens so that the pairing
engine never sees characters it treats specially (underscores are index
separators in its policy grammar, and it upper-cases attribute names).
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Union

from chronoseal.errors import PolicyCompileError

_LABEL_RE = re.compile(r"[A-Za-z0-9_.:@\-]+")
_TOKEN_RE = re.compile(r"\s*(\(|\)|[A-Za-z0-9_.:@\-]+)")
_OPERATORS = {"and", "or"}


@dataclass(frozen=True, slots=True)
class Leaf:
    label: str


@dataclass(frozen=True, slots=True)
class Gate:
    op: str  # "and" | "or"
    left: PolicyNode
    right: PolicyNode


PolicyNode = Union[Leaf, Gate]


def encode_attribute(label: str) -> str:
    """Engine-safe attribute token for a label: ``P`` + upper-case hex of UTF-8."""
    if not label or not _LABEL_RE.fullmatch(label) or label.lower() in _OPERATORS:
        raise PolicyCompileError(f"Invalid attribute label: {label!r}")
    return "P" + label.encode("utf-8").hex().upper()


def _tokenize(text: str) -> list[str]:
    tokens: list[str] = []
    pos = 0
    stripped_len = len(text.rstrip())
    while pos < stripped_len:
        match = _TOKEN_RE.match(text, pos)
        if match is None:
            raise PolicyCompileError(
                f"Unexpected character {text[pos:].lstrip()[:1]!r} in policy {text!r}"
            )
        tokens.append(match.group(1))
        pos = match.end()
    if not tokens:
        raise PolicyCompileError("Empty policy")
    return tokens


class _Parser:
    """Recursive-descent parser; ``and`` binds tighter than ``or``."""

    def __init__(self, tokens: list[str], source: str) -> None:
        self.tokens = tokens
        self.source = source
        self.i = 0

    def peek(self) -> str | None:
        return self.tokens[self.i] if self.i < len(self.tokens) else None

    def eat(self) -> str:
        cur = self.peek()
        if cur is None:
            raise PolicyCompileError(f"Unexpected end of policy {self.source!r}")
        self.i += 1
        return cur

    def parse(self) -> PolicyNode:
        node = self.parse_or()
        if self.peek() is not None:
            raise PolicyCompileError(
                f"Unexpected {self.peek()!r} in policy {self.source!r}"
            )
        return node

    def _at(self, op: str) -> bool:
        cur = self.peek()
        return cur is not None and cur.lower() == op

    def parse_or(self) -> PolicyNode:
        node = self.parse_and()
        while self._at("or"):
            self.eat()
            node = Gate("or", node, self.parse_and())
        return node

    def parse_and(self) -> PolicyNode:
        node = self.parse_atom()
        while self._at("and"):
            self.eat()
            node = Gate("and", node, self.parse_atom())
        return node

    def parse_atom(self) -> PolicyNode:
        tok = self.eat()
        if tok == "(":
            node = self.parse_or()
            if self.eat() != ")":
                raise PolicyCompileError(f"Expected ')' in policy {self.source!r}")
            return node
        if tok == ")" or tok.lower() in _OPERATORS:
            raise PolicyCompileError(f"Unexpected {tok!r} in policy {self.source!r}")
        return Leaf(tok)


@dataclass(frozen=True, slots=True)
class CompiledPolicy:
    """A parsed policy plus its engine-facing rendering."""

    source: str
    tree: PolicyNode
    engine_policy: str
    labels: frozenset[str]


def _render(node: PolicyNode) -> str:
    if isinstance(node, Leaf):
        return encode_attribute(node.label)
    return f"({_render(node.left)} {node.op} {_render(node.right)})"


def _collect(node: PolicyNode) -> set[str]:
    if isinstance(node, Leaf):
        return {node.label}
    return _collect(node.left) | _collect(node.right)


@lru_cache(maxsize=256)
def compile_policy(label: str) -> CompiledPolicy:
    """Compile a policy label.

    Raises PolicyCompileError for empty input, characters outside the label
    alphabet, dangling operators and unbalanced parentheses.
    """
    if not isinstance(label, str):
        raise PolicyCompileError(f"Policy must be a string, got {type(label).__name__}")
    tree = _Parser(_tokenize(label), label).parse()
    return CompiledPolicy(
        source=label,
        tree=tree,
        engine_policy=_render(tree),
        labels=frozenset(_collect(tree)),
    )
