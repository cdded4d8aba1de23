"""Parser for the Fabric signature-policy DSL.

Supported forms::

    AND('Org1MSP.member', 'Org2MSP.member')
    OR('Org1MSP.peer', AND('Org2MSP.admin', 'Org3MSP.client'))
    OutOf(2, 'Org1MSP.member', 'Org2MSP.member', 'Org3MSP.member')

The result is a JSON-friendly signature policy envelope: a rule tree of
``n_out_of``/``signed_by`` nodes plus the de-duplicated list of identities the
``signed_by`` indexes point into.
"""

from __future__ import annotations

import re
from typing import Any

_ROLES = {
    "member": "MEMBER",
    "admin": "ADMIN",
    "client": "CLIENT",
    "peer": "PEER",
    "orderer": "ORDERER",
}

_TOKEN_RE = re.compile(
    r"""\s*(?:
        (?P<lparen>\()
      | (?P<rparen>\))
      | (?P<comma>,)
      | (?P<number>\d+)
      | (?P<string>'[^']*'|"[^"]*")
      | (?P<ident>[A-Za-z_][A-Za-z0-9_]*)
    )""",
    re.VERBOSE,
)


class PolicyParseError(ValueError):
    pass


def _tokenize(text: str) -> list[tuple[str, str]]:
    tokens: list[tuple[str, str]] = []
    pos = 0
    text = text.rstrip()
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if not m or m.end() == pos:
            raise PolicyParseError(f"unexpected character at position {pos}: {text[pos:pos + 10]!r}")
        kind = m.lastgroup or ""
        tokens.append((kind, m.group(kind)))
        pos = m.end()
    return tokens


class _Parser:
    def __init__(self, tokens: list[tuple[str, str]]) -> None:
        self._tokens = tokens
        self._pos = 0
        self.identities: list[dict[str, Any]] = []
        self._index: dict[tuple[str, str], int] = {}

    def _peek(self) -> tuple[str, str] | None:
        if self._pos < len(self._tokens):
            return self._tokens[self._pos]
        return None

    def _next(self, kind: str) -> str:
        tok = self._peek()
        if tok is None or tok[0] != kind:
            got = "end of input" if tok is None else repr(tok[1])
            raise PolicyParseError(f"expected {kind}, got {got}")
        self._pos += 1
        return tok[1]

    def parse(self) -> dict[str, Any]:
        rule = self._expr()
        if self._peek() is not None:
            raise PolicyParseError(f"unexpected trailing token {self._peek()[1]!r}")  # type: ignore[index]
        return rule

    def _expr(self) -> dict[str, Any]:
        tok = self._peek()
        if tok is None:
            raise PolicyParseError("unexpected end of input")
        if tok[0] == "string":
            self._pos += 1
            return self._principal(tok[1][1:-1])
        op = self._next("ident")
        self._next("lparen")
        kind = op.lower()
        if kind not in ("and", "or", "outof"):
            raise PolicyParseError(f"unknown operator {op!r}")
        required = 0
        if kind == "outof":
            required = int(self._next("number"))
            self._next("comma")
        rules = [self._expr()]
        while self._peek() == ("comma", ","):
            self._pos += 1
            rules.append(self._expr())
        self._next("rparen")
        if kind == "and":
            n = len(rules)
        elif kind == "or":
            n = 1
        else:
            n = required
        if n > len(rules):
            raise PolicyParseError(f"OutOf requires at least {n} sub-policies, got {len(rules)}")
        return {"n_out_of": {"n": n, "rules": rules}}

    def _principal(self, raw: str) -> dict[str, Any]:
        msp, sep, role = raw.rpartition(".")
        if not sep or not msp:
            raise PolicyParseError(f"invalid principal {raw!r}: expected 'MSPID.role'")
        role_name = _ROLES.get(role)
        if role_name is None:
            raise PolicyParseError(f"invalid role {role!r} in principal {raw!r}")
        key = (msp, role_name)
        if key not in self._index:
            self._index[key] = len(self.identities)
            self.identities.append(
                {
                    "principal_classification": "ROLE",
                    "principal": {"msp_identifier": msp, "role": role_name},
                }
            )
        return {"signed_by": self._index[key]}


def from_string(policy: str) -> dict[str, Any]:
    text = (policy or "").strip()
    if not text:
        raise PolicyParseError("empty policy")
    parser = _Parser(_tokenize(text))
    rule = parser.parse()
    if "signed_by" in rule:
        rule = {"n_out_of": {"n": 1, "rules": [rule]}}
    return {"version": 0, "rule": rule, "identities": parser.identities}


def accept_all_policy() -> dict[str, Any]:
    return {"version": 0, "rule": {"n_out_of": {"n": 0, "rules": []}}, "identities": []}
