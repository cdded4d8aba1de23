"""Ledger configuration documents as stored by the ``configscc`` system chaincode.

Field names on the wire follow the chaincode's JSON (``MspID``, ``AppName``...).
Parsing matches field names case-insensitively; serialisation always emits the
canonical names and drops empty optional collections.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

CONFIG_SCC = "configscc"


class ConfigFormatError(ValueError):
    pass


def _field(doc: dict[str, Any], name: str) -> Any:
    if name in doc:
        return doc[name]
    lname = name.lower()
    for k, v in doc.items():
        if str(k).lower() == lname:
            return v
    return None


def _str_field(doc: dict[str, Any], name: str) -> str:
    v = _field(doc, name)
    if v is None:
        return ""
    if not isinstance(v, str):
        raise ConfigFormatError(f"field {name} must be a string")
    return v


def _list_field(doc: dict[str, Any], name: str) -> list[Any]:
    v = _field(doc, name)
    if v is None:
        return []
    if not isinstance(v, list):
        raise ConfigFormatError(f"field {name} must be an array")
    return v


def _object(v: Any, what: str) -> dict[str, Any]:
    if not isinstance(v, dict):
        raise ConfigFormatError(f"{what} must be a JSON object")
    return v


def _tags(doc: dict[str, Any]) -> list[str]:
    tags = _list_field(doc, "Tags")
    if not all(isinstance(t, str) for t in tags):
        raise ConfigFormatError("field Tags must be an array of strings")
    return list(tags)


@dataclass
class Component:
    name: str = ""
    version: str = ""
    format: str = ""
    config: str = ""
    tags: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, doc: Any) -> Component:
        d = _object(doc, "component")
        return cls(
            name=_str_field(d, "Name"),
            version=_str_field(d, "Version"),
            format=_str_field(d, "Format"),
            config=_str_field(d, "Config"),
            tags=_tags(d),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "Name": self.name,
            "Version": self.version,
            "Format": self.format,
            "Config": self.config,
        }
        if self.tags:
            out["Tags"] = list(self.tags)
        return out


@dataclass
class App:
    app_name: str = ""
    version: str = ""
    format: str = ""
    config: str = ""
    tags: list[str] = field(default_factory=list)
    components: list[Component] = field(default_factory=list)

    @classmethod
    def from_dict(cls, doc: Any) -> App:
        d = _object(doc, "app")
        return cls(
            app_name=_str_field(d, "AppName"),
            version=_str_field(d, "Version"),
            format=_str_field(d, "Format"),
            config=_str_field(d, "Config"),
            tags=_tags(d),
            components=[Component.from_dict(c) for c in _list_field(d, "Components")],
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "AppName": self.app_name,
            "Version": self.version,
            "Format": self.format,
            "Config": self.config,
        }
        if self.tags:
            out["Tags"] = list(self.tags)
        if self.components:
            out["Components"] = [c.to_dict() for c in self.components]
        return out


@dataclass
class Peer:
    peer_id: str = ""
    apps: list[App] = field(default_factory=list)

    @classmethod
    def from_dict(cls, doc: Any) -> Peer:
        d = _object(doc, "peer")
        return cls(
            peer_id=_str_field(d, "PeerID"),
            apps=[App.from_dict(a) for a in _list_field(d, "Apps")],
        )

    def to_dict(self) -> dict[str, Any]:
        return {"PeerID": self.peer_id, "Apps": [a.to_dict() for a in self.apps]}


@dataclass
class LedgerConfig:
    """Zero or more application configs plus zero or more peer-specific ones for one MSP."""

    msp_id: str = ""
    peers: list[Peer] = field(default_factory=list)
    apps: list[App] = field(default_factory=list)

    @classmethod
    def from_dict(cls, doc: Any) -> LedgerConfig:
        d = _object(doc, "config")
        return cls(
            msp_id=_str_field(d, "MspID"),
            peers=[Peer.from_dict(p) for p in _list_field(d, "Peers")],
            apps=[App.from_dict(a) for a in _list_field(d, "Apps")],
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"MspID": self.msp_id}
        if self.peers:
            out["Peers"] = [p.to_dict() for p in self.peers]
        if self.apps:
            out["Apps"] = [a.to_dict() for a in self.apps]
        return out


_CRITERIA_FIELDS = (
    ("msp_id", "MspID"),
    ("peer_id", "PeerID"),
    ("app_name", "AppName"),
    ("app_version", "AppVersion"),
    ("component_name", "ComponentName"),
    ("component_version", "ComponentVersion"),
)


@dataclass(frozen=True)
class Criteria:
    msp_id: str = ""
    peer_id: str = ""
    app_name: str = ""
    app_version: str = ""
    component_name: str = ""
    component_version: str = ""

    @classmethod
    def from_dict(cls, doc: Any) -> Criteria:
        d = _object(doc, "criteria")
        return cls(**{attr: _str_field(d, name) for attr, name in _CRITERIA_FIELDS})

    def to_dict(self) -> dict[str, str]:
        out: dict[str, str] = {}
        for attr, name in _CRITERIA_FIELDS:
            v = getattr(self, attr)
            if v:
                out[name] = v
        return out


@dataclass(frozen=True)
class KeyValue:
    """One query result: the config key fields flattened together with the stored value."""

    msp_id: str = ""
    peer_id: str = ""
    app_name: str = ""
    app_version: str = ""
    component_name: str = ""
    component_version: str = ""
    tx_id: str = ""
    format: str = ""
    config: str = ""
    tags: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, doc: Any) -> KeyValue:
        d = _object(doc, "query result")
        return cls(
            msp_id=_str_field(d, "MspID"),
            peer_id=_str_field(d, "PeerID"),
            app_name=_str_field(d, "AppName"),
            app_version=_str_field(d, "AppVersion"),
            component_name=_str_field(d, "ComponentName"),
            component_version=_str_field(d, "ComponentVersion"),
            tx_id=_str_field(d, "TxID"),
            format=_str_field(d, "Format"),
            config=_str_field(d, "Config"),
            tags=tuple(_tags(d)),
        )


def parse_query_results(payload: bytes | str) -> list[KeyValue]:
    try:
        val = json.loads(payload or b"null")
    except ValueError as e:
        raise ConfigFormatError(f"invalid query results: {e}") from e
    if val is None:
        return []
    if not isinstance(val, list):
        raise ConfigFormatError("invalid query results: expected JSON array")
    return [KeyValue.from_dict(v) for v in val]
