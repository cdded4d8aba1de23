"""Ledger client seam.

Commands talk to the network through a ``Factory`` that hands out a channel
client (chaincode query/execute) and a resource-management client (chaincode
lifecycle). The default factory speaks JSON over HTTP to the gateway endpoint
configured on the current context.
"""

from __future__ import annotations

import base64
import json
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Protocol, Sequence
from urllib.parse import quote

from .cli_shared import OpError, UsageError
from .environment import Config, Context
from .httpclient import STATUS_OK, Client, HTTPResponse

DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_RETRY_INITIAL_BACKOFF_SECONDS = 0.5
DEFAULT_RETRY_BACKOFF_FACTOR = 2.0


@dataclass(frozen=True)
class ChannelRequest:
    chaincode_id: str
    fcn: str
    args: list[bytes] = field(default_factory=list)


@dataclass(frozen=True)
class ChannelResponse:
    payload: bytes = b""
    tx_id: str = ""


@dataclass(frozen=True)
class CollectionConfig:
    name: str
    type: int
    member_orgs_policy: dict[str, Any]
    required_peer_count: int = 0
    maximum_peer_count: int = 0
    block_to_live: int = 0
    time_to_live: str = ""
    member_only_read: bool = False
    member_only_write: bool = False


@dataclass(frozen=True)
class LifecycleApproveCCRequest:
    name: str
    version: str
    package_id: str
    sequence: int
    signature_policy: dict[str, Any]
    channel_config_policy: str = ""
    collection_config: list[CollectionConfig] = field(default_factory=list)
    init_required: bool = False
    endorsement_plugin: str = ""
    validation_plugin: str = ""


@dataclass(frozen=True)
class LifecycleCommitCCRequest:
    name: str
    version: str
    sequence: int
    signature_policy: dict[str, Any]
    channel_config_policy: str = ""
    collection_config: list[CollectionConfig] = field(default_factory=list)
    init_required: bool = False
    endorsement_plugin: str = ""
    validation_plugin: str = ""


@dataclass(frozen=True)
class InstantiateCCRequest:
    name: str
    version: str
    policy: dict[str, Any]
    coll_config: list[CollectionConfig] = field(default_factory=list)
    path: str = "not used"


class Channel(Protocol):
    def query(self, request: ChannelRequest, *, targets: Sequence[str] = ()) -> ChannelResponse: ...

    def execute(self, request: ChannelRequest, *, retry: bool = True) -> ChannelResponse: ...


class ResourceManagement(Protocol):
    def lifecycle_approve_cc(
        self, channel_id: str, request: LifecycleApproveCCRequest, *, targets: Sequence[str] = (), retry: bool = True
    ) -> str: ...

    def lifecycle_commit_cc(
        self, channel_id: str, request: LifecycleCommitCCRequest, *, targets: Sequence[str] = (), retry: bool = True
    ) -> str: ...

    def instantiate_cc(
        self, channel_id: str, request: InstantiateCCRequest, *, targets: Sequence[str] = (), retry: bool = True
    ) -> str: ...


class Factory(Protocol):
    def channel(self) -> Channel: ...

    def resource_management(self) -> ResourceManagement: ...


FactoryProvider = Callable[[Config], Factory]


def _b64(b: bytes) -> str:
    return base64.b64encode(b).decode("ascii")


def _request_doc(obj: Any) -> dict[str, Any]:
    return asdict(obj)


class _GatewayClient:
    def __init__(
        self,
        context: Context,
        *,
        http: Client | None = None,
        retry_attempts: int = DEFAULT_RETRY_ATTEMPTS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not context.gateway_url:
            raise UsageError(f"context {context.name!r} has no gatewayUrl")
        if not context.channel:
            raise UsageError(f"context {context.name!r} has no channel")
        self._context = context
        self._http = http or Client()
        self._retry_attempts = max(1, retry_attempts)
        self._sleep = sleep

    def _url(self, *parts: str) -> str:
        base = self._context.gateway_url.rstrip("/")
        return base + "/" + "/".join(quote(p, safe="") for p in parts)

    def _post(self, url: str, doc: dict[str, Any], *, retry: bool) -> dict[str, Any]:
        body = json.dumps(doc, separators=(",", ":")).encode("utf-8")
        attempts = self._retry_attempts if retry else 1
        backoff = DEFAULT_RETRY_INITIAL_BACKOFF_SECONDS
        last: OpError | None = None
        for attempt in range(attempts):
            if attempt:
                self._sleep(backoff)
                backoff *= DEFAULT_RETRY_BACKOFF_FACTOR
            try:
                resp = self._http.post(url, body, auth_token=self._context.auth_token or None)
            except OpError as e:
                last = e
                continue
            if resp.status_code >= 500:
                last = _gateway_error(resp)
                continue
            if resp.status_code != STATUS_OK:
                raise _gateway_error(resp)
            return _decode_gateway_doc(resp)
        assert last is not None
        raise last


def _gateway_error(resp: HTTPResponse) -> OpError:
    return OpError(f"gateway returned status code {resp.status_code}: {resp.error_msg}")


def _decode_gateway_doc(resp: HTTPResponse) -> dict[str, Any]:
    if not resp.payload:
        return {}
    try:
        val = json.loads(resp.payload)
    except ValueError as e:
        raise OpError(f"invalid gateway response: {e}") from e
    if not isinstance(val, dict):
        raise OpError("invalid gateway response: expected JSON object")
    return val


class GatewayChannel(_GatewayClient):
    def _invoke_doc(self, request: ChannelRequest) -> dict[str, Any]:
        return {"fcn": request.fcn, "args": [_b64(a) for a in request.args]}

    def _response(self, doc: dict[str, Any]) -> ChannelResponse:
        raw = str(doc.get("payload") or "")
        try:
            payload = base64.b64decode(raw.encode("ascii"), validate=True) if raw else b""
        except ValueError as e:
            raise OpError(f"invalid gateway response payload: {e}") from e
        return ChannelResponse(payload=payload, tx_id=str(doc.get("txId") or ""))

    def query(self, request: ChannelRequest, *, targets: Sequence[str] = ()) -> ChannelResponse:
        doc = self._invoke_doc(request)
        doc["targets"] = list(targets)
        url = self._url("channels", self._context.channel, "chaincodes", request.chaincode_id, "query")
        return self._response(self._post(url, doc, retry=False))

    def execute(self, request: ChannelRequest, *, retry: bool = True) -> ChannelResponse:
        url = self._url("channels", self._context.channel, "chaincodes", request.chaincode_id, "execute")
        return self._response(self._post(url, self._invoke_doc(request), retry=retry))


class GatewayResourceManagement(_GatewayClient):
    def _lifecycle(self, channel_id: str, action: str, request: Any, targets: Sequence[str], retry: bool) -> str:
        doc = {"request": _request_doc(request), "targets": list(targets)}
        out = self._post(self._url("channels", channel_id, "lifecycle", action), doc, retry=retry)
        return str(out.get("txId") or "")

    def lifecycle_approve_cc(
        self, channel_id: str, request: LifecycleApproveCCRequest, *, targets: Sequence[str] = (), retry: bool = True
    ) -> str:
        return self._lifecycle(channel_id, "approve", request, targets, retry)

    def lifecycle_commit_cc(
        self, channel_id: str, request: LifecycleCommitCCRequest, *, targets: Sequence[str] = (), retry: bool = True
    ) -> str:
        return self._lifecycle(channel_id, "commit", request, targets, retry)

    def instantiate_cc(
        self, channel_id: str, request: InstantiateCCRequest, *, targets: Sequence[str] = (), retry: bool = True
    ) -> str:
        return self._lifecycle(channel_id, "instantiate", request, targets, retry)


class GatewayFactory:
    def __init__(self, config: Config, *, http: Client | None = None) -> None:
        self._config = config
        self._http = http

    def channel(self) -> GatewayChannel:
        return GatewayChannel(self._config.get_current_context(), http=self._http)

    def resource_management(self) -> GatewayResourceManagement:
        return GatewayResourceManagement(self._config.get_current_context(), http=self._http)


def default_factory_provider(config: Config) -> Factory:
    return GatewayFactory(config)
