import base64
import json

import pytest

from fabric_cli_ext.cli_shared import OpError
from fabric_cli_ext.cli_shared import UsageError
from fabric_cli_ext.environment import Config
from fabric_cli_ext.environment import Context
from fabric_cli_ext.fabric import ChannelRequest
from fabric_cli_ext.fabric import GatewayChannel
from fabric_cli_ext.fabric import GatewayFactory
from fabric_cli_ext.fabric import GatewayResourceManagement
from fabric_cli_ext.fabric import InstantiateCCRequest
from fabric_cli_ext.httpclient import HTTPResponse


def _ctx(**kwargs) -> Context:
    base = dict(
        name="org1",
        channel="mychannel",
        peers=("peer0.org1",),
        gateway_url="https://gw.example.com/api/",
        auth_token="gw-token",
    )
    base.update(kwargs)
    return Context(**base)


class FakeHTTP:
    def __init__(self, responses):
        self.calls = []
        self._responses = list(responses)

    def post(self, url, body, *, auth_token=None):
        self.calls.append((url, json.loads(body), auth_token))
        r = self._responses.pop(0)
        if isinstance(r, Exception):
            raise r
        return r


def _ok(doc) -> HTTPResponse:
    return HTTPResponse(status_code=200, payload=json.dumps(doc).encode("utf-8"))


def test_query_encodes_args_and_decodes_payload():
    http = FakeHTTP([_ok({"payload": base64.b64encode(b"[1]").decode(), "txId": "t1"})])
    ch = GatewayChannel(_ctx(), http=http)

    resp = ch.query(ChannelRequest(chaincode_id="configscc", fcn="get", args=[b'{"MspID":"Org1MSP"}']), targets=["p0"])

    assert resp.payload == b"[1]"
    assert resp.tx_id == "t1"
    url, doc, token = http.calls[0]
    assert url == "https://gw.example.com/api/channels/mychannel/chaincodes/configscc/query"
    assert doc == {"fcn": "get", "args": [base64.b64encode(b'{"MspID":"Org1MSP"}').decode()], "targets": ["p0"]}
    assert token == "gw-token"


def test_execute_retries_transient_failures_with_backoff():
    sleeps = []
    http = FakeHTTP(
        [
            OpError("http request failed: refused"),
            HTTPResponse(status_code=503, error_msg="busy"),
            _ok({"txId": "t2"}),
        ]
    )
    ch = GatewayChannel(_ctx(), http=http, sleep=sleeps.append)

    resp = ch.execute(ChannelRequest(chaincode_id="configscc", fcn="save", args=[b"{}"]))

    assert resp.tx_id == "t2"
    assert len(http.calls) == 3
    assert sleeps == [0.5, 1.0]


def test_execute_gives_up_after_retry_attempts():
    http = FakeHTTP([HTTPResponse(status_code=500, error_msg="down")] * 3)
    ch = GatewayChannel(_ctx(), http=http, sleep=lambda _s: None)

    with pytest.raises(OpError, match="gateway returned status code 500: down"):
        ch.execute(ChannelRequest(chaincode_id="configscc", fcn="save"))
    assert len(http.calls) == 3


def test_client_errors_are_not_retried():
    http = FakeHTTP([HTTPResponse(status_code=400, error_msg="bad request")])
    ch = GatewayChannel(_ctx(), http=http, sleep=lambda _s: None)

    with pytest.raises(OpError, match="status code 400"):
        ch.execute(ChannelRequest(chaincode_id="configscc", fcn="save"))
    assert len(http.calls) == 1


def test_query_is_not_retried():
    http = FakeHTTP([HTTPResponse(status_code=503, error_msg="busy")])
    ch = GatewayChannel(_ctx(), http=http, sleep=lambda _s: None)
    with pytest.raises(OpError):
        ch.query(ChannelRequest(chaincode_id="configscc", fcn="get"))
    assert len(http.calls) == 1


def test_resource_management_posts_lifecycle_request():
    http = FakeHTTP([_ok({"txId": "t3"})])
    rm = GatewayResourceManagement(_ctx(), http=http)
    req = InstantiateCCRequest(name="cc", version="v1", policy={"version": 0})

    assert rm.instantiate_cc("mychannel", req, targets=("p0",)) == "t3"

    url, doc, _ = http.calls[0]
    assert url == "https://gw.example.com/api/channels/mychannel/lifecycle/instantiate"
    assert doc["request"]["name"] == "cc"
    assert doc["request"]["path"] == "not used"
    assert doc["targets"] == ["p0"]


def test_gateway_requires_url_and_channel():
    with pytest.raises(UsageError, match="gatewayUrl"):
        GatewayChannel(_ctx(gateway_url=""))
    with pytest.raises(UsageError, match="channel"):
        GatewayChannel(_ctx(channel=""))


def test_factory_uses_current_context():
    cfg = Config(current_context="org1", contexts={"org1": _ctx()})
    http = FakeHTTP([_ok({})])
    ch = GatewayFactory(cfg, http=http).channel()
    ch.query(ChannelRequest(chaincode_id="cc", fcn="f"))
    assert http.calls[0][0].startswith("https://gw.example.com/api/channels/mychannel/")
