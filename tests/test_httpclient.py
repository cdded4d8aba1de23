import io
from urllib.error import HTTPError, URLError

import pytest

from fabric_cli_ext.cli_shared import OpError
from fabric_cli_ext.httpclient import Client
from fabric_cli_ext.httpclient import HTTPResponse
from fabric_cli_ext.httpclient import status_error


class FakeResp:
    def __init__(self, status=200, body=b"", content_type="application/json"):
        self.status = status
        self._body = body
        self.headers = {"Content-Type": content_type}

    def read(self):
        return self._body

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class BrokenResp(FakeResp):
    def read(self):
        raise IOError("connection reset")


def test_post_sends_json_and_bearer_token():
    seen = {}

    def opener(req, timeout):
        seen["method"] = req.get_method()
        seen["url"] = req.full_url
        seen["body"] = req.data
        seen["headers"] = {k.lower(): v for k, v in req.header_items()}
        seen["timeout"] = timeout
        return FakeResp(body=b'{"ok":true}')

    resp = Client(opener=opener, timeout_seconds=5).post("https://h/x", b'{"a":1}', auth_token="tok")

    assert resp == HTTPResponse(status_code=200, payload=b'{"ok":true}', content_type="application/json")
    assert seen["method"] == "POST"
    assert seen["body"] == b'{"a":1}'
    assert seen["headers"]["authorization"] == "Bearer tok"
    assert seen["headers"]["content-type"] == "application/json"
    assert seen["timeout"] == 5


def test_get_without_token_sends_no_authorization_header():
    seen = {}

    def opener(req, timeout):
        seen["headers"] = {k.lower() for k, _ in req.header_items()}
        return FakeResp(body=b"[]")

    resp = Client(opener=opener).get("https://h/x")
    assert resp.payload == b"[]"
    assert "authorization" not in seen["headers"]


def test_http_error_body_lands_in_error_msg():
    def opener(req, timeout):
        raise HTTPError(req.full_url, 404, "Not Found", {}, io.BytesIO(b"no such document"))

    resp = Client(opener=opener).get("https://h/x")
    assert resp.status_code == 404
    assert resp.error_msg == "no such document"
    assert resp.payload == b""


def test_connection_failure_raises_op_error():
    def opener(req, timeout):
        raise URLError("refused")

    with pytest.raises(OpError, match="http request failed"):
        Client(opener=opener).get("https://h/x")


def test_body_read_failure_raises_op_error():
    with pytest.raises(OpError, match="reading response body failed"):
        Client(opener=lambda req, timeout: BrokenResp()).get("https://h/x")


def test_invalid_url_raises_op_error():
    with pytest.raises(OpError, match=r"invalid URL \[not-a-url\]"):
        Client(opener=lambda req, timeout: FakeResp()).get("not-a-url")


def test_status_error_formats():
    assert str(status_error(HTTPResponse(status_code=500, error_msg="boom"))) == "status code 500: boom"
    assert (
        str(status_error(HTTPResponse(status_code=401, error_msg="x"), label="error updating", token_flag="--t"))
        == "error updating. Status code 401: x - Did you provide an authorization token (--t)?"
    )
