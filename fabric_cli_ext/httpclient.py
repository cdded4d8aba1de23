from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from .cli_shared import OpError

STATUS_OK = 200
STATUS_UNAUTHORIZED = 401
STATUS_NOT_FOUND = 404


@dataclass(frozen=True)
class HTTPResponse:
    status_code: int
    payload: bytes = b""
    error_msg: str = ""
    content_type: str = ""


class Client:
    """Thin JSON-over-HTTP client.

    Non-200 responses are not raised; their body is returned in ``error_msg``
    so callers can decide how to report them.
    """

    def __init__(self, *, opener: Callable[..., Any] | None = None, timeout_seconds: int = 30) -> None:
        self._opener = opener or urlopen
        self._timeout_seconds = timeout_seconds

    def post(self, url: str, body: bytes, *, auth_token: str | None = None) -> HTTPResponse:
        headers = {"content-type": "application/json"}
        return self._do("POST", url, body=body, headers=headers, auth_token=auth_token)

    def get(self, url: str, *, auth_token: str | None = None) -> HTTPResponse:
        return self._do("GET", url, body=None, headers={}, auth_token=auth_token)

    def _do(
        self,
        method: str,
        url: str,
        *,
        body: bytes | None,
        headers: dict[str, str],
        auth_token: str | None,
    ) -> HTTPResponse:
        try:
            req = Request(url, data=body, method=method)
        except ValueError as e:
            raise OpError(f"invalid URL [{url}]: {e}") from e
        for k, v in headers.items():
            req.add_header(k, v)
        if auth_token:
            req.add_header("authorization", f"Bearer {auth_token}")
        try:
            with self._opener(req, timeout=self._timeout_seconds) as resp:
                status = int(getattr(resp, "status", STATUS_OK) or STATUS_OK)
                content_type = str(resp.headers.get("Content-Type") or "")
                data = _read_body(resp)
        except HTTPError as e:
            return HTTPResponse(status_code=int(e.code or 0), error_msg=_read_body(e).decode("utf-8", "replace"))
        except URLError as e:
            raise OpError(f"http request failed: {e}") from e
        except OSError as e:
            raise OpError(f"http request failed: {e}") from e
        if status != STATUS_OK:
            return HTTPResponse(status_code=status, error_msg=data.decode("utf-8", "replace"))
        return HTTPResponse(status_code=STATUS_OK, payload=data, content_type=content_type)


def _read_body(resp: Any) -> bytes:
    try:
        return resp.read() or b""
    except Exception as e:
        raise OpError(f"reading response body failed: {e}") from e


def status_error(resp: HTTPResponse, *, label: str = "", token_flag: str = "--authtoken") -> OpError:
    """Build the error reported for a non-200 response."""
    if label:
        msg = f"{label}. Status code {resp.status_code}: {resp.error_msg}"
    else:
        msg = f"status code {resp.status_code}: {resp.error_msg}"
    if resp.status_code == STATUS_UNAUTHORIZED:
        msg += f" - Did you provide an authorization token ({token_flag})?"
    return OpError(msg)
