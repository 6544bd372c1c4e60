"""
HTTP transport used by every network-facing component.

The core only needs "send request, get status + body"; anything providing a
compatible `send` method can be injected in place of `RequestsTransport`.
"""

import json
import logging
from dataclasses import dataclass

import requests
import urllib3

from findmy_tools.errors import ProtocolError, TransportError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HttpResponse:
    """Status code and raw body of a completed request."""

    status: int
    content: bytes = b""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")

    def json(self, operation: str | None = None):
        try:
            return json.loads(self.content.decode())
        except (UnicodeDecodeError, ValueError) as exc:
            raise ProtocolError(
                "response body is not valid JSON", operation=operation, status=self.status
            ) from exc


class RequestsTransport:
    """`requests`-backed transport. No retries are performed."""

    def __init__(self, session: requests.Session | None = None):
        self.session = session or requests.Session()

    def send(
        self,
        method: str,
        url: str,
        headers: dict | None = None,
        body: bytes | None = None,
        auth: tuple[str, str] | None = None,
        timeout: float | None = None,
        verify: bool = True,
    ) -> HttpResponse:
        if not verify:
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
        logger.debug("%s %s", method, url)
        try:
            r = self.session.request(
                method,
                url,
                headers=headers,
                data=body,
                auth=auth,
                timeout=timeout,
                verify=verify,
            )
        except requests.RequestException as exc:
            raise TransportError(str(exc), operation=f"{method} {url}") from exc
        logger.debug("%s %s -> %d", method, url, r.status_code)
        return HttpResponse(r.status_code, r.content)
