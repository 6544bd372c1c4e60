"""
Location report fetching from Apple's acsnservice/fetch endpoint.

Reports are requested by hashed advertisement key, decrypted with the
matching private key and returned oldest first. A report that fails to
decrypt is logged and dropped unless `strict` is set.
"""

import base64
import binascii
import json
import logging
import time
from dataclasses import dataclass

from findmy_tools.config import Settings
from findmy_tools.crypto import LocationFix, decrypt_report
from findmy_tools.errors import (
    AuthenticationFailure,
    AuthorizationRejected,
    DecodeError,
    HttpStatusError,
    ProtocolError,
)
from findmy_tools.http import RequestsTransport
from findmy_tools.keys import KeyPair
from findmy_tools.session import SessionCredential

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RawReport:
    """One undecrypted entry of a fetch response."""

    key_id: str
    payload: bytes

    @classmethod
    def from_json(cls, data: dict) -> "RawReport":
        try:
            payload = base64.b64decode(data["payload"], validate=True)
            return cls(key_id=data["id"], payload=payload)
        except (KeyError, TypeError, binascii.Error, ValueError) as exc:
            raise DecodeError("malformed report entry", operation="fetch") from exc


def search_window(hours: float, now: float | None = None) -> tuple[int, int]:
    """(start, end) in epoch milliseconds covering the last `hours` hours."""
    end = int(now if now is not None else time.time())
    start = end - int(60 * 60 * hours)
    return start * 1000, end * 1000


class ReportService:
    """Fetches reports for accessory keys and decrypts them locally."""

    def __init__(self, anisette, transport=None, settings: Settings | None = None):
        self.anisette = anisette
        self.transport = transport or RequestsTransport()
        self.settings = settings or Settings()

    def fetch_raw(
        self,
        key_hashes: list[str],
        hours: float,
        session: SessionCredential,
        now: float | None = None,
    ) -> list[dict]:
        """One search request for up to `fetch_batch_size` hashed keys, undecoded."""
        start, end = search_window(hours, now)
        data = {"search": [{"startDate": start, "endDate": end, "ids": list(key_hashes)}]}

        headers = {"Content-Type": "application/json", **self.anisette.get_headers()}
        resp = self.transport.send(
            "POST",
            self.settings.fetch_url,
            headers=headers,
            body=json.dumps(data).encode(),
            auth=session.basic_auth,
            timeout=self.settings.fetch_timeout,
        )

        if resp.status in (401, 403):
            raise AuthorizationRejected(
                "session credential rejected, re-authenticate", operation="fetch", status=resp.status
            )
        if resp.status != 200:
            raise HttpStatusError("report fetch failed", operation="fetch", status=resp.status)

        body = resp.json(operation="fetch")
        results = body.get("results") if isinstance(body, dict) else None
        if not isinstance(results, list):
            raise ProtocolError("fetch response has no results list", operation="fetch", status=resp.status)
        return results

    def fetch_many(
        self,
        key_pairs: list[KeyPair],
        hours: float,
        session: SessionCredential,
        *,
        strict: bool = False,
        now: float | None = None,
    ) -> list[LocationFix]:
        """Fetch and decrypt reports for several keys, batching the requests."""
        key_map = {k.hashed_public_key: k for k in key_pairs}
        hashes = list(key_map)
        batch_size = self.settings.fetch_batch_size

        reports: list[dict] = []
        for i in range(0, len(hashes), batch_size):
            reports.extend(self.fetch_raw(hashes[i : i + batch_size], hours, session, now))
        logger.info("%d reports received for %d keys", len(reports), len(hashes))

        results = []
        for entry in reports:
            if not isinstance(entry, dict):
                if strict:
                    raise DecodeError("report entry is not an object", operation="fetch")
                logger.warning("Dropping malformed report entry %r", entry)
                continue
            key = key_map.get(entry.get("id"))
            if key is None:
                logger.debug("Skipping report for unrequested key %s", entry.get("id"))
                continue
            try:
                report = RawReport.from_json(entry)
                fix = decrypt_report(report.payload, key.private_scalar, key.hashed_public_key)
            except (AuthenticationFailure, DecodeError) as exc:
                if strict:
                    raise
                logger.warning("Dropping undecryptable report for %s: %s", key.hashed_public_key, exc)
                continue
            results.append(fix)

        results.sort(key=lambda r: r.observed_at)
        return results

    def fetch(
        self,
        key_pair: KeyPair,
        hours: float,
        session: SessionCredential,
        *,
        strict: bool = False,
        now: float | None = None,
    ) -> list[LocationFix]:
        """Fetch and decrypt the last `hours` of reports for one key."""
        return self.fetch_many([key_pair], hours, session, strict=strict, now=now)
