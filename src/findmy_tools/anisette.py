"""
Anisette (device attestation) headers.

Headers are fetched from an anisette-v3-server
(https://github.com/Dadoum/anisette-v3-server) and completed with the
identifiers of a caller-owned `DeviceIdentity`.
"""

import base64
import logging
import uuid
from dataclasses import dataclass, field

import requests

from findmy_tools.config import Settings
from findmy_tools.errors import ProviderUnavailable

logger = logging.getLogger(__name__)

REQUIRED_HEADERS = ("X-Apple-I-MD", "X-Apple-I-MD-M")


def _new_uuid() -> str:
    return str(uuid.uuid4()).upper()


@dataclass(frozen=True)
class DeviceIdentity:
    """Identifiers the identity service expects to stay stable per device."""

    user_id: str = field(default_factory=_new_uuid)
    device_id: str = field(default_factory=_new_uuid)
    serial: str = "0"

    def headers(self) -> dict:
        return {
            "X-Apple-I-MD-LU": base64.b64encode(self.user_id.upper().encode()).decode(),
            "X-Mme-Device-Id": self.device_id.upper(),
            "X-Apple-I-SRL-NO": self.serial,
        }


class RemoteAnisetteProvider:
    """Fetch anisette headers from a local anisette-v3-server."""

    def __init__(
        self,
        url: str | None = None,
        device: DeviceIdentity | None = None,
        session: requests.Session | None = None,
        settings: Settings | None = None,
    ):
        self.settings = settings or Settings()
        self.url = url or self.settings.anisette_url
        self.device = device or DeviceIdentity()
        self.session = session or requests.Session()

    def get_headers(self) -> dict:
        try:
            r = self.session.get(self.url, timeout=self.settings.anisette_timeout)
            r.raise_for_status()
            h = r.json()
        except (requests.RequestException, ValueError) as exc:
            raise ProviderUnavailable(
                f"failed to query anisette server at {self.url}", operation="anisette"
            ) from exc

        if not isinstance(h, dict) or any(k not in h for k in REQUIRED_HEADERS):
            raise ProviderUnavailable(
                f"anisette server at {self.url} returned no OTP headers", operation="anisette"
            )

        headers = {k: str(v) for k, v in h.items()}
        for k, v in self.device.headers().items():
            headers.setdefault(k, v)
        return headers


class StaticAnisetteProvider:
    """Serve a fixed header set, e.g. one exported from a real device."""

    def __init__(self, headers: dict):
        self._headers = dict(headers)

    def get_headers(self) -> dict:
        return dict(self._headers)


def generate_cpd(anisette: dict) -> dict:
    """Client provided data block embedded in every GrandSlam request."""
    cpd = {
        "bootstrap": True,
        "icscrec": True,
        "pbe": False,
        "prkgen": True,
        "svct": "iCloud",
    }
    if "X-Apple-Locale" in anisette:
        cpd["loc"] = anisette["X-Apple-Locale"]
    cpd.update({k: v for k, v in anisette.items() if k.lower() != "x-mme-client-info"})
    return cpd
