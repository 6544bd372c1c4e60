"""
Property-list handling for the identity service.

Handshake payloads mix binary and text fields. `SecurePayload` keeps them
as decoded by plistlib and makes the expected type explicit at each access;
binary values only become base64 text in `transportable()`.
"""

import base64
import plistlib
from collections.abc import Mapping
from xml.parsers.expat import ExpatError

from findmy_tools.errors import MalformedAuthPayload, ProtocolError

PLIST_HEADER = b"""\
<?xml version='1.0' encoding='UTF-8'?>
<!DOCTYPE plist PUBLIC '-//Apple//DTD PLIST 1.0//EN' 'http://www.apple.com/DTDs/PropertyList-1.0.dtd'>
"""


def encode_plist(value: Mapping) -> bytes:
    """Serialize a request dictionary as an XML property list."""
    return plistlib.dumps(dict(value))


def decode_plist(data: bytes, operation: str | None = None) -> dict:
    """Parse an XML property list, tolerating a missing header or plist wrapper."""
    data = data.strip()
    if data.startswith(b"<dict"):
        data = b'<plist version="1.0">' + data + b"</plist>"
    if not data.startswith(b"<?xml"):
        data = PLIST_HEADER + data
    try:
        value = plistlib.loads(data)
    except (ExpatError, ValueError) as exc:
        raise ProtocolError("response is not a valid property list", operation=operation) from exc
    if not isinstance(value, dict):
        raise ProtocolError("property list root is not a dictionary", operation=operation)
    return value


def _transportable(value):
    if isinstance(value, bytes):
        return base64.b64encode(value).decode()
    if isinstance(value, Mapping):
        return {k: _transportable(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_transportable(v) for v in value]
    return value


class SecurePayload:
    """Decrypted `spd` dictionary with typed accessors."""

    def __init__(self, fields: Mapping):
        self._fields = dict(fields)

    @classmethod
    def from_bytes(cls, data: bytes) -> "SecurePayload":
        return cls(decode_plist(data, operation="decode_spd"))

    def __contains__(self, key) -> bool:
        return key in self._fields

    def _get(self, key: str, kind: type):
        try:
            value = self._fields[key]
        except KeyError as exc:
            raise MalformedAuthPayload(f"missing field {key!r}", operation="secure_payload") from exc
        if not isinstance(value, kind):
            raise MalformedAuthPayload(
                f"field {key!r} is {type(value).__name__}, expected {kind.__name__}",
                operation="secure_payload",
            )
        return value

    def text(self, key: str) -> str:
        return self._get(key, str)

    def data(self, key: str) -> bytes:
        return self._get(key, bytes)

    def mapping(self, key: str) -> dict:
        return self._get(key, dict)

    def transportable(self) -> dict:
        """Copy of the payload with every binary value base64-encoded."""
        return _transportable(self._fields)

    def as_dict(self) -> dict:
        return dict(self._fields)
