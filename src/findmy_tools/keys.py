"""
Accessory key material for the Find My offline-finding network.

- P-224 (secp224r1) key pair generation
- Hashed advertisement key (the identifier Apple indexes reports by)
- BLE address and manufacturer-data payload construction
"""

import base64
import binascii
import hashlib
import logging
from dataclasses import dataclass

from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives.asymmetric import ec

from findmy_tools.errors import DecodeError, ExhaustedAttempts, InvalidKeyLength

logger = logging.getLogger(__name__)

KEY_SIZE = 28

# Apple company id (0x004C), offline finding type (0x12), length (0x19)
ADV_PREFIX = bytes.fromhex("4C001219")
DEFAULT_STATE = 0x20

ATTEMPTS_PER_KEY = 1000

# Leading characters of the hashed key that must not contain '/'
SLASH_FREE_PREFIX = 7


@dataclass(frozen=True)
class Advertisement:
    mac: bytes
    payload: bytes

    @property
    def mac_hex(self) -> str:
        return self.mac.hex().upper()

    @property
    def ble_address(self) -> str:
        return ":".join(f"{b:02X}" for b in self.mac)

    @property
    def payload_hex(self) -> str:
        return self.payload.hex().upper()


@dataclass(frozen=True)
class KeyPair:
    """Accessory key pair plus everything derived from its public point."""

    private_key: bytes
    public_key: bytes
    hashed_public_key: str
    advertisement: Advertisement
    serial: int | None = None

    @property
    def private_scalar(self) -> int:
        return int.from_bytes(self.private_key, "big")

    def as_dict(self) -> dict:
        """Key record in the format the provisioning tools exchange."""
        return {
            "SN": str(self.serial) if self.serial is not None else None,
            "MAC": self.advertisement.mac_hex,
            "FF": self.advertisement.payload_hex,
            "hashed_adv_public_key": self.hashed_public_key,
            "private_key": base64.b64encode(self.private_key).decode(),
            "public_key": base64.b64encode(self.public_key).decode(),
        }


# ---------------------------------------------------------------------------
# Derived identifiers
# ---------------------------------------------------------------------------


def _b64decode(value: str, what: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecodeError(f"invalid base64 {what}", operation="decode") from exc


def hashed_adv_key(public_key_x: bytes) -> str:
    """SHA-256 hash of public key x-coordinate, base64-encoded.

    This is the identifier Apple uses to index location reports.
    """
    return base64.b64encode(hashlib.sha256(public_key_x).digest()).decode()


def ble_address_from_key(public_key_x: bytes) -> str:
    """BLE random static address for a public key, colon separated."""
    return derive_advertisement(public_key_x).ble_address


def derive_advertisement(public_key: bytes | str, state: int = DEFAULT_STATE) -> Advertisement:
    """Build the BLE address and offline-finding advertisement for a public key.

    The first six key bytes become the address (two MSBs set for a random
    static address); the remaining 22 bytes ride in the payload together with
    the two bits the address overwrote.
    """
    if isinstance(public_key, str):
        public_key = _b64decode(public_key, "public key")

    if len(public_key) < KEY_SIZE:
        raise InvalidKeyLength(
            f"public key must be at least {KEY_SIZE} bytes, got {len(public_key)}",
            operation="derive_advertisement",
        )
    if len(public_key) > KEY_SIZE:
        logger.warning(
            "Public key is %d bytes long, using only the first %d", len(public_key), KEY_SIZE
        )
        public_key = public_key[:KEY_SIZE]

    mac = bytearray(public_key[:6])
    mac[0] |= 0xC0

    payload = (
        ADV_PREFIX
        + bytes([state & 0xFF])
        + public_key[6:]
        + bytes([(public_key[0] >> 6) & 0x03, public_key[5]])
    )
    return Advertisement(bytes(mac), payload)


def _key_pair(private_key: ec.EllipticCurvePrivateKey, serial: int | None = None) -> KeyPair:
    d = private_key.private_numbers().private_value
    x = private_key.public_key().public_numbers().x
    x_bytes = x.to_bytes(KEY_SIZE, "big")
    return KeyPair(
        private_key=d.to_bytes(KEY_SIZE, "big"),
        public_key=x_bytes,
        hashed_public_key=hashed_adv_key(x_bytes),
        advertisement=derive_advertisement(x_bytes),
        serial=serial,
    )


# ---------------------------------------------------------------------------
# Key generation
# ---------------------------------------------------------------------------


def _accepts(hashed: str, prefix: str) -> bool:
    if prefix and not hashed.startswith(prefix):
        return False
    return "/" not in hashed[:SLASH_FREE_PREFIX]


def generate_keys(count: int = 1, prefix: str = "", start: int = 1) -> list[KeyPair]:
    """Generate `count` fresh key pairs whose hashed key matches `prefix`.

    Keys whose hashed identifier has a '/' in its first seven base64
    characters are skipped. Serial numbers run from `start`. Raises
    ExhaustedAttempts after count * 1000 candidates.
    """
    if count < 1:
        raise ValueError("count must be positive")

    budget = count * ATTEMPTS_PER_KEY
    keys: list[KeyPair] = []
    attempts = 0
    while len(keys) < count:
        if attempts >= budget:
            raise ExhaustedAttempts(
                f"only {len(keys)} of {count} keys matched after {attempts} attempts",
                operation="generate_keys",
                keys=keys,
            )
        attempts += 1
        priv_key = ec.generate_private_key(ec.SECP224R1(), default_backend())
        x = priv_key.public_key().public_numbers().x
        if not _accepts(hashed_adv_key(x.to_bytes(KEY_SIZE, "big")), prefix):
            continue
        keys.append(_key_pair(priv_key, serial=start + len(keys)))

    logger.debug("Generated %d keys in %d attempts", len(keys), attempts)
    return keys


def from_private_key(private_key: bytes | str) -> KeyPair:
    """Recover public key, hashed key and advertisement from a stored private key."""
    if isinstance(private_key, str):
        private_key = _b64decode(private_key, "private key")

    if not private_key or len(private_key) > KEY_SIZE:
        raise DecodeError(
            f"private key must be 1-{KEY_SIZE} bytes, got {len(private_key)}",
            operation="from_private_key",
        )

    try:
        priv_key = ec.derive_private_key(
            int.from_bytes(private_key, "big"), ec.SECP224R1(), default_backend()
        )
    except ValueError as exc:
        raise DecodeError("private scalar out of range", operation="from_private_key") from exc
    return _key_pair(priv_key)
