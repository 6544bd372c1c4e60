"""
Cryptographic primitives for location reports and the GSA handshake.

Report decryption:
- ECDH on P-224 against the finder's ephemeral key
- ANSI X9.63 KDF with SHA-256 (single block)
- AES-128-GCM

Handshake helpers:
- s2k / s2k_fo password pre-hashing into PBKDF2-HMAC-SHA256
- AES-256-CBC decryption of the server's secure payload (spd)
"""

import base64
import binascii
import datetime
import hashlib
import hmac
import logging
import struct
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from findmy_tools.errors import AuthenticationFailure, DecodeError, UnsupportedVariant

logger = logging.getLogger(__name__)

# Apple's reference epoch: 2001-01-01 00:00:00 UTC
APPLE_EPOCH = 978307200

# Reports longer than this carry an extra byte at offset 4
COMPACT_REPORT_LEN = 88
TAG_LEN = 16

SUPPORTED_PROTOCOLS = ("s2k", "s2k_fo")


@dataclass(frozen=True)
class LocationFix:
    latitude: float
    longitude: float
    confidence: int
    status: int
    observed_at: int
    source_key_hash: str | None = None

    @property
    def isodatetime(self) -> str:
        """UTC timestamp with millisecond precision and a Z suffix."""
        dt = datetime.datetime.fromtimestamp(self.observed_at, tz=datetime.timezone.utc)
        return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"

    @property
    def maps_url(self) -> str:
        return f"https://maps.google.com/maps?q={self.latitude},{self.longitude}"

    def as_dict(self) -> dict:
        return {
            "lat": self.latitude,
            "lon": self.longitude,
            "conf": self.confidence,
            "status": self.status,
            "timestamp": self.observed_at,
            "isodatetime": self.isodatetime,
            "key": self.source_key_hash,
            "goog": self.maps_url,
        }


# ---------------------------------------------------------------------------
# ANSI X9.63 KDF (SHA-256)
# ---------------------------------------------------------------------------


def kdf_x963(input_data: bytes, shared_info: bytes, output_len: int) -> bytes:
    """ANSI X9.63 Key Derivation Function using SHA-256.

    output = SHA256(input || counter_be32 || shared_info), iterated.
    """
    result = b""
    counter = 1
    while len(result) < output_len:
        h = hashlib.sha256()
        h.update(input_data)
        h.update(counter.to_bytes(4, "big"))
        h.update(shared_info)
        result += h.digest()
        counter += 1
    return result[:output_len]


# ---------------------------------------------------------------------------
# Location report decryption
# ---------------------------------------------------------------------------


def normalize_payload(data: bytes) -> bytes:
    """Drop the length/flags byte at offset 4 that only extended reports carry."""
    if len(data) > COMPACT_REPORT_LEN:
        return data[:4] + data[5:]
    return data


def decode_location(plaintext: bytes) -> tuple[float, float, int, int]:
    """Decode the 10-byte report body into (lat, lon, confidence, status)."""
    lat, lon, confidence, status = struct.unpack(">iiBB", plaintext[:10])
    return lat / 10000000.0, lon / 10000000.0, confidence, status


def decrypt_report(
    payload: bytes | str, private_key: int | bytes, key_hash: str | None = None
) -> LocationFix:
    """Decrypt a single location report.

    `payload` is the raw report (or its base64 text), `private_key` the
    accessory's P-224 scalar as an int or big-endian bytes.
    """
    if isinstance(payload, str):
        try:
            payload = base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise DecodeError("invalid base64 report payload", operation="decrypt_report") from exc
    if isinstance(private_key, (bytes, bytearray)):
        private_key = int.from_bytes(private_key, "big")

    data = normalize_payload(payload)
    if len(data) != 72 + TAG_LEN:
        raise DecodeError(
            f"report payload has unexpected length ({len(payload)} bytes)", operation="decrypt_report"
        )

    timestamp = int.from_bytes(data[0:4], "big") + APPLE_EPOCH

    # Ephemeral EC public key (SEC1 uncompressed, 57 bytes for P-224)
    eph_key_bytes = data[5:62]
    try:
        eph_key = ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP224R1(), eph_key_bytes)
        priv_key = ec.derive_private_key(private_key, ec.SECP224R1(), default_backend())
    except ValueError as exc:
        raise DecodeError(str(exc), operation="decrypt_report") from exc

    shared_key = priv_key.exchange(ec.ECDH(), eph_key)

    sym_key = kdf_x963(shared_key, eph_key_bytes, 32)
    decryption_key = sym_key[:16]
    iv = sym_key[16:]

    enc_data = data[62:72]
    tag = data[72:]

    try:
        decryptor = Cipher(algorithms.AES(decryption_key), modes.GCM(iv, tag)).decryptor()
        plaintext = decryptor.update(enc_data) + decryptor.finalize()
    except InvalidTag as exc:
        raise AuthenticationFailure(
            "report authentication tag mismatch", operation="decrypt_report"
        ) from exc

    lat, lon, confidence, status = decode_location(plaintext)
    return LocationFix(
        latitude=lat,
        longitude=lon,
        confidence=confidence,
        status=status,
        observed_at=timestamp,
        source_key_hash=key_hash,
    )


# ---------------------------------------------------------------------------
# GSA handshake helpers
# ---------------------------------------------------------------------------


def encrypt_password(password: str, salt: bytes, iterations: int, protocol: str) -> bytes:
    """Derive the SRP password key with PBKDF2-HMAC-SHA256.

    s2k_fo feeds the hex text of the SHA-256 digest instead of the raw digest.
    """
    if protocol not in SUPPORTED_PROTOCOLS:
        raise UnsupportedVariant(f"unsupported protocol {protocol!r}", operation="encrypt_password")
    p = hashlib.sha256(password.encode("utf-8")).digest()
    if protocol == "s2k_fo":
        p = p.hex().encode("ascii")
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(p)


def create_session_key(session_key: bytes, name: str) -> bytes:
    return hmac.new(session_key, name.encode(), hashlib.sha256).digest()


def decrypt_spd_aes_cbc(session_key: bytes, data: bytes) -> bytes:
    """Decrypt the server's secure payload using the SRP session key."""
    extra_data_key = create_session_key(session_key, "extra data key:")
    # Get only the first 16 bytes of the iv
    extra_data_iv = create_session_key(session_key, "extra data iv:")[:16]

    decryptor = Cipher(algorithms.AES(extra_data_key), modes.CBC(extra_data_iv)).decryptor()
    data = decryptor.update(data) + decryptor.finalize()
    # Remove PKCS#7 padding
    unpadder = padding.PKCS7(128).unpadder()
    return unpadder.update(data) + unpadder.finalize()
