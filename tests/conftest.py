"""Shared fakes: transport, GrandSlam server, report encryptor."""

import hashlib
import hmac
import os
import plistlib
from dataclasses import dataclass, field

import pytest
import srp._pysrp as srp
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import padding, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from findmy_tools.anisette import StaticAnisetteProvider
from findmy_tools.config import Settings
from findmy_tools.crypto import APPLE_EPOCH, encrypt_password
from findmy_tools.http import HttpResponse

# Importing gsa configures the shared SRP module flags used by the fake server
import findmy_tools.gsa  # noqa: F401

ANISETTE = {
    "X-Apple-I-MD": "bWQ=",
    "X-Apple-I-MD-M": "bWRt",
    "X-Apple-I-MD-LU": "bHU=",
    "X-Apple-Locale": "en_US",
    "X-Mme-Client-Info": "<MacBookPro18,3> <Mac OS X;13.4.1;22F8> <com.apple.AOSKit/282 (com.apple.dt.Xcode/3594.4.19)>",
}

USERNAME = "user@example.com"
PASSWORD = "hunter2"


@dataclass
class Call:
    method: str
    url: str
    headers: dict
    body: bytes | None
    auth: tuple | None
    timeout: float | None
    verify: bool


@dataclass
class FakeTransport:
    """Routes (method, url) to a handler taking the Call and returning HttpResponse."""

    routes: dict = field(default_factory=dict)
    calls: list = field(default_factory=list)

    def route(self, method, url, handler):
        if isinstance(handler, HttpResponse):
            response = handler
            handler = lambda call: response  # noqa: E731
        self.routes[(method, url)] = handler

    def send(self, method, url, headers=None, body=None, auth=None, timeout=None, verify=True):
        call = Call(method, url, dict(headers or {}), body, auth, timeout, verify)
        self.calls.append(call)
        return self.routes[(method, url)](call)

    def calls_to(self, url):
        return [c for c in self.calls if c.url == url]


class ScriptedPrompt:
    def __init__(self, *answers):
        self.answers = list(answers)
        self.messages = []

    def __call__(self, message, secret=False):
        self.messages.append((message, secret))
        return self.answers.pop(0)


def plist_response(response: dict, status: int = 200) -> HttpResponse:
    return HttpResponse(status, plistlib.dumps({"Response": response}))


def encrypt_spd(session_key: bytes, data: bytes) -> bytes:
    key = hmac.new(session_key, b"extra data key:", hashlib.sha256).digest()
    iv = hmac.new(session_key, b"extra data iv:", hashlib.sha256).digest()[:16]
    padder = padding.PKCS7(128).padder()
    data = padder.update(data) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    return encryptor.update(data) + encryptor.finalize()


class FakeGrandSlam:
    """SRP verifier side of GsService2, backed by srp.Verifier."""

    def __init__(
        self,
        username=USERNAME,
        password=PASSWORD,
        protocol="s2k",
        iterations=1000,
        spd=None,
        au_sequence=(),
        tamper_m2=False,
    ):
        self.protocol = protocol
        self.iterations = iterations
        self.salt = os.urandom(16)
        self.spd = spd or {
            "adsid": "000111-22-aaaa",
            "GsIdmsToken": "idms-token",
            "t": {"com.apple.gs.idms.pet": {"token": "pet-token"}},
            "sk": b"\x01\x02\x03",
        }
        self.au_sequence = list(au_sequence)
        self.tamper_m2 = tamper_m2
        self.requests = []
        self.verifier = None

        key = encrypt_password(password, self.salt, iterations, protocol)
        N, g = srp.get_ng(srp.NG_2048, None, None)
        x = srp.gen_x(hashlib.sha256, self.salt, username, key)
        self.vkey = pow(g, x, N).to_bytes(256, "big")

    @property
    def inits(self) -> int:
        return sum(1 for r in self.requests if r["o"] == "init")

    def __call__(self, call: Call) -> HttpResponse:
        req = plistlib.loads(call.body)["Request"]
        self.requests.append(req)
        if req["o"] == "init":
            self.verifier = srp.Verifier(
                req["u"],
                self.salt,
                self.vkey,
                req["A2k"],
                hash_alg=srp.SHA256,
                ng_type=srp.NG_2048,
            )
            s, B = self.verifier.get_challenge()
            return plist_response(
                {
                    "Status": {"ec": 0},
                    "sp": self.protocol,
                    "s": s,
                    "i": self.iterations,
                    "B": B,
                    "c": "cookie",
                }
            )

        hamk = self.verifier.verify_session(req["M1"])
        if hamk is None:
            return plist_response({"Status": {"ec": -20101, "em": "Your Apple ID or password was entered incorrectly."}})
        if self.tamper_m2:
            hamk = bytes(b ^ 0xFF for b in hamk)

        status = {"ec": 0}
        if self.au_sequence:
            status["au"] = self.au_sequence.pop(0)
        spd = encrypt_spd(self.verifier.get_session_key(), plistlib.dumps(self.spd))
        return plist_response({"Status": status, "M2": hamk, "spd": spd})


# ---------------------------------------------------------------------------
# Location reports
# ---------------------------------------------------------------------------

OWNER_SCALAR = 0x1F2E3D4C5B6A79880123456789ABCDEF0123456789ABCDEF01234567
EPHEMERAL_SCALAR = 0x0DEADBEEF0DEADBEEF0DEADBEEF0DEADBEEF0DEADBEEF0DEADBEEF0


def encrypt_report(
    owner_scalar: int,
    lat: float,
    lon: float,
    confidence: int,
    status: int,
    observed_at: int,
    ephemeral_scalar: int = EPHEMERAL_SCALAR,
    extended: bool = False,
) -> bytes:
    """Encrypt a report the way a finder device does."""
    owner_pub = ec.derive_private_key(owner_scalar, ec.SECP224R1(), default_backend()).public_key()
    eph = ec.derive_private_key(ephemeral_scalar, ec.SECP224R1(), default_backend())
    eph_bytes = eph.public_key().public_bytes(
        serialization.Encoding.X962, serialization.PublicFormat.UncompressedPoint
    )
    shared = eph.exchange(ec.ECDH(), owner_pub)
    sym = hashlib.sha256(shared + b"\x00\x00\x00\x01" + eph_bytes).digest()

    body = (
        round(lat * 10000000).to_bytes(4, "big", signed=True)
        + round(lon * 10000000).to_bytes(4, "big", signed=True)
        + bytes([confidence, status])
    )
    encryptor = Cipher(algorithms.AES(sym[:16]), modes.GCM(sym[16:])).encryptor()
    ciphertext = encryptor.update(body) + encryptor.finalize()

    head = (observed_at - APPLE_EPOCH).to_bytes(4, "big")
    if extended:
        head += b"\x01"
    return head + bytes([confidence]) + eph_bytes + ciphertext + encryptor.tag


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def anisette():
    return StaticAnisetteProvider(ANISETTE)


@pytest.fixture
def transport():
    return FakeTransport()
