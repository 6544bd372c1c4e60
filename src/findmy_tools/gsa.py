"""
GrandSlam (GSA) authentication against Apple's identity service.

Implements the full flow:
1. SRP-6a handshake (init / complete) with s2k or s2k_fo password keys
2. Server proof verification and secure payload (spd) decryption
3. Second factor (SMS or trusted device), then a fresh handshake
4. com.apple.mobileme delegate login for the searchPartyToken

Reference: pypush / grandslam (https://github.com/JJTech0130/grandslam)
"""

import base64
import enum
import json
import logging

import srp._pysrp as srp

from findmy_tools.anisette import DeviceIdentity, generate_cpd
from findmy_tools.config import Settings
from findmy_tools.crypto import SUPPORTED_PROTOCOLS, decrypt_spd_aes_cbc, encrypt_password
from findmy_tools.errors import (
    HttpStatusError,
    MalformedAuthPayload,
    ProofGenerationError,
    ProtocolError,
    SecondFactorRejected,
    SessionVerificationError,
    TooManySecondFactorAttempts,
    UnsupportedVariant,
)
from findmy_tools.http import RequestsTransport
from findmy_tools.plist import SecurePayload, decode_plist, encode_plist
from findmy_tools.prompt import ConsolePrompt
from findmy_tools.session import SessionCredential

logger = logging.getLogger(__name__)

# Configure SRP library for compatibility with Apple's implementation
srp.rfc5054_enable()
srp.no_username_in_x()

SECOND_FACTOR_STATUSES = ("trustedDeviceSecondaryAuth", "secondaryAuth")
SECOND_FACTOR_METHODS = ("sms", "trusted_device")
DEFAULT_SECOND_FACTOR = "sms"

INIT_FIELDS = ("sp", "s", "i", "B", "c")

XCODE_HEADERS = {
    "Accept": "application/json, text/javascript, */*",
    "X-Apple-App-Info": "com.apple.gs.xcode.auth",
    "X-Xcode-Version": "11.2 (11B41)",
    "User-Agent": "Xcode",
}


class HandshakeStep(enum.Enum):
    INIT = "init"
    CHALLENGE_SENT = "challenge_sent"
    CHALLENGE_VERIFIED = "challenge_verified"
    SECOND_FACTOR_PENDING = "second_factor_pending"
    COMPLETE = "complete"


class HandshakeState:
    """One SRP attempt. A second factor always starts over with a new instance."""

    def __init__(self, username: str):
        self.username = username
        # Password is empty here; it is replaced once the server sends the salt
        self.usr = srp.User(username, b"", hash_alg=srp.SHA256, ng_type=srp.NG_2048)
        self.step = HandshakeStep.INIT
        self.protocol: str | None = None
        self.salt: bytes | None = None
        self.iterations: int | None = None

    def start(self) -> bytes:
        """Begin SRP and return the client public value A."""
        _, a2k = self.usr.start_authentication()
        return a2k

    def process_challenge(self, password: str, response: dict) -> bytes:
        """Derive the password key from the init response and return the M1 proof."""
        self.protocol = response["sp"]
        self.salt = response["s"]
        self.iterations = response["i"]
        self.usr.p = encrypt_password(password, self.salt, self.iterations, self.protocol)
        m1 = self.usr.process_challenge(self.salt, response["B"])
        if m1 is None:
            raise ProofGenerationError("failed to process SRP challenge", operation="gsa_init")
        self.step = HandshakeStep.CHALLENGE_SENT
        return m1

    def verify(self, m2) -> bytes:
        """Check the server proof and return the shared session key."""
        if not isinstance(m2, bytes):
            raise SessionVerificationError("server sent no M2 proof", operation="gsa_complete")
        self.usr.verify_session(m2)
        if not self.usr.authenticated():
            raise SessionVerificationError("failed to verify session (M2 mismatch)", operation="gsa_complete")
        self.step = HandshakeStep.CHALLENGE_VERIFIED
        return self.usr.get_session_key()


def check_status(response: dict, operation: str) -> dict:
    """Raise ProtocolError when the server reports a non-zero error code."""
    status = response.get("Status") or {}
    ec = status.get("ec", 0)
    if ec != 0:
        raise ProtocolError(f"error {ec}: {status.get('em', '')}", operation=operation)
    return status


def derive_session(payload: dict) -> SessionCredential:
    """Build the report-fetch credential from a mobileme login response."""
    try:
        dsid = payload["dsid"]
        token = payload["delegates"]["com.apple.mobileme"]["service-data"]["tokens"][
            "searchPartyToken"
        ]
    except (KeyError, TypeError) as exc:
        raise MalformedAuthPayload(
            "login response has no dsid/searchPartyToken", operation="derive_session"
        ) from exc
    return SessionCredential(str(dsid), str(token))


class Authenticator:
    """GrandSlam login for an Apple ID, ending in an iCloud session credential."""

    def __init__(
        self,
        anisette,
        transport=None,
        prompt=None,
        device: DeviceIdentity | None = None,
        settings: Settings | None = None,
        max_second_factor_attempts: int = 3,
    ):
        self.anisette = anisette
        self.transport = transport or RequestsTransport()
        self.prompt = prompt or ConsolePrompt()
        self.device = device or getattr(anisette, "device", None) or DeviceIdentity()
        self.settings = settings or Settings()
        self.max_second_factor_attempts = max_second_factor_attempts

    derive_session = staticmethod(derive_session)

    # -----------------------------------------------------------------------
    # Requests
    # -----------------------------------------------------------------------

    def _gsa_request(self, parameters: dict, operation: str) -> dict:
        """POST one GsService2 request and return its checked Response dictionary."""
        anisette = self.anisette.get_headers()
        body = {
            "Header": {"Version": "1.0.1"},
            "Request": {"cpd": generate_cpd(anisette), **parameters},
        }
        headers = {
            "Content-Type": "text/x-xml-plist",
            "Accept": "*/*",
            "User-Agent": self.settings.gsa_user_agent,
            **anisette,
        }

        resp = self.transport.send(
            "POST",
            self.settings.gsa_url,
            headers=headers,
            body=encode_plist(body),
            timeout=self.settings.gsa_timeout,
            verify=self.settings.verify_gsa_tls,
        )
        if resp.status != 200:
            raise HttpStatusError("GSA request failed", operation=operation, status=resp.status)

        r = decode_plist(resp.content, operation).get("Response")
        if not isinstance(r, dict):
            raise ProtocolError("response has no Response dictionary", operation=operation)
        check_status(r, operation)
        return r

    def _handshake(self, state: HandshakeState, password: str) -> tuple[dict, SecurePayload]:
        r = self._gsa_request(
            {
                "A2k": state.start(),
                "ps": list(SUPPORTED_PROTOCOLS),
                "u": state.username,
                "o": "init",
            },
            "gsa_init",
        )

        missing = [k for k in INIT_FIELDS if k not in r]
        if missing:
            raise ProtocolError(f"init response is missing {', '.join(missing)}", operation="gsa_init")
        if r["sp"] not in SUPPORTED_PROTOCOLS:
            raise UnsupportedVariant(
                f"only s2k and s2k_fo are supported, server returned {r['sp']}", operation="gsa_init"
            )

        logger.debug("Attempting password challenge (%s, %d iterations)", r["sp"], r["i"])
        m1 = state.process_challenge(password, r)

        r = self._gsa_request(
            {"c": r["c"], "M1": m1, "u": state.username, "o": "complete"},
            "gsa_complete",
        )

        session_key = state.verify(r.get("M2"))

        if not isinstance(r.get("spd"), bytes):
            raise ProtocolError("complete response has no spd", operation="gsa_complete")
        try:
            spd = decrypt_spd_aes_cbc(session_key, r["spd"])
        except ValueError as exc:
            raise ProtocolError("could not decrypt spd", operation="gsa_complete") from exc
        return r.get("Status") or {}, SecurePayload.from_bytes(spd)

    # -----------------------------------------------------------------------
    # Authentication
    # -----------------------------------------------------------------------

    def authenticate(self, username: str, password: str, second_factor: str = DEFAULT_SECOND_FACTOR) -> dict:
        """Run the GSA handshake and return the decrypted session payload.

        When the server asks for a second factor, the code is requested via
        `second_factor` and the whole handshake starts again, falling back to
        the default method on later rounds.
        """
        if second_factor not in SECOND_FACTOR_METHODS:
            raise ValueError(f"unknown second factor method {second_factor!r}")

        logger.info("Attempting authentication for user %s", username)
        restarts = 0
        last_rejection = None
        while True:
            state = HandshakeState(username)
            status, spd = self._handshake(state, password)

            au = status.get("au")
            if au is None:
                state.step = HandshakeStep.COMPLETE
                logger.info("GSA authentication successful")
                return spd.as_dict()
            if au not in SECOND_FACTOR_STATUSES:
                raise ProtocolError(f"unknown auth value {au!r}", operation="authenticate")

            state.step = HandshakeStep.SECOND_FACTOR_PENDING
            if restarts >= self.max_second_factor_attempts:
                raise TooManySecondFactorAttempts(
                    f"second factor still required after {restarts} attempts",
                    operation="authenticate",
                ) from last_rejection
            restarts += 1

            logger.info("2FA required (%s), requesting code", au)
            fields = SecurePayload(spd.transportable())
            try:
                self.second_factor(second_factor, fields.text("adsid"), fields.text("GsIdmsToken"))
            except SecondFactorRejected as exc:
                logger.warning("%s", exc)
                last_rejection = exc
            second_factor = DEFAULT_SECOND_FACTOR

    def second_factor(self, method: str, adsid: str, idms_token: str) -> None:
        if method == "trusted_device":
            self.trusted_device_second_factor(adsid, idms_token)
        else:
            self.sms_second_factor(adsid, idms_token)

    def _second_factor_headers(self, adsid: str, idms_token: str) -> dict:
        identity_token = base64.b64encode(f"{adsid}:{idms_token}".encode()).decode()
        headers = dict(XCODE_HEADERS)
        headers["X-Apple-Identity-Token"] = identity_token
        headers.update(self.anisette.get_headers())
        return headers

    def _second_factor_request(self, method, url, headers, body=None):
        return self.transport.send(
            method,
            url,
            headers=headers,
            body=body,
            timeout=self.settings.second_factor_timeout,
            verify=self.settings.verify_gsa_tls,
        )

    def trusted_device_second_factor(self, adsid: str, idms_token: str) -> None:
        headers = self._second_factor_headers(adsid, idms_token)

        # Triggers the prompt on trusted devices; the HTML response is not needed
        self._second_factor_request("GET", self.settings.trusted_device_url, headers)

        headers["security-code"] = self.prompt("Enter 2FA code: ")
        headers["Accept"] = "text/x-xml-plist"

        resp = self._second_factor_request("GET", self.settings.gsa_validate_url, headers)
        if resp.status != 200:
            raise SecondFactorRejected(
                "trusted device code rejected", operation="trusted_device", status=resp.status
            )
        logger.info("2FA successful")

    def sms_second_factor(self, adsid: str, idms_token: str) -> None:
        headers = self._second_factor_headers(adsid, idms_token)
        headers["Content-Type"] = "application/json"
        body = {"phoneNumber": {"id": 1}, "mode": "sms"}

        resp = self._second_factor_request(
            "PUT", self.settings.sms_request_url, headers, json.dumps(body).encode()
        )
        if resp.status != 200:
            raise SecondFactorRejected("failed to request SMS code", operation="sms", status=resp.status)

        body["securityCode"] = {"code": self.prompt("Enter 2FA code: ")}
        resp = self._second_factor_request(
            "POST", self.settings.sms_code_url, headers, json.dumps(body).encode()
        )
        if resp.status != 200:
            raise SecondFactorRejected("SMS code rejected", operation="sms", status=resp.status)
        logger.info("2FA successful")

    # -----------------------------------------------------------------------
    # iCloud delegate login
    # -----------------------------------------------------------------------

    def login(
        self,
        username: str | None = None,
        password: str | None = None,
        second_factor: str = DEFAULT_SECOND_FACTOR,
    ) -> dict:
        """Authenticate, then trade the PET token for com.apple.mobileme delegate data.

        A missing Apple ID or password is asked for through the prompt.
        """
        if not username:
            username = self.prompt("Apple ID: ")
        if not password:
            password = self.prompt("Password: ", secret=True)

        g = self.authenticate(username, password, second_factor)
        try:
            pet = g["t"]["com.apple.gs.idms.pet"]["token"]
            adsid = g["adsid"]
        except (KeyError, TypeError) as exc:
            raise MalformedAuthPayload("session payload has no PET token", operation="login") from exc

        data = {
            "apple-id": username,
            "delegates": {"com.apple.mobileme": {}},
            "password": pet,
            "client-id": self.device.user_id,
        }
        headers = {
            "X-Apple-ADSID": adsid,
            "User-Agent": self.settings.icloud_user_agent,
            **self.anisette.get_headers(),
        }

        logger.info("Logging into com.apple.mobileme")
        resp = self.transport.send(
            "POST",
            self.settings.login_delegates_url,
            headers=headers,
            body=encode_plist(data),
            auth=(username, pet),
            timeout=self.settings.gsa_timeout,
        )
        if resp.status != 200:
            raise HttpStatusError("delegate login failed", operation="login", status=resp.status)
        return decode_plist(resp.content, "login")
