"""
Exception taxonomy for findmy_tools.

Every error carries the name of the operation that raised it and, where an
upstream HTTP exchange was involved, its status code.
"""


class FindMyError(Exception):
    """Base class for all findmy_tools errors."""

    def __init__(self, message: str, *, operation: str | None = None, status: int | None = None):
        super().__init__(message)
        self.operation = operation
        self.status = status

    def __str__(self) -> str:
        msg = super().__str__()
        if self.operation:
            msg = f"{self.operation}: {msg}"
        if self.status is not None:
            msg = f"{msg} (status {self.status})"
        return msg


# ---------------------------------------------------------------------------
# Key material
# ---------------------------------------------------------------------------


class InvalidKeyLength(FindMyError):
    """Public key shorter than 28 bytes."""


class DecodeError(FindMyError):
    """Malformed key or report bytes."""


class ExhaustedAttempts(FindMyError):
    """Key generation spent its attempt budget before producing enough keys.

    `keys` holds whatever was accepted before the budget ran out.
    """

    def __init__(self, message: str, *, keys=None, **kwargs):
        super().__init__(message, **kwargs)
        self.keys = list(keys or [])


# ---------------------------------------------------------------------------
# Identity service handshake
# ---------------------------------------------------------------------------


class ProtocolError(FindMyError):
    """The server broke the expected request/response contract."""


class UnsupportedVariant(ProtocolError):
    """The server negotiated a password derivation other than s2k/s2k_fo."""


class ProofGenerationError(FindMyError):
    """The SRP client could not compute M1."""


class SessionVerificationError(FindMyError):
    """Server proof M2 did not match (possible MITM or protocol mismatch)."""


class SecondFactorRejected(FindMyError):
    """A second-factor trigger or code submission was not accepted."""


class TooManySecondFactorAttempts(FindMyError):
    """The handshake was restarted too many times for second-factor approval."""


class MalformedAuthPayload(FindMyError):
    """An expected field is missing from an authentication payload."""


class ProviderUnavailable(FindMyError):
    """The anisette provider could not be reached or returned garbage."""


# ---------------------------------------------------------------------------
# Reports and transport
# ---------------------------------------------------------------------------


class AuthenticationFailure(FindMyError):
    """AES-GCM tag mismatch while decrypting a location report."""


class TransportError(FindMyError):
    """The HTTP request could not be completed at all."""


class HttpStatusError(FindMyError):
    """The server answered with an unexpected status code."""


class AuthorizationRejected(HttpStatusError):
    """401/403 from the report endpoint; the session credential must be replaced."""
