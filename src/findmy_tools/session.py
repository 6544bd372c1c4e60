"""
Session credentials (dsid + searchPartyToken) and where they are kept.

The authenticator never touches storage itself; callers pass an `AuthStore`
to `obtain_session` when they want a credential reused between runs.
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from findmy_tools.config import DEFAULT_AUTH_PATH, Settings
from findmy_tools.errors import MalformedAuthPayload

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionCredential:
    """dsid and searchPartyToken, used as basic auth for report fetches."""

    account_id: str
    bearer_token: str

    @property
    def basic_auth(self) -> tuple[str, str]:
        return self.account_id, self.bearer_token

    def to_json(self) -> dict:
        return {"dsid": self.account_id, "searchPartyToken": self.bearer_token}

    @classmethod
    def from_json(cls, data: dict) -> "SessionCredential":
        try:
            return cls(str(data["dsid"]), str(data["searchPartyToken"]))
        except (KeyError, TypeError) as exc:
            raise MalformedAuthPayload(
                "auth record needs dsid and searchPartyToken", operation="load_auth"
            ) from exc


class AuthStore(Protocol):
    def load(self) -> SessionCredential | None: ...

    def save(self, credential: SessionCredential) -> None: ...


class MemoryAuthStore:
    """Keeps the credential for the lifetime of the process only."""

    def __init__(self, credential: SessionCredential | None = None):
        self.credential = credential

    def load(self) -> SessionCredential | None:
        return self.credential

    def save(self, credential: SessionCredential) -> None:
        self.credential = credential


class JsonFileAuthStore:
    """auth.json compatible with the other Find My tooling."""

    def __init__(self, path: str | Path = DEFAULT_AUTH_PATH):
        self.path = Path(path).expanduser()

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "JsonFileAuthStore":
        return cls((settings or Settings()).auth_path)

    def load(self) -> SessionCredential | None:
        if not self.path.exists():
            return None
        return SessionCredential.from_json(json.loads(self.path.read_text()))

    def save(self, credential: SessionCredential) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(credential.to_json(), indent=2))
        logger.info("Saved session credential to %s", self.path)


def obtain_session(
    store: AuthStore,
    authenticator,
    username: str | None = None,
    password: str | None = None,
    second_factor: str = "sms",
    regenerate: bool = False,
) -> SessionCredential:
    """Return the stored credential, or log in and store a fresh one.

    Credentials left as None are asked for by the authenticator's prompt.
    """
    if not regenerate:
        credential = store.load()
        if credential is not None:
            return credential

    login = authenticator.login(username, password, second_factor)
    credential = authenticator.derive_session(login)
    store.save(credential)
    return credential
