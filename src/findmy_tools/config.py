"""
Runtime settings: endpoints, user agents, timeouts and local paths.
"""

import os
from dataclasses import dataclass

DEFAULT_AUTH_PATH = "~/.config/findmy-tools/auth.json"
DEFAULT_ANISETTE_URL = "http://localhost:6969"

GSA_URL = "https://gsa.apple.com/grandslam/GsService2"
GSA_VALIDATE_URL = "https://gsa.apple.com/grandslam/GsService2/validate"
TRUSTED_DEVICE_URL = "https://gsa.apple.com/auth/verify/trusteddevice"
SMS_REQUEST_URL = "https://gsa.apple.com/auth/verify/phone/"
SMS_CODE_URL = "https://gsa.apple.com/auth/verify/phone/securitycode"
LOGIN_DELEGATES_URL = "https://setup.icloud.com/setup/iosbuddy/loginDelegates"
FETCH_URL = "https://gateway.icloud.com/acsnservice/fetch"

GSA_USER_AGENT = "akd/1.0 CFNetwork/978.0.7 Darwin/18.7.0"
ICLOUD_USER_AGENT = "com.apple.iCloudHelper/282 CFNetwork/1408.0.4 Darwin/22.5.0"

# Max key hashes per Apple API request to avoid truncated results.
FETCH_BATCH_SIZE = 10

_TRUE = ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    """Settings shared by the authenticator, anisette provider and report service."""

    anisette_url: str = DEFAULT_ANISETTE_URL
    auth_path: str = DEFAULT_AUTH_PATH

    gsa_url: str = GSA_URL
    gsa_validate_url: str = GSA_VALIDATE_URL
    trusted_device_url: str = TRUSTED_DEVICE_URL
    sms_request_url: str = SMS_REQUEST_URL
    sms_code_url: str = SMS_CODE_URL
    login_delegates_url: str = LOGIN_DELEGATES_URL
    fetch_url: str = FETCH_URL

    gsa_user_agent: str = GSA_USER_AGENT
    icloud_user_agent: str = ICLOUD_USER_AGENT

    anisette_timeout: float = 5
    gsa_timeout: float = 5
    second_factor_timeout: float = 10
    fetch_timeout: float = 30

    # gsa.apple.com is signed by Apple's own CA, which is usually not in certifi.
    verify_gsa_tls: bool = False
    fetch_batch_size: int = FETCH_BATCH_SIZE

    @classmethod
    def from_env(cls, environ=None, **overrides) -> "Settings":
        """Build settings from FINDMY_* environment variables, then apply overrides."""
        env = os.environ if environ is None else environ
        values = {}
        if env.get("FINDMY_ANISETTE_URL"):
            values["anisette_url"] = env["FINDMY_ANISETTE_URL"]
        if env.get("FINDMY_AUTH_PATH"):
            values["auth_path"] = env["FINDMY_AUTH_PATH"]
        if env.get("FINDMY_VERIFY_GSA_TLS"):
            values["verify_gsa_tls"] = env["FINDMY_VERIFY_GSA_TLS"].strip().lower() in _TRUE
        values.update(overrides)
        return cls(**values)
