"""
Client for Apple's Find My offline-finding network.

    keys     - accessory key generation and advertisement encoding
    gsa      - GrandSlam authentication (SRP, 2FA, mobileme delegates)
    reports  - location report fetching
    crypto   - report decryption and handshake primitives
"""

from findmy_tools.anisette import DeviceIdentity, RemoteAnisetteProvider, StaticAnisetteProvider
from findmy_tools.config import Settings
from findmy_tools.crypto import LocationFix, decrypt_report
from findmy_tools.gsa import Authenticator, derive_session
from findmy_tools.keys import Advertisement, KeyPair, derive_advertisement, from_private_key, generate_keys
from findmy_tools.reports import RawReport, ReportService
from findmy_tools.session import JsonFileAuthStore, MemoryAuthStore, SessionCredential, obtain_session

__version__ = "0.1.0"

__all__ = [
    "Advertisement",
    "Authenticator",
    "DeviceIdentity",
    "JsonFileAuthStore",
    "KeyPair",
    "LocationFix",
    "MemoryAuthStore",
    "RawReport",
    "RemoteAnisetteProvider",
    "ReportService",
    "SessionCredential",
    "Settings",
    "StaticAnisetteProvider",
    "decrypt_report",
    "derive_advertisement",
    "derive_session",
    "from_private_key",
    "generate_keys",
    "obtain_session",
]
