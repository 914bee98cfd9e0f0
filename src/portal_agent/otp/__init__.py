"""One-time-code relay: extraction, storage and polling client."""

from portal_agent.otp.client import OTPRelayClient, RelayCode
from portal_agent.otp.extractor import extract_code
from portal_agent.otp.store import OTPEntry, OTPStore

__all__ = [
    "OTPEntry",
    "OTPRelayClient",
    "OTPStore",
    "RelayCode",
    "extract_code",
]
