"""
Logging setup shared by the API and the service layer.
"""

import logging
from typing import Optional

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_configured = False


def setup_logging(level: Optional[str] = None) -> None:
    """Configure the root logger once. Later calls only adjust the level."""
    global _configured

    if level is None:
        from config.settings import settings
        level = settings.LOG_LEVEL

    root = logging.getLogger()
    root.setLevel(level.upper())

    if _configured:
        return

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    root.addHandler(handler)
    _configured = True


def mask_mobile(mobile: str) -> str:
    """98765****0 style masking for log lines and user messages."""
    digits = "".join(ch for ch in str(mobile or "") if ch in "0123456789")
    if len(digits) < 10:
        return "****"
    return f"{digits[:5]}****{digits[-1]}"


def mask_aadhaar(aadhaar: str) -> str:
    """XXXX-XXXX-1234 style masking."""
    digits = "".join(ch for ch in str(aadhaar or "") if ch in "0123456789")
    return f"XXXX-XXXX-{digits[-4:]}" if len(digits) >= 4 else "XXXX-XXXX-XXXX"
