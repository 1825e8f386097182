from __future__ import annotations

from enum import Enum


class Platform(str, Enum):
    EBAY = "ebay"
    ETSY = "etsy"
    POSHMARK = "poshmark"
    MERCARI = "mercari"
    DEPOP = "depop"


class JobOperation(str, Enum):
    CREATE = "CREATE"
    DELETE = "DELETE"


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


ALL_PLATFORMS = frozenset(platform.value for platform in Platform)
# Platforms the browser extension knows how to execute.
AGENT_PLATFORMS = ("poshmark", "mercari", "depop")
TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED.value, JobStatus.FAILED.value})
ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "queued": frozenset({"processing", "failed"}),
    "processing": frozenset({"completed", "failed"}),
    "completed": frozenset(),
    "failed": frozenset(),
}

PLACEHOLDER_CREDENTIAL_PREFIXES = ("SESSION_VERIFIED:", "PLACEHOLDER")

PLATFORM_NOT_CONNECTED_MESSAGE = "Platform not connected. Please connect your account in Settings."
LISTING_NOT_FOUND_MESSAGE = "Listing not found"
STALE_DELIVERY_MESSAGE = "Delivery timed out before the agent reported a result"


def is_valid_transition(from_status: str, to_status: str) -> bool:
    return to_status in ALLOWED_TRANSITIONS.get(from_status, frozenset())


def has_usable_credentials(encrypted_credentials: str | None) -> bool:
    if not encrypted_credentials:
        return False
    stripped = encrypted_credentials.strip()
    if not stripped:
        return False
    return not stripped.startswith(PLACEHOLDER_CREDENTIAL_PREFIXES)


def session_verified_marker(confidence: str, verified_at: str) -> str:
    return f"SESSION_VERIFIED:{confidence}:{verified_at}"
