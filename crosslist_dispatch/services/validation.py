from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field

from crosslist_dispatch.schemas.listings import Listing


@dataclass(frozen=True, slots=True)
class ValidationResult:
    is_valid: bool
    missing_fields: list[str] = field(default_factory=list)


Rule = tuple[str, Callable[[Listing], bool]]


def _has_text(value: str | None) -> bool:
    return bool(value and value.strip())


def _is_positive(value: float | None) -> bool:
    return value is not None and value > 0


TITLE: Rule = ("Title", lambda listing: _has_text(listing.title))
DESCRIPTION: Rule = ("Description", lambda listing: _has_text(listing.description))
PRICE: Rule = ("Price", lambda listing: _is_positive(listing.price))
PHOTOS: Rule = ("Photos", lambda listing: len(listing.photo_urls) > 0)
CATEGORY: Rule = ("Category", lambda listing: _has_text(listing.category))
ORIGINAL_PRICE: Rule = ("Original Price", lambda listing: _is_positive(listing.original_price))
BRAND: Rule = ("Brand", lambda listing: _has_text(listing.brand))
SIZE: Rule = ("Size", lambda listing: _has_text(listing.size))
POSHMARK_CATEGORY: Rule = (
    "Poshmark Category",
    lambda listing: listing.platform_metadata.poshmark is not None
    and _has_text(listing.platform_metadata.poshmark.category),
)

# Rule order is the order missing fields are reported in.
PLATFORM_RULES: dict[str, tuple[Rule, ...]] = {
    # eBay category is optional; it is suggested when missing.
    "ebay": (TITLE, DESCRIPTION, PRICE, PHOTOS),
    "poshmark": (TITLE, DESCRIPTION, PRICE, ORIGINAL_PRICE, PHOTOS, BRAND, POSHMARK_CATEGORY, SIZE),
    "mercari": (TITLE, DESCRIPTION, PRICE, PHOTOS, CATEGORY),
    "depop": (TITLE, DESCRIPTION, PRICE, PHOTOS, CATEGORY),
}

UNAVAILABLE_PLATFORMS: dict[str, str] = {
    "etsy": "Etsy integration not yet available",
}


def validate_listing_for_platform(platform: str, listing: Listing) -> ValidationResult:
    key = platform.strip().lower()
    if key in UNAVAILABLE_PLATFORMS:
        return ValidationResult(is_valid=False, missing_fields=[UNAVAILABLE_PLATFORMS[key]])

    rules = PLATFORM_RULES.get(key)
    if rules is None:
        return ValidationResult(is_valid=False, missing_fields=["Unknown platform"])

    missing = [label for label, check in rules if not check(listing)]
    return ValidationResult(is_valid=not missing, missing_fields=missing)


def format_validation_error(platform: str, missing_fields: list[str]) -> str:
    if not missing_fields:
        return ""
    if len(missing_fields) == 1:
        return f"Missing required field for {platform}: {missing_fields[0]}"

    *others, last = missing_fields
    return f"Missing required fields for {platform}: {', '.join(others)} and {last}"
