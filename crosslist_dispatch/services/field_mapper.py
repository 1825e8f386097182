from __future__ import annotations

from typing import Any

from crosslist_dispatch.schemas.listings import (
    DepopMetadata,
    EbayMetadata,
    EtsyMetadata,
    Listing,
    MercariMetadata,
    PoshmarkMetadata,
)


def map_listing_for_platform(listing: Listing, platform: str) -> dict[str, Any]:
    """Flatten a listing into the payload the extension fills marketplace forms with.

    Generic fields pass through unchanged. The overlay for ``platform`` is read
    from ``listing.platform_metadata`` and hoisted to prefixed top-level keys.
    The source listing is never modified.
    """
    payload = listing.model_dump(mode="json", exclude={"platform_metadata"})
    metadata = listing.platform_metadata

    if platform == "mercari":
        payload.update(_mercari_fields(metadata.mercari, payload))
    elif platform == "poshmark":
        payload.update(_poshmark_fields(metadata.poshmark))
    elif platform == "depop":
        payload.update(_depop_fields(metadata.depop))
    elif platform == "ebay":
        payload.update(_ebay_fields(metadata.ebay))
    elif platform == "etsy":
        payload.update(_etsy_fields(metadata.etsy))
    else:
        raise ValueError(f"unsupported platform: {platform}")

    return payload


def _mercari_fields(overlay: MercariMetadata | None, generic: dict[str, Any]) -> dict[str, Any]:
    overlay = overlay or MercariMetadata()
    fields: dict[str, Any] = {
        "mercari_category": overlay.category_id or None,
        "mercari_brand_id": overlay.brand_id or None,
        "mercari_shipping_carrier": overlay.shipping_carrier or None,
        "mercari_shipping_type": overlay.shipping_type or None,
        # Weight overrides win only when set; a zero override still counts.
        "weight_lb": overlay.weight_lb if overlay.weight_lb is not None else generic.get("weight_lb"),
        "weight_oz": overlay.weight_oz if overlay.weight_oz is not None else generic.get("weight_oz"),
    }
    return fields


def _poshmark_fields(overlay: PoshmarkMetadata | None) -> dict[str, Any]:
    overlay = overlay or PoshmarkMetadata()
    return {
        "poshmark_category": overlay.category or None,
        "poshmark_department": overlay.department or None,
        "poshmark_subcategory": overlay.subcategory or None,
        "poshmark_color": list(overlay.color) or None,
    }


def _depop_fields(overlay: DepopMetadata | None) -> dict[str, Any]:
    overlay = overlay or DepopMetadata()
    return {
        "depop_style_tags": list(overlay.style_tags) if overlay.style_tags else None,
        "depop_shipping_from": overlay.shipping_from or None,
    }


def _ebay_fields(overlay: EbayMetadata | None) -> dict[str, Any]:
    overlay = overlay or EbayMetadata()
    return {"ebay_category_id": overlay.category_id or None}


def _etsy_fields(overlay: EtsyMetadata | None) -> dict[str, Any]:
    overlay = overlay or EtsyMetadata()
    return {
        "etsy_who_made": overlay.who_made or None,
        "etsy_when_made": overlay.when_made or None,
    }
