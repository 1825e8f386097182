from crosslist_dispatch.schemas.listings import Listing
from crosslist_dispatch.services.validation import format_validation_error, validate_listing_for_platform


def _listing(**overrides) -> Listing:
    data = {
        "id": "listing-1",
        "user_id": "user-1",
        "title": "Vintage denim jacket",
        "description": "Light wash, barely worn",
        "price": 45.0,
        "original_price": 120.0,
        "category": "Jackets",
        "brand": "Levi's",
        "size": "M",
        "photo_urls": ["https://cdn.example.com/1.jpg"],
        "platform_metadata": {"poshmark": {"category": "Women > Jackets & Coats"}},
    }
    data.update(overrides)
    return Listing.model_validate(data)


def test_complete_listing_is_valid_for_agent_platforms() -> None:
    listing = _listing()
    for platform in ("poshmark", "mercari", "depop", "ebay"):
        result = validate_listing_for_platform(platform, listing)
        assert result.is_valid, platform
        assert result.missing_fields == []


def test_missing_price_and_photos_are_reported_in_order() -> None:
    listing = _listing(price=0, photo_urls=[])
    result = validate_listing_for_platform("mercari", listing)

    assert not result.is_valid
    assert result.missing_fields == ["Price", "Photos"]
    assert format_validation_error("mercari", result.missing_fields) == (
        "Missing required fields for mercari: Price and Photos"
    )


def test_poshmark_rules_follow_fixed_order() -> None:
    listing = _listing(
        title="  ",
        description=None,
        price=None,
        original_price=None,
        photo_urls=None,
        brand="",
        size=None,
        platform_metadata=None,
    )
    result = validate_listing_for_platform("poshmark", listing)

    assert result.missing_fields == [
        "Title",
        "Description",
        "Price",
        "Original Price",
        "Photos",
        "Brand",
        "Poshmark Category",
        "Size",
    ]


def test_ebay_does_not_require_category() -> None:
    result = validate_listing_for_platform("ebay", _listing(category=None))
    assert result.is_valid


def test_depop_requires_category() -> None:
    result = validate_listing_for_platform("depop", _listing(category=None))
    assert result.missing_fields == ["Category"]


def test_etsy_and_unknown_platforms_are_rejected() -> None:
    assert validate_listing_for_platform("etsy", _listing()).missing_fields == ["Etsy integration not yet available"]
    assert validate_listing_for_platform("grailed", _listing()).missing_fields == ["Unknown platform"]


def test_format_validation_error_shapes() -> None:
    assert format_validation_error("Depop", []) == ""
    assert format_validation_error("Depop", ["Title"]) == "Missing required field for Depop: Title"
    assert format_validation_error("Depop", ["Title", "Price", "Photos"]) == (
        "Missing required fields for Depop: Title, Price and Photos"
    )
