from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class MercariMetadata(BaseModel):
    model_config = ConfigDict(extra="ignore")

    category_id: str | None = None
    brand_id: str | None = None
    shipping_carrier: str | None = None
    shipping_type: str | None = None
    weight_lb: float | None = None
    weight_oz: float | None = None


class PoshmarkMetadata(BaseModel):
    model_config = ConfigDict(extra="ignore")

    category: str | None = None
    department: str | None = None
    subcategory: str | None = None
    color: list[str] = Field(default_factory=list)


class DepopMetadata(BaseModel):
    model_config = ConfigDict(extra="ignore")

    style_tags: list[str] | None = None
    shipping_from: str | None = None


class EbayMetadata(BaseModel):
    model_config = ConfigDict(extra="ignore")

    category_id: str | None = None


class EtsyMetadata(BaseModel):
    model_config = ConfigDict(extra="ignore")

    who_made: str | None = None
    when_made: str | None = None


class PlatformMetadata(BaseModel):
    """Per-platform overlays, one typed variant per marketplace."""

    model_config = ConfigDict(extra="ignore")

    mercari: MercariMetadata | None = None
    poshmark: PoshmarkMetadata | None = None
    depop: DepopMetadata | None = None
    ebay: EbayMetadata | None = None
    etsy: EtsyMetadata | None = None


class Listing(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    id: str
    user_id: str
    title: str | None = None
    description: str | None = None
    price: float | None = None
    original_price: float | None = None
    quantity: int = 1
    condition: str | None = None
    category: str | None = None
    brand: str | None = None
    size: str | None = None
    color: str | None = None
    weight_lb: float | None = None
    weight_oz: float | None = None
    photo_urls: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    sku: str | None = None
    platform_metadata: PlatformMetadata = Field(default_factory=PlatformMetadata)

    @field_validator("photo_urls", "tags", mode="before")
    @classmethod
    def _none_as_empty_list(cls, value: Any) -> Any:
        return [] if value is None else value

    @field_validator("platform_metadata", mode="before")
    @classmethod
    def _none_as_empty_metadata(cls, value: Any) -> Any:
        return {} if value is None else value


class PublishRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId", min_length=1)
    listing_id: str = Field(alias="listingId", min_length=1)
    platform: str = Field(min_length=1)


class DelistRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId", min_length=1)
    platform_listing_id: str = Field(alias="platformListingId", min_length=1)
    platform: str = Field(min_length=1)


class JobAccepted(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    job_id: str = Field(alias="jobId")
    message: str
