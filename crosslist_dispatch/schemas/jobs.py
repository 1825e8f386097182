from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class JobStatusOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    job_id: str = Field(alias="jobId")
    status: str
    platform_listing_id: str | None = Field(default=None, alias="platformListingId")
    platform_url: str | None = Field(default=None, alias="platformUrl")
    error_message: str | None = Field(default=None, alias="errorMessage")
    created_at: datetime = Field(alias="createdAt")
    completed_at: datetime | None = Field(default=None, alias="completedAt")
