from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class AgentIdentity(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str | None = Field(default=None, alias="userId")
    auth_token: str | None = Field(default=None, alias="authToken")


class PendingJobOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    job_id: str = Field(alias="jobId")
    platform: str
    operation: Literal["CREATE", "DELETE"]
    listing_data: dict[str, Any] | None = Field(default=None, alias="listingData")
    platform_listing_id: str | None = Field(default=None, alias="platformListingId")


class RegisterOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    connected: bool
    pending_jobs: list[PendingJobOut] = Field(alias="pendingJobs")
    message: str


class PollOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    has_new_jobs: bool = Field(alias="hasNewJobs")
    jobs: list[PendingJobOut]


class JobResultReport(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    job_id: str = Field(alias="jobId", min_length=1)
    success: bool
    platform_listing_id: str | None = Field(default=None, alias="platformListingId")
    platform_url: str | None = Field(default=None, alias="platformUrl")
    error: str | None = None


class CallbackRequest(AgentIdentity):
    result: JobResultReport


class SaveCredentialsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId", min_length=1)
    platform: str = Field(min_length=1)
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)


class VerifyConnectionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId", min_length=1)
    platform: str = Field(min_length=1)
    confidence: Literal["low", "medium", "high"] = "medium"


class SuccessOut(BaseModel):
    success: bool = True
    message: str | None = None
