"""Pydantic schemas for unshackle serve HTTP interactions."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ErrorBody(BaseModel):
    """Structured error object returned by the service."""

    model_config = ConfigDict(extra="ignore")

    message: str | None = Field(default=None, description="Human-readable failure reason.")
    code: str | int | None = Field(default=None, description="Service-specific error code.")
    details: Any = Field(default=None, description="Optional diagnostic payload.")


class ResponseEnvelope(BaseModel):
    """Wrapped response shape: a status flag, a data field, and an optional error."""

    model_config = ConfigDict(extra="allow")

    status: str | None = Field(default=None, description="'success' or 'error' when wrapped.")
    data: Any = Field(default=None, description="Operation payload when wrapped.")
    error: ErrorBody | None = Field(default=None, description="Failure details when wrapped.")

    @field_validator("error", mode="before")
    @classmethod
    def _coerce_error_text(cls, value: object) -> object:
        if isinstance(value, str):
            return {"message": value}
        return value

    @property
    def failed(self) -> bool:
        """Return True when the envelope reports an error status."""
        return self.status == "error"

    @property
    def error_message(self) -> str | None:
        """Return the server-supplied error message, if any."""
        return None if self.error is None else self.error.message


class DownloadRequest(BaseModel):
    """Body of a start-job request."""

    model_config = ConfigDict(extra="allow")

    service: str = Field(..., min_length=1, description="Service tag handling the title.")
    title_id: str = Field(..., min_length=1, description="Title identifier or full title URL.")
    quality: str | None = Field(default=None, description="Requested resolution, e.g. '1080p'.")
    output_path: str | None = Field(default=None, description="Server-side output directory.")
    subtitles: bool | None = Field(default=None, description="Whether to fetch subtitles.")


class TitleQuery(BaseModel):
    """Body of list-titles and list-tracks requests."""

    model_config = ConfigDict(extra="forbid")

    service: str = Field(..., min_length=1, description="Service tag handling the title.")
    title_id: str = Field(..., min_length=1, description="Title identifier within the service.")
