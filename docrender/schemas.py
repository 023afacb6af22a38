"""Pydantic DTOs shared across endpoints."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class PdfRequest(BaseModel):
    """Payload clients submit to render a URL as PDF."""

    model_config = ConfigDict(populate_by_name=True)

    url: str | None = Field(default=None, description="URL to convert to PDF")
    report_id: str | None = Field(default=None, alias="reportId", description="Report identifier")
    report_title: str | None = Field(default=None, alias="reportTitle", description="Report title for filename")
    wait_for_selector: str | None = Field(
        default=None,
        alias="waitForSelector",
        description="CSS selector awaited before capture",
    )


class HtmlRequest(BaseModel):
    """Payload clients submit to capture a URL's rendered HTML."""

    model_config = ConfigDict(populate_by_name=True)

    url: str | None = Field(default=None, description="URL to render")
    wait_for_selector: str | None = Field(
        default=None,
        alias="waitForSelector",
        description="CSS selector awaited before capture",
    )
    wait_time: int | None = Field(
        default=None,
        alias="waitTime",
        ge=0,
        description="Additional delay in milliseconds after scripts settle",
    )


class RenderFailure(BaseModel):
    """Error body returned when a render job fails."""

    error: str
    message: str | None = None
    duration: int | None = Field(default=None, ge=0)


class HealthResponse(BaseModel):
    """Service and browser status."""

    model_config = ConfigDict(populate_by_name=True)

    status: str
    timestamp: str
    service: str
    version: str
    browser_connected: bool = Field(serialization_alias="browserConnected")
    browser_version: str | None = Field(default=None, serialization_alias="browserVersion")
    endpoints: dict[str, str] = Field(default_factory=dict)
