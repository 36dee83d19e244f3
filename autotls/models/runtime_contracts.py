from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class RuntimeRequestInfo(BaseModel):
    model_config = ConfigDict(extra="allow")

    ts: str | None = None
    url: str | None = None
    host: str | None = None
    method: str | None = None
    protocol: str | None = None
    headers: dict[str, list[str]] = Field(default_factory=dict)


class RuntimeHostInfo(BaseModel):
    model_config = ConfigDict(extra="allow")

    envs: dict[str, str] = Field(default_factory=dict)
    args: list[str] = Field(default_factory=list)
    user: dict[str, Any] | None = None


class RuntimeInfo(BaseModel):
    """Body served on `/` by the runtime test image."""

    model_config = ConfigDict(extra="allow")

    request: RuntimeRequestInfo | None = None
    host: RuntimeHostInfo | None = None
