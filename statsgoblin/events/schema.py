from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Immutable model exchanged in camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class SearchHit(WireModel):
    document_id: str
    url_host: str
    url_path: str
    score: float


class SearchMetricEvent(WireModel):
    request_id: str = Field(min_length=1)
    query: str
    offset: int = Field(default=0, ge=0)
    execution_time_ms: int = Field(ge=0)
    total_results: int = Field(ge=0)
    hits_count: int = Field(ge=0)
    hits: list[SearchHit] = Field(default_factory=list)
    timestamp: datetime
    user_agent: str | None = None

    @field_validator("timestamp")
    @classmethod
    def _as_utc(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)

    def to_document(self) -> dict[str, Any]:
        """Serialise to the document body stored in OpenSearch."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
