from __future__ import annotations

import copy
import json
import math
from enum import Enum
from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, field_validator, model_validator


class EmbedType(str, Enum):
    PHOTO = "photo"
    VIDEO = "video"
    LINK = "link"
    RICH = "rich"
    # Anything an upstream provider sends that isn't one of the four above.
    UNKNOWN = "unknown"


class OEmbedDocument(BaseModel):
    # Providers add their own fields (title, provider_name, width...). Keep them
    # so /oembed can hand the document back untouched.
    model_config = ConfigDict(extra="allow", frozen=True)

    type: str
    url: str | None = None
    html: str | None = None
    cache_age: int | None = None

    _raw: dict[str, Any] | None = PrivateAttr(default=None)
    _source: bytes | None = PrivateAttr(default=None)

    @model_validator(mode="wrap")
    @classmethod
    def _keep_raw(cls, data: Any, handler: Any) -> "OEmbedDocument":
        doc = handler(data)
        if isinstance(data, dict):
            doc._raw = copy.deepcopy(data)
        return doc

    @field_validator("type", mode="before")
    @classmethod
    def _type_as_str(cls, value: Any) -> str:
        if value is None:
            return ""
        return str(value)

    @field_validator("cache_age", mode="before")
    @classmethod
    def _lenient_cache_age(cls, value: Any) -> int | None:
        # Untrusted: oEmbed allows strings here, and some providers send junk.
        if value is None or isinstance(value, bool):
            return None
        try:
            age = float(value)
        except (TypeError, ValueError, OverflowError):
            return None
        if not math.isfinite(age):
            return None
        age = int(age)
        return age if age >= 0 else None

    @property
    def embed_type(self) -> EmbedType:
        try:
            return EmbedType(self.type)
        except ValueError:
            return EmbedType.UNKNOWN

    def raw(self) -> dict[str, Any]:
        # the provider's JSON as it arrived, not the normalized fields
        if self._raw is not None:
            return copy.deepcopy(self._raw)
        return self.model_dump(exclude_none=True)

    def raw_json(self) -> bytes:
        if self._source is not None:
            return self._source
        return json.dumps(self.raw()).encode("utf-8")

    @classmethod
    def from_json(cls, content: bytes) -> "OEmbedDocument":
        try:
            data = json.loads(content)
        except RecursionError as e:
            raise ValueError("oEmbed document is nested too deeply") from e
        if not isinstance(data, dict):
            raise ValueError("oEmbed document is not a JSON object")
        doc = cls.model_validate(data)
        doc._source = bytes(content)
        return doc


class CachedImage(BaseModel):
    data: bytes
    ttl_seconds: int = Field(..., ge=0)
    cache_hit: bool = False
    mime: str = "image/png"


class ImageOutcome(BaseModel):
    kind: Literal["image"] = "image"
    image: CachedImage


class RedirectOutcome(BaseModel):
    kind: Literal["redirect"] = "redirect"
    url: str


class NotAvailableOutcome(BaseModel):
    kind: Literal["not_available"] = "not_available"
    reason: str
    detail: str | None = None


SnapshotOutcome = Union[ImageOutcome, RedirectOutcome, NotAvailableOutcome]

NO_OEMBED = "no oembed"
MISSING_URL = "missing url"
UNSUPPORTED_TYPE = "unsupported type"
RENDER_FAILED = "render failed"
