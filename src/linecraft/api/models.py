"""Pydantic request models for the Linecraft API.

FastAPI uses these models for automatic request validation and OpenAPI
documentation.  Validation failures are rendered as ``400 {"error": ...}`` by
the handler in :mod:`linecraft.api.main`, so no upstream call is ever made for
a request that does not validate.

Models
------
AspectRatio
    The three supported page shapes and their upstream ratio tokens.
Quality
    Allowed quality hints.
GenerationRequest
    Payload for ``POST /api/generate`` and ``POST /api/coloring``.
"""

from __future__ import annotations

from enum import Enum

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class AspectRatio(str, Enum):
    """Page shape selected by the user."""

    SQUARE = "square"
    PORTRAIT = "portrait"
    LANDSCAPE = "landscape"

    @property
    def ratio_token(self) -> str:
        """Ratio string accepted by the upstream API (``1:1``, ``2:3``, ``3:2``)."""
        return _RATIO_TOKENS[self]


_RATIO_TOKENS: dict[AspectRatio, str] = {
    AspectRatio.SQUARE: "1:1",
    AspectRatio.PORTRAIT: "2:3",
    AspectRatio.LANDSCAPE: "3:2",
}


class Quality(str, Enum):
    """Quality hint forwarded to the upstream model."""

    MEDIUM = "medium"
    HIGH = "high"


class GenerationRequest(BaseModel):
    """Request body for the generation endpoints.

    Field names follow the camelCase wire format (``sceneText``,
    ``aspectRatio``, ``qualityHint``).  The older UI names ``scene``,
    ``format`` and ``quality`` are accepted as aliases, and the legacy
    format value ``"default"`` means portrait.

    Attributes:
        scene_text: Free-text scene description.  Whitespace is trimmed and
            the result must not be empty.
        aspect_ratio: Page shape.  Defaults to portrait.
        quality_hint: Quality hint.  Defaults to medium.
    """

    model_config = ConfigDict(populate_by_name=True)

    scene_text: str = Field(
        ...,
        validation_alias=AliasChoices("sceneText", "scene", "scene_text"),
        description="Scene description embedded in the line-art prompt.",
    )
    aspect_ratio: AspectRatio = Field(
        default=AspectRatio.PORTRAIT,
        validation_alias=AliasChoices("aspectRatio", "format", "aspect_ratio"),
        description="Page shape: 'square', 'portrait' or 'landscape'.",
    )
    quality_hint: Quality = Field(
        default=Quality.MEDIUM,
        validation_alias=AliasChoices("qualityHint", "quality", "quality_hint"),
        description="Quality hint: 'medium' or 'high'.",
    )

    @field_validator("scene_text")
    @classmethod
    def _scene_not_blank(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("sceneText is required")
        return cleaned

    @field_validator("aspect_ratio", mode="before")
    @classmethod
    def _legacy_format(cls, value):
        # Older clients send "default" for the portrait layout.
        if value == "default":
            return AspectRatio.PORTRAIT
        return value
