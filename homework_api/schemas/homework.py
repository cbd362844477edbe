import base64
import binascii
import re
from typing import Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

_DATA_URL_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+);base64,", re.IGNORECASE)


class OCRFragment(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    text: str
    start_y: float = Field(ge=0.0, le=1.0, validation_alias=AliasChoices("startY", "start_y"))
    end_y: float = Field(ge=0.0, le=1.0, validation_alias=AliasChoices("endY", "end_y"))

    @model_validator(mode="after")
    def check_order(self):
        if self.start_y > self.end_y:
            raise ValueError("startY must not exceed endY")
        return self


class AnalysisPreferences(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    detail_level: Literal["summary", "detailed", "comprehensive"] | None = Field(
        default=None, validation_alias=AliasChoices("detailLevel", "detail_level")
    )
    include_extra_practice: bool | None = Field(
        default=None, validation_alias=AliasChoices("includeExtraPractice", "include_extra_practice")
    )
    preferred_language: str | None = Field(
        default=None,
        max_length=16,
        validation_alias=AliasChoices("preferredLanguage", "preferred_language"),
    )


class HomeworkAnalysisRequest(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    image: str = Field(min_length=1, validation_alias=AliasChoices("image", "imageBase64"))
    image_mime_type: str | None = Field(default=None, validation_alias=AliasChoices("imageMimeType", "image_mime_type"))
    ocr_fragments: list[OCRFragment] = Field(validation_alias=AliasChoices("ocrFragments", "ocrBlocks"))
    preferences: AnalysisPreferences | None = Field(
        default=None, validation_alias=AliasChoices("preferences", "userPreferences")
    )

    @field_validator("image")
    @classmethod
    def validate_image(cls, value: str) -> str:
        candidate = re.sub(r"\s+", "", value)
        payload = _DATA_URL_RE.sub("", candidate, count=1)
        try:
            decoded = base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("image must be base64-encoded") from exc
        if not decoded:
            raise ValueError("image must not be empty")
        return candidate

    @property
    def image_base64(self) -> str:
        return _DATA_URL_RE.sub("", self.image, count=1)

    @property
    def resolved_mime_type(self) -> str:
        if self.image_mime_type:
            return self.image_mime_type
        match = _DATA_URL_RE.match(self.image)
        if match:
            return match.group("mime").lower()
        return _sniff_mime_type(self.image_base64)


def _sniff_mime_type(image_b64: str) -> str:
    head = base64.b64decode(image_b64[:24] + "=" * (-len(image_b64[:24]) % 4), validate=False)
    if head.startswith(b"\x89PNG"):
        return "image/png"
    if head.startswith(b"GIF8"):
        return "image/gif"
    if head.startswith(b"RIFF") and head[8:12] == b"WEBP":
        return "image/webp"
    return "image/jpeg"
