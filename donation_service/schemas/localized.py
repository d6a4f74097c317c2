from typing import Any, Optional

from pydantic import BaseModel, model_validator

LANGUAGES = ("en", "ms")


class LocalizedText(BaseModel):
    """Bilingual text value stored as ``{"en": ..., "ms": ...}``.

    At least one language must be populated. Legacy rows that hold a plain
    string are read as English with an empty Malay value.
    """
    en: str = ""
    ms: str = ""

    @model_validator(mode="before")
    @classmethod
    def coerce_plain_string(cls, value: Any) -> Any:
        if isinstance(value, str):
            return {"en": value, "ms": ""}
        if isinstance(value, dict):
            return {lang: value.get(lang) or "" for lang in LANGUAGES}
        return value

    @model_validator(mode="after")
    def require_one_language(self) -> "LocalizedText":
        if not self.en.strip() and not self.ms.strip():
            raise ValueError("LocalizedText needs at least one of en or ms")
        return self

    @classmethod
    def coerce(cls, value: Any) -> Optional["LocalizedText"]:
        """Parse a stored column value, returning None for empty values"""
        if value is None or value == "" or value == {}:
            return None
        if isinstance(value, dict) and not any((value.get(lang) or "").strip() for lang in LANGUAGES):
            return None
        return cls.model_validate(value)

    def missing_language(self) -> Optional[str]:
        """Language that still needs a translation, or None when complete"""
        if self.en.strip() and not self.ms.strip():
            return "ms"
        if self.ms.strip() and not self.en.strip():
            return "en"
        return None

    def source_language(self) -> str:
        return "en" if self.en.strip() else "ms"

    def with_translation(self, lang: str, text: str) -> "LocalizedText":
        if lang not in LANGUAGES:
            raise ValueError(f"Unsupported language: {lang}")
        return self.model_copy(update={lang: text})

    def get(self, locale: str = "en") -> str:
        """Text for ``locale``, falling back to the other language"""
        primary = self.ms if locale == "ms" else self.en
        fallback = self.en if locale == "ms" else self.ms
        return primary if primary.strip() else fallback
