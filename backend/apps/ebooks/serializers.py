from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from django.utils import timezone
from django.utils.dateparse import parse_datetime
from rest_framework import serializers

from .services.exporter import EXPORT_FORMATS
from .services.pagination import LayoutConfig
from .services.rendering import Theme
from .services.schemas import (
    DEFAULT_AUTHOR,
    DEFAULT_LANGUAGES,
    DEFAULT_TONE,
    ChapterText,
    ContentMetadata,
    EbookContent,
    EbookStructure,
)


class StructureSerializer(serializers.Serializer):
    title = serializers.CharField(max_length=300)
    subtitle = serializers.CharField(max_length=300, required=False, allow_blank=True, default="")
    author = serializers.CharField(max_length=160, required=False, allow_blank=True, default=DEFAULT_AUTHOR)
    chapters = serializers.ListField(child=serializers.CharField(max_length=300), allow_empty=False)
    target_audience = serializers.CharField(max_length=300, required=False, allow_blank=True, default="")
    tone = serializers.CharField(max_length=120, required=False, allow_blank=True, default=DEFAULT_TONE)
    languages = serializers.ListField(
        child=serializers.CharField(max_length=10),
        required=False,
        allow_empty=False,
        default=list(DEFAULT_LANGUAGES),
    )

    def to_structure(self, data: Optional[Dict[str, Any]] = None) -> EbookStructure:
        data = self.validated_data if data is None else data
        languages = []
        for code in data.get("languages") or DEFAULT_LANGUAGES:
            code = code.strip().lower()
            if code and code not in languages:
                languages.append(code)
        return EbookStructure(
            title=data["title"].strip(),
            subtitle=data.get("subtitle", "").strip(),
            author=data.get("author", "").strip() or DEFAULT_AUTHOR,
            chapters=tuple(c.strip() for c in data["chapters"] if c.strip()),
            target_audience=data.get("target_audience", "").strip(),
            tone=data.get("tone", "").strip() or DEFAULT_TONE,
            languages=tuple(languages) or DEFAULT_LANGUAGES,
        )


def structure_from_payload(payload: Dict[str, Any]) -> EbookStructure:
    serializer = StructureSerializer(data=payload)
    serializer.is_valid(raise_exception=True)
    return serializer.to_structure()


class ChapterTextSerializer(serializers.Serializer):
    title = serializers.CharField(allow_blank=True)
    body = serializers.CharField(allow_blank=True, trim_whitespace=False)


class ContentSerializer(serializers.Serializer):
    title = serializers.CharField()
    subtitle = serializers.CharField(required=False, allow_blank=True, default="")
    author = serializers.CharField(required=False, allow_blank=True, default=DEFAULT_AUTHOR)
    introduction = serializers.CharField(allow_blank=True, trim_whitespace=False)
    chapters = ChapterTextSerializer(many=True)
    conclusion = serializers.CharField(allow_blank=True, trim_whitespace=False)
    author_bio = serializers.CharField(required=False, allow_blank=True, trim_whitespace=False, default="")
    metadata = serializers.DictField(required=False, default=dict)

    def to_content(self, data: Optional[Dict[str, Any]] = None) -> EbookContent:
        data = self.validated_data if data is None else data
        meta = data.get("metadata") or {}
        generated_at = _parse_generated_at(meta.get("generated_at"))
        return EbookContent(
            title=data["title"],
            subtitle=data.get("subtitle", ""),
            author=data.get("author") or DEFAULT_AUTHOR,
            introduction=data["introduction"],
            chapters=tuple(ChapterText(title=c["title"], body=c["body"]) for c in data["chapters"]),
            conclusion=data["conclusion"],
            author_bio=data.get("author_bio", ""),
            metadata=ContentMetadata(
                language=str(meta.get("language") or "pt"),
                word_count=int(meta.get("word_count") or 0),
                page_count_estimate=int(meta.get("page_count_estimate") or 0),
                generated_at=generated_at,
                fallback_stages=tuple(meta.get("fallback_stages") or ()),
            ),
        )


def _parse_generated_at(value: Any) -> datetime:
    """Client-supplied timestamp; anything unreadable becomes now."""
    try:
        parsed = parse_datetime(str(value or ""))
    except ValueError:
        # well formed but out of range, e.g. month 13
        parsed = None
    return parsed or timezone.now()


class LayoutSerializer(serializers.Serializer):
    """Geometry in points; range checks belong to ``LayoutConfig.validate``."""

    page_width = serializers.FloatField(required=False)
    page_height = serializers.FloatField(required=False)
    margin = serializers.FloatField(required=False)
    line_height = serializers.FloatField(required=False)
    font_size_body = serializers.FloatField(required=False)
    font_size_heading = serializers.FloatField(required=False)
    paragraph_spacing = serializers.IntegerField(required=False)

    def to_config(self, data: Optional[Dict[str, Any]] = None) -> LayoutConfig:
        data = self.validated_data if data is None else data
        return LayoutConfig(**dict(data))


class ThemeSerializer(serializers.Serializer):
    primary = serializers.CharField(required=False, allow_blank=True, default="")
    secondary = serializers.CharField(required=False, allow_blank=True, default="")
    accent = serializers.CharField(required=False, allow_blank=True, default="")
    cover_image = serializers.CharField(required=False, allow_blank=True, default="")

    def to_theme(self, data: Optional[Dict[str, Any]] = None) -> Theme:
        data = self.validated_data if data is None else data
        return Theme.from_hex(
            primary=data.get("primary"),
            secondary=data.get("secondary"),
            accent=data.get("accent"),
            cover_image=data.get("cover_image", ""),
        )


class ManuscriptRequestSerializer(serializers.Serializer):
    structure = StructureSerializer()
    credential = serializers.CharField(required=False, allow_blank=True, default="", write_only=True)


class ExportRequestSerializer(serializers.Serializer):
    content = ContentSerializer()
    format = serializers.ChoiceField(choices=EXPORT_FORMATS, default="pdf")
    layout = LayoutSerializer(required=False)
    theme = ThemeSerializer(required=False)
