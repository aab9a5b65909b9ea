from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, TypedDict

DEFAULT_AUTHOR = "VIPNEXUS IA"
DEFAULT_TONE = "profissional"
DEFAULT_LANGUAGES: Tuple[str, ...] = ("pt", "en", "es", "fr")

SPEAKER_USER = "user"
SPEAKER_ASSISTANT = "assistant"


@dataclass(frozen=True)
class Turn:
    speaker: str
    text: str
    is_error: bool = False

    def __post_init__(self) -> None:
        if self.speaker not in (SPEAKER_USER, SPEAKER_ASSISTANT):
            raise ValueError(f"speaker must be '{SPEAKER_USER}' or '{SPEAKER_ASSISTANT}'")


@dataclass(frozen=True)
class EbookStructure:
    """Outline agreed during the briefing."""

    title: str
    chapters: Tuple[str, ...]
    subtitle: str = ""
    author: str = DEFAULT_AUTHOR
    target_audience: str = ""
    tone: str = DEFAULT_TONE
    languages: Tuple[str, ...] = DEFAULT_LANGUAGES

    def __post_init__(self) -> None:
        # language codes compare case-insensitively: "EN" and "en" are one language
        codes: List[str] = []
        for code in self.languages:
            code = str(code).strip().lower()
            if code and code not in codes:
                codes.append(code)
        object.__setattr__(self, "chapters", tuple(self.chapters))
        object.__setattr__(self, "languages", tuple(codes))


@dataclass(frozen=True)
class ChapterText:
    title: str
    body: str


@dataclass(frozen=True)
class ContentMetadata:
    language: str
    word_count: int
    page_count_estimate: int
    generated_at: datetime
    fallback_stages: Tuple[str, ...] = ()


@dataclass(frozen=True)
class EbookContent:
    """Finished manuscript for one language."""

    title: str
    subtitle: str
    author: str
    introduction: str
    chapters: Tuple[ChapterText, ...]
    conclusion: str
    author_bio: str
    metadata: ContentMetadata


# language code -> manuscript, in generation order
MultiLanguageManuscript = Dict[str, EbookContent]


class PageKind(str, Enum):
    COVER = "cover"
    TITLE_PAGE = "title_page"
    TABLE_OF_CONTENTS = "table_of_contents"
    SECTION_HEADING = "section_heading"
    BODY_TEXT = "body_text"
    AUTHOR_PAGE = "author_page"


BLOCK_HEADING = "heading"
BLOCK_PARAGRAPH = "paragraph"


@dataclass(frozen=True)
class Block:
    kind: str
    lines: Tuple[str, ...]
    level: int = 0
    # paragraph carried over from the previous page
    continued: bool = False

    @property
    def text(self) -> str:
        return " ".join(self.lines)

    @property
    def source(self) -> str:
        if self.kind == BLOCK_HEADING and self.level:
            return f"{'#' * self.level} {self.text}"
        return self.text


@dataclass(frozen=True)
class TocEntry:
    label: str
    landmark: str
    page_number: Optional[int] = None
    # label wrapped to the TOC column; the leader and number go on the last line
    lines: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Page:
    kind: PageKind
    page_number: Optional[int] = None
    blocks: Tuple[Block, ...] = ()
    section: str = ""
    landmark: str = ""
    meta: Mapping[str, Any] = field(default_factory=dict)
    toc: Tuple[TocEntry, ...] = ()

    @property
    def is_numbered(self) -> bool:
        return self.page_number is not None


# ---------------------------------------------------------------------------
# Wire payloads
# ---------------------------------------------------------------------------


class TurnPayload(TypedDict, total=False):
    speaker: str
    text: str
    is_error: bool


class StructurePayload(TypedDict):
    title: str
    subtitle: str
    author: str
    chapters: List[str]
    target_audience: str
    tone: str
    languages: List[str]


def turn_payload(turn: Turn) -> TurnPayload:
    return {"speaker": turn.speaker, "text": turn.text, "is_error": turn.is_error}


def structure_payload(structure: Optional[EbookStructure]) -> Optional[StructurePayload]:
    if structure is None:
        return None
    return {
        "title": structure.title,
        "subtitle": structure.subtitle,
        "author": structure.author,
        "chapters": list(structure.chapters),
        "target_audience": structure.target_audience,
        "tone": structure.tone,
        "languages": list(structure.languages),
    }


def content_payload(content: EbookContent) -> Dict[str, Any]:
    meta = content.metadata
    return {
        "title": content.title,
        "subtitle": content.subtitle,
        "author": content.author,
        "introduction": content.introduction,
        "chapters": [{"title": c.title, "body": c.body} for c in content.chapters],
        "conclusion": content.conclusion,
        "author_bio": content.author_bio,
        "metadata": {
            "language": meta.language,
            "word_count": meta.word_count,
            "page_count_estimate": meta.page_count_estimate,
            "generated_at": meta.generated_at.isoformat(),
            "fallback_stages": list(meta.fallback_stages),
        },
    }


def manuscript_payload(manuscript: Mapping[str, EbookContent]) -> Dict[str, Any]:
    return {code: content_payload(content) for code, content in manuscript.items()}


def page_payload(page: Page) -> Dict[str, Any]:
    return {
        "kind": page.kind.value,
        "page_number": page.page_number,
        "section": page.section,
        "landmark": page.landmark,
        "blocks": [
            {
                "kind": block.kind,
                "level": block.level,
                "lines": list(block.lines),
                "text": block.text,
                "continued": block.continued,
            }
            for block in page.blocks
        ],
        "meta": dict(page.meta),
        "toc": [
            {
                "label": entry.label,
                "lines": list(entry.lines or (entry.label,)),
                "landmark": entry.landmark,
                "page_number": entry.page_number,
            }
            for entry in page.toc
        ],
    }
