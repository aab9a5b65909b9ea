"""
Deterministic pagination of a manuscript into fixed-size pages.

``layout(content, config)`` is a pure function: front matter first (cover,
title page, table-of-contents placeholders), then introduction, one
section-heading page plus flowing body pages per chapter, conclusion and the
author page. Numbering and the table of contents are resolved afterwards in
two passes over the finished page list; no text is wrapped twice.
"""
from __future__ import annotations

import math
import re
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .schemas import (
    BLOCK_HEADING,
    BLOCK_PARAGRAPH,
    Block,
    EbookContent,
    Page,
    PageKind,
    TocEntry,
)

MeasureFn = Callable[[str, float], float]

# A4 in PostScript points
A4_WIDTH = 595.2756
A4_HEIGHT = 841.8898
DEFAULT_MARGIN = 56.6929  # 20 mm

PAGE_BREAK_MARKERS = ("<!-- pagebreak -->", "\f")

# room kept at the right of a TOC line for the leader and page number
TOC_NUMBER_SAMPLE = " ...0000"

LANDMARK_TOC = "toc"
LANDMARK_INTRODUCTION = "introduction"
LANDMARK_CONCLUSION = "conclusion"
LANDMARK_AUTHOR = "author"

SECTION_LABELS: Dict[str, Dict[str, str]] = {
    "pt": {
        "introduction": "Introdução",
        "contents": "Sumário",
        "conclusion": "Conclusão",
        "author": "Sobre o Autor",
        "chapter": "Capítulo",
        "by": "Por",
        "words": "palavras",
    },
    "en": {
        "introduction": "Introduction",
        "contents": "Contents",
        "conclusion": "Conclusion",
        "author": "About the Author",
        "chapter": "Chapter",
        "by": "By",
        "words": "words",
    },
    "es": {
        "introduction": "Introducción",
        "contents": "Índice",
        "conclusion": "Conclusión",
        "author": "Sobre el Autor",
        "chapter": "Capítulo",
        "by": "Por",
        "words": "palabras",
    },
    "fr": {
        "introduction": "Introduction",
        "contents": "Sommaire",
        "conclusion": "Conclusion",
        "author": "À propos de l'auteur",
        "chapter": "Chapitre",
        "by": "Par",
        "words": "mots",
    },
}

_HEADING_MARKER = re.compile(r"^(#{1,3})\s+(.*)$")
_BLANK_LINES = re.compile(r"\n[ \t]*\n")


class ConfigError(ValueError):
    """Invalid layout configuration."""


def estimate_text_width(text: str, font_size: float) -> float:
    """Average-glyph estimate: half an em per character."""
    return len(text) * font_size * 0.5


def section_labels(language: str) -> Dict[str, str]:
    return SECTION_LABELS.get((language or "").split("-")[0].lower(), SECTION_LABELS["en"])


def chapter_landmark(number: int) -> str:
    return f"chapter-{number}"


@dataclass(frozen=True)
class LayoutConfig:
    page_width: float = A4_WIDTH
    page_height: float = A4_HEIGHT
    margin: float = DEFAULT_MARGIN
    line_height: float = 17.0
    font_size_body: float = 12.0
    font_size_heading: float = 18.0
    # blank lines between consecutive paragraphs on the same page
    paragraph_spacing: int = 1
    measure: MeasureFn = field(default=estimate_text_width, compare=False, repr=False)

    def validate(self) -> None:
        if self.page_width <= 0 or self.page_height <= 0:
            raise ConfigError("page_width and page_height must be positive")
        if self.margin < 0:
            raise ConfigError("margin must not be negative")
        if self.line_height <= 0:
            raise ConfigError("line_height must be positive")
        if self.font_size_body <= 0 or self.font_size_heading <= 0:
            raise ConfigError("font sizes must be positive")
        if self.paragraph_spacing < 0:
            raise ConfigError("paragraph_spacing must not be negative")
        if self.content_width <= 0:
            raise ConfigError("margins leave no horizontal space for text")
        if self.lines_per_page < 1:
            raise ConfigError("page height leaves room for less than one line")

    @property
    def content_width(self) -> float:
        return self.page_width - 2 * self.margin

    @property
    def lines_per_page(self) -> int:
        return int((self.page_height - 2 * self.margin) // self.line_height)

    @property
    def heading_line_units(self) -> int:
        """Body lines consumed by one line of heading text."""
        return max(1, math.ceil(self.font_size_heading / self.font_size_body))

    def line_units(self, block_kind: str) -> int:
        return self.heading_line_units if block_kind == BLOCK_HEADING else 1

    def font_size(self, block_kind: str) -> float:
        return self.font_size_heading if block_kind == BLOCK_HEADING else self.font_size_body


@dataclass
class _PageDraft:
    kind: PageKind
    section: str
    landmark: str = ""
    blocks: List[Block] = field(default_factory=list)
    meta: Dict[str, Any] = field(default_factory=dict)


class PaginationEngine:
    def __init__(self, config: Optional[LayoutConfig] = None) -> None:
        self.config = config or LayoutConfig()
        self.config.validate()

    def layout(self, content: EbookContent, cover_image: str = "") -> List[Page]:
        """``cover_image`` is an opaque reference carried on the cover page as is."""
        labels = section_labels(content.metadata.language)
        drafts: List[_PageDraft] = []
        drafts.extend(self._front_matter(content, labels, cover_image))

        drafts.extend(
            self._flow_section(
                content.introduction,
                kind=PageKind.BODY_TEXT,
                section=LANDMARK_INTRODUCTION,
                landmark=LANDMARK_INTRODUCTION,
                heading=labels["introduction"],
                toc_label=labels["introduction"],
                toc_lines=self._toc_lines(labels["introduction"]),
            )
        )
        for number, chapter in enumerate(content.chapters, start=1):
            drafts.append(self._chapter_opening(number, chapter.title, labels))
            drafts.extend(
                self._flow_section(
                    chapter.body,
                    kind=PageKind.BODY_TEXT,
                    section=chapter_landmark(number),
                )
            )
        drafts.extend(
            self._flow_section(
                content.conclusion,
                kind=PageKind.BODY_TEXT,
                section=LANDMARK_CONCLUSION,
                landmark=LANDMARK_CONCLUSION,
                heading=labels["conclusion"],
                toc_label=labels["conclusion"],
                toc_lines=self._toc_lines(labels["conclusion"]),
            )
        )
        drafts.extend(
            self._flow_section(
                content.author_bio,
                kind=PageKind.AUTHOR_PAGE,
                section=LANDMARK_AUTHOR,
                landmark=LANDMARK_AUTHOR,
                heading=labels["author"],
                toc_label=labels["author"],
                toc_lines=self._toc_lines(labels["author"]),
            )
        )

        pages = number_pages(drafts_to_pages(drafts))
        return resolve_toc(pages)

    # ------------------------------------------------------------------
    # Front matter
    # ------------------------------------------------------------------

    def _front_matter(self, content: EbookContent, labels: Dict[str, str], cover_image: str = "") -> List[_PageDraft]:
        meta = content.metadata
        cover = _PageDraft(
            kind=PageKind.COVER,
            section="cover",
            meta={
                "title": content.title,
                "subtitle": content.subtitle,
                "author": content.author,
                "by_label": labels["by"],
                "language": meta.language,
                "cover_image": cover_image or "",
            },
        )
        title_page = _PageDraft(
            kind=PageKind.TITLE_PAGE,
            section="title",
            meta={
                "title": content.title,
                "subtitle": content.subtitle,
                "author": content.author,
                "word_count": meta.word_count,
                "words_label": labels["words"],
                "generated_at": meta.generated_at.date().isoformat(),
            },
        )
        drafts = [cover, title_page]

        toc_labels = [labels["introduction"], *(c.title for c in content.chapters), labels["conclusion"], labels["author"]]
        line_counts = [len(self._toc_lines(label)) for label in toc_labels]
        for index, slots in enumerate(self._toc_slots(line_counts, labels["contents"])):
            drafts.append(
                _PageDraft(
                    kind=PageKind.TABLE_OF_CONTENTS,
                    section=LANDMARK_TOC,
                    landmark=LANDMARK_TOC if index == 0 else "",
                    blocks=[self._heading_block(labels["contents"])] if index == 0 else [],
                    meta={"toc_slots": slots, "heading": labels["contents"]},
                )
            )
        return drafts

    def _toc_slots(self, line_counts: Sequence[int], heading: str) -> List[int]:
        """
        Entries per TOC page, given the wrapped line count of each entry.

        The first page also holds the heading; an entry is never split across
        pages and every page takes at least one entry.
        """
        config = self.config
        heading_units = len(self._heading_block(heading).lines) * config.heading_line_units
        capacity = max(1, config.lines_per_page - heading_units - config.paragraph_spacing)
        slots: List[int] = []
        taken = used = 0
        for count in line_counts:
            if taken and used + count > capacity:
                slots.append(taken)
                taken = used = 0
                capacity = config.lines_per_page
            taken += 1
            used += count
        if taken or not slots:
            slots.append(taken)
        return slots

    def _toc_lines(self, label: str) -> Tuple[str, ...]:
        config = self.config
        number_width = config.measure(TOC_NUMBER_SAMPLE, config.font_size_body)
        width = max(config.content_width - number_width, config.content_width / 2)
        return tuple(wrap_text(label, width, config.measure, config.font_size_body)) or (label,)

    def _chapter_opening(self, number: int, title: str, labels: Dict[str, str]) -> _PageDraft:
        return _PageDraft(
            kind=PageKind.SECTION_HEADING,
            section=chapter_landmark(number),
            landmark=chapter_landmark(number),
            blocks=[self._heading_block(title)],
            meta={
                "chapter_number": number,
                "chapter_label": f"{labels['chapter']} {number}",
                "title": title,
                "toc_label": title,
                "toc_lines": self._toc_lines(title),
            },
        )

    def _heading_block(self, text: str, level: int = 1) -> Block:
        lines = wrap_text(text, self.config.content_width, self.config.measure, self.config.font_size_heading)
        return Block(kind=BLOCK_HEADING, lines=tuple(lines) or ("",), level=level)

    # ------------------------------------------------------------------
    # Flow
    # ------------------------------------------------------------------

    def _flow_section(
        self,
        text: str,
        *,
        kind: PageKind,
        section: str,
        landmark: str = "",
        heading: str = "",
        toc_label: str = "",
        toc_lines: Tuple[str, ...] = (),
    ) -> List[_PageDraft]:
        """
        Greedy flow of one section's text onto as many pages as it needs.

        Words are wrapped against the content width; when the next line would
        overflow the page, the page is closed and flow resumes at the same word
        boundary on a fresh page. A section without a heading and without text
        produces no pages.
        """
        config = self.config
        capacity = config.lines_per_page
        pages: List[_PageDraft] = []
        blocks: List[Block] = []
        used = 0

        def close_page() -> None:
            nonlocal blocks, used
            is_first = not pages
            meta: Dict[str, Any] = {}
            if is_first and toc_label:
                meta["toc_label"] = toc_label
                meta["toc_lines"] = toc_lines or (toc_label,)
            pages.append(
                _PageDraft(
                    kind=kind,
                    section=section,
                    landmark=landmark if is_first else "",
                    blocks=blocks,
                    meta=meta,
                )
            )
            blocks = []
            used = 0

        items: List[Tuple[int, str]] = []
        if heading:
            items.append((1, heading))
        items.extend(split_paragraphs(text))

        for level, body in items:
            if level < 0:
                if blocks:
                    close_page()
                continue
            block_kind = BLOCK_HEADING if level else BLOCK_PARAGRAPH
            unit = config.line_units(block_kind)
            lines = wrap_text(body, config.content_width, config.measure, config.font_size(block_kind))
            if not lines:
                continue
            pending = lines
            continued = False
            while pending:
                gap = config.paragraph_spacing if blocks and not continued else 0
                fit = (capacity - used - gap) // unit
                if fit <= 0 or (block_kind == BLOCK_HEADING and fit < len(pending) and blocks):
                    if blocks:
                        close_page()
                        continue
                    # a single heading line taller than the page still gets a page
                    fit = 1
                taken, pending = pending[:fit], pending[fit:]
                blocks.append(Block(kind=block_kind, lines=tuple(taken), level=level, continued=continued))
                used += gap + len(taken) * unit
                continued = True
                if pending:
                    close_page()

        if blocks:
            close_page()
        return pages


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------

def split_paragraphs(text: str) -> List[Tuple[int, str]]:
    """
    Split text into ``(level, body)`` items on blank lines.

    ``level`` is 0 for paragraphs, 1-3 for ``#`` heading lines and -1 for an
    explicit page break. Whitespace inside a paragraph is collapsed.
    """
    norm = (text or "").replace("\r\n", "\n").replace("\r", "\n")
    for marker in PAGE_BREAK_MARKERS:
        norm = norm.replace(marker, f"\n\n{PAGE_BREAK_MARKERS[0]}\n\n")

    items: List[Tuple[int, str]] = []
    for chunk in _BLANK_LINES.split(norm):
        chunk = chunk.strip()
        if not chunk:
            continue
        if chunk == PAGE_BREAK_MARKERS[0]:
            items.append((-1, ""))
            continue
        paragraph: List[str] = []
        for line in chunk.split("\n"):
            match = _HEADING_MARKER.match(line.strip())
            if match:
                if paragraph:
                    items.append((0, " ".join(paragraph)))
                    paragraph = []
                heading = " ".join(match.group(2).split())
                if heading:
                    items.append((len(match.group(1)), heading))
                continue
            words = line.split()
            if words:
                paragraph.append(" ".join(words))
        if paragraph:
            items.append((0, " ".join(paragraph)))
    return items


def wrap_text(text: str, max_width: float, measure: MeasureFn, font_size: float) -> List[str]:
    """
    Greedy word-wrap: pack words while the line fits ``max_width``.

    A word wider than the line is placed alone on its own line, unsplit.
    """
    lines: List[str] = []
    current = ""
    for word in (text or "").split():
        candidate = f"{current} {word}" if current else word
        if current and measure(candidate, font_size) > max_width:
            lines.append(current)
            current = word
        else:
            current = candidate
    if current:
        lines.append(current)
    return lines


# ---------------------------------------------------------------------------
# Post passes
# ---------------------------------------------------------------------------

def drafts_to_pages(drafts: Sequence[_PageDraft]) -> List[Page]:
    return [
        Page(
            kind=draft.kind,
            blocks=tuple(draft.blocks),
            section=draft.section,
            landmark=draft.landmark,
            meta=dict(draft.meta),
        )
        for draft in drafts
    ]


def number_pages(pages: Sequence[Page]) -> List[Page]:
    """Cover and title page stay unnumbered; everything after them counts from 1."""
    numbered: List[Page] = []
    counter = 0
    for page in pages:
        if page.kind in (PageKind.COVER, PageKind.TITLE_PAGE):
            numbered.append(replace(page, page_number=None))
            continue
        counter += 1
        numbered.append(replace(page, page_number=counter))
    return numbered


def resolve_toc(pages: Sequence[Page]) -> List[Page]:
    """Fill the table-of-contents placeholders from the landmark pages' final numbers."""
    entries = [
        TocEntry(
            label=str(page.meta["toc_label"]),
            landmark=page.landmark,
            page_number=page.page_number,
            lines=tuple(page.meta.get("toc_lines") or (str(page.meta["toc_label"]),)),
        )
        for page in pages
        if page.landmark and page.meta.get("toc_label")
    ]
    resolved: List[Page] = []
    cursor = 0
    for page in pages:
        if page.kind != PageKind.TABLE_OF_CONTENTS:
            resolved.append(page)
            continue
        slots = int(page.meta.get("toc_slots", len(entries)))
        resolved.append(replace(page, toc=tuple(entries[cursor:cursor + slots])))
        cursor += slots
    return resolved


def layout(content: EbookContent, config: Optional[LayoutConfig] = None, cover_image: str = "") -> List[Page]:
    return PaginationEngine(config).layout(content, cover_image)


def section_pages(pages: Sequence[Page], section: str) -> List[Page]:
    return [page for page in pages if page.section == section and page.kind in (PageKind.BODY_TEXT, PageKind.AUTHOR_PAGE)]


def section_text(pages: Sequence[Page], section: str, include_headings: bool = True) -> str:
    """Rejoin the wrapped text of a section's body pages, heading markers restored."""
    parts: List[str] = []
    for page in section_pages(pages, section):
        for block in page.blocks:
            if block.kind == BLOCK_HEADING and not include_headings:
                continue
            parts.append(block.source if not block.continued else block.text)
    return " ".join(parts)
