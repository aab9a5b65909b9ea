"""
Chat-embedded outline protocol.

The briefing assistant proposes an outline inside a fixed propose-block and
confirms it with an approval sentinel::

    ---ESTRUTURA_PROPOSTA---
    TITULO: ...
    SUBTITULO: ...
    CAPITULOS:
    1. ...
    2. ...
    PUBLICO: ...
    TOM: ...
    ---FIM_ESTRUTURA---

    ---ESTRUTURA_APROVADA---

Everything here is a pure function of the turn list. Malformed or missing
blocks mean "no structure yet" and never raise.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from apps.ebooks.services.schemas import (
    DEFAULT_AUTHOR,
    DEFAULT_LANGUAGES,
    DEFAULT_TONE,
    EbookStructure,
    Turn,
)

PROPOSE_START = "---ESTRUTURA_PROPOSTA---"
PROPOSE_END = "---FIM_ESTRUTURA---"
APPROVAL_SENTINEL = "---ESTRUTURA_APROVADA---"

FIELD_TITLE = "title"
FIELD_SUBTITLE = "subtitle"
FIELD_AUTHOR = "author"
FIELD_CHAPTERS = "chapters"
FIELD_AUDIENCE = "target_audience"
FIELD_TONE = "tone"
FIELD_LANGUAGES = "languages"

# Canonical label first; the rest are spellings models produce in practice.
_LABELS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    (FIELD_SUBTITLE, ("SUBTITULO", "SUBTÍTULO")),
    (FIELD_TITLE, ("TITULO", "TÍTULO")),
    (FIELD_CHAPTERS, ("CAPITULOS", "CAPÍTULOS")),
    (FIELD_AUDIENCE, ("PUBLICO", "PÚBLICO")),
    (FIELD_TONE, ("TOM",)),
    (FIELD_AUTHOR, ("AUTOR",)),
    (FIELD_LANGUAGES, ("IDIOMAS",)),
)

_CANONICAL_LABELS: Dict[str, str] = {name: spellings[0] for name, spellings in _LABELS}

_CHAPTER_LINE = re.compile(r"^(\d+)\.\s*(.+)$")
_LINE_DECORATION = " \t*_->#`"

_STATE_FIELDS = "fields"
_STATE_CHAPTERS = "chapters"


@dataclass(frozen=True)
class BriefingStatus:
    structure: Optional[EbookStructure]
    approved: bool
    source_index: Optional[int]

    @property
    def actionable(self) -> bool:
        return self.structure is not None and self.approved


def find_latest_block(turns: Sequence[Turn]) -> Tuple[Optional[int], str]:
    """Index of the most recent turn holding a complete propose-block, and that block's body."""
    for index in range(len(turns) - 1, -1, -1):
        body = _last_block_in(turns[index].text)
        if body is not None:
            return index, body
    return None, ""


def try_parse_proposed_structure(turns: Sequence[Turn]) -> Optional[EbookStructure]:
    _, body = find_latest_block(turns)
    if not body:
        return None
    return parse_block(body)


def is_approved(turns: Sequence[Turn]) -> bool:
    source_index, _ = find_latest_block(turns)
    if source_index is None:
        return False
    for index in range(len(turns) - 1, source_index - 1, -1):
        if APPROVAL_SENTINEL in turns[index].text:
            return True
    return False


def inspect_briefing(turns: Sequence[Turn]) -> BriefingStatus:
    source_index, body = find_latest_block(turns)
    structure = parse_block(body) if body else None
    return BriefingStatus(
        structure=structure,
        approved=is_approved(turns),
        source_index=source_index,
    )


def parse_block(body: str) -> Optional[EbookStructure]:
    """
    Line scanner over the inside of a propose-block.

    States: FIELDS (expecting ``LABEL: value`` lines) and CHAPTERS (collecting
    ``N. text`` lines until the next recognised label). The first occurrence
    of each label wins; unrecognised lines are skipped.
    """
    fields: Dict[str, str] = {}
    chapters: List[str] = []
    chapters_seen = False
    state = _STATE_FIELDS

    for raw_line in body.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        labelled = _match_label(line)
        if labelled is not None:
            name, value = labelled
            if name == FIELD_CHAPTERS:
                if chapters_seen:
                    state = _STATE_FIELDS
                    continue
                chapters_seen = True
                state = _STATE_CHAPTERS
                chapter = _match_chapter(value)
                if chapter:
                    chapters.append(chapter)
                continue
            state = _STATE_FIELDS
            if name not in fields:
                fields[name] = value
            continue
        if state == _STATE_CHAPTERS:
            chapter = _match_chapter(line)
            if chapter:
                chapters.append(chapter)

    title = fields.get(FIELD_TITLE, "")
    if not title or not chapters:
        return None
    return EbookStructure(
        title=title,
        subtitle=fields.get(FIELD_SUBTITLE, ""),
        author=fields.get(FIELD_AUTHOR) or DEFAULT_AUTHOR,
        chapters=tuple(chapters),
        target_audience=fields.get(FIELD_AUDIENCE, ""),
        tone=fields.get(FIELD_TONE) or DEFAULT_TONE,
        languages=_parse_languages(fields.get(FIELD_LANGUAGES, "")),
    )


def format_proposed_structure(structure: EbookStructure) -> str:
    """Serialise a structure into a propose-block that parses back to an equal structure."""
    lines = [
        PROPOSE_START,
        f"{_CANONICAL_LABELS[FIELD_TITLE]}: {structure.title}",
        f"{_CANONICAL_LABELS[FIELD_SUBTITLE]}: {structure.subtitle}",
        f"{_CANONICAL_LABELS[FIELD_AUTHOR]}: {structure.author}",
        f"{_CANONICAL_LABELS[FIELD_CHAPTERS]}:",
    ]
    lines.extend(f"{number}. {_protect_emphasis(title)}" for number, title in enumerate(structure.chapters, start=1))
    lines.extend(
        [
            f"{_CANONICAL_LABELS[FIELD_AUDIENCE]}: {structure.target_audience}",
            f"{_CANONICAL_LABELS[FIELD_TONE]}: {structure.tone}",
            f"{_CANONICAL_LABELS[FIELD_LANGUAGES]}: {', '.join(structure.languages)}",
            PROPOSE_END,
        ]
    )
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Scanner helpers
# ---------------------------------------------------------------------------

def _last_block_in(text: str) -> Optional[str]:
    end = text.rfind(PROPOSE_END)
    while end != -1:
        start = text.rfind(PROPOSE_START, 0, end)
        if start != -1:
            return text[start + len(PROPOSE_START):end]
        end = text.rfind(PROPOSE_END, 0, end)
    return None


def _match_label(line: str) -> Optional[Tuple[str, str]]:
    cleaned = line.lstrip(_LINE_DECORATION)
    decorated = cleaned != line
    for name, spellings in _LABELS:
        for spelling in spellings:
            if not cleaned.startswith(spelling):
                continue
            rest = cleaned[len(spelling):].lstrip("*_ \t")
            if not rest.startswith(":"):
                continue
            value = rest[1:].strip()
            if decorated:
                # "**TITULO:** value" or "**TITULO: value**"
                value = value.strip("*_").strip()
            return name, value
    return None


def _match_chapter(line: str) -> str:
    match = _CHAPTER_LINE.match(line.lstrip(_LINE_DECORATION))
    if not match:
        return ""
    return _unwrap_emphasis(match.group(2).strip())


def _unwrap_emphasis(value: str) -> str:
    for marker in ("**", "__"):
        if len(value) > 2 * len(marker) and value.startswith(marker) and value.endswith(marker):
            return value[len(marker):-len(marker)].strip()
    return value


def _protect_emphasis(title: str) -> str:
    """Extra emphasis layer for titles the chapter scanner would otherwise unwrap."""
    if _unwrap_emphasis(title) != title:
        return f"**{title}**"
    return title


def _parse_languages(value: str) -> Tuple[str, ...]:
    codes = [code.strip().lower() for code in re.split(r"[,;/\s]+", value or "") if code.strip()]
    unique: List[str] = []
    for code in codes:
        if code not in unique:
            unique.append(code)
    return tuple(unique) or DEFAULT_LANGUAGES
