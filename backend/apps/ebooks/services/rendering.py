"""
Renderers over the page list produced by the pagination engine.

Every renderer draws the pages it is given 1:1; none of them re-wraps text or
moves content between pages. Decoration (running header, footer number,
chapter number, dotted TOC leaders) is driven only by ``Page.kind`` and
``Page.page_number``.
"""
from __future__ import annotations

import io
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from reportlab.lib.colors import Color, HexColor, white
from reportlab.pdfbase.pdfmetrics import stringWidth
from reportlab.pdfgen import canvas

from .pagination import LayoutConfig, wrap_text
from .schemas import BLOCK_HEADING, Block, Page, PageKind, page_payload

logger = logging.getLogger(__name__)

DEFAULT_PRIMARY = "#1E1B4B"
DEFAULT_SECONDARY = "#4338CA"
DEFAULT_ACCENT = "#F59E0B"

_HEX_COLOR = re.compile(r"^#?([0-9a-fA-F]{6})$")


def normalize_hex(value: Optional[str], default: str) -> str:
    match = _HEX_COLOR.match((value or "").strip())
    if not match:
        return default
    return f"#{match.group(1).upper()}"


def reportlab_measure(*font_names: str) -> Callable[[str, float], float]:
    """
    Build a ``measure(text, font_size)`` function from reportlab font metrics.

    With several fonts the widest rendering wins, so text wrapped with it fits
    whichever of them is used to draw the line.
    """
    fonts = font_names or ("Helvetica",)

    def measure(text: str, font_size: float) -> float:
        return max(stringWidth(text, name, font_size) for name in fonts)

    return measure


@dataclass(frozen=True)
class Theme:
    primary: str = DEFAULT_PRIMARY
    secondary: str = DEFAULT_SECONDARY
    accent: str = DEFAULT_ACCENT
    body_font: str = "Helvetica"
    heading_font: str = "Times-Bold"
    text_color: str = "#1E1E1E"
    cover_image: str = ""

    @classmethod
    def from_hex(
        cls,
        primary: Optional[str] = None,
        secondary: Optional[str] = None,
        accent: Optional[str] = None,
        cover_image: str = "",
    ) -> "Theme":
        return cls(
            primary=normalize_hex(primary, DEFAULT_PRIMARY),
            secondary=normalize_hex(secondary, DEFAULT_SECONDARY),
            accent=normalize_hex(accent, DEFAULT_ACCENT),
            cover_image=cover_image or "",
        )

    def color(self, name: str) -> Color:
        return HexColor(getattr(self, name))

    def as_dict(self) -> Dict[str, str]:
        return {
            "primary": self.primary,
            "secondary": self.secondary,
            "accent": self.accent,
            "body_font": self.body_font,
            "heading_font": self.heading_font,
            "cover_image": self.cover_image,
        }


def book_title(pages: Sequence[Page]) -> str:
    for page in pages:
        if page.kind == PageKind.COVER:
            return str(page.meta.get("title", ""))
    return ""


class PdfRenderer:
    def __init__(self, config: Optional[LayoutConfig] = None) -> None:
        self.config = config or LayoutConfig()

    def render(self, pages: Sequence[Page], theme: Optional[Theme] = None) -> bytes:
        theme = theme or Theme()
        config = self.config
        buf = io.BytesIO()
        pdf = canvas.Canvas(buf, pagesize=(config.page_width, config.page_height))
        title = book_title(pages)
        pdf.setTitle(title or "ebook")

        for page in pages:
            if page.kind == PageKind.COVER:
                self._draw_cover(pdf, page, theme)
            elif page.kind == PageKind.TITLE_PAGE:
                self._draw_title_page(pdf, page, theme)
            elif page.kind == PageKind.TABLE_OF_CONTENTS:
                self._draw_blocks(pdf, page.blocks, theme)
                self._draw_toc(pdf, page, theme)
            elif page.kind == PageKind.SECTION_HEADING:
                self._draw_chapter_opening(pdf, page, theme)
            else:
                if page.kind == PageKind.AUTHOR_PAGE:
                    self._draw_author_box(pdf, theme)
                self._draw_blocks(pdf, page.blocks, theme)
            if page.kind in (PageKind.BODY_TEXT, PageKind.AUTHOR_PAGE):
                self._draw_running_header(pdf, title, theme)
            if page.page_number is not None:
                self._draw_footer(pdf, page.page_number, theme)
            pdf.showPage()

        pdf.save()
        buf.seek(0)
        logger.info("Rendered PDF: %d pages", len(pages))
        return buf.read()

    # ------------------------------------------------------------------
    # Page decorations
    # ------------------------------------------------------------------

    def _draw_cover(self, pdf: canvas.Canvas, page: Page, theme: Theme) -> None:
        config = self.config
        width, height, margin = config.page_width, config.page_height, config.margin
        pdf.setFillColor(theme.color("primary"))
        pdf.rect(0, 0, width, height, stroke=0, fill=1)
        pdf.setFillColor(theme.color("secondary"))
        pdf.circle(width, height, width * 0.47, stroke=0, fill=1)

        pdf.setStrokeColor(white)
        pdf.setLineWidth(0.5)
        pdf.line(margin, height - 142, width - margin, height - 142)
        pdf.setStrokeColor(theme.color("accent"))
        pdf.setLineWidth(1.5)
        pdf.line(margin, height - 147, margin + 113, height - 147)

        title = str(page.meta.get("title", "")).upper()
        title_size = 42 if len(title) <= 20 else 36 if len(title) <= 40 else 28
        y = height - 283
        pdf.setFillColor(white)
        for line in self._wrap(title, theme.heading_font, title_size, config.content_width - 56):
            pdf.setFont(theme.heading_font, title_size)
            pdf.drawString(margin, y, line)
            y -= title_size * 1.25

        subtitle = str(page.meta.get("subtitle", ""))
        if subtitle:
            y -= 28
            pdf.setFillColor(HexColor("#DCDCDC"))
            for line in self._wrap(subtitle, theme.body_font, 16, config.content_width - 56):
                pdf.setFont(theme.body_font, 16)
                pdf.drawString(margin, y, line)
                y -= 22

        author = str(page.meta.get("author", ""))
        pdf.setFillColor(white)
        pdf.setFont("Helvetica-Oblique", 14)
        pdf.drawString(margin, 113, f"{page.meta.get('by_label', 'By')} {author}")

        pdf.setStrokeColor(theme.color("accent"))
        pdf.setLineWidth(1)
        pdf.circle(width - 113, 113, 42, stroke=1, fill=0)
        pdf.setFillColor(theme.color("accent"))
        pdf.setFont("Helvetica", 8)
        pdf.drawCentredString(width - 113, 119, "EDITION")
        pdf.drawCentredString(width - 113, 107, "PREMIUM")

    def _draw_title_page(self, pdf: canvas.Canvas, page: Page, theme: Theme) -> None:
        config = self.config
        center = config.page_width / 2
        y = config.page_height - 227
        pdf.setFillColor(HexColor(theme.text_color))
        for line in self._wrap(str(page.meta.get("title", "")), theme.heading_font, 28, config.content_width):
            pdf.setFont(theme.heading_font, 28)
            pdf.drawCentredString(center, y, line)
            y -= 34
        subtitle = str(page.meta.get("subtitle", ""))
        if subtitle:
            pdf.setFillColor(HexColor("#505050"))
            pdf.setFont(theme.body_font, 14)
            pdf.drawCentredString(center, y - 14, subtitle)

        y = 198
        pdf.setStrokeColor(HexColor("#C8C8C8"))
        pdf.line(center - 57, y, center + 57, y)
        pdf.setFillColor(HexColor("#646464"))
        pdf.setFont(theme.body_font, 10)
        word_count = int(page.meta.get("word_count", 0))
        pdf.drawCentredString(center, y - 28, f"{word_count:,} {page.meta.get('words_label', 'words')}".replace(",", "."))
        pdf.drawCentredString(center, y - 45, str(page.meta.get("generated_at", "")))
        pdf.drawCentredString(center, y - 62, str(page.meta.get("author", "")))

    def _draw_toc(self, pdf: canvas.Canvas, page: Page, theme: Theme) -> None:
        config = self.config
        used = self._block_units(page.blocks)
        y = config.page_height - config.margin - used * config.line_height
        right = config.page_width - config.margin
        pdf.setFillColor(HexColor(theme.text_color))
        for entry in page.toc:
            lines = entry.lines or (entry.label,)
            pdf.setFont(theme.body_font, config.font_size_body)
            for line in lines[:-1]:
                pdf.drawString(config.margin, y - config.font_size_body, line)
                y -= config.line_height
            baseline = y - config.font_size_body
            number = str(entry.page_number) if entry.page_number is not None else ""
            pdf.drawString(config.margin, baseline, lines[-1])
            pdf.drawRightString(right, baseline, number)

            label_end = config.margin + stringWidth(lines[-1], theme.body_font, config.font_size_body) + 4
            number_start = right - stringWidth(number, theme.body_font, config.font_size_body) - 4
            if number_start > label_end:
                pdf.saveState()
                pdf.setStrokeColor(HexColor("#B4B4B4"))
                pdf.setDash(1, 2)
                pdf.line(label_end, baseline, number_start, baseline)
                pdf.restoreState()
            y -= config.line_height

    def _draw_chapter_opening(self, pdf: canvas.Canvas, page: Page, theme: Theme) -> None:
        config = self.config
        pdf.setFillColor(theme.color("primary"))
        pdf.rect(0, config.page_height - 20, config.page_width, 20, stroke=0, fill=1)

        number = str(page.meta.get("chapter_number", ""))
        pdf.setFillColor(theme.color("accent"))
        pdf.setFont(theme.heading_font, 96)
        pdf.drawString(config.margin, config.page_height - 240, number)
        pdf.setFillColor(theme.color("secondary"))
        pdf.setFont(theme.body_font, 12)
        pdf.drawString(config.margin, config.page_height - 270, str(page.meta.get("chapter_label", "")).upper())

        y = config.page_height - 310
        pdf.setFillColor(theme.color("primary"))
        for block in page.blocks:
            for line in block.lines:
                pdf.setFont(theme.heading_font, config.font_size_heading)
                pdf.drawString(config.margin, y, line)
                y -= config.line_height * config.heading_line_units
        pdf.setStrokeColor(theme.color("accent"))
        pdf.setLineWidth(2)
        pdf.line(config.margin, y, config.margin + 85, y)

    def _draw_author_box(self, pdf: canvas.Canvas, theme: Theme) -> None:
        config = self.config
        pad = config.margin / 3
        pdf.saveState()
        pdf.setStrokeColor(theme.color("secondary"))
        pdf.setFillColor(HexColor("#F5F5FA"))
        pdf.roundRect(
            config.margin - pad,
            config.margin - pad,
            config.content_width + 2 * pad,
            config.page_height - 2 * config.margin + 2 * pad,
            radius=8,
            stroke=1,
            fill=1,
        )
        pdf.restoreState()

    def _draw_running_header(self, pdf: canvas.Canvas, title: str, theme: Theme) -> None:
        config = self.config
        y = config.page_height - config.margin / 2
        pdf.setFillColor(HexColor("#969696"))
        pdf.setFont(theme.body_font, 8)
        pdf.drawString(config.margin, y, title)
        pdf.setStrokeColor(HexColor("#DCDCDC"))
        pdf.setLineWidth(0.5)
        pdf.line(config.margin, y - 4, config.page_width - config.margin, y - 4)

    def _draw_footer(self, pdf: canvas.Canvas, page_number: int, theme: Theme) -> None:
        config = self.config
        pdf.setFillColor(HexColor("#969696"))
        pdf.setFont(theme.body_font, 9)
        pdf.drawCentredString(config.page_width / 2, config.margin / 2, str(page_number))

    # ------------------------------------------------------------------
    # Text
    # ------------------------------------------------------------------

    def _draw_blocks(self, pdf: canvas.Canvas, blocks: Sequence[Block], theme: Theme) -> None:
        """Place pre-wrapped lines exactly where the layout pass accounted for them."""
        config = self.config
        y = config.page_height - config.margin
        for index, block in enumerate(blocks):
            if index and not block.continued:
                y -= config.paragraph_spacing * config.line_height
            heading = block.kind == BLOCK_HEADING
            font = theme.heading_font if heading else theme.body_font
            size = config.font_size(block.kind)
            step = config.line_height * config.line_units(block.kind)
            pdf.setFillColor(theme.color("primary") if heading else HexColor(theme.text_color))
            for line in block.lines:
                pdf.setFont(font, size)
                pdf.drawString(config.margin, y - size, line)
                y -= step

    def _block_units(self, blocks: Sequence[Block]) -> int:
        config = self.config
        units = 0
        for index, block in enumerate(blocks):
            if index and not block.continued:
                units += config.paragraph_spacing
            units += len(block.lines) * config.line_units(block.kind)
        if blocks:
            units += config.paragraph_spacing
        return units

    def _wrap(self, text: str, font: str, size: float, width: float) -> List[str]:
        return wrap_text(text, width, reportlab_measure(font), size)


class PreviewRenderer:
    """On-screen frames for the flip-book viewer."""

    def render(self, pages: Sequence[Page], theme: Optional[Theme] = None) -> List[Dict[str, Any]]:
        theme = theme or Theme()
        total = len(pages)
        frames: List[Dict[str, Any]] = []
        for index, page in enumerate(pages):
            frame = page_payload(page)
            frame.update(
                {
                    "index": index,
                    "counter": f"{index + 1} / {total}",
                    "theme": theme.as_dict(),
                }
            )
            frames.append(frame)
        return frames


KEY_NEXT = ("ArrowRight", " ")
KEY_PREVIOUS = ("ArrowLeft",)
KEY_CLOSE = ("Escape",)

ACTION_NEXT = "next"
ACTION_PREVIOUS = "previous"
ACTION_CLOSE = "close"


class PageNavigator:
    """Flip-book position over ``total`` pages; moves are clamped at both ends."""

    def __init__(self, total: int, index: int = 0) -> None:
        if total < 0:
            raise ValueError("total must not be negative")
        self.total = total
        self.index = min(max(index, 0), max(total - 1, 0))
        self.closed = False

    @property
    def counter(self) -> str:
        if not self.total:
            return "0 / 0"
        return f"{self.index + 1} / {self.total}"

    @property
    def at_start(self) -> bool:
        return self.index == 0

    @property
    def at_end(self) -> bool:
        return self.index >= self.total - 1

    def next(self) -> int:
        if not self.at_end:
            self.index += 1
        return self.index

    def previous(self) -> int:
        if not self.at_start:
            self.index -= 1
        return self.index

    def handle_key(self, key: str) -> Optional[str]:
        if key in KEY_NEXT:
            self.next()
            return ACTION_NEXT
        if key in KEY_PREVIOUS:
            self.previous()
            return ACTION_PREVIOUS
        if key in KEY_CLOSE:
            self.closed = True
            return ACTION_CLOSE
        return None


class DocxRenderer:
    def __init__(self, config: Optional[LayoutConfig] = None) -> None:
        self.config = config or LayoutConfig()

    def render(self, pages: Sequence[Page], theme: Optional[Theme] = None) -> bytes:
        from docx import Document
        from docx.enum.text import WD_ALIGN_PARAGRAPH, WD_TAB_ALIGNMENT, WD_TAB_LEADER
        from docx.shared import Pt, RGBColor

        theme = theme or Theme()
        config = self.config
        document = Document()
        section = document.sections[0]
        section.page_width = Pt(config.page_width)
        section.page_height = Pt(config.page_height)
        for side in ("left_margin", "right_margin", "top_margin", "bottom_margin"):
            setattr(section, side, Pt(config.margin))

        primary = RGBColor.from_string(theme.primary.lstrip("#"))
        accent = RGBColor.from_string(theme.accent.lstrip("#"))

        def centered(text: str, size: float, bold: bool = False, italic: bool = False, color=None) -> None:
            paragraph = document.add_paragraph()
            paragraph.alignment = WD_ALIGN_PARAGRAPH.CENTER
            run = paragraph.add_run(text)
            run.bold = bold
            run.italic = italic
            run.font.size = Pt(size)
            if color is not None:
                run.font.color.rgb = color

        for index, page in enumerate(pages):
            if page.kind == PageKind.COVER:
                centered(str(page.meta.get("title", "")).upper(), 36, bold=True, color=primary)
                if page.meta.get("subtitle"):
                    centered(str(page.meta["subtitle"]), 16)
                centered(f"{page.meta.get('by_label', 'By')} {page.meta.get('author', '')}", 14, italic=True)
            elif page.kind == PageKind.TITLE_PAGE:
                centered(str(page.meta.get("title", "")), 28, bold=True)
                if page.meta.get("subtitle"):
                    centered(str(page.meta["subtitle"]), 14)
                centered(f"{page.meta.get('word_count', 0)} {page.meta.get('words_label', 'words')}", 10)
                centered(str(page.meta.get("generated_at", "")), 10)
            elif page.kind == PageKind.TABLE_OF_CONTENTS:
                self._add_blocks(document, page.blocks)
                for entry in page.toc:
                    paragraph = document.add_paragraph()
                    paragraph.paragraph_format.tab_stops.add_tab_stop(
                        Pt(config.content_width), WD_TAB_ALIGNMENT.RIGHT, WD_TAB_LEADER.DOTS
                    )
                    number = "" if entry.page_number is None else str(entry.page_number)
                    paragraph.add_run(f"{entry.label}\t{number}")
            elif page.kind == PageKind.SECTION_HEADING:
                centered(str(page.meta.get("chapter_number", "")), 72, bold=True, color=accent)
                centered(str(page.meta.get("chapter_label", "")).upper(), 12)
                for block in page.blocks:
                    document.add_heading(block.text, level=1)
            else:
                self._add_blocks(document, page.blocks)

            if index < len(pages) - 1:
                document.add_page_break()

        out = io.BytesIO()
        document.save(out)
        out.seek(0)
        return out.read()

    def _add_blocks(self, document: Any, blocks: Sequence[Block]) -> None:
        for block in blocks:
            if block.kind == BLOCK_HEADING:
                document.add_heading(block.text, level=min(max(block.level, 1), 3))
            else:
                document.add_paragraph(block.text)
