from __future__ import annotations

import base64
import io

from django.test import SimpleTestCase
from docx import Document
from reportlab.pdfbase.pdfmetrics import stringWidth

from apps.ebooks.services.exporter import ExportService
from apps.ebooks.services.pagination import TOC_NUMBER_SAMPLE, LayoutConfig, layout
from apps.ebooks.services.rendering import (
    ACTION_CLOSE,
    ACTION_NEXT,
    ACTION_PREVIOUS,
    DEFAULT_ACCENT,
    DEFAULT_PRIMARY,
    DocxRenderer,
    PageNavigator,
    PdfRenderer,
    PreviewRenderer,
    Theme,
    reportlab_measure,
)
from apps.ebooks.services.schemas import PageKind
from apps.ebooks.tests.fakes import make_content, words


def _pdf_page_count(data: bytes) -> int:
    return data.count(b"/Type /Page") - data.count(b"/Type /Pages")


class ThemeTests(SimpleTestCase):
    def test_from_hex_normalises_and_falls_back(self):
        theme = Theme.from_hex(primary="112233", secondary="#abcdef", accent="not-a-colour")
        self.assertEqual(theme.primary, "#112233")
        self.assertEqual(theme.secondary, "#ABCDEF")
        self.assertEqual(theme.accent, DEFAULT_ACCENT)
        self.assertEqual(Theme.from_hex().primary, DEFAULT_PRIMARY)

    def test_reportlab_measure_takes_widest_font(self):
        measure = reportlab_measure("Helvetica", "Helvetica-Bold")
        self.assertEqual(measure("Wide text", 12), stringWidth("Wide text", "Helvetica-Bold", 12))


class PdfRendererTests(SimpleTestCase):
    def setUp(self):
        self.config = LayoutConfig(measure=reportlab_measure("Helvetica", "Times-Bold"))
        content = make_content(chapters=[("First", words(900)), ("Second", "Short chapter.")])
        self.pages = layout(content, self.config)

    def test_renders_one_pdf_page_per_layout_page(self):
        data = PdfRenderer(self.config).render(self.pages, Theme())

        self.assertTrue(data.startswith(b"%PDF"))
        self.assertEqual(_pdf_page_count(data), len(self.pages))

    def test_renders_custom_theme(self):
        data = PdfRenderer(self.config).render(self.pages, Theme.from_hex("#000000", "#333333", "#FF0000"))
        self.assertTrue(data.startswith(b"%PDF"))

    def test_long_toc_label_stays_inside_the_label_column(self):
        measure = self.config.measure
        long_title = " ".join(["Investing for the long run with patience"] * 4)
        pages = layout(make_content(chapters=[(long_title, "Short chapter.")]), self.config)
        toc_page = next(page for page in pages if page.kind == PageKind.TABLE_OF_CONTENTS)
        entry = next(entry for entry in toc_page.toc if entry.label == long_title)

        self.assertGreater(len(entry.lines), 1)
        column = self.config.content_width - measure(TOC_NUMBER_SAMPLE, self.config.font_size_body)
        for line in entry.lines:
            self.assertLessEqual(measure(line, self.config.font_size_body), column)
        data = PdfRenderer(self.config).render(pages, Theme())
        self.assertEqual(_pdf_page_count(data), len(pages))


class DocxRendererTests(SimpleTestCase):
    def test_docx_carries_pages_and_dotted_toc(self):
        config = LayoutConfig()
        pages = layout(make_content(), config)
        data = DocxRenderer(config).render(pages, Theme())

        self.assertTrue(data.startswith(b"PK"))
        document = Document(io.BytesIO(data))
        texts = [p.text for p in document.paragraphs]
        self.assertIn("TEST BOOK", texts)
        toc_page = next(page for page in pages if page.kind == PageKind.TABLE_OF_CONTENTS)
        first_entry = toc_page.toc[0]
        self.assertIn(f"{first_entry.label}\t{first_entry.page_number}", texts)
        self.assertIn("Chapter one text.", texts)


class PreviewTests(SimpleTestCase):
    def test_frames_mirror_pages(self):
        pages = layout(make_content(), LayoutConfig())
        frames = PreviewRenderer().render(pages, Theme())

        self.assertEqual(len(frames), len(pages))
        self.assertEqual(frames[0]["kind"], "cover")
        self.assertEqual(frames[0]["counter"], f"1 / {len(pages)}")
        self.assertIsNone(frames[0]["page_number"])
        self.assertEqual(frames[2]["page_number"], 1)
        self.assertEqual(frames[-1]["kind"], "author_page")
        self.assertEqual(frames[-1]["theme"]["primary"], DEFAULT_PRIMARY)


class PageNavigatorTests(SimpleTestCase):
    def test_keyboard_navigation_is_clamped(self):
        nav = PageNavigator(total=3)
        self.assertEqual(nav.counter, "1 / 3")
        self.assertEqual(nav.handle_key("ArrowLeft"), ACTION_PREVIOUS)
        self.assertEqual(nav.index, 0)
        self.assertEqual(nav.handle_key("ArrowRight"), ACTION_NEXT)
        self.assertEqual(nav.handle_key(" "), ACTION_NEXT)
        self.assertEqual(nav.counter, "3 / 3")
        nav.next()
        self.assertEqual(nav.index, 2)
        self.assertTrue(nav.at_end)
        self.assertIsNone(nav.handle_key("Enter"))
        self.assertEqual(nav.handle_key("Escape"), ACTION_CLOSE)
        self.assertTrue(nav.closed)

    def test_empty_book(self):
        nav = PageNavigator(total=0)
        self.assertEqual(nav.counter, "0 / 0")
        self.assertEqual(nav.next(), 0)


class ExportServiceTests(SimpleTestCase):
    def test_both_formats_are_base64_with_safe_names(self):
        output = ExportService().export(make_content(), "both")

        self.assertEqual(output["status"], "success")
        self.assertEqual(output["pdf_filename"], "Test_Book_en.pdf")
        self.assertEqual(output["docx_filename"], "Test_Book_en.docx")
        self.assertTrue(base64.b64decode(output["pdf_base64"]).startswith(b"%PDF"))
        self.assertTrue(base64.b64decode(output["docx_base64"]).startswith(b"PK"))
        self.assertGreaterEqual(output["page_count"], 8)

    def test_preview_returns_frames(self):
        output = ExportService().export(make_content(), "preview")
        self.assertEqual(len(output["frames"]), output["page_count"])
        self.assertNotIn("pdf_base64", output)

    def test_unknown_format_is_rejected(self):
        with self.assertRaises(ValueError):
            ExportService().export(make_content(), "epub")
