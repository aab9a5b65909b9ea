from __future__ import annotations

import base64
import logging
import re
from dataclasses import replace
from typing import Any, Dict, List, Optional

from .pagination import LayoutConfig, PaginationEngine
from .rendering import DocxRenderer, PdfRenderer, PreviewRenderer, Theme, reportlab_measure
from .schemas import EbookContent

logger = logging.getLogger(__name__)

EXPORT_FORMATS = ("pdf", "docx", "both", "preview")


class ExportService:
    """Lays out one language's manuscript and renders it to the requested format(s)."""

    def export(
        self,
        content: EbookContent,
        export_format: str = "pdf",
        config: Optional[LayoutConfig] = None,
        theme: Optional[Theme] = None,
    ) -> Dict[str, Any]:
        export_format = str(export_format or "pdf").strip().lower()
        if export_format not in EXPORT_FORMATS:
            raise ValueError(f"export_format must be one of: {' | '.join(EXPORT_FORMATS)}")

        theme = theme or Theme()
        config = self.measured_config(config or LayoutConfig(), theme)
        pages = PaginationEngine(config).layout(content, theme.cover_image)
        warnings: List[str] = list(self._fallback_warnings(content))

        output: Dict[str, Any] = {
            "status": "success",
            "language": content.metadata.language,
            "page_count": len(pages),
            "page_count_estimate": content.metadata.page_count_estimate,
            "warnings": warnings,
        }
        base_name = f"{self._safe_file(content.title)}_{content.metadata.language}"

        if export_format in {"pdf", "both"}:
            pdf_bytes = PdfRenderer(config).render(pages, theme)
            output["pdf_base64"] = base64.b64encode(pdf_bytes).decode("utf-8")
            output["pdf_filename"] = f"{base_name}.pdf"

        if export_format in {"docx", "both"}:
            docx_bytes = DocxRenderer(config).render(pages, theme)
            output["docx_base64"] = base64.b64encode(docx_bytes).decode("utf-8")
            output["docx_filename"] = f"{base_name}.docx"

        if export_format == "preview":
            output["frames"] = PreviewRenderer().render(pages, theme)

        logger.info(
            "Exported %s language=%s pages=%d (estimate %d)",
            export_format,
            content.metadata.language,
            len(pages),
            content.metadata.page_count_estimate,
        )
        return output

    def measured_config(self, config: LayoutConfig, theme: Theme) -> LayoutConfig:
        """Swap the width estimate for real font metrics of the theme's fonts."""
        return replace(config, measure=reportlab_measure(theme.body_font, theme.heading_font))

    def _fallback_warnings(self, content: EbookContent) -> List[str]:
        return [f"Placeholder text used for: {stage}" for stage in content.metadata.fallback_stages]

    def _safe_file(self, title: str) -> str:
        sanitized = re.sub(r"[<>:\"/\\|?*]", "_", title).strip().strip(".")
        sanitized = sanitized.replace(" ", "_")
        return sanitized[:100] or "ebook"
