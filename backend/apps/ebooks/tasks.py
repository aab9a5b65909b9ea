from __future__ import annotations

import logging
from typing import Any, Dict

from celery import shared_task

from .serializers import structure_from_payload
from .services.llm import ProviderError
from .services.pipeline import ContentGenerationPipeline, GenerationError
from .services.schemas import manuscript_payload

logger = logging.getLogger(__name__)


def generation_error_payload(exc: GenerationError) -> Dict[str, Any]:
    draft = exc.draft
    return {
        "status": "error",
        "error": str(exc),
        "language": exc.language,
        "stage": exc.stage,
        "chapter_index": exc.chapter_index,
        "cause": exc.cause_code,
        "completed": manuscript_payload(exc.completed),
        "draft": {
            "language": draft.language,
            "introduction": draft.introduction,
            "chapters": [{"title": c.title, "body": c.body} for c in draft.chapters],
        },
    }


@shared_task(bind=True)
def generate_manuscript(self, credential: str, structure: Dict[str, Any]) -> Dict[str, Any]:
    """Celery entry point; progress is published as PROGRESS state meta."""

    def report(label: str, percent: float) -> None:
        self.update_state(state="PROGRESS", meta={"status": label, "percent": percent})

    pipeline = ContentGenerationPipeline()
    try:
        manuscript = pipeline.generate(credential, structure_from_payload(structure), progress_callback=report)
    except GenerationError as exc:
        logger.error("Manuscript generation failed", exc_info=True)
        return generation_error_payload(exc)
    except ProviderError as exc:
        # credential rejected before the first unit
        logger.error("Manuscript generation could not start: %s", exc.cause)
        return {"status": "error", "error": exc.user_message, "cause": exc.cause}
    return {"status": "ok", "manuscript": manuscript_payload(manuscript)}
