from __future__ import annotations

import logging

from celery.result import AsyncResult
from rest_framework import status, viewsets
from rest_framework.response import Response

from apps.briefing.services.credentials import SessionCredentialStore

from .serializers import (
    ContentSerializer,
    ExportRequestSerializer,
    LayoutSerializer,
    ManuscriptRequestSerializer,
    StructureSerializer,
    ThemeSerializer,
)
from .services.exporter import ExportService
from .services.llm import ProviderError
from .services.pagination import ConfigError, LayoutConfig
from .services.pipeline import ContentGenerationPipeline, GenerationError
from .services.schemas import manuscript_payload, structure_payload
from .tasks import generate_manuscript, generation_error_payload

logger = logging.getLogger(__name__)


class ManuscriptViewSet(viewsets.ViewSet):
    """Generate manuscripts in-process (``?sync=1``) or through the Celery worker."""

    def create(self, request):
        serializer = ManuscriptRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        structure = StructureSerializer().to_structure(serializer.validated_data["structure"])
        credential = SessionCredentialStore(request.session).resolve(serializer.validated_data.get("credential"))
        if not credential:
            return Response({"detail": "credential is required"}, status=status.HTTP_400_BAD_REQUEST)

        sync = str(request.query_params.get("sync", "0")).lower() in {"1", "true", "yes"}
        if not sync:
            task = generate_manuscript.delay(credential, structure_payload(structure))
            return Response(
                {"task_id": task.id, "state": "PENDING", "structure": structure_payload(structure)},
                status=status.HTTP_202_ACCEPTED,
            )

        try:
            manuscript = ContentGenerationPipeline().generate(credential, structure)
        except GenerationError as exc:
            logger.error("Manuscript generation failed", exc_info=True)
            return Response(generation_error_payload(exc), status=status.HTTP_502_BAD_GATEWAY)
        except ProviderError as exc:
            return Response({"detail": exc.user_message, "cause": exc.cause}, status=status.HTTP_400_BAD_REQUEST)
        return Response(
            {"status": "ok", "manuscript": manuscript_payload(manuscript)},
            status=status.HTTP_201_CREATED,
        )

    def retrieve(self, request, pk=None):
        result = AsyncResult(str(pk), app=generate_manuscript.app)
        payload = {"task_id": str(pk), "state": result.state}
        if result.state == "PROGRESS" and isinstance(result.info, dict):
            payload["progress"] = {
                "status": result.info.get("status", ""),
                "percent": result.info.get("percent", 0),
            }
        elif result.successful():
            payload["result"] = result.result
        elif result.failed():
            payload["error"] = str(result.result)[:2000]
        return Response(payload)


class ExportViewSet(viewsets.ViewSet):
    service = ExportService()

    def create(self, request):
        serializer = ExportRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        validated = serializer.validated_data

        content = ContentSerializer().to_content(validated["content"])
        config = LayoutSerializer().to_config(validated["layout"]) if validated.get("layout") else LayoutConfig()
        theme = ThemeSerializer().to_theme(validated.get("theme") or {})
        try:
            output = self.service.export(content, validated["format"], config=config, theme=theme)
        except ConfigError as exc:
            return Response({"detail": str(exc)}, status=status.HTTP_400_BAD_REQUEST)
        return Response(output)
