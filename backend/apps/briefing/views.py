from __future__ import annotations

from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.response import Response

from apps.ebooks.services.schemas import SPEAKER_USER, Turn, structure_payload, turn_payload

from .serializers import (
    CredentialSerializer,
    InspectRequestSerializer,
    ReplyRequestSerializer,
    turns_from_data,
)
from .services import orchestration
from .services.credentials import SessionCredentialStore
from .services.outline_protocol import inspect_briefing
from .services.templates import (
    format_opening_context,
    format_template_hint,
    get_template,
    list_templates,
    template_payload,
)


class TemplateViewSet(viewsets.ViewSet):
    def list(self, request):
        return Response([template_payload(t) for t in list_templates()])

    def retrieve(self, request, pk=None):
        template = get_template(str(pk))
        if template is None:
            return Response({"detail": "Not found."}, status=status.HTTP_404_NOT_FOUND)
        return Response(template_payload(template))


class ConversationViewSet(viewsets.ViewSet):
    """
    Stateless briefing endpoints.

    The client owns the turn log: each call receives the history and returns
    the new turns for the client to append.
    """

    @action(detail=False, methods=["get"], url_path="opening")
    def opening(self, request):
        template = get_template(str(request.query_params.get("template_id", "")).strip())
        turn = orchestration.opening_turn(format_opening_context(template) if template else None)
        return Response({"assistant_turn": turn_payload(turn)})

    @action(detail=False, methods=["post"], url_path="reply")
    def reply(self, request):
        serializer = ReplyRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        validated = serializer.validated_data

        credential = SessionCredentialStore(request.session).resolve(validated.get("credential"))
        if not credential:
            return Response({"detail": "credential is required"}, status=status.HTTP_400_BAD_REQUEST)

        template = get_template(validated.get("template_id", ""))
        hint = format_template_hint(template) if template else None

        user_turn = Turn(speaker=SPEAKER_USER, text=validated["message"])
        turns = [*turns_from_data(validated.get("turns", [])), user_turn]
        assistant_turn = orchestration.reply(credential, turns, context_hint=hint)

        briefing = inspect_briefing([*turns, assistant_turn])
        return Response(
            {
                "user_turn": turn_payload(user_turn),
                "assistant_turn": turn_payload(assistant_turn),
                "structure": structure_payload(briefing.structure),
                "approved": briefing.approved,
            }
        )

    @action(detail=False, methods=["post"], url_path="inspect")
    def inspect(self, request):
        serializer = InspectRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        briefing = inspect_briefing(turns_from_data(serializer.validated_data["turns"]))
        return Response(
            {
                "structure": structure_payload(briefing.structure),
                "approved": briefing.approved,
                "actionable": briefing.actionable,
            }
        )


class CredentialViewSet(viewsets.ViewSet):
    """The user's model key, kept in the signed session cookie."""

    def list(self, request):
        return Response(SessionCredentialStore(request.session).describe())

    def create(self, request):
        serializer = CredentialSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        store = SessionCredentialStore(request.session)
        store.set(serializer.validated_data["credential"])
        return Response(store.describe(), status=status.HTTP_201_CREATED)

    @action(detail=False, methods=["delete"], url_path="clear")
    def clear(self, request):
        SessionCredentialStore(request.session).clear()
        return Response(status=status.HTTP_204_NO_CONTENT)
