from __future__ import annotations

from typing import Any, Dict, List

from rest_framework import serializers

from apps.ebooks.services.schemas import SPEAKER_ASSISTANT, SPEAKER_USER, Turn

from .services.templates import get_template


class TurnSerializer(serializers.Serializer):
    speaker = serializers.ChoiceField(choices=[SPEAKER_USER, SPEAKER_ASSISTANT])
    text = serializers.CharField(allow_blank=True, trim_whitespace=False)
    is_error = serializers.BooleanField(required=False, default=False)


def turns_from_data(items: List[Dict[str, Any]]) -> List[Turn]:
    return [Turn(speaker=item["speaker"], text=item["text"], is_error=bool(item.get("is_error"))) for item in items]


class InspectRequestSerializer(serializers.Serializer):
    turns = TurnSerializer(many=True)


class ReplyRequestSerializer(serializers.Serializer):
    turns = TurnSerializer(many=True, required=False, default=list)
    message = serializers.CharField(max_length=8000)
    template_id = serializers.CharField(required=False, allow_blank=True, default="")
    credential = serializers.CharField(required=False, allow_blank=True, default="", write_only=True)

    def validate_template_id(self, value):
        value = value.strip()
        if value and get_template(value) is None:
            raise serializers.ValidationError("Unknown template_id")
        return value


class CredentialSerializer(serializers.Serializer):
    credential = serializers.CharField(max_length=500, write_only=True)
