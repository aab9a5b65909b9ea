from __future__ import annotations

from unittest.mock import patch

from django.test import SimpleTestCase
from rest_framework.test import APIClient

from apps.briefing.services.outline_protocol import APPROVAL_SENTINEL
from apps.ebooks.services.llm import CAUSE_AUTH, PROVIDER_OPENAI, ProviderError
from apps.ebooks.tests.fakes import FakeBinding

PROPOSAL = "---ESTRUTURA_PROPOSTA---\nTITULO: Test Book\nCAPITULOS:\n1. Intro\n2. Body\n---FIM_ESTRUTURA---"


class BriefingApiTests(SimpleTestCase):
    def setUp(self):
        self.client = APIClient()

    def test_health_and_templates(self):
        self.assertEqual(self.client.get("/api/health/").json(), {"status": "ok"})

        templates = self.client.get("/api/briefing/templates/").json()
        self.assertIn("autoajuda", [t["id"] for t in templates])
        self.assertEqual(self.client.get("/api/briefing/templates/financas/").json()["id"], "financas")
        self.assertEqual(self.client.get("/api/briefing/templates/unknown/").status_code, 404)

    def test_opening_turn_for_template(self):
        response = self.client.get("/api/briefing/conversation/opening/", {"template_id": "saude"})

        self.assertEqual(response.status_code, 200)
        turn = response.json()["assistant_turn"]
        self.assertEqual(turn["speaker"], "assistant")
        self.assertIn("Saúde & Bem-estar", turn["text"])

    @patch("apps.briefing.services.orchestration.get_binding")
    def test_reply_returns_new_turns_and_parsed_structure(self, mock_get_binding):
        binding = FakeBinding([PROPOSAL])
        mock_get_binding.return_value = binding

        response = self.client.post(
            "/api/briefing/conversation/reply/",
            {
                "turns": [{"speaker": "assistant", "text": "Olá! Qual o tema?"}],
                "message": "Hábitos saudáveis",
                "template_id": "saude",
                "credential": "sk-test",
            },
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["user_turn"]["text"], "Hábitos saudáveis")
        self.assertEqual(body["assistant_turn"]["text"], PROPOSAL)
        self.assertEqual(body["structure"]["chapters"], ["Intro", "Body"])
        self.assertFalse(body["approved"])
        mock_get_binding.assert_called_once_with("sk-test")
        self.assertIn("Saúde & Bem-estar", binding.calls[0][0])

    @patch("apps.briefing.services.orchestration.get_binding")
    def test_provider_failure_becomes_error_turn(self, mock_get_binding):
        mock_get_binding.return_value = FakeBinding([ProviderError(CAUSE_AUTH, "401", PROVIDER_OPENAI)])

        response = self.client.post(
            "/api/briefing/conversation/reply/",
            {"message": "oi", "credential": "sk-bad"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.json()["assistant_turn"]["is_error"])
        self.assertIsNone(response.json()["structure"])

    def test_reply_requires_credential(self):
        response = self.client.post("/api/briefing/conversation/reply/", {"message": "oi"}, format="json")
        self.assertEqual(response.status_code, 400)

    def test_reply_rejects_unknown_template(self):
        response = self.client.post(
            "/api/briefing/conversation/reply/",
            {"message": "oi", "credential": "sk-test", "template_id": "nope"},
            format="json",
        )
        self.assertEqual(response.status_code, 400)

    @patch("apps.briefing.services.orchestration.get_binding")
    def test_stored_credential_is_used_when_request_has_none(self, mock_get_binding):
        mock_get_binding.return_value = FakeBinding(["Qual o público?"])

        stored = self.client.post("/api/briefing/credential/", {"credential": "ghp_secretvalue1234"}, format="json")
        self.assertEqual(stored.status_code, 201)
        self.assertEqual(stored.json()["provider"], "github")
        self.assertNotIn("ghp_secretvalue1234", stored.content.decode())

        response = self.client.post("/api/briefing/conversation/reply/", {"message": "oi"}, format="json")
        self.assertEqual(response.status_code, 200)
        mock_get_binding.assert_called_once_with("ghp_secretvalue1234")

        self.assertEqual(self.client.delete("/api/briefing/credential/clear/").status_code, 204)
        self.assertFalse(self.client.get("/api/briefing/credential/").json()["configured"])

    def test_inspect_reports_approval(self):
        response = self.client.post(
            "/api/briefing/conversation/inspect/",
            {
                "turns": [
                    {"speaker": "assistant", "text": PROPOSAL},
                    {"speaker": "user", "text": "ok, pode gerar"},
                    {"speaker": "assistant", "text": APPROVAL_SENTINEL},
                ]
            },
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertTrue(body["approved"])
        self.assertTrue(body["actionable"])
        self.assertEqual(body["structure"]["title"], "Test Book")
        self.assertEqual(body["structure"]["author"], "VIPNEXUS IA")
