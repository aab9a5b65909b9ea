from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import patch

import httpx
from django.test import SimpleTestCase, override_settings
from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AuthenticationError,
    RateLimitError,
)

from apps.ebooks.services.llm import (
    CAUSE_AUTH,
    CAUSE_MALFORMED,
    CAUSE_NETWORK,
    CAUSE_QUOTA,
    PROVIDER_GITHUB,
    PROVIDER_GOOGLE,
    PROVIDER_OPENAI,
    LLMService,
    ProviderBinding,
    ProviderError,
    detect_provider,
    get_binding,
    parse_json_object,
    strip_code_fence,
    translate_provider_error,
)
from apps.ebooks.services.schemas import Turn
from apps.ebooks.tests.fakes import FakeBinding, make_structure

_REQUEST = httpx.Request("POST", "https://api.example.test/v1/chat/completions")


def _status_error(cls, status_code: int, message: str = "error"):
    return cls(message, response=httpx.Response(status_code, request=_REQUEST), body=None)


def _completion(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


class ProviderDispatchTests(SimpleTestCase):
    def test_detect_provider_by_credential_shape(self):
        self.assertEqual(detect_provider("sk-abc123"), PROVIDER_OPENAI)
        self.assertEqual(detect_provider("ghp_abc123"), PROVIDER_GITHUB)
        self.assertEqual(detect_provider("github_pat_abc"), PROVIDER_GITHUB)
        self.assertEqual(detect_provider("gho_abc"), PROVIDER_GITHUB)
        self.assertEqual(detect_provider("AIzaSyExample"), PROVIDER_GOOGLE)
        self.assertEqual(detect_provider("  sk-padded  "), PROVIDER_OPENAI)

    @override_settings(EBOOK_GOOGLE_MODEL="gemini-test", EBOOK_PROVIDER_TIMEOUT_S=30)
    def test_get_binding_uses_provider_settings(self):
        binding = get_binding("AIzaSyExample")
        self.assertEqual(binding.provider, PROVIDER_GOOGLE)
        self.assertEqual(binding.model, "gemini-test")
        self.assertEqual(binding.timeout, 30.0)
        self.assertIn("generativelanguage.googleapis.com", binding.base_url)
        self.assertNotIn("AIzaSyExample", repr(binding))

    def test_get_binding_rejects_blank_credential(self):
        with self.assertRaises(ProviderError) as ctx:
            get_binding("   ")
        self.assertEqual(ctx.exception.cause, CAUSE_AUTH)


class ErrorTranslationTests(SimpleTestCase):
    def test_known_sdk_errors_map_to_causes(self):
        cases = [
            (_status_error(AuthenticationError, 401), CAUSE_AUTH),
            (_status_error(RateLimitError, 429), CAUSE_QUOTA),
            (APIConnectionError(request=_REQUEST), CAUSE_NETWORK),
            (APITimeoutError(request=_REQUEST), CAUSE_NETWORK),
            (_status_error(APIStatusError, 503), CAUSE_NETWORK),
            (_status_error(APIStatusError, 400, "API key not valid. Please pass a valid API key."), CAUSE_AUTH),
            (_status_error(APIStatusError, 403, "You exceeded your current quota"), CAUSE_QUOTA),
            (_status_error(APIStatusError, 422, "unprocessable"), CAUSE_MALFORMED),
        ]
        for exc, cause in cases:
            with self.subTest(exc=type(exc).__name__, cause=cause):
                translated = translate_provider_error(PROVIDER_OPENAI, exc)
                self.assertEqual(translated.cause, cause)
                self.assertEqual(translated.provider, PROVIDER_OPENAI)

    def test_user_message_names_provider(self):
        err = ProviderError(CAUSE_QUOTA, provider=PROVIDER_GOOGLE)
        self.assertIn("Google", err.user_message)


class ProviderBindingSendTests(SimpleTestCase):
    def _binding(self):
        return ProviderBinding(provider=PROVIDER_OPENAI, model="gpt-test", credential="sk-test", timeout=12.0)

    @patch("apps.ebooks.services.llm.OpenAI")
    def test_send_builds_messages_and_disables_sdk_retries(self, mock_openai):
        mock_openai.return_value.chat.completions.create.return_value = _completion("Olá!")
        turns = [Turn("user", "Oi"), Turn("assistant", "Olá, tudo bem?"), Turn("user", "Quero um ebook")]

        text = self._binding().send("SYSTEM", turns)

        self.assertEqual(text, "Olá!")
        kwargs = mock_openai.call_args.kwargs
        self.assertEqual(kwargs["max_retries"], 0)
        self.assertEqual(kwargs["timeout"], 12.0)
        sent = mock_openai.return_value.chat.completions.create.call_args.kwargs["messages"]
        self.assertEqual(sent[0], {"role": "system", "content": "SYSTEM"})
        self.assertEqual([m["role"] for m in sent[1:]], ["user", "assistant", "user"])
        self.assertEqual(sent[-1]["content"], "Quero um ebook")

    @patch("apps.ebooks.services.llm.OpenAI")
    def test_send_translates_sdk_errors_without_retrying(self, mock_openai):
        create = mock_openai.return_value.chat.completions.create
        create.side_effect = _status_error(RateLimitError, 429)

        with self.assertRaises(ProviderError) as ctx:
            self._binding().send("SYSTEM", [Turn("user", "hi")])

        self.assertEqual(ctx.exception.cause, CAUSE_QUOTA)
        self.assertEqual(create.call_count, 1)

    @patch("apps.ebooks.services.llm.OpenAI")
    def test_response_without_text_is_malformed(self, mock_openai):
        mock_openai.return_value.chat.completions.create.return_value = SimpleNamespace(choices=[])
        with self.assertRaises(ProviderError) as ctx:
            self._binding().send("SYSTEM", [Turn("user", "hi")])
        self.assertEqual(ctx.exception.cause, CAUSE_MALFORMED)


class StructuredOutputTests(SimpleTestCase):
    def test_strip_code_fence(self):
        self.assertEqual(strip_code_fence('```json\n{"a": 1}\n```'), '{"a": 1}')
        self.assertEqual(strip_code_fence("```\nplain\n```"), "plain")
        self.assertEqual(strip_code_fence("  no fence  "), "no fence")

    def test_parse_json_object_tolerates_fences_and_prose(self):
        self.assertEqual(parse_json_object('```json\n{"conclusion": "x"}\n```'), {"conclusion": "x"})
        self.assertEqual(
            parse_json_object('Here you go: {"conclusion": "x", "authorBio": "y"} Enjoy!'),
            {"conclusion": "x", "authorBio": "y"},
        )

    def test_parse_json_object_repairs_truncated_output(self):
        payload = parse_json_object('{"conclusion": "Fim do livro", "authorBio": "Autora premiada')
        self.assertIsInstance(payload, dict)
        self.assertEqual(payload.get("conclusion"), "Fim do livro")

    def test_parse_json_object_returns_none_for_non_objects(self):
        self.assertIsNone(parse_json_object(""))
        self.assertIsNone(parse_json_object("[1, 2, 3]"))


class LLMServiceTests(SimpleTestCase):
    def test_closing_accepts_fenced_json(self):
        binding = FakeBinding(['```json\n{"conclusion":"X","authorBio":"Y"}\n```'])
        result = LLMService(binding).write_closing(make_structure(), "English")

        self.assertEqual(result["conclusion"], "X")
        self.assertEqual(result["author_bio"], "Y")
        self.assertFalse(result["used_fallback"])

    def test_closing_accepts_schema_aliases(self):
        binding = FakeBinding(['{"conclusao": "Obrigado", "aboutAuthor": "Autor"}'])
        result = LLMService(binding).write_closing(make_structure(), "Português Brasileiro")

        self.assertEqual(result["conclusion"], "Obrigado")
        self.assertEqual(result["author_bio"], "Autor")

    def test_closing_degrades_to_default_object(self):
        binding = FakeBinding(["I am sorry, I cannot produce JSON today."])
        result = LLMService(binding).write_closing(make_structure(), "English")

        self.assertTrue(result["used_fallback"])
        self.assertEqual(result["fallback_stage"], "conclusion")
        self.assertIn("Test Book", result["conclusion"])
        self.assertTrue(result["author_bio"])

    def test_closing_returns_localized_titles(self):
        binding = FakeBinding(
            [
                '{"title": "How to Invest", "subtitle": "First Steps", '
                '"chapterTitles": ["Getting Started", {"title": "The Core"}], '
                '"conclusion": "X", "authorBio": "Y"}'
            ]
        )
        result = LLMService(binding).write_closing(make_structure(), "English")

        self.assertEqual(result["title"], "How to Invest")
        self.assertEqual(result["subtitle"], "First Steps")
        self.assertEqual(result["chapter_titles"], ["Getting Started", "The Core"])
        self.assertIn("chapter title", binding.calls[0][0])

    def test_closing_keeps_outline_titles_when_translation_is_unusable(self):
        binding = FakeBinding(['{"chapterTitles": ["Only one"], "conclusion": "X", "authorBio": "Y"}'])
        result = LLMService(binding).write_closing(make_structure(subtitle=""), "English")

        self.assertEqual(result["title"], "Test Book")
        self.assertEqual(result["subtitle"], "")
        self.assertEqual(result["chapter_titles"], ["Intro", "Body"])
        self.assertFalse(result["used_fallback"])

    def test_chapter_prompt_is_scoped_to_one_chapter(self):
        binding = FakeBinding(["Chapter body"])
        structure = make_structure(chapters=("Alpha", "Beta", "Gamma"))

        result = LLMService(binding).write_chapter(structure, "English", 1)

        self.assertEqual(result["title"], "Beta")
        self.assertEqual(result["text"], "Chapter body")
        system_prompt, turns = binding.calls[0]
        self.assertIn('chapter 2 of 3, titled "Beta"', system_prompt)
        self.assertIn("2. Beta", turns[0].text)

    def test_empty_chapter_text_falls_back(self):
        binding = FakeBinding(["   "])
        result = LLMService(binding).write_chapter(make_structure(), "English", 0)

        self.assertTrue(result["used_fallback"])
        self.assertEqual(result["fallback_stage"], "chapter_1")
        self.assertTrue(result["text"].strip())

    def test_provider_errors_propagate(self):
        binding = FakeBinding([ProviderError(CAUSE_NETWORK, "down", PROVIDER_OPENAI)])
        with self.assertRaises(ProviderError):
            LLMService(binding).write_introduction(make_structure(), "English")
