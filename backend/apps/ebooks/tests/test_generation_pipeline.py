from __future__ import annotations

from django.test import SimpleTestCase

from apps.ebooks.services.llm import CAUSE_NETWORK, PROVIDER_OPENAI, LLMService, ProviderError
from apps.ebooks.services.pipeline import (
    STAGE_CHAPTER,
    ContentGenerationPipeline,
    GenerationError,
    count_words,
    estimate_page_count,
)
from apps.ebooks.tests.fakes import FakeBinding, make_structure

CLOSING_JSON = '{"conclusion": "six", "authorBio": "Bio text"}'


def _pipeline(binding: FakeBinding, **kwargs) -> ContentGenerationPipeline:
    return ContentGenerationPipeline(llm_factory=lambda credential: LLMService(binding), **kwargs)


class GenerationPipelineTests(SimpleTestCase):
    def test_generates_each_language_in_order_one_call_per_unit(self):
        binding = FakeBinding(
            [
                "pt intro", "pt one", "pt two", CLOSING_JSON,
                "en intro", "en one", "en two", CLOSING_JSON,
            ]
        )
        manuscript = _pipeline(binding).generate("sk-test", make_structure(languages=("pt", "en")))

        self.assertEqual(list(manuscript), ["pt", "en"])
        self.assertEqual(len(binding.calls), 8)
        pt = manuscript["pt"]
        self.assertEqual(pt.introduction, "pt intro")
        self.assertEqual([c.title for c in pt.chapters], ["Intro", "Body"])
        self.assertEqual([c.body for c in pt.chapters], ["pt one", "pt two"])
        self.assertEqual(pt.conclusion, "six")
        self.assertEqual(pt.author_bio, "Bio text")
        self.assertEqual(pt.metadata.language, "pt")
        self.assertEqual(manuscript["en"].chapters[1].body, "en two")
        self.assertIn("Português Brasileiro", binding.calls[0][0])
        self.assertIn("English", binding.calls[4][0])

    def test_each_language_carries_its_own_titles(self):
        localized = (
            '{"title": "How to Invest", "subtitle": "First Steps", '
            '"chapterTitles": ["Getting Started", "Growing"], "conclusion": "six", "authorBio": "Bio"}'
        )
        binding = FakeBinding(["pt intro", "pt one", "pt two", CLOSING_JSON, "en intro", "en one", "en two", localized])
        structure = make_structure(
            title="Como Investir",
            subtitle="Primeiros Passos",
            chapters=("Começando", "Crescendo"),
            languages=("pt", "en"),
        )
        manuscript = _pipeline(binding).generate("sk-test", structure)

        pt, en = manuscript["pt"], manuscript["en"]
        self.assertEqual((pt.title, pt.subtitle), ("Como Investir", "Primeiros Passos"))
        self.assertEqual([c.title for c in pt.chapters], ["Começando", "Crescendo"])
        self.assertEqual((en.title, en.subtitle), ("How to Invest", "First Steps"))
        self.assertEqual([c.title for c in en.chapters], ["Getting Started", "Growing"])
        self.assertEqual([c.body for c in en.chapters], ["en one", "en two"])

    def test_metadata_word_count_and_page_estimate(self):
        binding = FakeBinding(["one two three", "four five", "x", '{"conclusion": "six", "authorBio": "not counted"}'])
        manuscript = _pipeline(binding, words_per_page=2).generate(
            "sk-test", make_structure(chapters=("A", "B"), languages=("en",))
        )
        meta = manuscript["en"].metadata

        self.assertEqual(meta.word_count, 7)
        self.assertEqual(meta.page_count_estimate, 4)
        self.assertEqual(meta.fallback_stages, ())

    def test_progress_is_monotonic_from_zero_to_hundred(self):
        events = []
        binding = FakeBinding(default=CLOSING_JSON)
        structure = make_structure(chapters=("A", "B", "C"), languages=("pt", "en"))

        _pipeline(binding).generate("sk-test", structure, progress_callback=lambda label, pct: events.append(pct))

        self.assertEqual(events[0], 0.0)
        self.assertEqual(events[-1], 100.0)
        self.assertEqual(events, sorted(events))
        # start + (3 chapters + intro + closing) * 2 languages + finish
        self.assertEqual(len(events), 12)

    def test_failure_keeps_completed_languages_and_draft(self):
        network = ProviderError(CAUSE_NETWORK, "connection reset", PROVIDER_OPENAI)
        binding = FakeBinding(
            [
                "pt intro", "pt 1", "pt 2", "pt 3", "pt 4", CLOSING_JSON,
                "en intro", "en 1", network,
            ]
        )
        structure = make_structure(chapters=("A", "B", "C", "D"), languages=("pt", "en"))

        with self.assertRaises(GenerationError) as ctx:
            _pipeline(binding).generate("sk-test", structure)

        exc = ctx.exception
        self.assertEqual(exc.language, "en")
        self.assertEqual(exc.stage, STAGE_CHAPTER)
        self.assertEqual(exc.chapter_index, 1)
        self.assertEqual(exc.cause_code, CAUSE_NETWORK)
        self.assertEqual(list(exc.completed), ["pt"])
        self.assertEqual(len(exc.completed["pt"].chapters), 4)
        self.assertEqual(exc.draft.introduction, "en intro")
        self.assertEqual([c.body for c in exc.draft.chapters], ["en 1"])
        # aborted: no call after the failing unit
        self.assertEqual(len(binding.calls), 9)

    def test_unusable_closing_json_is_recorded_as_fallback(self):
        binding = FakeBinding(["intro", "chapter", "not json at all"])
        manuscript = _pipeline(binding).generate("sk-test", make_structure(chapters=("Only",), languages=("en",)))

        content = manuscript["en"]
        self.assertEqual(content.metadata.fallback_stages, ("conclusion",))
        self.assertTrue(content.conclusion)
        self.assertTrue(content.author_bio)

    def test_rejects_structure_without_chapters(self):
        with self.assertRaises(ValueError):
            _pipeline(FakeBinding()).generate("sk-test", make_structure(chapters=()))


class WordCountTests(SimpleTestCase):
    def test_count_words_splits_on_whitespace(self):
        self.assertEqual(count_words("a  b\nc", "", "d\te"), 5)

    def test_estimate_page_count_rounds_up(self):
        self.assertEqual(estimate_page_count(0), 0)
        self.assertEqual(estimate_page_count(250), 1)
        self.assertEqual(estimate_page_count(251), 2)
