from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple, TypedDict

from django.conf import settings
from django.utils import timezone
from langgraph.graph import END, START, StateGraph

from .llm import LLMService
from .schemas import (
    ChapterText,
    ContentMetadata,
    EbookContent,
    EbookStructure,
    MultiLanguageManuscript,
)

logger = logging.getLogger(__name__)

STAGE_INTRO = "intro"
STAGE_CHAPTER = "chapter"
STAGE_CONCLUSION = "conclusion"

DEFAULT_WORDS_PER_PAGE = 250

DEFAULT_LANGUAGE_NAMES = {
    "pt": "Português Brasileiro",
    "en": "English",
    "es": "Español",
    "fr": "Français",
}

ProgressCallback = Callable[[str, float], None]
LLMFactory = Callable[[str], LLMService]


@dataclass(frozen=True)
class ManuscriptDraft:
    """Units finished for a language before its generation stopped."""

    language: str
    introduction: str = ""
    chapters: Tuple[ChapterText, ...] = ()


class GenerationError(Exception):
    """
    Generation of one unit failed and the run was aborted.

    ``completed`` holds the languages finished earlier in the same run and
    ``draft`` the intermediate state of the failing language; neither is
    modified after the failure.
    """

    def __init__(
        self,
        language: str,
        stage: str,
        cause: BaseException,
        draft: Optional[ManuscriptDraft] = None,
        chapter_index: Optional[int] = None,
    ) -> None:
        self.language = language
        self.stage = stage
        self.cause = cause
        self.draft = draft or ManuscriptDraft(language=language)
        self.chapter_index = chapter_index
        self.completed: MultiLanguageManuscript = {}
        where = f"{stage} {chapter_index + 1}" if chapter_index is not None else stage
        super().__init__(f"Generation failed for language '{language}' at {where}: {cause}")

    @property
    def cause_code(self) -> str:
        return str(getattr(self.cause, "cause", "unexpected"))


class _ProgressTracker:
    def __init__(self, total_units: int, callback: Optional[ProgressCallback]) -> None:
        self.total_units = max(1, total_units)
        self.done = 0
        self.callback = callback
        self.last_percent = 0.0

    def start(self, label: str) -> None:
        self._emit(label, 0.0)

    def advance(self, label: str) -> None:
        self.done = min(self.done + 1, self.total_units)
        self._emit(label, round(self.done * 100.0 / self.total_units, 1))

    def finish(self, label: str) -> None:
        self._emit(label, 100.0)

    def _emit(self, label: str, percent: float) -> None:
        self.last_percent = max(self.last_percent, percent)
        if self.callback is not None:
            self.callback(label, self.last_percent)


class LanguageState(TypedDict, total=False):
    structure: EbookStructure
    llm: LLMService
    progress: _ProgressTracker
    language: str
    language_name: str
    introduction: str
    chapters: List[ChapterText]
    next_chapter: int
    conclusion: str
    author_bio: str
    title: str
    subtitle: str
    chapter_titles: List[str]
    fallback_stages: List[str]


class ContentGenerationPipeline:
    """
    Assembly line that writes a manuscript per requested language.

    Languages run one after another and, inside a language, one model call per
    unit: introduction, each chapter on its own, then conclusion + author bio.
    The per-language line is a LangGraph graph:
    introduction -> chapter (loop) -> closing.
    """

    def __init__(
        self,
        llm_factory: Optional[LLMFactory] = None,
        words_per_page: Optional[int] = None,
        language_names: Optional[Dict[str, str]] = None,
    ) -> None:
        self.llm_factory = llm_factory or LLMService.for_credential
        self.words_per_page = int(
            words_per_page or getattr(settings, "EBOOK_WORDS_PER_PAGE", DEFAULT_WORDS_PER_PAGE)
        )
        self.language_names = dict(
            language_names or getattr(settings, "EBOOK_LANGUAGE_NAMES", DEFAULT_LANGUAGE_NAMES)
        )
        self.graph = self._build_graph()

    def generate(
        self,
        credential: str,
        structure: EbookStructure,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> MultiLanguageManuscript:
        if not structure.chapters:
            raise ValueError("structure.chapters must not be empty")
        if not structure.languages:
            raise ValueError("structure.languages must not be empty")

        llm = self.llm_factory(credential)
        units_per_language = len(structure.chapters) + 2
        progress = _ProgressTracker(units_per_language * len(structure.languages), progress_callback)
        progress.start("Starting generation")

        manuscript: MultiLanguageManuscript = {}
        for language in structure.languages:
            t0 = time.perf_counter()
            try:
                manuscript[language] = self._generate_language(llm, structure, language, progress)
            except GenerationError as exc:
                exc.completed = dict(manuscript)
                logger.warning(
                    "Generation aborted for language=%s stage=%s (%d languages completed)",
                    exc.language,
                    exc.stage,
                    len(manuscript),
                )
                raise
            logger.info(
                "Generated language=%s words=%d in %d ms",
                language,
                manuscript[language].metadata.word_count,
                int((time.perf_counter() - t0) * 1000),
            )

        progress.finish("Done")
        return manuscript

    def language_name(self, code: str) -> str:
        return self.language_names.get(code, code)

    # ------------------------------------------------------------------
    # Per-language graph
    # ------------------------------------------------------------------

    def _build_graph(self):
        graph = StateGraph(LanguageState)
        graph.add_node("write_introduction", self._node_introduction)
        graph.add_node("write_chapter", self._node_chapter)
        graph.add_node("write_closing", self._node_closing)

        graph.add_edge(START, "write_introduction")
        graph.add_conditional_edges(
            "write_introduction",
            self._route_next_unit,
            {"chapter": "write_chapter", "closing": "write_closing"},
        )
        graph.add_conditional_edges(
            "write_chapter",
            self._route_next_unit,
            {"chapter": "write_chapter", "closing": "write_closing"},
        )
        graph.add_edge("write_closing", END)
        return graph.compile()

    def _generate_language(
        self,
        llm: LLMService,
        structure: EbookStructure,
        language: str,
        progress: _ProgressTracker,
    ) -> EbookContent:
        state: LanguageState = {
            "structure": structure,
            "llm": llm,
            "progress": progress,
            "language": language,
            "language_name": self.language_name(language),
            "introduction": "",
            "chapters": [],
            "next_chapter": 0,
            "conclusion": "",
            "author_bio": "",
            "title": "",
            "subtitle": "",
            "chapter_titles": [],
            "fallback_stages": [],
        }
        final_state = self.graph.invoke(
            state,
            config={"recursion_limit": len(structure.chapters) + 10},
        )
        return self._assemble(structure, final_state)

    def _route_next_unit(self, state: LanguageState) -> str:
        if state.get("next_chapter", 0) < len(state["structure"].chapters):
            return "chapter"
        return "closing"

    def _node_introduction(self, state: LanguageState) -> Dict[str, Any]:
        try:
            result = state["llm"].write_introduction(state["structure"], state["language_name"])
        except Exception as exc:
            raise GenerationError(state["language"], STAGE_INTRO, exc, draft=self._draft(state)) from exc
        state["progress"].advance(f"{state['language_name']}: introduction")
        return {
            "introduction": result["text"],
            "fallback_stages": self._merge_fallback_stages(state, result),
        }

    def _node_chapter(self, state: LanguageState) -> Dict[str, Any]:
        index = state.get("next_chapter", 0)
        structure = state["structure"]
        try:
            result = state["llm"].write_chapter(structure, state["language_name"], index)
        except Exception as exc:
            raise GenerationError(
                state["language"],
                STAGE_CHAPTER,
                exc,
                draft=self._draft(state),
                chapter_index=index,
            ) from exc
        chapter = ChapterText(title=structure.chapters[index], body=result["text"])
        state["progress"].advance(
            f"{state['language_name']}: chapter {index + 1} of {len(structure.chapters)}"
        )
        return {
            "chapters": [*state.get("chapters", []), chapter],
            "next_chapter": index + 1,
            "fallback_stages": self._merge_fallback_stages(state, result),
        }

    def _node_closing(self, state: LanguageState) -> Dict[str, Any]:
        try:
            result = state["llm"].write_closing(state["structure"], state["language_name"])
        except Exception as exc:
            raise GenerationError(state["language"], STAGE_CONCLUSION, exc, draft=self._draft(state)) from exc
        state["progress"].advance(f"{state['language_name']}: conclusion")
        return {
            "conclusion": result["conclusion"],
            "author_bio": result["author_bio"],
            "title": result.get("title", ""),
            "subtitle": result.get("subtitle", ""),
            "chapter_titles": list(result.get("chapter_titles") or []),
            "fallback_stages": self._merge_fallback_stages(state, result),
        }

    # ------------------------------------------------------------------
    # Assembly
    # ------------------------------------------------------------------

    def _assemble(self, structure: EbookStructure, state: Dict[str, Any]) -> EbookContent:
        introduction = str(state.get("introduction", ""))
        chapters = self._localize_chapters(tuple(state.get("chapters", [])), state.get("chapter_titles") or [])
        conclusion = str(state.get("conclusion", ""))
        word_count = count_words(introduction, *(c.body for c in chapters), conclusion)
        return EbookContent(
            title=str(state.get("title") or structure.title),
            subtitle=str(state.get("subtitle") or structure.subtitle),
            author=structure.author,
            introduction=introduction,
            chapters=chapters,
            conclusion=conclusion,
            author_bio=str(state.get("author_bio", "")),
            metadata=ContentMetadata(
                language=str(state["language"]),
                word_count=word_count,
                page_count_estimate=estimate_page_count(word_count, self.words_per_page),
                generated_at=timezone.now(),
                fallback_stages=tuple(state.get("fallback_stages", [])),
            ),
        )

    def _localize_chapters(self, chapters: Tuple[ChapterText, ...], titles: List[str]) -> Tuple[ChapterText, ...]:
        if len(titles) != len(chapters):
            return chapters
        return tuple(ChapterText(title=title or chapter.title, body=chapter.body) for chapter, title in zip(chapters, titles))

    def _draft(self, state: LanguageState) -> ManuscriptDraft:
        return ManuscriptDraft(
            language=state["language"],
            introduction=state.get("introduction", ""),
            chapters=tuple(state.get("chapters", [])),
        )

    def _merge_fallback_stages(self, state: LanguageState, result: Dict[str, Any]) -> List[str]:
        stages = list(state.get("fallback_stages", []))
        if result.get("used_fallback") and result.get("fallback_stage"):
            stages.append(str(result["fallback_stage"]))
        return stages


def count_words(*texts: str) -> int:
    return sum(len(text.split()) for text in texts if text)


def estimate_page_count(word_count: int, words_per_page: int = DEFAULT_WORDS_PER_PAGE) -> int:
    if word_count <= 0:
        return 0
    return math.ceil(word_count / max(1, words_per_page))
