from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Sequence

from django.conf import settings
from json_repair import repair_json
from openai import (
    APIConnectionError,
    APIStatusError,
    AuthenticationError,
    OpenAI,
    OpenAIError,
    PermissionDeniedError,
    RateLimitError,
)

from .schemas import SPEAKER_USER, EbookStructure, Turn

logger = logging.getLogger(__name__)


PROVIDER_OPENAI = "openai"
PROVIDER_GOOGLE = "google"
PROVIDER_GITHUB = "github"

_OPENAI_PREFIX = "sk-"
_GITHUB_PREFIXES = ("ghp_", "gho_", "github_pat_")

# Every supported backend speaks the OpenAI chat-completions dialect; only the
# endpoint and the default model differ.
_PROVIDER_ENDPOINTS: Dict[str, Optional[str]] = {
    PROVIDER_OPENAI: None,
    PROVIDER_GOOGLE: "https://generativelanguage.googleapis.com/v1beta/openai/",
    PROVIDER_GITHUB: "https://models.inference.ai.azure.com",
}

_PROVIDER_MODEL_SETTINGS = {
    PROVIDER_OPENAI: ("EBOOK_OPENAI_MODEL", "gpt-4o-mini"),
    PROVIDER_GOOGLE: ("EBOOK_GOOGLE_MODEL", "gemini-1.5-flash"),
    PROVIDER_GITHUB: ("EBOOK_GITHUB_MODEL", "gpt-4o-mini"),
}

_PROVIDER_LABELS = {
    PROVIDER_OPENAI: "OpenAI",
    PROVIDER_GOOGLE: "Google Gemini",
    PROVIDER_GITHUB: "GitHub Models",
}

CAUSE_AUTH = "auth"
CAUSE_QUOTA = "quota"
CAUSE_NETWORK = "network"
CAUSE_MALFORMED = "malformed_response"

_CAUSE_MESSAGES = {
    CAUSE_AUTH: "The API key was rejected by {provider}. Check the key and try again.",
    CAUSE_QUOTA: "{provider} refused the request because the quota or rate limit was exceeded.",
    CAUSE_NETWORK: "Could not reach {provider}. Check the connection and try again.",
    CAUSE_MALFORMED: "{provider} returned a response that could not be read.",
}


class ProviderError(Exception):
    """A language-model call failed; ``cause`` is one of auth | quota | network | malformed_response."""

    def __init__(self, cause: str, detail: str = "", provider: str = "") -> None:
        self.cause = cause
        self.detail = detail
        self.provider = provider
        super().__init__(f"{cause}: {detail}" if detail else cause)

    @property
    def user_message(self) -> str:
        label = _PROVIDER_LABELS.get(self.provider, "The language model provider")
        template = _CAUSE_MESSAGES.get(self.cause, "{provider} request failed.")
        return template.format(provider=label)


def detect_provider(credential: str) -> str:
    """Classify a credential by its shape. Unknown shapes default to Google."""
    key = (credential or "").strip()
    if key.startswith(_OPENAI_PREFIX):
        return PROVIDER_OPENAI
    if key.startswith(_GITHUB_PREFIXES):
        return PROVIDER_GITHUB
    return PROVIDER_GOOGLE


def translate_provider_error(provider: str, exc: Exception) -> ProviderError:
    detail = str(exc)[:500]
    if isinstance(exc, APIConnectionError):
        # APITimeoutError is a subclass
        return ProviderError(CAUSE_NETWORK, detail, provider)
    if isinstance(exc, (AuthenticationError, PermissionDeniedError)):
        return ProviderError(CAUSE_AUTH, detail, provider)
    if isinstance(exc, RateLimitError):
        return ProviderError(CAUSE_QUOTA, detail, provider)
    if isinstance(exc, APIStatusError):
        status_code = exc.status_code
        lowered = detail.lower()
        if status_code == 400 and "api key" in lowered:
            # Gemini reports bad keys as 400 INVALID_ARGUMENT
            return ProviderError(CAUSE_AUTH, detail, provider)
        if status_code == 402 or "quota" in lowered:
            return ProviderError(CAUSE_QUOTA, detail, provider)
        if status_code >= 500:
            return ProviderError(CAUSE_NETWORK, detail, provider)
    return ProviderError(CAUSE_MALFORMED, detail, provider)


@dataclass(frozen=True)
class ProviderBinding:
    """One provider variant behind the ``send(system_prompt, turns) -> text`` capability."""

    provider: str
    model: str
    credential: str = field(repr=False)
    base_url: Optional[str] = None
    timeout: float = 120.0
    temperature: float = 0.7

    def send(self, system_prompt: str, turns: Sequence[Turn]) -> str:
        messages = [{"role": "system", "content": system_prompt}]
        messages.extend({"role": turn.speaker, "content": turn.text} for turn in turns)
        try:
            client = OpenAI(
                api_key=self.credential,
                base_url=self.base_url,
                timeout=self.timeout,
                max_retries=0,
            )
            response = client.chat.completions.create(
                model=self.model,
                temperature=self.temperature,
                messages=messages,
            )
        except OpenAIError as exc:
            logger.warning("%s call failed (model=%s)", self.provider, self.model, exc_info=True)
            raise translate_provider_error(self.provider, exc) from exc
        return _completion_text(self.provider, response)


def get_binding(credential: str) -> ProviderBinding:
    key = (credential or "").strip()
    if not key:
        raise ProviderError(CAUSE_AUTH, "no API key configured")
    provider = detect_provider(key)
    setting_name, default_model = _PROVIDER_MODEL_SETTINGS[provider]
    return ProviderBinding(
        provider=provider,
        model=str(getattr(settings, setting_name, default_model) or default_model),
        credential=key,
        base_url=_PROVIDER_ENDPOINTS[provider],
        timeout=float(getattr(settings, "EBOOK_PROVIDER_TIMEOUT_S", 120)),
        temperature=float(getattr(settings, "EBOOK_TEMPERATURE", 0.7)),
    )


def _completion_text(provider: str, response: Any) -> str:
    choices = getattr(response, "choices", None) or []
    if not choices:
        raise ProviderError(CAUSE_MALFORMED, "response has no choices", provider)
    message = getattr(choices[0], "message", None)
    content = getattr(message, "content", None)
    if not isinstance(content, str):
        raise ProviderError(CAUSE_MALFORMED, "response has no text content", provider)
    return content


# ---------------------------------------------------------------------------
# Structured output normalisation
# ---------------------------------------------------------------------------

_FENCE_OPEN = re.compile(r"^```[\w+.-]*[ \t]*\n?")
_FENCE_CLOSE = re.compile(r"\n?[ \t]*```\s*$")


def strip_code_fence(text: str) -> str:
    """Remove a wrapping markdown fence (```` ``` ```` or ```` ```json ````) if present."""
    stripped = (text or "").strip()
    if not stripped.startswith("```"):
        return stripped
    body = _FENCE_OPEN.sub("", stripped, count=1)
    body = _FENCE_CLOSE.sub("", body, count=1)
    return body.strip()


def parse_json_object(text: str) -> Optional[Dict[str, Any]]:
    """
    Best-effort parse of a JSON object out of model output.

    Order: fence stripping, strict parse, outermost ``{...}`` span, then
    json_repair for truncated or sloppy output. Returns None when nothing
    object-shaped can be recovered.
    """
    candidate = strip_code_fence(text)
    if not candidate:
        return None
    try:
        payload = json.loads(candidate)
        if isinstance(payload, dict):
            return payload
    except ValueError:
        pass

    start = candidate.find("{")
    end = candidate.rfind("}") + 1
    if start != -1 and end > start:
        try:
            payload = json.loads(candidate[start:end])
            if isinstance(payload, dict):
                return payload
        except ValueError:
            pass

    repaired = repair_json(candidate[start:] if start != -1 else candidate, return_objects=True)
    if isinstance(repaired, dict) and repaired:
        logger.info("Recovered model JSON with json_repair")
        return repaired
    return None


def _first_text(payload: Dict[str, Any], keys: Sequence[str]) -> str:
    for key in keys:
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def _chapter_title_text(item: Any) -> str:
    """Chapter entries arrive as plain strings or as ``{"title": ...}`` objects."""
    if isinstance(item, dict):
        item = item.get("title")
    return item.strip() if isinstance(item, str) else ""


# ---------------------------------------------------------------------------
# Shared prompt fragments
# ---------------------------------------------------------------------------

_CLOSING_SCHEMA = """{
  "title": "<book title translated into the requested language>",
  "subtitle": "<subtitle translated into the requested language>",
  "chapterTitles": ["<chapter 1 title translated>", "<chapter 2 title translated>"],
  "conclusion": "<complete conclusion, at least 400 words, short paragraphs separated by blank lines>",
  "authorBio": "<short author biography, about 100 words>"
}"""

_JSON_RULE = (
    "OUTPUT RULE: Return a single valid JSON object, no markdown fences, "
    "no prose before or after, no trailing commas, no comments."
)

_TEXT_RULE = (
    "OUTPUT RULE: Return only the prose. No JSON, no code fences, no title line, "
    "no closing remarks addressed to the requester. Separate paragraphs with a blank line; "
    "use '## ' only for section headings."
)

_WRITING_GUIDELINES = (
    "- Write every word in the requested language, including headings.\n"
    "- Use short paragraphs that are easy to read on a small screen.\n"
    "- Include practical examples and actionable tips.\n"
    "- Keep the requested tone consistent from start to finish."
)

_CONCLUSION_KEYS = ("conclusion", "conclusao", "conclusão", "closing")
_AUTHOR_BIO_KEYS = ("authorBio", "aboutAuthor", "author_bio", "about_author", "bio", "sobreAutor")
_TITLE_KEYS = ("title", "titulo", "título")
_SUBTITLE_KEYS = ("subtitle", "subtitulo", "subtítulo")
_CHAPTER_TITLE_KEYS = ("chapterTitles", "chapter_titles", "chapters", "capitulos")


class LLMService:
    """
    Book-writing adapter over a single provider binding.

    Introduction and chapters are plain text; the closing step expects a small
    JSON object and degrades to a default object when the output cannot be
    recovered. Every public method returns a dict carrying ``used_fallback`` and
    ``fallback_stage`` so the pipeline can record degraded steps. Provider
    failures are raised as ``ProviderError`` and never retried here.
    """

    def __init__(self, binding: ProviderBinding) -> None:
        self.binding = binding

    @classmethod
    def for_credential(cls, credential: str) -> "LLMService":
        return cls(get_binding(credential))

    # ------------------------------------------------------------------
    # Public interface
    # ------------------------------------------------------------------

    def write_introduction(self, structure: EbookStructure, language_name: str) -> Dict[str, Any]:
        system_prompt = _build_system_prompt(
            role="You are a professional eBook writer who turns approved outlines into books that sell.",
            task=(
                f"Write the complete introduction of the eBook in {language_name}. "
                "Hook the reader, state the promise of the book and preview the journey "
                "through the chapters. Aim for at least 500 words."
            ),
        )
        user_prompt = _join(
            _book_header(structure, language_name),
            _section("Chapters", _chapter_list(structure)),
            _section("Writing Guidelines", _WRITING_GUIDELINES),
        )
        text = self._call_text(system_prompt, user_prompt)
        if text:
            return self._with_runtime_meta({"text": text}, used_fallback=False)
        return self._with_runtime_meta(
            {"text": self._fallback_introduction(structure)},
            used_fallback=True,
            fallback_stage="intro",
        )

    def write_chapter(self, structure: EbookStructure, language_name: str, chapter_index: int) -> Dict[str, Any]:
        """Write one chapter; the prompt only carries this chapter plus book-level context."""
        chapter_title = structure.chapters[chapter_index]
        number = chapter_index + 1
        system_prompt = _build_system_prompt(
            role="You are a professional eBook writer with a clear, engaging and practical voice.",
            task=(
                f"Write chapter {number} of {len(structure.chapters)}, titled \"{chapter_title}\", "
                f"in {language_name}. Cover only this chapter; the other chapters are written separately. "
                "Aim for at least 800 words."
            ),
        )
        user_prompt = _join(
            _book_header(structure, language_name),
            _section("Full Chapter List (for continuity only)", _chapter_list(structure)),
            _section("Chapter To Write", f"{number}. {chapter_title}"),
            _section("Writing Guidelines", _WRITING_GUIDELINES),
        )
        text = self._call_text(system_prompt, user_prompt)
        if text:
            return self._with_runtime_meta({"title": chapter_title, "text": text}, used_fallback=False)
        return self._with_runtime_meta(
            {"title": chapter_title, "text": self._fallback_chapter(chapter_title)},
            used_fallback=True,
            fallback_stage=f"chapter_{number}",
        )

    def write_closing(self, structure: EbookStructure, language_name: str) -> Dict[str, Any]:
        """
        Conclusion, author bio and the localized titles in one call, parsed
        from a small JSON object.

        Titles the model leaves out (or a chapter list of the wrong length)
        fall back to the outline's own wording without counting as a degraded
        step; a missing conclusion or bio does.
        """
        system_prompt = _build_system_prompt(
            role="You are a professional eBook writer closing a book the reader should not forget.",
            task=(
                f"Write, in {language_name}, an inspiring conclusion for the eBook and a short "
                f"biography of the author {structure.author}. Also translate the book title, the "
                f"subtitle and every chapter title into {language_name}, keeping the chapter order."
            ),
            schema=_CLOSING_SCHEMA,
        )
        user_prompt = _join(
            _book_header(structure, language_name),
            _section("Chapters", _chapter_list(structure)),
            _section("Writing Guidelines", _WRITING_GUIDELINES),
        )
        raw = self.binding.send(system_prompt, [Turn(SPEAKER_USER, user_prompt)])
        payload = parse_json_object(raw) or {}
        titles = self._localized_titles(structure, payload)
        conclusion = _first_text(payload, _CONCLUSION_KEYS)
        author_bio = _first_text(payload, _AUTHOR_BIO_KEYS)
        if conclusion and author_bio:
            return self._with_runtime_meta(
                {"conclusion": conclusion, "author_bio": author_bio, **titles},
                used_fallback=False,
            )

        logger.warning(
            "Closing step returned unusable JSON (provider=%s, chars=%d); using defaults",
            self.binding.provider,
            len(raw or ""),
        )
        fallback = self._fallback_closing(structure)
        return self._with_runtime_meta(
            {
                "conclusion": conclusion or fallback["conclusion"],
                "author_bio": author_bio or fallback["author_bio"],
                **titles,
            },
            used_fallback=True,
            fallback_stage="conclusion",
        )

    # ------------------------------------------------------------------
    # Private
    # ------------------------------------------------------------------

    def _localized_titles(self, structure: EbookStructure, payload: Dict[str, Any]) -> Dict[str, Any]:
        chapter_titles = list(structure.chapters)
        for key in _CHAPTER_TITLE_KEYS:
            value = payload.get(key)
            if not isinstance(value, list):
                continue
            candidates = [_chapter_title_text(item) for item in value]
            if len(candidates) == len(chapter_titles) and all(candidates):
                chapter_titles = candidates
            break
        return {
            "title": _first_text(payload, _TITLE_KEYS) or structure.title,
            # an empty subtitle stays empty rather than inventing one
            "subtitle": (_first_text(payload, _SUBTITLE_KEYS) or structure.subtitle) if structure.subtitle else "",
            "chapter_titles": chapter_titles,
        }

    def _call_text(self, system_prompt: str, user_prompt: str) -> str:
        raw = self.binding.send(system_prompt, [Turn(SPEAKER_USER, user_prompt)])
        return strip_code_fence(raw)

    def _with_runtime_meta(
        self,
        payload: Dict[str, Any],
        *,
        used_fallback: bool,
        fallback_stage: str = "",
    ) -> Dict[str, Any]:
        out = dict(payload)
        out["used_fallback"] = bool(used_fallback)
        out["fallback_stage"] = str(fallback_stage).strip() if used_fallback else ""
        return out

    def _fallback_introduction(self, structure: EbookStructure) -> str:
        return f"{structure.title}. {structure.subtitle}".strip().rstrip(".") + "."

    def _fallback_chapter(self, chapter_title: str) -> str:
        return f"{chapter_title}: content for this chapter could not be generated."

    def _fallback_closing(self, structure: EbookStructure) -> Dict[str, str]:
        return {
            "conclusion": f"Thank you for reading {structure.title}.",
            "author_bio": f"{structure.author} writes practical guides for curious readers.",
        }


# ---------------------------------------------------------------------------
# Prompt-building utilities
# ---------------------------------------------------------------------------

def _build_system_prompt(role: str, task: str, schema: str = "") -> str:
    """Role, task, then either the JSON schema + rule or the plain-text rule."""
    parts = [f"ROLE: {role}", f"TASK: {task}"]
    if schema:
        parts.extend([f"OUTPUT SCHEMA:\n{schema}", _JSON_RULE])
    else:
        parts.append(_TEXT_RULE)
    return "\n\n".join(parts)


def _book_header(structure: EbookStructure, language_name: str) -> str:
    return (
        f"Title: {structure.title}\n"
        f"Subtitle: {structure.subtitle}\n"
        f"Author: {structure.author}\n"
        f"Target Audience: {structure.target_audience}\n"
        f"Tone: {structure.tone}\n"
        f"Language: {language_name}"
    )


def _chapter_list(structure: EbookStructure) -> str:
    return "\n".join(f"{i}. {title}" for i, title in enumerate(structure.chapters, start=1))


def _section(heading: str, body: str) -> str:
    body = body.strip()
    return f"### {heading}\n{body}" if body else ""


def _join(*parts: str) -> str:
    return "\n\n".join(p for p in parts if p and p.strip())


def provider_label(provider: str) -> str:
    return _PROVIDER_LABELS.get(provider, provider)
