from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Callable, List, Optional, Sequence, Tuple

from apps.ebooks.services.llm import ProviderBinding, ProviderError, get_binding
from apps.ebooks.services.schemas import (
    SPEAKER_ASSISTANT,
    SPEAKER_USER,
    EbookStructure,
    Turn,
)

from .outline_protocol import (
    APPROVAL_SENTINEL,
    PROPOSE_END,
    PROPOSE_START,
    BriefingStatus,
    inspect_briefing,
)

logger = logging.getLogger(__name__)

BindingFactory = Callable[[str], ProviderBinding]

BRIEFING_SYSTEM_PROMPT = f"""Você é um especialista em criação de e-books profissionais da VIPNEXUS IA.
Sua tarefa é conduzir um briefing curto com o usuário para definir o e-book que será escrito.

Colete, uma pergunta por vez:
- o tema e o objetivo do e-book;
- o público-alvo;
- o tom de voz (profissional, descontraído, técnico, inspirador...);
- o número aproximado de capítulos;
- o nome do autor, se o usuário quiser informar.

Quando tiver informação suficiente, proponha a estrutura EXATAMENTE neste formato:

{PROPOSE_START}
TITULO: [título do e-book]
SUBTITULO: [subtítulo]
CAPITULOS:
1. [título do capítulo 1]
2. [título do capítulo 2]
PUBLICO: [público-alvo]
TOM: [tom de voz]
{PROPOSE_END}

Depois pergunte se o usuário aprova a estrutura ou deseja ajustes.
Se pedir ajustes, proponha a estrutura completa novamente no mesmo formato.
Quando o usuário aprovar, responda com uma confirmação curta e inclua a linha:
{APPROVAL_SENTINEL}

Converse em português brasileiro, a menos que o usuário escreva em outro idioma.
Seja objetivo e cordial. Nunca escreva o conteúdo do e-book nesta etapa."""

OPENING_GREETING = "Olá! Vou ajudar você a criar um e-book profissional."
OPENING_QUESTION = "Para começar, qual é o tema do seu e-book e qual objetivo você quer alcançar com ele?"
OPENING_MESSAGE = f"{OPENING_GREETING} {OPENING_QUESTION}"

OPENING_TEMPLATE_QUESTION = "Me conta: qual é o tema específico do seu e-book e para quem você está escrevendo?"


def build_system_prompt(context_hint: Optional[str] = None) -> str:
    hint = (context_hint or "").strip()
    if not hint:
        return BRIEFING_SYSTEM_PROMPT
    return f"{BRIEFING_SYSTEM_PROMPT}\n\nModelo selecionado pelo usuário:\n{hint}"


def conversation_turns(turns: Sequence[Turn]) -> List[Turn]:
    """History sent to the model: error turns are shown to the user but never replayed."""
    return [turn for turn in turns if not turn.is_error]


def continue_conversation(
    credential: str,
    turns: Sequence[Turn],
    context_hint: Optional[str] = None,
    binding_factory: Optional[BindingFactory] = None,
) -> str:
    """
    One assistant reply for the briefing.

    ``turns`` is the full history ending with the new user turn. Exactly one
    provider call is made and the raw text is returned unmodified; failures
    surface as ``ProviderError``.
    """
    history = conversation_turns(turns)
    if not history or history[-1].speaker != SPEAKER_USER:
        raise ValueError("conversation must end with a user turn")
    binding = (binding_factory or get_binding)(credential)
    logger.info("Briefing reply via %s (%d turns)", binding.provider, len(history))
    return binding.send(build_system_prompt(context_hint), history)


def reply(
    credential: str,
    turns: Sequence[Turn],
    context_hint: Optional[str] = None,
    binding_factory: Optional[BindingFactory] = None,
) -> Turn:
    try:
        text = continue_conversation(credential, turns, context_hint, binding_factory=binding_factory)
    except ProviderError as exc:
        logger.warning("Briefing reply failed: cause=%s provider=%s", exc.cause, exc.provider or "-")
        return Turn(speaker=SPEAKER_ASSISTANT, text=exc.user_message, is_error=True)
    return Turn(speaker=SPEAKER_ASSISTANT, text=text)


def opening_turn(context_hint: Optional[str] = None) -> Turn:
    """Greeting that starts a briefing; a selected template's context is shown to the user."""
    hint = (context_hint or "").strip()
    if not hint:
        return Turn(speaker=SPEAKER_ASSISTANT, text=OPENING_MESSAGE)
    return Turn(speaker=SPEAKER_ASSISTANT, text=f"{OPENING_GREETING}\n\n{hint}\n\n{OPENING_TEMPLATE_QUESTION}")


@dataclass(frozen=True)
class ConversationState:
    """Append-only briefing log held by the caller; every change returns a new state."""

    turns: Tuple[Turn, ...] = ()
    context_hint: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "turns", tuple(self.turns))

    def append(self, turn: Turn) -> "ConversationState":
        return replace(self, turns=(*self.turns, turn))

    def add_user_message(self, text: str) -> "ConversationState":
        return self.append(Turn(speaker=SPEAKER_USER, text=text))

    def advance(
        self,
        credential: str,
        text: str,
        binding_factory: Optional[BindingFactory] = None,
    ) -> "ConversationState":
        """User message plus the assistant's reply (or a visible error turn)."""
        asked = self.add_user_message(text)
        assistant = reply(credential, asked.turns, self.context_hint, binding_factory=binding_factory)
        return asked.append(assistant)

    @property
    def last_turn(self) -> Optional[Turn]:
        return self.turns[-1] if self.turns else None

    def status(self) -> BriefingStatus:
        return inspect_briefing(self.turns)

    @property
    def latest_structure(self) -> Optional[EbookStructure]:
        return self.status().structure

    @property
    def approved(self) -> bool:
        return self.status().approved
