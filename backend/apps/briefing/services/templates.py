from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple


@dataclass(frozen=True)
class NicheTemplate:
    id: str
    name: str
    description: str
    color: str
    target_audience: str
    suggested_outline: Tuple[str, ...]
    guidance: str


TEMPLATES: Tuple[NicheTemplate, ...] = (
    NicheTemplate(
        id="autoajuda",
        name="Autoajuda & Desenvolvimento Pessoal",
        description="Livros de transformação pessoal, mindset e crescimento",
        color="#8B5CF6",
        target_audience="Pessoas buscando melhorar a vida pessoal e profissional",
        suggested_outline=(
            "Entendendo o problema",
            "A mentalidade necessária",
            "O primeiro passo da transformação",
            "Construindo novos hábitos",
            "Superando obstáculos",
            "Mantendo a consistência",
            "Seu plano de ação de 30 dias",
        ),
        guidance="Conteúdo transformador e prático, com exemplos reais e exercícios. Tom empático e inspirador.",
    ),
    NicheTemplate(
        id="tutorial",
        name="Tutorial & Passo a Passo",
        description="Guias práticos que ensinam habilidades específicas",
        color="#10B981",
        target_audience="Pessoas querendo aprender uma habilidade específica",
        suggested_outline=(
            "Fundamentos essenciais",
            "Preparação e ferramentas necessárias",
            "Passo a passo básico",
            "Técnicas intermediárias",
            "Técnicas avançadas",
            "Erros comuns e como evitar",
            "Projetos práticos para treinar",
        ),
        guidance="Instruções numeradas, claras e objetivas, com dicas e avisos. Tom professoral e paciente.",
    ),
    NicheTemplate(
        id="saude",
        name="Saúde & Bem-estar",
        description="Emagrecimento, nutrição, exercícios e saúde mental",
        color="#EF4444",
        target_audience="Pessoas buscando melhorar saúde física e mental",
        suggested_outline=(
            "Entendendo seu corpo",
            "A ciência por trás do método",
            "Alimentação inteligente",
            "Movimento e exercícios",
            "Sono e recuperação",
            "Saúde mental e emocional",
            "Mantendo os resultados",
        ),
        guidance="Baseado em evidências e acessível; sempre recomendar acompanhamento profissional.",
    ),
    NicheTemplate(
        id="financas",
        name="Finanças & Investimentos",
        description="Organização financeira, renda extra e investimentos",
        color="#F59E0B",
        target_audience="Pessoas querendo organizar finanças ou investir",
        suggested_outline=(
            "Diagnóstico da sua vida financeira",
            "Orçamento que funciona",
            "Saindo das dívidas",
            "Reserva de emergência",
            "Primeiros investimentos",
            "Renda extra",
            "Plano para a independência financeira",
        ),
        guidance="Números concretos e exemplos do dia a dia, sem promessas de ganho. Tom claro e responsável.",
    ),
    NicheTemplate(
        id="negocios",
        name="Negócios & Empreendedorismo",
        description="Abrir, estruturar e escalar um negócio",
        color="#3B82F6",
        target_audience="Empreendedores e aspirantes a dono de negócio",
        suggested_outline=(
            "Validando a ideia",
            "Modelo de negócio",
            "Marketing e vendas",
            "Finanças do negócio",
            "Montando o time",
            "Escalando com processos",
        ),
        guidance="Estudos de caso, frameworks e checklists acionáveis. Tom direto e estratégico.",
    ),
)

_NICHE_KEYWORDS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("tutorial", ("ia", "inteligência", "tecnologia")),
    ("saude", ("emagrec", "dieta", "saúde", "fitness")),
    ("negocios", ("marketing", "negócio", "empreend", "vend")),
    ("financas", ("finança", "invest", "dinheiro", "renda")),
)

DEFAULT_TEMPLATE_ID = "autoajuda"


def list_templates() -> List[NicheTemplate]:
    return list(TEMPLATES)


def get_template(template_id: str) -> Optional[NicheTemplate]:
    for template in TEMPLATES:
        if template.id == template_id:
            return template
    return None


def template_for_niche(niche: str) -> NicheTemplate:
    """Keyword match on a free-text niche; falls back to the self-help template."""
    lowered = (niche or "").lower()
    tokens = lowered.split()
    for template_id, keywords in _NICHE_KEYWORDS:
        # two-letter keywords ("ia") only match whole words
        if any(keyword in tokens if len(keyword) <= 2 else keyword in lowered for keyword in keywords):
            return get_template(template_id)
    return get_template(DEFAULT_TEMPLATE_ID)


def format_template_hint(template: NicheTemplate) -> str:
    """Context paragraph appended to the briefing system prompt."""
    outline = "\n".join(f"{number}. {title}" for number, title in enumerate(template.suggested_outline, start=1))
    return (
        f"Nicho: {template.name}\n"
        f"Público sugerido: {template.target_audience}\n"
        f"Orientação: {template.guidance}\n"
        f"Estrutura sugerida (adapte ao tema do usuário):\n{outline}"
    )


def format_opening_context(template: NicheTemplate) -> str:
    """Short note shown in the opening greeting when a template was picked."""
    preview = ", ".join(template.suggested_outline[:3])
    return f"Você escolheu o modelo \"{template.name}\".\nEstrutura sugerida: {preview}..."


def template_payload(template: NicheTemplate) -> Dict[str, object]:
    return {
        "id": template.id,
        "name": template.name,
        "description": template.description,
        "color": template.color,
        "target_audience": template.target_audience,
        "suggested_outline": list(template.suggested_outline),
    }
