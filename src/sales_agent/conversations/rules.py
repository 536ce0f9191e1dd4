"""Keyword business rules evaluated before the LLM is consulted."""

from __future__ import annotations

import re
import unicodedata
from collections.abc import Iterable
from dataclasses import dataclass

from sales_agent.conversations.models import BusinessRuleSpec, BusinessRuleView, RuleAction

DEFAULT_RULES: tuple[BusinessRuleSpec, ...] = (
    BusinessRuleSpec(
        name="Escalamiento por Palabras Clave Urgentes",
        keywords=(
            "urgente",
            "emergencia",
            "crítico",
            "inmediato",
            "grave",
            "hospital",
            "cirugía",
        ),
        action=RuleAction.ESCALATE,
        message=(
            "Entiendo que tu consulta es urgente. Un especialista se comunicará contigo "
            "de inmediato para brindarte la atención que necesitas."
        ),
        reason="urgent_keywords",
        priority=100,
    ),
    BusinessRuleSpec(
        name="Escalamiento por Consultas Médicas",
        keywords=(
            "diagnóstico",
            "síntomas",
            "enfermedad",
            "tratamiento",
            "medicina",
            "doctor",
            "médico",
        ),
        action=RuleAction.ESCALATE,
        message=(
            "Tu consulta requiere la atención de nuestro equipo médico especializado. "
            "Un profesional te contactará pronto."
        ),
        reason="medical_consultation",
        priority=95,
    ),
    BusinessRuleSpec(
        name="Escalamiento por Insatisfacción",
        keywords=(
            "molesto",
            "enojado",
            "furioso",
            "terrible",
            "pésimo",
            "malo",
            "disgusto",
            "queja",
        ),
        action=RuleAction.ESCALATE,
        message=(
            "Lamento que tengas esta experiencia. Un supervisor se contactará contigo "
            "para resolver personalmente tu situación."
        ),
        reason="customer_dissatisfaction",
        priority=90,
    ),
    BusinessRuleSpec(
        name="Respuesta Información de Contacto",
        keywords=("contacto", "teléfono", "dirección", "ubicación", "horarios", "donde están"),
        action=RuleAction.DIRECT_RESPONSE,
        message=(
            "Puedes escribirnos por este mismo chat de WhatsApp. "
            "Atendemos de lunes a viernes de 9:00 a 18:00. ¿Necesitas algo más específico?"
        ),
        reason="contact_information",
        priority=45,
    ),
    BusinessRuleSpec(
        name="Respuesta Despedida",
        keywords=("adiós", "bye", "hasta luego", "nos vemos"),
        action=RuleAction.DIRECT_RESPONSE,
        message=(
            "¡Gracias por contactarnos! Ha sido un placer ayudarte. "
            "¡Que tengas un excelente día!"
        ),
        reason="farewell",
        priority=30,
    ),
)


@dataclass(slots=True, frozen=True)
class RuleMatch:
    """First active rule whose keyword appears in the message."""

    rule_name: str
    action: RuleAction
    message: str
    reason: str | None
    matched_keyword: str
    priority: int


def match_rule(
    rules: Iterable[BusinessRuleSpec | BusinessRuleView],
    text: str,
) -> RuleMatch | None:
    """Return the highest-priority active rule matching `text`, or None."""

    haystack = normalize_for_matching(text)
    if not haystack:
        return None
    ordered = sorted(
        (rule for rule in rules if rule.is_active),
        key=lambda rule: rule.priority,
        reverse=True,
    )
    for rule in ordered:
        for keyword in rule.keywords:
            needle = normalize_for_matching(keyword)
            if needle and needle in haystack:
                return RuleMatch(
                    rule_name=rule.name,
                    action=rule.action,
                    message=rule.message,
                    reason=rule.reason,
                    matched_keyword=keyword,
                    priority=rule.priority,
                )
    return None


def normalize_for_matching(text: str) -> str:
    """Lowercase, strip accents and collapse whitespace."""

    decomposed = unicodedata.normalize("NFKD", text.lower())
    stripped = "".join(char for char in decomposed if not unicodedata.combining(char))
    return re.sub(r"\s+", " ", stripped).strip()
