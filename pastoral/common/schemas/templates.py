"""
Initiative Text Templates

Renders leader-facing initiative text (pt-BR): title, description and the
suggested message the leader can send or adapt.
"""

import json
from typing import TYPE_CHECKING, Any, Dict, Optional

from .initiative import InitiativeType
from .records import ChangeType

if TYPE_CHECKING:
    from .records import Person, PersonChange


ACTION_LABELS = {
    InitiativeType.MESSAGE: "Enviar mensagem para",
    InitiativeType.CALL: "Ligar para",
    InitiativeType.VISIT: "Visitar",
}

CHANGE_LABELS = {
    ChangeType.LIFE_EVENT: "evento importante",
    ChangeType.ENGAGEMENT: "mudança de engajamento",
    ChangeType.PERSONAL_DATA: "atualização de dados",
    ChangeType.RELATIONSHIP: "mudança de relacionamento",
    ChangeType.SPECIAL_DATE: "data especial",
}

CHANGE_DESCRIPTIONS = {
    ChangeType.LIFE_EVENT: "evento importante na vida",
    ChangeType.ENGAGEMENT: "mudança no engajamento",
    ChangeType.PERSONAL_DATA: "atualização de dados pessoais",
    ChangeType.RELATIONSHIP: "mudança no relacionamento",
    ChangeType.SPECIAL_DATE: "data especial",
}

MESSAGE_TEMPLATES = {
    ChangeType.LIFE_EVENT: {
        InitiativeType.MESSAGE: "Olá {nome}! Soube que houve uma mudança importante em sua vida. Como você está? Estou aqui se precisar conversar. 🙏",
        InitiativeType.CALL: "Ligação para {nome} sobre {mudanca} - verificar como está se adaptando e oferecer apoio.",
        InitiativeType.VISIT: "Visita para {nome} - conversar pessoalmente sobre {mudanca} e oferecer suporte pastoral.",
    },
    ChangeType.RELATIONSHIP: {
        InitiativeType.MESSAGE: "Oi {primeiroNome}! Vi que houve uma atualização em seus dados. Como você está? Se quiser conversar, estou disponível. Deus abençoe! ❤️",
        InitiativeType.CALL: "Ligação para {nome} - conversar sobre mudança de status e oferecer apoio.",
        InitiativeType.VISIT: "Visita para {nome} - acompanhar mudança de relacionamento e providenciar suporte.",
    },
    ChangeType.ENGAGEMENT: {
        InitiativeType.MESSAGE: "Oi {primeiroNome}! Senti sua falta e gostaria de saber como você está. Que tal conversarmos em breve? 😊",
        InitiativeType.CALL: "Ligação para {nome} - verificar motivo da ausência e demonstrar cuidado.",
        InitiativeType.VISIT: "Visita para {nome} - reconectar e entender necessidades espirituais.",
    },
    ChangeType.SPECIAL_DATE: {
        InitiativeType.MESSAGE: "Feliz aniversário, {primeiroNome}! 🎉 Que Deus abençoe este novo ciclo da sua vida. Desejo muito amor e paz! ❤️",
        InitiativeType.CALL: "Ligação de aniversário para {nome} - demonstrar cuidado e celebrar junto.",
        InitiativeType.VISIT: "Visita de aniversário para {nome} - celebração presencial e fortalecimento de vínculo.",
    },
    ChangeType.PERSONAL_DATA: {
        InitiativeType.MESSAGE: "Oi {primeiroNome}! Vi que você atualizou seus dados. Se houver algo em que posso ajudar, estarei aqui. Abraço! 🤗",
        InitiativeType.CALL: "Ligação para {nome} - verificar se a mudança de dados indica alguma necessidade.",
        InitiativeType.VISIT: "Visita para {nome} - acompanhar mudanças pessoais e oferecer suporte.",
    },
}


def _format_date(value) -> str:
    """dd/mm/yyyy, as leaders read dates"""
    return value.strftime("%d/%m/%Y")


def _format_value(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, default=str)


def render_title(person: "Person", change: "PersonChange", initiative_type: InitiativeType) -> str:
    change_label = CHANGE_LABELS.get(change.change_type, "mudança")
    return f"{ACTION_LABELS[initiative_type]} {person.name} - {change_label}"


def render_description(
    person: "Person",
    change: "PersonChange",
    analysis: Optional[Dict[str, Any]] = None,
) -> str:
    """Change summary plus the model's analysis and pastoral notes when present."""
    lines = [f"Mudança detectada em {person.name}:"]

    if change.old_value is not None and change.new_value is not None:
        lines.append(f"• De: {_format_value(change.old_value)}")
        lines.append(f"• Para: {_format_value(change.new_value)}")

    lines.append(f"• Tipo: {change.change_type.value}")
    lines.append(f"• Detectado em: {_format_date(change.detected_at)}")

    description = "\n".join(lines) + "\n"

    if analysis:
        if analysis.get("contextualAnalysis"):
            description += f"\n📋 Análise:\n{analysis['contextualAnalysis']}"
        if analysis.get("pastoralNotes"):
            description += f"\n🙏 Notas Pastorais:\n{analysis['pastoralNotes']}"

    return description.strip()


def render_suggested_message(
    person: "Person",
    change: "PersonChange",
    initiative_type: InitiativeType,
) -> str:
    templates = MESSAGE_TEMPLATES.get(change.change_type, MESSAGE_TEMPLATES[ChangeType.PERSONAL_DATA])
    variables = {
        "nome": person.name,
        "primeiroNome": person.first_name,
        "mudanca": CHANGE_DESCRIPTIONS.get(change.change_type, "mudança"),
        "data": _format_date(change.detected_at),
    }
    message = templates[initiative_type]
    for key, value in variables.items():
        message = message.replace("{" + key + "}", value)
    return message
