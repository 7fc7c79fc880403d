"""Service catalog, urgency levels and price estimation shared by quote and scheduling."""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from flows.base import menu_choice
from utils.formatting import to_money, format_price
from utils.text import contains_keyword, fold


@dataclass(frozen=True)
class Service:
    id: int
    name: str
    description: str
    base_price: Decimal
    questions: tuple[str, ...]
    keywords: tuple[str, ...] = ()


@dataclass(frozen=True)
class Urgency:
    key: str
    label: str
    deadline: str
    factor: Decimal

    @property
    def surcharge_percent(self) -> int:
        return int((self.factor - 1) * 100)


SERVICES: dict[int, Service] = {
    1: Service(
        1, "Conserto", "Reparo de hardware ou software em computador ou notebook",
        Decimal("150.00"),
        (
            "Qual o problema que está enfrentando?",
            "É um computador ou notebook? Qual a marca e modelo?",
            "Há quanto tempo o problema está ocorrendo?",
        ),
        ("conserto", "consertar", "reparo", "quebrado", "defeito"),
    ),
    2: Service(
        2, "Limpeza", "Limpeza física ou de software",
        Decimal("100.00"),
        (
            "Deseja limpeza física (poeira/ventiladores), de software (vírus/lentidão) ou ambos?",
            "Qual a marca e modelo do equipamento?",
            "O computador está muito lento ou apresenta outro problema específico?",
        ),
        ("limpeza", "limpar", "poeira", "lento", "virus"),
    ),
    3: Service(
        3, "Atualização de sistema", "Atualização de sistemas operacionais ou softwares",
        Decimal("120.00"),
        (
            "Qual sistema operacional está usando atualmente?",
            "Para qual versão ou sistema deseja atualizar?",
            "O equipamento atende aos requisitos mínimos da nova versão?",
        ),
        ("atualizacao", "atualizar", "upgrade", "windows", "sistema"),
    ),
    4: Service(
        4, "Instalação de softwares", "Instalação e configuração de programas",
        Decimal("90.00"),
        (
            "Quais softwares deseja instalar?",
            "Você possui as licenças ou mídias de instalação?",
            "Tem alguma preferência de configuração específica?",
        ),
        ("instalacao", "instalar", "programa", "software", "office"),
    ),
    5: Service(
        5, "Outros serviços", "Serviços personalizados",
        Decimal("200.00"),
        (
            "Descreva detalhadamente o serviço que você precisa",
            "Tem algum prazo específico para a conclusão do serviço?",
            "Há alguma condição especial que devemos considerar?",
        ),
        ("outro", "outros", "personalizado"),
    ),
}

URGENCIES: dict[str, Urgency] = {
    "1": Urgency("normal", "Normal", "5-7 dias úteis", Decimal("1.00")),
    "2": Urgency("priority", "Prioritário", "2-3 dias úteis", Decimal("1.15")),
    "3": Urgency("urgent", "Urgente", "24h", Decimal("1.30")),
}

_URGENCY_WORDS = {"normal": "1", "prioritario": "2", "prioridade": "2", "urgente": "3"}


def get_service(service_id) -> Optional[Service]:
    try:
        return SERVICES.get(int(service_id))
    except (TypeError, ValueError):
        return None


def find_service(text: str) -> Optional[Service]:
    """Match a service by menu number or keyword."""
    choice = menu_choice(text, len(SERVICES))
    if choice is not None:
        return SERVICES[choice]
    for service in SERVICES.values():
        if contains_keyword(text, service.keywords):
            return service
    return None


def find_urgency(text: str) -> Optional[Urgency]:
    choice = menu_choice(text, len(URGENCIES))
    if choice is not None:
        return URGENCIES[str(choice)]
    folded = fold(text)
    key = next((v for word, v in _URGENCY_WORDS.items() if word in folded), None)
    return URGENCIES.get(key) if key else None


def get_urgency(key: str) -> Urgency:
    """Urgency by its stable key ("normal" / "priority" / "urgent")."""
    for urgency in URGENCIES.values():
        if urgency.key == key:
            return urgency
    return URGENCIES["1"]


def estimate(base_price, factor) -> Decimal:
    """base × factor rounded half-up to cents: 150 × 1.30 → 195.00."""
    return to_money(Decimal(str(base_price)) * Decimal(str(factor)))


def services_menu() -> str:
    lines = [f"{sid}️⃣ *{service.name}* - {service.description}"
             for sid, service in SERVICES.items()]
    return "\n".join(lines)


def services_price_menu() -> str:
    lines = [f"{sid}️⃣ *{service.name}* - a partir de {format_price(service.base_price)}"
             for sid, service in SERVICES.items()]
    return "\n".join(lines)


def urgency_menu() -> str:
    lines = []
    for key, urgency in URGENCIES.items():
        line = f"{key}️⃣ *{urgency.label}* ({urgency.deadline})"
        if urgency.surcharge_percent:
            line += f" - Acréscimo de {urgency.surcharge_percent}%"
        lines.append(line)
    return "\n".join(lines)
