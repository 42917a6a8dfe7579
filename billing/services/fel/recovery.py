# billing/services/fel/recovery.py
# -*- coding: utf-8 -*-
"""
Clasificación de errores FEL en acciones de recuperación.

Es una tabla pura (código de error -> reglas). El código de error remoto es
la única señal; un código desconocido cae en la política genérica
(reintento acotado + comprobante).
"""
from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Tuple, Union

from django.conf import settings

from .records import (
    FEL_ERROR_MESSAGES,
    FELInfo,
    FiscalInvoice,
    RETRYABLE_STATUSES,
)

PRIORITY_HIGH = "high"
PRIORITY_MEDIUM = "medium"
PRIORITY_LOW = "low"

PRIORITY_ORDER: Mapping[str, int] = MappingProxyType(
    {PRIORITY_HIGH: 0, PRIORITY_MEDIUM: 1, PRIORITY_LOW: 2}
)

ACTION_LABELS: Mapping[str, str] = MappingProxyType(
    {
        "edit_client": "Corregir Datos del Cliente",
        "retry": "Reintentar FEL",
        "receipt": "Generar Comprobante",
        "contact_support": "Contactar Soporte",
    }
)

# Códigos que nunca se reintentan: reenviar recrearía el duplicado.
NON_RETRYABLE_CODES = frozenset({"duplicate_document"})


@dataclass(frozen=True)
class RecommendedAction:
    type: str
    label: str
    description: str
    priority: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "type": self.type,
            "label": self.label,
            "description": self.description,
            "priority": self.priority,
        }


@dataclass(frozen=True)
class _Rule:
    type: str
    priority: str
    description: str
    needs_attempts: bool = False


_DEFAULT_RULES: Tuple[_Rule, ...] = (
    _Rule("retry", PRIORITY_MEDIUM, "{attempts_left} intentos restantes", needs_attempts=True),
    _Rule("receipt", PRIORITY_MEDIUM, "Alternativa sin valor fiscal"),
)

_CLIENT_DATA_RULES: Tuple[_Rule, ...] = (
    _Rule("edit_client", PRIORITY_HIGH, "Actualizar NIT, nombre o dirección"),
    _Rule("retry", PRIORITY_MEDIUM, "Después de corregir los datos", needs_attempts=True),
    _Rule("receipt", PRIORITY_LOW, "Sin valor fiscal como alternativa"),
)

_TRANSIENT_RULES: Tuple[_Rule, ...] = (
    _Rule("retry", PRIORITY_HIGH, "El error puede ser temporal", needs_attempts=True),
    _Rule("receipt", PRIORITY_MEDIUM, "Mientras se resuelve el problema"),
)

RECOVERY_RULES: Mapping[str, Tuple[_Rule, ...]] = MappingProxyType(
    {
        "invalid_nit": _CLIENT_DATA_RULES,
        "client_incomplete": _CLIENT_DATA_RULES,
        "connection_timeout": _TRANSIENT_RULES,
        "server_error": _TRANSIENT_RULES,
        "duplicate_document": (
            _Rule("contact_support", PRIORITY_HIGH, "Documento ya existe en SAT"),
        ),
    }
)


def _fel_of(invoice: Union[FiscalInvoice, FELInfo]) -> FELInfo:
    return invoice.fel if isinstance(invoice, FiscalInvoice) else invoice


def can_retry(invoice: Union[FiscalInvoice, FELInfo]) -> bool:
    fel = _fel_of(invoice)
    return (
        fel.fel_status in RETRYABLE_STATUSES
        and fel.has_attempts_left
        and fel.fel_error_code not in NON_RETRYABLE_CODES
    )


def get_recommended_actions(invoice: Union[FiscalInvoice, FELInfo]) -> List[RecommendedAction]:
    """
    Acciones recomendadas para una factura en estado error / rejected / timeout,
    ordenadas por prioridad (high, medium, low) respetando el orden de la tabla.
    """
    fel = _fel_of(invoice)
    if fel.fel_status not in RETRYABLE_STATUSES:
        return []

    rules = RECOVERY_RULES.get(fel.fel_error_code or "", _DEFAULT_RULES)
    actions = [
        RecommendedAction(
            type=rule.type,
            label=ACTION_LABELS[rule.type],
            description=rule.description.format(attempts_left=fel.attempts_left),
            priority=rule.priority,
        )
        for rule in rules
        if not rule.needs_attempts or fel.has_attempts_left
    ]
    return sorted(actions, key=lambda a: PRIORITY_ORDER[a.priority])


def get_friendly_message(fel: FELInfo) -> str:
    code = fel.fel_error_code
    if code and code in FEL_ERROR_MESSAGES:
        return FEL_ERROR_MESSAGES[code]
    return fel.fel_error_message or "Error desconocido"


def build_error_report(invoice: FiscalInvoice) -> Dict[str, Any]:
    """
    Información visible para un estado de error terminal:
    mensaje amigable, código, intentos restantes y acciones recomendadas.
    """
    fel = invoice.fel
    support_email = getattr(settings, "FEL_SUPPORT_EMAIL", "")
    return {
        "invoice_id": invoice.id,
        "invoice_number": invoice.invoice_number,
        "fel_status": str(fel.fel_status),
        "friendly_message": get_friendly_message(fel),
        "error_code": fel.fel_error_code,
        "error_message": fel.fel_error_message,
        "attempts": fel.fel_attempts,
        "max_attempts": fel.fel_max_attempts,
        "attempts_left": fel.attempts_left,
        "can_retry": can_retry(fel),
        "recommended_actions": [a.to_dict() for a in get_recommended_actions(fel)],
        "support_hint": (
            f"Si el problema persiste, contacte al soporte técnico ({support_email}) "
            f"con el número de factura: {invoice.invoice_number}"
        ),
    }
