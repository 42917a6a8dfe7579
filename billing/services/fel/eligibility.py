# billing/services/fel/eligibility.py
# -*- coding: utf-8 -*-
"""
Elegibilidad de documentos para una orden:

- receipt (comprobante sin valor fiscal): siempre, si la orden ya puede
  documentarse (entregada y sin documento previo).
- invoice (factura FEL): además requiere NIT válido y datos completos del
  cliente.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Protocol

from django.conf import settings

from .exceptions import DocumentChoiceRequired, DocumentNotEligible
from .records import DocumentType, _to_decimal

logger = logging.getLogger("billing.fel")

MIN_NIT_LENGTH = 8


class OrderDataService(Protocol):
    """Servicio externo de órdenes / clientes."""

    def get_order(self, order_id: int) -> Mapping[str, Any]:
        ...

    def get_client(self, client_id: int) -> Mapping[str, Any]:
        ...


@dataclass(frozen=True)
class ClientSnapshot:
    id: Optional[int]
    name: str = ""
    nit: Optional[str] = None
    address: str = ""
    email: str = ""
    phone: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ClientSnapshot":
        return cls(
            id=data.get("id"),
            name=(data.get("name") or "").strip(),
            nit=data.get("nit"),
            address=(data.get("address") or "").strip(),
            email=data.get("email") or "",
            phone=data.get("phone") or "",
        )


@dataclass(frozen=True)
class OrderSnapshot:
    id: int
    status: str
    client: ClientSnapshot
    order_number: str = ""
    total_amount: Decimal = Decimal("0")
    has_document: bool = False

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], client: Optional[Mapping[str, Any]] = None) -> "OrderSnapshot":
        client_data = client if client is not None else (data.get("client") or {})
        return cls(
            id=int(data["id"]),
            status=str(data.get("status") or "").strip().lower(),
            client=ClientSnapshot.from_dict(client_data),
            order_number=str(data.get("order_number") or ""),
            total_amount=_to_decimal(data.get("total_amount")),
            has_document=bool(data.get("has_document") or data.get("invoice")),
        )


@dataclass(frozen=True)
class EligibilityResult:
    can_create: bool
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"can_create": self.can_create, "reason": self.reason}


def _walkin_placeholders() -> frozenset:
    values = getattr(settings, "FEL_WALKIN_PLACEHOLDERS", ("C/F", "CF", "0"))
    return frozenset(str(v).strip().upper() for v in values)


def _eligible_order_statuses() -> frozenset:
    values = getattr(settings, "FEL_ELIGIBLE_ORDER_STATUSES", ("delivered",))
    return frozenset(str(v).strip().lower() for v in values)


def has_valid_nit(nit: Optional[str]) -> bool:
    """NIT sintácticamente válido: >= 8 caracteres y no es consumidor final (C/F)."""
    value = str(nit or "").strip()
    if not value:
        return False
    if value.upper() in _walkin_placeholders():
        return False
    return len(value) >= MIN_NIT_LENGTH


def _order_is_documentable(order: OrderSnapshot) -> bool:
    return not order.has_document and order.status in _eligible_order_statuses()


def get_available_document_types(order: OrderSnapshot) -> List[str]:
    if not _order_is_documentable(order):
        return []

    types: List[str] = [DocumentType.RECEIPT.value]
    if can_create_fel(order).can_create:
        types.append(DocumentType.INVOICE.value)
    return types


def can_create_fel(order: OrderSnapshot) -> EligibilityResult:
    """Valida si la orden puede emitir factura FEL. `reason` se muestra tal cual al operador."""
    if order.status not in _eligible_order_statuses():
        return EligibilityResult(False, "La orden debe estar entregada")
    if order.has_document:
        return EligibilityResult(False, "La orden ya tiene factura asociada")
    if not has_valid_nit(order.client.nit):
        return EligibilityResult(False, "Cliente no tiene NIT válido")
    if not order.client.name or not order.client.address:
        return EligibilityResult(False, "Datos del cliente incompletos")
    return EligibilityResult(True)


def suggest_document_type(order: OrderSnapshot) -> str:
    """Factura FEL sólo si la orden la admite; si no, comprobante."""
    if DocumentType.INVOICE.value in get_available_document_types(order):
        return DocumentType.INVOICE.value
    return DocumentType.RECEIPT.value


def resolve_document_choice(order: OrderSnapshot, chosen: Optional[str] = None) -> str:
    """
    Decide el documento a emitir:

    - Sólo receipt elegible -> receipt, sin preguntar.
    - receipt + invoice -> el operador debe elegir (DocumentChoiceRequired).
    - Elección no elegible -> DocumentNotEligible.
    """
    available = get_available_document_types(order)
    if not available:
        raise DocumentNotEligible(
            can_create_fel(order).reason or "La orden no puede generar documentos"
        )

    if chosen is None:
        if len(available) == 1:
            return available[0]
        raise DocumentChoiceRequired(
            f"La orden {order.order_number or order.id} admite {', '.join(available)}; "
            "seleccione el tipo de documento."
        )

    if chosen not in available:
        reason = can_create_fel(order).reason if chosen == DocumentType.INVOICE else None
        raise DocumentNotEligible(
            reason or f"El documento '{chosen}' no está disponible para la orden {order.id}"
        )
    return chosen


def describe_eligibility(order: OrderSnapshot) -> Dict[str, Any]:
    available = get_available_document_types(order)
    fel = can_create_fel(order)
    return {
        "order_id": order.id,
        "order_number": order.order_number,
        "available_types": available,
        "can_create_fel": fel.can_create,
        "reason": fel.reason,
        "suggested_type": suggest_document_type(order) if available else None,
        "requires_choice": len(available) > 1,
        "client_has_valid_nit": has_valid_nit(order.client.nit),
    }


def load_order_snapshot(order_id: int, data_service: OrderDataService) -> OrderSnapshot:
    order_data = data_service.get_order(order_id)
    client_id = order_data.get("client_id") or (order_data.get("client") or {}).get("id")
    client_data = data_service.get_client(client_id) if client_id is not None else {}
    return OrderSnapshot.from_dict(order_data, client=client_data)


def check_order_eligibility(order_id: int, data_service: OrderDataService) -> Dict[str, Any]:
    """Consulta orden y cliente en el servicio externo y describe su elegibilidad."""
    order = load_order_snapshot(order_id, data_service)
    result = describe_eligibility(order)
    logger.info(
        "Elegibilidad orden %s: tipos=%s, fel=%s (%s)",
        order_id,
        result["available_types"],
        result["can_create_fel"],
        result["reason"],
    )
    return result
