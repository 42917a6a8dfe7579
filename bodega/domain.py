# bodega/domain.py
# -*- coding: utf-8 -*-
"""
Tipos de dominio para entradas de inventario.

La persistencia de las entradas vive en un servicio externo; aquí sólo
modelamos los datos que recorren el workflow (inmutables, planos).
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from django.db import models


class EntryStatus(models.TextChoices):
    DRAFT = "draft", "Borrador"
    PENDING = "pending", "Pendiente"
    APPROVED = "approved", "Aprobado"
    COMPLETED = "completed", "Completado"
    CANCELLED = "cancelled", "Cancelado"


class EntryType(models.TextChoices):
    PRODUCTION = "production", "Producción"
    RETURN = "return", "Devolución"
    ADJUSTMENT = "adjustment", "Ajuste"
    INITIAL = "initial", "Inventario Inicial"


TERMINAL_STATUSES = frozenset({EntryStatus.COMPLETED, EntryStatus.CANCELLED})


def _to_decimal(value) -> Decimal:
    """Convierte a Decimal de forma segura (strings, int, Decimal). None o inválidos -> 0."""
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return Decimal("0")


@dataclass(frozen=True)
class InventoryEntryItem:
    product_id: int
    quantity: int
    unit_cost: Decimal = Decimal("0")
    batch_number: Optional[str] = None
    notes: Optional[str] = None

    @property
    def total_cost(self) -> Decimal:
        return _to_decimal(self.unit_cost) * self.quantity

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "InventoryEntryItem":
        return cls(
            product_id=int(data["product_id"]),
            quantity=int(data.get("quantity") or 0),
            unit_cost=_to_decimal(data.get("unit_cost")),
            batch_number=data.get("batch_number"),
            notes=data.get("notes"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "product_id": self.product_id,
            "quantity": self.quantity,
            "unit_cost": str(self.unit_cost),
            "batch_number": self.batch_number,
            "notes": self.notes,
            "total_cost": str(self.total_cost),
        }


@dataclass(frozen=True)
class InventoryEntry:
    """
    Entrada de inventario (producción, devolución, ajuste o inventario inicial).

    - `status` sólo cambia a través de bodega.services (tabla de transiciones).
    - `items` no se modifican cuando status != draft.
    """

    entry_number: str
    entry_type: str
    status: str = EntryStatus.DRAFT
    user_id: Optional[int] = None
    items: Tuple[InventoryEntryItem, ...] = field(default_factory=tuple)
    completed_date: Optional[datetime] = None
    notes: Optional[str] = None

    @property
    def total_cost(self) -> Decimal:
        return sum((item.total_cost for item in self.items), Decimal("0"))

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def entry_type_label(self) -> str:
        return get_entry_type_label(self.entry_type)

    def is_owned_by(self, user_id: Optional[int]) -> bool:
        return user_id is not None and self.user_id == user_id

    def with_changes(self, **changes: Any) -> "InventoryEntry":
        return replace(self, **changes)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "InventoryEntry":
        items: Iterable[Mapping[str, Any]] = data.get("items") or []
        return cls(
            entry_number=str(data["entry_number"]),
            entry_type=str(data.get("entry_type") or EntryType.ADJUSTMENT),
            status=str(data.get("status") or EntryStatus.DRAFT),
            user_id=data.get("user_id"),
            items=tuple(InventoryEntryItem.from_dict(i) for i in items),
            completed_date=data.get("completed_date"),
            notes=data.get("notes"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entry_number": self.entry_number,
            "entry_type": self.entry_type,
            "entry_type_label": self.entry_type_label,
            "status": self.status,
            "user_id": self.user_id,
            "items": [item.to_dict() for item in self.items],
            "total_cost": str(self.total_cost),
            "completed_date": (
                self.completed_date.isoformat() if self.completed_date else None
            ),
            "notes": self.notes,
        }


@dataclass(frozen=True)
class WorkflowAction:
    """Descriptor de una transición disponible desde un estado."""

    id: str
    label: str
    target_status: str
    variant: str
    icon: str
    confirmation_level: str
    description: str
    requires_confirmation: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "target_status": self.target_status,
            "variant": self.variant,
            "icon": self.icon,
            "requires_confirmation": self.requires_confirmation,
            "confirmation_level": self.confirmation_level,
            "description": self.description,
        }


def get_entry_type_label(entry_type: str) -> str:
    try:
        return EntryType(entry_type).label
    except ValueError:
        return str(entry_type)
