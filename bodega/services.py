# bodega/services.py
# -*- coding: utf-8 -*-
from __future__ import annotations

import logging
from typing import Iterable, Mapping, Optional, Protocol, Union

from django.utils import timezone

from .domain import EntryStatus, InventoryEntry, InventoryEntryItem
from .roles import can_edit_entry, normalize_role
from .workflow import (
    can_user_perform_action,
    get_valid_next_states,
    get_workflow_action,
    is_transition_allowed,
)

logger = logging.getLogger("bodega.workflow")


class WorkflowError(Exception):
    """Errores de workflow de entradas de inventario (sin llamadas remotas)."""


class InvalidTransitionError(WorkflowError):
    """El estado destino no es alcanzable desde el estado actual."""


class ActionNotAllowedError(WorkflowError):
    """El rol (o la propiedad de la entrada) no permite ejecutar la acción."""


class EntryLockedError(WorkflowError):
    """Los items de la entrada ya no pueden modificarse."""


class EntryStore(Protocol):
    """Capa de persistencia externa: guarda la entrada tras cada transición."""

    def save(self, entry: InventoryEntry) -> None:
        ...


# ======================================================================================
# Transiciones
# ======================================================================================


def transition_entry(entry: InventoryEntry, target_status: str) -> InventoryEntry:
    """
    Aplica una transición validada contra la tabla de transiciones.

    - No valida rol (ver apply_workflow_action).
    - Al completar, registra completed_date.
    """
    if not is_transition_allowed(entry.status, target_status):
        valid = ", ".join(sorted(str(s) for s in get_valid_next_states(entry.status))) or "ninguno"
        raise InvalidTransitionError(
            f"Transición no permitida para la entrada {entry.entry_number}: "
            f"{entry.status} -> {target_status} (válidos: {valid})."
        )

    changes = {"status": str(target_status)}
    if target_status == EntryStatus.COMPLETED:
        changes["completed_date"] = timezone.now()
    return entry.with_changes(**changes)


def apply_workflow_action(
    entry: InventoryEntry,
    action_id: str,
    *,
    role: Optional[str],
    is_owner: bool = False,
    store: Optional[EntryStore] = None,
) -> InventoryEntry:
    """
    Ejecuta una acción del workflow (submit, approve, approve_direct, complete, cancel).

    Flujo:
    - Verifica que la acción esté disponible para el rol/propiedad en el estado actual.
    - Valida la transición hacia el estado destino de la acción.
    - Persiste la entrada resultante (si se provee store).
    """
    if not can_user_perform_action(action_id, entry.status, role, is_owner):
        logger.warning(
            "Acción %s denegada para entrada %s (estado=%s, rol=%s, owner=%s)",
            action_id,
            entry.entry_number,
            entry.status,
            normalize_role(role) or role,
            is_owner,
        )
        raise ActionNotAllowedError(
            f"La acción '{action_id}' no está disponible para la entrada "
            f"{entry.entry_number} en estado {entry.status}."
        )

    action = get_workflow_action(entry.status, action_id)
    updated = transition_entry(entry, action.target_status)

    if store is not None:
        store.save(updated)

    logger.info(
        "Entrada %s: %s -> %s (acción=%s, rol=%s)",
        entry.entry_number,
        entry.status,
        updated.status,
        action_id,
        normalize_role(role),
    )
    return updated


# ======================================================================================
# Items
# ======================================================================================


def replace_entry_items(
    entry: InventoryEntry,
    items: Iterable[Union[InventoryEntryItem, Mapping]],
    *,
    role: Optional[str],
    is_owner: bool = False,
) -> InventoryEntry:
    """Reemplaza los items de una entrada. Sólo se permite en draft."""
    if entry.status != EntryStatus.DRAFT:
        raise EntryLockedError(
            f"La entrada {entry.entry_number} está en estado {entry.status}; "
            "los items sólo se pueden modificar en borrador."
        )
    if not can_edit_entry(role, entry.status, is_owner):
        raise ActionNotAllowedError(
            f"No tiene permiso para editar la entrada {entry.entry_number}."
        )

    new_items = tuple(
        item if isinstance(item, InventoryEntryItem) else InventoryEntryItem.from_dict(item)
        for item in items
    )
    return entry.with_changes(items=new_items)
