# bodega/workflow.py
# -*- coding: utf-8 -*-
"""
Motor de workflow para entradas de inventario.

Flujo:
    draft    -> pending | approved | cancelled
    pending  -> approved | cancelled
    approved -> completed | cancelled
    completed, cancelled -> (estados finales)

Todas las consultas son funciones puras: un estado, rol o acción desconocidos
devuelven vacío / False en lugar de lanzar excepciones.
"""
from __future__ import annotations

from types import MappingProxyType
from typing import Dict, FrozenSet, List, Mapping, Optional, Tuple

from .domain import EntryStatus, WorkflowAction, get_entry_type_label
from .roles import can_cancel_entry, has_action_capability

SEVERITY_STANDARD = "standard"
SEVERITY_WARNING = "warning"
SEVERITY_CRITICAL = "critical"

ALLOWED_TRANSITIONS: Mapping[str, FrozenSet[str]] = MappingProxyType(
    {
        EntryStatus.DRAFT: frozenset(
            {EntryStatus.PENDING, EntryStatus.APPROVED, EntryStatus.CANCELLED}
        ),
        EntryStatus.PENDING: frozenset({EntryStatus.APPROVED, EntryStatus.CANCELLED}),
        EntryStatus.APPROVED: frozenset({EntryStatus.COMPLETED, EntryStatus.CANCELLED}),
        EntryStatus.COMPLETED: frozenset(),
        EntryStatus.CANCELLED: frozenset(),
    }
)

WORKFLOW_ACTIONS: Mapping[str, Tuple[WorkflowAction, ...]] = MappingProxyType(
    {
        EntryStatus.DRAFT: (
            WorkflowAction(
                id="submit",
                label="Enviar para Aprobación",
                target_status=EntryStatus.PENDING,
                variant="default",
                icon="send",
                confirmation_level=SEVERITY_STANDARD,
                description="Envía la entrada al supervisor para revisión y aprobación",
            ),
            WorkflowAction(
                id="approve_direct",
                label="Aprobar Directamente",
                target_status=EntryStatus.APPROVED,
                variant="outline",
                icon="check-circle",
                confirmation_level=SEVERITY_WARNING,
                description="Solo para supervisores: Aprueba directamente sin revisión",
            ),
            WorkflowAction(
                id="cancel",
                label="Cancelar",
                target_status=EntryStatus.CANCELLED,
                variant="destructive",
                icon="x-circle",
                confirmation_level=SEVERITY_WARNING,
                description="Cancela permanentemente esta entrada",
            ),
        ),
        EntryStatus.PENDING: (
            WorkflowAction(
                id="approve",
                label="Aprobar",
                target_status=EntryStatus.APPROVED,
                variant="default",
                icon="check-circle",
                confirmation_level=SEVERITY_STANDARD,
                description="Aprueba la entrada después de verificar la mercancía físicamente",
            ),
            WorkflowAction(
                id="cancel",
                label="Rechazar/Cancelar",
                target_status=EntryStatus.CANCELLED,
                variant="destructive",
                icon="x-circle",
                confirmation_level=SEVERITY_WARNING,
                description="Rechaza o cancela la entrada permanentemente",
            ),
        ),
        EntryStatus.APPROVED: (
            WorkflowAction(
                id="complete",
                label="Completar Entrada",
                target_status=EntryStatus.COMPLETED,
                variant="default",
                icon="check-circle-2",
                confirmation_level=SEVERITY_CRITICAL,
                description="CRÍTICO: Actualiza el stock permanentemente en el sistema",
            ),
            WorkflowAction(
                id="cancel",
                label="Cancelar",
                target_status=EntryStatus.CANCELLED,
                variant="destructive",
                icon="x-circle",
                confirmation_level=SEVERITY_WARNING,
                description="Cancela la entrada sin actualizar el stock",
            ),
        ),
        EntryStatus.COMPLETED: (),
        EntryStatus.CANCELLED: (),
    }
)

STATUS_TOOLTIPS: Mapping[str, str] = MappingProxyType(
    {
        EntryStatus.DRAFT: "Borrador: Entrada recién creada, puede ser editada",
        EntryStatus.PENDING: "Pendiente: Esperando aprobación del supervisor para verificar mercancía",
        EntryStatus.APPROVED: "Aprobado: Mercancía verificada, listo para actualizar stock",
        EntryStatus.COMPLETED: "Completado: Stock actualizado permanentemente en el sistema",
        EntryStatus.CANCELLED: "Cancelado: Entrada cancelada, no afecta el stock",
    }
)


# ======================================================================================
# Transiciones
# ======================================================================================


def get_valid_next_states(current_status: Optional[str]) -> FrozenSet[str]:
    return ALLOWED_TRANSITIONS.get(current_status, frozenset())


def is_transition_allowed(current_status: Optional[str], target_status: Optional[str]) -> bool:
    return target_status in get_valid_next_states(current_status)


# ======================================================================================
# Acciones por rol
# ======================================================================================


def _is_action_permitted(action: WorkflowAction, status: str, role: Optional[str], is_owner: bool) -> bool:
    if action.id == "cancel":
        return can_cancel_entry(role, status, is_owner)
    return has_action_capability(role, action.id)


def get_workflow_action(status: Optional[str], action_id: str) -> Optional[WorkflowAction]:
    for action in WORKFLOW_ACTIONS.get(status, ()):
        if action.id == action_id:
            return action
    return None


def get_available_actions_for_user(
    status: Optional[str],
    role: Optional[str],
    is_owner: bool = False,
) -> List[WorkflowAction]:
    """
    Acciones del estado `status` que el rol puede ejecutar, en el orden de
    definición. Nunca incluye una acción cuya transición no esté permitida.
    """
    return [
        action
        for action in WORKFLOW_ACTIONS.get(status, ())
        if is_transition_allowed(status, action.target_status)
        and _is_action_permitted(action, status, role, is_owner)
    ]


def can_user_perform_action(
    action_id: str,
    status: Optional[str],
    role: Optional[str],
    is_owner: bool = False,
) -> bool:
    return any(a.id == action_id for a in get_available_actions_for_user(status, role, is_owner))


# ======================================================================================
# Confirmaciones
# ======================================================================================


def get_confirmation_config(action: WorkflowAction, entry_number: str, entry_type: str) -> Dict[str, str]:
    """
    Textos del diálogo de confirmación para una acción.

    `entry_type` puede ser el código (production, ...) o la etiqueta ya traducida.
    La acción `complete` siempre es crítica: es la única que incrementa stock.
    """
    entry_type_label = get_entry_type_label(entry_type)
    config = {
        "title": "",
        "description": "",
        "confirm_label": "",
        "cancel_label": "Cancelar",
        "severity": action.confirmation_level,
    }

    if action.id == "submit":
        config.update(
            title="Enviar para Aprobación",
            description=(
                f"¿Enviar la entrada {entry_number} ({entry_type_label}) para aprobación del supervisor?\n\n"
                "El supervisor recibirá una notificación para revisar y verificar físicamente la mercancía."
            ),
            confirm_label="Enviar para Aprobación",
        )
    elif action.id in ("approve", "approve_direct"):
        config.update(
            title="Aprobar Entrada",
            description=(
                f"¿Aprobar la entrada {entry_number} ({entry_type_label})?\n\n"
                "IMPORTANTE: Confirma que has verificado físicamente la mercancía y las cantidades son correctas.\n\n"
                "Después de aprobar, la entrada estará lista para completar y actualizar el stock."
            ),
            confirm_label="Confirmar Aprobación",
        )
    elif action.id == "complete":
        config.update(
            title="COMPLETAR ENTRADA - ACTUALIZAR STOCK",
            description=(
                "ACCIÓN CRÍTICA\n\n"
                f"¿Completar la entrada {entry_number} ({entry_type_label})?\n\n"
                "- ESTO ACTUALIZARÁ EL STOCK PERMANENTEMENTE\n"
                "- Esta acción NO se puede deshacer\n"
                "- Los productos se sumarán al inventario actual\n\n"
                "Confirma que la mercancía está físicamente en el almacén."
            ),
            confirm_label="SÍ, ACTUALIZAR STOCK",
            severity=SEVERITY_CRITICAL,
        )
    elif action.id == "cancel":
        config.update(
            title="Cancelar Entrada",
            description=(
                f"¿Cancelar la entrada {entry_number} ({entry_type_label})?\n\n"
                "- Esta acción no se puede deshacer\n"
                "- La entrada quedará marcada como cancelada permanentemente\n"
                "- No se actualizará el stock"
            ),
            confirm_label="Confirmar Cancelación",
        )
    else:
        config.update(
            title="Confirmar Acción",
            description=f"¿Confirmar {action.label.lower()} en entrada {entry_number}?",
            confirm_label="Confirmar",
        )

    return config


def get_status_tooltip(status: str) -> str:
    return STATUS_TOOLTIPS.get(status, str(status))


__all__ = [
    "ALLOWED_TRANSITIONS",
    "WORKFLOW_ACTIONS",
    "get_valid_next_states",
    "is_transition_allowed",
    "get_workflow_action",
    "get_available_actions_for_user",
    "can_user_perform_action",
    "get_confirmation_config",
    "get_status_tooltip",
]
