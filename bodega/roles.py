# bodega/roles.py
# -*- coding: utf-8 -*-
"""
Matriz de permisos por rol para entradas de inventario.

Es una tabla estática (sólo lectura): agregar un rol o un estado es un cambio
de datos, no de flujo de control. Roles o estados desconocidos no tienen
ninguna capacidad.
"""
from __future__ import annotations

from dataclasses import dataclass, asdict
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Mapping, Optional

from .domain import EntryStatus

ROLE_OPERARIO = "operario"
ROLE_SUPERVISOR = "supervisor"
ROLE_GERENTE = "gerente"
ROLE_ADMIN = "admin"


@dataclass(frozen=True)
class RoleCapabilities:
    can_create: bool = False
    can_edit: FrozenSet[str] = frozenset()  # estados en los que puede editar
    can_submit: bool = False
    can_approve: bool = False
    can_complete: bool = False
    can_cancel: FrozenSet[str] = frozenset()  # estados en los que puede cancelar
    can_delete: FrozenSet[str] = frozenset()  # estados en los que puede eliminar
    can_view_all: bool = False  # todas las entradas o sólo las propias

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ("can_edit", "can_cancel", "can_delete"):
            data[key] = sorted(data[key])
        return data


NO_CAPABILITIES = RoleCapabilities()

_DRAFT = EntryStatus.DRAFT.value
_PENDING = EntryStatus.PENDING.value
_APPROVED = EntryStatus.APPROVED.value

ROLE_PERMISSIONS: Mapping[str, RoleCapabilities] = MappingProxyType(
    {
        ROLE_OPERARIO: RoleCapabilities(
            can_create=True,
            can_edit=frozenset({_DRAFT}),
            can_submit=True,
            can_approve=False,
            can_complete=False,
            can_cancel=frozenset({_DRAFT}),  # sólo sus propias entradas en draft
            can_delete=frozenset(),
            can_view_all=False,
        ),
        ROLE_SUPERVISOR: RoleCapabilities(
            can_create=True,
            can_edit=frozenset({_DRAFT, _PENDING}),
            can_submit=True,
            can_approve=True,
            can_complete=True,
            can_cancel=frozenset({_DRAFT, _PENDING, _APPROVED}),
            can_delete=frozenset({_DRAFT}),
            can_view_all=True,
        ),
        ROLE_GERENTE: RoleCapabilities(
            can_create=True,
            can_edit=frozenset({_DRAFT, _PENDING, _APPROVED}),
            can_submit=True,
            can_approve=True,
            can_complete=True,
            can_cancel=frozenset({_DRAFT, _PENDING, _APPROVED}),
            can_delete=frozenset({_DRAFT, _PENDING}),
            can_view_all=True,
        ),
        ROLE_ADMIN: RoleCapabilities(
            can_create=True,
            can_edit=frozenset({_DRAFT, _PENDING, _APPROVED}),
            can_submit=True,
            can_approve=True,
            can_complete=True,
            can_cancel=frozenset({_DRAFT, _PENDING, _APPROVED}),
            can_delete=frozenset({_DRAFT, _PENDING, _APPROVED}),
            can_view_all=True,
        ),
    }
)

# Acción del workflow -> bandera de capacidad que la habilita.
# "cancel" no aparece: depende del estado y del dueño (ver can_cancel_entry).
ACTION_CAPABILITIES: Mapping[str, str] = MappingProxyType(
    {
        "submit": "can_submit",
        "approve": "can_approve",
        "approve_direct": "can_approve",
        "complete": "can_complete",
    }
)

# Nombres usados por otros módulos / grupos de Django
ROLE_ALIASES: Mapping[str, str] = MappingProxyType(
    {
        "employee": ROLE_OPERARIO,
        "empleado": ROLE_OPERARIO,
        "bodeguero": ROLE_OPERARIO,
        "manager": ROLE_GERENTE,
        "administrador": ROLE_ADMIN,
    }
)


def normalize_role(role: Optional[str]) -> str:
    """Normaliza el nombre del rol (minúsculas + alias). Desconocido -> ''."""
    normalized = str(role or "").strip().lower()
    normalized = ROLE_ALIASES.get(normalized, normalized)
    return normalized if normalized in ROLE_PERMISSIONS else ""


def get_role_capabilities(role: Optional[str]) -> RoleCapabilities:
    return ROLE_PERMISSIONS.get(normalize_role(role), NO_CAPABILITIES)


def has_action_capability(role: Optional[str], action_id: str) -> bool:
    flag = ACTION_CAPABILITIES.get(action_id)
    if flag is None:
        return False
    return bool(getattr(get_role_capabilities(role), flag, False))


def can_create_entry(role: Optional[str]) -> bool:
    return get_role_capabilities(role).can_create


def can_view_entry(role: Optional[str], is_owner: bool) -> bool:
    caps = get_role_capabilities(role)
    if caps is NO_CAPABILITIES:
        return False
    return caps.can_view_all or bool(is_owner)


def can_edit_entry(role: Optional[str], status: str, is_owner: bool = False) -> bool:
    return status in get_role_capabilities(role).can_edit and can_view_entry(role, is_owner)


def can_cancel_entry(role: Optional[str], status: str, is_owner: bool = False) -> bool:
    return status in get_role_capabilities(role).can_cancel and can_view_entry(role, is_owner)


def can_delete_entry(role: Optional[str], status: str, is_owner: bool = False) -> bool:
    return status in get_role_capabilities(role).can_delete and can_view_entry(role, is_owner)


def resolve_user_role(user) -> str:
    """
    Obtiene el rol de workflow de un usuario autenticado de Django.

    Prioridad:
    1. user.profile.role
    2. user.role
    3. superusuario -> admin
    4. primer grupo cuyo nombre sea un rol conocido
    """
    if user is None or not getattr(user, "is_authenticated", False):
        return ""

    profile = getattr(user, "profile", None)
    for candidate in (getattr(profile, "role", None), getattr(user, "role", None)):
        role = normalize_role(candidate)
        if role:
            return role

    if getattr(user, "is_superuser", False):
        return ROLE_ADMIN

    groups = getattr(user, "groups", None)
    if groups is None:
        return ""
    for name in groups.values_list("name", flat=True):
        role = normalize_role(name)
        if role:
            return role
    return ""


__all__ = [
    "ROLE_OPERARIO",
    "ROLE_SUPERVISOR",
    "ROLE_GERENTE",
    "ROLE_ADMIN",
    "RoleCapabilities",
    "NO_CAPABILITIES",
    "ROLE_PERMISSIONS",
    "ACTION_CAPABILITIES",
    "normalize_role",
    "get_role_capabilities",
    "has_action_capability",
    "can_create_entry",
    "can_view_entry",
    "can_edit_entry",
    "can_cancel_entry",
    "can_delete_entry",
    "resolve_user_role",
]
