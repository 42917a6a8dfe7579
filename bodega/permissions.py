# bodega/permissions.py
# -*- coding: utf-8 -*-
from __future__ import annotations

from rest_framework.permissions import BasePermission
from rest_framework.request import Request

from .roles import resolve_user_role


class HasWorkflowRole(BasePermission):
    """
    Permite acceso si el usuario autenticado tiene un rol de workflow conocido
    (operario, supervisor, gerente, admin).

    El rol se resuelve con bodega.roles.resolve_user_role y queda disponible
    en `request.workflow_role` para las vistas.
    """
    message = "No tiene un rol asignado para el workflow de inventario."

    def has_permission(self, request: Request, view) -> bool:  # type: ignore[override]
        u = getattr(request, "user", None)
        if not u or not u.is_authenticated:
            return False
        role = resolve_user_role(u)
        request.workflow_role = role
        return bool(role)


__all__ = ["HasWorkflowRole"]
