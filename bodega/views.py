# bodega/views.py
# -*- coding: utf-8 -*-
from __future__ import annotations

from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from .permissions import HasWorkflowRole
from .roles import get_role_capabilities
from .serializers import (
    CanPerformQuerySerializer,
    ConfirmationRequestSerializer,
    StatusQuerySerializer,
    TransitionQuerySerializer,
)
from .workflow import (
    can_user_perform_action,
    get_available_actions_for_user,
    get_confirmation_config,
    get_status_tooltip,
    get_valid_next_states,
    get_workflow_action,
    is_transition_allowed,
)


class InventoryWorkflowViewSet(viewsets.ViewSet):
    """
    Consultas del workflow de entradas de inventario para la consola web.

    - El rol se toma del usuario autenticado (request.workflow_role).
    - Todas las respuestas son datos planos; no se modifica ninguna entrada.
    """

    permission_classes = [IsAuthenticated, HasWorkflowRole]

    @staticmethod
    def _validated(serializer_class, data):
        serializer = serializer_class(data=data)
        serializer.is_valid(raise_exception=True)
        return serializer.validated_data

    @action(detail=False, methods=["get"], url_path="actions")
    def actions(self, request):
        params = self._validated(StatusQuerySerializer, request.query_params)
        role = request.workflow_role
        available = get_available_actions_for_user(params["status"], role, params["is_owner"])
        return Response(
            {
                "status": params["status"],
                "role": role,
                "tooltip": get_status_tooltip(params["status"]),
                "actions": [a.to_dict() for a in available],
            }
        )

    @action(detail=False, methods=["get"], url_path="next-states")
    def next_states(self, request):
        current = request.query_params.get("status", "")
        return Response(
            {
                "status": current,
                "next_states": sorted(str(s) for s in get_valid_next_states(current)),
            }
        )

    @action(detail=False, methods=["get"], url_path="transition-check")
    def transition_check(self, request):
        params = self._validated(TransitionQuerySerializer, request.query_params)
        return Response(
            {
                "current": params["current"],
                "target": params["target"],
                "allowed": is_transition_allowed(params["current"], params["target"]),
            }
        )

    @action(detail=False, methods=["get"], url_path="can-perform")
    def can_perform(self, request):
        params = self._validated(CanPerformQuerySerializer, request.query_params)
        allowed = can_user_perform_action(
            params["action"],
            params["status"],
            request.workflow_role,
            params["is_owner"],
        )
        return Response({"action": params["action"], "allowed": allowed})

    @action(detail=False, methods=["post"], url_path="confirmation")
    def confirmation(self, request):
        params = self._validated(ConfirmationRequestSerializer, request.data)
        workflow_action = get_workflow_action(params["status"], params["action_id"])
        if workflow_action is None:
            return Response(
                {
                    "detail": (
                        f"La acción '{params['action_id']}' no existe para el estado "
                        f"{params['status']}."
                    )
                },
                status=status.HTTP_400_BAD_REQUEST,
            )
        return Response(
            get_confirmation_config(
                workflow_action,
                params["entry_number"],
                params["entry_type"],
            )
        )

    @action(detail=False, methods=["get"], url_path="capabilities")
    def capabilities(self, request):
        role = request.workflow_role
        return Response({"role": role, **get_role_capabilities(role).to_dict()})
