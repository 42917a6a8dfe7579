# bodega/serializers.py
# -*- coding: utf-8 -*-
from __future__ import annotations

from rest_framework import serializers

from .domain import EntryStatus, EntryType


class StatusQuerySerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=EntryStatus.choices)
    is_owner = serializers.BooleanField(required=False, default=False)


class TransitionQuerySerializer(serializers.Serializer):
    current = serializers.ChoiceField(choices=EntryStatus.choices)
    target = serializers.ChoiceField(choices=EntryStatus.choices)


class CanPerformQuerySerializer(StatusQuerySerializer):
    action = serializers.CharField(max_length=50)


class ConfirmationRequestSerializer(serializers.Serializer):
    action_id = serializers.CharField(max_length=50)
    status = serializers.ChoiceField(choices=EntryStatus.choices)
    entry_number = serializers.CharField(max_length=50)
    entry_type = serializers.ChoiceField(choices=EntryType.choices)
