from rest_framework import serializers
from rest_framework_simplejwt.serializers import TokenObtainPairSerializer

from .conf import sync_setting
from .models import Conflict, StoreMembership, TrackedRecord
from .services.conflicts import CHOICES


class ChangeSerializer(serializers.Serializer):
    # Blank or missing fields fail that one change, not the whole batch.
    localId = serializers.CharField(max_length=120, required=False, allow_blank=True, allow_null=True, default="")
    table = serializers.CharField(max_length=64, required=False, allow_blank=True, allow_null=True, default="")
    action = serializers.CharField(max_length=16, required=False, allow_blank=True, allow_null=True, default="")
    data = serializers.JSONField(required=False, default=dict)


class PushRequestSerializer(serializers.Serializer):
    changes = ChangeSerializer(many=True, allow_empty=True)

    def validate_changes(self, value):
        limit = sync_setting("PUSH_MAX_BATCH")
        if len(value) > limit:
            raise serializers.ValidationError(f"at most {limit} changes per push")
        return value


class PullQuerySerializer(serializers.Serializer):
    since = serializers.DateTimeField(required=False, allow_null=True)
    limit = serializers.IntegerField(required=False, min_value=1)

    def to_internal_value(self, data):
        # An empty "since" means a full sync.
        if hasattr(data, "dict"):
            data = data.dict()
        data = {key: value for key, value in data.items() if value not in ("", "null")}
        return super().to_internal_value(data)


class TrackedRecordSerializer(serializers.ModelSerializer):
    serverId = serializers.UUIDField(source="id", read_only=True)
    localId = serializers.CharField(source="local_id", read_only=True)
    storeId = serializers.CharField(source="store_id", read_only=True)
    updatedAt = serializers.DateTimeField(source="updated_at", read_only=True)
    data = serializers.JSONField(source="payload", read_only=True)

    class Meta:
        model = TrackedRecord
        fields = ["serverId", "localId", "storeId", "table", "version", "updatedAt", "tombstone", "data"]


class ConflictSerializer(serializers.ModelSerializer):
    serverId = serializers.UUIDField(source="record_id", read_only=True)
    storeId = serializers.CharField(source="store_id", read_only=True)
    clientLocalId = serializers.CharField(source="client_local_id", read_only=True)
    baseVersion = serializers.IntegerField(source="base_version", read_only=True)
    serverVersion = serializers.IntegerField(source="server_version", read_only=True)
    serverPayload = serializers.JSONField(source="server_payload", read_only=True)
    clientPayload = serializers.JSONField(source="client_payload", read_only=True)
    basePayload = serializers.JSONField(source="base_payload", read_only=True)
    resolvedVersion = serializers.IntegerField(source="resolved_version", read_only=True)
    resolvedAt = serializers.DateTimeField(source="resolved_at", read_only=True)
    createdAt = serializers.DateTimeField(source="created_at", read_only=True)

    class Meta:
        model = Conflict
        fields = [
            "id",
            "storeId",
            "table",
            "serverId",
            "clientLocalId",
            "action",
            "baseVersion",
            "serverVersion",
            "serverPayload",
            "clientPayload",
            "basePayload",
            "status",
            "resolvedVersion",
            "resolvedAt",
            "createdAt",
        ]


class ConflictQuerySerializer(serializers.Serializer):
    table = serializers.CharField(required=False)
    status = serializers.ChoiceField(choices=[value for value, _ in Conflict.STATUS_CHOICES], required=False)
    created_after = serializers.DateTimeField(required=False)
    created_before = serializers.DateTimeField(required=False)
    page = serializers.IntegerField(required=False, min_value=1, default=1)
    page_size = serializers.IntegerField(required=False, min_value=1, max_value=500)


class ResolveSerializer(serializers.Serializer):
    choice = serializers.ChoiceField(choices=CHOICES)
    mergedPayload = serializers.JSONField(required=False)

    def validate(self, attrs):
        if attrs["choice"] == "merged" and not isinstance(attrs.get("mergedPayload"), dict):
            raise serializers.ValidationError({"mergedPayload": "an object is required when choice is merged"})
        return attrs


class StoreTokenObtainPairSerializer(TokenObtainPairSerializer):
    """Issues tokens that carry the user's store scope as claims."""

    @classmethod
    def get_token(cls, user):
        token = super().get_token(user)
        membership = StoreMembership.objects.filter(user=user).first()
        if membership is not None:
            token["store_id"] = membership.store_id
            token["organization_id"] = membership.organization_id
        return token
