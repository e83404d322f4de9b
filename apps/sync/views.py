import logging
import time

from django.utils import timezone
from rest_framework import status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.exceptions import APIException, NotFound, ValidationError
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.response import Response
from rest_framework_simplejwt.views import TokenObtainPairView

from .conf import sync_setting
from .errors import ConflictClosed, SyncError
from .models import Conflict
from .scope import scope_from_request
from .serializers import (
    ConflictQuerySerializer,
    ConflictSerializer,
    PullQuerySerializer,
    PushRequestSerializer,
    ResolveSerializer,
    StoreTokenObtainPairSerializer,
    TrackedRecordSerializer,
)
from .services import ChangeEntry, ConflictFilter, ConflictRegistry, PullStreamer, PushApplier
from .tables import TABLE_NAMES

logger = logging.getLogger(__name__)


class ConflictClosedError(APIException):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Conflict is already closed."
    default_code = "conflict_closed"


def _now_iso():
    return timezone.now().isoformat()


def _table_limits(query_params):
    limits = {}
    for name in TABLE_NAMES:
        raw = query_params.get(f"limit_{name}")
        if raw in (None, ""):
            continue
        try:
            limits[name] = int(raw)
        except ValueError:
            raise ValidationError({f"limit_{name}": "must be an integer"}) from None
        if limits[name] < 1:
            raise ValidationError({f"limit_{name}": "must be positive"})
    return limits


class StoreTokenObtainPairView(TokenObtainPairView):
    serializer_class = StoreTokenObtainPairSerializer


@api_view(["GET"])
@permission_classes([AllowAny])
def sync_health(request):
    return Response({"ok": True, "serverTime": _now_iso()})


@api_view(["POST"])
@permission_classes([IsAuthenticated])
def sync_push(request):
    scope = scope_from_request(request)
    serializer = PushRequestSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)

    deadline = time.monotonic() + sync_setting("PUSH_DEADLINE_SECONDS")
    entries = [ChangeEntry.from_dict(raw) for raw in serializer.validated_data["changes"]]
    results = PushApplier(scope, deadline=deadline).apply(entries)
    return Response({"serverTime": _now_iso(), "results": [result.as_dict() for result in results]})


@api_view(["GET"])
@permission_classes([IsAuthenticated])
def sync_pull(request):
    scope = scope_from_request(request)
    query = PullQuerySerializer(data=request.query_params)
    query.is_valid(raise_exception=True)

    limits = _table_limits(request.query_params)
    default_limit = query.validated_data.get("limit")
    if default_limit:
        limits = {name: limits.get(name, default_limit) for name in TABLE_NAMES}

    result = PullStreamer(scope).pull(since=query.validated_data.get("since"), limits=limits)
    payload = {name: TrackedRecordSerializer(rows, many=True).data for name, rows in result.tables.items()}
    payload["syncedAt"] = result.synced_at.isoformat() if result.synced_at else None
    payload["hasMore"] = result.has_more
    payload["serverTime"] = _now_iso()
    return Response(payload)


@api_view(["GET"])
@permission_classes([IsAuthenticated])
def conflict_list(request):
    scope = scope_from_request(request)
    query = ConflictQuerySerializer(data=request.query_params)
    query.is_valid(raise_exception=True)
    params = query.validated_data

    page_size = params.get("page_size") or sync_setting("CONFLICT_PAGE_SIZE")
    filters = ConflictFilter(
        table=params.get("table"),
        status=params.get("status"),
        created_after=params.get("created_after"),
        created_before=params.get("created_before"),
    )
    page = ConflictRegistry(scope).list(filters, page=params["page"], page_size=page_size)
    return Response(
        {
            "conflicts": ConflictSerializer(page.object_list, many=True).data,
            "pagination": {
                "page": page.number,
                "pageSize": page_size,
                "total": page.paginator.count,
                "pages": page.paginator.num_pages,
            },
        }
    )


@api_view(["GET"])
@permission_classes([IsAuthenticated])
def conflict_detail(request, conflict_id):
    scope = scope_from_request(request)
    try:
        conflict = ConflictRegistry(scope).get(conflict_id)
    except Conflict.DoesNotExist:
        raise NotFound("conflict not found") from None
    return Response(ConflictSerializer(conflict).data)


@api_view(["POST"])
@permission_classes([IsAuthenticated])
def conflict_resolve(request, conflict_id):
    scope = scope_from_request(request)
    serializer = ResolveSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    choice = serializer.validated_data["choice"]

    try:
        resolution = ConflictRegistry(scope).resolve(
            conflict_id, choice, merged_payload=serializer.validated_data.get("mergedPayload")
        )
    except Conflict.DoesNotExist:
        raise NotFound("conflict not found") from None
    except ConflictClosed as exc:
        raise ConflictClosedError(str(exc)) from None
    except SyncError as exc:
        raise ValidationError({exc.field or "detail": str(exc)}) from None

    body = {"conflict": ConflictSerializer(resolution.conflict).data}
    if resolution.result is not None:
        body.update(resolution.result.as_dict())
    return Response(body)


@api_view(["POST"])
@permission_classes([IsAuthenticated])
def conflict_reject(request, conflict_id):
    scope = scope_from_request(request)
    try:
        conflict = ConflictRegistry(scope).reject(conflict_id)
    except Conflict.DoesNotExist:
        raise NotFound("conflict not found") from None
    except ConflictClosed as exc:
        raise ConflictClosedError(str(exc)) from None
    return Response({"conflict": ConflictSerializer(conflict).data})
