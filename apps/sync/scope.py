"""Tenant scope handed to the sync core by the auth layer."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from rest_framework.exceptions import PermissionDenied

from .models import StoreMembership


@dataclass(frozen=True)
class SyncScope:
    store_id: str
    organization_id: Optional[str] = None

    def __post_init__(self):
        if not self.store_id:
            raise ValueError("store_id is required")


def _claim(token, name: str) -> str:
    if token is None or not hasattr(token, "get"):
        return ""
    return str(token.get(name) or "").strip()


def scope_from_request(request) -> SyncScope:
    """Build the scope from JWT claims, falling back to the user's store membership."""
    store_id = _claim(request.auth, "store_id")
    organization_id = _claim(request.auth, "organization_id")
    if not store_id:
        membership = StoreMembership.objects.filter(user_id=request.user.pk).first()
        if membership is None:
            raise PermissionDenied("no store scope for this identity")
        store_id = membership.store_id
        organization_id = membership.organization_id
    return SyncScope(store_id=store_id, organization_id=organization_id or None)
