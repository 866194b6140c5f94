from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from sqlalchemy import delete, select

from .db import db_session
from .models import Permission, RolePermission, UserRole
from .repository import apply_changes, as_enum, flush, get_or_404, require_ref
from .schemas import PermissionCreate, PermissionUpdate, RolePermissionCreate, parse

logger = logging.getLogger(__name__)


# =========================
# Permessi
# =========================
def create_permission(data: PermissionCreate | Mapping[str, Any]) -> Permission:
    payload = parse(PermissionCreate, data)
    with db_session() as s:
        p = Permission(**payload.model_dump())
        s.add(p)
        flush(s)
        return p


def get_permission(permission_id: int) -> Permission | None:
    with db_session() as s:
        return s.get(Permission, permission_id)


def get_permission_by_name(name: str) -> Permission | None:
    with db_session() as s:
        return s.execute(select(Permission).where(Permission.name == name)).scalar_one_or_none()


def list_permissions() -> list[Permission]:
    with db_session() as s:
        return list(s.scalars(select(Permission).order_by(Permission.name)))


def update_permission(permission_id: int, data: PermissionUpdate | Mapping[str, Any]) -> Permission:
    changes = parse(PermissionUpdate, data).model_dump(exclude_unset=True)
    with db_session() as s:
        p = get_or_404(s, Permission, permission_id, "Permesso")
        apply_changes(p, changes)
        flush(s)
        return p


def delete_permission(permission_id: int) -> None:
    """Le associazioni ruolo -> permesso vengono cancellate a cascata."""
    with db_session() as s:
        p = get_or_404(s, Permission, permission_id, "Permesso")
        s.delete(p)
        flush(s)
        logger.info("Permesso cancellato: %s", p.name)


# =========================
# Ruoli
# =========================
def grant_permission(role: UserRole | str, permission_id: int) -> RolePermission:
    """Idempotente: se il ruolo ha già il permesso ritorna l'associazione esistente."""
    payload = parse(RolePermissionCreate, {"role": role, "permission_id": permission_id})
    with db_session() as s:
        require_ref(s, Permission, payload.permission_id, "permissionId")
        existing = s.execute(
            select(RolePermission).where(
                RolePermission.role == payload.role,
                RolePermission.permission_id == payload.permission_id,
            )
        ).scalar_one_or_none()
        if existing:
            return existing
        rp = RolePermission(role=payload.role, permission_id=payload.permission_id)
        s.add(rp)
        flush(s)
        logger.info("Permesso %s concesso al ruolo %s", payload.permission_id, payload.role.value)
        return rp


def revoke_permission(role: UserRole | str, permission_id: int) -> bool:
    with db_session() as s:
        res = s.execute(
            delete(RolePermission).where(
                RolePermission.role == as_enum(UserRole, role, "role"),
                RolePermission.permission_id == permission_id,
            )
        )
        return res.rowcount > 0


def list_role_permissions(role: UserRole | str | None = None) -> list[RolePermission]:
    with db_session() as s:
        q = select(RolePermission).order_by(RolePermission.role, RolePermission.permission_id)
        if role is not None:
            q = q.where(RolePermission.role == as_enum(UserRole, role, "role"))
        return list(s.scalars(q))


def permissions_for_role(role: UserRole | str) -> list[Permission]:
    """Permessi concessi esattamente a quel ruolo (nessuna ereditarietà), per nome."""
    with db_session() as s:
        q = (
            select(Permission)
            .join(RolePermission, RolePermission.permission_id == Permission.id)
            .where(RolePermission.role == as_enum(UserRole, role, "role"))
            .order_by(Permission.name)
        )
        return list(s.scalars(q))


def role_has_permission(role: UserRole | str, name: str) -> bool:
    with db_session() as s:
        q = (
            select(RolePermission.id)
            .join(Permission, Permission.id == RolePermission.permission_id)
            .where(RolePermission.role == as_enum(UserRole, role, "role"), Permission.name == name)
        )
        return s.execute(q.limit(1)).first() is not None
