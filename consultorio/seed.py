from __future__ import annotations

from sqlalchemy import select

from .db import db_session
from .models import Permission, RolePermission, Room, UserRole

DEFAULT_PERMISSIONS = [
    ("dashboard_view", "View dashboard"),
    ("appointments_view", "View appointments"),
    ("appointments_manage", "Manage appointments"),
    ("psychologists_view", "View psychologists"),
    ("psychologists_manage", "Manage psychologists"),
    ("rooms_view", "View rooms"),
    ("rooms_manage", "Manage rooms"),
    ("rooms_book", "Book rooms"),
    ("financial_view", "View financial information"),
    ("financial_manage", "Manage financial information"),
    ("permissions_view", "View permissions"),
    ("permissions_manage", "Manage permissions"),
]

# tabella esplicita: nessuna ereditarietà tra ruoli
DEFAULT_GRANTS: dict[UserRole, tuple[str, ...]] = {
    UserRole.ADMIN: tuple(name for name, _ in DEFAULT_PERMISSIONS),
    UserRole.PSYCHOLOGIST: (
        "dashboard_view",
        "appointments_view",
        "appointments_manage",
        "psychologists_view",
        "rooms_view",
        "rooms_book",
    ),
    UserRole.RECEPTIONIST: (
        "dashboard_view",
        "appointments_view",
        "appointments_manage",
        "psychologists_view",
        "rooms_view",
        "rooms_book",
        "financial_view",
    ),
}

DEFAULT_ROOMS = [
    # nome, capienza, mq
    ("Sala 1", 2, 12),
    ("Sala 2", 4, 18),
]


def seed_permissions() -> None:
    """Permessi di default e concessioni per ruolo (idempotente)."""
    with db_session() as s:
        for name, description in DEFAULT_PERMISSIONS:
            if s.execute(select(Permission).where(Permission.name == name)).scalar_one_or_none() is None:
                s.add(Permission(name=name, description=description))
        s.flush()

        ids = dict(s.execute(select(Permission.name, Permission.id)).all())
        for role, names in DEFAULT_GRANTS.items():
            for name in names:
                exists = s.execute(
                    select(RolePermission).where(RolePermission.role == role, RolePermission.permission_id == ids[name])
                ).scalar_one_or_none()
                if exists is None:
                    s.add(RolePermission(role=role, permission_id=ids[name]))


def seed_base() -> None:
    """
    Popola dati minimi (idempotente):
    - permessi e concessioni per ruolo
    - sale
    """
    seed_permissions()
    with db_session() as s:
        for name, capacity, square_meters in DEFAULT_ROOMS:
            if s.execute(select(Room).where(Room.name == name)).scalar_one_or_none() is None:
                s.add(Room(name=name, capacity=capacity, square_meters=square_meters))
