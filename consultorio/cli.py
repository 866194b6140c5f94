from __future__ import annotations

import argparse
import getpass
import logging
from datetime import date, time

from consultorio.auth_service import (
    create_user,
    get_user_by_username,
    issue_reset_token,
    list_psychologists_flat,
    list_users,
    reset_password,
)
from consultorio.errors import ConsultorioError
from consultorio.models import UserRole
from consultorio.permission_service import get_permission_by_name, grant_permission, permissions_for_role
from consultorio.seed import seed_base
from consultorio.services import (
    create_room,
    create_room_booking,
    find_appointments_by_date,
    init_db,
    list_rooms,
)


def cmd_init(args: argparse.Namespace) -> None:
    init_db()
    seed_base()
    print("DB inizializzato e seed completato.")


def cmd_list(args: argparse.Namespace) -> None:
    if args.entity == "users":
        for u in list_users():
            print(f"{u.id} | {u.username} | {u.full_name} | {u.role.value} | {u.status.value}")
    elif args.entity == "psychologists":
        for p in list_psychologists_flat():
            print(f"{p['id']} | {p['fullName']} | {p['specialization'] or '-'} | {p['hourlyRate']}")
    elif args.entity == "rooms":
        for r in list_rooms():
            print(f"{r.id} | {r.name} | {r.capacity} posti")
    elif args.entity == "appointments":
        day = date.fromisoformat(args.date) if args.date else date.today()
        for a in find_appointments_by_date(day):
            print(
                f"{a.id} | {a.start_time:%H:%M}-{a.end_time:%H:%M} | sala {a.room_id} | "
                f"psicologo {a.psychologist_id} | {a.patient_name} | {a.status.value}"
            )


def cmd_add_user(args: argparse.Namespace) -> None:
    password = args.password
    if password is None and not args.no_password:
        password = getpass.getpass("Password: ")
    u = create_user(
        {
            "username": args.username,
            "email": args.email,
            "fullName": args.full_name,
            "role": args.role,
            "password": password,
        }
    )
    print(f"Utente creato: {u.id}")


def cmd_add_room(args: argparse.Namespace) -> None:
    r = create_room(
        {
            "name": args.name,
            "capacity": args.capacity,
            "squareMeters": args.square_meters,
            "hasWifi": not args.no_wifi,
            "hasAirConditioning": not args.no_ac,
        }
    )
    print(f"Sala creata: {r.id}")


def cmd_book_room(args: argparse.Namespace) -> None:
    b = create_room_booking(
        {
            "roomId": args.room_id,
            "psychologistId": args.psychologist_id,
            "date": date.fromisoformat(args.date),
            "startTime": time.fromisoformat(args.start),
            "endTime": time.fromisoformat(args.end),
            "purpose": args.purpose,
        }
    )
    print(f"Prenotazione ID: {b.id}")


def cmd_grant(args: argparse.Namespace) -> None:
    p = get_permission_by_name(args.permission)
    if p is None:
        raise SystemExit(f"ERRORE: permesso '{args.permission}' inesistente.")
    grant_permission(args.role, p.id)
    print(f"Permesso {p.name} concesso a {args.role}.")


def cmd_permissions(args: argparse.Namespace) -> None:
    for p in permissions_for_role(args.role):
        print(f"{p.name} | {p.description or '-'}")


def cmd_reset_request(args: argparse.Namespace) -> None:
    """Simula l'invio della mail di recupero: stampa il token invece di spedirlo."""
    u = get_user_by_username(args.username)
    if u is None:
        raise SystemExit(f"ERRORE: utente '{args.username}' inesistente.")
    t = issue_reset_token(u.id)
    print(f"Token: {t.token}")
    print(f"Scade: {t.expires_at.isoformat()} UTC")


def cmd_reset_consume(args: argparse.Namespace) -> None:
    password = args.password or getpass.getpass("Nuova password: ")
    u = reset_password(args.token, password)
    print(f"Password aggiornata per {u.username}.")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="consultorio", description="CLI Consultorio (gestione dati dello studio)")
    p.add_argument("-v", "--verbose", action="store_true", help="Log a livello DEBUG")
    sub = p.add_subparsers(required=True)

    p_init = sub.add_parser("init", help="Crea DB e carica seed")
    p_init.set_defaults(func=cmd_init)

    p_list = sub.add_parser("list", help="Lista entità")
    p_list.add_argument("entity", choices=["users", "psychologists", "rooms", "appointments"])
    p_list.add_argument("--date", default=None, help="Per appointments: giorno ISO (default oggi)")
    p_list.set_defaults(func=cmd_list)

    p_user = sub.add_parser("add-user", help="Crea utente")
    p_user.add_argument("--username", required=True)
    p_user.add_argument("--email", required=True)
    p_user.add_argument("--full-name", required=True)
    p_user.add_argument("--role", choices=[r.value for r in UserRole], default=UserRole.PSYCHOLOGIST.value)
    p_user.add_argument("--password", default=None, help="Se assente viene chiesta a terminale")
    p_user.add_argument("--no-password", action="store_true", help="Utente solo-Google, senza password")
    p_user.set_defaults(func=cmd_add_user)

    p_room = sub.add_parser("add-room", help="Crea sala")
    p_room.add_argument("--name", required=True)
    p_room.add_argument("--capacity", type=int, required=True)
    p_room.add_argument("--square-meters", type=int, default=None)
    p_room.add_argument("--no-wifi", action="store_true")
    p_room.add_argument("--no-ac", action="store_true")
    p_room.set_defaults(func=cmd_add_room)

    p_book = sub.add_parser("book-room", help="Prenota una sala")
    p_book.add_argument("--room-id", type=int, required=True)
    p_book.add_argument("--psychologist-id", type=int, required=True)
    p_book.add_argument("--date", required=True, help="es: 2026-01-14")
    p_book.add_argument("--start", required=True, help="es: 09:00")
    p_book.add_argument("--end", required=True, help="es: 10:00")
    p_book.add_argument("--purpose", default=None)
    p_book.set_defaults(func=cmd_book_room)

    p_grant = sub.add_parser("grant", help="Concede un permesso a un ruolo")
    p_grant.add_argument("role", choices=[r.value for r in UserRole])
    p_grant.add_argument("permission")
    p_grant.set_defaults(func=cmd_grant)

    p_perm = sub.add_parser("permissions", help="Permessi di un ruolo")
    p_perm.add_argument("role", choices=[r.value for r in UserRole])
    p_perm.set_defaults(func=cmd_permissions)

    p_rr = sub.add_parser("reset-request", help="Emette un token di recupero password")
    p_rr.add_argument("username")
    p_rr.set_defaults(func=cmd_reset_request)

    p_rc = sub.add_parser("reset-consume", help="Usa un token per impostare la nuova password")
    p_rc.add_argument("token")
    p_rc.add_argument("--password", default=None)
    p_rc.set_defaults(func=cmd_reset_consume)

    return p


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    init_db()  # garantisce tabelle
    try:
        args.func(args)
    except ConsultorioError as e:
        raise SystemExit(f"ERRORE: {e}") from e


if __name__ == "__main__":
    main()
