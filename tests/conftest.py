from __future__ import annotations

import os
import tempfile
from pathlib import Path

# il DB di test va configurato prima di importare consultorio.db
_TMP = Path(tempfile.mkdtemp(prefix="consultorio-tests-"))
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP / 'test.sqlite'}"
os.environ.setdefault("SQL_ECHO", "0")

import datetime as dt  # noqa: E402
import threading  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import func, select  # noqa: E402

from consultorio import patient_models  # noqa: E402,F401
from consultorio.auth_service import create_psychologist, create_user  # noqa: E402
from consultorio.db import Base, db_session, engine  # noqa: E402
from consultorio.services import create_room  # noqa: E402


@pytest.fixture(autouse=True)
def fresh_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


def count_rows(model) -> int:
    with db_session() as s:
        return s.execute(select(func.count()).select_from(model)).scalar_one()


def run_concurrently(fn, n: int = 8) -> list[str]:
    """
    Lancia fn(i) in n thread che partono insieme (Barrier).
    Ritorna gli esiti ordinati: "ok" oppure il nome della classe dell'eccezione.
    """
    barrier = threading.Barrier(n)
    lock = threading.Lock()
    outcomes: list[str] = []

    def worker(i: int) -> None:
        barrier.wait()
        try:
            fn(i)
            result = "ok"
        except Exception as e:
            result = type(e).__name__
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return sorted(outcomes)


@pytest.fixture
def make_user():
    seq = iter(range(1, 1000))

    def _make(role: str = "psychologist", **extra):
        n = next(seq)
        data = {
            "username": f"utente{n}",
            "email": f"utente{n}@clinica.com.br",
            "fullName": f"Utente {n}",
            "role": role,
            "password": "segreta123",
        }
        data.update(extra)
        return create_user(data)

    return _make


@pytest.fixture
def psychologist(make_user):
    u = make_user("psychologist")
    return create_psychologist({"userId": u.id, "specialization": "TCC", "hourlyRate": "150.00"})


@pytest.fixture
def room():
    return create_room({"name": "Sala 1", "capacity": 2})


@pytest.fixture
def day() -> dt.date:
    return dt.date(2026, 3, 10)
