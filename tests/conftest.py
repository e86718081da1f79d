import os

# settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("AUTO_CREATE_DB", "false")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("RATE_LIMIT", "100000/minute")
os.environ.setdefault("PUBLIC_BASE_URL", "http://testserver")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from equiptrack.auth.security import create_access_token, get_password_hash  # noqa: E402
from equiptrack.db import Base, enable_sqlite_foreign_keys, get_db  # noqa: E402
from equiptrack.main import app  # noqa: E402
from equiptrack.models.models import ConstructionSite, Equipment, User  # noqa: E402
from equiptrack.storage.factory import get_storage  # noqa: E402
from equiptrack.storage.local_provider import LocalStorageProvider  # noqa: E402


PASSWORD = "secret123"


@pytest.fixture()
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_foreign_keys(engine)
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    yield factory
    engine.dispose()


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture()
def storage(tmp_path):
    return LocalStorageProvider(str(tmp_path / "storage"))


@pytest.fixture()
def client(session_factory, storage):
    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_storage] = lambda: storage
    yield TestClient(app)
    app.dependency_overrides.clear()


def make_user(db, email: str, role: str = "supervisor", site=None, username=None) -> User:
    user = User(
        email=email,
        username=username or email.split("@")[0],
        password_hash=get_password_hash(PASSWORD),
        role=role,
        is_active=True,
    )
    db.add(user)
    db.flush()
    if site is not None:
        site.supervisor_id = user.id
        user.site_id = site.id
    db.commit()
    return user


def make_site(db, name: str) -> ConstructionSite:
    site = ConstructionSite(site_name=name, contractor="Acme Builders")
    db.add(site)
    db.commit()
    return site


def make_equipment(db, site, name: str, quantity: int, is_rental: bool = False) -> Equipment:
    row = Equipment(name=name, site_id=site.id if site else None, quantity=quantity, is_rental=is_rental)
    db.add(row)
    db.commit()
    return row


def auth(user: User) -> dict:
    return {"Authorization": f"Bearer {create_access_token(str(user.id), role=user.role)}"}


@pytest.fixture()
def north(db):
    return make_site(db, "North Yard")


@pytest.fixture()
def south(db):
    return make_site(db, "South Tower")


@pytest.fixture()
def admin(db):
    return make_user(db, "admin@example.com", role="admin")


@pytest.fixture()
def sup_north(db, north):
    return make_user(db, "nora@example.com", site=north)


@pytest.fixture()
def sup_south(db, south):
    return make_user(db, "sam@example.com", site=south)
