import os
import tempfile
from typing import Dict

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session, sessionmaker

os.environ.setdefault("ENV", "test")
os.environ.setdefault(
    "CAFE_DB_URL",
    "sqlite+pysqlite:///" + os.path.join(tempfile.mkdtemp(prefix="cafe-tests-"), "cafe.db"),
)

from apps.cafe.app import inventory, retry  # noqa: E402
from apps.cafe.app import settings as app_settings  # noqa: E402
from apps.cafe.app.db import Base, make_engine, unit_of_work  # noqa: E402

KIOSK: Dict[str, str] = {"X-Test-Role": "kiosk"}
KITCHEN: Dict[str, str] = {"X-Test-Role": "kitchen"}
ADMIN: Dict[str, str] = {"X-Test-Role": "admin"}


@pytest.fixture()
def cafe_engine(tmp_path):
    """
    Isolated file-backed SQLite store per test.

    File-backed rather than :memory: so concurrent tests get one connection
    per thread, the way request handlers do.
    """
    engine = make_engine(f"sqlite+pysqlite:///{tmp_path / 'cafe.db'}")
    Base.metadata.create_all(engine)
    with Session(engine) as s:
        with unit_of_work(s):
            app_settings.ensure_defaults(s)
    yield engine
    engine.dispose()


@pytest.fixture()
def settings_service(cafe_engine):
    # ttl 0: every read goes to the store, toggles apply immediately
    return app_settings.SettingsService(sessionmaker(bind=cafe_engine), ttl_seconds=0)


@pytest.fixture()
def make_product(cafe_engine):
    def _make(name: str = "Espresso", price_cents: int = 250, stock: int = 10, min_stock: int = 2,
              category: str = "coffee") -> int:
        with Session(cafe_engine) as s:
            with unit_of_work(s):
                p = inventory.create_product(
                    s, name, price_cents, stock=stock, min_stock=min_stock, category=category
                )
                pid = p.id
        return pid

    return _make


@pytest.fixture(autouse=True)
def _no_backoff_sleep(monkeypatch):
    monkeypatch.setattr(retry, "_sleep", lambda _delay: None)


@pytest.fixture()
def client(cafe_engine, settings_service):
    """
    TestClient for the gateway with the store and the settings service
    pointed at the per-test database.
    """
    from apps.cafe.app import main

    def _session():
        with Session(cafe_engine) as s:
            yield s

    main.app.dependency_overrides[main.get_session] = _session
    main.app.dependency_overrides[main.get_settings_service] = lambda: settings_service
    try:
        yield TestClient(main.app)
    finally:
        main.app.dependency_overrides.clear()
