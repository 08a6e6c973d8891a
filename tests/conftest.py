import os
import sys
import tempfile
from pathlib import Path

import pytest

# Ensure project root is importable in local and CI runs.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# Force test config before importing app modules.
TEST_DB_PATH = Path(tempfile.gettempdir()) / "hotel_guest_services_test.db"
if TEST_DB_PATH.exists():
    TEST_DB_PATH.unlink()

os.environ["DATABASE_URL"] = f"sqlite:///{TEST_DB_PATH}"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["VAPID_PUBLIC_KEY"] = ""
os.environ["VAPID_PRIVATE_KEY"] = ""
os.environ["EXPO_PUSH_ENABLED"] = "true"
os.environ["EXPO_ACCESS_TOKEN"] = ""
os.environ["REFRESH_TOKEN_ROTATE_ON_USE"] = "true"

import apps.api.app.main  # noqa: E402,F401  registers every model on Base.metadata
from apps.api.app.db.session import Base, SessionLocal, engine  # noqa: E402
from tests.doubles import make_web_keys  # noqa: E402


@pytest.fixture()
def db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def web_keys():
    return make_web_keys
