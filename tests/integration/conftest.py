import pytest
from fastapi.testclient import TestClient

from apps.api.app.main import app
from apps.api.app.core.security import get_password_hash
from apps.api.app.db.session import Base, SessionLocal, engine
from apps.api.app.models.user import User


@pytest.fixture()
def client():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)

    db = SessionLocal()
    try:
        db.add(
            User(
                id="guest-1",
                email="guest@test.com",
                hashed_password=get_password_hash("GuestPass123!"),
                role="guest",
                hotel_id="hotel-1",
            )
        )
        db.add(
            User(
                id="staff-1",
                email="staff@test.com",
                hashed_password=get_password_hash("StaffPass123!"),
                role="hotel_staff",
                hotel_id="hotel-1",
            )
        )
        db.add(
            User(
                id="root-1",
                email="root@test.com",
                hashed_password=get_password_hash("RootPass123!"),
                role="super_admin",
            )
        )
        db.commit()
    finally:
        db.close()

    with TestClient(app) as tc:
        yield tc
