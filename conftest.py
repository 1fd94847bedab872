import io
import pytest

from app import create_app
from config import TestingConfig
from models import db, User


@pytest.fixture
def app(tmp_path):
    """Creates a Flask app on a throwaway SQLite file and upload folder."""
    app = create_app(
        TestingConfig,
        SQLALCHEMY_DATABASE_URI=f"sqlite:///{tmp_path / 'test.db'}",
        UPLOAD_FOLDER=str(tmp_path / "uploads"),
    )
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


def profile(name, email, national_id, **extra):
    data = {
        "name": name,
        "email": email,
        "national_id": national_id,
        "password": "secret123",
        "phone": "+919876543210",
        "date_of_birth": "1990-01-15",
        "address": {"street": "1 MG Road", "city": "Pune", "state": "MH", "pincode": "411001"},
    }
    data.update(extra)
    return data


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


def register(client, name, email, national_id):
    response = client.post("/api/auth/register", json=profile(name, email, national_id))
    assert response.status_code == 201, response.get_json()
    body = response.get_json()
    return body["token"], body["data"]["user"]["id"]


def verify(app, client, token):
    """Runs the OTP flow, reading the issued code back from the database."""
    response = client.post("/api/auth/send-otp", headers=bearer(token))
    assert response.status_code == 200
    me = client.get("/api/auth/me", headers=bearer(token)).get_json()["data"]["user"]
    with app.app_context():
        code = db.session.get(User, me["id"]).otp_code
    response = client.post("/api/auth/verify-otp", json={"otp": code}, headers=bearer(token))
    assert response.status_code == 200


def verified_user(app, client, name, email, national_id):
    token, user_id = register(client, name, email, national_id)
    verify(app, client, token)
    return token, user_id


def upload(client, token, title="PAN-123", document_type="pan_card", content=b"%PDF-1.4 pan card", **form):
    data = {
        "title": title,
        "document_type": document_type,
        "document": (io.BytesIO(content), "pan.pdf"),
    }
    data.update(form)
    return client.post("/api/documents", data=data, headers=bearer(token),
                       content_type="multipart/form-data")


@pytest.fixture
def alice(app, client):
    return verified_user(app, client, "Alice", "alice@example.com", "111122223333")


@pytest.fixture
def bob(app, client):
    return verified_user(app, client, "Bob", "bob@example.com", "123456789012")
