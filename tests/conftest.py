import os

import pytest

# Tests never talk to Mongo
os.environ["STORE_BACKEND"] = "memory"

from fastapi.testclient import TestClient  # noqa: E402

from database import MemoryDocumentStore  # noqa: E402
from identity import IdentityProvider  # noqa: E402
from main import app, get_identity_provider, get_student_store  # noqa: E402


@pytest.fixture()
def student_store():
    return MemoryDocumentStore("student")


@pytest.fixture()
def provider():
    return IdentityProvider(MemoryDocumentStore("identity"), MemoryDocumentStore("session"))


@pytest.fixture()
def client(student_store, provider):
    """
    API client wired to fresh in-memory stores.
    """
    app.dependency_overrides[get_student_store] = lambda: student_store
    app.dependency_overrides[get_identity_provider] = lambda: provider
    with TestClient(app) as client_instance:
        yield client_instance
    app.dependency_overrides.clear()


@pytest.fixture()
def teacher_headers(client):
    response = client.post("/api/teachers/signup", json={"username": "Jane Doe", "password": "secret123"})
    assert response.status_code == 200, response.text
    return {"Authorization": f"Bearer {response.json()['token']}"}


@pytest.fixture()
def add_student(client, teacher_headers):
    def _add(student_id, marks, branch="CSE", section="A", name=None, year="1st"):
        payload = {
            "id": student_id,
            "name": name or f"Student {student_id}",
            "branch": branch,
            "section": section,
            "year": year,
            "marks": marks,
        }
        response = client.post("/api/students", json=payload, headers=teacher_headers)
        assert response.status_code == 201, response.text
        return response.json()

    return _add
