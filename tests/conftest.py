import os
import shutil
import tempfile
from datetime import datetime, timezone
from decimal import Decimal

_tmp = tempfile.mkdtemp(prefix="contractdesk-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_tmp}/test.db"
os.environ["MAILGUN_API_KEY"] = ""
os.environ["MAILGUN_DOMAIN"] = ""
os.environ["LINK_EXPIRY_SWEEP_ENABLED"] = "false"
os.environ["CLIENT_LINK_TTL_DAYS"] = "2"
os.environ["SIGNATURE_EDIT_WINDOW_DAYS"] = "2"

import pytest
from fastapi.testclient import TestClient

from contractdesk.database import Base, SessionLocal, engine
from contractdesk.main import app
from contractdesk.models import Client, Project, ProjectClient, User
from contractdesk.services.auth import create_access_token
from contractdesk.services.blob_storage import BlobStorageError, BlobStore, get_blob_store
from contractdesk.services.clock import DeterministicClock, get_clock

# 1x1 transparent PNG
PNG_1X1 = "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAQAAAC1HAwCAAAAC0lEQVR42mNkYAAAAAYAAjCB0C8AAAAASUVORK5CYII="
SIGNATURE_IMAGE = f"data:image/png;base64,{PNG_1X1}"
OTHER_SIGNATURE_IMAGE = "data:image/png;base64,iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mP8z8BQDwAEhQGAhKmMIQAAAABJRU5ErkJggg=="

START = datetime(2025, 3, 3, 9, 0, tzinfo=timezone.utc)


def pytest_sessionfinish(session, exitstatus):
    shutil.rmtree(_tmp, ignore_errors=True)


@pytest.fixture(autouse=True)
def _schema():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    app.dependency_overrides.clear()


class MemoryBlobStore(BlobStore):
    """Bucket stand-in: objects live in a dict keyed by path."""

    def __init__(self):
        self.objects: dict[str, bytes] = {}
        self.fail_uploads = False

    def upload(self, path, data, content_type="image/png"):
        if self.fail_uploads:
            raise BlobStorageError(f"Upload failed for {path}: bucket unavailable")
        self.objects[path] = data
        return path

    def download(self, path):
        try:
            return self.objects[path]
        except KeyError:
            raise BlobStorageError(f"Download failed for {path}: NoSuchKey") from None

    def delete(self, path):
        self.objects.pop(path, None)


@pytest.fixture(autouse=True)
def blob_store(_schema):
    store = MemoryBlobStore()
    app.dependency_overrides[get_blob_store] = lambda: store
    return store


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    c = DeterministicClock(START)
    app.dependency_overrides[get_clock] = lambda: c
    return c


@pytest.fixture
def api(clock):
    return TestClient(app)


@pytest.fixture
def owner(db):
    user = User(email="provider@example.com", full_name="Priya Provider", mobile_number="+91 90000 00000")
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def auth(owner):
    return {"Authorization": f"Bearer {create_access_token(owner.id, owner.email)}"}


@pytest.fixture
def project(db, owner):
    p = Project(user_id=owner.id, name="Website Revamp", budget=Decimal("10000.00"))
    db.add(p)
    db.commit()
    db.refresh(p)
    return p


def add_client(db, owner, project=None, name="Carol Client", email="carol@example.com", organization="Acme Ltd"):
    c = Client(user_id=owner.id, full_name=name, email=email, organization=organization)
    db.add(c)
    db.flush()
    if project is not None:
        db.add(ProjectClient(project_id=project.id, client_id=c.id))
    db.commit()
    db.refresh(c)
    return c


@pytest.fixture
def roster_client(db, owner, project):
    return add_client(db, owner, project)


def agreement_payload(project_id, **overrides):
    body = {
        "project_id": project_id,
        "service_provider_name": "Priya Provider",
        "agreement_date": "2025-03-01",
        "service_type": "Website design and development",
        "start_date": "2025-03-05",
        "end_date": "2025-04-30",
        "duration": 8,
        "duration_unit": "weeks",
        "number_of_revisions": 2,
        "jurisdiction": "Karnataka, India",
        "deliverables": ["Homepage design", "CMS integration"],
        "payment_structure": "milestone-based",
        "payment_method": "Bank transfer",
        "payment_milestones": [
            {"description": "Design sign-off", "amount": "4000", "date": "2025-03-20"},
            {"description": "Launch", "amount": "6000", "date": "2025-04-30"},
        ],
    }
    body.update(overrides)
    return body
