import os
import pathlib
import sys
import tempfile

import pytest


REPO_ROOT = pathlib.Path(__file__).resolve().parents[2]
sys.path.append(str(REPO_ROOT))


def pytest_configure():
    if os.getenv("DATABASE_URL") or os.getenv("SQLALCHEMY_DATABASE_URL"):
        return
    temp_dir = tempfile.mkdtemp(prefix="revpilot-tests-")
    db_path = pathlib.Path(temp_dir) / "pytest.db"
    os.environ["DATABASE_URL"] = f"sqlite:///{db_path}"


class FakeEmailSender:
    def __init__(self, *, fail: bool = False, message_id: str = "msg_test_1"):
        self.fail = fail
        self.message_id = message_id
        self.sent = []

    def send(self, *, to, subject, html_body):
        if self.fail:
            raise RuntimeError("smtp relay down")
        self.sent.append({"to": to, "subject": subject, "html": html_body})
        return self.message_id


@pytest.fixture()
def db_session():
    from backend.app.db import Base, SessionLocal, engine

    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def email_outbox():
    return FakeEmailSender()


@pytest.fixture()
def api_client(db_session, email_outbox):
    from backend.app.api.deps import get_email_sender
    from backend.app.db import get_db
    from backend.app.main import app
    from fastapi.testclient import TestClient

    def _get_test_db():
        yield db_session

    app.dependency_overrides[get_db] = _get_test_db
    app.dependency_overrides[get_email_sender] = lambda: email_outbox
    client = TestClient(app)
    try:
        yield client
    finally:
        app.dependency_overrides.pop(get_db, None)
        app.dependency_overrides.pop(get_email_sender, None)


@pytest.fixture()
def account(db_session):
    from backend.app.models import ConnectedAccount

    row = ConnectedAccount(
        name="Acme SaaS",
        stripe_account_id="acct_acme",
        webhook_secret="whsec_test_secret",
        owner_email="founder@acme.test",
        email_reports_enabled=True,
    )
    db_session.add(row)
    db_session.commit()
    return row


@pytest.fixture()
def member_headers(db_session, account):
    return _membership_headers(db_session, account, "member")


@pytest.fixture()
def viewer_headers(db_session, account):
    return _membership_headers(db_session, account, "viewer")


def _membership_headers(db_session, account, role):
    from backend.app.models import AccountMembership, User

    email = f"{role}@acme.test"
    user = User(email=email, name=role)
    db_session.add(user)
    db_session.flush()
    db_session.add(AccountMembership(account_id=account.id, user_id=user.id, role=role))
    db_session.commit()
    return {"X-User-Email": email}
