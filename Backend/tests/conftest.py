import pytest
from fastapi.testclient import TestClient

from mission_control.config import Settings
from mission_control.main import create_app
from mission_control.schemas.auth import UserCreate, UserRole
from mission_control.services.auth_service import UserService
from mission_control.utils.security import create_access_token

TEST_SECRET = "test-secret-key"
PASSWORD = "correct-horse-battery"


@pytest.fixture
def settings():
    return Settings(
        secret_key=TEST_SECRET,
        database_url="sqlite://",
        audit_backend="file",
        audit_log_path=":memory:",
        audit_cleanup_interval_seconds=0,
        ws_heartbeat_interval_seconds=3600,
        ws_send_timeout_seconds=1.0,
        gateway_cli="openclaw-test-missing",
        log_level="DEBUG",
    )


@pytest.fixture
def app(settings):
    return create_app(settings)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


def make_token(settings, user_id="u-1", username="alice", role="admin", **kwargs):
    return create_access_token({"sub": user_id, "username": username, "role": role}, settings, **kwargs)


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


def drain_audit(client):
    """Block until every pending audit write and broadcast has finished."""
    client.portal.call(client.app.state.audit_recorder.drain)


def audit_entries(client):
    from mission_control.schemas.audit_log import AuditLogQuery

    drain_audit(client)
    store = client.app.state.audit_store
    return client.portal.call(store.query, AuditLogQuery(limit=1000)).logs


@pytest.fixture
def create_user(client, settings):
    """Insert a user directly and return (user, token)."""
    def _create(username, role=UserRole.VIEWER, password=PASSWORD):
        session = client.app.state.session_factory()
        try:
            user = UserService(session, settings).register_user(
                UserCreate(username=username, email=f"{username}@example.com", password=password, role=role)
            )
        finally:
            session.close()
        token = make_token(settings, user_id=user.id, username=user.username, role=user.role.value)
        return user, token
    return _create


@pytest.fixture
def admin(create_user):
    return create_user("admin", UserRole.ADMIN)


@pytest.fixture
def operator(create_user):
    return create_user("operator", UserRole.OPERATOR)


@pytest.fixture
def viewer(create_user):
    return create_user("viewer", UserRole.VIEWER)
