import pytest
from fastapi import HTTPException
from jose import jwt

from recurring_billing.application.services.auth_service import AuthService
from recurring_billing.core.config import Settings
from recurring_billing.domain.models import User


def test_settings_read_environment(monkeypatch, tmp_path):
    monkeypatch.setenv("DATABASE_PATH", str(tmp_path / "db.sqlite"))
    monkeypatch.setenv("ORDER_SERVICE_TIMEOUT", "5")
    monkeypatch.setenv("RENEWAL_RUN_AT", "03:15")
    monkeypatch.setenv("RENEWAL_SCHEDULER_ENABLED", "no")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://shop.example, https://admin.example")

    settings = Settings()

    assert settings.database_path == (tmp_path / "db.sqlite").resolve()
    assert settings.order_service_timeout == 5
    assert settings.renewal_run_at == "03:15"
    assert settings.renewal_scheduler_enabled is False
    assert settings.cors_allow_origins == ["https://shop.example", "https://admin.example"]


def test_settings_reject_malformed_values(monkeypatch):
    monkeypatch.setenv("ORDER_SERVICE_TIMEOUT", "soon")
    with pytest.raises(RuntimeError):
        Settings()

    monkeypatch.setenv("ORDER_SERVICE_TIMEOUT", "5")
    monkeypatch.setenv("RENEWAL_SCHEDULER_ENABLED", "maybe")
    with pytest.raises(RuntimeError):
        Settings()


def test_token_round_trip():
    service = AuthService("test-secret")
    token = service.create_token(User(id="admin-1", role="admin", email="ops@example.com"))

    user = service.verify_token(token)

    assert user.id == "admin-1"
    assert user.is_admin
    assert user.email == "ops@example.com"


def test_token_without_role_is_a_regular_user():
    token = jwt.encode({"sub": "user-1"}, "test-secret", algorithm="HS256")
    user = AuthService("test-secret").verify_token(token)
    assert not user.is_admin


def test_invalid_tokens_are_rejected():
    service = AuthService("test-secret")
    foreign = jwt.encode({"sub": "user-1"}, "other-secret", algorithm="HS256")
    anonymous = jwt.encode({"role": "admin"}, "test-secret", algorithm="HS256")

    for token in (foreign, anonymous, "garbage"):
        with pytest.raises(HTTPException) as excinfo:
            service.verify_token(token)
        assert excinfo.value.status_code == 401


def test_secret_is_required():
    with pytest.raises(RuntimeError):
        AuthService("")
