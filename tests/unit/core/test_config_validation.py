import pytest
from pydantic import ValidationError

from app.shared.core.config import Settings

SECURE = "x" * 32


def _settings(**overrides):
    base = {
        "_env_file": None,
        "TESTING": False,
        "ENVIRONMENT": "development",
        "DATABASE_URL": "postgresql+asyncpg://localhost/parley",
        "AUTH_JWT_SECRET": SECURE,
        "ENCRYPTION_KEY": SECURE,
        "GATEWAY_SECRET_KEY": "sk_live",
        "GATEWAY_WEBHOOK_SECRET": "whsec_live",
    }
    base.update(overrides)
    return Settings(**base)


def test_complete_configuration_is_accepted():
    settings = _settings()

    assert settings.WEBHOOK_MAX_ATTEMPTS == 5
    assert settings.BILLING_DUNNING_MAX_FAILURES == 3
    assert settings.is_production is False


@pytest.mark.parametrize(
    "overrides,message",
    [
        ({"AUTH_JWT_SECRET": "short"}, "AUTH_JWT_SECRET"),
        ({"ENCRYPTION_KEY": None}, "ENCRYPTION_KEY"),
        ({"DATABASE_URL": None}, "DATABASE_URL"),
        ({"GATEWAY_SECRET_KEY": None}, "GATEWAY_SECRET_KEY"),
        ({"GATEWAY_WEBHOOK_SECRET": None}, "GATEWAY_WEBHOOK_SECRET"),
        ({"ENVIRONMENT": "production", "DB_SSL_MODE": "disable"}, "DB_SSL_MODE"),
        (
            {"ENVIRONMENT": "production", "DB_SSL_MODE": "require", "GATEWAY_API_BASE_URL": "http://gw"},
            "HTTPS",
        ),
    ],
)
def test_runtime_requirements(overrides, message):
    with pytest.raises(ValidationError, match=message):
        _settings(**overrides)


@pytest.mark.parametrize(
    "overrides,message",
    [
        ({"BILLING_DUNNING_MAX_FAILURES": 0}, "BILLING_DUNNING_MAX_FAILURES"),
        ({"WEBHOOK_MAX_ATTEMPTS": 0}, "WEBHOOK_MAX_ATTEMPTS"),
        ({"WEBHOOK_RETRY_BASE_SECONDS": 0}, "WEBHOOK_RETRY_BASE_SECONDS"),
        ({"WEBHOOK_RETRY_MAX_SECONDS": 30}, "WEBHOOK_RETRY_MAX_SECONDS"),
        ({"BILLING_CYCLE_DAYS": 0}, "BILLING_CYCLE_DAYS"),
    ],
)
def test_billing_policy_checked_even_in_tests(overrides, message):
    with pytest.raises(ValidationError, match=message):
        _settings(TESTING=True, **overrides)


def test_testing_mode_skips_secret_checks():
    settings = _settings(TESTING=True, AUTH_JWT_SECRET=None, DATABASE_URL=None)

    assert settings.TESTING is True


def test_testing_rejected_in_production():
    with pytest.raises(ValidationError, match="TESTING must be false"):
        _settings(TESTING=True, ENVIRONMENT="production")
