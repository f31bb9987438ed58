import pytest

from app.config import Config, env_bool, is_production_database, resolve_database_url


class TestConfig:
    """Environment-driven settings and the test database guard."""

    @pytest.mark.parametrize(
        "url,expected",
        [
            ("mysql+pymysql://root:pw@nozomi.proxy.rlwy.net:3306/salon", True),
            ("mysql://root:pw@db.production.internal/salon", True),
            ("sqlite:///salon_booking_test.db", False),
            ("", False),
        ],
    )
    def test_is_production_database(self, url, expected):
        assert is_production_database(url) is expected

    def test_refuses_production_database_under_test(self, monkeypatch):
        monkeypatch.setenv("DATABASE_TEST_URL", "mysql://u:p@x.railway.internal/db")
        with pytest.raises(RuntimeError):
            resolve_database_url()

    @pytest.mark.parametrize(
        "raw,expected",
        [("true", True), ("1", True), ("Yes", True), ("false", False), ("0", False)],
    )
    def test_env_bool(self, monkeypatch, raw, expected):
        monkeypatch.setenv("FEATURE_FLAG", raw)
        assert env_bool("FEATURE_FLAG", not expected) is expected

    def test_env_bool_default(self, monkeypatch):
        monkeypatch.delenv("FEATURE_FLAG", raising=False)
        assert env_bool("FEATURE_FLAG", True) is True

    def test_test_config(self):
        config = Config()
        assert config.TESTING is True
        assert config.SCHEDULER_ENABLED is False
        assert config.SQLALCHEMY_DATABASE_URI.startswith("sqlite")
        assert config.SQLALCHEMY_ENGINE_OPTIONS == {"connect_args": {"timeout": 15}}
        assert config.is_safe_for_testing
