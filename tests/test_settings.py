"""Tests for the YAML settings loader."""
import textwrap

from config.settings import GatewayConfig, Settings, load_settings


def _write(tmp_path, body: str):
    path = tmp_path / "settings.yaml"
    path.write_text(textwrap.dedent(body))
    return str(path)


class TestLoadSettings:

    def test_missing_file_gives_defaults(self, tmp_path, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        settings = load_settings(str(tmp_path / "nope.yaml"))
        assert settings == Settings()
        assert settings.queue.backoff_base_seconds == 60
        assert settings.worker.post_queue_name == "post-submission"

    def test_sections_and_env_substitution(self, tmp_path, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        monkeypatch.setenv("PQ_TEST_DB", "postgresql://u:p@db/postqueue")
        path = _write(tmp_path, """
            app_name: Scheduler
            database:
              url: "${PQ_TEST_DB}"
            queue:
              poll_interval_seconds: 0.5
              job_timeout_seconds: 60
            scheduling:
              default_timezone: Europe/London
        """)

        settings = load_settings(path)
        assert settings.app_name == "Scheduler"
        assert settings.database.url == "postgresql://u:p@db/postqueue"
        assert settings.queue.poll_interval_seconds == 0.5
        assert settings.queue.job_timeout_seconds == 60
        assert settings.queue.default_max_attempts == 3
        assert settings.scheduling.default_timezone == "Europe/London"

    def test_unknown_keys_are_ignored(self, tmp_path, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        path = _write(tmp_path, """
            queue:
              enabled: false
              redis_url: redis://localhost
        """)
        settings = load_settings(path)
        assert settings.queue.enabled is False
        assert not hasattr(settings.queue, "redis_url")

    def test_database_url_env_overrides_file(self, tmp_path, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgresql://override/db")
        path = _write(tmp_path, """
            database:
              url: sqlite:///./other.db
        """)
        assert load_settings(path).database.url == "postgresql://override/db"

    def test_config_path_from_environment(self, tmp_path, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        path = _write(tmp_path, "app_name: FromEnv\n")
        monkeypatch.setenv("POSTQUEUE_CONFIG", path)
        assert load_settings().app_name == "FromEnv"


class TestGatewayConfig:

    def test_unresolved_variable_is_not_configured(self, tmp_path, monkeypatch):
        monkeypatch.delenv("PQ_MISSING_GATEWAY", raising=False)
        path = _write(tmp_path, """
            gateway:
              base_url: "${PQ_MISSING_GATEWAY}"
        """)
        gateway = load_settings(path).gateway
        assert gateway.base_url == "${PQ_MISSING_GATEWAY}"
        assert gateway.configured is False

    def test_empty_url_is_not_configured(self):
        assert GatewayConfig().configured is False
        assert GatewayConfig(base_url="https://gw.example.com").configured is True

    def test_bearer_token_ignores_unresolved_variable(self):
        assert GatewayConfig(api_key="${PQ_MISSING_KEY}").bearer_token == ""
        assert GatewayConfig(api_key="k-123").bearer_token == "k-123"

    def test_endpoint_overrides_merge_with_defaults(self, tmp_path):
        path = _write(tmp_path, """
            gateway:
              base_url: https://gw.example.com
              endpoints:
                submit: /v2/accounts/{account_id}/posts
        """)
        gateway = load_settings(path).gateway
        assert gateway.configured is True
        assert gateway.endpoints["submit"] == "/v2/accounts/{account_id}/posts"
        assert gateway.endpoints["eligibility"] == "/owners/{owner_id}/eligibility"
