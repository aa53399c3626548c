"""Tests for YAML settings loading and env substitution."""

from config.settings import Settings, load_settings, settings_from_dict


class TestDefaults:
    def test_defaults(self):
        s = Settings()
        assert s.queue.backend == "memory"
        assert s.queue.visibility_timeout == 90.0
        assert s.dispatch.concurrency_for("email") == 5
        assert s.dispatch.concurrency_for("sms") == 5
        assert s.dispatch.shutdown_timeout == 30.0
        assert s.retry.max_attempts == 3
        assert s.retry.base_delay == 1.0
        assert s.quota.default_limit == 200
        assert s.providers["email"].provider == "mock"

    def test_missing_file_gives_defaults(self, data_dir):
        s = load_settings(f"{data_dir}/absent.yaml")
        assert s.app_name == "MessageDispatch"


class TestSettingsFromDict:
    def test_sections(self):
        s = settings_from_dict({
            "log_level": "debug",
            "queue": {"backend": "sql", "visibility_timeout": "45"},
            "retry": {"max_attempts": 5},
            "quota": {"window": "hour", "tenant_limits": {"vip": "1000"}},
            "providers": {"sms": {"provider": "none"}},
        })
        assert s.log_level == "DEBUG"
        assert s.queue.backend == "sql"
        assert s.queue.visibility_timeout == 45.0
        assert s.retry.max_attempts == 5
        assert s.retry.base_delay == 1.0
        assert s.quota.window == "hour"
        assert s.quota.tenant_limits == {"vip": 1000}
        assert s.providers["sms"].provider == "none"
        assert s.providers["email"].provider == "mock"

    def test_scalar_concurrency_applies_to_every_class(self):
        s = settings_from_dict({"dispatch": {"concurrency": 8}})
        assert s.dispatch.concurrency_for("email") == 8
        assert s.dispatch.concurrency_for("sms") == 8

    def test_per_class_concurrency(self):
        s = settings_from_dict({"dispatch": {"concurrency": {"sms": 2}}})
        assert s.dispatch.concurrency_for("email") == 5
        assert s.dispatch.concurrency_for("sms") == 2

    def test_env_substitution(self, monkeypatch):
        monkeypatch.setenv("SMTP_HOST", "mail.acme.io")
        s = settings_from_dict({
            "providers": {"email": {"provider": "smtp", "credentials": {
                "smtp_host": "${SMTP_HOST}",
                "password": "${UNSET_SECRET_VAR}",
            }}},
        })
        creds = s.providers["email"].credentials
        assert creds["smtp_host"] == "mail.acme.io"
        assert creds["password"] == "${UNSET_SECRET_VAR}"


class TestLoadSettings:
    def test_yaml_file(self, data_dir, monkeypatch):
        monkeypatch.setenv("REDIS_URL", "redis://cache:6379/2")
        path = f"{data_dir}/settings.yaml"
        with open(path, "w") as f:
            f.write(
                "queue:\n"
                "  backend: redis\n"
                "  redis_url: ${REDIS_URL}\n"
                "dispatch:\n"
                "  shutdown_timeout: 10\n"
            )
        s = load_settings(path)
        assert s.queue.backend == "redis"
        assert s.queue.redis_url == "redis://cache:6379/2"
        assert s.dispatch.shutdown_timeout == 10.0

    def test_config_path_from_env(self, data_dir, monkeypatch):
        path = f"{data_dir}/other.yaml"
        with open(path, "w") as f:
            f.write("app_name: Elsewhere\n")
        monkeypatch.setenv("DISPATCH_CONFIG", path)
        assert load_settings().app_name == "Elsewhere"

    def test_bundled_settings_parse(self, monkeypatch):
        monkeypatch.delenv("DISPATCH_CONFIG", raising=False)
        s = load_settings()
        assert s.providers["email"].provider == "smtp"
        assert s.providers["sms"].credentials["from_number"]
        assert s.dispatch.concurrency_for("email") == 5
