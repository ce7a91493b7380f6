"""Tests for the YAML settings loader."""
import pytest

from config.settings import EngineConfig, get_settings, load_settings, reset_settings


@pytest.fixture(autouse=True)
def fresh_settings():
    reset_settings()
    yield
    reset_settings()


def write_yaml(tmp_path, text: str) -> str:
    path = tmp_path / "settings.yaml"
    path.write_text(text)
    return str(path)


class TestLoadSettings:
    def test_defaults_without_file(self, tmp_path):
        settings = load_settings(str(tmp_path / "missing.yaml"))
        assert settings.engine == EngineConfig()
        assert settings.database.store_backend == "memory"
        assert settings.channels == {}

    def test_sections_and_unknown_keys(self, tmp_path):
        path = write_yaml(tmp_path, """
engine:
  max_steps: 12
  timezone: UTC
  legacy_option: ignored
database:
  store_backend: file
  store_file_dir: /tmp/flows
channels:
  whatsapp:
    enabled: true
    credentials:
      phone_number_id: "123"
""")
        settings = load_settings(path)
        assert settings.engine.max_steps == 12
        assert settings.engine.timezone == "UTC"
        assert settings.engine.default_contact_name == "Cliente"
        assert settings.database.store_file_dir == "/tmp/flows"
        assert settings.channels["whatsapp"].enabled is True
        assert settings.channels["whatsapp"].credentials == {"phone_number_id": "123"}

    def test_env_references_are_expanded_and_coerced(self, tmp_path, monkeypatch):
        monkeypatch.setenv("FLOW_MAX_STEPS", "7")
        monkeypatch.setenv("LLM_KEY", "sk-test")
        monkeypatch.setenv("DB_ECHO", "true")
        path = write_yaml(tmp_path, """
engine:
  max_steps: ${FLOW_MAX_STEPS}
llm:
  api_key: ${LLM_KEY}
database:
  echo: ${DB_ECHO}
backend:
  base_url: ${UNSET_BACKEND_URL}
""")
        settings = load_settings(path)
        assert settings.engine.max_steps == 7
        assert settings.llm.api_key == "sk-test"
        assert settings.database.echo is True
        assert settings.backend.base_url == "${UNSET_BACKEND_URL}"

    def test_config_path_from_environment(self, tmp_path, monkeypatch):
        monkeypatch.setenv("FLOW_ENGINE_CONFIG", write_yaml(tmp_path, "app_name: Vendas\n"))
        assert get_settings().app_name == "Vendas"
        assert get_settings() is get_settings()
