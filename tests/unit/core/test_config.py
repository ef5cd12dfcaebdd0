"""Unit tests for configuration system.

Tests for Pydantic configuration models including validation logic,
environment variable resolution and YAML loading.
"""

from pathlib import Path

import pytest
from pydantic import ValidationError

from fax_dispatch.core.config import (
    ENV_VAR_PATTERN,
    ApplicationConfig,
    BackendConfig,
    ConfigurationError,
    DispatchConfig,
    EnvironmentVariableError,
    MainConfig,
    StorageConfig,
    StorageKind,
    load_main_config,
    resolve_env_var,
    resolve_env_vars_in_dict,
)

EXAMPLE_CONFIG = Path(__file__).parents[3] / "config" / "fax-dispatch.example.yaml"


@pytest.mark.unit
class TestBackendConfig:
    """Test BackendConfig validation and defaults."""

    def test_trailing_slash_stripped(self) -> None:
        config = BackendConfig(base_url="https://fax.example.com/api/")
        assert config.base_url == "https://fax.example.com/api"

    def test_default_values(self) -> None:
        config = BackendConfig(base_url="https://fax.example.com/api")
        assert config.request_timeout == 30.0
        assert config.read_retries == 3
        assert config.password.get_secret_value() == ""

    def test_password_hidden_in_repr(self) -> None:
        config = BackendConfig(base_url="https://fax.example.com/api", username="ops", password="hunter2")
        assert "hunter2" not in repr(config)
        assert config.password.get_secret_value() == "hunter2"

    @pytest.mark.parametrize("base_url", ["fax.example.com", "ftp://fax.example.com", "https://"])
    def test_invalid_base_url(self, base_url: str) -> None:
        with pytest.raises(ValidationError):
            _ = BackendConfig(base_url=base_url)

    def test_extra_fields_rejected(self) -> None:
        with pytest.raises(ValidationError, match="extra"):
            _ = BackendConfig.model_validate({"base_url": "https://x.example.com", "api_key": "k"})


@pytest.mark.unit
class TestDispatchConfig:
    def test_default_values(self) -> None:
        config = DispatchConfig()
        assert config.max_concurrent == 10
        assert config.chunk_size == 100
        assert config.poll_interval == 5.0
        assert config.max_poll_attempts == 120
        assert config.default_priority == "Normal"
        assert config.cancel_monitors_on_stop is False

    @pytest.mark.parametrize(
        "overrides",
        [
            {"max_concurrent": 0},
            {"chunk_size": 0},
            {"chunk_size": 100_001},
            {"poll_interval": 0},
            {"max_poll_attempts": 0},
            {"default_priority": ""},
        ],
    )
    def test_invalid_values(self, overrides: dict[str, object]) -> None:
        with pytest.raises(ValidationError):
            _ = DispatchConfig.model_validate(overrides)


@pytest.mark.unit
class TestOtherSections:
    def test_storage_defaults(self) -> None:
        config = StorageConfig()
        assert config.kind == StorageKind.SQLITE
        assert config.database_path == Path("data/fax-dispatch.db")

    def test_storage_kind_from_string(self) -> None:
        assert StorageConfig.model_validate({"kind": "memory"}).kind == StorageKind.MEMORY

    def test_log_level_pattern(self) -> None:
        assert ApplicationConfig(log_level="DEBUG").log_level == "DEBUG"
        with pytest.raises(ValidationError):
            _ = ApplicationConfig(log_level="VERBOSE")

    def test_main_config_requires_backend(self) -> None:
        with pytest.raises(ValidationError, match="backend"):
            _ = MainConfig.model_validate({})


@pytest.mark.unit
class TestEnvironmentVariables:
    def test_pattern_matches_upper_snake_case(self) -> None:
        assert ENV_VAR_PATTERN.fullmatch("${FAX_PASSWORD_2}") is not None
        assert ENV_VAR_PATTERN.fullmatch("${fax_password}") is None

    def test_resolve_env_var(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("FAX_HOST", "fax.example.com")
        assert resolve_env_var("https://${FAX_HOST}/api") == "https://fax.example.com/api"

    def test_missing_variable_names_it(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("FAX_MISSING", raising=False)
        with pytest.raises(EnvironmentVariableError, match="FAX_MISSING"):
            _ = resolve_env_var("${FAX_MISSING}")

    def test_nested_resolution(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("FAX_USER", "ops")
        data = {
            "backend": {"username": "${FAX_USER}", "read_retries": 3},
            "tags": ["${FAX_USER}", 1],
        }
        assert resolve_env_vars_in_dict(data) == {
            "backend": {"username": "ops", "read_retries": 3},
            "tags": ["ops", 1],
        }


@pytest.mark.unit
class TestLoadMainConfig:
    def test_load_example_config(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("FAX_USERNAME", "ops")
        monkeypatch.setenv("FAX_PASSWORD", "hunter2")

        config = load_main_config(EXAMPLE_CONFIG)

        assert config.backend.username == "ops"
        assert config.backend.password.get_secret_value() == "hunter2"
        assert config.dispatch.max_concurrent == 10

    def test_minimal_config(self, tmp_path: Path) -> None:
        config_file = tmp_path / "fax-dispatch.yaml"
        _ = config_file.write_text(
            "backend:\n  base_url: https://fax.example.com/api\nstorage:\n  kind: memory\n",
            encoding="utf-8",
        )

        config = load_main_config(config_file)

        assert config.backend.base_url == "https://fax.example.com/api"
        assert config.storage.kind == StorageKind.MEMORY
        assert config.metrics.enabled is True

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError, match="Configuration file not found"):
            _ = load_main_config(tmp_path / "absent.yaml")

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        config_file = tmp_path / "broken.yaml"
        _ = config_file.write_text("backend: [unclosed\n", encoding="utf-8")
        with pytest.raises(ConfigurationError, match="Failed to parse YAML"):
            _ = load_main_config(config_file)

    def test_non_mapping_root(self, tmp_path: Path) -> None:
        config_file = tmp_path / "list.yaml"
        _ = config_file.write_text("- one\n- two\n", encoding="utf-8")
        with pytest.raises(ConfigurationError, match="Expected YAML dictionary"):
            _ = load_main_config(config_file)

    def test_unset_variable(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("FAX_UNSET_PASSWORD", raising=False)
        config_file = tmp_path / "fax-dispatch.yaml"
        _ = config_file.write_text(
            "backend:\n  base_url: https://fax.example.com/api\n  password: ${FAX_UNSET_PASSWORD}\n",
            encoding="utf-8",
        )
        with pytest.raises(ConfigurationError, match="FAX_UNSET_PASSWORD"):
            _ = load_main_config(config_file)

    def test_validation_error_names_field(self, tmp_path: Path) -> None:
        config_file = tmp_path / "fax-dispatch.yaml"
        _ = config_file.write_text(
            "backend:\n  base_url: https://fax.example.com/api\ndispatch:\n  max_concurrent: 0\n",
            encoding="utf-8",
        )
        with pytest.raises(ConfigurationError) as exc_info:
            _ = load_main_config(config_file)
        message = str(exc_info.value)
        assert "Field: dispatch → max_concurrent" in message
        assert str(config_file) in message
