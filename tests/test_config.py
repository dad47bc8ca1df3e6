"""Tests for configuration loading."""
import pytest

from keyrelay.config.loader import ConfigLoader
from keyrelay.config.schema import DEFAULT_MODELS, KeyRelayConfig


def test_defaults_without_path():
    config = ConfigLoader().load()

    assert config.upstream.timeout_ms == 60000
    assert config.pool.default_models == DEFAULT_MODELS
    assert config.pool.max_model_attempts == 3
    assert config.storage.flush_interval_ms == 15000
    assert config.max_proxy_keys == 5


def test_load_yaml(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "pool:\n"
        "  default_models: [' m1 ', m2, m1]\n"
        "  external_model_id: relay\n"
        "storage:\n"
        "  key_prefix: test\n"
    )

    config = ConfigLoader(str(path)).load()

    assert config.pool.default_models == ["m1", "m2"]
    assert config.pool.external_model_id == "relay"
    assert config.storage.key_prefix == "test"
    assert config.upstream.probe_timeout_ms == 12000


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        ConfigLoader(str(tmp_path / "absent.yaml")).load()


@pytest.mark.parametrize(
    "text",
    [
        "pool: [unclosed\n",
        "- just\n- a list\n",
        "storage:\n  flush_interval_ms: 10\n",
        "pool:\n  default_models: []\n",
    ],
)
def test_invalid_config_rejected(tmp_path, text):
    path = tmp_path / "config.yaml"
    path.write_text(text)

    with pytest.raises(ValueError):
        ConfigLoader(str(path)).load()


def test_schema_is_self_contained():
    assert KeyRelayConfig().model_dump()["pool"]["fallback_model"] == "qwen-3-235b-a22b-instruct-2507"
