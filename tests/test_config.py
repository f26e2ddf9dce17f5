"""
Tests for config loading and runtime_config.yaml persistence.
"""

import pytest
import yaml

from chatline import config as cfg_mod


@pytest.fixture
def fresh_config(monkeypatch):
    """Isolate the module-level caches."""
    monkeypatch.setattr(cfg_mod, "_config", None)
    monkeypatch.setattr(cfg_mod, "_runtime_config", {})
    monkeypatch.setattr(cfg_mod, "_runtime_mtime", 0.0)


@pytest.fixture
def rt_path(tmp_path, monkeypatch, fresh_config):
    path = tmp_path / "runtime_config.yaml"
    monkeypatch.setattr(cfg_mod, "_RUNTIME_CONFIG_PATH", path)
    return path


# ── config.yaml ───────────────────────────────────────────────────────────────

class TestLoadConfig:
    def test_resolves_env_vars(self, tmp_path, monkeypatch, fresh_config):
        monkeypatch.setenv("OLLAMA_HOST_URL", "http://gpu-box:11434")
        path = tmp_path / "config.yaml"
        path.write_text(
            "backend:\n"
            "  url: ${OLLAMA_HOST_URL}\n"
            "  models: ['${OLLAMA_HOST_URL}/a', 'plain']\n"
            "  timeout: 30\n"
        )
        cfg = cfg_mod.load_config(path)
        assert cfg["backend"]["url"] == "http://gpu-box:11434"
        assert cfg["backend"]["models"] == ["http://gpu-box:11434/a", "plain"]
        assert cfg["backend"]["timeout"] == 30

    def test_unset_env_var_becomes_empty(self, tmp_path, monkeypatch, fresh_config):
        monkeypatch.delenv("CHATLINE_NOT_SET", raising=False)
        path = tmp_path / "config.yaml"
        path.write_text("logging:\n  file: '${CHATLINE_NOT_SET}'\n")
        assert cfg_mod.load_config(path)["logging"]["file"] == ""

    def test_missing_file_raises(self, tmp_path, fresh_config):
        with pytest.raises(FileNotFoundError):
            cfg_mod.load_config(tmp_path / "nope.yaml")

    def test_empty_file_is_defaults(self, tmp_path, fresh_config):
        path = tmp_path / "config.yaml"
        path.write_text("")
        assert cfg_mod.load_config(path) == cfg_mod.DEFAULTS

    def test_partial_file_layers_over_defaults(self, tmp_path, fresh_config):
        path = tmp_path / "config.yaml"
        path.write_text("chat:\n  history_window: 4\n")
        cfg = cfg_mod.load_config(path)
        assert cfg["chat"]["history_window"] == 4
        assert cfg["chat"]["top_p"] == 0.9
        assert cfg["backend"]["url"] == "http://localhost:11434"
        assert cfg_mod.DEFAULTS["chat"]["history_window"] == 12

    def test_get_config_caches(self, tmp_path, monkeypatch, fresh_config):
        path = tmp_path / "config.yaml"
        path.write_text("server:\n  port: 9000\n")
        monkeypatch.setattr(cfg_mod, "_CONFIG_PATH", path)

        first = cfg_mod.get_config()
        path.write_text("server:\n  port: 9001\n")
        assert cfg_mod.get_config() is first

        cfg_mod.reset_config()
        assert cfg_mod.get_config()["server"]["port"] == 9001

    def test_shipped_config_has_every_section(self, fresh_config):
        cfg = cfg_mod.load_config(cfg_mod._ROOT / "config.yaml")
        for section in ("backend", "server", "storage", "chat", "logging"):
            assert section in cfg
        assert cfg["chat"]["history_window"] == 12


# ── runtime_config.yaml ───────────────────────────────────────────────────────

class TestRuntimeConfig:
    def test_missing_file_is_empty(self, rt_path):
        assert cfg_mod.get_runtime_config() == {}

    def test_creates_file_and_runtime_key(self, rt_path):
        assert cfg_mod.update_runtime_config("selected_model", "qwen3:8b") is True
        data = yaml.safe_load(rt_path.read_text())
        assert data["runtime"]["selected_model"] == "qwen3:8b"

    def test_creates_runtime_key_if_missing(self, rt_path):
        rt_path.write_text("# empty\n")
        cfg_mod.update_runtime_config("selected_conversation", "abc")
        assert yaml.safe_load(rt_path.read_text())["runtime"]["selected_conversation"] == "abc"

    def test_preserves_other_keys(self, rt_path):
        rt_path.write_text("runtime:\n  selected_model: llama3.2\n")
        cfg_mod.update_runtime_config("selected_conversation", "abc")
        data = yaml.safe_load(rt_path.read_text())
        assert data["runtime"] == {"selected_model": "llama3.2", "selected_conversation": "abc"}

    def test_update_is_visible_on_next_read(self, rt_path):
        cfg_mod.update_runtime_config("selected_model", "a")
        assert cfg_mod.get_runtime_config()["selected_model"] == "a"
        cfg_mod.update_runtime_config("selected_model", "b")
        assert cfg_mod.get_runtime_config()["selected_model"] == "b"

    def test_bad_yaml_keeps_last_good(self, rt_path):
        rt_path.write_text("runtime:\n  selected_model: good\n")
        assert cfg_mod.get_runtime_config()["selected_model"] == "good"

        rt_path.write_text("runtime: [unclosed\n")
        cfg_mod._runtime_mtime = 0.0
        assert cfg_mod.get_runtime_config()["selected_model"] == "good"

    def test_unwritable_path_returns_false(self, tmp_path, monkeypatch, fresh_config):
        monkeypatch.setattr(cfg_mod, "_RUNTIME_CONFIG_PATH", tmp_path / "missing" / "runtime_config.yaml")
        assert cfg_mod.update_runtime_config("selected_model", "x") is False
