"""Tests for royalty_config: defaults, overrides, validation and the config trace."""

import textwrap

import pytest
import yaml

from royalty_config import get_active_config
from royalty_config.loader import DEFAULTS_PATH, build_settings, load_yaml_file, merge_sections


def _write(tmp_path, text, name="royalty.yaml"):
    path = tmp_path / name
    path.write_text(textwrap.dedent(text))
    return path


class TestDefaults:
    def test_defaults_load(self):
        settings = get_active_config()

        assert settings.database.url == "sqlite:///royalty_mirror.db"
        assert settings.engine.administrator == "0x00000000000000000000000000000000000000ad"
        assert settings.engine.registrants == ()
        assert settings.engine.transfer_timeout_seconds == 30.0
        assert settings.reconciliation.workers == 4
        assert settings.reconciliation.batch_size == 500
        assert settings.reconciliation.max_apply_attempts == 5
        assert settings.logging.level == "INFO"
        assert settings.source == str(DEFAULTS_PATH)

    def test_settings_are_frozen(self):
        settings = get_active_config()

        with pytest.raises(AttributeError):
            settings.reconciliation.workers = 99


class TestOverrides:
    def test_override_merges_per_section(self, tmp_path):
        path = _write(tmp_path, """
            engine:
              registrants:
                - "0x00000000000000000000000000000000000000f1"
            reconciliation:
              workers: 8
        """)

        settings = get_active_config(path)

        assert settings.reconciliation.workers == 8
        assert settings.reconciliation.batch_size == 500
        assert settings.engine.administrator == "0x00000000000000000000000000000000000000ad"
        assert settings.engine.registrants == ("0x00000000000000000000000000000000000000f1",)
        assert settings.source == str(path)

    def test_null_timeout_waits_forever(self, tmp_path):
        path = _write(tmp_path, """
            engine:
              transfer_timeout_seconds: null
        """)

        assert get_active_config(path).engine.transfer_timeout_seconds is None

    def test_empty_override_is_defaults(self, tmp_path):
        path = _write(tmp_path, "")

        assert get_active_config(path).checksum == get_active_config().checksum

    def test_missing_override_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            get_active_config(tmp_path / "absent.yaml")

    def test_invalid_yaml(self, tmp_path):
        path = _write(tmp_path, "engine: [unclosed\n")

        with pytest.raises(yaml.YAMLError):
            get_active_config(path)


class TestValidation:
    def test_unknown_section(self, tmp_path):
        path = _write(tmp_path, """
            metrics:
              enabled: true
        """)

        with pytest.raises(ValueError, match="metrics"):
            get_active_config(path)

    def test_top_level_must_be_mapping(self, tmp_path):
        path = _write(tmp_path, "- just\n- a list\n")

        with pytest.raises(ValueError, match="mapping"):
            load_yaml_file(path)

    @pytest.mark.parametrize(
        "section,key,value",
        [
            ("reconciliation", "workers", 0),
            ("reconciliation", "batch_size", -1),
            ("reconciliation", "max_apply_attempts", True),
            ("engine", "administrator", "0x0000000000000000000000000000000000000000"),
            ("engine", "administrator", ""),
            ("engine", "transfer_timeout_seconds", 0),
            ("engine", "registrants", [None]),
            ("database", "url", ""),
            ("logging", "level", "CHATTY"),
        ],
    )
    def test_rejected_values(self, section, key, value):
        data = merge_sections({}, load_yaml_file(DEFAULTS_PATH))
        data[section][key] = value

        with pytest.raises(ValueError):
            build_settings(data)

    def test_missing_required_key(self):
        data = merge_sections({}, load_yaml_file(DEFAULTS_PATH))
        del data["engine"]["administrator"]

        with pytest.raises(KeyError):
            build_settings(data)


class TestChecksum:
    def test_checksum_is_deterministic(self):
        assert get_active_config().checksum == get_active_config().checksum
        assert len(get_active_config().checksum) == 64

    def test_checksum_tracks_content(self, tmp_path):
        path = _write(tmp_path, """
            reconciliation:
              batch_size: 10
        """)

        assert get_active_config(path).checksum != get_active_config().checksum


class TestConfigTrace:
    def test_load_emits_trace(self, captured_logs):
        settings = get_active_config()

        traces = [r for r in captured_logs() if r["message"] == "ROYALTY_CONFIG_TRACE"]
        assert len(traces) == 1
        assert traces[0]["checksum"] == settings.checksum
        assert traces[0]["source"] == str(DEFAULTS_PATH)
        assert traces[0]["registrant_count"] == 0
