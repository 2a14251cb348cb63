"""
Counting configuration: schema validation, YAML loading and the
``get_active_config`` resolution order.
"""

from decimal import Decimal

import pytest
import yaml

from tally_config import (
    CONFIG_ENV_VAR,
    CountingConfig,
    compute_checksum,
    get_active_config,
    load_counting_config,
    load_yaml_file,
)


def _write(tmp_path, document, name="tally.yaml"):
    path = tmp_path / name
    path.write_text(yaml.safe_dump(document))
    return path


class TestCountingConfigSchema:

    def test_defaults(self):
        config = CountingConfig()
        assert config.severity_low_max == Decimal("1")
        assert config.severity_medium_max == Decimal("5")
        assert config.accuracy_threshold_percent == Decimal("90")
        assert config.divergence_threshold_percent == Decimal("10")
        assert config.require_supervisor_for_audit
        assert config.elevated_roles == ("supervisor", "manager", "admin")
        assert config.allow_extra_item_creation

    def test_numbers_become_decimals(self):
        config = CountingConfig(severity_low_max=0.5, accuracy_threshold_percent=95)
        assert config.severity_low_max == Decimal("0.5")
        assert isinstance(config.accuracy_threshold_percent, Decimal)

    @pytest.mark.parametrize("kwargs", [
        {"severity_low_max": -1},
        {"severity_low_max": 6, "severity_medium_max": 5},
        {"accuracy_threshold_percent": 101},
        {"divergence_threshold_percent": -0.1},
        {"elevated_roles": ()},
    ])
    def test_invalid_values(self, kwargs):
        with pytest.raises(ValueError):
            CountingConfig(**kwargs)

    def test_empty_roles_allowed_without_audit_gate(self):
        config = CountingConfig(require_supervisor_for_audit=False, elevated_roles=())
        assert config.elevated_roles == ()

    def test_from_dict(self):
        config = CountingConfig.from_dict({"severity_medium_max": "8", "elevated_roles": ["lead"]})
        assert config.severity_medium_max == Decimal("8")
        assert config.elevated_roles == ("lead",)


class TestLoader:

    def test_loads_counting_section(self, tmp_path):
        path = _write(tmp_path, {"counting": {
            "accuracy_threshold_percent": 95,
            "elevated_roles": ["auditor"],
            "allow_extra_item_creation": False,
        }})
        config = load_counting_config(path)

        assert config.accuracy_threshold_percent == Decimal("95")
        assert config.elevated_roles == ("auditor",)
        assert not config.allow_extra_item_creation
        assert config.severity_low_max == Decimal("1")

    def test_missing_section_gives_defaults(self, tmp_path):
        assert load_counting_config(_write(tmp_path, {"other": 1})) == CountingConfig()

    def test_unknown_key_rejected(self, tmp_path):
        path = _write(tmp_path, {"counting": {"accuracy_treshold_percent": 95}})
        with pytest.raises(ValueError, match="accuracy_treshold_percent"):
            load_counting_config(path)

    def test_non_mapping_document(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ValueError, match="mapping"):
            load_yaml_file(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_counting_config(tmp_path / "absent.yaml")

    def test_checksum_ignores_key_order(self):
        assert compute_checksum({"a": 1, "b": 2}) == compute_checksum({"b": 2, "a": 1})
        assert compute_checksum({"a": 1}) != compute_checksum({"a": 2})

    def test_load_is_logged(self, tmp_path, captured_logs):
        path = _write(tmp_path, {"counting": {}})
        load_counting_config(path)
        loaded = [r for r in captured_logs() if r["message"] == "counting_config_loaded"]
        assert loaded[0]["path"] == str(path)
        assert len(loaded[0]["checksum"]) == 64


class TestActiveConfig:

    def test_packaged_defaults(self, monkeypatch, captured_logs):
        monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
        assert get_active_config() == CountingConfig()
        trace = [r for r in captured_logs() if r["message"] == "TALLY_CONFIG_TRACE"]
        assert trace[0]["source"] == "packaged_defaults"

    def test_environment_variable(self, tmp_path, monkeypatch):
        path = _write(tmp_path, {"counting": {"severity_medium_max": 9}})
        monkeypatch.setenv(CONFIG_ENV_VAR, str(path))
        assert get_active_config().severity_medium_max == Decimal("9")

    def test_argument_wins_over_environment(self, tmp_path, monkeypatch):
        env_file = _write(tmp_path, {"counting": {"severity_medium_max": 9}}, "env.yaml")
        arg_file = _write(tmp_path, {"counting": {"severity_medium_max": 7}}, "arg.yaml")
        monkeypatch.setenv(CONFIG_ENV_VAR, str(env_file))
        assert get_active_config(arg_file).severity_medium_max == Decimal("7")
