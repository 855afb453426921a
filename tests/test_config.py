"""Tests for the config loader."""
import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import DEFAULT_EXTENSIONS, build_config, ensure_uuid, load_config, parse_config_text
from errors import ConfigurationError


class TestParseConfigText:
    def test_key_value_lines(self):
        values = parse_config_text("datadir=/var/lib/ttn\nautoregister=1\n")
        assert values == {"datadir": "/var/lib/ttn", "autoregister": "1"}

    def test_comments_and_blank_lines_skipped(self):
        values = parse_config_text("# comment\n\n   \ndebug=0\n")
        assert values == {"debug": "0"}

    def test_whitespace_stripped(self):
        assert parse_config_text("  key  =  value  ") == {"key": "value"}

    def test_last_occurrence_wins(self):
        assert parse_config_text("a=1\na=2\n") == {"a": "2"}

    def test_value_may_contain_equals(self):
        assert parse_config_text("userauth.captcha.secret=abc=def") == {"userauth.captcha.secret": "abc=def"}

    def test_line_without_equals_skipped(self):
        assert parse_config_text("garbage\nkey=value") == {"key": "value"}


class TestBuildConfig:
    def test_missing_datadir_raises(self, tmp_path):
        with pytest.raises(ConfigurationError):
            build_config(str(tmp_path / "x.conf"), {})

    def test_nonexisting_datadir_raises(self, tmp_path):
        with pytest.raises(ConfigurationError):
            build_config(str(tmp_path / "x.conf"), {"datadir": str(tmp_path / "missing")})

    def test_relative_datadir_resolved_against_config_dir(self, tmp_path, datadir):
        config = build_config(str(tmp_path / "x.conf"), {"datadir": "data"})
        assert config.datadir == str(datadir)

    def test_typed_fields(self, tmp_path, datadir):
        config = build_config(
            str(tmp_path / "x.conf"),
            {
                "datadir": str(datadir),
                "autoregister": "1",
                "threshold.sensorA": "42",
                "userauth.captcha.enable": "1",
            },
        )
        assert config.autoregister is True
        assert config.threshold_for("sensorA") == 42
        assert config.threshold_for("sensorB") is None
        assert config.flag("userauth.captcha.enable") is True
        assert config.flag("userauth.feature.changepw") is False
        assert config.notify_list == os.path.join(str(datadir), "ttn.notify.list")

    def test_non_integer_threshold_raises(self, tmp_path, datadir):
        with pytest.raises(ConfigurationError):
            build_config(str(tmp_path / "x.conf"), {"datadir": str(datadir), "threshold.sensorA": "high"})

    def test_extensions_sorted(self, tmp_path, datadir):
        config = build_config(str(tmp_path / "x.conf"), {"datadir": str(datadir), "extensions": "userauth, rrd"})
        assert config.extensions == ("rrd", "userauth")

    def test_default_extensions(self, tmp_path, datadir):
        config = build_config(str(tmp_path / "x.conf"), {"datadir": str(datadir)})
        assert config.extensions == DEFAULT_EXTENSIONS

    def test_config_is_immutable(self, tmp_path, datadir):
        config = build_config(str(tmp_path / "x.conf"), {"datadir": str(datadir)})
        with pytest.raises(Exception):
            config.autoregister = True

    def test_debug_for_extension(self, tmp_path, datadir):
        config = build_config(str(tmp_path / "x.conf"), {"datadir": str(datadir), "rrd.debug": "1"})
        assert config.debug_for("rrd") is True
        assert config.debug_for("statistics") is False


class TestLoadConfig:
    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_config(str(tmp_path / "missing.conf"))

    def test_load_from_file(self, tmp_path, datadir):
        path = tmp_path / "ttn.conf"
        path.write_text(f"datadir={datadir}\nuuid=abc\n")
        config = load_config(str(path))
        assert config.uuid == "abc"


class TestEnsureUuid:
    def test_existing_uuid_kept(self, config_factory):
        config = config_factory(uuid="fixed")
        assert ensure_uuid(config) is config

    def test_generated_uuid_appended_to_file(self, tmp_path, datadir):
        path = tmp_path / "ttn.conf"
        path.write_text(f"datadir={datadir}\n")
        config = ensure_uuid(load_config(str(path)))

        assert config.uuid
        content = path.read_text()
        assert "# autogenerated UUID at" in content
        assert f"uuid={config.uuid}" in content
        # reload yields the same secret
        assert load_config(str(path)).uuid == config.uuid
