"""
Tests for configuration merging.

Covers:
  - Sparse, order-dependent overrides across files and directories
  - Deterministic directory expansion
  - ConfigError reporting with the offending path
  - Go-style duration parsing and formatting
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from pydantic import ValidationError

from esm.config import (
    ConfigSource,
    EffectiveConfig,
    default_config,
    format_duration,
    merge,
    parse_duration,
)
from esm.errors import ConfigError


def _file(path: str) -> ConfigSource:
    return ConfigSource("file", path)


def _dir(path: str) -> ConfigSource:
    return ConfigSource("dir", path)


# ---------------------------------------------------------------------------
# Merge precedence
# ---------------------------------------------------------------------------


class TestMerge:
    def test_no_sources_returns_base(self, base_config) -> None:
        assert merge(base_config, []) == base_config

    def test_sparse_files_combine(self, base_config, write_file) -> None:
        a = write_file("a.hcl", 'service = "x"\n')
        b = write_file("b.hcl", 'leader_key = "y"\n')

        config = merge(base_config, [_file(a), _file(b)])

        assert config.service == "x"
        assert config.leader_key == "y"
        assert config.log_level == "INFO"

    def test_later_source_wins(self, base_config, write_file) -> None:
        a = write_file("a.hcl", 'service = "first"\nlog_level = "debug"\n')
        b = write_file("b.hcl", 'service = "second"\n')

        assert merge(base_config, [_file(a), _file(b)]).service == "second"
        assert merge(base_config, [_file(b), _file(a)]).service == "first"

    def test_unspecified_fields_keep_earlier_values(self, base_config, write_file) -> None:
        a = write_file("a.hcl", 'datacenter = "dc1"\nenable_syslog = true\n')
        b = write_file("b.hcl", 'service = "web"\n')

        config = merge(base_config, [_file(a), _file(b)])

        assert config.datacenter == "dc1"
        assert config.enable_syslog is True
        assert config.service == "web"

    def test_json_file(self, base_config, write_file) -> None:
        path = write_file("conf.json", '{"service": "json-svc", "redis_port": 6380}')

        config = merge(base_config, [_file(path)])

        assert config.service == "json-svc"
        assert config.redis_port == 6380

    def test_durations_and_normalisation(self, base_config, write_file) -> None:
        path = write_file(
            "conf.hcl",
            'node_reconnect_timeout = "1h30m"\nnode_probe_interval = 5\nlog_level = "warn"\n',
        )

        config = merge(base_config, [_file(path)])

        assert config.node_reconnect_timeout == timedelta(hours=1, minutes=30)
        assert config.node_probe_interval == timedelta(seconds=5)
        assert config.log_level == "WARN"

    def test_merge_is_deterministic(self, base_config, write_file, tmp_path) -> None:
        a = write_file("a.hcl", 'service = "x"\n')
        write_file("d/10-b.hcl", 'leader_key = "y"\n')
        write_file("d/20-c.json", '{"leader_key": "z"}')
        sources = [_file(a), _dir(str(tmp_path / "d"))]

        assert merge(base_config, sources) == merge(base_config, sources)

    def test_base_is_not_modified(self, base_config, write_file) -> None:
        path = write_file("a.hcl", 'service = "changed"\n')

        merge(base_config, [_file(path)])

        assert base_config.service == "consul-esm"


# ---------------------------------------------------------------------------
# Directory sources
# ---------------------------------------------------------------------------


class TestDirectorySources:
    def test_files_applied_in_name_order(self, base_config, tmp_path) -> None:
        conf_dir = tmp_path / "conf.d"
        conf_dir.mkdir()
        (conf_dir / "20-late.hcl").write_text('service = "late"\n')
        (conf_dir / "10-early.json").write_text('{"service": "early", "datacenter": "dc2"}')

        config = merge(base_config, [_dir(str(conf_dir))])

        assert config.service == "late"
        assert config.datacenter == "dc2"

    def test_non_config_files_ignored(self, base_config, tmp_path) -> None:
        conf_dir = tmp_path / "conf.d"
        conf_dir.mkdir()
        (conf_dir / "notes.txt").write_text("this is not hcl {{{")
        (conf_dir / "nested.hcl").mkdir()
        (conf_dir / "svc.hcl").write_text('service = "svc"\n')

        assert merge(base_config, [_dir(str(conf_dir))]).service == "svc"

    def test_directory_applied_before_next_file(self, base_config, tmp_path) -> None:
        conf_dir = tmp_path / "conf.d"
        conf_dir.mkdir()
        (conf_dir / "zz.hcl").write_text('service = "from-dir"\n')
        later = tmp_path / "later.hcl"
        later.write_text('service = "from-file"\n')

        config = merge(base_config, [_dir(str(conf_dir)), _file(str(later))])

        assert config.service == "from-file"

    def test_empty_directory(self, base_config, tmp_path) -> None:
        assert merge(base_config, [_dir(str(tmp_path))]) == base_config

    def test_file_flag_accepts_directory(self, base_config, tmp_path) -> None:
        (tmp_path / "a.hcl").write_text('service = "x"\n')

        assert merge(base_config, [_file(str(tmp_path))]).service == "x"

    def test_dir_flag_accepts_file(self, base_config, write_file) -> None:
        path = write_file("a.hcl", 'service = "x"\n')

        assert merge(base_config, [_dir(path)]).service == "x"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class TestMergeErrors:
    def test_missing_directory(self, base_config, tmp_path) -> None:
        missing = str(tmp_path / "missing")

        with pytest.raises(ConfigError) as exc_info:
            merge(base_config, [_dir(missing)])

        assert exc_info.value.path == missing
        assert missing in str(exc_info.value)

    def test_missing_file(self, base_config, tmp_path) -> None:
        missing = str(tmp_path / "missing.hcl")

        with pytest.raises(ConfigError) as exc_info:
            merge(base_config, [_file(missing)])

        assert exc_info.value.path == missing

    def test_unknown_key(self, base_config, write_file) -> None:
        path = write_file("bad.hcl", 'no_such_option = "x"\n')

        with pytest.raises(ConfigError) as exc_info:
            merge(base_config, [_file(path)])

        assert exc_info.value.path == path
        assert "unknown key 'no_such_option'" in str(exc_info.value)

    def test_type_mismatch(self, base_config, write_file) -> None:
        path = write_file("bad.hcl", 'redis_port = "not-a-port"\n')

        with pytest.raises(ConfigError, match="redis_port"):
            merge(base_config, [_file(path)])

    def test_invalid_duration(self, base_config, write_file) -> None:
        path = write_file("bad.hcl", 'node_reconnect_timeout = "soon"\n')

        with pytest.raises(ConfigError, match="node_reconnect_timeout"):
            merge(base_config, [_file(path)])

    def test_parse_error(self, base_config, write_file) -> None:
        path = write_file("broken.json", '{"service": ')

        with pytest.raises(ConfigError, match="parse error"):
            merge(base_config, [_file(path)])

    def test_stops_at_first_failure(self, base_config, write_file) -> None:
        good = write_file("good.hcl", 'service = "x"\n')
        bad = write_file("bad.hcl", 'bogus = 1\n')
        never = write_file("never.hcl", "this is { not valid")

        with pytest.raises(ConfigError) as exc_info:
            merge(base_config, [_file(good), _file(bad), _file(never)])

        assert exc_info.value.path == bad


# ---------------------------------------------------------------------------
# Model and durations
# ---------------------------------------------------------------------------


class TestEffectiveConfig:
    def test_frozen(self, base_config) -> None:
        with pytest.raises(ValidationError):
            base_config.service = "other"

    def test_defaults(self) -> None:
        config = EffectiveConfig()
        assert config.datacenter == ""
        assert config.node_reconnect_timeout == timedelta(hours=72)
        assert config.instance_id

    def test_default_config_reads_redis_env(self, monkeypatch) -> None:
        monkeypatch.setenv("REDIS_HOST", "cache.internal")
        monkeypatch.setenv("REDIS_PORT", "6390")
        monkeypatch.delenv("REDIS_DB", raising=False)

        config = default_config()

        assert config.redis_host == "cache.internal"
        assert config.redis_port == 6390
        assert config.redis_db == 0

    def test_default_config_rejects_malformed_env(self, monkeypatch) -> None:
        monkeypatch.setenv("REDIS_PORT", "abc")

        with pytest.raises(ConfigError) as exc_info:
            default_config()

        assert exc_info.value.path == "environment"
        assert "redis_port" in str(exc_info.value)

    def test_rejects_non_positive_duration(self) -> None:
        with pytest.raises(ValidationError):
            EffectiveConfig(node_probe_interval=0)


class TestDurations:
    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("72h", timedelta(hours=72)),
            ("1h30m", timedelta(hours=1, minutes=30)),
            ("500ms", timedelta(milliseconds=500)),
            ("1.5s", timedelta(seconds=1.5)),
            ("0", timedelta(0)),
        ],
    )
    def test_parse(self, text: str, expected: timedelta) -> None:
        assert parse_duration(text) == expected

    @pytest.mark.parametrize("text", ["", "h", "10", "10x", "1h-5m"])
    def test_parse_invalid(self, text: str) -> None:
        with pytest.raises(ValueError):
            parse_duration(text)

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            (timedelta(hours=72), "72h0m0s"),
            (timedelta(minutes=1, seconds=30), "1m30s"),
            (timedelta(seconds=10), "10s"),
            (timedelta(milliseconds=1500), "1.5s"),
            (timedelta(milliseconds=250), "250ms"),
            (timedelta(0), "0s"),
        ],
    )
    def test_format(self, value: timedelta, expected: str) -> None:
        assert format_duration(value) == expected
