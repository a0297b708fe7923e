"""Tests for configuration loading and target parsing."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from pgboundary.common.exceptions import ConfigurationError, TargetNotFoundError
from pgboundary.config import (
    DEFAULT_AUTH_METHOD,
    Target,
    default_config_locations,
    derive_database_name,
    load_config,
    load_config_from_default_locations,
    read_pgbouncer_settings,
)


class TestDeriveDatabaseName:
    """Database names derived from broker target identifiers."""

    @pytest.mark.parametrize(
        "target,expected",
        [
            ("app1-ro", "app1"),
            ("app1-rw", "app1"),
            ("app1", "app1"),
            ("billing-api-ro", "billingapi"),
        ],
    )
    def test_derive_database_name(self, target, expected):
        assert derive_database_name(target) == expected


class TestTargetParse:
    """Parsing of ``key=value`` target definitions."""

    def test_minimal_target(self):
        target = Target.parse("app1", "host=https://boundary.example.com target=app1-ro")

        assert target.name == "app1"
        assert target.host == "https://boundary.example.com"
        assert target.target == "app1-ro"
        assert target.database == "app1"
        assert target.auth is None
        assert target.scope is None

    def test_full_target(self):
        target = Target.parse(
            "app2",
            "host=https://boundary.example-two.com target=app2-ro "
            "database=custom_db auth=auth1 scope=scope1",
        )

        assert target.database == "custom_db"
        assert target.auth == "auth1"
        assert target.scope == "scope1"

    def test_unknown_keys_are_ignored(self):
        target = Target.parse(
            "app1", "host=https://boundary.example.com target=app1 color=blue stray"
        )
        assert target.database == "app1"

    @pytest.mark.parametrize(
        "value",
        [
            "target=app1-ro",
            "host=https://boundary.example.com",
            "",
        ],
    )
    def test_missing_required_fields(self, value):
        with pytest.raises(ConfigurationError, match="host and target"):
            Target.parse("broken", value)

    def test_host_must_be_https(self):
        with pytest.raises(ConfigurationError, match="https://"):
            Target.parse("app1", "host=http://boundary.example.com target=app1-ro")

    def test_target_is_immutable(self):
        target = Target.parse("app1", "host=https://boundary.example.com target=app1-ro")
        with pytest.raises(ValidationError):
            target.database = "other"  # type: ignore[misc]


class TestReadPgbouncerSettings:
    """Line based scan of pgbouncer.ini."""

    def test_skips_includes_and_other_sections(self, tmp_path):
        conf = tmp_path / "pgbouncer.ini"
        conf.write_text(
            "%include /tmp/somewhere.ini\n"
            "[databases]\n"
            "pidfile = wrong.pid\n"
            "[pgbouncer]\n"
            "; comment\n"
            "pidfile = pgbouncer.pid\n"
            "auth_file = userlist.txt\n"
            "%include /tmp/other.ini\n"
        )

        settings = read_pgbouncer_settings(conf)

        assert settings == {"pidfile": "pgbouncer.pid", "auth_file": "userlist.txt"}

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="pgbouncer config"):
            read_pgbouncer_settings(tmp_path / "missing.ini")


class TestLoadConfig:
    """Loading a complete pgboundary.ini."""

    def test_load_config(self, workspace: Path):
        config = load_config(workspace / "pgboundary.ini")

        work_dir = (workspace / "work").resolve()
        assert config.proxy.workdir == work_dir
        assert config.proxy.conffile == work_dir / "pgbouncer.ini"
        assert config.proxy.pidfile == work_dir / "pgbouncer.pid"
        assert config.proxy.auth_file == "userlist.txt"
        assert config.proxy.binary == "pgbouncer"
        assert config.scopes.auth == "auth"
        assert config.scopes.target == "target"
        assert config.auth.method == DEFAULT_AUTH_METHOD
        assert config.tunnel.fragment_dir == workspace / "fragments"
        assert sorted(config.targets) == ["app1", "app2"]
        assert config.targets["app1"].database == "app1"
        assert config.targets["app2"].database == "custom_db"

    def test_effective_scopes(self, workspace: Path):
        config = load_config(workspace / "pgboundary.ini")

        app1 = config.get_target("app1")
        app2 = config.get_target("app2")

        assert config.auth_scope_for(app1) == "auth"
        assert config.auth_scope_for(app2) == "scope1"
        assert config.target_scope_for(app2) == "target"

    def test_unknown_target(self, workspace: Path):
        config = load_config(workspace / "pgboundary.ini")

        with pytest.raises(TargetNotFoundError, match="nope"):
            config.get_target("nope")

    def test_absolute_workdir_and_options(self, tmp_path: Path):
        work_dir = tmp_path / "elsewhere"
        work_dir.mkdir()
        (work_dir / "pgb.ini").write_text("[pgbouncer]\npidfile = /run/pgb.pid\n")
        config_path = tmp_path / "conf" / "pgboundary.ini"
        config_path.parent.mkdir()
        config_path.write_text(
            f"[pgbouncer]\nworkdir = {work_dir}\nconffile = pgb.ini\n"
            "[auth]\nmethod = password\n"
            "[pgboundary]\nsettle_time = 1.5\nboundary_binary = /opt/boundary\n"
            "pgbouncer_binary = /opt/pgbouncer\n"
        )

        config = load_config(config_path)

        assert config.proxy.workdir == work_dir
        assert config.proxy.pidfile == Path("/run/pgb.pid")
        assert config.proxy.binary == "/opt/pgbouncer"
        assert config.auth.method == "password"
        assert config.scopes.auth == "global"
        assert config.tunnel.settle_time == 1.5
        assert config.tunnel.binary == "/opt/boundary"
        assert config.targets == {}

    def test_relative_fragment_dir_follows_config_file(self, tmp_path: Path, monkeypatch):
        (tmp_path / "pgbouncer.ini").write_text("[pgbouncer]\npidfile = pgb.pid\n")
        config_path = tmp_path / "pgboundary.ini"
        config_path.write_text(
            "[pgbouncer]\nworkdir = .\nconffile = pgbouncer.ini\n"
            "[pgboundary]\nfragment_dir = ./fragments\n"
        )
        elsewhere = tmp_path / "elsewhere"
        elsewhere.mkdir()
        monkeypatch.chdir(elsewhere)

        config = load_config(config_path)

        assert config.tunnel.fragment_dir == tmp_path.resolve() / "fragments"
        assert config.tunnel.fragment_dir.parent == config.proxy.workdir

    def test_missing_pidfile(self, tmp_path: Path):
        (tmp_path / "pgbouncer.ini").write_text("[pgbouncer]\nlisten_port = 6432\n")
        config_path = tmp_path / "pgboundary.ini"
        config_path.write_text("[pgbouncer]\nworkdir = .\nconffile = pgbouncer.ini\n")

        with pytest.raises(ConfigurationError, match="pidfile"):
            load_config(config_path)

    def test_invalid_target_fails_whole_config(self, workspace: Path):
        config_path = workspace / "pgboundary.ini"
        config_path.write_text(
            config_path.read_text() + "bad = target=only-target\n"
        )

        with pytest.raises(ConfigurationError, match="bad"):
            load_config(config_path)

    def test_non_existent_file(self, tmp_path: Path):
        with pytest.raises(ConfigurationError):
            load_config(tmp_path / "nonexistent.ini")


class TestDefaultLocations:
    """Search order for the configuration file."""

    def test_env_var_comes_first(self, monkeypatch, tmp_path):
        monkeypatch.setenv("PGBOUNDARY_CONFIG", str(tmp_path / "custom.ini"))
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))

        locations = default_config_locations()

        assert locations[0] == tmp_path / "custom.ini"
        assert locations[1] == Path("pgboundary.ini")
        assert locations[-1] == tmp_path / "xdg" / "pgboundary" / "pgboundary.ini"

    def test_loads_first_valid_location(self, monkeypatch, workspace):
        monkeypatch.delenv("PGBOUNDARY_CONFIG", raising=False)
        monkeypatch.chdir(workspace)

        config = load_config_from_default_locations()

        assert "app1" in config.targets

    def test_no_location_found(self, monkeypatch, tmp_path):
        monkeypatch.delenv("PGBOUNDARY_CONFIG", raising=False)
        monkeypatch.setenv("HOME", str(tmp_path))
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
        monkeypatch.chdir(tmp_path)

        with pytest.raises(ConfigurationError, match="default locations"):
            load_config_from_default_locations()
