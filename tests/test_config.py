"""Tests for configuration loading."""

import json
from pathlib import Path

import pytest

from doing_log.config import (
    DoingConfig,
    dict_to_config,
    find_config_file,
    load_config,
    load_json_config,
    load_python_config,
)

from conftest import FIXED_NOW, ID_A, SAMPLE_TEXT


@pytest.fixture(autouse=True)
def no_doing_file_env(monkeypatch):
    monkeypatch.delenv("DOING_FILE", raising=False)


class TestFindConfigFile:
    """Tests for find_config_file."""

    def test_finds_python_config(self, temp_project):
        """Python config is found first."""
        (temp_project / "doing_config.py").write_text("CONFIG = {}")
        (temp_project / "doing_config.toml").write_text("")

        found = find_config_file(temp_project)
        assert found.name == "doing_config.py"

    def test_finds_toml_config(self, temp_project):
        """TOML config is found if no Python config."""
        (temp_project / "doing_config.toml").write_text("")
        (temp_project / "doing_config.json").write_text("{}")

        found = find_config_file(temp_project)
        assert found.name == "doing_config.toml"

    def test_finds_json_config(self, temp_project):
        """JSON config is found if no Python/TOML."""
        (temp_project / "doing_config.json").write_text("{}")

        found = find_config_file(temp_project)
        assert found.name == "doing_config.json"

    def test_finds_dotfile_config(self, temp_project):
        """Dotfile configs are found."""
        (temp_project / ".doingrc.json").write_text("{}")

        found = find_config_file(temp_project)
        assert found.name == ".doingrc.json"

    def test_returns_none_if_no_config(self, temp_project):
        """Returns None if no config file found."""
        assert find_config_file(temp_project) is None


class TestDictToConfig:
    """Tests for dict_to_config."""

    def test_empty_dict_gives_defaults(self, temp_project):
        config = dict_to_config({}, temp_project)
        assert config.doing_file == "~/.doing.taskpaper"
        assert config.default_section == "Currently"
        assert config.archive_section == "Archive"
        assert config.search_case == "smart"
        assert config.lock_file is False

    def test_all_sections(self, temp_project):
        config = dict_to_config({
            "file": {"path": "work.taskpaper", "archive": "old.taskpaper", "lock": True, "lock_timeout": 2},
            "sections": {"default": "Now", "archive": "Done"},
            "search": {"case": "ignore", "fuzzy_threshold": 0.6, "include_notes": False},
            "logging": {"level": "debug"},
        }, temp_project)

        assert config.doing_file == "work.taskpaper"
        assert config.archive_file == "old.taskpaper"
        assert config.lock_file is True
        assert config.lock_timeout == 2.0
        assert config.default_section == "Now"
        assert config.archive_section == "Done"
        assert config.search_case == "ignore"
        assert config.fuzzy_threshold == 0.6
        assert config.include_notes is False
        assert config.log_level == "DEBUG"

    def test_bad_case(self, temp_project):
        with pytest.raises(ValueError, match="search.case"):
            dict_to_config({"search": {"case": "loud"}}, temp_project)

    @pytest.mark.parametrize("threshold", [0, -0.5, 1.5])
    def test_bad_threshold(self, temp_project, threshold):
        with pytest.raises(ValueError, match="fuzzy_threshold"):
            dict_to_config({"search": {"fuzzy_threshold": threshold}}, temp_project)


class TestPaths:
    """Tests for doing and archive path resolution."""

    def test_relative_path_resolved_against_root(self, temp_project):
        config = DoingConfig(project_root=temp_project, doing_file="logs/doing.taskpaper")
        assert config.get_doing_path() == temp_project / "logs" / "doing.taskpaper"

    def test_absolute_path_kept(self, temp_project):
        target = temp_project / "elsewhere" / "doing.taskpaper"
        config = DoingConfig(project_root=Path("/nonexistent"), doing_file=str(target))
        assert config.get_doing_path() == target

    def test_home_expanded(self, temp_project):
        config = DoingConfig(project_root=temp_project)
        assert config.get_doing_path() == Path.home() / ".doing.taskpaper"

    def test_default_archive_path(self, temp_project):
        config = DoingConfig(project_root=temp_project, doing_file="work.taskpaper")
        assert config.get_archive_path() == temp_project / "work_archive.taskpaper"

    def test_configured_archive_path(self, temp_project):
        config = DoingConfig(project_root=temp_project, archive_file="archive/old.taskpaper")
        assert config.get_archive_path() == temp_project / "archive" / "old.taskpaper"


class TestLoadConfig:
    """Tests for load_config."""

    def test_no_config_gives_defaults(self, temp_project):
        config = load_config(temp_project)
        assert config.project_root == temp_project
        assert config.doing_file == "~/.doing.taskpaper"

    def test_toml_config(self, temp_project):
        (temp_project / "doing_config.toml").write_text(
            '[file]\npath = "work.taskpaper"\n\n[sections]\ndefault = "Now"\n'
        )
        config = load_config(temp_project)
        assert config.get_doing_path() == temp_project / "work.taskpaper"
        assert config.default_section == "Now"

    def test_json_config(self, temp_project):
        path = temp_project / ".doingrc.json"
        path.write_text(json.dumps({"search": {"case": "sensitive"}}))

        assert load_json_config(path) == {"search": {"case": "sensitive"}}
        assert load_config(temp_project).search_case == "sensitive"

    def test_explicit_path(self, temp_project):
        path = temp_project / "custom.toml"
        path.write_text('[file]\npath = "custom.taskpaper"\n')
        config = load_config(temp_project, path)
        assert config.doing_file == "custom.taskpaper"

    def test_unsupported_suffix(self, temp_project):
        path = temp_project / "doing.yaml"
        path.write_text("file: {}")
        with pytest.raises(ValueError, match="Unsupported"):
            load_config(temp_project, path)

    def test_env_overrides_file(self, temp_project, monkeypatch):
        (temp_project / "doing_config.toml").write_text('[file]\npath = "work.taskpaper"\n')
        monkeypatch.setenv("DOING_FILE", "from_env.taskpaper")

        config = load_config(temp_project)
        assert config.get_doing_path() == temp_project / "from_env.taskpaper"


class TestPythonConfig:
    """Tests for Python config files with hooks and custom tools."""

    CONFIG_SOURCE = '''
CONFIG = {"file": {"path": "py.taskpaper"}}

def hook_pre_add(entry):
    entry.set_tag("auto")
    return entry

def hook_post_save(path, document):
    pass

def hook_on_launch():
    pass

def custom_tool_count(engine, arguments):
    return {"count": len(engine.load().entries())}
'''

    def test_load_python_config(self, temp_project):
        path = temp_project / "doing_config.py"
        path.write_text(self.CONFIG_SOURCE)

        config_dict, hooks, custom_tools = load_python_config(path)
        assert config_dict == {"file": {"path": "py.taskpaper"}}
        assert sorted(hooks) == ["post_save", "pre_add"]
        assert list(custom_tools) == ["count"]

    def test_unknown_hook_ignored(self, temp_project):
        path = temp_project / "doing_config.py"
        path.write_text(self.CONFIG_SOURCE)

        config = load_config(temp_project)
        assert "on_launch" not in config.hooks
        assert config.doing_file == "py.taskpaper"

    def test_lowercase_config_name(self, temp_project):
        path = temp_project / "doing_config.py"
        path.write_text('config = {"sections": {"archive": "Old"}}\n')

        assert load_config(temp_project).archive_section == "Old"

    def test_pre_add_hook_runs(self, temp_project):
        from doing_log.engine import DoingEngine

        (temp_project / "doing_config.py").write_text(self.CONFIG_SOURCE)
        engine = DoingEngine(load_config(temp_project))

        entry = engine.now("Hooked task")
        assert "auto" in entry["tags"]
        assert "@auto" in (temp_project / "py.taskpaper").read_text()

    def test_example_config(self, temp_project):
        """The shipped example config loads and its custom tools run."""
        from doing_log.engine import DoingEngine

        example = Path(__file__).resolve().parent.parent / "examples" / "doing_config.py"
        config = load_config(temp_project, example)
        assert sorted(config.hooks) == ["post_add", "post_save", "pre_add"]
        assert sorted(config.custom_tools) == ["client_hours", "standup"]

        config.doing_file = "doing.taskpaper"
        engine = DoingEngine(config, clock=lambda: FIXED_NOW)
        engine.path.write_text(SAMPLE_TEXT, encoding="utf-8")

        standup = config.custom_tools["standup"](engine, {})
        assert standup["yesterday"] == ["Fix login bug"]
        assert standup["current"]["entry_id"] == ID_A
