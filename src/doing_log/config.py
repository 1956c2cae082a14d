"""Configuration loading for doing-log.

Supports two tiers:
1. Simple config via .toml or .json - most users
2. Python config via .py - power users with hooks and custom tools

The DOING_FILE environment variable always wins over the configured path.
"""

from __future__ import annotations

import importlib.util
import json
import os
import sys
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

from loguru import logger

from .models import ARCHIVE_SECTION, DEFAULT_SECTION
from .query import CASE_IGNORE, CASE_SENSITIVE, CASE_SMART, QueryContext

DOING_FILE_ENV = "DOING_FILE"
DEFAULT_DOING_FILE = "~/.doing.taskpaper"

HOOK_NAMES = ("pre_add", "post_add", "post_save")


@dataclass
class DoingConfig:
    """Configuration for one doing file."""

    project_root: Path = field(default_factory=Path.cwd)

    # Files (relative paths are resolved against project_root)
    doing_file: str = DEFAULT_DOING_FILE
    archive_file: Optional[str] = None

    # Sections
    default_section: str = DEFAULT_SECTION
    archive_section: str = ARCHIVE_SECTION

    # Search
    search_case: str = CASE_SMART
    fuzzy_threshold: float = 0.8
    include_notes: bool = True

    # Whole-file lock around each load-mutate-save cycle (off: last writer wins)
    lock_file: bool = False
    lock_timeout: float = 10.0

    log_level: str = "WARNING"

    # Hooks (populated from Python config)
    hooks: dict[str, Callable] = field(default_factory=dict)

    # Custom tools (populated from Python config)
    custom_tools: dict[str, Callable] = field(default_factory=dict)

    def _resolve(self, raw: str) -> Path:
        path = Path(raw).expanduser()
        if not path.is_absolute():
            path = self.project_root / path
        return path

    def get_doing_path(self) -> Path:
        return self._resolve(self.doing_file)

    def get_archive_path(self) -> Path:
        """Rotation target: configured, or ``<stem>_archive.taskpaper`` beside the doing file."""
        if self.archive_file:
            return self._resolve(self.archive_file)
        doing_path = self.get_doing_path()
        return doing_path.with_name(f"{doing_path.stem}_archive.taskpaper")

    def query_context(self, now) -> QueryContext:
        return QueryContext(
            now=now,
            fuzzy_threshold=self.fuzzy_threshold,
            include_notes=self.include_notes,
        )


def load_toml_config(path: Path) -> dict[str, Any]:
    """Load configuration from TOML file."""
    with open(path, "rb") as f:
        return tomllib.load(f)


def load_json_config(path: Path) -> dict[str, Any]:
    """Load configuration from JSON file."""
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def load_python_config(path: Path) -> tuple[dict[str, Any], dict[str, Callable], dict[str, Callable]]:
    """Load configuration from Python file.

    Returns:
        Tuple of (config_dict, hooks_dict, custom_tools_dict)

    Convention:
        - CONFIG dict or config dict for static configuration
        - Functions named hook_pre_add, hook_post_add, hook_post_save become hooks
        - Functions named custom_tool_* become tools
    """
    spec = importlib.util.spec_from_file_location("doing_config", path)
    if spec is None or spec.loader is None:
        raise ImportError(f"Cannot load Python config from {path}")

    module = importlib.util.module_from_spec(spec)
    sys.modules["doing_config"] = module
    spec.loader.exec_module(module)

    config_dict = {}
    if hasattr(module, "CONFIG"):
        config_dict = module.CONFIG
    elif hasattr(module, "config"):
        config_dict = module.config

    hooks = {}
    for name in dir(module):
        if name.startswith("hook_"):
            hook_name = name[5:]
            if hook_name not in HOOK_NAMES:
                logger.warning(f"Ignoring unknown hook {name} in {path}")
                continue
            hooks[hook_name] = getattr(module, name)

    custom_tools = {}
    for name in dir(module):
        if name.startswith("custom_tool_"):
            custom_tools[name[12:]] = getattr(module, name)

    return config_dict, hooks, custom_tools


def dict_to_config(data: dict[str, Any], project_root: Path) -> DoingConfig:
    """Convert dictionary to DoingConfig.

    Raises:
        ValueError: If a value is out of range.
    """
    config = DoingConfig(project_root=project_root)

    if "file" in data:
        files = data["file"]
        if "path" in files:
            config.doing_file = files["path"]
        if "archive" in files:
            config.archive_file = files["archive"]
        if "lock" in files:
            config.lock_file = bool(files["lock"])
        if "lock_timeout" in files:
            config.lock_timeout = float(files["lock_timeout"])

    if "sections" in data:
        sections = data["sections"]
        if "default" in sections:
            config.default_section = sections["default"]
        if "archive" in sections:
            config.archive_section = sections["archive"]

    if "search" in data:
        search = data["search"]
        if "case" in search:
            case = search["case"]
            if case not in (CASE_SMART, CASE_SENSITIVE, CASE_IGNORE):
                raise ValueError(f"search.case must be smart, sensitive or ignore, got {case!r}")
            config.search_case = case
        if "fuzzy_threshold" in search:
            threshold = float(search["fuzzy_threshold"])
            if not 0.0 < threshold <= 1.0:
                raise ValueError(f"search.fuzzy_threshold must be in (0, 1], got {threshold}")
            config.fuzzy_threshold = threshold
        if "include_notes" in search:
            config.include_notes = bool(search["include_notes"])

    if "logging" in data and "level" in data["logging"]:
        config.log_level = str(data["logging"]["level"]).upper()

    return config


def find_config_file(project_root: Path) -> Optional[Path]:
    """Find configuration file in project root.

    Search order:
    1. doing_config.py (most flexible)
    2. doing_config.toml
    3. doing_config.json
    4. .doingrc.toml
    5. .doingrc.json
    """
    candidates = [
        "doing_config.py",
        "doing_config.toml",
        "doing_config.json",
        ".doingrc.toml",
        ".doingrc.json",
    ]

    for name in candidates:
        path = project_root / name
        if path.exists():
            return path

    return None


def load_config(project_root: Path, config_path: Optional[Path] = None) -> DoingConfig:
    """Load configuration.

    Args:
        project_root: Directory searched for a config file
        config_path: Optional explicit path to config file

    Returns:
        DoingConfig instance
    """
    if config_path is None:
        config_path = find_config_file(project_root)

    if config_path is None:
        config = DoingConfig(project_root=project_root)
    else:
        suffix = config_path.suffix.lower()
        if suffix == ".py":
            config_dict, hooks, custom_tools = load_python_config(config_path)
            config = dict_to_config(config_dict, project_root)
            config.hooks = hooks
            config.custom_tools = custom_tools
        elif suffix == ".toml":
            config = dict_to_config(load_toml_config(config_path), project_root)
        elif suffix == ".json":
            config = dict_to_config(load_json_config(config_path), project_root)
        else:
            raise ValueError(f"Unsupported config file type: {suffix}")
        logger.debug(f"Loaded config from {config_path}")

    env_file = os.environ.get(DOING_FILE_ENV)
    if env_file:
        config.doing_file = env_file

    return config
