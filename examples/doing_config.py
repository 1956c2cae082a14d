"""doing-log Configuration - Python Example

Copy to your project root as doing_config.py for hooks and custom tools.

Convention:
- CONFIG dict for static configuration (same structure as TOML)
- hook_pre_add, hook_post_add and hook_post_save become lifecycle hooks
- Functions named custom_tool_* become MCP tools
"""

import os

from loguru import logger

# =============================================================================
# Static Configuration (same structure as TOML)
# =============================================================================

CONFIG = {
    "file": {
        "path": "~/Documents/work.taskpaper",
        "archive": "~/Documents/work_archive.taskpaper",
    },
    "sections": {
        "default": "Currently",
        "archive": "Archive",
    },
    "search": {
        "case": "smart",
        "fuzzy_threshold": 0.75,
        "include_notes": True,
    },
    "logging": {
        "level": "INFO",
    },
}


# =============================================================================
# Hooks - Called by the engine
# =============================================================================

def hook_pre_add(entry):
    """Called before a new entry is inserted.

    Return the (possibly modified) entry, or None to keep it as is.
    """
    # Example: tag entries with the current client from the environment
    client = os.environ.get("DOING_CLIENT")
    if client and "client" not in entry.tags:
        entry.set_tag("client", client)
    return entry


def hook_post_add(entry):
    """Called after a new entry is inserted (before the file is saved)."""
    logger.info(f"Added {entry.started_at:%H:%M} {entry.description}")


def hook_post_save(path, document):
    """Called after the doing file is written."""
    # Example: keep a plain copy for a sync tool
    backup = path.with_suffix(".bak")
    backup.write_text(path.read_text(encoding="utf-8"), encoding="utf-8")


# =============================================================================
# Custom Tools - Exposed as additional MCP tools
# =============================================================================

def custom_tool_client_hours(engine, params) -> dict:
    """Total finished time on @client entries over a date range.

    params: {"from": "last week"} (default: this week)
    """
    period = params.get("from", "this week")
    report = engine.totals(f'@client date:"{period}"')
    return {"success": True, "period": period, **report}


def custom_tool_standup(engine, params) -> dict:
    """What I did yesterday and what I'm on now."""
    return {
        "success": True,
        "yesterday": [e["description"] for e in engine.yesterday()],
        "current": engine.last(section=engine.config.default_section),
    }
