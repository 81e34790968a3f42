"""MCP-compatible tool schema for AI agents."""

from __future__ import annotations

from ._version import __version__

_OUTCOME_SCHEMA = {
    "type": "object",
    "properties": {
        "path": {"type": "string"},
        "name": {"type": "string"},
        "kind": {
            "type": "string",
            "enum": ["up_to_date", "diverged", "updated", "failed", "skipped"],
        },
        "style": {"type": "string", "enum": ["success", "failure", "neutral"]},
        "drift": {
            "type": ["object", "null"],
            "properties": {
                "behind_count": {
                    "type": "string",
                    "description": "Commits on the remote branch missing locally, as printed by git",
                },
                "last_commit": {
                    "type": "object",
                    "properties": {
                        "author": {"type": "string"},
                        "date": {"type": "string"},
                        "hash": {"type": "string"},
                        "subject": {"type": "string"},
                    },
                },
            },
        },
        "steps": {"type": "array", "items": {"type": "string"}},
        "reason": {"type": "string"},
        "state": {"type": "string"},
        "stash_reapplied": {"type": "boolean"},
        "reapply_state": {
            "type": ["string", "null"],
            "enum": ["stash_reapplied", "no_stash_to_reapply", None],
        },
        "stash_left": {
            "type": "string",
            "description": "Label of a stash this run created but left in place",
        },
        "message": {"type": "string"},
    },
}


def get_tool_schema() -> dict:
    """Generate MCP-compatible tool schema for AI agents."""
    return {
        "name": "git-reporter",
        "version": __version__,
        "description": "Report and resolve drift across multiple Git repositories. Fetches each repository's remote, reports how many commits the target branch is behind, and optionally updates it by stashing local changes, pulling, and reapplying the stash it created.",
        "usage": "rp [path] [options]",
        "tools": [
            {
                "name": "rp",
                "description": "Check the repository at path, or every repository directly inside path, for drift from <remote>/<branch>. With --update, bring diverged repositories up to date. Repositories with merge conflicts or a rebase in progress are left untouched unless --force is given.",
                "inputSchema": {
                    "type": "object",
                    "properties": {
                        "path": {
                            "type": "string",
                            "description": "Repository or directory of repositories (default: current directory)",
                            "default": ".",
                        },
                        "update": {
                            "type": "boolean",
                            "description": "Automatically update repositories that are behind",
                            "default": False,
                        },
                        "branch": {
                            "type": "string",
                            "description": "Branch to check",
                            "default": "main",
                        },
                        "remote": {
                            "type": "string",
                            "description": "Remote name",
                            "default": "origin",
                        },
                        "force": {
                            "type": "boolean",
                            "description": "Abort rebase and merge conflicts so the update can proceed",
                            "default": False,
                        },
                        "json": {
                            "type": "boolean",
                            "description": "Output as JSON for machine parsing",
                            "default": False,
                        },
                        "sequential": {
                            "type": "boolean",
                            "description": "Run sequentially instead of parallel",
                            "default": False,
                        },
                    },
                    "required": [],
                },
                "outputSchema": {
                    "type": "object",
                    "properties": {
                        "mode": {"type": "string", "enum": ["repository", "directory"]},
                        "config": {"type": "object"},
                        "outdated": {"type": "array", "items": _OUTCOME_SCHEMA},
                        "up_to_date": {"type": "array", "items": _OUTCOME_SCHEMA},
                        "diagnostics": {"type": "array", "items": _OUTCOME_SCHEMA},
                        "summary": {
                            "type": "object",
                            "properties": {
                                "total": {"type": "integer"},
                                "outdated": {"type": "integer"},
                                "up_to_date": {"type": "integer"},
                                "diagnostics": {"type": "integer"},
                            },
                        },
                    },
                },
                "examples": [
                    {
                        "description": "Report drift of every repository in ~/Development",
                        "command": "rp ~/Development --json",
                    },
                    {
                        "description": "Update repositories that are behind origin/develop",
                        "command": "rp --update --branch develop",
                    },
                    {
                        "description": "Show incoming commits for the current repository",
                        "command": "rp --log",
                    },
                ],
            },
        ],
        "globalOptions": {
            "--json, -j": "Output in JSON format (recommended for AI agents)",
            "--sequential, -s": "Run repository checks one after another",
            "--log, -l": "Print git log of incoming commits for the current repository",
            "--verbose, -v": "Log every git invocation to stderr",
        },
        "configFile": {
            "description": "A .rprc YAML file in the target directory or any parent directory supplies defaults; command line flags override it",
            "keys": ["branch", "update", "include", "exclude", "force", "remote_name"],
            "example": "branch: main\nremote_name: origin\nupdate: true\nexclude:\n  - legacy-service",
        },
        "notes": [
            "Only the stash created by the current run is ever reapplied; existing stashes are left alone",
            "A name present in both include and exclude is included",
            "Fetches are retried with exponential backoff; repeated failures across repositories open a shared circuit breaker",
        ],
    }
