# config.py
from __future__ import annotations

import os

# ---------------------------
# Remote tool targets (MCP over HTTP)
# ---------------------------

# A target with a blank url is treated as "not configured".
# The git target is optional: without it the branch step is skipped.
MCP_TARGETS = {
    "jira": {
        "url": os.getenv("MCP_JIRA_URL", ""),
        "auth": os.getenv("MCP_JIRA_KEY", ""),
        "rest_base_url": os.getenv("JIRA_BASE_URL", os.getenv("JIRA_URL", "")),
    },
    "confluence": {
        "url": os.getenv("MCP_CONFLUENCE_URL", ""),
        "auth": os.getenv("MCP_WIKI_KEY", ""),
        "rest_base_url": os.getenv("CONFLUENCE_BASE_URL", os.getenv("CONFLUENCE_URL", "")),
    },
    "git": {
        "url": os.getenv("MCP_GIT_URL", ""),
        "auth": os.getenv("MCP_GIT_KEY", ""),
        "repo_path": os.getenv("GIT_REPO_PATH", ""),
    },
}

# Tool name -> target name
TOOL_ROUTES = {
    "jira_create_issue": "jira",
    "jira_update_issue": "jira",
    "jira_get_issue": "jira",
    "jira_search": "jira",
    "jira_link_to_epic": "jira",
    "jira_create_remote_issue_link": "jira",
    "jira_add_attachment": "jira",
    "confluence_create_page": "confluence",
    "confluence_update_page": "confluence",
    "confluence_get_page": "confluence",
    "confluence_create_attachment": "confluence",
    "git_create_branch": "git",
}

# Per-target compatibility shims, applied to tool arguments before serialization.
# "tool" may be "*" to match every tool on that target.
TARGET_PARAM_SHIMS = {
    "confluence": [
        {"tool": "confluence_update_page", "drop": ["version", "content_format"]},
    ],
}

# ---------------------------
# Transport policy
# ---------------------------
RPC_TIMEOUT_S = float(os.getenv("MCP_TIMEOUT_S", "30"))
RPC_MAX_RETRIES = int(os.getenv("MCP_MAX_RETRIES", "2"))
RPC_RETRY_BACKOFF_S = float(os.getenv("MCP_RETRY_BACKOFF_S", "0.5"))

MCP_PROTOCOL_VERSION = "2024-11-05"
MCP_CLIENT_NAME = "workitem-orchestrator"
MCP_CLIENT_VERSION = "0.1.0"

# ---------------------------
# Work item defaults
# ---------------------------
JIRA_PROJECT_KEY = os.getenv("JIRA_PROJECT_KEY", "DS")
CONFLUENCE_SPACE_KEY = os.getenv("CONFLUENCE_SPACE_KEY", "DCUX")
CONFLUENCE_PARENT_ID = os.getenv("CONFLUENCE_PARENT_ID", "")

WIKI_TITLE_MAX_CHECKS = 5
WIKI_CREATE_MAX_ATTEMPTS = 5

# ---------------------------
# Attachments
# ---------------------------
IMAGE_CACHE_TTL_S = float(os.getenv("IMAGE_CACHE_TTL_S", "300"))
IMAGE_DOWNLOAD_TIMEOUT_S = 20.0
ATTACHMENT_UPLOAD_TIMEOUT_S = 60.0
