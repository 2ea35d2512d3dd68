from __future__ import annotations

from adapters.confluence import WikiAdapter
from adapters.git import BranchAdapter, branch_name_for
from adapters.jira import RemoteLink, TicketAdapter

__all__ = ["BranchAdapter", "RemoteLink", "TicketAdapter", "WikiAdapter", "branch_name_for"]
