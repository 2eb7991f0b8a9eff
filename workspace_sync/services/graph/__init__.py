"""
Microsoft Graph client used as the remote workspace API.
"""

from .client import GraphApiError, GraphClient, WorkspaceApi, static_token

__all__ = ["GraphApiError", "GraphClient", "WorkspaceApi", "static_token"]
