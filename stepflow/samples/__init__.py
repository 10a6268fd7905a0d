"""
Sample workflows

Ready-made definitions seeded into the API on startup.
"""

from .url_digest import SAMPLE_ACTIONS, URL_DIGEST_ID, create_url_digest_workflow

__all__ = [
    "SAMPLE_ACTIONS",
    "URL_DIGEST_ID",
    "create_url_digest_workflow"
]
