"""FastAPI route modules.

Exports all route modules for inclusion in the main application.
"""

from abraxas.api.routes import manifests, projects, tasks, webhooks

__all__ = [
    "manifests",
    "projects",
    "tasks",
    "webhooks",
]
