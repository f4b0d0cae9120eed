"""
DAGFlow - An async execution engine for dependency-driven workflows.

Workflows are DAGs of side-effecting nodes (HTTP calls today), scheduled
into parallel waves, with upstream outputs flowing into downstream
configuration through `{{.path}}` templates.
"""

__version__ = "1.0.0"
