"""
Workflows package - Sample workflow definitions.
"""

from dagflow.workflows.user_sync import (
    USER_SYNC_WORKFLOW_ID,
    create_user_sync_workflow,
    register_user_sync_workflow,
)

__all__ = [
    "USER_SYNC_WORKFLOW_ID",
    "create_user_sync_workflow",
    "register_user_sync_workflow",
]
