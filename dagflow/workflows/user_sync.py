"""
User Sync Workflow Implementation.

Sample workflow demonstrating the engine's wave execution:
1. Fetch the user profile from the user service
2. In parallel: push the profile to billing and send a welcome email
3. Write an audit record once both have finished

It is triggered by `users` / `created` events whose payload carries
the `user_id`.
"""

from typing import Optional
import logging

from dagflow.engine.models import NodeDefinition, RetryPolicy, Trigger, Workflow


logger = logging.getLogger(__name__)

USER_SYNC_WORKFLOW_ID = "user-sync-demo"


# ============================================================
# Workflow Factory
# ============================================================

def create_user_sync_workflow(
    base_url: str = "http://localhost:8080",
    workflow_id: str = USER_SYNC_WORKFLOW_ID,
) -> Workflow:
    """
    Create the User Sync workflow.

    Workflow waves:
    ```
    wave 0:  fetch_user
                 │
            ┌────┴─────┐
    wave 1: sync_billing  send_welcome
            └────┬─────┘
    wave 2:  audit
    ```

    Args:
        base_url: Base URL of the upstream services
        workflow_id: ID to register the workflow under

    Returns:
        Workflow definition
    """
    base_url = base_url.rstrip("/")

    return Workflow(
        id=workflow_id,
        name="User Sync",
        description="Propagates a newly created user to billing and notifications.",
        nodes=[
            NodeDefinition(
                id="fetch_user",
                type="http",
                config={
                    "method": "GET",
                    "url": f"{base_url}/users/{{{{.user_id}}}}",
                },
                retry=RetryPolicy(max_attempts=3, delay=0.5),
            ),
            NodeDefinition(
                id="sync_billing",
                type="http",
                depends_on=["fetch_user"],
                config={
                    "method": "POST",
                    "url": f"{base_url}/billing/customers",
                    "body": {
                        "user_id": "{{.user_id}}",
                        "email": "{{.fetch_user.body.email}}",
                        "name": "{{.fetch_user.body.name}}",
                    },
                    "expected_status": [200, 201],
                },
            ),
            NodeDefinition(
                id="send_welcome",
                type="http",
                depends_on=["fetch_user"],
                config={
                    "method": "POST",
                    "url": f"{base_url}/notifications/email",
                    "body": {
                        "to": "{{.fetch_user.body.email}}",
                        "template": "welcome",
                        "subject": "Welcome aboard, {{.fetch_user.body.name}}!",
                    },
                },
            ),
            NodeDefinition(
                id="audit",
                type="http",
                depends_on=["sync_billing", "send_welcome"],
                config={
                    "method": "POST",
                    "url": f"{base_url}/audit",
                    "body": {
                        "event": "user.synced",
                        "user_id": "{{.user_id}}",
                        "billing_status": "{{.sync_billing.status}}",
                    },
                },
            ),
        ],
        triggers=[Trigger(source="users", status="created")],
    )


async def register_user_sync_workflow(manager, base_url: Optional[str] = None) -> Workflow:
    """
    Register the User Sync workflow with an ExecutionManager.

    Makes the workflow available to start_execution() and to `users`
    events without creating it first.
    """
    workflow = create_user_sync_workflow(base_url) if base_url else create_user_sync_workflow()
    await manager.create_workflow(workflow)
    logger.info(f"Registered User Sync workflow with ID: {workflow.id}")
    return workflow
