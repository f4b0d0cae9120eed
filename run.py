#!/usr/bin/env python3
"""
Command line runner for the DAGFlow engine.

Usage:
    python run.py plan workflow.json
    python run.py run workflow.json --input '{"user_id": "123"}'
    python run.py demo --base-url http://localhost:8080 --user-id 123

Or with custom settings:
    LOG_LEVEL=DEBUG NODE_TIMEOUT=5 python run.py run workflow.json
"""

import argparse
import asyncio
import json
import logging
import sys

from dagflow.config import settings
from dagflow.engine import Workflow, build_wave_plan
from dagflow.engine.manager import ExecutionManager
from dagflow.errors import DAGFlowError
from dagflow.log import configure_logging
from dagflow.storage import ExecutionStore, WorkflowStore
from dagflow.workflows import create_user_sync_workflow

# Import built-in executors to register them
import dagflow.nodes  # noqa: F401


logger = logging.getLogger("dagflow.run")


def load_workflow(path: str) -> Workflow:
    with open(path) as f:
        return Workflow.model_validate(json.load(f))


def parse_input(raw: str) -> dict:
    data = json.loads(raw) if raw else {}
    if not isinstance(data, dict):
        raise ValueError("--input must be a JSON object")
    return data


async def execute(workflow: Workflow, input: dict, webhooks: list) -> dict:
    """Register the workflow with a fresh manager and run it to completion."""
    manager = ExecutionManager(workflows=WorkflowStore(), executions=ExecutionStore())
    try:
        await manager.create_workflow(workflow)
        execution = await manager.start_execution(workflow.id, input=input, webhooks=webhooks)
        execution = await manager.wait_for_execution(execution.id)
    finally:
        await manager.shutdown()
    return execution.model_dump(mode="json")


def cmd_plan(args: argparse.Namespace) -> int:
    plan = build_wave_plan(load_workflow(args.workflow))
    if args.mermaid:
        print(plan.to_mermaid())
    else:
        print(json.dumps(plan.to_dict(), indent=2))
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    workflow = load_workflow(args.workflow)
    webhooks = [{"url": url} for url in args.webhook]
    result = asyncio.run(execute(workflow, parse_input(args.input), webhooks))
    print(json.dumps(result, indent=2))
    return 0 if result["status"] == "completed" else 1


def cmd_demo(args: argparse.Namespace) -> int:
    workflow = create_user_sync_workflow(base_url=args.base_url)
    result = asyncio.run(execute(workflow, {"user_id": args.user_id}, []))
    print(json.dumps(result, indent=2))
    return 0 if result["status"] == "completed" else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dagflow",
        description=f"{settings.APP_NAME} v{settings.APP_VERSION} workflow runner",
    )
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    commands = parser.add_subparsers(dest="command", required=True)

    plan = commands.add_parser("plan", help="Print the wave plan of a workflow")
    plan.add_argument("workflow", help="Path to a workflow JSON file")
    plan.add_argument("--mermaid", action="store_true", help="Render as a Mermaid diagram")
    plan.set_defaults(handler=cmd_plan)

    run = commands.add_parser("run", help="Execute a workflow and print the execution")
    run.add_argument("workflow", help="Path to a workflow JSON file")
    run.add_argument("--input", default="", help="Input variables as a JSON object")
    run.add_argument("--webhook", action="append", default=[], help="Webhook URL (repeatable)")
    run.set_defaults(handler=cmd_run)

    demo = commands.add_parser("demo", help="Run the User Sync demo workflow")
    demo.add_argument("--base-url", default="http://localhost:8080")
    demo.add_argument("--user-id", default="123")
    demo.set_defaults(handler=cmd_demo)

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)

    try:
        return args.handler(args)
    except DAGFlowError as e:
        logger.error(f"{e.kind.value}: {e.message}")
        return 2
    except (OSError, ValueError) as e:
        logger.error(str(e))
        return 2


if __name__ == "__main__":
    sys.exit(main())
