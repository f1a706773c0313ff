"""Entry point for `python -m procedure_router` and the `procedure-router` CLI script."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from collections.abc import Sequence
from pathlib import Path

from procedure_router.loader import GitSourceError, WorkflowLoader
from procedure_router.models import Procedure, ProcedureSource, WorkflowCollection, WorkflowDefinition
from procedure_router.parser import WorkflowParser, WorkflowSchemaError, WorkflowStructureError
from procedure_router.prompts import IssueContext, build_classification_prompt
from procedure_router.registry import build_default_registry
from procedure_router.router import ProcedureRouter
from procedure_router.settings import RouterSettings

logger = logging.getLogger("procedure_router")


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="procedure-router", description="Route requests to agent procedures")
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    workflows = commands.add_parser("workflows", help="Inspect built-in and external workflows")
    workflow_commands = workflows.add_subparsers(dest="workflows_command", required=True)
    workflow_commands.add_parser("list", help="List all workflows (built-in + external)")
    workflow_commands.add_parser("refresh", help="Refresh external workflows from their source")
    validate = workflow_commands.add_parser("validate", help="Validate a workflow YAML file or directory")
    validate.add_argument("path", type=Path)
    show = workflow_commands.add_parser("show", help="Show details of a workflow")
    show.add_argument("name")

    route = commands.add_parser("route", help="Select a procedure for a request")
    route.add_argument("--request-text", default=None, help="Inline request text")
    route.add_argument("--request-file", type=Path, default=None, help="Path to a file holding the request text")
    route.add_argument("--identifier", default=None, help="Issue identifier; wraps the request in issue context")
    route.add_argument("--title", default="", help="Issue title used with --identifier")
    route.add_argument("--label", action="append", default=[], dest="labels", help="Issue label (repeatable)")
    route.add_argument("--platform", choices=["github", "azure-devops"], default=None)
    return parser.parse_args(argv)


def _build_loader(settings: RouterSettings) -> WorkflowLoader | None:
    if not settings.workflows_source:
        return None
    return WorkflowLoader(
        settings.workflows_source,
        branch=settings.workflows_branch,
        path=settings.workflows_path,
        home=settings.home_path,
        cache_enabled=settings.cache_enabled,
    )


def _print_errors(errors: dict[str, str]) -> None:
    if not errors:
        return
    print("Some workflows failed to load:")
    for name, message in errors.items():
        print(f"  {name}: {message}")
    print()


def _format_triggers(definition: WorkflowDefinition | None) -> str:
    if definition is None or definition.triggers is None:
        return "-"
    triggers = definition.triggers
    parts: list[str] = []
    if triggers.classifications:
        parts.append(f"classifications: [{', '.join(item.value for item in triggers.classifications)}]")
    if triggers.labels:
        parts.append(f"labels: [{', '.join(triggers.labels)}]")
    if triggers.keywords:
        parts.append(f"keywords: [{', '.join(triggers.keywords)}]")
    return "; ".join(parts) if parts else "-"


def cmd_list(settings: RouterSettings) -> int:
    registry = build_default_registry()
    definitions: dict[str, WorkflowDefinition] = {}
    loader = _build_loader(settings)
    if loader is not None:
        try:
            loader.load()
        except GitSourceError as exc:
            logger.warning("Failed to load external workflows: %s", exc)
        else:
            definitions = {definition.name: definition for definition in loader.all_workflows()}
            registry = registry.with_overrides(loader.all_procedures())
            _print_errors(loader.errors())

    print(f"{'NAME':<25} {'SOURCE':<12} {'STEPS':<6} TRIGGERS")
    print("-" * 80)
    for name in registry.names():
        procedure = registry.get(name)
        source = registry.source_of(name) or ProcedureSource.BUILT_IN
        steps = len(procedure.steps) if procedure is not None else 0
        print(f"{name:<25} {source.value:<12} {steps:<6} {_format_triggers(definitions.get(name))}")
    print()
    print(f"Total: {len(registry)} workflow(s)")
    if loader is not None:
        print(f"External source: {settings.workflows_source}")
    else:
        print("No external workflow source configured. Using built-in workflows only.")
    return 0


def _describe_procedure(procedure: Procedure, source: ProcedureSource | None) -> dict[str, object]:
    return {
        "name": procedure.name,
        "source": (source or ProcedureSource.BUILT_IN).value,
        "description": procedure.description,
        "steps": [
            {"name": step.name, "instruction_ref": step.instruction_ref, **step.specified_flags()}
            for step in procedure.steps
        ],
    }


def cmd_show(settings: RouterSettings, name: str) -> int:
    registry = build_default_registry()
    definition: WorkflowDefinition | None = None
    loader = _build_loader(settings)
    if loader is not None:
        loader.load()
        registry = registry.with_overrides(loader.all_procedures())
        definition = loader.get_workflow(name)

    procedure = registry.get(name)
    if procedure is None:
        logger.error("Workflow not found: %s", name)
        print(f"Available workflows: {', '.join(registry.names())}")
        return 1
    details = _describe_procedure(procedure, registry.source_of(name))
    if definition is not None:
        details["priority"] = definition.priority
        if definition.triggers is not None:
            details["triggers"] = definition.triggers.model_dump(mode="json", exclude_none=True)
    print(json.dumps(details, indent=2, default=str))
    return 0


def missing_prompt_files(collection: WorkflowCollection, base_path: Path) -> list[str]:
    """Return the prompt files referenced by ``collection`` that do not exist under ``base_path``."""
    return [
        subroutine.prompt_file
        for definition in collection.workflows
        for subroutine in definition.subroutines
        if not (base_path / subroutine.prompt_file).is_file()
    ]


def cmd_validate(path: Path) -> int:
    parser = WorkflowParser()
    target = path.resolve()
    if not target.exists():
        logger.error("Path does not exist: %s", target)
        return 1

    if target.is_dir():
        result = parser.parse_directory(target)
        for file_name in result.parsed_files:
            print(f"OK     {file_name}")
        for file_name, message in result.errors.items():
            print(f"ERROR  {file_name}: {message}")
        collection = result.collection
        base_path = target
        failed = bool(result.errors)
    else:
        try:
            collection = parser.parse_file(target)
        except (OSError, WorkflowStructureError, WorkflowSchemaError) as exc:
            print(f"ERROR  {target.name}: {exc}")
            return 1
        print(f"OK     {target.name}")
        base_path = target.parent
        failed = False

    missing = missing_prompt_files(collection, base_path)
    if missing:
        print("Missing prompt files:")
        for prompt_file in missing:
            print(f"  - {prompt_file}")
    print(f"Found {len(collection.workflows)} workflow(s):")
    for definition in collection.workflows:
        print(f"  - {definition.name} ({len(definition.subroutines)} subroutines)")
    return 1 if failed or missing else 0


def cmd_refresh(settings: RouterSettings) -> int:
    loader = _build_loader(settings)
    if loader is None:
        print("No external workflow source configured. Set ROUTER_WORKFLOWS_SOURCE to enable external workflows.")
        return 0
    print(f"Refreshing from {settings.workflows_source}...")
    try:
        loader.refresh()
    except GitSourceError as exc:
        logger.error("Failed to refresh workflows: %s", exc)
        return 1
    _print_errors(loader.errors())
    print(f"Loaded {loader.count} workflow(s) from external source.")
    print(f"Workflow path: {loader.workflow_path()}")
    return 0


def load_request_text(args: argparse.Namespace) -> str:
    if args.request_text is not None and args.request_file is not None:
        raise ValueError("--request-text cannot be combined with --request-file")
    if args.request_file is not None:
        if not args.request_file.is_file():
            raise FileNotFoundError(f"Requested input file does not exist: {args.request_file}")
        text = args.request_file.read_text(encoding="utf-8")
    else:
        text = (args.request_text or "").strip()
    if not text.strip():
        raise ValueError("request text must be non-empty")
    if args.identifier:
        issue = IssueContext(identifier=args.identifier, title=args.title, description=text, labels=args.labels)
        return build_classification_prompt(issue)
    return text


def cmd_route(settings: RouterSettings, args: argparse.Namespace) -> int:
    try:
        request_text = load_request_text(args)
    except (OSError, ValueError) as exc:
        logger.error("Unable to load request input: %s", exc)
        return 1
    router = ProcedureRouter.from_settings(settings)
    router.reload()
    decision = asyncio.run(router.select(request_text, args.labels, platform=args.platform))
    print(
        json.dumps(
            {
                "chosen_name": decision.chosen_name,
                "selection_mode": decision.selection_mode.value,
                "classification": decision.inferred_classification.value,
                "reasoning": decision.reasoning,
                "steps": decision.procedure.step_names(),
            },
            indent=2,
        )
    )
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        settings = RouterSettings.from_env()
    except ValueError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 1

    try:
        if args.command == "route":
            return cmd_route(settings, args)
        if args.workflows_command == "list":
            return cmd_list(settings)
        if args.workflows_command == "show":
            return cmd_show(settings, args.name)
        if args.workflows_command == "validate":
            return cmd_validate(args.path)
        return cmd_refresh(settings)
    except Exception as exc:  # noqa: BLE001
        logger.exception("Command failed: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
