from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Dict, List, Optional

from ci_workflow.aggregate import AggregationError
from ci_workflow.config import ConfigError, RunnerConfig, install_secret_sources, load_config
from ci_workflow.dispatch import WorkflowTriggerError, fetch_run_results, trigger_workflow
from ci_workflow.expressions import ExpressionError
from ci_workflow.loader import WorkflowLoadError, discover_workflows, load_workflow, resolve_workflow_path
from ci_workflow.logs import configure_logging, default_masker
from ci_workflow.matrix import MatrixError
from ci_workflow.runner import WorkflowRunner, matrix_plan, register_workflow_secrets
from ci_workflow.secrets import describe_secret, list_secrets, use_mapping
from ci_workflow.triggers import TriggerError, TriggerEvent

from .pipelines import (
    PipelineContext,
    PipelineError,
    PipelineResult,
    PipelineSpec,
    get_pipeline as get_pipeline_spec,
    list_pipelines as list_pipeline_specs,
)
from .workflows import get_workflow, list_workflows

DOMAIN_ERRORS = (
    AggregationError,
    ConfigError,
    ExpressionError,
    MatrixError,
    PipelineError,
    TriggerError,
    WorkflowLoadError,
    WorkflowTriggerError,
)


def _print(payload: object) -> None:
    print(json.dumps(payload, indent=2))


def _error(message: str) -> int:
    print(json.dumps({"error": message}, indent=2), file=sys.stderr)
    return 2


def _common_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--workspace-root", default=".")
    common.add_argument("--log-level", default="WARNING")
    return common


def _add_run_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("workflow", help="Workflow file, file name or stem (e.g. holonix-integration)")
    parser.add_argument("--event", default="workflow_dispatch")
    parser.add_argument("--ref-name", default="main")
    parser.add_argument("--base-ref")
    parser.add_argument("--input", action="append", help="workflow_dispatch input key=value")
    parser.add_argument("--job", action="append", help="Only run these job ids")
    parser.add_argument("--secret", action="append", help="Secret value NAME=value")
    parser.add_argument("--dry-run", action=argparse.BooleanOptionalAction, default=None)
    parser.add_argument("--max-workers", type=int)
    parser.add_argument("--allow-install", action=argparse.BooleanOptionalAction, default=None)
    parser.add_argument("--skip-unknown-actions", action=argparse.BooleanOptionalAction, default=None)


def build_parser() -> argparse.ArgumentParser:
    common = _common_parser()
    parser = argparse.ArgumentParser(prog="ci-pipeline", description="Run and gate the holochain CI workflows locally")
    subparsers = parser.add_subparsers(dest="command", required=True)

    workflow = subparsers.add_parser("workflow", help="Inspect, trigger and query hosted workflows")
    workflow_subparsers = workflow.add_subparsers(dest="workflow_command", required=True)
    workflow_subparsers.add_parser("list", help="List registered workflows", parents=[common])

    workflow_trigger = workflow_subparsers.add_parser("trigger", help="Dispatch a workflow by slug", parents=[common])
    workflow_trigger.add_argument("--workflow", required=True, dest="workflow_slug")
    workflow_trigger.add_argument("--ref")
    workflow_trigger.add_argument("--input", action="append")
    workflow_trigger.add_argument("--token-env")
    workflow_trigger.add_argument("--dry-run", action=argparse.BooleanOptionalAction, default=False)
    workflow_trigger.add_argument("--github-api")

    workflow_status = workflow_subparsers.add_parser("status", help="Show job results of a hosted run", parents=[common])
    workflow_status.add_argument("--run-id", required=True, type=int)
    workflow_status.add_argument("--repo")
    workflow_status.add_argument("--token-env")
    workflow_status.add_argument("--github-api")

    pipeline_cmd = subparsers.add_parser("pipeline", help="Composite pipeline registry commands")
    pipeline_subparsers = pipeline_cmd.add_subparsers(dest="pipeline_command", required=True)
    pipeline_subparsers.add_parser("list", help="List registered pipelines", parents=[common])
    pipeline_run = pipeline_subparsers.add_parser("run", help="Execute a registered pipeline", parents=[common])
    pipeline_run.add_argument("--pipeline", required=True, dest="pipeline_slug")
    pipeline_run.add_argument("--input", action="append")

    run = subparsers.add_parser("run", help="Run a workflow file locally", parents=[common])
    _add_run_arguments(run)

    matrix = subparsers.add_parser("matrix", help="Show the expanded job matrix of a workflow", parents=[common])
    matrix.add_argument("workflow")
    matrix.add_argument("--job", action="append")

    subparsers.add_parser("validate", help="Validate every workflow file", parents=[common])

    gate = subparsers.add_parser("gate", help="Aggregate job results into a pass/fail verdict", parents=[common])
    source = gate.add_mutually_exclusive_group()
    source.add_argument("--results", help="JSON array or object of results")
    source.add_argument("--results-env", help="Environment variable holding the results JSON")
    source.add_argument("--run-id", type=int, help="Hosted run id")
    gate.add_argument("--repo")
    gate.add_argument("--plain", action="store_true", help="Print only true/false")

    secrets = subparsers.add_parser("secrets", help="Inspect secrets referenced by workflows")
    secrets_subparsers = secrets.add_subparsers(dest="secrets_command", required=True)
    secrets_subparsers.add_parser("list", help="List secrets and where they resolve from", parents=[common])

    return parser


def _load(args: argparse.Namespace, overrides: Optional[Dict[str, object]] = None) -> RunnerConfig:
    configure_logging(args.log_level, default_masker)
    config = load_config(Path(args.workspace_root), overrides=overrides)
    install_secret_sources(config)
    return config


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        return _dispatch(parser, args)
    except DOMAIN_ERRORS as exc:
        return _error(str(exc))


def _dispatch(parser: argparse.ArgumentParser, args: argparse.Namespace) -> int:
    if args.command == "workflow":
        config = _load(args)
        if args.workflow_command == "list":
            _print([spec.model_dump(mode="json") for spec in list_workflows()])
            return 0

        if args.workflow_command == "trigger":
            try:
                spec = get_workflow(args.workflow_slug)
            except KeyError as exc:
                return _error(str(exc.args[0]))
            result = trigger_workflow(
                spec,
                ref=args.ref,
                inputs=_parse_key_value_args(args.input or []),
                token_env_override=args.token_env,
                dry_run=args.dry_run,
                github_api=args.github_api or config.github_api,
            )
            _print(result.model_dump(mode="json"))
            return 0

        if args.workflow_command == "status":
            remote = fetch_run_results(
                args.repo or config.repository,
                args.run_id,
                token_env=args.token_env or config.token_env,
                github_api=args.github_api or config.github_api,
            )
            _print(remote.model_dump(mode="json"))
            return 0

    if args.command == "pipeline":
        if args.pipeline_command == "list":
            _print([spec.to_dict() for spec in list_pipeline_specs()])
            return 0

        if args.pipeline_command == "run":
            config = _load(args)
            try:
                spec = get_pipeline_spec(args.pipeline_slug)
            except KeyError as exc:
                return _error(str(exc.args[0]))
            provided_inputs = _parse_pipeline_inputs(args.input or [])
            context = PipelineContext(
                workspace_root=config.workspace_root,
                inputs=_resolve_pipeline_inputs(spec, provided_inputs),
                raw_inputs=provided_inputs,
                config=config,
            )
            result = spec.runner(context)
            _print({"pipeline": spec.slug, **result.to_dict()})
            return _exit_code(result)

    if args.command == "run":
        config = _load(
            args,
            {
                "dry_run": args.dry_run,
                "max_workers": args.max_workers,
                "allow_install": args.allow_install,
                "skip_unknown_actions": args.skip_unknown_actions,
            },
        )
        if args.secret:
            use_mapping(_parse_key_value_args(args.secret))
        workflow = load_workflow(resolve_workflow_path(args.workflow, config.workflows_path))
        event = TriggerEvent(
            name=args.event,
            ref_name=args.ref_name,
            base_ref=args.base_ref,
            inputs=_parse_key_value_args(args.input or []),
        )
        run = WorkflowRunner(config).run(workflow, event, jobs=args.job)
        _print(run.to_dict())
        return 0 if run.conclusion == "success" else 1

    if args.command == "matrix":
        config = _load(args)
        workflow = load_workflow(resolve_workflow_path(args.workflow, config.workflows_path))
        _print(matrix_plan(workflow, args.job))
        return 0

    if args.command == "validate":
        config = _load(args)
        result = get_pipeline_spec("validate").runner(
            PipelineContext(workspace_root=config.workspace_root, inputs={}, raw_inputs={}, config=config)
        )
        _print(result.to_dict())
        return _exit_code(result)

    if args.command == "gate":
        config = _load(args)
        inputs: Dict[str, object] = {"results-env": args.results_env or "RESULTS"}
        if args.results is not None:
            inputs["results"] = args.results
        if args.run_id is not None:
            inputs["run-id"] = args.run_id
        if args.repo:
            inputs["repo"] = args.repo
        result = get_pipeline_spec("gate").runner(
            PipelineContext(workspace_root=config.workspace_root, inputs=inputs, raw_inputs={}, config=config)
        )
        if args.plain:
            print(result.receipts["result"])
        else:
            _print(result.to_dict())
        return _exit_code(result)

    if args.command == "secrets" and args.secrets_command == "list":
        config = _load(args)
        for path in discover_workflows(config.workflows_path):
            register_workflow_secrets(load_workflow(path))
        _print([describe_secret(spec.name) for spec in list_secrets()])
        return 0

    parser.error("Unknown command")
    return 1


def _exit_code(result: PipelineResult) -> int:
    return 0 if result.status == "ok" else 1


def _parse_pipeline_inputs(values: List[str]) -> Dict[str, List[str]]:
    inputs: Dict[str, List[str]] = {}
    for entry in values:
        if "=" not in entry:
            raise PipelineError(f"Pipeline input must be key=value (got '{entry}')")
        key, raw_value = entry.split("=", 1)
        key = key.strip()
        if not key:
            raise PipelineError("Pipeline input key cannot be empty.")
        inputs.setdefault(key, []).append(raw_value.strip())
    return inputs


def _resolve_pipeline_inputs(spec: PipelineSpec, provided: Dict[str, List[str]]) -> Dict[str, object]:
    resolved: Dict[str, object] = {}
    for name, input_spec in spec.inputs.items():
        values = provided.get(name, [])
        if input_spec.multiple:
            if values:
                resolved[name] = [value for value in values if value]
            elif input_spec.default is not None:
                default = input_spec.default
                resolved[name] = [str(item) for item in default] if isinstance(default, (list, tuple)) else [str(default)]
            elif input_spec.required:
                raise PipelineError(f"Missing required pipeline input '{name}' for '{spec.slug}'.")
            else:
                resolved[name] = []
        else:
            value = values[-1] if values else input_spec.default
            if value is None and input_spec.required:
                raise PipelineError(f"Missing required pipeline input '{name}' for '{spec.slug}'.")
            resolved[name] = value

    for name, values in provided.items():
        if name not in resolved:
            resolved[name] = values if len(values) != 1 else values[0]

    return resolved


def _parse_key_value_args(values: List[str]) -> Dict[str, str]:
    options: Dict[str, str] = {}
    for entry in values:
        if "=" not in entry:
            raise PipelineError(f"Argument must be key=value (got '{entry}')")
        key, raw_value = entry.split("=", 1)
        options[key.strip()] = raw_value.strip()
    return options


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
