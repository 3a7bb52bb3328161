from __future__ import annotations

import argparse
from collections.abc import Sequence
import json
from pathlib import Path
import signal
from threading import Event
from types import FrameType

from mergetrain.config import AppConfig, load_config
from mergetrain.gitlab_gateway import GitLabGateway
from mergetrain.models import PipelineCancellation, TrainAction
from mergetrain.observability import configure_logging
from mergetrain.process_lock import train_process_lock
from mergetrain.scheduler import PassPlan
from mergetrain.train import MergeTrain, PassPreview


_STOP_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mergetrain")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser(
        "run", help="Poll GitLab and drive claimed merge requests through the train"
    )
    _add_common_arguments(run_parser)
    run_parser.add_argument("--once", action="store_true", help="Run a single pass and exit")

    plan_parser = subparsers.add_parser(
        "plan", help="Show what the next pass would do without changing anything"
    )
    _add_common_arguments(plan_parser)
    plan_parser.add_argument("--json", action="store_true", help="Print the plan as JSON")

    return parser


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional TOML file with runtime, train and gitlab settings",
    )
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Log every event to stderr",
    )
    verbosity.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        help="Disable runtime logging",
    )


def main() -> None:
    args = build_parser().parse_args()
    config = load_config(args.config)
    configure_logging(
        _verbose_mode(args),
        state_dir=config.runtime.base_dir if config.runtime.log_to_file else None,
    )

    if args.command == "run":
        _cmd_run(config, once=bool(args.once))
        return
    if args.command == "plan":
        _cmd_plan(config, as_json=bool(args.json))
        return

    raise RuntimeError(f"Unknown command: {args.command}")


def _verbose_mode(args: argparse.Namespace) -> str | None:
    if getattr(args, "quiet", False):
        return None
    if getattr(args, "verbose", False):
        return "high"
    return "low"


def _cmd_run(config: AppConfig, *, once: bool) -> None:
    train = MergeTrain(config, gateway=_build_gateway(config))
    stop_event = Event()
    with train_process_lock(
        base_dir=config.runtime.base_dir,
        project=config.gitlab.project,
        command="run",
    ):
        previous_handlers = _install_stop_handlers(stop_event)
        try:
            train.run(once=once, stop_event=stop_event)
        finally:
            for signum, handler in previous_handlers.items():
                signal.signal(signum, handler)


def _cmd_plan(config: AppConfig, *, as_json: bool) -> None:
    preview = MergeTrain(config, gateway=_build_gateway(config)).plan_pass()
    if as_json:
        print(json.dumps(_preview_payload(preview), indent=2))
        return

    if not preview.candidates:
        print("No merge requests are claimed by the merge train.")
        return

    for candidate, action in preview.decisions:
        statuses = ",".join(pipeline.status for pipeline in candidate.pipelines) or "<none>"
        action_label = "none" if action is None else action.kind
        if action is not None and action.reason is not None:
            action_label = f"{action_label}({action.reason})"
        print(
            f"!{candidate.iid} action={action_label} rebase_state={candidate.rebase_state} "
            f"conflict={str(candidate.merge_request.has_conflicts).lower()} pipelines={statuses}"
        )
        print(f"title={candidate.merge_request.title}")
        print()
    print(_summarize_plan(preview.plan))


def _build_gateway(config: AppConfig) -> GitLabGateway:
    return GitLabGateway(
        host=config.gitlab.host,
        token=config.gitlab.token,
        project=config.gitlab.project,
        timeout_seconds=config.gitlab.timeout_seconds,
    )


def _install_stop_handlers(stop_event: Event) -> dict[int, object]:
    def request_stop(signum: int, frame: FrameType | None) -> None:
        _ = signum, frame
        stop_event.set()

    previous: dict[int, object] = {}
    for signum in _STOP_SIGNALS:
        previous[signum] = signal.signal(signum, request_stop)
    return previous


def _preview_payload(preview: PassPreview) -> dict[str, object]:
    plan = preview.plan
    return {
        "candidates": [
            {
                "iid": candidate.iid,
                "title": candidate.merge_request.title,
                "web_url": candidate.merge_request.web_url,
                "has_conflicts": candidate.merge_request.has_conflicts,
                "rebase_state": candidate.rebase_state,
                "pipelines": [
                    {"id": pipeline.pipeline_id, "status": pipeline.status}
                    for pipeline in candidate.pipelines
                ],
                "action": None if action is None else action.kind,
                "reason": None if action is None else action.reason,
            }
            for candidate, action in preview.decisions
        ],
        "plan": {
            "reassign": [action.merge_request_iid for action in plan.reassignments],
            "cancel_pipelines": [
                {"iid": item.merge_request_iid, "pipeline_id": item.pipeline_id}
                for item in plan.cancellations
            ],
            "rebase": [action.merge_request_iid for action in plan.rebases],
            "deferred_rebase": [action.merge_request_iid for action in plan.deferred_rebases],
            "merge": [action.merge_request_iid for action in plan.merges],
        },
    }


def _summarize_plan(plan: PassPlan) -> str:
    if plan.is_empty:
        return "Nothing to do this pass."

    def iids(items: Sequence[TrainAction | PipelineCancellation]) -> str:
        return ", ".join(f"!{item.merge_request_iid}" for item in items) or "-"

    return (
        f"reassign: {iids(plan.reassignments)}\n"
        f"cancel pipelines: {iids(plan.cancellations)}\n"
        f"rebase: {iids(plan.rebases)} (deferred: {iids(plan.deferred_rebases)})\n"
        f"merge: {iids(plan.merges)}"
    )
