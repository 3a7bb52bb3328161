from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
import logging

from mergetrain.gitlab_gateway import GitLabGateway
from mergetrain.models import (
    Candidate,
    DispatchKind,
    DispatchOutcome,
    PipelineCancellation,
    TrainAction,
)
from mergetrain.observability import log_event
from mergetrain.triage import reason_text, render_reassign_note


LOGGER = logging.getLogger("mergetrain.scheduler")


@dataclass(frozen=True)
class SchedulePolicy:
    rebase_limit: int
    cancel_stale_pipelines: bool


@dataclass(frozen=True)
class PassPlan:
    reassignments: tuple[TrainAction, ...] = ()
    cancellations: tuple[PipelineCancellation, ...] = ()
    rebases: tuple[TrainAction, ...] = ()
    deferred_rebases: tuple[TrainAction, ...] = ()
    merges: tuple[TrainAction, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not (self.reassignments or self.cancellations or self.rebases or self.merges)


def plan_pass(
    decisions: Sequence[tuple[Candidate, TrainAction | None]], policy: SchedulePolicy
) -> PassPlan:
    if policy.rebase_limit < 1:
        raise ValueError("rebase_limit must be >= 1")

    ordered = sorted(decisions, key=lambda decision: decision[0].iid)
    reassignments: list[TrainAction] = []
    merges: list[TrainAction] = []
    wanted_rebases: list[tuple[Candidate, TrainAction]] = []
    for candidate, action in ordered:
        if action is None:
            continue
        if action.kind == "reassign":
            reassignments.append(action)
        elif action.kind == "merge":
            merges.append(action)
        else:
            wanted_rebases.append((candidate, action))

    cancellations: list[PipelineCancellation] = []
    if policy.cancel_stale_pipelines:
        for candidate, _action in ordered:
            if candidate.is_rebased:
                continue
            cancellations.extend(
                PipelineCancellation(
                    merge_request_iid=candidate.iid,
                    pipeline_id=pipeline.pipeline_id,
                )
                for pipeline in candidate.pipelines
                if pipeline.in_flight
            )

    rebases = [action for _candidate, action in wanted_rebases]
    return PassPlan(
        reassignments=tuple(reassignments),
        cancellations=tuple(cancellations),
        rebases=tuple(rebases[: policy.rebase_limit]),
        deferred_rebases=tuple(rebases[policy.rebase_limit :]),
        merges=tuple(merges),
    )


class ActionScheduler:
    """Send a planned pass to GitLab in train order.

    Reassignments (assign, then note) go first, then stale pipeline
    cancellations, then the capped rebase batch, then merges. Each gateway
    call stands alone: a failure is logged and the remaining calls still run.
    Nothing is retried within a pass.
    """

    def __init__(self, gateway: GitLabGateway) -> None:
        self._gateway = gateway

    def dispatch(self, plan: PassPlan) -> tuple[DispatchOutcome, ...]:
        outcomes: list[DispatchOutcome] = []

        for action in plan.reassignments:
            outcomes.extend(self._dispatch_reassign(action))

        for cancellation in plan.cancellations:
            outcomes.append(
                self._attempt(
                    "cancel_pipeline",
                    cancellation.merge_request_iid,
                    cancellation.pipeline_id,
                    lambda c=cancellation: self._gateway.cancel_pipeline(c.pipeline_id),
                    done_event="pipeline_cancel_dispatched",
                )
            )

        for action in plan.rebases:
            outcomes.append(
                self._attempt(
                    "rebase",
                    action.merge_request_iid,
                    None,
                    lambda a=action: self._gateway.rebase_merge_request(a.merge_request_iid),
                    done_event="rebase_dispatched",
                )
            )
        if plan.deferred_rebases:
            log_event(
                LOGGER,
                "rebase_deferred",
                merge_request_iids=[action.merge_request_iid for action in plan.deferred_rebases],
            )

        for action in plan.merges:
            outcomes.append(
                self._attempt(
                    "merge",
                    action.merge_request_iid,
                    None,
                    lambda a=action: self._gateway.merge_merge_request(a.merge_request_iid),
                    done_event="merge_dispatched",
                )
            )

        return tuple(outcomes)

    def _dispatch_reassign(self, action: TrainAction) -> list[DispatchOutcome]:
        author = action.author
        reason = action.reason
        if author is None or reason is None:
            raise ValueError(
                f"reassign action for merge request {action.merge_request_iid} "
                "needs an author and a reason"
            )
        iid = action.merge_request_iid
        assign = self._attempt(
            "assign",
            iid,
            author.user_id,
            lambda: self._gateway.assign_merge_request(iid, author.user_id),
        )
        note = self._attempt(
            "comment",
            iid,
            None,
            lambda: self._gateway.post_merge_request_note(
                iid, render_reassign_note(reason, author.username)
            ),
        )
        if assign.success and note.success:
            log_event(
                LOGGER,
                "reassign_dispatched",
                merge_request_iid=iid,
                author=author.username,
                reason=reason_text(reason),
            )
        return [assign, note]

    def _attempt(
        self,
        kind: DispatchKind,
        merge_request_iid: int,
        target_id: int | None,
        call: Callable[[], None],
        *,
        done_event: str | None = None,
    ) -> DispatchOutcome:
        try:
            call()
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "dispatch_failed",
                kind=kind,
                merge_request_iid=merge_request_iid,
                target_id=target_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return DispatchOutcome(
                kind=kind,
                merge_request_iid=merge_request_iid,
                target_id=target_id,
                success=False,
                error=str(exc),
            )
        if done_event is not None:
            log_event(
                LOGGER,
                done_event,
                merge_request_iid=merge_request_iid,
                target_id=target_id,
            )
        return DispatchOutcome(
            kind=kind,
            merge_request_iid=merge_request_iid,
            target_id=target_id,
            success=True,
        )
