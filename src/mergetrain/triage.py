"""Classify merge train candidates into at most one action each.

Everything here is a pure function of the candidate and the policy. Ordering
and the rebase cap belong to the scheduler.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Final

from mergetrain.models import Candidate, PipelineStatus, ReassignReason, TrainAction


MERGEABLE_PIPELINE_STATUSES: Final[frozenset[PipelineStatus]] = frozenset(
    {"success", "canceled", "manual"}
)
_REASON_TEXT: Final[dict[ReassignReason, str]] = {
    "merge_conflict": "merge conflict",
    "pipeline_failed": "pipeline failed",
}


@dataclass(frozen=True)
class TriagePolicy:
    reassign_on_pipeline_failure: bool


def triage(candidate: Candidate, policy: TriagePolicy) -> TrainAction | None:
    merge_request = candidate.merge_request
    if merge_request.has_conflicts:
        return _reassign(candidate, "merge_conflict")

    statuses = [pipeline.status for pipeline in candidate.pipelines]
    if policy.reassign_on_pipeline_failure and "failed" in statuses:
        return _reassign(candidate, "pipeline_failed")

    if statuses and all(status in MERGEABLE_PIPELINE_STATUSES for status in statuses):
        return TrainAction(kind="merge", merge_request_iid=candidate.iid)

    if not candidate.is_rebased:
        return TrainAction(kind="rebase", merge_request_iid=candidate.iid)

    return None


def triage_all(
    candidates: Sequence[Candidate], policy: TriagePolicy
) -> tuple[tuple[Candidate, TrainAction | None], ...]:
    return tuple((candidate, triage(candidate, policy)) for candidate in candidates)


def reason_text(reason: ReassignReason) -> str:
    return _REASON_TEXT[reason]


def render_reassign_note(reason: ReassignReason, username: str) -> str:
    return (
        f"Merge train stopped: {reason_text(reason)}. "
        f"@{username} please take a look and assign this merge request back "
        "to the merge train bot once it is ready."
    )


def _reassign(candidate: Candidate, reason: ReassignReason) -> TrainAction:
    return TrainAction(
        kind="reassign",
        merge_request_iid=candidate.iid,
        reason=reason,
        author=candidate.merge_request.author,
    )
