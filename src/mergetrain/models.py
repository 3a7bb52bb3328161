from __future__ import annotations

from dataclasses import dataclass
from typing import Literal


PipelineStatus = Literal["success", "failed", "running", "canceled", "manual", "skipped"]
RebaseState = Literal["rebased", "not_rebased"]
ActionKind = Literal["reassign", "rebase", "merge"]
ReassignReason = Literal["merge_conflict", "pipeline_failed"]
DispatchKind = Literal["assign", "comment", "cancel_pipeline", "rebase", "merge"]


@dataclass(frozen=True)
class User:
    user_id: int
    name: str
    username: str


@dataclass(frozen=True)
class MergeRequest:
    iid: int
    title: str
    source_branch: str
    target_branch: str
    author: User
    assignees: tuple[User, ...]
    has_conflicts: bool
    sha: str | None
    labels: tuple[str, ...] = ()
    web_url: str = ""

    def is_assigned_to(self, name: str) -> bool:
        return any(user.name == name for user in self.assignees)


@dataclass(frozen=True)
class PipelineOutcome:
    pipeline_id: int
    status: PipelineStatus

    @property
    def in_flight(self) -> bool:
        return self.status == "running"


@dataclass(frozen=True)
class Candidate:
    merge_request: MergeRequest
    pipelines: tuple[PipelineOutcome, ...]
    rebase_state: RebaseState

    @property
    def iid(self) -> int:
        return self.merge_request.iid

    @property
    def is_rebased(self) -> bool:
        return self.rebase_state == "rebased"


@dataclass(frozen=True)
class TrainAction:
    kind: ActionKind
    merge_request_iid: int
    reason: ReassignReason | None = None
    author: User | None = None


@dataclass(frozen=True)
class PipelineCancellation:
    merge_request_iid: int
    pipeline_id: int


@dataclass(frozen=True)
class DispatchOutcome:
    kind: DispatchKind
    merge_request_iid: int
    target_id: int | None
    success: bool
    error: str | None = None
