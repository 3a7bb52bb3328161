from __future__ import annotations

from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
import contextvars
import logging

from mergetrain.config import AppConfig
from mergetrain.gitlab_gateway import GitLabGateway
from mergetrain.models import Candidate, MergeRequest, PipelineOutcome, RebaseState
from mergetrain.observability import log_event


LOGGER = logging.getLogger("mergetrain.snapshot")

ClaimPredicate = Callable[[MergeRequest], bool]


def assigned_to(bot_name: str) -> ClaimPredicate:
    def claims(merge_request: MergeRequest) -> bool:
        return merge_request.is_assigned_to(bot_name)

    return claims


def labeled_with(label: str) -> ClaimPredicate:
    def claims(merge_request: MergeRequest) -> bool:
        return label in merge_request.labels

    return claims


def claim_predicate_for(config: AppConfig) -> ClaimPredicate:
    if config.train.claim_label is not None:
        return labeled_with(config.train.claim_label)
    return assigned_to(config.gitlab.bot_name)


class SnapshotBuilder:
    def __init__(
        self,
        gateway: GitLabGateway,
        *,
        claims: ClaimPredicate,
        worker_count: int,
        commit_lookback: int,
    ) -> None:
        if worker_count < 1:
            raise ValueError("worker_count must be >= 1")
        self._gateway = gateway
        self._claims = claims
        self._worker_count = worker_count
        self._commit_lookback = commit_lookback

    def build(self) -> tuple[Candidate, ...]:
        """Return the claimed merge requests with their pipeline and rebase facts.

        A failed merge request listing propagates. Failed per-candidate reads
        are logged and degrade to no pipelines / not rebased. Only the newest
        pipeline of the head commit is kept. Candidates come back sorted by iid
        ascending.
        """
        merge_requests = self._gateway.list_open_merge_requests()
        claimed = [merge_request for merge_request in merge_requests if self._claims(merge_request)]
        log_event(
            LOGGER,
            "snapshot_claimed",
            open_count=len(merge_requests),
            claimed_count=len(claimed),
        )
        if not claimed:
            return ()

        with ThreadPoolExecutor(
            max_workers=min(self._worker_count, len(claimed)),
            thread_name_prefix="mergetrain-snapshot",
        ) as pool:
            futures = [
                pool.submit(contextvars.copy_context().run, self._build_candidate, merge_request)
                for merge_request in claimed
            ]
            candidates = [future.result() for future in futures]
        return tuple(sorted(candidates, key=lambda candidate: candidate.iid))

    def _build_candidate(self, merge_request: MergeRequest) -> Candidate:
        return Candidate(
            merge_request=merge_request,
            pipelines=self._fetch_pipelines(merge_request),
            rebase_state=self._fetch_rebase_state(merge_request),
        )

    def _fetch_pipelines(self, merge_request: MergeRequest) -> tuple[PipelineOutcome, ...]:
        if merge_request.sha is None:
            return ()
        try:
            pipelines = self._gateway.list_pipelines_for_sha(merge_request.sha)
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "snapshot_pipelines_unavailable",
                merge_request_iid=merge_request.iid,
                sha=merge_request.sha,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return ()
        # Newest first; a re-run on the same commit supersedes earlier runs.
        return pipelines[:1]

    def _fetch_rebase_state(self, merge_request: MergeRequest) -> RebaseState:
        try:
            target_commits = self._gateway.list_branch_commits(merge_request.target_branch, limit=1)
            if not target_commits:
                return "not_rebased"
            source_commits = self._gateway.list_branch_commits(
                merge_request.source_branch, limit=self._commit_lookback
            )
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "snapshot_rebase_state_unavailable",
                merge_request_iid=merge_request.iid,
                source_branch=merge_request.source_branch,
                target_branch=merge_request.target_branch,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return "not_rebased"
        return "rebased" if target_commits[0] in source_commits else "not_rebased"
