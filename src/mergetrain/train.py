from __future__ import annotations

from dataclasses import dataclass
import itertools
import logging
from threading import Event

from mergetrain.config import AppConfig
from mergetrain.gitlab_gateway import GitLabGateway, GitLabPollingError
from mergetrain.models import Candidate, DispatchOutcome, TrainAction
from mergetrain.observability import log_event, logging_pass_context
from mergetrain.scheduler import ActionScheduler, PassPlan, SchedulePolicy, plan_pass
from mergetrain.snapshot import ClaimPredicate, SnapshotBuilder, claim_predicate_for
from mergetrain.triage import TriagePolicy, triage_all


LOGGER = logging.getLogger("mergetrain.train")


@dataclass(frozen=True)
class PassPreview:
    candidates: tuple[Candidate, ...]
    decisions: tuple[tuple[Candidate, TrainAction | None], ...]
    plan: PassPlan


@dataclass(frozen=True)
class PassResult:
    candidate_count: int
    plan: PassPlan
    outcomes: tuple[DispatchOutcome, ...]

    @property
    def failure_count(self) -> int:
        return sum(1 for outcome in self.outcomes if not outcome.success)


class MergeTrain:
    def __init__(
        self,
        config: AppConfig,
        *,
        gateway: GitLabGateway,
        claims: ClaimPredicate | None = None,
    ) -> None:
        self._config = config
        self._snapshot = SnapshotBuilder(
            gateway,
            claims=claims if claims is not None else claim_predicate_for(config),
            worker_count=config.runtime.snapshot_worker_count,
            commit_lookback=config.train.commit_lookback,
        )
        self._scheduler = ActionScheduler(gateway)
        self._triage_policy = TriagePolicy(
            reassign_on_pipeline_failure=config.train.reassign_on_pipeline_failure
        )
        self._schedule_policy = SchedulePolicy(
            rebase_limit=config.train.rebase_limit,
            cancel_stale_pipelines=config.train.cancel_stale_pipelines,
        )
        self._pass_ids = itertools.count(1)

    def plan_pass(self) -> PassPreview:
        candidates = self._snapshot.build()
        decisions = triage_all(candidates, self._triage_policy)
        return PassPreview(
            candidates=candidates,
            decisions=decisions,
            plan=plan_pass(decisions, self._schedule_policy),
        )

    def run_pass(self) -> PassResult:
        log_event(
            LOGGER,
            "pass_started",
            rebase_limit=self._schedule_policy.rebase_limit,
            reassign_on_pipeline_failure=self._triage_policy.reassign_on_pipeline_failure,
        )
        preview = self.plan_pass()
        outcomes = self._scheduler.dispatch(preview.plan)
        result = PassResult(
            candidate_count=len(preview.candidates),
            plan=preview.plan,
            outcomes=outcomes,
        )
        log_event(
            LOGGER,
            "pass_completed",
            candidate_count=result.candidate_count,
            reassign_count=len(preview.plan.reassignments),
            cancel_count=len(preview.plan.cancellations),
            rebase_count=len(preview.plan.rebases),
            deferred_rebase_count=len(preview.plan.deferred_rebases),
            merge_count=len(preview.plan.merges),
            failure_count=result.failure_count,
        )
        return result

    def run(self, *, once: bool, stop_event: Event | None = None) -> None:
        stop = stop_event if stop_event is not None else Event()
        project = self._config.gitlab.project
        while not stop.is_set():
            with logging_pass_context(project, next(self._pass_ids)):
                try:
                    self.run_pass()
                except GitLabPollingError as exc:
                    log_event(
                        LOGGER,
                        "pass_failed",
                        error_type=type(exc).__name__,
                        error=str(exc),
                    )
            if once:
                return
            stop.wait(self._config.runtime.poll_interval_seconds)
        log_event(LOGGER, "train_stopped", project=project)
