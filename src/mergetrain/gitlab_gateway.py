from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
import os
from typing import cast
from urllib.parse import quote, urlencode

from mergetrain.models import MergeRequest, PipelineOutcome, PipelineStatus, User
from mergetrain.observability import log_event
from mergetrain.shell import run


LOGGER = logging.getLogger("mergetrain.gitlab_gateway")
_PAGE_SIZE = 100
_PIPELINE_STATUS_BY_HOST_STATUS: dict[str, PipelineStatus] = {
    "created": "running",
    "waiting_for_resource": "running",
    "preparing": "running",
    "pending": "running",
    "running": "running",
    "scheduled": "running",
    "success": "success",
    "failed": "failed",
    "canceling": "canceled",
    "canceled": "canceled",
    "skipped": "skipped",
    "manual": "manual",
}


class GitLabPollingError(RuntimeError):
    """Recoverable GitLab read failure; caller should retry next pass."""


@dataclass(frozen=True)
class GitLabGateway:
    host: str
    token: str = field(repr=False)
    project: str
    timeout_seconds: int = 60

    def list_open_merge_requests(self) -> list[MergeRequest]:
        merge_requests: list[MergeRequest] = []
        page = 1
        while True:
            query = urlencode({"state": "opened", "per_page": _PAGE_SIZE, "page": page})
            payload = self._api_json("GET", f"{self._project_path}/merge_requests?{query}")
            if not isinstance(payload, list):
                raise GitLabPollingError(
                    "Unexpected GitLab response: expected list for merge requests"
                )
            for item in payload:
                item_obj = _as_object_dict(item)
                if item_obj is None:
                    continue
                merge_requests.append(_parse_merge_request(item_obj))
            if len(payload) < _PAGE_SIZE:
                break
            page += 1
        log_event(
            LOGGER,
            "gitlab_read",
            endpoint="merge_requests",
            count=len(merge_requests),
        )
        return merge_requests

    def list_pipelines_for_sha(self, sha: str) -> tuple[PipelineOutcome, ...]:
        query = urlencode({"sha": sha, "order_by": "id", "sort": "desc", "per_page": _PAGE_SIZE})
        payload = self._api_json("GET", f"{self._project_path}/pipelines?{query}")
        if not isinstance(payload, list):
            raise GitLabPollingError("Unexpected GitLab response: expected list for pipelines")

        pipelines: list[PipelineOutcome] = []
        for item in payload:
            item_obj = _as_object_dict(item)
            if item_obj is None:
                continue
            pipelines.append(
                PipelineOutcome(
                    pipeline_id=_as_int(item_obj.get("id"), field="id"),
                    status=_as_pipeline_status(item_obj.get("status")),
                )
            )
        log_event(
            LOGGER,
            "gitlab_read",
            endpoint="pipelines",
            sha=sha,
            count=len(pipelines),
        )
        return tuple(pipelines)

    def list_branch_commits(self, branch: str, *, limit: int = _PAGE_SIZE) -> tuple[str, ...]:
        if not 1 <= limit <= _PAGE_SIZE:
            raise ValueError(f"limit must be between 1 and {_PAGE_SIZE}")
        query = urlencode({"ref_name": branch, "per_page": limit})
        payload = self._api_json("GET", f"{self._project_path}/repository/commits?{query}")
        if not isinstance(payload, list):
            raise GitLabPollingError("Unexpected GitLab response: expected list for commits")

        commit_ids: list[str] = []
        for item in payload:
            item_obj = _as_object_dict(item)
            if item_obj is None:
                continue
            commit_id = _as_string(item_obj.get("id")).strip()
            if commit_id:
                commit_ids.append(commit_id)
        log_event(
            LOGGER,
            "gitlab_read",
            endpoint="commits",
            branch=branch,
            count=len(commit_ids),
        )
        return tuple(commit_ids[:limit])

    def assign_merge_request(self, iid: int, user_id: int) -> None:
        self._mutate(
            "PUT",
            f"{self._project_path}/merge_requests/{iid}",
            payload={"assignee_ids": [user_id]},
            failed_event="gitlab_assign_failed",
            done_event="gitlab_merge_request_assigned",
            merge_request_iid=iid,
            assignee_id=user_id,
        )

    def post_merge_request_note(self, iid: int, body: str) -> None:
        self._mutate(
            "POST",
            f"{self._project_path}/merge_requests/{iid}/notes",
            payload={"body": body},
            failed_event="gitlab_note_failed",
            done_event="gitlab_note_posted",
            merge_request_iid=iid,
        )

    def rebase_merge_request(self, iid: int) -> None:
        self._mutate(
            "PUT",
            f"{self._project_path}/merge_requests/{iid}/rebase",
            failed_event="gitlab_rebase_failed",
            done_event="gitlab_rebase_requested",
            merge_request_iid=iid,
        )

    def merge_merge_request(self, iid: int) -> None:
        self._mutate(
            "PUT",
            f"{self._project_path}/merge_requests/{iid}/merge",
            failed_event="gitlab_merge_failed",
            done_event="gitlab_merge_requested",
            merge_request_iid=iid,
        )

    def cancel_pipeline(self, pipeline_id: int) -> None:
        self._mutate(
            "POST",
            f"{self._project_path}/pipelines/{pipeline_id}/cancel",
            failed_event="gitlab_pipeline_cancel_failed",
            done_event="gitlab_pipeline_canceled",
            pipeline_id=pipeline_id,
        )

    @property
    def _project_path(self) -> str:
        return f"projects/{quote(self.project, safe='')}"

    def _env(self) -> dict[str, str]:
        # glab reads the instance and credentials from these variables.
        return {**os.environ, "GITLAB_HOST": self.host, "GITLAB_TOKEN": self.token}

    def _mutate(
        self,
        method: str,
        path: str,
        *,
        failed_event: str,
        done_event: str,
        payload: dict[str, object] | None = None,
        **fields: object,
    ) -> None:
        try:
            self._api_json(method, path, payload=payload)
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                failed_event,
                project=self.project,
                error_type=type(exc).__name__,
                **fields,
            )
            raise
        log_event(LOGGER, done_event, project=self.project, **fields)

    def _api_json(self, method: str, path: str, payload: dict[str, object] | None = None) -> object:
        method_upper = method.upper()
        if method_upper == "GET":
            raw = ""
            try:
                raw = run(
                    ["glab", "api", "--method", "GET", "--include", path],
                    env=self._env(),
                    timeout_seconds=self.timeout_seconds,
                    check=False,
                )
                status_code, _headers, body = _parse_http_response(raw)
                if status_code < 200 or status_code >= 300:
                    message = body.strip() or "<empty>"
                    raise RuntimeError(
                        f"GitLab API request failed with status {status_code}: {message}"
                    )
                return json.loads(body)
            except Exception as exc:
                log_event(
                    LOGGER,
                    "gitlab_poll_get_failed",
                    path=path,
                    error_type=type(exc).__name__,
                    error=str(exc),
                    raw_preview=_preview_for_log(raw),
                )
                raise GitLabPollingError(
                    f"GitLab polling GET failed for path {path}: {exc}"
                ) from exc

        cmd = ["glab", "api", "--method", method_upper, path]
        stdin_payload: str | None = None
        if payload is not None:
            cmd.extend(["--header", "Content-Type: application/json", "--input", "-"])
            stdin_payload = json.dumps(payload)
        raw = run(
            cmd,
            input_text=stdin_payload,
            env=self._env(),
            timeout_seconds=self.timeout_seconds,
        )
        if not raw.strip():
            return None
        return json.loads(raw)


def _parse_merge_request(item_obj: dict[str, object]) -> MergeRequest:
    author_obj = _as_object_dict(item_obj.get("author"))
    if author_obj is None:
        raise GitLabPollingError("Unexpected GitLab response: merge request without author")

    assignees: list[User] = []
    assignees_obj = item_obj.get("assignees")
    if isinstance(assignees_obj, list):
        for entry in assignees_obj:
            entry_obj = _as_object_dict(entry)
            if entry_obj is not None:
                assignees.append(_parse_user(entry_obj))
    else:
        single_obj = _as_object_dict(item_obj.get("assignee"))
        if single_obj is not None:
            assignees.append(_parse_user(single_obj))

    labels_obj = item_obj.get("labels")
    labels: list[str] = []
    if isinstance(labels_obj, list):
        labels = [label for label in labels_obj if isinstance(label, str)]

    merge_status = _as_string(item_obj.get("merge_status")).strip().lower()
    sha = _as_optional_str(item_obj.get("sha"))
    if sha is not None:
        sha = sha.strip() or None
    return MergeRequest(
        iid=_as_int(item_obj.get("iid"), field="iid"),
        title=_as_string(item_obj.get("title")),
        source_branch=_as_string(item_obj.get("source_branch")),
        target_branch=_as_string(item_obj.get("target_branch")),
        author=_parse_user(author_obj),
        assignees=tuple(assignees),
        has_conflicts=(
            _as_bool(item_obj.get("has_conflicts", False)) or merge_status == "cannot_be_merged"
        ),
        sha=sha,
        labels=tuple(labels),
        web_url=_as_string(item_obj.get("web_url")),
    )


def _parse_user(user_obj: dict[str, object]) -> User:
    return User(
        user_id=_as_int(user_obj.get("id"), field="user.id"),
        name=_as_string(user_obj.get("name")),
        username=_as_string(user_obj.get("username")),
    )


def _parse_http_response(raw: str) -> tuple[int, dict[str, str], str]:
    normalized = raw.replace("\r\n", "\n")
    lines = normalized.split("\n")

    status_line_index = -1
    for index, line in enumerate(lines):
        if line.startswith("HTTP/"):
            status_line_index = index

    if status_line_index < 0:
        raise RuntimeError("Unexpected GitLab response: missing HTTP status line")

    status_line = lines[status_line_index]
    status_parts = status_line.split(" ", 2)
    if len(status_parts) < 2:
        raise RuntimeError(f"Unexpected GitLab response status line: {status_line!r}")

    try:
        status_code = int(status_parts[1])
    except ValueError as exc:
        raise RuntimeError(f"Unexpected GitLab response status line: {status_line!r}") from exc

    headers: dict[str, str] = {}
    body_start = len(lines)
    for index in range(status_line_index + 1, len(lines)):
        line = lines[index]
        if line == "":
            body_start = index + 1
            break
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        headers[key.strip().lower()] = value.strip()

    body = "\n".join(lines[body_start:])
    return status_code, headers, body


def _preview_for_log(text: str, *, limit: int = 240) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def _as_pipeline_status(value: object) -> PipelineStatus:
    raw = _as_string(value).strip().lower()
    status = _PIPELINE_STATUS_BY_HOST_STATUS.get(raw)
    if status is None:
        raise GitLabPollingError(f"Unexpected GitLab pipeline status: {raw!r}")
    return status


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_string(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _as_optional_str(value: object) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return str(value)


def _as_int(value: object, *, field: str) -> int:
    if isinstance(value, bool):
        raise GitLabPollingError(f"Unexpected GitLab response type for {field}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise GitLabPollingError(
                f"Unexpected GitLab response value for {field}: {value}"
            ) from exc
    raise GitLabPollingError(f"Unexpected GitLab response type for {field}")


def _as_bool(value: object) -> bool:
    if isinstance(value, bool):
        return value
    raise GitLabPollingError("Unexpected GitLab response type for bool field")
