from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
import errno
import json
import os
from pathlib import Path
import re
import secrets
from typing import Iterator


class ProcessLockError(RuntimeError):
    """Raised when another train process already drives the same project."""


@dataclass(frozen=True)
class _LockOwner:
    pid: int | None
    command: str | None
    project: str | None
    token: str | None


def lock_path_for(base_dir: Path, project: str) -> Path:
    slug = re.sub(r"[^A-Za-z0-9._-]+", "-", project).strip("-") or "project"
    return base_dir / f"train-{slug}.lock"


@contextmanager
def train_process_lock(*, base_dir: Path, project: str, command: str) -> Iterator[None]:
    lock = _TrainProcessLock(
        lock_path=lock_path_for(base_dir, project),
        project=project,
        command=command,
    )
    lock.acquire()
    try:
        yield
    finally:
        lock.release()


class _TrainProcessLock:
    def __init__(self, *, lock_path: Path, project: str, command: str) -> None:
        self._lock_path = lock_path
        self._project = project
        self._command = command
        self._token: str | None = None

    def acquire(self) -> None:
        self._lock_path.parent.mkdir(parents=True, exist_ok=True)
        # One retry after reclaiming a lock left behind by a dead process.
        for _ in range(2):
            try:
                fd = os.open(self._lock_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
            except FileExistsError:
                if self._clear_stale_lock():
                    continue
                raise ProcessLockError(self._active_lock_message()) from None

            token = secrets.token_hex(16)
            try:
                payload = {
                    "pid": os.getpid(),
                    "command": self._command,
                    "project": self._project,
                    "started_at": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
                    "token": token,
                }
                os.write(fd, (json.dumps(payload, sort_keys=True) + "\n").encode("utf-8"))
                os.fsync(fd)
            except Exception:
                os.close(fd)
                self._lock_path.unlink(missing_ok=True)
                raise
            os.close(fd)
            self._token = token
            return

        raise ProcessLockError(self._active_lock_message())

    def release(self) -> None:
        token, self._token = self._token, None
        if token is None:
            return
        if _read_lock_owner(self._lock_path).token != token:
            return
        self._lock_path.unlink(missing_ok=True)

    def _clear_stale_lock(self) -> bool:
        owner = _read_lock_owner(self._lock_path)
        if owner.pid is None or owner.pid == os.getpid():
            return False
        if _pid_is_running(owner.pid):
            return False
        try:
            self._lock_path.unlink(missing_ok=True)
        except OSError:
            return False
        return True

    def _active_lock_message(self) -> str:
        owner = _read_lock_owner(self._lock_path)
        owner_parts: list[str] = []
        if owner.pid is not None:
            owner_parts.append(f"pid={owner.pid}")
        if owner.command:
            owner_parts.append(f"command={owner.command}")
        owner_detail = f" ({', '.join(owner_parts)})" if owner_parts else ""
        return (
            f"Another merge train process appears active for {self._project}{owner_detail}. "
            f"Lock file: {self._lock_path}. If this lock is stale, stop the other process "
            "and remove the lock file, then retry."
        )


def _read_lock_owner(lock_path: Path) -> _LockOwner:
    empty = _LockOwner(pid=None, command=None, project=None, token=None)
    try:
        payload_text = lock_path.read_text(encoding="utf-8").strip()
    except OSError:
        return empty
    if not payload_text:
        return empty
    try:
        payload = json.loads(payload_text)
    except json.JSONDecodeError:
        return empty
    if not isinstance(payload, dict):
        return empty
    raw_pid = payload.get("pid")
    raw_command = payload.get("command")
    raw_project = payload.get("project")
    raw_token = payload.get("token")
    return _LockOwner(
        pid=raw_pid if isinstance(raw_pid, int) and not isinstance(raw_pid, bool) else None,
        command=raw_command if isinstance(raw_command, str) else None,
        project=raw_project if isinstance(raw_project, str) else None,
        token=raw_token if isinstance(raw_token, str) else None,
    )


def _pid_is_running(pid: int) -> bool:
    if pid < 1:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError as exc:
        return exc.errno != errno.ESRCH
    return True
