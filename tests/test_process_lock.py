from __future__ import annotations

import errno
import json
import os
from pathlib import Path

import pytest

from mergetrain import process_lock as process_lock_module
from mergetrain.process_lock import ProcessLockError, lock_path_for, train_process_lock


_PROJECT = "group/app"


def _lock_path(base_dir: Path) -> Path:
    return base_dir / "train-group-app.lock"


def _write_owner(lock_path: Path, **payload: object) -> None:
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    lock_path.write_text(json.dumps(payload, sort_keys=True), encoding="utf-8")


def test_lock_path_is_derived_from_project(tmp_path: Path) -> None:
    nested = lock_path_for(tmp_path, "group/sub group/app")
    assert nested == tmp_path / "train-group-sub-group-app.lock"
    assert lock_path_for(tmp_path, "12345") == tmp_path / "train-12345.lock"
    assert lock_path_for(tmp_path, "///") == tmp_path / "train-project.lock"


def test_train_process_lock_creates_and_removes_lock_file(tmp_path: Path) -> None:
    with train_process_lock(base_dir=tmp_path, project=_PROJECT, command="run"):
        lock_path = _lock_path(tmp_path)
        assert lock_path.exists()
        payload = json.loads(lock_path.read_text(encoding="utf-8"))
        assert payload["pid"] == os.getpid()
        assert payload["command"] == "run"
        assert payload["project"] == _PROJECT
        assert isinstance(payload["started_at"], str)
        assert isinstance(payload["token"], str)
    assert not _lock_path(tmp_path).exists()


def test_train_process_lock_rejects_when_active_lock_exists(tmp_path: Path) -> None:
    _write_owner(_lock_path(tmp_path), pid=os.getpid(), command="run", project=_PROJECT)

    with pytest.raises(ProcessLockError, match="Another merge train process appears active") as info:
        with train_process_lock(base_dir=tmp_path, project=_PROJECT, command="run"):
            pass

    assert f"pid={os.getpid()}" in str(info.value)
    assert "command=run" in str(info.value)
    assert _lock_path(tmp_path).exists()


def test_train_process_lock_allows_other_projects(tmp_path: Path) -> None:
    with train_process_lock(base_dir=tmp_path, project="group/one", command="run"):
        with train_process_lock(base_dir=tmp_path, project="group/two", command="run"):
            assert lock_path_for(tmp_path, "group/one").exists()
            assert lock_path_for(tmp_path, "group/two").exists()


def test_train_process_lock_reclaims_stale_lock(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    lock_path = _lock_path(tmp_path)
    _write_owner(lock_path, pid=424242, command="run", token="old")
    monkeypatch.setattr(process_lock_module, "_pid_is_running", lambda pid: False)

    with train_process_lock(base_dir=tmp_path, project=_PROJECT, command="run"):
        payload = json.loads(lock_path.read_text(encoding="utf-8"))
        assert payload["token"] != "old"
        assert payload["pid"] == os.getpid()

    assert not lock_path.exists()


def test_train_process_lock_rejects_lock_without_owner(tmp_path: Path) -> None:
    _lock_path(tmp_path).parent.mkdir(parents=True, exist_ok=True)
    _lock_path(tmp_path).write_text("", encoding="utf-8")

    with pytest.raises(ProcessLockError, match=r"active for group/app\. Lock file"):
        with train_process_lock(base_dir=tmp_path, project=_PROJECT, command="run"):
            pass


def test_acquire_handles_write_failure_and_cleans_up(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    lock_path = _lock_path(tmp_path)
    lock = process_lock_module._TrainProcessLock(
        lock_path=lock_path, project=_PROJECT, command="run"
    )
    monkeypatch.setattr(
        process_lock_module.os, "write", lambda fd, data: (_ for _ in ()).throw(OSError("boom"))
    )

    with pytest.raises(OSError, match="boom"):
        lock.acquire()
    assert not lock_path.exists()


def test_acquire_raises_after_stale_clear_retries(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    lock = process_lock_module._TrainProcessLock(
        lock_path=_lock_path(tmp_path), project=_PROJECT, command="run"
    )
    monkeypatch.setattr(
        process_lock_module.os,
        "open",
        lambda *args, **kwargs: (_ for _ in ()).throw(FileExistsError()),
    )
    monkeypatch.setattr(
        process_lock_module._TrainProcessLock, "_clear_stale_lock", lambda self: True
    )
    monkeypatch.setattr(
        process_lock_module._TrainProcessLock,
        "_active_lock_message",
        lambda self: "lock still held",
    )

    with pytest.raises(ProcessLockError, match="lock still held"):
        lock.acquire()


def test_release_leaves_replacement_lock_alone(tmp_path: Path) -> None:
    lock_path = _lock_path(tmp_path)
    lock = process_lock_module._TrainProcessLock(
        lock_path=lock_path, project=_PROJECT, command="run"
    )

    lock.release()

    lock.acquire()
    os.unlink(lock_path)
    lock.release()
    assert not lock_path.exists()

    lock.acquire()
    _write_owner(lock_path, pid=1, command="run", token="someone-else")
    lock.release()
    assert lock_path.exists()
    assert json.loads(lock_path.read_text(encoding="utf-8"))["token"] == "someone-else"


def test_clear_stale_lock_branches(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    lock_path = _lock_path(tmp_path)
    lock = process_lock_module._TrainProcessLock(
        lock_path=lock_path, project=_PROJECT, command="run"
    )

    _write_owner(lock_path, pid=os.getpid())
    assert lock._clear_stale_lock() is False

    _write_owner(lock_path, pid=777)
    monkeypatch.setattr(process_lock_module, "_pid_is_running", lambda pid: True)
    assert lock._clear_stale_lock() is False
    assert lock_path.exists()

    monkeypatch.setattr(process_lock_module, "_pid_is_running", lambda pid: False)
    monkeypatch.setattr(
        Path, "unlink", lambda self, missing_ok=False: (_ for _ in ()).throw(OSError("deny"))
    )
    assert lock._clear_stale_lock() is False

    monkeypatch.undo()
    monkeypatch.setattr(process_lock_module, "_pid_is_running", lambda pid: False)
    assert lock._clear_stale_lock() is True
    assert not lock_path.exists()


def test_read_lock_owner_edge_cases(tmp_path: Path) -> None:
    lock_path = _lock_path(tmp_path)
    assert process_lock_module._read_lock_owner(lock_path).pid is None

    lock_path.parent.mkdir(parents=True, exist_ok=True)
    for text in ("", "{not-json", "[]", '{"pid": true}', '{"pid": "12"}'):
        lock_path.write_text(text, encoding="utf-8")
        assert process_lock_module._read_lock_owner(lock_path).pid is None

    lock_path.write_text('{"pid": 12, "command": "run", "token": 5}', encoding="utf-8")
    owner = process_lock_module._read_lock_owner(lock_path)
    assert owner.pid == 12
    assert owner.command == "run"
    assert owner.token is None


@pytest.mark.parametrize(
    ("pid", "kill_side_effect", "expected"),
    [
        (-1, None, False),
        (12, ProcessLookupError(), False),
        (12, PermissionError(), True),
        (12, OSError(errno.EEXIST, "other"), True),
        (12, OSError(errno.ESRCH, "gone"), False),
        (12, None, True),
    ],
)
def test_pid_is_running_branches(
    pid: int,
    kill_side_effect: BaseException | None,
    expected: bool,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def fake_kill(target_pid: int, sig: int) -> None:
        _ = target_pid, sig
        if kill_side_effect is None:
            return
        raise kill_side_effect

    monkeypatch.setattr(process_lock_module.os, "kill", fake_kill)
    assert process_lock_module._pid_is_running(pid) is expected
