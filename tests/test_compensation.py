import asyncio

import pytest

from changeflow.compensation import (
    CompensationFailed,
    CompensationLedger,
    ForwardAction,
    idempotency_key,
    run_all_async,
)
from changeflow.errors import ChangeflowError


def _actions(log: list[str], count: int, fail_at: int) -> list[ForwardAction]:
    actions = []
    for index in range(1, count + 1):

        def _run(key: str, index: int = index) -> str:
            if index == fail_at:
                raise RuntimeError(f"step {index} failed")
            log.append(f"run:{index}")
            return key

        actions.append(
            ForwardAction(
                step_id=f"s{index}",
                name=f"action-{index}",
                run=_run,
                compensate=lambda _key, index=index: log.append(f"undo:{index}"),
            )
        )
    return actions


def test_failure_at_k_compensates_earlier_actions_in_reverse() -> None:
    log: list[str] = []
    ledger = CompensationLedger("wf-1")

    with pytest.raises(RuntimeError, match="step 4 failed"):
        ledger.run_all(_actions(log, count=5, fail_at=4))

    assert log == ["run:1", "run:2", "run:3", "undo:3", "undo:2", "undo:1"]
    assert len(ledger) == 0


def test_idempotency_key_is_stable_per_step_and_action() -> None:
    ledger = CompensationLedger("wf-1")
    keys = ledger.run_all(_actions([], count=2, fail_at=0))

    assert keys[0] == idempotency_key("wf-1", "s1", "action-1")
    assert keys[0] == ledger.key_for("s1", "action-1")
    assert keys[0] != keys[1]
    assert idempotency_key("wf-2", "s1", "action-1") != keys[0]


def test_rollback_reports_failed_compensations_and_keeps_going() -> None:
    log: list[str] = []
    ledger = CompensationLedger("wf-1")

    def _gone(_key: str) -> None:
        raise OSError("gone")

    ledger.record("s1", "first", lambda _key: log.append("undo:first"))
    ledger.record("s2", "second", _gone)
    ledger.record("s3", "third", None)

    report = ledger.rollback()

    assert report.skipped == ["third"]
    assert report.errors == [{"name": "second", "step_id": "s2", "error": "gone"}]
    assert report.compensated == ["first"]
    assert not report.clean
    assert log == ["undo:first"]


def test_incomplete_rollback_raises_compensation_failed() -> None:
    ledger = CompensationLedger("wf-1")

    def _broken(_key: str) -> None:
        raise OSError("cannot undo")

    actions = [
        ForwardAction("s1", "write", run=lambda _key: None, compensate=_broken),
        ForwardAction("s2", "explode", run=lambda _key: 1 / 0),
    ]

    with pytest.raises(CompensationFailed) as excinfo:
        ledger.run_all(actions)

    assert isinstance(excinfo.value, ChangeflowError)
    assert excinfo.value.artifact_id == "s2"
    assert excinfo.value.action == "explode"
    assert isinstance(excinfo.value.__cause__, ZeroDivisionError)
    assert excinfo.value.report.errors[0]["name"] == "write"


def test_async_run_compensates_awaitable_actions() -> None:
    log: list[str] = []

    async def _run_ok(_key: str) -> str:
        log.append("run:ok")
        return "ok"

    async def _undo(_key: str) -> None:
        log.append("undo:ok")

    async def _fail(_key: str) -> None:
        raise RuntimeError("late failure")

    ledger = CompensationLedger("wf-1")
    actions = [
        ForwardAction("s1", "ok", run=_run_ok, compensate=_undo),
        ForwardAction("s2", "fail", run=_fail),
    ]

    with pytest.raises(RuntimeError, match="late failure"):
        asyncio.run(run_all_async(ledger, actions))

    assert log == ["run:ok", "undo:ok"]
