from pathlib import Path

import pytest

from changeflow.agents.planner import parse_plan
from changeflow.capabilities import Role
from changeflow.errors import PolicyViolation, StateStoreError
from changeflow.plan import MarkerKind, Plan, PlanDocument, PlanMarker, Step, Task


def _plan(plan_id: str = "plan-1") -> Plan:
    return Plan(
        plan_id=plan_id,
        task=Task.accept("Add a health endpoint"),
        steps=(
            Step("s1", "Add route", footprint=("app/routes.py",)),
            Step("s2", "Add tests", depends_on=("s1",), footprint=("tests/test_routes.py",)),
        ),
        approved=True,
    )


def test_task_rejects_empty_description() -> None:
    with pytest.raises(ValueError):
        Task.accept("   ")


def test_plan_document_roundtrip(tmp_path: Path) -> None:
    document = PlanDocument(tmp_path)
    plan = _plan()

    document.save(plan)
    loaded = document.load()

    assert loaded == plan
    assert "1. [s1] Add route" in document.read_text()


def test_prepend_marker_keeps_body_and_is_greppable(tmp_path: Path) -> None:
    document = PlanDocument(tmp_path)
    document.save(_plan())
    body = document.read_text()
    document.transfer_ownership(Role.IMPLEMENTER)

    plan = document.prepend_marker(
        PlanMarker(MarkerKind.COMPLETE, revision=1, by="implementer", note="wf-1"),
        writer=Role.IMPLEMENTER,
    )

    text = document.read_text()
    assert text.startswith("<!-- changeflow:plan-complete revision=1 by=implementer")
    assert text.endswith(body)
    assert plan.complete
    assert document.load().markers[0].note == "wf-1"


def test_only_the_owner_writes_and_only_the_planner_writes_content(tmp_path: Path) -> None:
    document = PlanDocument(tmp_path)
    document.save(_plan())

    with pytest.raises(PolicyViolation):
        document.prepend_marker(
            PlanMarker(MarkerKind.COMPLETE, revision=1, by="implementer"),
            writer=Role.IMPLEMENTER,
        )
    document.transfer_ownership(Role.IMPLEMENTER)
    with pytest.raises(PolicyViolation):
        document.save(_plan(), writer=Role.IMPLEMENTER)


def test_saving_a_new_plan_drops_the_previous_plans_markers(tmp_path: Path) -> None:
    document = PlanDocument(tmp_path)
    document.save(_plan("plan-1"))
    document.transfer_ownership(Role.IMPLEMENTER)
    document.prepend_marker(
        PlanMarker(MarkerKind.COMPLETE, revision=1, by="implementer"), writer=Role.IMPLEMENTER
    )
    document.transfer_ownership(Role.PLANNER)

    document.save(_plan("plan-1"))
    assert document.load().complete
    document.save(_plan("plan-2"))
    assert document.load().markers == ()


def test_load_without_document_or_body_fails(tmp_path: Path) -> None:
    document = PlanDocument(tmp_path)
    with pytest.raises(StateStoreError):
        document.load()

    document.path.parent.mkdir(parents=True)
    document.path.write_text("# just prose\n", encoding="utf-8")
    with pytest.raises(StateStoreError):
        document.load()


def test_problems_report_unknown_dependencies_and_cycles() -> None:
    task = Task.accept("x")
    unknown = Plan("p", task, (Step("s1", "a", depends_on=("s9",)),))
    cycle = Plan(
        "p",
        task,
        (Step("s1", "a", depends_on=("s2",)), Step("s2", "b", depends_on=("s1",))),
    )

    assert unknown.problems() == ["Step s1 depends on unknown step s9"]
    assert "cycle" in cycle.problems()[0]
    assert Plan("p", task, ()).problems() == ["Plan has no steps."]


def test_ordered_steps_respect_dependencies() -> None:
    plan = Plan(
        "p",
        Task.accept("x"),
        (Step("s2", "b", depends_on=("s1",)), Step("s1", "a"), Step("s3", "c")),
    )

    assert [step.step_id for step in plan.ordered_steps()] == ["s1", "s3", "s2"]


def test_parse_plan_reads_json_steps_and_assumptions() -> None:
    content = "\n".join(
        [
            "Here is the plan.",
            '{"assumption": "Python 3.11 is available"}',
            '{"step_id": "s1", "title": "Add model", "footprint": ["app/models.py"]}',
            '- {"title": "Wire model", "depends_on": ["s1"]}',
        ]
    )

    plan = parse_plan(content, Task.accept("x"), plan_id="plan-7")

    assert plan.plan_id == "plan-7"
    assert [step.step_id for step in plan.steps] == ["s1", "s2"]
    assert plan.steps[1].depends_on == ("s1",)
    assert plan.assumptions[0].text == "Python 3.11 is available"


def test_parse_plan_falls_back_to_a_bullet_chain() -> None:
    plan = parse_plan("1. Add route\n2. Add tests\nnot a step", Task.accept("x"))

    assert [(step.step_id, step.depends_on) for step in plan.steps] == [
        ("s1", ()),
        ("s2", ("s1",)),
    ]
