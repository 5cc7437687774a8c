import random

import pytest

from scenario_graph.errors import (
    EdgeNotFoundError,
    InvalidEdgeError,
    NestingDepthExceededError,
    ScenarioValidationError,
    StepNotFoundError,
    TopologyDivergenceError,
)
from scenario_graph.graph import ScenarioGraph
from scenario_graph.models import GroupStep, RequestStep, ScenarioEdge
from scenario_graph.topology import (
    add_edge,
    add_step,
    assert_consistent,
    delete_edge,
    delete_step,
    find_divergences,
)


def _branch(scenario, step_id, branch_id):
    return next(branch for branch in ScenarioGraph(scenario).branches(step_id) if branch.id == branch_id)


def test_fixture_is_consistent(branching_scenario) -> None:
    assert find_divergences(branching_scenario) == []


def test_delete_edge_clears_branch_target(branching_scenario) -> None:
    updated = delete_edge(branching_scenario, "e1")

    assert _branch(updated, "check", "branch_1").next_step_id == ""
    assert [edge.id for edge in updated.edges] == ["e2", "e3"]
    assert _branch(branching_scenario, "check", "branch_1").next_step_id == "pay"
    assert_consistent(updated)


def test_delete_unknown_edge_raises(branching_scenario) -> None:
    with pytest.raises(EdgeNotFoundError):
        delete_edge(branching_scenario, "missing")


def test_add_edge_for_branch_sets_next_step_and_replaces_old_edge(branching_scenario) -> None:
    edge = ScenarioEdge(id="e9", source_step_id="check", target_step_id="done", source_handle="branch_1")

    updated = add_edge(branching_scenario, edge)

    assert _branch(updated, "check", "branch_1").next_step_id == "done"
    assert [item.id for item in updated.edges] == ["e2", "e3", "e9"]
    assert_consistent(updated)


def test_add_plain_edge_leaves_branches_alone(branching_scenario) -> None:
    edge = ScenarioEdge(id="e9", source_step_id="notify", target_step_id="done")

    updated = add_edge(branching_scenario, edge)

    assert ScenarioGraph(updated).default_successor("notify") == "done"
    assert _branch(updated, "check", "branch_2").next_step_id == "notify"


@pytest.mark.parametrize(
    "edge",
    [
        ScenarioEdge(id="e1", source_step_id="pay", target_step_id="notify"),
        ScenarioEdge(id="x", source_step_id="ghost", target_step_id="done"),
        ScenarioEdge(id="x", source_step_id="pay", target_step_id="ghost"),
        ScenarioEdge(id="x", source_step_id="pay", target_step_id="pay"),
        ScenarioEdge(id="x", source_step_id="check", target_step_id="done", source_handle="branch_7"),
    ],
)
def test_add_edge_rejects_invalid_edges(branching_scenario, edge) -> None:
    with pytest.raises(InvalidEdgeError):
        add_edge(branching_scenario, edge)


def test_delete_step_removes_every_reference(build_scenario) -> None:
    scenario = build_scenario(
        [
            {
                "id": "gate",
                "type": "condition",
                "branches": [{"id": "b1", "isDefault": True, "nextStepId": "inner"}],
            },
            {"id": "wrap", "type": "group", "stepIds": ["inner", "tail"]},
            {"id": "inner", "type": "request", "serverId": "api"},
            {"id": "tail", "type": "request", "serverId": "api"},
        ],
        [
            {"id": "e1", "sourceStepId": "gate", "targetStepId": "inner", "sourceHandle": "b1"},
            {"id": "e2", "sourceStepId": "inner", "targetStepId": "tail"},
        ],
    )

    updated = delete_step(scenario, "inner")

    assert "inner" not in ScenarioGraph(updated)
    assert updated.edges == []
    assert _branch(updated, "gate", "b1").next_step_id == ""
    assert ScenarioGraph(updated).step("wrap").step_ids == ["tail"]
    assert_consistent(updated)


def test_delete_container_rehomes_children(build_scenario) -> None:
    scenario = build_scenario(
        [
            {"id": "outer", "type": "group", "stepIds": ["middle", "last"]},
            {"id": "middle", "type": "loop", "stepIds": ["a", "b"]},
            {"id": "a", "type": "request", "serverId": "api"},
            {"id": "b", "type": "request", "serverId": "api"},
            {"id": "last", "type": "request", "serverId": "api"},
        ]
    )

    updated = delete_step(scenario, "middle")

    assert ScenarioGraph(updated).step("outer").step_ids == ["a", "b", "last"]
    assert [step.id for step in updated.steps] == ["outer", "a", "b", "last"]


def test_delete_start_step_falls_back_to_first(branching_scenario) -> None:
    updated = delete_step(branching_scenario, "check")

    assert updated.start_step_id == "pay"
    assert [edge.id for edge in updated.edges] == ["e3"]


def test_delete_unknown_step_raises(branching_scenario) -> None:
    with pytest.raises(StepNotFoundError):
        delete_step(branching_scenario, "ghost")


def test_add_step_into_container(build_scenario) -> None:
    scenario = build_scenario([{"id": "wrap", "type": "group"}])

    updated = add_step(scenario, RequestStep(id="call", server_id="api"), "wrap")

    assert ScenarioGraph(updated).step("wrap").step_ids == ["call"]
    assert updated.start_step_id == "wrap"


def test_add_step_rejects_duplicates_and_plain_parents(branching_scenario) -> None:
    with pytest.raises(ScenarioValidationError):
        add_step(branching_scenario, RequestStep(id="pay", server_id="api"))
    with pytest.raises(ScenarioValidationError):
        add_step(branching_scenario, RequestStep(id="new", server_id="api"), "pay")


def test_add_step_enforces_nesting_depth(build_scenario) -> None:
    scenario = build_scenario(
        [
            {"id": "l0", "type": "group", "stepIds": ["l1"]},
            {"id": "l1", "type": "group", "stepIds": ["l2"]},
            {"id": "l2", "type": "loop", "stepIds": []},
        ]
    )

    with pytest.raises(NestingDepthExceededError):
        add_step(scenario, GroupStep(id="l3"), "l2")
    updated = add_step(scenario, RequestStep(id="leaf", server_id="api"), "l2")
    assert ScenarioGraph(updated).step("l2").step_ids == ["leaf"]


def test_divergent_documents_are_reported(branching_scenario) -> None:
    broken = branching_scenario.model_copy(deep=True)
    broken.steps[0].branches[0].next_step_id = "done"

    kinds = {item.kind for item in find_divergences(broken)}

    assert kinds == {"edge_target_mismatch"}
    with pytest.raises(TopologyDivergenceError):
        assert_consistent(broken)


def test_invariant_holds_over_random_edit_sequences(build_scenario) -> None:
    rng = random.Random(20240501)
    for _ in range(25):
        steps = [
            {
                "id": f"c{index}",
                "type": "condition",
                "branches": [{"id": f"c{index}_b{branch}", "isDefault": branch == 0} for branch in range(3)],
            }
            for index in range(4)
        ] + [{"id": f"r{index}", "type": "request", "serverId": "api"} for index in range(4)]
        scenario = build_scenario(steps)
        counter = 0
        for _ in range(40):
            ids = [step.id for step in scenario.steps]
            action = rng.random()
            if action < 0.55 and len(ids) > 1:
                source, target = rng.sample(ids, 2)
                handles = [branch.id for branch in ScenarioGraph(scenario).branches(source)]
                handle = rng.choice(handles + [None]) if handles else None
                counter += 1
                scenario = add_edge(
                    scenario,
                    ScenarioEdge(id=f"x{counter}", source_step_id=source, target_step_id=target, source_handle=handle),
                )
            elif action < 0.85 and scenario.edges:
                scenario = delete_edge(scenario, rng.choice(scenario.edges).id)
            elif len(ids) > 2:
                scenario = delete_step(scenario, rng.choice(ids))
            assert find_divergences(scenario) == []
