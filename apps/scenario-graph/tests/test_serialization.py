from pathlib import Path

import pytest

from scenario_graph.errors import ScenarioValidationError
from scenario_graph.loader import (
    dump_scenario,
    load_scenario,
    load_servers,
    parse_scenario,
    sanitize_scenario,
    save_scenario,
)


@pytest.mark.parametrize("fmt", ["json", "yaml"])
def test_round_trip_is_lossless(branching_scenario, fmt) -> None:
    text = dump_scenario(branching_scenario, fmt)

    assert parse_scenario(text, fmt) == branching_scenario


def test_save_and_load_by_suffix(branching_scenario, tmp_path: Path) -> None:
    target = save_scenario(branching_scenario, tmp_path / "flows" / "checkout.yaml")

    assert target.read_text(encoding="utf-8").startswith("id: scn-1")
    assert load_scenario(target) == branching_scenario


def test_import_drops_dangling_references(build_scenario) -> None:
    raw = build_scenario(
        [
            {"id": "box", "type": "group", "stepIds": ["a", "ghost", "box"]},
            {
                "id": "a",
                "type": "condition",
                "branches": [{"id": "b1", "nextStepId": "ghost"}, {"id": "b2", "nextStepId": "box"}],
            },
        ],
        [
            {"id": "e1", "sourceStepId": "a", "targetStepId": "ghost", "sourceHandle": "b1"},
            {"id": "e2", "sourceStepId": "a", "targetStepId": "box", "sourceHandle": "b2"},
        ],
        startStepId="nowhere",
    )

    cleaned = sanitize_scenario(raw)

    assert cleaned.steps[0].step_ids == ["a"]
    assert [branch.next_step_id for branch in cleaned.steps[1].branches] == ["", "box"]
    assert [edge.id for edge in cleaned.edges] == ["e2"]
    assert cleaned.start_step_id == "box"
    assert sanitize_scenario(cleaned) == cleaned
    assert parse_scenario(dump_scenario(cleaned)) == cleaned


def test_sanitize_breaks_container_cycles(build_scenario) -> None:
    raw = build_scenario(
        [
            {"id": "x", "type": "group", "stepIds": ["y"]},
            {"id": "y", "type": "group", "stepIds": ["x"]},
        ]
    )

    cleaned = sanitize_scenario(raw)

    assert cleaned.steps[0].step_ids == []
    assert cleaned.steps[1].step_ids == ["x"]
    assert sanitize_scenario(cleaned) == cleaned


def test_empty_scenario_has_empty_start(build_scenario) -> None:
    cleaned = sanitize_scenario(build_scenario([], startStepId="gone"))

    assert cleaned.start_step_id == ""


def test_validation_errors_list_locations() -> None:
    with pytest.raises(ScenarioValidationError) as excinfo:
        parse_scenario('{"id": "s", "name": "n", "steps": "nope"}', "json")

    problems = "\n".join(excinfo.value.problems)
    assert "steps" in problems
    assert "version" in problems
    assert "startStepId" in problems


def test_malformed_text_is_a_validation_error() -> None:
    with pytest.raises(ScenarioValidationError):
        parse_scenario("{not json", "json")
    with pytest.raises(ScenarioValidationError):
        parse_scenario("- just\n- a list\n", "yaml")


def test_servers_load_from_list_or_mapping(tmp_path: Path) -> None:
    as_list = tmp_path / "servers.yaml"
    as_list.write_text("- id: api\n  baseUrl: http://localhost:9000\n", encoding="utf-8")
    as_map = tmp_path / "servers.json"
    as_map.write_text('{"api": {"baseUrl": "http://localhost:9000", "timeout": 500}}', encoding="utf-8")

    assert load_servers(as_list)["api"].base_url == "http://localhost:9000"
    assert load_servers(as_map)["api"].timeout == 500


def test_invalid_servers_are_reported(tmp_path: Path) -> None:
    target = tmp_path / "servers.yaml"
    target.write_text("- id: api\n", encoding="utf-8")

    with pytest.raises(ScenarioValidationError) as excinfo:
        load_servers(target)

    assert any("baseUrl" in item for item in excinfo.value.problems)
