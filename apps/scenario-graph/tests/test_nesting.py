import pytest

from scenario_graph import nesting
from scenario_graph.nesting import (
    calculate_nesting_depth,
    find_parent_container,
    get_max_nesting_depth,
    is_descendant,
    nesting_limit_message,
    subtree_height,
    would_exceed_limit,
)


@pytest.fixture
def nested(build_scenario):
    return build_scenario(
        [
            {"id": "outer", "type": "loop", "stepIds": ["middle", "solo"]},
            {"id": "middle", "type": "group", "stepIds": ["inner"]},
            {"id": "inner", "type": "group", "stepIds": ["leaf"]},
            {"id": "leaf", "type": "request", "serverId": "api"},
            {"id": "solo", "type": "request", "serverId": "api"},
            {"id": "root_step", "type": "request", "serverId": "api"},
        ]
    ).steps


def test_depth_counts_enclosing_containers(nested) -> None:
    assert calculate_nesting_depth("root_step", nested) == 0
    assert calculate_nesting_depth("outer", nested) == 0
    assert calculate_nesting_depth("middle", nested) == 1
    assert calculate_nesting_depth("inner", nested) == 2
    assert calculate_nesting_depth("leaf", nested) == 3


def test_parent_lookup(nested) -> None:
    assert find_parent_container("leaf", nested).id == "inner"
    assert find_parent_container("root_step", nested) is None


def test_limit_applies_to_new_containers(nested) -> None:
    assert would_exceed_limit(None, nested) is False
    assert would_exceed_limit("outer", nested) is False
    assert would_exceed_limit("middle", nested) is False
    assert would_exceed_limit("inner", nested) is True
    assert would_exceed_limit("middle", nested, max_depth=2) is True


def test_descendants_and_heights(nested) -> None:
    assert is_descendant("leaf", "outer", nested)
    assert not is_descendant("outer", "leaf", nested)
    assert subtree_height("outer", nested) == 3
    assert subtree_height("leaf", nested) == 0


def test_limit_can_come_from_environment(monkeypatch) -> None:
    monkeypatch.setenv(nesting.ENV_VAR_NAME, "5")
    assert get_max_nesting_depth() == 5
    assert get_max_nesting_depth(2) == 2
    monkeypatch.setenv(nesting.ENV_VAR_NAME, "lots")
    assert get_max_nesting_depth() == nesting.DEFAULT_MAX_NESTING_DEPTH


def test_limit_message_names_the_limit() -> None:
    assert nesting_limit_message(4) == "Maximum 4 levels of nesting allowed"
