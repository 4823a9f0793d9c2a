import pytest

from conftest import SleepRecorder
from services.process_internal_node_service import ProcessInternalNodeService
from models.flow_data import ConditionNode, DelayNode


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def internal_service(log_util, sleeper):
    return ProcessInternalNodeService(log_util=log_util, sleep_func=sleeper)


def age_node():
    return ConditionNode.model_validate({
        "id": "check",
        "type": "condition",
        "conditions": [
            {"if": "age < 18", "goto": "nodeX"},
            {"else": True, "goto": "nodeY"}
        ]
    })


def test_branch_selection_by_age(internal_service):
    assert internal_service.resolve_condition_target(age_node(), {"age": 5})["target_node_id"] == "nodeX"
    assert internal_service.resolve_condition_target(age_node(), {"age": "25"})["target_node_id"] == "nodeY"


@pytest.mark.parametrize("expression, variables, expected", [
    ("plan == premium", {"plan": "premium"}, True),
    ("plan == 'premium'", {"plan": "premium"}, True),
    ('plan != "basic"', {"plan": "premium"}, True),
    ("plan != basic", {}, True),
    ("score >= 50", {"score": "50"}, True),
    ("score > 50", {"score": 50}, False),
    ("score <= 10.5", {"score": 10}, True),
    ("score > 10", {"score": "alto"}, False),
    ("score > 10", {}, False),
    ("not an expression", {"score": 1}, False),
])
def test_evaluate_condition(internal_service, expression, variables, expected):
    assert internal_service.evaluate_condition(expression, variables) is expected


def test_first_matching_branch_wins(internal_service):
    node = ConditionNode.model_validate({
        "id": "check",
        "type": "condition",
        "conditions": [
            {"if": "score > 10", "goto": "first"},
            {"if": "score > 5", "goto": "second"}
        ]
    })

    assert internal_service.resolve_condition_target(node, {"score": 20})["target_node_id"] == "first"
    assert internal_service.resolve_condition_target(node, {"score": 1}) == {"target_node_id": None, "matched": None}


@pytest.mark.asyncio
async def test_delay_is_clamped_and_shows_typing(internal_service, sleeper):
    shown = []

    async def show_typing():
        shown.append(True)

    waited = await internal_service.process_delay(DelayNode(id="d", type="delay", seconds=-3), show_typing)

    assert waited == 0
    assert shown == [True]
    assert sleeper.calls == [0]


@pytest.mark.asyncio
async def test_delay_without_typing_indicator(internal_service, sleeper):
    shown = []

    async def show_typing():
        shown.append(True)

    await internal_service.process_delay(DelayNode(id="d", type="delay", seconds=4, typing_indicator=False), show_typing)

    assert shown == []
    assert sleeper.calls == [4]
