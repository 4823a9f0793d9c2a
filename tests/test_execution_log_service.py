import time

import pytest

from services.flow_event_service import FlowEventService
from services.execution_log_service import ExecutionLogService
from models.flow_data import FlowData

CONTACT = "+56977777777"


@pytest.fixture
def events(log_util):
    return FlowEventService(log_util=log_util, history_size=50)


@pytest.fixture
def execution_logs(log_util, flow_db, events):
    return ExecutionLogService(log_util=log_util, flow_db=flow_db, flow_event_service=events)


@pytest.fixture
def flow():
    return FlowData.model_validate({
        "id": "flow_1",
        "slug": "demo",
        "name": "Demo",
        "triggerConfig": {"type": "keyword", "keywords": ["demo"]},
        "nodes": [
            {"id": "trigger", "type": "trigger"},
            {"id": "hello", "type": "message", "content": "Hola"}
        ],
        "connections": [{"from": "trigger", "to": "hello"}]
    })


@pytest.mark.asyncio
async def test_run_lifecycle_is_logged_and_emitted(execution_logs, flow_db, events, flow):
    log_id = await execution_logs.start_run(CONTACT, flow, "demo")
    node = flow.nodes[1]
    execution_logs.node_started(log_id, CONTACT, flow, node)
    await execution_logs.add_step(log_id, CONTACT, node, time.monotonic(), output="Hola")
    await execution_logs.update_variables(log_id, {"phone": CONTACT})

    assert await execution_logs.finalize(log_id, CONTACT, "completed", final_node=node)

    log = flow_db.execution_logs[log_id]
    assert log.status == "completed"
    assert log.trigger_type == "keyword"
    assert log.final_node_id == "hello"
    assert [step.node_id for step in log.steps] == ["hello"]
    assert log.variables == {"phone": CONTACT}
    assert [event["type"] for event in events.recent_events()] == [
        "flow_started", "node_started", "node_completed", "flow_completed"
    ]


@pytest.mark.asyncio
async def test_log_is_finalized_once(execution_logs, flow_db, events, flow):
    log_id = await execution_logs.start_run(CONTACT, flow, "demo")

    assert await execution_logs.finalize(log_id, CONTACT, "transferred")
    assert not await execution_logs.finalize(log_id, CONTACT, "failed", error_message="late")

    assert flow_db.execution_logs[log_id].status == "transferred"
    assert flow_db.execution_logs[log_id].error_message is None
    assert [event["type"] for event in events.recent_events()].count("flow_transferred") == 1
    assert "flow_failed" not in [event["type"] for event in events.recent_events()]


@pytest.mark.asyncio
async def test_failed_run_records_error_node(execution_logs, flow_db, flow):
    log_id = await execution_logs.start_run(CONTACT, flow, "demo")

    await execution_logs.finalize(log_id, CONTACT, "failed", final_node=flow.nodes[1], error_message="boom")

    log = flow_db.execution_logs[log_id]
    assert log.error_node_id == "hello"
    assert log.error_message == "boom"


@pytest.mark.asyncio
async def test_storage_failure_does_not_break_the_run(execution_logs, flow_db, events, flow, mocker):
    mocker.patch.object(flow_db, "create_execution_log", side_effect=RuntimeError("mongo down"))

    log_id = await execution_logs.start_run(CONTACT, flow, "demo")
    await execution_logs.add_step(log_id, CONTACT, flow.nodes[1], time.monotonic(), output="x" * 1000)

    assert log_id is None
    assert not await execution_logs.finalize(log_id, CONTACT, "completed")
    node_completed = events.recent_events()[-1]
    assert node_completed["type"] == "node_completed"
    assert len(node_completed["output"]) == 200


@pytest.mark.asyncio
async def test_subscribers_receive_events(events):
    queue = events.subscribe()

    events.emit("flow_started", {"contact_id": CONTACT})
    events.unsubscribe(queue)
    events.emit("flow_completed", {"contact_id": CONTACT})

    received = queue.get_nowait()
    assert received["type"] == "flow_started"
    assert queue.empty()
    assert events.subscriber_count() == 0
