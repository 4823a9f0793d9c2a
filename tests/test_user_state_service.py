import asyncio

import pytest

from conftest import build_engine, lead_flow, complaint_flow, FakeClassifier, FakeCompletion
from models.engine_config_data import EngineConfig, GlobalKeyword
from models.contact_profile import ContactProfile
from exceptions.flow_exception import CompletionException

CONTACT = "+56911111111"


@pytest.mark.asyncio
async def test_full_conversation_completes_with_one_log(engine):
    engine.flow_db.add_flow(lead_flow())
    service = engine.user_state_service

    first = await service.process_message(CONTACT, "Hola, quiero cotizar")
    assert first.type == "waiting_for_response"
    assert first.node_id == "ask_size"
    assert first.variable == "size"
    assert engine.whatsapp.sent[0]["text"] == "¡Hola! Te ayudo con tu cotización."
    assert engine.whatsapp.sent[1]["kind"] == "buttons"

    second = await service.process_message(CONTACT, "2")
    assert second.type == "waiting_for_response"
    assert second.node_id == "ask_budget"

    third = await service.process_message(CONTACT, "500 mil")
    assert third.type == "flow_completed"
    assert third.flow_completed is True
    assert "¡Gracias! Medida 2p, presupuesto 500 mil." in third.texts

    logs = engine.flow_db.logs_for(CONTACT)
    assert len(logs) == 1
    log = logs[0]
    assert log.status == "completed"
    assert [step.node_id for step in log.steps] == ["trigger", "welcome", "ask_size", "ask_budget", "bye"]
    assert log.variables["size"] == "2p"
    assert not engine.session_store.has(CONTACT)

    profile = engine.flow_db.profiles[CONTACT]
    assert profile.fields == {"size": "2p", "budget": "500 mil"}


@pytest.mark.asyncio
async def test_only_one_session_per_contact(engine):
    engine.flow_db.add_flow(lead_flow())
    service = engine.user_state_service

    await service.process_message(CONTACT, "quiero cotizar")
    await service.process_message(CONTACT, "quiero cotizar")

    assert engine.session_store.active_count() == 1
    assert len(engine.flow_db.logs_for(CONTACT)) == 1


@pytest.mark.asyncio
async def test_unmatched_option_retries_the_question(engine):
    engine.flow_db.add_flow(lead_flow())
    service = engine.user_state_service
    await service.process_message(CONTACT, "cotizar")
    sent_before = len(engine.whatsapp.sent)

    result = await service.process_message(CONTACT, "azul")

    assert result.type == "retry"
    assert result.node_id == "ask_size"
    new_messages = engine.whatsapp.sent[sent_before:]
    assert new_messages[0]["text"] == "Por favor elige una de las opciones."
    assert new_messages[1]["kind"] == "buttons"
    session = engine.session_store.get(CONTACT)
    assert session.current_node_id == "ask_size"
    assert "size" not in session.variables


@pytest.mark.asyncio
async def test_button_reply_resolves_by_id(engine):
    engine.flow_db.add_flow(lead_flow())
    service = engine.user_state_service
    await service.process_message(CONTACT, "cotizar")

    result = await service.process_message(CONTACT, "King size please", {"button_id": "size_king"})

    assert result.node_id == "ask_budget"
    assert engine.session_store.get(CONTACT).variables["size"] == "king"


@pytest.mark.asyncio
async def test_high_priority_intent_interrupts_running_flow():
    classifier = FakeClassifier({"problema": ("complaint", 0.8)})
    engine = build_engine(classifier=classifier)
    engine.flow_db.add_flow(lead_flow())
    engine.flow_db.add_flow(complaint_flow())
    service = engine.user_state_service

    await service.process_message(CONTACT, "quiero cotizar")
    result = await service.process_message(CONTACT, "tengo un problema grave con mi pedido anterior")

    assert result.type == "waiting_for_response"
    assert result.flow_id == "flow_complaint"
    assert engine.session_store.get(CONTACT).flow_id == "flow_complaint"

    logs = {log.flow_id: log for log in engine.flow_db.logs_for(CONTACT)}
    assert logs["flow_lead"].status == "failed"
    assert logs["flow_lead"].error_message == "interrupted"
    assert logs["flow_complaint"].status == "running"


@pytest.mark.asyncio
async def test_low_confidence_intent_does_not_interrupt():
    classifier = FakeClassifier({"problema": ("complaint", 0.5)})
    engine = build_engine(classifier=classifier)
    engine.flow_db.add_flow(lead_flow(nodes=lead_flow()["nodes"][:3] + [
        {"id": "ask_budget", "type": "question", "content": "¿Presupuesto?", "variable": "budget"},
        {"id": "bye", "type": "end"}
    ]))
    engine.flow_db.add_flow(complaint_flow())
    service = engine.user_state_service

    await service.process_message(CONTACT, "quiero cotizar")
    await service.process_message(CONTACT, "1")
    result = await service.process_message(CONTACT, "tengo un problema con el presupuesto")

    assert result.type == "flow_completed"
    assert engine.flow_db.logs_for(CONTACT)[0].variables["budget"] == "tengo un problema con el presupuesto"


@pytest.mark.asyncio
async def test_intent_declared_by_current_flow_does_not_interrupt():
    classifier = FakeClassifier({"comprar": ("sales", 0.9)})
    engine = build_engine(classifier=classifier)
    engine.flow_db.add_flow(lead_flow())
    service = engine.user_state_service

    await service.process_message(CONTACT, "quiero cotizar")
    result = await service.process_message(CONTACT, "quiero comprar la king")

    assert result.type == "waiting_for_response"
    assert result.node_id == "ask_budget"


@pytest.mark.asyncio
async def test_button_reply_never_interrupts():
    classifier = FakeClassifier({"problema": ("complaint", 0.95)})
    engine = build_engine(classifier=classifier)
    engine.flow_db.add_flow(lead_flow())
    engine.flow_db.add_flow(complaint_flow())
    service = engine.user_state_service

    await service.process_message(CONTACT, "quiero cotizar")
    result = await service.process_message(CONTACT, "problema problema problema", {"button_id": "size_1"})

    assert result.node_id == "ask_budget"
    assert classifier.calls.count("problema problema problema") == 0


@pytest.mark.asyncio
async def test_repeated_completion_keeps_single_record(engine):
    flow = engine.flow_db.add_flow(lead_flow())
    service = engine.user_state_service

    for _ in range(2):
        await service.process_message(CONTACT, "cotizar")
        await service.process_message(CONTACT, "1")
        await service.process_message(CONTACT, "100")

    assert len(engine.flow_db.completed) == 1
    assert engine.flow_db.completed[(CONTACT, flow.id)].completion_count == 2
    assert engine.flow_db.flows[flow.id].times_completed == 2
    assert engine.flow_db.flows[flow.id].times_triggered == 2


@pytest.mark.asyncio
async def test_returning_contact_gets_personalized_greeting(engine):
    flow = engine.flow_db.add_flow(lead_flow())
    engine.flow_db.engine_config = EngineConfig(greeting_flow_slug="cotizacion")
    await engine.flow_db.mark_flow_completed(CONTACT, flow.id, "cotizacion")
    engine.flow_db.profiles[CONTACT] = ContactProfile(contact_id=CONTACT, name="María")

    result = await engine.user_state_service.process_message(CONTACT, "quiero cotizar")

    assert result.type == "personalized_greeting"
    assert result.user == "María"
    assert result.text == "¡Hola de nuevo María! ¿En qué te puedo ayudar hoy?"
    assert not engine.session_store.has(CONTACT)
    assert engine.flow_db.logs_for(CONTACT) == []


@pytest.mark.asyncio
async def test_greeting_without_known_name(engine):
    flow = engine.flow_db.add_flow(lead_flow())
    engine.flow_db.engine_config = EngineConfig(greeting_flow_slug="cotizacion")
    await engine.flow_db.mark_flow_completed(CONTACT, flow.id, "cotizacion")

    result = await engine.user_state_service.process_message(CONTACT, "quiero cotizar")

    assert result.text == "¡Hola de nuevo! ¿En qué te puedo ayudar hoy?"


@pytest.mark.asyncio
async def test_global_keyword_reset_abandons_session(engine):
    engine.flow_db.add_flow(lead_flow())
    engine.flow_db.engine_config = EngineConfig(global_keywords=[
        GlobalKeyword(keyword="reiniciar", action="reset", response="Listo, empecemos de nuevo.")
    ])
    service = engine.user_state_service
    await service.process_message(CONTACT, "cotizar")

    result = await service.process_message(CONTACT, "¡Reiniciar!")

    assert result.type == "global_keyword"
    assert result.action == "reset"
    assert not engine.session_store.has(CONTACT)
    log = engine.flow_db.logs_for(CONTACT)[0]
    assert log.status == "failed"
    assert log.error_message == "reset_by_contact"
    assert engine.whatsapp.texts()[-1] == "Listo, empecemos de nuevo."


@pytest.mark.asyncio
async def test_global_keyword_human_transfers(engine):
    engine.flow_db.add_flow(lead_flow())
    engine.flow_db.engine_config = EngineConfig(global_keywords=[
        GlobalKeyword(keyword="agente", action="human", response="Te comunico con un agente.")
    ])
    service = engine.user_state_service
    await service.process_message(CONTACT, "cotizar")

    result = await service.process_message(CONTACT, "Agente")

    assert result.type == "transfer_to_human"
    assert result.reason == "user_requested"
    assert engine.flow_db.logs_for(CONTACT)[0].status == "transferred"


@pytest.mark.asyncio
async def test_global_keyword_end(engine):
    engine.flow_db.engine_config = EngineConfig(global_keywords=[GlobalKeyword(keyword="salir", action="end")])

    result = await engine.user_state_service.process_message(CONTACT, "salir")

    assert result.type == "session_ended"


@pytest.mark.asyncio
async def test_global_keyword_menu_starts_named_flow(engine):
    engine.flow_db.add_flow(lead_flow())
    engine.flow_db.add_flow(complaint_flow())
    engine.flow_db.engine_config = EngineConfig(global_keywords=[
        GlobalKeyword(keyword="menu", action="menu", flow_slug="reclamos")
    ])
    service = engine.user_state_service
    await service.process_message(CONTACT, "cotizar")

    result = await service.process_message(CONTACT, "Menú")

    assert result.type == "waiting_for_response"
    assert result.node_id == "ask_detail"
    assert engine.session_store.get(CONTACT).flow_id == "flow_complaint"
    abandoned, started = engine.flow_db.logs_for(CONTACT)
    assert abandoned.error_message == "menu_requested"
    assert started.status == "running"


@pytest.mark.asyncio
async def test_global_keyword_requires_whole_message(engine):
    engine.flow_db.add_flow(lead_flow())
    engine.flow_db.engine_config = EngineConfig(global_keywords=[GlobalKeyword(keyword="agente", action="human")])

    result = await engine.user_state_service.process_message(CONTACT, "quiero cotizar sin agente")

    assert result.type == "waiting_for_response"


@pytest.mark.asyncio
async def test_empty_message_gets_no_response(engine):
    result = await engine.user_state_service.process_message(CONTACT, "   ")

    assert result.type == "no_response"
    assert engine.whatsapp.sent == []


@pytest.mark.asyncio
async def test_no_match_uses_knowledge_fallback():
    engine = build_engine(completion=FakeCompletion(["Claro, despachamos a todo Chile."]))

    result = await engine.user_state_service.process_message(CONTACT, "¿hacen despacho a regiones?")

    assert result.type == "ai_fallback"
    assert result.text == "Claro, despachamos a todo Chile."
    assert engine.whatsapp.texts("text") == ["Claro, despachamos a todo Chile."]
    assert len(engine.flow_db.generated_messages) == 1


@pytest.mark.asyncio
async def test_fallback_failure_sends_configured_message():
    engine = build_engine(completion=FakeCompletion([CompletionException("provider down")]))

    result = await engine.user_state_service.process_message(CONTACT, "¿hacen despacho a regiones?")

    assert result.type == "fallback_message"
    assert engine.whatsapp.texts() == ["Gracias por tu mensaje. Un agente te atenderá pronto."]


@pytest.mark.asyncio
async def test_disabled_fallback_sends_configured_message(engine):
    engine.flow_db.engine_config = EngineConfig(fallback_enabled=False, fallback_message="Te respondemos pronto.")

    result = await engine.user_state_service.process_message(CONTACT, "hola")

    assert result.type == "fallback_message"
    assert engine.completion.calls == []
    assert engine.whatsapp.texts() == ["Te respondemos pronto."]


@pytest.mark.asyncio
async def test_default_flow_used_only_without_other_match(engine):
    engine.flow_db.add_flow(lead_flow())
    engine.flow_db.add_flow({
        "id": "flow_default",
        "slug": "menu",
        "name": "Menú",
        "isDefault": True,
        "priority": 0,
        "triggerConfig": {"type": "always"},
        "nodes": [{"id": "t", "type": "trigger"}, {"id": "m", "type": "message", "content": "Menú principal"}],
        "connections": [{"from": "t", "to": "m"}]
    })
    service = engine.user_state_service

    matched = await service.process_message(CONTACT, "quiero cotizar")
    other = await service.process_message("+56922222222", "buenas tardes")

    assert matched.flow_id == "flow_lead"
    assert other.flow_id == "flow_default"
    assert other.type == "message_sent"


@pytest.mark.asyncio
async def test_concurrent_messages_are_serialized(engine):
    engine.flow_db.add_flow(lead_flow())
    service = engine.user_state_service

    first, second = await asyncio.gather(
        service.process_message(CONTACT, "quiero cotizar"),
        service.process_message(CONTACT, "2")
    )

    assert first.node_id == "ask_size"
    assert second.node_id == "ask_budget"
    assert len(engine.flow_db.logs_for(CONTACT)) == 1


@pytest.mark.asyncio
async def test_session_pointing_at_removed_flow_is_discarded(engine):
    engine.flow_db.add_flow(lead_flow())
    service = engine.user_state_service
    await service.process_message(CONTACT, "cotizar")
    session = engine.session_store.get(CONTACT)
    session.current_node_id = "gone"

    result = await service.process_message(CONTACT, "quiero cotizar")

    assert result.type == "waiting_for_response"
    statuses = sorted(log.status for log in engine.flow_db.logs_for(CONTACT))
    assert statuses == ["failed", "running"]


@pytest.mark.asyncio
async def test_operator_clear_session(engine):
    engine.flow_db.add_flow(lead_flow())
    service = engine.user_state_service
    await service.process_message(CONTACT, "cotizar")

    assert await service.clear_session(CONTACT) is True
    assert await service.clear_session(CONTACT) is False
    log = engine.flow_db.logs_for(CONTACT)[0]
    assert log.error_message == "cleared_by_operator"
