import pytest

from conftest import build_engine, FakeCompletion
from models.engine_config_data import EngineConfig
from models.knowledge_data import KnowledgeItem, PriceRecord
from models.contact_profile import ContactProfile
from exceptions.flow_exception import CompletionException

CONTACT = "+56966666666"


def learned(question, answer, quality=80):
    return KnowledgeItem(source="learned", question=question, answer=answer, quality_score=quality)


def test_system_prompt_sections(engine):
    config = EngineConfig(
        system_prompt="Eres Sofía, asesora de descanso.",
        fidelity_level="exact",
        behavior_rules=["Nunca ofrezcas descuentos."]
    )
    knowledge = [learned("¿Tienen despacho?", "Sí, despacho gratis en Santiago.")]
    prices = [PriceRecord(product_name="Colchón Zen", variant="King", price=459990)]

    prompt = engine.knowledge_fallback_service.build_system_prompt(config, "Ana", knowledge, prices)

    assert prompt.startswith("Eres Sofía, asesora de descanso.")
    assert "El cliente se llama Ana." in prompt
    assert "R: Sí, despacho gratis en Santiago." in prompt
    assert "NIVEL DE FIDELIDAD (exact)" in prompt
    assert "- Colchón Zen King: $459,990 CLP" in prompt
    assert "Confía en estos precios por sobre cualquier precio mencionado en el conocimiento." in prompt
    # Operator rules come last so they override the persona
    assert prompt.rstrip().endswith("- Nunca ofrezcas descuentos.")


def test_system_prompt_without_knowledge_has_no_fidelity_section(engine):
    prompt = engine.knowledge_fallback_service.build_system_prompt(EngineConfig(), None, [], [])

    assert "NIVEL DE FIDELIDAD" not in prompt
    assert "CONOCIMIENTO VERIFICADO" not in prompt


@pytest.mark.asyncio
async def test_knowledge_lowers_temperature():
    engine = build_engine(completion=FakeCompletion(["Sí, despachamos."]))
    engine.flow_db.learned_pairs = [learned("¿Despachan?", "Sí, a todo Chile.")]

    generated = await engine.knowledge_fallback_service.generate_response(CONTACT, "¿despachan?", {}, None, EngineConfig())

    assert generated["temperature"] == 0.3
    assert engine.completion.calls[0]["temperature"] == 0.3
    assert engine.completion.calls[0]["max_tokens"] == 300


@pytest.mark.asyncio
async def test_without_knowledge_uses_default_temperature():
    engine = build_engine(completion=FakeCompletion(["Hola."]))

    generated = await engine.knowledge_fallback_service.generate_response(CONTACT, "hola", {}, None, EngineConfig())

    assert generated["temperature"] == 0.7
    assert generated["knowledge"] == []


@pytest.mark.asyncio
async def test_low_quality_learned_pairs_are_ignored():
    engine = build_engine()
    engine.flow_db.learned_pairs = [learned("¿Despachan?", "No sé", quality=10)]

    generated = await engine.knowledge_fallback_service.generate_response(CONTACT, "¿despachan?", {}, None, EngineConfig())

    assert generated["knowledge"] == []


@pytest.mark.asyncio
async def test_faq_duplicates_are_dropped():
    engine = build_engine()
    engine.flow_db.learned_pairs = [learned("¿Despachan?", "Sí, a todo Chile.")]
    engine.flow_db.faq_entries = [
        KnowledgeItem(source="faq", question="¿Hacen envíos?", answer="Sí, a todo Chile."),
        KnowledgeItem(source="faq", question="¿Horario?", answer="De 9 a 18 hrs."),
    ]

    knowledge = await engine.knowledge_retrieval_service.retrieve("envios")

    assert [item.answer for item in knowledge] == ["Sí, a todo Chile.", "De 9 a 18 hrs."]


@pytest.mark.asyncio
async def test_price_query_adds_current_prices():
    engine = build_engine()
    engine.flow_db.prices = [
        PriceRecord(product_name="Colchón", variant="King", price=459990),
        PriceRecord(product_name="Colchón", variant="2 Plazas", price=299990),
    ]

    generated = await engine.knowledge_fallback_service.generate_response(
        CONTACT, "¿Cuánto cuesta el colchón king?", {}, None, EngineConfig()
    )

    assert [price.price for price in generated["prices"]] == [459990]
    assert "PRECIOS VIGENTES" in generated["system_prompt"]


@pytest.mark.asyncio
async def test_price_lookup_retries_without_variant():
    engine = build_engine()
    engine.flow_db.prices = [PriceRecord(product_name="Almohada", price=19990)]

    prices = await engine.knowledge_retrieval_service.find_price("almohada", "King")

    assert [price.price for price in prices] == [19990]
    assert engine.flow_db.price_queries == [("almohada", "King"), ("almohada", None)]


def test_price_query_detection_and_product_extraction(engine):
    retrieval = engine.knowledge_retrieval_service

    assert retrieval.is_price_query("¿Cuánto vale la base?")
    assert retrieval.is_price_query("how much is it")
    assert not retrieval.is_price_query("¿dónde queda la tienda?")

    info = retrieval.extract_product_info("precio colchón super king")
    assert info.variant == "Super King"
    assert "colchón" in info.product_name


@pytest.mark.asyncio
async def test_history_skips_duplicate_of_current_message():
    engine = build_engine()
    engine.flow_db.messages["conv-9"] = [
        {"direction": "inbound", "content": "hola"},
        {"direction": "outbound", "content": "¡Hola! ¿En qué te ayudo?"},
        {"direction": "inbound", "content": "¿tienen tienda?"},
        {"direction": "outbound", "content": "Sí, en Santiago."},
        {"direction": "inbound", "content": "¿despachan?"},
    ]

    await engine.knowledge_fallback_service.generate_response(
        CONTACT, "¿despachan?", {"session_id": "conv-9"}, None, EngineConfig()
    )

    messages = engine.completion.calls[0]["messages"]
    assert [message["role"] for message in messages] == ["system", "user", "assistant", "user", "assistant", "user"]
    assert [message["content"] for message in messages].count("¿despachan?") == 1
    assert messages[-1]["content"] == "¿despachan?"


@pytest.mark.asyncio
async def test_history_is_limited_to_configured_turns():
    engine = build_engine()
    engine.flow_db.messages["conv-2"] = [
        {"direction": "inbound" if index % 2 == 0 else "outbound", "content": f"mensaje {index}"}
        for index in range(12)
    ]

    await engine.knowledge_fallback_service.generate_response(
        CONTACT, "nuevo", {"session_id": "conv-2"}, None, EngineConfig(history_turns=4)
    )

    messages = engine.completion.calls[0]["messages"]
    assert len(messages) == 1 + 4 + 1
    assert messages[1]["content"] == "mensaje 8"


@pytest.mark.asyncio
async def test_profile_name_is_preferred_over_channel_name():
    engine = build_engine()
    engine.flow_db.profiles[CONTACT] = ContactProfile(contact_id=CONTACT, name="Ana María")

    generated = await engine.knowledge_fallback_service.generate_response(
        CONTACT, "hola", {"contact_name": "ana_wsp"}, None, EngineConfig()
    )

    assert "El cliente se llama Ana María." in generated["system_prompt"]


@pytest.mark.asyncio
async def test_completion_failure_returns_none():
    engine = build_engine(completion=FakeCompletion([CompletionException("timeout")]))

    assert await engine.knowledge_fallback_service.respond(CONTACT, "hola", {}, None, EngineConfig()) is None
    assert engine.whatsapp.sent == []
