"""
Script to import flow definitions into MongoDB.
Flows are validated against the engine's flow model and upserted by slug.

Usage:
    python scripts/import_flow_data.py                 # imports the bundled sample flow
    python scripts/import_flow_data.py flows/*.json    # imports flows from JSON files
"""
import asyncio
import json
import sys
import os
import urllib.parse
from datetime import datetime
from dotenv import load_dotenv
from motor.motor_asyncio import AsyncIOMotorClient

# Add src directory to path to import modules
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from models.flow_data import FlowData

load_dotenv()

# Sample flow: qualify a mattress lead and hand it to sales
SAMPLE_FLOW = {
    "slug": "cotizacion-colchon",
    "name": "Cotización de colchón",
    "description": "Pregunta medida y presupuesto y avisa al equipo de ventas",
    "isDefault": False,
    "isActive": True,
    "priority": 10,
    "triggerConfig": {"type": "keyword", "keywords": ["cotizar", "cotización", "colchón"]},
    "intents": ["sales"],
    "persistVariables": ["size", "budget"],
    "nodes": [
        {"id": "trigger", "type": "trigger", "name": "Inicio"},
        {"id": "welcome", "type": "message", "name": "Bienvenida", "content": "¡Hola! Te ayudo con tu cotización."},
        {
            "id": "ask_size", "type": "question", "name": "Medida",
            "content": "¿Qué medida buscas?",
            "variable": "size",
            "retry_message": "Por favor elige una de las opciones.",
            "options": [
                {"id": "size_1", "label": "1 plaza", "value": "1p"},
                {"id": "size_2", "label": "2 plazas", "value": "2p"},
                {"id": "size_king", "label": "King", "value": "king"}
            ]
        },
        {"id": "ask_budget", "type": "question", "name": "Presupuesto", "content": "¿Cuál es tu presupuesto aproximado?", "variable": "budget"},
        {"id": "notify", "type": "action", "name": "Avisar a ventas", "action": "notify_sales"},
        {"id": "bye", "type": "end", "name": "Fin", "content": "¡Gracias! Un ejecutivo te escribirá pronto."}
    ],
    "connections": [
        {"from": "trigger", "to": "welcome"},
        {"from": "welcome", "to": "ask_size"},
        {"from": "ask_size", "to": "ask_budget"},
        {"from": "ask_budget", "to": "notify"},
        {"from": "notify", "to": "bye"}
    ]
}


def build_connection_string() -> str:
    username = urllib.parse.quote_plus(os.getenv("MONGO_USERNAME", ""))
    password = urllib.parse.quote_plus(os.getenv("MONGO_PASSWORD", ""))
    host = os.getenv("MONGO_HOST", "localhost")
    port = os.getenv("MONGO_PORT", "27017")
    if username and password:
        return f"mongodb://{username}:{password}@{host}:{port}/?authSource={os.getenv('MONGO_AUTH_SOURCE', 'admin')}"
    return f"mongodb://{host}:{port}/"


def load_flows(paths):
    if not paths:
        return [SAMPLE_FLOW]
    flows = []
    for path in paths:
        with open(path, encoding="utf-8") as handle:
            data = json.load(handle)
        flows.extend(data if isinstance(data, list) else [data])
    return flows


async def import_flow_data(paths):
    client = AsyncIOMotorClient(build_connection_string())
    db = client[os.getenv("MONGO_DB_NAME", "flow_engine_db")]

    try:
        for raw_flow in load_flows(paths):
            flow = FlowData.model_validate(raw_flow)
            flow_doc = flow.model_dump(by_alias=True, exclude={"id", "created_at", "times_triggered", "times_completed"})
            flow_doc["updated_at"] = datetime.utcnow()

            print(f"Upserting flow '{flow.slug}' ({len(flow.nodes)} nodes, {len(flow.connections)} connections)...")
            result = await db.flows.update_one(
                {"slug": flow.slug},
                {
                    "$set": flow_doc,
                    "$setOnInsert": {"created_at": datetime.utcnow(), "times_triggered": 0, "times_completed": 0}
                },
                upsert=True
            )
            if result.upserted_id is not None:
                print(f"✅ Flow '{flow.slug}' inserted with ID: {result.upserted_id}")
            else:
                print(f"✅ Flow '{flow.slug}' updated")

        print(f"\n✅ Flow data imported successfully!")

    except Exception as e:
        print(f"❌ Error importing flow data: {str(e)}")
        import traceback
        traceback.print_exc()
        raise
    finally:
        client.close()
        print(f"\n✅ MongoDB connection closed")


if __name__ == "__main__":
    print("=" * 80)
    print("Flow Data Import Script")
    print("=" * 80)
    print(f"Database: {os.getenv('MONGO_DB_NAME', 'flow_engine_db')}")
    print("=" * 80)
    print()

    asyncio.run(import_flow_data(sys.argv[1:]))
