from datetime import datetime
from typing import Optional
from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase, AsyncIOMotorCollection

from backend.config import MONGO_URI, MONGO_DB_NAME
from backend.logging_setup import get_logger


# ====== Conexão MongoDB (motor) ======
_mongo_client: Optional[AsyncIOMotorClient] = None
_mongo_db: Optional[AsyncIOMotorDatabase] = None

EVENTS = "events"
REGISTRATIONS = "registrations"

# inscrições que ocupam vaga; só uma por CPF em cada evento
ACTIVE_REGISTRATION_STATUSES = ["queued", "pending", "confirmed"]
UNIQUE_ACTIVE_CPF_INDEX = "uniq_active_cpf_per_event"

logger = get_logger("mongo")

async def connect_to_mongo() -> None:
	global _mongo_client, _mongo_db
	if _mongo_client is None:
		_mongo_client = AsyncIOMotorClient(MONGO_URI)
		_mongo_db = _mongo_client[MONGO_DB_NAME]
		logger.info(f"Cliente MongoDB criado: db={MONGO_DB_NAME}")
		await ensure_indexes()

async def close_mongo_connection() -> None:
	global _mongo_client, _mongo_db
	if _mongo_client is not None:
		_mongo_client.close()
		_mongo_client = None
		_mongo_db = None
		logger.info("Cliente MongoDB fechado")

def get_db() -> AsyncIOMotorDatabase:
	if _mongo_db is None:
		raise RuntimeError("MongoDB nao inicializado. Chame connect_to_mongo no startup da API.")
	return _mongo_db

def get_collection(name: str) -> AsyncIOMotorCollection:
	return get_db()[name]

async def ensure_indexes() -> None:
	"""Índice único parcial: no máximo uma inscrição ativa por CPF em cada evento."""
	name = await get_collection(REGISTRATIONS).create_index(
		[("event_id", 1), ("cpf", 1)],
		name=UNIQUE_ACTIVE_CPF_INDEX,
		unique=True,
		partialFilterExpression={"status": {"$in": ACTIVE_REGISTRATION_STATUSES}},
	)
	logger.info(f"Índice garantido: {name}")

def bson_to_json(val):
	"""Converte documentos do Mongo (ObjectId, datetime) para tipos serializáveis em JSON."""
	if isinstance(val, dict):
		return {k: bson_to_json(v) for k, v in val.items()}
	elif isinstance(val, list):
		return [bson_to_json(v) for v in val]
	elif isinstance(val, ObjectId):
		return str(val)
	elif isinstance(val, datetime):
		return val.isoformat()
	else:
		return val

def document_to_json(doc: dict) -> dict:
	"""Documento pronto para resposta: _id vira id."""
	result = bson_to_json(doc)
	result["id"] = str(result.pop("_id"))
	return result

def parse_object_id(value: str) -> Optional[ObjectId]:
	if not ObjectId.is_valid(value):
		return None
	return ObjectId(value)
