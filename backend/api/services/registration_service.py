"""
Serviço de inscrição: encapsula validação, persistência, mensageria e check-in.
CPFs são sempre gravados e buscados sem formatação (11 dígitos).
"""
import math
import re
from typing import Any, Dict, List, Optional, Tuple
from fastapi import HTTPException
from datetime import datetime
from pymongo.errors import DuplicateKeyError
import redis.asyncio as redis
import json
from backend.api.services.event_service import EventService, event_price, parse_payment_config, text_field
from backend.logging_setup import get_logger
from backend.mongo.db import ACTIVE_REGISTRATION_STATUSES, REGISTRATIONS, document_to_json, get_collection, parse_object_id
from backend.utils.cpf_utils import CPFUtils
from backend.utils.payment_fee_calculator import PaymentFeeCalculator
from backend.utils.payment_config import payment_method_name

QUEUED = "queued"
PENDING = "pending"
CONFIRMED = "confirmed"
CANCELLED = "cancelled"
REJECTED = "rejected"
FAILED = "failed"

STAFF_STATUSES = (PENDING, CONFIRMED, CANCELLED)
DUPLICATE_CPF = "Já existe uma inscrição para este CPF neste evento"
CHECKIN_SEARCH_LIMIT = 50


def _contains(text: str) -> Dict[str, Any]:
    return {"$regex": re.escape(text), "$options": "i"}


class RegistrationService:
    def __init__(self, redis_url: str, queue_key: str, event_service: Optional[EventService] = None, logger=None):
        """
        Inicializa o serviço de inscrição.
        Parâmetros:
            redis_url (str): URL do Redis
            queue_key (str): Nome da fila de inscrições
            event_service (EventService, opcional): serviço de eventos
            logger (logging.Logger, opcional): Logger para logs
        """
        self.redis_url = redis_url
        self.queue_key = queue_key
        self.event_service = event_service or EventService()
        self.logger = logger or get_logger("registration_service")

    def _participant(self, payload: Dict[str, Any]) -> Tuple[str, str, str]:
        """Nome, email e evento do payload; 400 se faltar algum."""
        name = text_field(payload, "name")
        email = text_field(payload, "email")
        event_id = text_field(payload, "event_id")
        if not name or not email or not event_id:
            self.logger.warning("Payload de inscrição incompleto")
            raise HTTPException(status_code=400, detail="Campos obrigatórios: name, email, cpf, event_id, payment_method")
        if "@" not in email:
            raise HTTPException(status_code=400, detail="Email inválido")
        return name, email.lower(), event_id

    async def _ensure_slot(self, coll, event: Dict[str, Any], event_id: str, cpf_norm: str) -> None:
        # verificação prévia; o índice único parcial cobre inscrições simultâneas do mesmo CPF
        active_query = {"event_id": event_id, "status": {"$in": ACTIVE_REGISTRATION_STATUSES}}
        if await coll.find_one({**active_query, "cpf": cpf_norm}):
            self.logger.warning(f"CPF já inscrito: cpf={CPFUtils.mask_cpf(cpf_norm)}, event_id={event_id}")
            raise HTTPException(status_code=409, detail=DUPLICATE_CPF)
        if await coll.count_documents(active_query) >= event.get("capacity", 0):
            self.logger.warning(f"Evento lotado: event_id={event_id}")
            raise HTTPException(status_code=400, detail="Evento lotado")

    async def _insert(self, coll, doc: Dict[str, Any]):
        try:
            return await coll.insert_one(doc)
        except DuplicateKeyError:
            self.logger.warning(f"CPF já inscrito (índice único): cpf={CPFUtils.mask_cpf(doc['cpf'])}, event_id={doc['event_id']}")
            raise HTTPException(status_code=409, detail=DUPLICATE_CPF)

    async def request_registration(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Realiza a inscrição: valida dados, persiste no banco e enfileira no Redis.
        Parâmetros:
            payload (dict): {name, email, cpf, event_id, payment_method, installments?}
        Retorno:
            dict: inscrição criada
        """
        name, email, event_id = self._participant(payload)
        method = text_field(payload, "payment_method")
        installments = payload.get("installments")
        if not method:
            self.logger.warning("Payload de inscrição sem forma de pagamento")
            raise HTTPException(status_code=400, detail="Campos obrigatórios: name, email, cpf, event_id, payment_method")
        if installments is not None and (isinstance(installments, bool) or not isinstance(installments, int)):
            raise HTTPException(status_code=400, detail="installments deve ser inteiro")

        # Normalização e validação crítica do CPF
        cpf_norm = self._require_valid_cpf(payload.get("cpf"))

        event = await self.event_service.open_event(event_id)
        coll = get_collection(REGISTRATIONS)
        await self._ensure_slot(coll, event, event_id, cpf_norm)

        config = parse_payment_config(event.get("payment_config"))
        option = PaymentFeeCalculator.find_payment_option(event_price(event), method, installments, config)
        if option is None:
            self.logger.warning(f"Forma de pagamento recusada: method={method}, installments={installments}")
            raise HTTPException(status_code=400, detail="Método de pagamento não disponível para este evento")

        now = datetime.utcnow()
        doc = {
            "name": name,
            "email": email,
            "cpf": cpf_norm,
            "event_id": event_id,
            "payment_method": method,
            "installments": option.installments,
            "amount": float(option.final_value),
            "status": QUEUED,
            "checked_in_at": None,
            "created_at": now,
            "updated_at": now,
        }
        res = await self._insert(coll, doc)
        registration_id = str(res.inserted_id)
        self.logger.info(f"Inscrição criada: registration_id={registration_id}, metodo={payment_method_name(method)}")

        # Mensageria: enfileira inscrição no Redis
        r = None
        try:
            r = redis.from_url(self.redis_url)
            msg = {"registration_id": registration_id, "event_id": event_id, "cpf": cpf_norm, "created_at": now.isoformat()}
            await r.rpush(self.queue_key, json.dumps(msg))
            self.logger.info(f"Inscrição enfileirada no Redis: registration_id={registration_id}")
        except Exception:
            self.logger.exception(f"Erro ao enfileirar inscrição: registration_id={registration_id}")
            await coll.update_one({"_id": res.inserted_id}, {"$set": {"status": FAILED, "updated_at": datetime.utcnow(), "reason": "enqueue_error"}})
            raise HTTPException(status_code=500, detail="Erro ao enfileirar a solicitação")
        finally:
            if r is not None:
                await r.close()

        created = await coll.find_one({"_id": res.inserted_id})
        return document_to_json(created)

    async def create_manual(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Inscrição feita pela equipe (pagamento recebido fora do sistema). Não passa pela fila.
        Parâmetros:
            payload (dict): {name, email, cpf, event_id, status?, amount_paid?, payment_type?}
        Retorno:
            dict: inscrição criada
        """
        name, email, event_id = self._participant(payload)
        status = payload.get("status") or CONFIRMED
        if status not in STAFF_STATUSES:
            raise HTTPException(status_code=400, detail=f"status deve ser um de: {', '.join(STAFF_STATUSES)}")
        amount_paid = payload.get("amount_paid")
        if amount_paid is not None and (isinstance(amount_paid, bool) or not isinstance(amount_paid, (int, float)) or amount_paid < 0):
            raise HTTPException(status_code=400, detail="amount_paid deve ser um número maior ou igual a zero")
        payment_type = text_field(payload, "payment_type") or "manual"
        cpf_norm = self._require_valid_cpf(payload.get("cpf"))

        event = await self.event_service.find_event(event_id)
        if not event.get("is_active"):
            raise HTTPException(status_code=400, detail="Evento não está ativo")
        coll = get_collection(REGISTRATIONS)
        await self._ensure_slot(coll, event, event_id, cpf_norm)

        now = datetime.utcnow()
        doc = {
            "name": name,
            "email": email,
            "cpf": cpf_norm,
            "event_id": event_id,
            "payment_method": payment_type,
            "installments": None,
            "amount": float(amount_paid if amount_paid is not None else event_price(event)),
            "status": status,
            "source": "manual",
            "checked_in_at": None,
            "confirmed_at": now if status == CONFIRMED else None,
            "created_at": now,
            "updated_at": now,
        }
        res = await self._insert(coll, doc)
        self.logger.info(f"Inscrição manual criada: registration_id={res.inserted_id}, status={status}")
        return document_to_json(await coll.find_one({"_id": res.inserted_id}))

    def _require_valid_cpf(self, cpf: Any) -> str:
        result = CPFUtils.is_valid_cpf(cpf if isinstance(cpf, str) else "")
        if not result.is_valid:
            self.logger.warning(f"CPF rejeitado: {result.error}")
            raise HTTPException(status_code=400, detail=result.error)
        return CPFUtils.normalize_cpf(cpf)

    async def _find(self, registration_id: str) -> Dict[str, Any]:
        obj_id = parse_object_id(registration_id)
        if obj_id is None:
            raise HTTPException(status_code=400, detail="registration_id inválido")
        registration = await get_collection(REGISTRATIONS).find_one({"_id": obj_id})
        if not registration:
            self.logger.warning(f"Inscrição não encontrada: registration_id={registration_id}")
            raise HTTPException(status_code=404, detail="Inscrição não encontrada")
        return registration

    async def get_registration(self, registration_id: str) -> Dict[str, Any]:
        return document_to_json(await self._find(registration_id))

    async def delete_registration(self, registration_id: str) -> None:
        registration = await self._find(registration_id)
        await get_collection(REGISTRATIONS).delete_one({"_id": registration["_id"]})
        self.logger.info(f"Inscrição removida: registration_id={registration_id}")

    async def list_registrations(
        self,
        page: int = 1,
        limit: int = 10,
        status: Optional[str] = None,
        event_id: Optional[str] = None,
        search: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Listagem paginada para a equipe, mais recentes primeiro.
        Parâmetros:
            page (int): página, a partir de 1
            limit (int): itens por página
            status (str, opcional): filtra pelo status
            event_id (str, opcional): filtra pelo evento
            search (str, opcional): trecho do nome, email ou CPF
        Retorno:
            dict: {items, pagination: {page, limit, total, pages}}
        """
        query: Dict[str, Any] = {}
        if status:
            query["status"] = status
        if event_id:
            query["event_id"] = event_id
        term = (search or "").strip()
        if term:
            conditions: List[Dict[str, Any]] = [{"name": _contains(term)}, {"email": _contains(term)}]
            digits = CPFUtils.normalize_cpf(term)
            if digits:
                conditions.append({"cpf": {"$regex": digits}})
            query["$or"] = conditions

        coll = get_collection(REGISTRATIONS)
        total = await coll.count_documents(query)
        cursor = coll.find(query).sort([("created_at", -1)]).skip((page - 1) * limit).limit(limit)
        items = [document_to_json(doc) async for doc in cursor]
        return {
            "items": items,
            "pagination": {"page": page, "limit": limit, "total": total, "pages": math.ceil(total / limit)},
        }

    async def search_by_cpf(self, cpf: str, event_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Busca inscrições pelo CPF (com ou sem formatação).
        Parâmetros:
            cpf (str): CPF informado
            event_id (str, opcional): restringe a um evento
        Retorno:
            List[dict]: inscrições encontradas, mais recentes primeiro
        """
        cpf_norm = self._require_valid_cpf(cpf)
        query: Dict[str, Any] = {"cpf": cpf_norm}
        if event_id:
            query["event_id"] = event_id
        items: List[Dict[str, Any]] = []
        async for doc in get_collection(REGISTRATIONS).find(query).sort("created_at", -1):
            items.append(document_to_json(doc))
        self.logger.info(f"Busca por CPF: cpf={CPFUtils.mask_cpf(cpf_norm)}, total={len(items)}")
        return items

    async def checkin_search(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Busca de inscrições confirmadas na portaria, por nome, email ou parte do CPF.
        Parâmetros:
            payload (dict): {query, event_id?}
        Retorno:
            dict: {items, total}; já com check-in primeiro (mais recente), depois por nome
        """
        term = text_field(payload, "query")
        if not term:
            raise HTTPException(status_code=400, detail="Termo de busca é obrigatório")
        event_id = text_field(payload, "event_id")

        conditions: List[Dict[str, Any]] = [{"name": _contains(term)}, {"email": _contains(term)}]
        digits = CPFUtils.normalize_cpf(term)
        if len(digits) >= 3:
            conditions.append({"cpf": {"$regex": digits}})
        query: Dict[str, Any] = {"status": CONFIRMED, "$or": conditions}
        if event_id:
            query["event_id"] = event_id

        cursor = (
            get_collection(REGISTRATIONS)
            .find(query)
            .sort([("checked_in_at", -1), ("name", 1)])
            .limit(CHECKIN_SEARCH_LIMIT)
        )
        items = [document_to_json(doc) async for doc in cursor]
        self.logger.info(f"Busca para check-in: total={len(items)}")
        return {"items": items, "total": len(items)}

    async def export(self, event_id: Optional[str]) -> Dict[str, Any]:
        """
        Relatório do evento para a portaria: confirmados por nome, totais e check-ins por hora.
        Parâmetros:
            event_id (str): ID do evento
        Retorno:
            dict: {event, registrations, stats, checkins_by_hour, exported_at}
        """
        if not event_id:
            raise HTTPException(status_code=400, detail="event_id é obrigatório")
        event = await self.event_service.find_event(event_id)

        registrations: List[Dict[str, Any]] = []
        checkins_by_hour: Dict[int, int] = {}
        revenue_cents = 0
        async for doc in get_collection(REGISTRATIONS).find({"event_id": event_id, "status": CONFIRMED}).sort("name", 1):
            registrations.append(document_to_json(doc))
            revenue_cents += round(float(doc.get("amount") or 0) * 100)
            if doc.get("checked_in_at"):
                hour = doc["checked_in_at"].hour
                checkins_by_hour[hour] = checkins_by_hour.get(hour, 0) + 1

        total = len(registrations)
        checked_in = sum(checkins_by_hour.values())
        self.logger.info(f"Exportação do evento: event_id={event_id}, confirmadas={total}")
        return {
            "event": document_to_json(event),
            "registrations": registrations,
            "stats": {
                "total": total,
                "checked_in": checked_in,
                "pending": total - checked_in,
                "total_revenue": revenue_cents / 100,
                "checkin_rate": round(checked_in / total * 100) if total else 0,
            },
            "checkins_by_hour": checkins_by_hour,
            "exported_at": datetime.utcnow().isoformat(),
        }

    async def update_status(self, registration_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Alteração manual de status pela equipe (pending, confirmed ou cancelled)."""
        status = payload.get("status")
        if status not in STAFF_STATUSES:
            raise HTTPException(status_code=400, detail=f"status deve ser um de: {', '.join(STAFF_STATUSES)}")
        registration = await self._find(registration_id)
        update: Dict[str, Any] = {"status": status, "updated_at": datetime.utcnow()}
        if status == CONFIRMED and registration.get("confirmed_at") is None:
            update["confirmed_at"] = datetime.utcnow()
        coll = get_collection(REGISTRATIONS)
        try:
            await coll.update_one({"_id": registration["_id"]}, {"$set": update})
        except DuplicateKeyError:
            # reativar uma inscrição cancelada quando o CPF já tem outra ativa no evento
            raise HTTPException(status_code=409, detail=DUPLICATE_CPF)
        self.logger.info(f"Status alterado: registration_id={registration_id}, {registration.get('status')} -> {status}")
        return document_to_json(await coll.find_one({"_id": registration["_id"]}))

    async def checkin(self, registration_id: str) -> Dict[str, Any]:
        """Registra a presença; só inscrições confirmadas e ainda sem check-in."""
        registration = await self._find(registration_id)
        if registration.get("status") != CONFIRMED:
            raise HTTPException(status_code=400, detail="Apenas inscrições confirmadas podem fazer check-in")
        if registration.get("checked_in_at"):
            raise HTTPException(status_code=409, detail="Check-in já foi realizado para esta inscrição")
        return await self._set_checkin(registration, datetime.utcnow())

    async def undo_checkin(self, registration_id: str) -> Dict[str, Any]:
        registration = await self._find(registration_id)
        if not registration.get("checked_in_at"):
            raise HTTPException(status_code=400, detail="Não há check-in para desfazer")
        return await self._set_checkin(registration, None)

    async def _set_checkin(self, registration: Dict[str, Any], when: Optional[datetime]) -> Dict[str, Any]:
        coll = get_collection(REGISTRATIONS)
        await coll.update_one({"_id": registration["_id"]}, {"$set": {"checked_in_at": when, "updated_at": datetime.utcnow()}})
        self.logger.info(f"Check-in {'realizado' if when else 'desfeito'}: registration_id={registration['_id']}")
        return document_to_json(await coll.find_one({"_id": registration["_id"]}))

    async def stats(self, event_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Totais por status, check-ins e valor arrecadado (inscrições confirmadas).
        Parâmetros:
            event_id (str, opcional): restringe a um evento
        Retorno:
            dict: {total, by_status, checked_in, confirmed_amount}
        """
        query: Dict[str, Any] = {"event_id": event_id} if event_id else {}
        by_status: Dict[str, int] = {}
        total = 0
        checked_in = 0
        confirmed_cents = 0
        async for doc in get_collection(REGISTRATIONS).find(query):
            total += 1
            status = doc.get("status") or QUEUED
            by_status[status] = by_status.get(status, 0) + 1
            if doc.get("checked_in_at"):
                checked_in += 1
            if status == CONFIRMED:
                confirmed_cents += round(float(doc.get("amount") or 0) * 100)
        return {
            "total": total,
            "by_status": by_status,
            "checked_in": checked_in,
            "confirmed_amount": confirmed_cents / 100,
        }
