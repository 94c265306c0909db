"""
Serviço de eventos: cadastro do evento ativo e consulta das formas de pagamento.
O cálculo de taxas fica em PaymentFeeCalculator; aqui só adaptamos documentos e erros HTTP.
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi import HTTPException
from pydantic import ValidationError

from backend.logging_setup import get_logger
from backend.mongo.db import EVENTS, REGISTRATIONS, document_to_json, get_collection, parse_object_id
from backend.utils.payment_config import PaymentConfig
from backend.utils.payment_fee_calculator import PaymentFeeCalculator

NOT_ACCEPTING = "Este evento não está aceitando inscrições"
METHOD_UNAVAILABLE = "Método de pagamento não disponível para este evento"
# acima disso o valor final deixa de caber num float do JSON
MAX_PRICE = 1_000_000_000
EVENT_FIELDS = (
    "name",
    "description",
    "location",
    "event_date",
    "registration_end_date",
    "capacity",
    "price",
    "is_active",
    "payment_config",
)


def text_field(payload: Dict[str, Any], field: str) -> str:
    """Campo textual do payload sem espaços nas pontas; ausente vira "", outro tipo é 400."""
    value = payload.get(field)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise HTTPException(status_code=400, detail=f"{field} deve ser texto")
    return value.strip()


def _parse_datetime(value: Any, field: str) -> Optional[datetime]:
    if value is None:
        return None
    try:
        parsed = value if isinstance(value, datetime) else datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        raise HTTPException(status_code=400, detail=f"{field} deve ser uma data ISO 8601")
    # Mongo devolve datas sem fuso; guardamos tudo em UTC ingênuo
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def parse_payment_config(raw: Any) -> Optional[PaymentConfig]:
    """Configuração de pagamento do documento (ou payload); None usa o padrão."""
    if raw is None:
        return None
    if isinstance(raw, PaymentConfig):
        return raw
    try:
        return PaymentConfig.model_validate(raw)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=f"Configuração de pagamento inválida: {exc.errors()[0]['msg']}")


def accepts_registrations(event: Dict[str, Any], now: Optional[datetime] = None) -> bool:
    now = now or datetime.utcnow()
    if not event.get("is_active"):
        return False
    end = event.get("registration_end_date")
    return end is None or now <= end


def event_price(event: Dict[str, Any]) -> Decimal:
    return Decimal(str(event.get("price", 0)))


class EventService:
    def __init__(self, logger=None):
        self.logger = logger or get_logger("event_service")

    def _event_document(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Valida os campos do evento e devolve o documento pronto para gravar (sem datas de controle)."""
        name = text_field(payload, "name")
        capacity = payload.get("capacity")
        price = payload.get("price")
        if not name or capacity is None or price is None or payload.get("event_date") is None:
            self.logger.warning(f"Payload incompleto: {payload}")
            raise HTTPException(status_code=400, detail="Campos obrigatórios: name, event_date, capacity, price")
        if not isinstance(capacity, int) or isinstance(capacity, bool) or capacity < 1:
            raise HTTPException(status_code=400, detail="capacity deve ser um inteiro maior que zero")
        if isinstance(price, bool) or not isinstance(price, (int, float)) or not 0 <= price <= MAX_PRICE:
            raise HTTPException(status_code=400, detail=f"price deve ser um número entre 0 e {MAX_PRICE}")

        event_date = _parse_datetime(payload.get("event_date"), "event_date")
        registration_end = _parse_datetime(payload.get("registration_end_date"), "registration_end_date")
        if registration_end is not None and registration_end > event_date:
            raise HTTPException(status_code=400, detail="Inscrições devem encerrar antes ou no início do evento")
        config = parse_payment_config(payload.get("payment_config"))

        return {
            "name": name,
            "description": text_field(payload, "description") or None,
            "location": text_field(payload, "location") or None,
            "event_date": event_date,
            "registration_end_date": registration_end,
            "capacity": capacity,
            "price": float(price),
            "is_active": bool(payload.get("is_active", True)),
            "payment_config": config.model_dump(mode="json", exclude_none=True) if config else None,
        }

    async def _deactivate_others(self, coll, now: datetime, keep_id=None) -> None:
        query: Dict[str, Any] = {"is_active": True}
        if keep_id is not None:
            query["_id"] = {"$ne": keep_id}
        res = await coll.update_many(query, {"$set": {"is_active": False, "updated_at": now}})
        if res.modified_count:
            self.logger.info(f"Eventos desativados: total={res.modified_count}")

    async def create_event(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Cadastra um evento. Um evento ativo desativa os demais (só há um evento ativo).
        Parâmetros:
            payload (dict): dados do evento
        Retorno:
            dict: evento criado
        """
        self.logger.info(f"Recebendo payload de evento: {payload}")
        doc = self._event_document(payload)
        now = datetime.utcnow()
        doc["created_at"] = now
        doc["updated_at"] = now
        coll = get_collection(EVENTS)
        if doc["is_active"]:
            await self._deactivate_others(coll, now)
        res = await coll.insert_one(doc)
        created = await coll.find_one({"_id": res.inserted_id})
        self.logger.info(f"Evento criado: event_id={res.inserted_id}")
        return document_to_json(created)

    async def update_event(self, event_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Atualização parcial: os campos enviados substituem os atuais e o resultado
        passa pelas mesmas validações do cadastro.
        Parâmetros:
            event_id (str): ID do evento
            payload (dict): campos a alterar
        Retorno:
            dict: evento atualizado
        """
        event = await self.find_event(event_id)
        merged = {field: event.get(field) for field in EVENT_FIELDS}
        merged.update({k: v for k, v in payload.items() if k in EVENT_FIELDS})
        doc = self._event_document(merged)
        now = datetime.utcnow()
        doc["updated_at"] = now
        coll = get_collection(EVENTS)
        if doc["is_active"]:
            await self._deactivate_others(coll, now, keep_id=event["_id"])
        await coll.update_one({"_id": event["_id"]}, {"$set": doc})
        self.logger.info(f"Evento atualizado: event_id={event_id}, campos={sorted(set(payload) & set(EVENT_FIELDS))}")
        return document_to_json(await coll.find_one({"_id": event["_id"]}))

    async def delete_event(self, event_id: str) -> None:
        """Remove o evento e suas inscrições; 400 se já houver inscrição confirmada."""
        event = await self.find_event(event_id)
        registrations = get_collection(REGISTRATIONS)
        if await registrations.count_documents({"event_id": event_id, "status": "confirmed"}):
            self.logger.warning(f"Evento com inscrições confirmadas não pode ser removido: event_id={event_id}")
            raise HTTPException(status_code=400, detail="Não é possível deletar um evento com inscrições confirmadas")
        res = await registrations.delete_many({"event_id": event_id})
        await get_collection(EVENTS).delete_one({"_id": event["_id"]})
        self.logger.info(f"Evento removido: event_id={event_id}, inscricoes_removidas={res.deleted_count}")

    async def find_event(self, event_id: str) -> Dict[str, Any]:
        """Documento bruto do evento; 400 para id malformado, 404 se não existe."""
        obj_id = parse_object_id(event_id)
        if obj_id is None:
            self.logger.warning(f"event_id inválido: {event_id}")
            raise HTTPException(status_code=400, detail="event_id inválido")
        event = await get_collection(EVENTS).find_one({"_id": obj_id})
        if not event:
            self.logger.warning(f"Evento não encontrado: event_id={event_id}")
            raise HTTPException(status_code=404, detail="Evento não encontrado")
        return event

    async def get_event(self, event_id: str) -> Dict[str, Any]:
        return document_to_json(await self.find_event(event_id))

    async def get_active_event(self) -> Dict[str, Any]:
        event = await get_collection(EVENTS).find_one({"is_active": True})
        if not event:
            raise HTTPException(status_code=404, detail="Nenhum evento ativo")
        return document_to_json(event)

    async def open_event(self, event_id: str) -> Dict[str, Any]:
        """Evento que ainda aceita inscrições; 400 caso contrário."""
        event = await self.find_event(event_id)
        if not accepts_registrations(event):
            self.logger.warning(f"Evento fechado para inscrições: event_id={event_id}")
            raise HTTPException(status_code=400, detail=NOT_ACCEPTING)
        return event

    async def payment_methods(self, event_id: str) -> Dict[str, Any]:
        """
        Formas de pagamento do evento com os valores finais já calculados.
        Parâmetros:
            event_id (str): ID do evento
        Retorno:
            dict: {base_value, available_methods, default_method?}
        """
        event = await self.open_event(event_id)
        config = parse_payment_config(event.get("payment_config"))
        calculation = PaymentFeeCalculator.calculate_payment_options(event_price(event), config)
        self.logger.info(f"Formas de pagamento calculadas: event_id={event_id}, total={len(calculation.available_methods)}")
        return calculation.model_dump(exclude_none=True)

    async def validate_payment_method(self, event_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Valida a forma de pagamento escolhida e devolve o valor a cobrar.
        Parâmetros:
            event_id (str): ID do evento
            payload (dict): {method, installments?}
        Retorno:
            dict: {valid, method, installments, final_value, description}
        """
        method = text_field(payload, "method")
        installments = payload.get("installments")
        if not method:
            raise HTTPException(status_code=400, detail="Campo obrigatório: method")
        if installments is not None and (isinstance(installments, bool) or not isinstance(installments, int)):
            raise HTTPException(status_code=400, detail="installments deve ser inteiro")

        event = await self.open_event(event_id)
        config = parse_payment_config(event.get("payment_config"))
        option = PaymentFeeCalculator.find_payment_option(event_price(event), method, installments, config)
        if option is None:
            self.logger.warning(f"Forma de pagamento recusada: event_id={event_id}, method={method}, installments={installments}")
            raise HTTPException(status_code=400, detail=METHOD_UNAVAILABLE)
        return {
            "valid": True,
            "method": method,
            "installments": installments or 1,
            "final_value": float(option.final_value),
            "description": option.description,
        }
