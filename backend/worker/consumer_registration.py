import asyncio
import json
import time
from datetime import datetime

from bson import ObjectId
import redis.asyncio as redis
from backend.config import REDIS_URL, REGISTRATIONS_QUEUE, REGISTRATIONS_DLQ
from backend.logging_setup import get_logger
from backend.mongo.db import EVENTS, REGISTRATIONS, connect_to_mongo, close_mongo_connection, get_collection, parse_object_id
from backend.api.services.event_service import event_price
from backend.utils.cpf_utils import CPFUtils
from backend.utils.payment_config import PaymentConfig
from backend.utils.payment_fee_calculator import PaymentFeeCalculator

LOG = get_logger("consumer_registration")

# intervalo mínimo entre mensagens, em segundos
MIN_MESSAGE_INTERVAL = 2.0
# status que o worker ainda pode alterar; os demais pertencem à equipe
PROCESSABLE_STATUSES = ["queued", None]


# ------------------- Classe principal do worker -------------------
class RegistrationProcessor:
    def __init__(self, queue_key, dlq_key, logger, min_interval=MIN_MESSAGE_INTERVAL):
        """
        Inicializa o processador de inscrições.
        Parâmetros:
            queue_key (str): Nome da fila principal
            dlq_key (str): Nome da fila de dead-letter
            logger (logging.Logger): Logger para logs
            min_interval (float): intervalo mínimo entre mensagens
        """
        self.logger = logger
        self.queue_key = queue_key
        self.dlq_key = dlq_key
        self.min_interval = min_interval


    async def _check_registration(self, registration):
        """
        Revalida CPF e forma de pagamento contra a configuração atual do evento.
        Parâmetros:
            registration (dict): documento da inscrição
        Retorno:
            tuple: (motivo de rejeição ou None, opção de pagamento)
        """
        cpf = registration.get("cpf") or ""
        if not CPFUtils.validate_cpf_digits(cpf):
            self.logger.warning(f"CPF inválido detectado: cpf={CPFUtils.mask_cpf(cpf)}")
            return "cpf_invalido", None

        event_obj_id = parse_object_id(registration.get("event_id") or "")
        event = await get_collection(EVENTS).find_one({"_id": event_obj_id}) if event_obj_id else None
        if not event:
            self.logger.warning(f"Evento não encontrado: event_id={registration.get('event_id')}")
            return "evento_nao_encontrado", None

        raw_config = event.get("payment_config")
        config = PaymentConfig.model_validate(raw_config) if raw_config else None
        option = PaymentFeeCalculator.find_payment_option(
            event_price(event), registration.get("payment_method"), registration.get("installments"), config
        )
        if option is None:
            self.logger.warning(f"Forma de pagamento indisponível: method={registration.get('payment_method')}")
            return "pagamento_indisponivel", None
        return None, option


    async def _update_registration_status(self, registration_id, coll, status, extra=None):
        """
        Atualiza status da inscrição no banco.
        Parâmetros:
            registration_id (str): ID da inscrição
            coll: Coleção MongoDB de inscrições
            status (str): Novo status
            extra (dict, opcional): Campos extras para atualizar
        Retorno:
            bool: False se a inscrição saiu de queued enquanto era processada
        """
        update = {"status": status, "updated_at": datetime.utcnow()}
        if extra:
            update.update(extra)
        res = await coll.update_one(
            {"_id": ObjectId(registration_id), "status": {"$in": PROCESSABLE_STATUSES}}, {"$set": update}
        )
        if not res.modified_count:
            self.logger.info(f"Inscrição alterada durante o processamento, mantida: registration_id={registration_id}")
            return False
        self.logger.info(f"Status atualizado: registration_id={registration_id}, status={status}")
        return True


    async def _handle_processing_error(self, registration_id, coll, r, msg, exc):
        """
        Lida com erro de processamento, atualiza status e envia para DLQ.
        """
        self.logger.exception(f"Erro ao processar mensagem: {exc}")
        try:
            if registration_id and coll is not None:
                await self._update_registration_status(registration_id, coll, "failed", {"reason": "processing_error"})
        except Exception as e:
            self.logger.exception(f"Erro ao marcar inscrição como failed: {e}")
        try:
            await r.rpush(self.dlq_key, msg)
        except Exception as e:
            self.logger.exception(f"Erro ao empurrar para DLQ: {e}")


    async def process_message(self, msg: str, r: redis.Redis) -> None:
        """
        Processa uma mensagem de inscrição da fila.
        Parâmetros:
            msg (str): Mensagem JSON da inscrição
            r: Instância Redis
        """
        start = time.monotonic()
        registration_id = None
        coll = None
        try:
            data = json.loads(msg)
            registration_id = data.get("registration_id")
            if not registration_id:
                self.logger.warning(f"Mensagem sem registration_id: {data}")
                return

            coll = get_collection(REGISTRATIONS)
            registration = await coll.find_one({"_id": ObjectId(registration_id)})
            if not registration:
                self.logger.warning(f"Inscrição não encontrada: {registration_id}")
                return

            # Idempotência: só processa se status for queued
            status = registration.get("status")
            if status not in PROCESSABLE_STATUSES:
                self.logger.info(f"Inscrição {registration_id} já processada (status={status}), pulando")
                return

            motivo, option = await self._check_registration(registration)
            if motivo:
                await self._update_registration_status(registration_id, coll, "rejected", {"reason": motivo})
                return

            await self._update_registration_status(
                registration_id,
                coll,
                "pending",
                {"amount": float(option.final_value), "processed_at": datetime.utcnow()},
            )

        except Exception as exc:
            await self._handle_processing_error(registration_id, coll, r, msg, exc)
        finally:
            elapsed = time.monotonic() - start
            if elapsed < self.min_interval:
                await asyncio.sleep(self.min_interval - elapsed)



####################
async def main() -> None:
    """
    Loop principal do worker. Conecta aos serviços, consome fila e processa inscrições.
    """
    LOG.info("Conectando ao MongoDB e Redis...")
    await connect_to_mongo()
    r = redis.from_url(REDIS_URL)
    processor = RegistrationProcessor(REGISTRATIONS_QUEUE, REGISTRATIONS_DLQ, LOG)
    try:
        while True:
            try:
                item = await r.brpop(REGISTRATIONS_QUEUE, timeout=5)
                if not item:
                    await asyncio.sleep(0.5)
                    continue
                # item is a tuple (key, value)
                _, value = item
                if isinstance(value, bytes):
                    value = value.decode()
                await processor.process_message(value, r)
            except asyncio.CancelledError:
                raise
            except Exception:
                LOG.exception("Erro no loop do consumer")
                await asyncio.sleep(1)
    finally:
        await r.close()
        await close_mongo_connection()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        LOG.info("Worker finalizado pelo usuário")
