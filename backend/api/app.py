from typing import List, Dict, Any, Optional
from fastapi import FastAPI, status, Path, Query
import uvicorn
from backend.config import API_HOST, API_PORT, REDIS_URL, REGISTRATIONS_QUEUE
from backend.logging_setup import get_logger
from backend.mongo.db import connect_to_mongo, close_mongo_connection
from backend.api.services.event_service import EventService
from backend.api.services.registration_service import RegistrationService

logger = get_logger("api")

app = FastAPI(title="Event Registration API", version="1.0.0")

event_service = EventService()
registration_service = RegistrationService(REDIS_URL, REGISTRATIONS_QUEUE, event_service)


# Conexão MongoDB no ciclo de vida da aplicação
@app.on_event("startup")
async def on_startup() -> None:
    """
    Evento de inicialização da API.
    Conecta ao MongoDB.
    """
    logger.info("Iniciando evento de startup da API")
    await connect_to_mongo()


@app.on_event("shutdown")
async def on_shutdown() -> None:
    logger.info("Iniciando evento de shutdown da API")
    await close_mongo_connection()


@app.get("/")
async def root() -> dict:
    return {"status": "ok"}


######### Eventos
@app.post("/api/v1/events", status_code=status.HTTP_201_CREATED)
async def create_event(payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Cadastra um evento (o novo evento ativo desativa os anteriores).
    Parâmetros:
        payload (dict): dados do evento, incluindo payment_config opcional
    Retorno:
        dict: evento criado
    """
    return await event_service.create_event(payload)


@app.get("/api/v1/events/active")
async def get_active_event() -> Dict[str, Any]:
    return await event_service.get_active_event()


@app.get("/api/v1/events/{event_id}")
async def get_event(event_id: str = Path(..., description="ID do evento")) -> Dict[str, Any]:
    return await event_service.get_event(event_id)


@app.put("/api/v1/events/{event_id}")
async def update_event(payload: Dict[str, Any], event_id: str = Path(..., description="ID do evento")) -> Dict[str, Any]:
    """
    Atualiza parcialmente um evento; os campos enviados passam pelas mesmas regras do cadastro.
    Parâmetros:
        payload (dict): campos a alterar
        event_id (str): ID do evento
    Retorno:
        dict: evento atualizado
    """
    return await event_service.update_event(event_id, payload)


@app.delete("/api/v1/events/{event_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_event(event_id: str = Path(..., description="ID do evento")) -> None:
    await event_service.delete_event(event_id)


#########
@app.get("/api/v1/events/{event_id}/payment-methods")
async def get_payment_methods(event_id: str = Path(..., description="ID do evento")) -> Dict[str, Any]:
    """
    Formas de pagamento disponíveis para o evento, com taxas e valores finais.
    Parâmetros:
        event_id (str): ID do evento
    Retorno:
        dict: {base_value, available_methods, default_method?}
    """
    logger.info(f"Consulta de formas de pagamento: event_id={event_id}")
    return await event_service.payment_methods(event_id)


@app.post("/api/v1/events/{event_id}/payment-methods")
async def validate_payment_method(payload: Dict[str, Any], event_id: str = Path(..., description="ID do evento")) -> Dict[str, Any]:
    """
    Valida a forma de pagamento escolhida para o evento.
    Parâmetros:
        payload (dict): {method, installments?}
        event_id (str): ID do evento
    Retorno:
        dict: {valid, method, installments, final_value, description}
    """
    return await event_service.validate_payment_method(event_id, payload)


######### Inscrições
@app.get("/api/v1/registrations")
async def list_registrations(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status_filter: Optional[str] = Query(None, alias="status"),
    event_id: Optional[str] = None,
    search: Optional[str] = Query(None, description="Trecho do nome, email ou CPF"),
) -> Dict[str, Any]:
    return await registration_service.list_registrations(page, limit, status_filter, event_id, search)


@app.post("/api/v1/registrations", status_code=status.HTTP_201_CREATED)
async def request_registration(payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Endpoint de inscrição. Valida CPF e pagamento, persiste e enfileira no Redis.
    Parâmetros:
        payload (dict): dados da inscrição
    Retorno:
        dict: inscrição criada
    """
    result = await registration_service.request_registration(payload)
    logger.info(f"Inscrição processada: registration_id={result['id']}")
    return result


@app.post("/api/v1/registrations/manual", status_code=status.HTTP_201_CREATED)
async def create_manual_registration(payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Inscrição lançada pela equipe, sem passar pela fila de processamento.
    Parâmetros:
        payload (dict): {name, email, cpf, event_id, status?, amount_paid?, payment_type?}
    Retorno:
        dict: inscrição criada
    """
    return await registration_service.create_manual(payload)


@app.get("/api/v1/registrations/export")
async def export_registrations(event_id: Optional[str] = None) -> Dict[str, Any]:
    return await registration_service.export(event_id)


@app.get("/api/v1/registrations/search-by-cpf")
async def search_by_cpf(cpf: str = Query(..., description="CPF com ou sem formatação"), event_id: Optional[str] = None) -> List[dict]:
    return await registration_service.search_by_cpf(cpf, event_id)


@app.get("/api/v1/registrations/stats")
async def registration_stats(event_id: Optional[str] = None) -> Dict[str, Any]:
    return await registration_service.stats(event_id)


@app.get("/api/v1/registrations/{registration_id}")
async def get_registration(registration_id: str = Path(..., description="ID da inscrição")) -> Dict[str, Any]:
    return await registration_service.get_registration(registration_id)


@app.delete("/api/v1/registrations/{registration_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_registration(registration_id: str = Path(..., description="ID da inscrição")) -> None:
    await registration_service.delete_registration(registration_id)


@app.patch("/api/v1/registrations/{registration_id}/status")
async def update_registration_status(payload: Dict[str, Any], registration_id: str = Path(..., description="ID da inscrição")) -> Dict[str, Any]:
    return await registration_service.update_status(registration_id, payload)


######### Check-in
@app.post("/api/v1/checkin/search")
async def checkin_search(payload: Dict[str, Any]) -> Dict[str, Any]:
    return await registration_service.checkin_search(payload)


@app.post("/api/v1/checkin/{registration_id}")
async def checkin(registration_id: str = Path(..., description="ID da inscrição")) -> Dict[str, Any]:
    return await registration_service.checkin(registration_id)


@app.delete("/api/v1/checkin/{registration_id}")
async def undo_checkin(registration_id: str = Path(..., description="ID da inscrição")) -> Dict[str, Any]:
    return await registration_service.undo_checkin(registration_id)


######### ------------------------------ #########
if __name__ == "__main__":
    """
    Inicializa o servidor Uvicorn para rodar a API.
    """
    logger.info(f"Starting Uvicorn server on {API_HOST}:{API_PORT}")
    uvicorn.run(app, host=API_HOST, port=API_PORT)
