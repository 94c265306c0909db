import json
import logging

import pytest

from backend.config import REGISTRATIONS_QUEUE
from backend.mongo.db import UNIQUE_ACTIVE_CPF_INDEX, ensure_indexes

logger = logging.getLogger("test_registrations_api")

VALID_CPF = "111.444.777-35"
OTHER_CPF = "529.982.247-25"

OPEN_EVENT = {
    "name": "Encontro de Jovens 2030",
    "event_date": "2030-05-10T09:00:00Z",
    "registration_end_date": "2030-05-01T23:59:59Z",
    "capacity": 2,
    "price": 100,
    "payment_config": {
        "methods": {
            "pix": {"enabled": True, "passthrough_fee": False},
            "credit_card": {"enabled": True, "passthrough_fee": True, "max_installments": 6},
        }
    },
}


async def _create_event(client, **overrides):
    response = await client.post("/api/v1/events", json={**OPEN_EVENT, **overrides})
    assert response.status_code == 201, response.text
    return response.json()["id"]


def _registration(event_id, /, **overrides):
    payload = {
        "name": "Maria Silva",
        "email": "Maria@Example.com",
        "cpf": VALID_CPF,
        "event_id": event_id,
        "payment_method": "pix",
    }
    payload.update(overrides)
    return payload


async def _register(client, event_id, /, **overrides):
    response = await client.post("/api/v1/registrations", json=_registration(event_id, **overrides))
    logger.info(f"inscrição: status={response.status_code}, body={response.json()}")
    return response


@pytest.mark.asyncio
async def test_create_registration_success(api_client, fake_redis):
    async with api_client as client:
        event_id = await _create_event(client)
        response = await _register(client, event_id)
        assert response.status_code == 201
        data = response.json()
        assert data["cpf"] == "11144477735"
        assert data["email"] == "maria@example.com"
        assert data["status"] == "queued"
        assert data["amount"] == 100.0

        (msg,) = fake_redis.lists[REGISTRATIONS_QUEUE]
        assert json.loads(msg)["registration_id"] == data["id"]
        assert fake_redis.closed is True


@pytest.mark.asyncio
async def test_credit_card_installments_charge_fee(api_client):
    async with api_client as client:
        event_id = await _create_event(client)
        response = await _register(client, event_id, payment_method="credit_card", installments=3)
        assert response.status_code == 201
        assert response.json()["installments"] == 3
        assert response.json()["amount"] == 106.99


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "cpf, detail",
    [
        ("", "CPF é obrigatório"),
        ("123", "CPF incompleto"),
        ("111.111.111-11", "CPF inválido (todos os dígitos são iguais)"),
        ("12345678900", "CPF inválido (dígitos verificadores incorretos)"),
    ],
)
async def test_create_registration_invalid_cpf(api_client, cpf, detail):
    async with api_client as client:
        event_id = await _create_event(client)
        response = await _register(client, event_id, cpf=cpf)
        assert response.status_code == 400
        assert response.json()["detail"] == detail


@pytest.mark.asyncio
async def test_create_registration_blank_name(api_client):
    async with api_client as client:
        event_id = await _create_event(client)
        response = await _register(client, event_id, name="")
        assert response.status_code == 400


@pytest.mark.asyncio
async def test_duplicate_cpf_same_event(api_client):
    async with api_client as client:
        event_id = await _create_event(client)
        assert (await _register(client, event_id)).status_code == 201
        response = await _register(client, event_id, cpf="11144477735")
        assert response.status_code == 409


@pytest.mark.asyncio
async def test_event_capacity(api_client):
    async with api_client as client:
        event_id = await _create_event(client, capacity=1)
        assert (await _register(client, event_id)).status_code == 201
        response = await _register(client, event_id, cpf=OTHER_CPF)
        assert response.status_code == 400
        assert response.json()["detail"] == "Evento lotado"


@pytest.mark.asyncio
async def test_payment_option_not_available(api_client):
    async with api_client as client:
        event_id = await _create_event(client)
        response = await _register(client, event_id, payment_method="credit_card", installments=7)
        assert response.status_code == 400
        response = await _register(client, event_id, payment_method="debit_card")
        assert response.status_code == 400


@pytest.mark.asyncio
async def test_enqueue_failure_marks_registration_failed(api_client, fake_redis, collections):
    fake_redis.fail = True
    async with api_client as client:
        event_id = await _create_event(client)
        response = await _register(client, event_id)
        assert response.status_code == 500
    (doc,) = collections("registrations").docs
    assert doc["status"] == "failed"
    assert doc["reason"] == "enqueue_error"
    assert fake_redis.closed is True


@pytest.mark.asyncio
async def test_search_by_cpf(api_client):
    async with api_client as client:
        event_id = await _create_event(client)
        await _register(client, event_id)
        await _register(client, event_id, cpf=OTHER_CPF, name="João Souza")

        response = await client.get("/api/v1/registrations/search-by-cpf", params={"cpf": "11144477735"})
        assert response.status_code == 200
        items = response.json()
        assert len(items) == 1
        assert items[0]["name"] == "Maria Silva"

        response = await client.get("/api/v1/registrations/search-by-cpf", params={"cpf": "123"})
        assert response.status_code == 400


@pytest.mark.asyncio
async def test_get_registration(api_client):
    async with api_client as client:
        event_id = await _create_event(client)
        created = (await _register(client, event_id)).json()
        response = await client.get(f"/api/v1/registrations/{created['id']}")
        assert response.status_code == 200
        assert response.json()["id"] == created["id"]
        assert (await client.get("/api/v1/registrations/64b7f0c2a1b2c3d4e5f60718")).status_code == 404
        assert (await client.get("/api/v1/registrations/xyz")).status_code == 400


@pytest.mark.asyncio
async def test_checkin_flow(api_client):
    async with api_client as client:
        event_id = await _create_event(client)
        registration_id = (await _register(client, event_id)).json()["id"]

        response = await client.post(f"/api/v1/checkin/{registration_id}")
        assert response.status_code == 400
        assert response.json()["detail"] == "Apenas inscrições confirmadas podem fazer check-in"

        response = await client.patch(f"/api/v1/registrations/{registration_id}/status", json={"status": "confirmed"})
        assert response.status_code == 200
        assert response.json()["status"] == "confirmed"

        response = await client.post(f"/api/v1/checkin/{registration_id}")
        assert response.status_code == 200
        assert response.json()["checked_in_at"] is not None

        assert (await client.post(f"/api/v1/checkin/{registration_id}")).status_code == 409

        response = await client.delete(f"/api/v1/checkin/{registration_id}")
        assert response.status_code == 200
        assert response.json()["checked_in_at"] is None
        assert (await client.delete(f"/api/v1/checkin/{registration_id}")).status_code == 400


@pytest.mark.asyncio
async def test_invalid_status_update(api_client):
    async with api_client as client:
        event_id = await _create_event(client)
        registration_id = (await _register(client, event_id)).json()["id"]
        response = await client.patch(f"/api/v1/registrations/{registration_id}/status", json={"status": "approved"})
        assert response.status_code == 400


@pytest.mark.asyncio
async def test_cancelled_registration_frees_cpf(api_client):
    async with api_client as client:
        event_id = await _create_event(client)
        registration_id = (await _register(client, event_id)).json()["id"]
        await client.patch(f"/api/v1/registrations/{registration_id}/status", json={"status": "cancelled"})
        assert (await _register(client, event_id)).status_code == 201


@pytest.mark.asyncio
async def test_stats(api_client):
    async with api_client as client:
        event_id = await _create_event(client)
        first = (await _register(client, event_id)).json()["id"]
        await _register(client, event_id, cpf=OTHER_CPF, payment_method="credit_card", installments=2)
        await client.patch(f"/api/v1/registrations/{first}/status", json={"status": "confirmed"})
        await client.post(f"/api/v1/checkin/{first}")

        response = await client.get("/api/v1/registrations/stats", params={"event_id": event_id})
        assert response.status_code == 200
        stats = response.json()
        assert stats["total"] == 2
        assert stats["by_status"] == {"confirmed": 1, "queued": 1}
        assert stats["checked_in"] == 1
        assert stats["confirmed_amount"] == 100.0


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "field, value",
    [("name", 5), ("email", ["maria@example.com"]), ("event_id", 5), ("payment_method", {"pix": True})],
)
async def test_create_registration_rejects_non_text_fields(api_client, field, value):
    async with api_client as client:
        event_id = await _create_event(client)
        response = await _register(client, event_id, **{field: value})
        assert response.status_code == 400
        assert response.json()["detail"] == f"{field} deve ser texto"


@pytest.mark.asyncio
async def test_ensure_indexes_creates_unique_partial_index(collections):
    await ensure_indexes()
    index = collections("registrations").indexes[UNIQUE_ACTIVE_CPF_INDEX]
    assert index["keys"] == [("event_id", 1), ("cpf", 1)]
    assert index["unique"] is True
    assert index["partialFilterExpression"] == {"status": {"$in": ["queued", "pending", "confirmed"]}}


@pytest.mark.asyncio
async def test_duplicate_cpf_caught_by_unique_index(api_client, collections, monkeypatch):
    await ensure_indexes()
    registrations = collections("registrations")
    original_find_one = registrations.find_one

    # as duas requisições passam pela verificação prévia antes de qualquer gravação
    async def find_one_before_insert(query):
        if "cpf" in query:
            return None
        return await original_find_one(query)

    monkeypatch.setattr(registrations, "find_one", find_one_before_insert)
    async with api_client as client:
        event_id = await _create_event(client)
        assert (await _register(client, event_id)).status_code == 201
        response = await _register(client, event_id)
        assert response.status_code == 409
        assert response.json()["detail"] == "Já existe uma inscrição para este CPF neste evento"
    assert len(registrations.docs) == 1


@pytest.mark.asyncio
async def test_reactivating_registration_with_active_duplicate(api_client, collections):
    await ensure_indexes()
    async with api_client as client:
        event_id = await _create_event(client)
        first = (await _register(client, event_id)).json()["id"]
        await client.patch(f"/api/v1/registrations/{first}/status", json={"status": "cancelled"})
        assert (await _register(client, event_id)).status_code == 201

        response = await client.patch(f"/api/v1/registrations/{first}/status", json={"status": "confirmed"})
        assert response.status_code == 409
        assert (await client.get(f"/api/v1/registrations/{first}")).json()["status"] == "cancelled"


@pytest.mark.asyncio
async def test_list_registrations(api_client):
    async with api_client as client:
        event_id = await _create_event(client)
        first = (await _register(client, event_id)).json()["id"]
        await _register(client, event_id, cpf=OTHER_CPF, name="João Souza", email="joao@example.com")
        await client.patch(f"/api/v1/registrations/{first}/status", json={"status": "confirmed"})

        body = (await client.get("/api/v1/registrations", params={"event_id": event_id})).json()
        assert body["pagination"] == {"page": 1, "limit": 10, "total": 2, "pages": 1}
        assert len(body["items"]) == 2

        page1 = (await client.get("/api/v1/registrations", params={"limit": 1})).json()
        page2 = (await client.get("/api/v1/registrations", params={"limit": 1, "page": 2})).json()
        assert page1["pagination"]["pages"] == 2
        assert len(page1["items"]) == len(page2["items"]) == 1
        assert page1["items"][0]["id"] != page2["items"][0]["id"]

        response = await client.get("/api/v1/registrations", params={"search": "JOÃO"})
        assert [r["name"] for r in response.json()["items"]] == ["João Souza"]
        response = await client.get("/api/v1/registrations", params={"search": "529.982"})
        assert [r["name"] for r in response.json()["items"]] == ["João Souza"]
        response = await client.get("/api/v1/registrations", params={"search": "maria@"})
        assert [r["name"] for r in response.json()["items"]] == ["Maria Silva"]
        response = await client.get("/api/v1/registrations", params={"status": "confirmed"})
        assert [r["id"] for r in response.json()["items"]] == [first]
        response = await client.get("/api/v1/registrations", params={"search": "(.*"})
        assert response.json()["items"] == []

        assert (await client.get("/api/v1/registrations", params={"limit": 0})).status_code == 422


async def _manual(client, event_id, **overrides):
    payload = {"name": "Ana Costa", "email": "ana@example.com", "cpf": OTHER_CPF, "event_id": event_id}
    payload.update(overrides)
    return await client.post("/api/v1/registrations/manual", json=payload)


@pytest.mark.asyncio
async def test_manual_registration(api_client, fake_redis):
    async with api_client as client:
        event_id = await _create_event(client)
        response = await _manual(client, event_id)
        assert response.status_code == 201, response.text
        data = response.json()
        assert data["status"] == "confirmed"
        assert data["cpf"] == "52998224725"
        assert data["amount"] == 100.0
        assert data["payment_method"] == "manual"
        assert data["confirmed_at"] is not None
        assert fake_redis.lists == {}

        assert (await client.post(f"/api/v1/checkin/{data['id']}")).status_code == 200
        assert (await _manual(client, event_id)).status_code == 409


@pytest.mark.asyncio
async def test_manual_registration_options(api_client):
    async with api_client as client:
        event_id = await _create_event(client)
        response = await _manual(client, event_id, status="pending", amount_paid=80, payment_type="dinheiro")
        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "pending"
        assert data["amount"] == 80.0
        assert data["payment_method"] == "dinheiro"
        assert data["confirmed_at"] is None

        assert (await _manual(client, event_id, cpf=VALID_CPF, status="queued")).status_code == 400
        assert (await _manual(client, event_id, cpf=VALID_CPF, amount_paid=-1)).status_code == 400
        assert (await _manual(client, event_id, cpf="123")).status_code == 400


@pytest.mark.asyncio
async def test_manual_registration_respects_event_rules(api_client):
    async with api_client as client:
        event_id = await _create_event(client, capacity=1)
        assert (await _manual(client, event_id)).status_code == 201
        response = await _manual(client, event_id, cpf=VALID_CPF)
        assert response.status_code == 400
        assert response.json()["detail"] == "Evento lotado"

        await _create_event(client, name="Retiro de Carnaval")
        response = await _manual(client, event_id, cpf=VALID_CPF)
        assert response.status_code == 400
        assert response.json()["detail"] == "Evento não está ativo"


@pytest.mark.asyncio
async def test_delete_registration(api_client):
    async with api_client as client:
        event_id = await _create_event(client)
        registration_id = (await _register(client, event_id)).json()["id"]
        assert (await client.delete(f"/api/v1/registrations/{registration_id}")).status_code == 204
        assert (await client.get(f"/api/v1/registrations/{registration_id}")).status_code == 404
        assert (await client.delete(f"/api/v1/registrations/{registration_id}")).status_code == 404
        assert (await _register(client, event_id)).status_code == 201


@pytest.mark.asyncio
async def test_export_confirmed_registrations(api_client):
    async with api_client as client:
        event_id = await _create_event(client, capacity=3)
        await _register(client, event_id)
        zelia = (await _manual(client, event_id, name="Zélia Prado", amount_paid=90)).json()["id"]
        await _manual(client, event_id, name="Bruno Lima", cpf="39053344705")
        await client.post(f"/api/v1/checkin/{zelia}")

        response = await client.get("/api/v1/registrations/export", params={"event_id": event_id})
        assert response.status_code == 200
        data = response.json()
        assert data["event"]["id"] == event_id
        assert [r["name"] for r in data["registrations"]] == ["Bruno Lima", "Zélia Prado"]
        assert data["stats"] == {"total": 2, "checked_in": 1, "pending": 1, "total_revenue": 190.0, "checkin_rate": 50}
        assert sum(data["checkins_by_hour"].values()) == 1
        assert data["exported_at"]

        assert (await client.get("/api/v1/registrations/export")).status_code == 400
        response = await client.get("/api/v1/registrations/export", params={"event_id": "64b7f0c2a1b2c3d4e5f60718"})
        assert response.status_code == 404


@pytest.mark.asyncio
async def test_checkin_search(api_client):
    async with api_client as client:
        event_id = await _create_event(client, capacity=3)
        await _register(client, event_id)
        ana = (await _manual(client, event_id)).json()["id"]
        await _manual(client, event_id, name="Ana Beatriz", email="bia@example.com", cpf="39053344705")
        await client.post(f"/api/v1/checkin/{ana}")

        response = await client.post("/api/v1/checkin/search", json={"query": "ana"})
        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 2
        assert [r["name"] for r in data["items"]] == ["Ana Costa", "Ana Beatriz"]

        # Maria ainda não foi confirmada
        assert (await client.post("/api/v1/checkin/search", json={"query": "maria"})).json()["total"] == 0

        response = await client.post("/api/v1/checkin/search", json={"query": "390.533", "event_id": event_id})
        assert [r["name"] for r in response.json()["items"]] == ["Ana Beatriz"]
        assert (await client.post("/api/v1/checkin/search", json={"query": "39"})).json()["total"] == 0

        assert (await client.post("/api/v1/checkin/search", json={"query": "  "})).status_code == 400
        assert (await client.post("/api/v1/checkin/search", json={})).status_code == 400
