"""Notification dispatcher tests."""

import json

import httpx
import pytest

from clinicflow.notifications import InMemoryNotificationDispatcher, render_form_message
from clinicflow.notifications.webhook import WebhookNotificationDispatcher


def test_fallback_form_message():
    message = render_form_message(
        {"patient_name": "Maria", "form_name": "Anamnese", "form_url": "https://app/"}
    )
    assert message.startswith("📋 *Anamnese*")
    assert "Olá Maria! Você tem um formulário para preencher." in message
    assert "🔗 Acesse o app: https://app/" in message
    assert message.endswith("_Responda assim que possível._")


def test_fallback_without_name_or_form():
    message = render_form_message({})
    assert "*Formulário*" in message
    assert "Olá! Você" in message
    assert "https://fitclub.app.br" in message


def test_custom_template_keeps_unknown_placeholders():
    message = render_form_message(
        {"patient_name": "João", "form_name": "Retorno"},
        template="{patient_name}, preencha {form_name} até {prazo}",
    )
    assert message == "João, preencha Retorno até {prazo}"


@pytest.mark.asyncio
async def test_inmemory_dispatcher_records_notifications():
    dispatcher = InMemoryNotificationDispatcher(patient_names={"p1": "Ana"})
    result = await dispatcher.notify("p1", "Anamnese", "exec-1")
    assert result.success
    assert result.patient_name == "Ana"
    assert dispatcher.sent[0].execution_id == "exec-1"
    assert "Olá Ana!" in dispatcher.sent[0].message


def _dispatcher(handler) -> WebhookNotificationDispatcher:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return WebhookNotificationDispatcher(
        "https://hooks.example.com/notify", token="secret", client=client
    )


@pytest.mark.asyncio
async def test_webhook_posts_payload_and_reads_result():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["body"] = json.loads(request.content)
        captured["auth"] = request.headers.get("Authorization")
        return httpx.Response(200, json={"success": True, "patientName": "Maria"})

    dispatcher = _dispatcher(handler)
    result = await dispatcher.notify("p1", "Anamnese", "exec-1")
    await dispatcher.disconnect()

    assert result.success
    assert result.patient_name == "Maria"
    assert result.form_name == "Anamnese"
    assert captured["auth"] == "Bearer secret"
    assert captured["body"]["patientId"] == "p1"
    assert captured["body"]["formName"] == "Anamnese"
    assert captured["body"]["executionId"] == "exec-1"
    assert "Anamnese" in captured["body"]["message"]


@pytest.mark.asyncio
async def test_webhook_error_status_is_reported_not_raised():
    dispatcher = _dispatcher(lambda request: httpx.Response(503, text="unavailable"))
    result = await dispatcher.notify("p1", "Anamnese", "exec-1")
    assert not result.success
    assert result.error == "HTTP 503"


@pytest.mark.asyncio
async def test_webhook_reported_failure_in_body():
    dispatcher = _dispatcher(
        lambda request: httpx.Response(200, json={"success": False, "error": "no phone"})
    )
    result = await dispatcher.notify("p1", "Anamnese", "exec-1")
    assert not result.success
    assert result.error == "no phone"


@pytest.mark.asyncio
async def test_webhook_transport_errors_raise():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    dispatcher = _dispatcher(handler)
    with pytest.raises(httpx.ConnectError):
        await dispatcher.notify("p1", "Anamnese", "exec-1")
