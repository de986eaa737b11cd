from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from financy import main


def test_health_check():
    response = TestClient(main.app).get("/")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_webhook_rejects_wrong_secret(monkeypatch, settings):
    monkeypatch.setattr(main, "settings", settings.model_copy(update={"telegram_webhook_secret": "s3cret"}))

    response = TestClient(main.app).post(
        main.WEBHOOK_PATH,
        json={"update_id": 1},
        headers={"X-Telegram-Bot-Api-Secret-Token": "wrong"},
    )

    assert response.status_code == 403


def test_webhook_unavailable_until_bot_started(monkeypatch, settings):
    monkeypatch.setattr(main, "settings", settings.model_copy(update={"telegram_webhook_secret": "s3cret"}))
    monkeypatch.setattr(main.app.state, "telegram", None)

    response = TestClient(main.app).post(
        main.WEBHOOK_PATH,
        json={"update_id": 1},
        headers={"X-Telegram-Bot-Api-Secret-Token": "s3cret"},
    )

    assert response.status_code == 503


@pytest.mark.anyio
async def test_shutdown_closes_pipeline_clients(monkeypatch):
    orchestrator = MagicMock(aclose=AsyncMock())
    application = MagicMock(stop=AsyncMock(), shutdown=AsyncMock(), bot_data={"orchestrator": orchestrator})
    monkeypatch.setattr(main.app.state, "telegram", application)

    await main.on_shutdown()

    application.stop.assert_awaited_once()
    application.shutdown.assert_awaited_once()
    orchestrator.aclose.assert_awaited_once()
    assert main.app.state.telegram is None
