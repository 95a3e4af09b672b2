import pytest
from fastapi.testclient import TestClient

from trade_mirror import api
from trade_mirror.api import MirrorController
from trade_mirror.models import MonitoredChannel
from trade_mirror.quota import InMemoryQuotaStore, QuotaLedger
from trade_mirror.settings import settings
from trade_mirror.storage import InMemoryTradeRepository


OCR_SCREEN = "Tradovate\nESZ6 Long 2 5880.25 5892.00 +$587.50\nBalance: $50,250.00\n"


@pytest.fixture
def ledger(clock):
    return QuotaLedger(InMemoryQuotaStore(), daily_limit=10_000, clock=clock)


@pytest.fixture
def controller(monkeypatch, ledger, youtube, broker, policy, clock):
    controller = MirrorController(
        repository=InMemoryTradeRepository(),
        ledger=ledger,
        youtube=youtube,
        channels=[MonitoredChannel(id="trader-a", name="Trader A", external_id="UC_a")],
        policies=[policy],
        broker=broker,
        clock=clock,
    )
    monkeypatch.setattr(api, "controller", controller)
    return controller


@pytest.fixture
def client(controller):
    return TestClient(api.app)


def test_healthz(client):
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json()["ok"] is True


def test_poll_reports_channels(client, youtube):
    youtube.feeds["UC_a"] = []
    response = client.post("/poll", json={})
    assert response.status_code == 200
    body = response.json()
    assert body["results"][0]["status"] == "NOT_LIVE"
    assert body["units_used"] == 0


def test_poll_below_safety_floor_is_429(client, ledger):
    ledger.record_usage("videos", count=9_995)
    response = client.post("/poll", json={})
    assert response.status_code == 429
    body = response.json()
    assert body["error"] == "Quota limit reached"
    assert body["remaining"] == 5
    assert "quota" in body

    forced = client.post("/poll", json={"force": True})
    assert forced.status_code == 200


def test_cron_poll_requires_secret_in_production(client, monkeypatch):
    monkeypatch.setattr(settings, "app_env", "production")
    monkeypatch.setattr(settings, "cron_secret", "s3cret")
    assert client.get("/poll").status_code == 401
    assert client.get("/poll", headers={"Authorization": "Bearer wrong"}).status_code == 401
    assert client.get("/poll", headers={"Authorization": "Bearer s3cret"}).status_code == 200


def test_analyze_ocr_opens_and_mirrors_trade(client, broker):
    response = client.post(
        "/analyze",
        json={"stream_id": "v1", "channel_id": "trader-a", "ocr_text": OCR_SCREEN, "ocr_confidence": 0.95},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["source"] == "ocr"
    assert body["positions"][0]["symbol"] == "ES"
    assert len(body["changes"]["opened"]) == 1
    assert body["stats"]["open_trades"] == 1
    [execution] = body["executions"]
    assert execution["action"] == "Buy"
    assert execution["quantity"] == 2
    assert broker.orders[0]["type"] == "Market"

    closing = client.post(
        "/analyze",
        json={"stream_id": "v1", "channel_id": "trader-a", "ocr_text": "Tradovate\nFlat", "ocr_confidence": 0.95},
    )
    body = closing.json()
    assert len(body["changes"]["closed"]) == 1
    assert body["trades"][0]["result"] != "OPEN"
    assert [item["action"] for item in body["executions"]] == ["Sell"]


def test_low_confidence_analysis_keeps_positions(client):
    client.post("/analyze", json={"stream_id": "v1", "channel_id": "trader-a", "ocr_text": OCR_SCREEN})
    response = client.post(
        "/analyze",
        json={"stream_id": "v1", "channel_id": "trader-a", "ocr_text": "blurry", "ocr_confidence": 0.2},
    )
    body = response.json()
    assert body["success"] is False
    assert body["changes"] is None
    assert body["executions"] == []
    assert len(body["positions"]) == 1


def test_analyze_without_any_source_is_400(client):
    response = client.post("/analyze", json={"stream_id": "v1", "channel_id": "trader-a", "use_vision": False})
    assert response.status_code == 400


def test_analysis_lookup(client):
    assert client.get("/analyze", params={"stream_id": "nope"}).status_code == 404
    client.post("/analyze", json={"stream_id": "v1", "channel_id": "trader-a", "ocr_text": OCR_SCREEN})
    body = client.get("/analyze", params={"channel_id": "trader-a"}).json()
    assert [stream["stream_id"] for stream in body["streams"]] == ["v1"]


def test_verbal_signals(client, controller):
    response = client.post(
        "/signals/verbal",
        json={
            "stream_id": "v1",
            "channel_id": "trader-a",
            "segments": [{"text": "Going long ES at 5880", "confidence": 0.8}],
            "messages": [{"text": "Stop at 5870", "is_owner": True}],
        },
    )
    assert response.status_code == 200
    kinds = [signal["kind"] for signal in response.json()["signals"]]
    assert kinds == ["ENTRY", "STOP"]
    assert len(controller.correlator.stream_state("v1").pending) == 2


def test_verbal_requires_content(client):
    assert client.post("/signals/verbal", json={"stream_id": "v1"}).status_code == 400


def test_verbal_rejects_bad_audio(client):
    response = client.post("/signals/verbal", json={"stream_id": "v1", "audio_base64": "not base64!"})
    assert response.status_code == 400


def test_quota_and_bots(client):
    quota = client.get("/quota").json()
    assert quota["quota"]["used"] == 0
    assert quota["recommendation"]["poll_interval_minutes"] >= 1

    bot = client.get("/bots/bot-1").json()
    assert bot["status"]["bot_id"] == "bot-1"
    assert bot["policy"]["trader_settings"][0]["allocation_weight"] == 100.0
    assert client.get("/bots/missing").status_code == 404


def test_trades_endpoint(client):
    client.post("/analyze", json={"stream_id": "v1", "channel_id": "trader-a", "ocr_text": OCR_SCREEN})
    body = client.get("/trades", params={"channel_id": "trader-a"}).json()
    assert len(body["trades"]) == 1
    assert body["stats"]["total_trades"] == 0
