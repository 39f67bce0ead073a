import json
import httpx
import pytest
from evowhats_relay.repo import repo
from evowhats_relay.tasks.redelivery import redeliver_once


@pytest.fixture
def sweep_settings(settings):
    return settings.model_copy(update={"redelivery_max_attempts": 2, "redelivery_batch_size": 10})


def failed_inbound(wiring, wa_upsert, msg_id):
    """Mensagem de entrada que falhou no encaminhamento. Devolve (id, responder original do CRM)."""
    default = wiring.crm_http.responder
    wiring.crm_http.responder = lambda r: httpx.Response(503, json={"error": "QUERY_LIMIT_EXCEEDED"})
    res = wiring.inbound.handle(json.dumps(wa_upsert(msg_id=msg_id)).encode(), "application/json", None)
    assert res.status == "forward_failed"
    return res.message_id, default


def test_sweep_redelivers_failed_inbound_messages(wiring, seeded, wa_upsert, sweep_settings):
    mid, default = failed_inbound(wiring, wa_upsert, "R1")
    wiring.crm_http.responder = default
    assert redeliver_once(wiring.inbound, sweep_settings) == 1
    msg = repo.get_message(mid)
    assert (msg.delivery_status, msg.attempts) == ("sent", 2)
    assert redeliver_once(wiring.inbound, sweep_settings) == 0


def test_sweep_gives_up_after_attempt_budget(wiring, seeded, wa_upsert, sweep_settings):
    mid, _ = failed_inbound(wiring, wa_upsert, "R2")
    assert redeliver_once(wiring.inbound, sweep_settings) == 0
    msg = repo.get_message(mid)
    assert (msg.delivery_status, msg.attempts) == ("failed", 2)
    calls = len(wiring.crm_http.calls)
    assert redeliver_once(wiring.inbound, sweep_settings) == 0
    assert len(wiring.crm_http.calls) == calls


def test_sweep_skips_not_forwarded_and_outbound(wiring, seeded, wa_upsert, sweep_settings):
    wiring.bindings.unbind_instance(seeded.instance.id)
    wiring.inbound.handle(json.dumps(wa_upsert(msg_id="R3")).encode(), "application/json", None)
    assert redeliver_once(wiring.inbound, sweep_settings) == 0
    assert wiring.crm_http.calls == []
