from concurrent.futures import ThreadPoolExecutor
import json
import httpx
from kink import di
from sqlalchemy import func, select
from evowhats_relay.core.signature import SignatureValidator
from evowhats_relay.domain.services.idempotency import IdempotencyGuard
from evowhats_relay.repo import repo
from evowhats_relay.repo.models import Message, RelayEvent, WebhookLog, CONNECTED, DISCONNECTED, PENDING_QR


def body(payload):
    return json.dumps(payload).encode()


def rows(model, *where):
    with di["session_factory"]() as s:
        return list(s.execute(select(model).where(*where)).scalars().all())


def test_scenario_inbound_message_is_persisted_and_forwarded(wiring, seeded):
    payload = {"instance": "evo_line_7", "from": "5511999999999", "text": "hello", "id": "wamsg-1"}
    res = wiring.inbound.handle(body(payload), "application/json", None)

    assert res.status == "processed" and res.http_status == 200
    msgs = rows(Message)
    assert len(msgs) == 1
    assert (msgs[0].direction, msgs[0].content, msgs[0].delivery_status) == ("in", "hello", "sent")
    assert msgs[0].crm_message_id == "9001"

    sends = [c for c in wiring.crm_http.calls if c.url.path.endswith("imconnector.send.messages.json")]
    assert len(sends) == 1
    sent = json.loads(sends[0].content)
    assert sent["LINE"] == "7"
    assert sent["MESSAGES"][0]["message"]["text"] == "hello"
    assert sent["MESSAGES"][0]["user"]["phone"] == "+5511999999999"
    assert repo.get_conversation(res.conversation_id).crm_chat_id == "555"


def test_scenario_replay_creates_nothing_new(wiring, seeded):
    payload = {"instance": "evo_line_7", "from": "5511999999999", "text": "hello", "id": "wamsg-1"}
    wiring.inbound.handle(body(payload), "application/json", None)
    calls_before = len(wiring.crm_http.calls)

    res = wiring.inbound.handle(body(payload), "application/json", None)
    assert res.status == "duplicate" and res.http_status == 200
    assert len(rows(Message)) == 1
    assert len(wiring.crm_http.calls) == calls_before


def test_n_deliveries_yield_one_row(wiring, seeded, wa_upsert):
    for _ in range(5):
        wiring.inbound.handle(body(wa_upsert(msg_id="3EB0C767D26A")), "application/json", None)
    assert len(rows(Message, Message.wa_message_id == "3EB0C767D26A")) == 1
    assert wiring.crm_http.count("imconnector.send.messages") == 1


def test_messages_from_same_contact_share_open_conversation(wiring, seeded, wa_upsert):
    a = wiring.inbound.handle(body(wa_upsert(msg_id="A1")), "application/json", None)
    b = wiring.inbound.handle(body(wa_upsert(msg_id="A2", text="mais uma")), "application/json", None)
    assert a.conversation_id == b.conversation_id


def test_unknown_instance_is_acknowledged_and_dropped(wiring, seeded, wa_upsert):
    res = wiring.inbound.handle(body(wa_upsert(instance="evo_line_404")), "application/json", None)
    assert res.status == "not_found" and res.http_status == 200
    assert rows(Message) == []
    assert rows(WebhookLog)[0].verdict == "not_found"


def test_invalid_signature_is_rejected_and_logged(wiring, seeded, wa_upsert):
    repo.update_instance(seeded.instance.id, webhook_secret="inst-secret")
    raw = body(wa_upsert())
    res = wiring.inbound.handle(raw, "application/json", "sha256=" + "0" * 64)
    assert res.http_status == 403
    assert rows(Message) == []
    log_row = rows(WebhookLog)[0]
    assert (log_row.verdict, log_row.valid_signature) == ("invalid_signature", False)

    ok = wiring.inbound.handle(raw, "application/json", SignatureValidator().sign(raw, "inst-secret"))
    assert ok.status == "processed"


def test_unparsable_body_is_400(wiring, seeded):
    assert wiring.inbound.handle(b"{oops", "application/json", None).http_status == 400
    assert wiring.inbound.handle(body({"event": "messages.upsert"}), "application/json", None).http_status == 400


def test_unknown_event_after_authentication_is_acknowledged(wiring, seeded):
    res = wiring.inbound.handle(body({"event": "brand.new", "instance": "evo_line_7", "data": {}}),
                                "application/json", None)
    assert res.status == "ignored" and res.http_status == 200
    assert rows(WebhookLog)[0].verdict == "unparsable"


def test_own_echo_is_ignored(wiring, seeded, wa_upsert):
    res = wiring.inbound.handle(body(wa_upsert(from_me=True)), "application/json", None)
    assert res.status == "ignored"
    assert rows(Message) == []


def test_unbound_instance_stores_without_forwarding(wiring, seeded, wa_upsert):
    wiring.bindings.unbind_instance(seeded.instance.id)
    res = wiring.inbound.handle(body(wa_upsert()), "application/json", None)
    assert res.status == "stored_not_forwarded"
    assert rows(Message)[0].delivery_status == "not_forwarded"
    assert wiring.crm_http.calls == []


def test_forward_failure_marks_failed_but_acknowledges(wiring, seeded, wa_upsert):
    wiring.crm_http.responder = lambda r: httpx.Response(503, json={"error": "INTERNAL_SERVER_ERROR"})
    res = wiring.inbound.handle(body(wa_upsert()), "application/json", None)
    assert res.status == "forward_failed" and res.http_status == 200
    msg = rows(Message)[0]
    assert (msg.delivery_status, msg.attempts) == ("failed", 1)
    assert wiring.crm_http.count("imconnector.send.messages") == 3
    assert [e.kind for e in rows(RelayEvent, RelayEvent.kind == "relay_failed")] == ["relay_failed"]


def test_missing_credential_marks_failed(wiring, seeded, wa_upsert):
    wiring.store.deactivate("t1")
    res = wiring.inbound.handle(body(wa_upsert()), "application/json", None)
    assert res.status == "forward_failed"
    assert "credential" in rows(Message)[0].last_error


def test_connection_events_feed_the_state_machine(wiring, seeded):
    res = wiring.inbound.handle(body({"event": "connection.update", "instance": "evo_line_7",
                                      "data": {"state": "close", "statusReason": 401}}), "application/json", None)
    assert res.status == "state_updated" and res.detail == DISCONNECTED
    assert repo.get_instance(seeded.instance.id).status == DISCONNECTED


def test_scenario_fresh_session_connects_and_clears_qr(wiring, qr_b64):
    repo.upsert_tenant("t2")
    inst = repo.create_instance("t2", "evo_line_9")
    assert inst.status == PENDING_QR
    wiring.inbound.handle(body({"event": "qrcode.updated", "instance": "evo_line_9",
                                "data": {"qrcode": {"base64": qr_b64}}}), "application/json", None)
    assert repo.get_instance(inst.id).qr_payload == qr_b64

    wiring.inbound.handle(body({"event": "connection.update", "instance": "evo_line_9",
                                "data": {"state": "open"}}), "application/json", None)
    inst = repo.get_instance(inst.id)
    assert inst.status == CONNECTED and inst.qr_payload is None


def test_every_payload_is_logged(wiring, seeded, wa_upsert):
    wiring.inbound.handle(body(wa_upsert(msg_id="L1")), "application/json", None)
    wiring.inbound.handle(body(wa_upsert(msg_id="L1")), "application/json", None)
    with di["session_factory"]() as s:
        assert s.execute(select(func.count()).select_from(WebhookLog)).scalar() == 2


def test_non_ascii_signature_header_is_403(wiring, seeded, wa_upsert):
    repo.update_instance(seeded.instance.id, webhook_secret="inst-secret")
    res = wiring.inbound.handle(body(wa_upsert()), "application/json", "sha256=ésha256=é")
    assert (res.status, res.http_status) == ("invalid_signature", 403)
    assert rows(Message) == []


class _AlwaysNewGuard(IdempotencyGuard):
    """Simula duas entregas que passaram pela checagem prévia ao mesmo tempo."""

    def should_process(self, external_id, source="wa"):
        return True


def test_unique_index_catches_delivery_that_passed_the_guard(wiring, seeded, wa_upsert):
    wiring.inbound.guard = _AlwaysNewGuard()
    raw = body(wa_upsert(msg_id="RACE-1"))
    first = wiring.inbound.handle(raw, "application/json", None)
    second = wiring.inbound.handle(raw, "application/json", None)
    assert (first.status, second.status) == ("processed", "duplicate")
    assert len(rows(Message, Message.wa_message_id == "RACE-1")) == 1
    assert wiring.crm_http.count("imconnector.send.messages") == 1


def test_concurrent_deliveries_insert_and_forward_once(wiring, seeded, wa_upsert):
    raw = body(wa_upsert(msg_id="RACE-2"))
    with ThreadPoolExecutor(max_workers=4) as pool:
        results = list(pool.map(lambda _: wiring.inbound.handle(raw, "application/json", None), range(4)))
    assert sorted(r.status for r in results) == ["duplicate"] * 3 + ["processed"]
    assert all(r.http_status == 200 for r in results)
    assert len(rows(Message, Message.wa_message_id == "RACE-2")) == 1
    assert wiring.crm_http.count("imconnector.send.messages") == 1
