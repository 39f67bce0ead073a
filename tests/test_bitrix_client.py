import json
import httpx
import pytest
from evowhats_relay.core.errors import RemoteApiError, TransportError
from evowhats_relay.connectors.crm.bitrix_client import DEFAULT_EVENTS
from evowhats_relay.ports.interfaces import CrmInboundMessageDTO


def calls_by_method(wiring):
    return [c.url.path.rsplit("/", 1)[-1].removesuffix(".json") for c in wiring.crm_http.calls]


def test_connector_administration_calls(wiring, seeded):
    cred = seeded.credential
    wiring.crm.register_connector(cred, icon_base64="PHN2Zz4=", placement_handler="https://relay.test/placement")
    wiring.crm.activate_line(cred, "7")
    wiring.crm.publish_connector_data(cred, "7", {"id": "evo_line_7", "name": "WhatsApp Acme"})
    wiring.crm.deactivate_line(cred, "7")
    assert calls_by_method(wiring) == [
        "imconnector.register", "imconnector.activate", "imconnector.connector.data.set", "imconnector.deactivate",
    ]
    register = json.loads(wiring.crm_http.calls[0].content)
    assert register["ID"] == "evolution_whatsapp"
    assert register["ICON"] == {"DATA_IMAGE": "PHN2Zz4="}
    assert json.loads(wiring.crm_http.calls[1].content) == {"CONNECTOR": "evolution_whatsapp", "LINE": "7", "ACTIVE": 1}
    assert all(c.url.host == "acme.bitrix24.com" for c in wiring.crm_http.calls)


def test_list_and_create_lines(wiring, seeded):
    assert wiring.crm.list_lines(seeded.credential) == [{"ID": "7", "LINE_NAME": "WhatsApp"}]
    wiring.crm_http.responder = lambda r: httpx.Response(200, json={"result": 15})
    assert wiring.crm.create_line(seeded.credential, "WhatsApp Vendas") == "15"
    body = json.loads(wiring.crm_http.calls[-1].content)
    assert body["PARAMS"]["LINE_NAME"] == "WhatsApp Vendas"


def test_bind_events_unbinds_then_binds_each_event(wiring, seeded):
    def handler(request):
        method = request.url.path.rsplit("/", 1)[-1]
        if method == "event.unbind.json":
            return httpx.Response(400, json={"error": "ERROR_EVENT_NOT_FOUND", "error_description": "not bound"})
        return httpx.Response(200, json={"result": True})

    wiring.crm_http.responder = handler
    results = wiring.crm.bind_events(seeded.credential, "https://relay.test/webhooks/crm")
    assert results == {ev: "ok" for ev in DEFAULT_EVENTS}
    methods = calls_by_method(wiring)
    assert methods[:2] == ["event.unbind", "event.bind"]
    assert methods.count("event.bind") == len(DEFAULT_EVENTS)
    assert json.loads(wiring.crm_http.calls[1].content) == {
        "event": DEFAULT_EVENTS[0], "handler": "https://relay.test/webhooks/crm"}


def test_unbind_events_reports_per_event(wiring, seeded):
    results = wiring.crm.unbind_events(seeded.credential, "https://relay.test/webhooks/crm", events=["OnImMessageAdd"])
    assert results == {"OnImMessageAdd": "ok"}


def test_structured_error_is_not_transient(wiring, seeded):
    wiring.crm_http.responder = lambda r: httpx.Response(400, json={"error": "CONNECTOR_NOT_FOUND",
                                                                    "error_description": "no connector"})
    with pytest.raises(RemoteApiError) as err:
        wiring.crm.activate_line(seeded.credential, "7")
    assert err.value.code == "CONNECTOR_NOT_FOUND" and not err.value.transient


def test_rate_limit_is_transient(wiring, seeded):
    wiring.crm_http.responder = lambda r: httpx.Response(200, json={"error": "QUERY_LIMIT_EXCEEDED"})
    with pytest.raises(RemoteApiError) as err:
        wiring.crm.list_lines(seeded.credential)
    assert err.value.transient


def test_network_failure(wiring, seeded):
    def down(request):
        raise httpx.ReadTimeout("slow", request=request)

    wiring.crm_http.responder = down
    with pytest.raises(TransportError):
        wiring.crm.list_lines(seeded.credential)


def test_send_rejected_by_connector(wiring, seeded):
    wiring.crm_http.responder = lambda r: httpx.Response(200, json={"result": {"SUCCESS": False,
                                                                               "ERRORS": ["line inactive"]}})
    with pytest.raises(RemoteApiError) as err:
        wiring.crm.send_message(seeded.credential, CrmInboundMessageDTO(line_id="7", user_id="+55119", text="x"))
    assert err.value.code == "SEND_REJECTED"
