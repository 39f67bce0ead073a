import pytest
from evowhats_relay.core.errors import UnparsablePayload
from evowhats_relay.core.payloads import decode_body
from evowhats_relay.connectors.crm.events import (
    CrmMessageEvent, CrmSessionClosedEvent, CrmSessionTransferredEvent,
    classify_event, decode_crm_event, peek_routing,
)


def test_form_encoded_agent_message():
    raw = (b"event=ONIMOPENLINESMESSAGEADD"
           b"&data[CHAT][ID]=555&data[MESSAGE][ID]=701&data[MESSAGE][MESSAGE]=Bom+dia"
           b"&data[MESSAGE][AUTHOR_ID]=12"
           b"&data[MESSAGE][FILES][0][urlDownload]=https%3A%2F%2Facme%2Ff.pdf"
           b"&auth[domain]=acme.bitrix24.com&auth[member_id]=m-acme")
    ev = decode_crm_event(decode_body(raw, "application/x-www-form-urlencoded"))
    assert isinstance(ev, CrmMessageEvent)
    assert (ev.chat_id, ev.message_id, ev.text, ev.author_id) == ("555", "701", "Bom dia", "12")
    assert ev.files == ["https://acme/f.pdf"]
    assert ev.domain == "acme.bitrix24.com"
    assert not ev.is_system and not ev.from_connector


def test_camel_case_message():
    ev = decode_crm_event({"event": "OnImOpenLinesMessageAdd",
                           "data": {"chatId": 555, "message": {"id": 702, "text": " oi ", "authorId": 3}}})
    assert (ev.chat_id, ev.message_id, ev.text, ev.author_id) == ("555", "702", "oi", "3")


def test_system_and_connector_authors_are_flagged():
    system = decode_crm_event({"event": "OnImOpenLinesMessageAdd",
                               "data": {"CHAT": {"ID": 1}, "MESSAGE": {"ID": 1, "MESSAGE": "x", "AUTHOR_ID": 0}}})
    flagged = decode_crm_event({"event": "OnImOpenLinesMessageAdd",
                                "data": {"CHAT": {"ID": 1}, "MESSAGE": {"ID": 2, "MESSAGE": "x", "AUTHOR_ID": 5,
                                                                        "SYSTEM": "Y"}}})
    echo = decode_crm_event({"event": "OnImOpenLinesMessageAdd",
                             "data": {"CHAT": {"ID": 1}, "MESSAGE": {"ID": 3, "MESSAGE": "x", "AUTHOR_ID": 5},
                                      "USER": {"ID": 5, "IS_CONNECTOR": "Y"}}})
    assert system.is_system
    assert flagged.is_system
    assert echo.from_connector and not echo.is_system


def test_session_close_and_transfer():
    closed = decode_crm_event({"event": "OnImOpenLinesSessionFinish", "data": {"CHAT": {"ID": 9}}})
    moved = decode_crm_event({"event": "OnImOpenLinesSessionTransfer",
                              "data": {"CHAT": {"ID": 9}, "TRANSFER_ID": 44}})
    assert isinstance(closed, CrmSessionClosedEvent) and closed.chat_id == "9"
    assert isinstance(moved, CrmSessionTransferredEvent) and moved.agent_id == "44"


@pytest.mark.parametrize("payload", [
    {"data": {"CHAT": {"ID": 1}}},
    {"event": "OnCrmLeadAdd", "data": {"CHAT": {"ID": 1}}},
    {"event": "OnImOpenLinesMessageAdd", "data": {"MESSAGE": {"ID": 1}}},
])
def test_unknown_or_incomplete_events_fail_closed(payload):
    with pytest.raises(UnparsablePayload):
        decode_crm_event(payload)


def test_classify_event_order():
    assert classify_event("OnImOpenLinesSessionClose") == "closed"
    assert classify_event("OnImOpenLinesOperatorAssign") == "transferred"
    assert classify_event("OnImOpenLinesMessageSend") == "message"
    assert classify_event("OnUserAdd") is None


def test_peek_routing_reads_raw_payload():
    assert peek_routing({"auth": {"domain": "acme.bitrix24.com"}, "data": {"CHAT": {"ID": "5"}}}) == (
        "acme.bitrix24.com", "5")
    assert peek_routing({"data": {"chatId": 7}}) == (None, "7")
    assert peek_routing({}) == (None, None)
