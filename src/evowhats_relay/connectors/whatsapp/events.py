"""Decodificador dos webhooks da Evolution API em variantes canônicas."""
from __future__ import annotations
from typing import Any, Dict, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, AliasChoices, ValidationError
from ...core.errors import UnparsablePayload
from ...core.guardrails import jid_to_phone, normalize_phone, sanitize_text

# Eventos conhecidos que não interessam ao relay.
IGNORED_EVENTS = {
    "messages.update", "messages.delete", "messages.set", "send.message", "presence.update",
    "contacts.upsert", "contacts.update", "contacts.set", "chats.upsert", "chats.update", "chats.set",
    "chats.delete", "groups.upsert", "groups.update", "group.participants.update", "application.startup",
    "call", "labels.edit", "labels.association", "logout.instance", "remove.instance",
}


class _Raw(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class _RawKey(_Raw):
    remote_jid: Optional[str] = Field(default=None, validation_alias=AliasChoices("remoteJid", "remote_jid"))
    from_me: bool = Field(default=False, validation_alias=AliasChoices("fromMe", "from_me"))
    id: Optional[str] = None


class _RawMedia(_Raw):
    url: Optional[str] = None
    caption: Optional[str] = None
    mimetype: Optional[str] = None
    file_name: Optional[str] = Field(default=None, validation_alias=AliasChoices("fileName", "file_name"))


class _RawExtended(_Raw):
    text: Optional[str] = None


class _RawWaMessage(_Raw):
    conversation: Optional[str] = None
    extended: Optional[_RawExtended] = Field(default=None, validation_alias=AliasChoices("extendedTextMessage"))
    image: Optional[_RawMedia] = Field(default=None, validation_alias=AliasChoices("imageMessage"))
    video: Optional[_RawMedia] = Field(default=None, validation_alias=AliasChoices("videoMessage"))
    audio: Optional[_RawMedia] = Field(default=None, validation_alias=AliasChoices("audioMessage"))
    document: Optional[_RawMedia] = Field(default=None, validation_alias=AliasChoices("documentMessage"))
    sticker: Optional[_RawMedia] = Field(default=None, validation_alias=AliasChoices("stickerMessage"))


class _RawUpsert(_Raw):
    key: _RawKey
    push_name: Optional[str] = Field(default=None, validation_alias=AliasChoices("pushName", "push_name"))
    message: Optional[_RawWaMessage] = None


class _RawFlat(_Raw):
    """Formato simplificado: {instance, from, text, id}."""
    sender: str = Field(validation_alias=AliasChoices("from", "sender", "phone"))
    text: Optional[str] = Field(default=None, validation_alias=AliasChoices("text", "body", "message"))
    id: Optional[str] = Field(default=None, validation_alias=AliasChoices("id", "messageId", "message_id"))
    push_name: Optional[str] = Field(default=None, validation_alias=AliasChoices("pushName", "name"))
    media_url: Optional[str] = Field(default=None, validation_alias=AliasChoices("mediaUrl", "media_url"))
    from_me: bool = Field(default=False, validation_alias=AliasChoices("fromMe", "from_me"))


class _WaEventBase(BaseModel):
    instance: str
    event: str


class WaMessageEvent(_WaEventBase):
    kind: Literal["message"] = "message"
    message_id: Optional[str] = None
    phone: str
    push_name: Optional[str] = None
    text: str = ""
    media_url: Optional[str] = None
    media_type: Optional[str] = None


class WaConnectionEvent(_WaEventBase):
    kind: Literal["connection"] = "connection"
    state: str


class WaQrEvent(_WaEventBase):
    kind: Literal["qr"] = "qr"
    qr_base64: Optional[str] = None


class WaIgnoredEvent(_WaEventBase):
    kind: Literal["ignored"] = "ignored"
    reason: str


WaEvent = Union[WaMessageEvent, WaConnectionEvent, WaQrEvent, WaIgnoredEvent]


def normalize_event_name(name: Any) -> str:
    """`MESSAGES_UPSERT` → `messages.upsert`."""
    return str(name or "").strip().lower().replace("_", ".")


def extract_instance_label(payload: Dict[str, Any]) -> str | None:
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    label = payload.get("instance") or payload.get("instanceName") or data.get("instance") or data.get("instanceName")
    if isinstance(label, dict):
        label = label.get("instanceName") or label.get("name")
    return str(label) if label else None


def normalize_qr(body: Any) -> str | None:
    """Extrai o QR em base64 (sem prefixo `data:`) de respostas/eventos da Evolution."""
    if isinstance(body, str):
        candidate = body
    elif isinstance(body, dict):
        candidate = None
        paths = (("base64",), ("qr_base64",), ("qr",), ("qrcode",), ("qrCode",), ("image", "base64"),
                 ("data", "qr", "base64"), ("qrcode", "base64"), ("data", "base64"))
        for path in paths:
            node: Any = body
            for k in path:
                node = node.get(k) if isinstance(node, dict) else None
            if isinstance(node, str) and node:
                candidate = node
                break
        if candidate is None:
            return None
    else:
        return None
    if candidate.startswith("data:") and "," in candidate:
        candidate = candidate.split(",", 1)[1]
    return candidate if len(candidate) > 50 else None


def _first_record(data: Any) -> Any:
    if isinstance(data, list):
        return data[0] if data else None
    if isinstance(data, dict) and isinstance(data.get("messages"), list):
        return data["messages"][0] if data["messages"] else None
    return data


def _decode_upsert(instance: str, event: str, data: Any) -> WaEvent:
    record = _first_record(data)
    if not isinstance(record, dict):
        raise UnparsablePayload("messages.upsert without message record")
    try:
        raw = _RawUpsert.model_validate(record)
    except ValidationError as exc:
        raise UnparsablePayload(f"messages.upsert: {exc.errors()[0].get('msg')}") from exc
    if raw.key.from_me:
        return WaIgnoredEvent(instance=instance, event=event, reason="from_me")
    if (raw.key.remote_jid or "").endswith(("@g.us", "@broadcast")):
        return WaIgnoredEvent(instance=instance, event=event, reason="group")
    phone = jid_to_phone(raw.key.remote_jid)
    if not phone:
        raise UnparsablePayload(f"invalid sender jid {raw.key.remote_jid!r}")

    msg = raw.message or _RawWaMessage()
    text = msg.conversation or (msg.extended.text if msg.extended else None)
    media_url = media_type = None
    for kind in ("image", "video", "audio", "document", "sticker"):
        media: _RawMedia | None = getattr(msg, kind)
        if media is not None:
            media_type = kind
            media_url = media.url
            text = text or media.caption or media.file_name
            break
    if not text and not media_url:
        raise UnparsablePayload("message without text or media")
    return WaMessageEvent(
        instance=instance,
        event=event,
        message_id=raw.key.id,
        phone=phone,
        push_name=raw.push_name,
        text=sanitize_text(text or ""),
        media_url=media_url,
        media_type=media_type,
    )


def _decode_flat(instance: str, payload: Dict[str, Any]) -> WaEvent:
    try:
        raw = _RawFlat.model_validate(payload)
    except ValidationError as exc:
        raise UnparsablePayload(f"flat message: {exc.errors()[0].get('msg')}") from exc
    if raw.from_me:
        return WaIgnoredEvent(instance=instance, event="messages.upsert", reason="from_me")
    phone = jid_to_phone(raw.sender) if "@" in raw.sender else normalize_phone(raw.sender)
    if not phone:
        raise UnparsablePayload(f"invalid sender {raw.sender!r}")
    if not raw.text and not raw.media_url:
        raise UnparsablePayload("message without text or media")
    return WaMessageEvent(
        instance=instance,
        event="messages.upsert",
        message_id=raw.id,
        phone=phone,
        push_name=raw.push_name,
        text=sanitize_text(raw.text or ""),
        media_url=raw.media_url,
    )


def decode_wa_event(payload: Dict[str, Any]) -> WaEvent:
    """Payload da Evolution → variante canônica. Formatos desconhecidos levantam UnparsablePayload."""
    instance = extract_instance_label(payload)
    if not instance:
        raise UnparsablePayload("missing instance label")
    event = normalize_event_name(payload.get("event") or payload.get("type"))
    data = payload.get("data")

    if not event:
        if "from" in payload or "sender" in payload:
            return _decode_flat(instance, payload)
        raise UnparsablePayload("missing event type")
    if event == "messages.upsert":
        return _decode_upsert(instance, event, data)
    if event == "connection.update":
        state = (data.get("state") or data.get("status")) if isinstance(data, dict) else None
        if not state:
            raise UnparsablePayload("connection.update without state")
        return WaConnectionEvent(instance=instance, event=event, state=str(state))
    if event == "qrcode.updated":
        qr_source = data.get("qrcode", data) if isinstance(data, dict) else data
        return WaQrEvent(instance=instance, event=event, qr_base64=normalize_qr(qr_source))
    if event in IGNORED_EVENTS:
        return WaIgnoredEvent(instance=instance, event=event, reason="event")
    raise UnparsablePayload(f"unknown evolution event {event!r}")
