"""Decodificador dos eventos do Bitrix24 (OnImOpenLines*) em variantes canônicas.

Aceita o formato em maiúsculas (`data[CHAT][ID]`, `data[MESSAGE][MESSAGE]`) e o
camelCase (`data.chatId`, `data.message.text`). Formatos desconhecidos falham com
UnparsablePayload.
"""
from __future__ import annotations
from typing import Any, List, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, AliasChoices, ValidationError, field_validator
from ...core.errors import UnparsablePayload


def _as_str(v: Any) -> Optional[str]:
    if v is None or v == "":
        return None
    if isinstance(v, (int, float)):
        return str(int(v))
    return str(v)


def _as_list(v: Any) -> list:
    """Form-encoded entrega listas como dict {"0": ..., "1": ...}."""
    if v is None or v == "":
        return []
    if isinstance(v, dict):
        return [v[k] for k in sorted(v, key=lambda k: int(k) if str(k).isdigit() else 0)]
    if isinstance(v, list):
        return v
    return [v]


class _Raw(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class _RawChat(_Raw):
    id: Optional[str] = Field(default=None, validation_alias=AliasChoices("ID", "id"))

    @field_validator("id", mode="before")
    @classmethod
    def norm_str(cls, v):
        return _as_str(v)


class _RawUser(_Raw):
    id: Optional[str] = Field(default=None, validation_alias=AliasChoices("ID", "id"))
    is_connector: Optional[str] = Field(default=None, validation_alias=AliasChoices("IS_CONNECTOR", "connector"))

    @field_validator("id", "is_connector", mode="before")
    @classmethod
    def norm_str(cls, v):
        return _as_str(v)


class _RawMessage(_Raw):
    id: Optional[str] = Field(default=None, validation_alias=AliasChoices("ID", "id"))
    text: Optional[str] = Field(default=None, validation_alias=AliasChoices("MESSAGE", "text", "message"))
    author_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("AUTHOR_ID", "authorId", "author_id"))
    system: Optional[str] = Field(default=None, validation_alias=AliasChoices("SYSTEM", "system"))
    files: List[Any] = Field(default_factory=list, validation_alias=AliasChoices("FILES", "files"))

    @field_validator("id", "text", "author_id", "system", mode="before")
    @classmethod
    def norm_str(cls, v):
        return _as_str(v)

    @field_validator("files", mode="before")
    @classmethod
    def norm_files(cls, v):
        return _as_list(v)


class _RawData(_Raw):
    chat: Optional[_RawChat] = Field(default=None, validation_alias=AliasChoices("CHAT", "chat"))
    chat_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("chatId", "CHAT_ID", "chat_id"))
    message: Optional[_RawMessage] = Field(default=None, validation_alias=AliasChoices("MESSAGE", "message"))
    message_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("messageId", "MESSAGE_ID"))
    user: Optional[_RawUser] = Field(default=None, validation_alias=AliasChoices("USER", "user"))
    assigned_user_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("assignedUserId", "OPERATOR_ID", "TRANSFER_ID"))
    files: List[Any] = Field(default_factory=list, validation_alias=AliasChoices("FILES", "files"))

    @field_validator("chat_id", "message_id", "assigned_user_id", mode="before")
    @classmethod
    def norm_str(cls, v):
        return _as_str(v)

    @field_validator("files", mode="before")
    @classmethod
    def norm_files(cls, v):
        return _as_list(v)


class _RawAuth(_Raw):
    domain: Optional[str] = None
    member_id: Optional[str] = None
    application_token: Optional[str] = None


class _RawCrmEvent(_Raw):
    event: str = Field(validation_alias=AliasChoices("event", "EVENT"))
    data: _RawData = Field(default_factory=_RawData, validation_alias=AliasChoices("data", "DATA"))
    auth: Optional[_RawAuth] = None


class _CrmEventBase(BaseModel):
    event: str
    chat_id: str
    domain: Optional[str] = None
    member_id: Optional[str] = None
    application_token: Optional[str] = None


class CrmMessageEvent(_CrmEventBase):
    """Mensagem nova numa Linha Aberta (resposta de agente ou eco/sistema)."""
    kind: Literal["message"] = "message"
    message_id: Optional[str] = None
    text: str = ""
    author_id: str = ""
    files: List[str] = Field(default_factory=list)
    system_flag: bool = False
    from_connector: bool = False

    @property
    def is_system(self) -> bool:
        return self.author_id in ("", "0") or self.system_flag


class CrmSessionClosedEvent(_CrmEventBase):
    kind: Literal["closed"] = "closed"


class CrmSessionTransferredEvent(_CrmEventBase):
    kind: Literal["transferred"] = "transferred"
    agent_id: Optional[str] = None


CrmEvent = Union[CrmMessageEvent, CrmSessionClosedEvent, CrmSessionTransferredEvent]


def classify_event(name: str) -> str | None:
    """Nome do evento → close|transfer|message (case-insensitive, ordem importa)."""
    n = (name or "").lower()
    if "close" in n or "finish" in n:
        return "closed"
    if "transfer" in n or "assign" in n:
        return "transferred"
    if "message" in n:
        return "message"
    return None


def _file_urls(files: list) -> List[str]:
    urls = []
    for f in files:
        if isinstance(f, str):
            urls.append(f)
        elif isinstance(f, dict):
            url = f.get("urlDownload") or f.get("link") or f.get("url") or f.get("URL")
            if url:
                urls.append(str(url))
    return urls


def decode_crm_event(payload: dict) -> CrmEvent:
    try:
        raw = _RawCrmEvent.model_validate(payload)
    except ValidationError as exc:
        raise UnparsablePayload(f"crm event: {exc.errors()[0].get('msg')}") from exc

    kind = classify_event(raw.event)
    if kind is None:
        raise UnparsablePayload(f"unknown crm event {raw.event!r}")
    d = raw.data
    chat_id = (d.chat.id if d.chat else None) or d.chat_id
    if not chat_id:
        raise UnparsablePayload(f"crm event {raw.event!r} without chat id")
    common = {
        "event": raw.event,
        "chat_id": chat_id,
        "domain": raw.auth.domain if raw.auth else None,
        "member_id": raw.auth.member_id if raw.auth else None,
        "application_token": raw.auth.application_token if raw.auth else None,
    }
    if kind == "closed":
        return CrmSessionClosedEvent(**common)
    if kind == "transferred":
        agent = d.assigned_user_id or (d.user.id if d.user else None)
        return CrmSessionTransferredEvent(agent_id=agent, **common)

    m = d.message or _RawMessage()
    from_connector = bool(d.user and (d.user.is_connector or "").upper() in ("Y", "TRUE", "1"))
    return CrmMessageEvent(
        message_id=m.id or d.message_id,
        text=(m.text or "").strip(),
        author_id=m.author_id or "",
        files=_file_urls(m.files or d.files),
        system_flag=(m.system or "").upper() == "Y",
        from_connector=from_connector,
        **common,
    )


def peek_routing(payload: dict) -> tuple[str | None, str | None]:
    """(domínio do portal, chat id) lidos do payload cru, antes da validação da assinatura."""
    auth = payload.get("auth") if isinstance(payload.get("auth"), dict) else {}
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    chat = data.get("CHAT") or data.get("chat")
    chat_id = (chat.get("ID") or chat.get("id")) if isinstance(chat, dict) else None
    chat_id = chat_id or data.get("chatId") or data.get("CHAT_ID")
    return _as_str(auth.get("domain")), _as_str(chat_id)
