"""Repositório: tenants, instâncias, contatos, conversas, mensagens e auditoria.

Unicidade (contato por telefone, conversa aberta, id externo de mensagem) é garantida
por índices únicos: insere primeiro e, em conflito, relê o registro vencedor.
"""
from __future__ import annotations
import time
import uuid
from datetime import timedelta
from typing import Any, Dict, List
from sqlalchemy import select, update, or_
from sqlalchemy.exc import IntegrityError
from kink import di
from ..core.db import utcnow
from ..core.errors import DuplicateMessage
from ..core.logging import get_logger, trace_id_ctx
from ..repo.models import (
    Tenant, OAuthState, Instance, Contact, Conversation, Message, WebhookLog, RelayEvent,
    PENDING_QR, FAILED, PENDING,
)

log = get_logger()

# ---------- Tenants ----------
def upsert_tenant(tenant_id: str, name: str | None = None, webhook_secret: str | None = None) -> Tenant:
    """Cria o tenant se não existir; atualiza nome/segredo quando informados."""
    Session = di["session_factory"]
    with Session() as s, s.begin():
        t = s.get(Tenant, tenant_id)
        if not t:
            t = Tenant(id=tenant_id, name=name, webhook_secret=webhook_secret)
            s.add(t)
        else:
            if name is not None:
                t.name = name
            if webhook_secret is not None:
                t.webhook_secret = webhook_secret
    return t

def get_tenant(tenant_id: str) -> Tenant | None:
    Session = di["session_factory"]
    with Session() as s:
        return s.get(Tenant, tenant_id)

# ---------- OAuth state ----------
def create_oauth_state(tenant_id: str, portal: str) -> str:
    """Emite um `state` opaco (UUID) para o início do fluxo OAuth do tenant."""
    state = str(uuid.uuid4())
    Session = di["session_factory"]
    with Session() as s, s.begin():
        s.add(OAuthState(state=state, tenant_id=tenant_id, portal=portal))
    return state

def consume_oauth_state(state: str, max_age_s: int) -> OAuthState | None:
    """Marca o `state` como usado. None se desconhecido, expirado ou já consumido.

    O UPDATE condicional garante uso único mesmo com callbacks concorrentes.
    """
    now = utcnow()
    Session = di["session_factory"]
    with Session() as s, s.begin():
        result = s.execute(
            update(OAuthState)
            .where(
                OAuthState.state == state,
                OAuthState.consumed_at.is_(None),
                OAuthState.created_at >= now - timedelta(seconds=max_age_s),
            )
            .values(consumed_at=now)
        )
        if result.rowcount == 0:
            return None
        return s.get(OAuthState, state)

# ---------- Instances ----------
def get_instance(instance_id: int) -> Instance | None:
    Session = di["session_factory"]
    with Session() as s:
        return s.get(Instance, instance_id)

def find_instance_by_label(label: str) -> Instance | None:
    """Resolve a instância pelo nome informado pela Evolution (`instance`)."""
    Session = di["session_factory"]
    with Session() as s:
        return s.execute(select(Instance).where(Instance.label == label)).scalar_one_or_none()

def create_instance(tenant_id: str, label: str, webhook_secret: str | None = None) -> Instance:
    """Cria a instância em PENDING_QR; se o rótulo já existe, devolve a existente."""
    existing = find_instance_by_label(label)
    if existing:
        return existing
    Session = di["session_factory"]
    try:
        with Session() as s, s.begin():
            inst = Instance(tenant_id=tenant_id, label=label, status=PENDING_QR, webhook_secret=webhook_secret)
            s.add(inst)
    except IntegrityError:
        inst = find_instance_by_label(label)
        if inst is None:
            raise
        return inst
    log.info("instance_created", tenant_id=tenant_id, instance=label, instance_id=inst.id)
    return inst

def update_instance(instance_id: int, **fields: Any) -> Instance | None:
    Session = di["session_factory"]
    with Session() as s, s.begin():
        inst = s.get(Instance, instance_id)
        if not inst:
            return None
        for k, v in fields.items():
            setattr(inst, k, v)
    return inst

def update_instance_if_status(instance_id: int, expected_status: str, **fields: Any) -> Instance | None:
    """Compare-and-set: grava só se o status no banco ainda for `expected_status`.

    Devolve None quando outro processo mudou o status antes (nada é gravado).
    """
    Session = di["session_factory"]
    with Session() as s, s.begin():
        result = s.execute(
            update(Instance)
            .where(Instance.id == instance_id, Instance.status == expected_status)
            .values(**fields)
        )
        if result.rowcount == 0:
            return None
    return get_instance(instance_id)

# ---------- Contacts ----------
def _find_contact(tenant_id: str, phone: str) -> Contact | None:
    Session = di["session_factory"]
    with Session() as s:
        return s.execute(
            select(Contact).where(Contact.tenant_id == tenant_id, Contact.phone == phone)
        ).scalar_one_or_none()

def get_contact(contact_id: int) -> Contact | None:
    Session = di["session_factory"]
    with Session() as s:
        return s.get(Contact, contact_id)

def upsert_contact(tenant_id: str, phone: str, push_name: str | None = None) -> Contact:
    """Resolve/cria o contato (tenant, telefone E.164)."""
    c = _find_contact(tenant_id, phone)
    if c:
        if push_name and c.push_name != push_name:
            Session = di["session_factory"]
            with Session() as s, s.begin():
                row = s.get(Contact, c.id)
                row.push_name = push_name
            c.push_name = push_name
        return c
    Session = di["session_factory"]
    try:
        with Session() as s, s.begin():
            c = Contact(tenant_id=tenant_id, phone=phone, push_name=push_name)
            s.add(c)
    except IntegrityError:
        c = _find_contact(tenant_id, phone)
        if c is None:
            raise
    return c

# ---------- Conversations ----------
def find_open_conversation(tenant_id: str, instance_id: int, contact_id: int) -> Conversation | None:
    Session = di["session_factory"]
    with Session() as s:
        return s.execute(
            select(Conversation).where(
                Conversation.tenant_id == tenant_id,
                Conversation.instance_id == instance_id,
                Conversation.contact_id == contact_id,
                Conversation.status == "open",
            )
        ).scalar_one_or_none()

def get_or_open_conversation(tenant_id: str, instance_id: int, contact_id: int) -> tuple[Conversation, bool]:
    """Conversa aberta do trio (tenant, instância, contato); abre uma nova se não houver.

    Conversas fechadas nunca são reaproveitadas.
    :return: (conversa, criada_agora)
    """
    conv = find_open_conversation(tenant_id, instance_id, contact_id)
    if conv:
        return conv, False
    Session = di["session_factory"]
    try:
        with Session() as s, s.begin():
            conv = Conversation(tenant_id=tenant_id, instance_id=instance_id, contact_id=contact_id, status="open")
            s.add(conv)
    except IntegrityError:
        conv = find_open_conversation(tenant_id, instance_id, contact_id)
        if conv is None:
            raise
        return conv, False
    log.info("conversation_opened", tenant_id=tenant_id, conversation_id=conv.id, instance_id=instance_id)
    return conv, True

def get_conversation(conversation_id: int) -> Conversation | None:
    Session = di["session_factory"]
    with Session() as s:
        return s.get(Conversation, conversation_id)

def find_conversation_by_chat(crm_chat_id: str, tenant_id: str | None = None) -> Conversation | None:
    """Conversa pelo chat do Bitrix; prefere a aberta e, entre iguais, a mais recente."""
    Session = di["session_factory"]
    with Session() as s:
        q = select(Conversation).where(Conversation.crm_chat_id == str(crm_chat_id))
        if tenant_id:
            q = q.where(Conversation.tenant_id == tenant_id)
        rows = s.execute(q.order_by(Conversation.id.desc())).scalars().all()
        for r in rows:
            if r.status == "open":
                return r
        return rows[0] if rows else None

def set_conversation_chat_id(conversation_id: int, crm_chat_id: str) -> bool:
    """Grava o chat do CRM apenas se a conversa ainda não tem um."""
    Session = di["session_factory"]
    with Session() as s, s.begin():
        conv = s.get(Conversation, conversation_id)
        if not conv or conv.crm_chat_id:
            return False
        conv.crm_chat_id = str(crm_chat_id)
    log.info("conversation_chat_linked", conversation_id=conversation_id, crm_chat_id=crm_chat_id)
    return True

def touch_conversation(conversation_id: int) -> None:
    Session = di["session_factory"]
    with Session() as s, s.begin():
        conv = s.get(Conversation, conversation_id)
        if conv:
            conv.last_activity_at = utcnow()

def close_conversation(conversation_id: int) -> bool:
    Session = di["session_factory"]
    with Session() as s, s.begin():
        conv = s.get(Conversation, conversation_id)
        if not conv or conv.status == "closed":
            return False
        conv.status = "closed"
        conv.closed_at = utcnow()
        conv.last_activity_at = conv.closed_at
    log.info("conversation_closed", conversation_id=conversation_id)
    return True

def assign_conversation(conversation_id: int, agent_id: str | None) -> bool:
    Session = di["session_factory"]
    with Session() as s, s.begin():
        conv = s.get(Conversation, conversation_id)
        if not conv:
            return False
        conv.assigned_agent_id = agent_id
        conv.last_activity_at = utcnow()
    log.info("conversation_assigned", conversation_id=conversation_id, agent_id=agent_id)
    return True

# ---------- Messages ----------
def message_exists(*, wa_message_id: str | None = None, crm_message_id: str | None = None) -> bool:
    conds = []
    if wa_message_id:
        conds.append(Message.wa_message_id == wa_message_id)
    if crm_message_id:
        conds.append(Message.crm_message_id == crm_message_id)
    if not conds:
        return False
    Session = di["session_factory"]
    with Session() as s:
        return s.execute(select(Message.id).where(or_(*conds)).limit(1)).scalar() is not None

def insert_message(
    *,
    tenant_id: str,
    conversation_id: int,
    direction: str,
    content: str,
    delivery_status: str,
    media_url: str | None = None,
    wa_message_id: str | None = None,
    crm_message_id: str | None = None,
) -> Message:
    """Persiste a mensagem. Conflito no id externo vira DuplicateMessage."""
    Session = di["session_factory"]
    try:
        with Session() as s, s.begin():
            m = Message(
                tenant_id=tenant_id,
                conversation_id=conversation_id,
                direction=direction,
                content=content,
                media_url=media_url,
                wa_message_id=wa_message_id,
                crm_message_id=crm_message_id,
                delivery_status=delivery_status,
            )
            s.add(m)
    except IntegrityError as exc:
        if message_exists(wa_message_id=wa_message_id, crm_message_id=crm_message_id):
            raise DuplicateMessage(wa_message_id or crm_message_id) from exc
        raise
    log.info("message_saved", conversation_id=conversation_id, message_id=m.id, direction=direction,
             wa_message_id=wa_message_id, crm_message_id=crm_message_id)
    return m

def get_message(message_id: int) -> Message | None:
    Session = di["session_factory"]
    with Session() as s:
        return s.get(Message, message_id)

def update_message(message_id: int, **fields: Any) -> Message | None:
    Session = di["session_factory"]
    with Session() as s, s.begin():
        m = s.get(Message, message_id)
        if not m:
            return None
        for k, v in fields.items():
            setattr(m, k, v)
    return m

def list_redeliverable(limit: int = 20, max_attempts: int = 5) -> List[Message]:
    """Mensagens de entrada persistidas mas ainda não entregues ao CRM."""
    Session = di["session_factory"]
    with Session() as s:
        return list(s.execute(
            select(Message)
            .where(
                Message.direction == "in",
                Message.delivery_status.in_((FAILED, PENDING)),
                Message.attempts < max_attempts,
            )
            .order_by(Message.id.asc())
            .limit(limit)
        ).scalars().all())

# ---------- Auditoria ----------
def log_webhook(
    provider: str,
    payload: Dict[str, Any],
    *,
    verdict: str,
    valid_signature: bool | None = None,
    tenant_id: str | None = None,
    instance_label: str | None = None,
    event: str | None = None,
) -> int:
    """Registra o payload recebido em webhook_log (append-only)."""
    Session = di["session_factory"]
    with Session() as s, s.begin():
        row = WebhookLog(
            provider=provider,
            tenant_id=tenant_id,
            instance_label=instance_label,
            event=event,
            payload=payload,
            valid_signature=valid_signature,
            verdict=verdict,
            trace_id=trace_id_ctx.get(),
        )
        s.add(row)
    log.info("webhook_logged", provider=provider, verdict=verdict, tenant_id=tenant_id, instance=instance_label, webhook_event=event)
    return row.id

def log_event(tenant_id: str | None, conversation_id: int | None, kind: str, data: dict) -> None:
    """Registra um evento de auditoria em relay_events."""
    Session = di["session_factory"]
    with Session() as s, s.begin():
        ev = RelayEvent(tenant_id=tenant_id, conversation_id=conversation_id, kind=kind, data=data,
                        ts=int(time.time() * 1000))
        s.add(ev)
    log.info("relay_event", tenant_id=tenant_id, conversation_id=conversation_id, kind=kind)
