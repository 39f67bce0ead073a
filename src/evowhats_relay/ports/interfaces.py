"""DTOs trocados entre conectores e serviços de domínio."""
from __future__ import annotations
from datetime import datetime
from typing import Any, Dict, List
from pydantic import BaseModel, Field

class TokenGrantDTO(BaseModel):
    """Resposta normalizada do endpoint OAuth do Bitrix24."""
    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    portal: str | None = None
    member_id: str | None = None
    scope: List[str] = Field(default_factory=list)

class EntregaDTO(BaseModel):
    """Resultado padronizado de envio pela plataforma de destino."""
    ok: bool
    provider_message_id: str | None = None
    chat_id: str | None = None
    error_code: str | None = None
    error_detail: str | None = None

class StatusDTO(BaseModel):
    """Estado de conexão informado pela Evolution, já normalizado."""
    state: str  # open|close|connecting|unknown
    raw: Dict[str, Any] = Field(default_factory=dict)

class QrDTO(BaseModel):
    """QR code em base64 (sem prefixo data:) e/ou pairing code."""
    base64: str | None = None
    pairing_code: str | None = None

class CrmInboundMessageDTO(BaseModel):
    """Mensagem do WhatsApp a ser entregue numa Linha Aberta."""
    line_id: str
    user_id: str  # telefone E.164 do contato
    user_name: str | None = None
    text: str
    wa_message_id: str | None = None
    media_url: str | None = None
    chat_id: str | None = None

class WaOutboundMessageDTO(BaseModel):
    """Mensagem de agente a ser enviada pela instância Evolution."""
    instance: str
    number: str
    text: str
    media_url: str | None = None
