"""Taxonomia de erros do relay."""
from __future__ import annotations


class RelayError(Exception):
    """Base de todos os erros do relay."""


class TransportError(RelayError):
    """Falha de rede ou timeout. Retentável."""


class AuthExpired(RelayError):
    """Token inválido/expirado no CRM. Dispara refresh e uma nova tentativa."""


class TokenExpired(RelayError):
    """Sinal de falha no refresh. Devolvido pelo TokenRefresher, nunca lançado por ele."""


class InvalidSignature(RelayError):
    """Assinatura HMAC do webhook não confere (HTTP 403)."""


class InvalidOAuthState(RelayError):
    """`state` do callback OAuth ausente, desconhecido, expirado ou já usado (HTTP 400)."""


class NotFound(RelayError):
    """Tenant/instância/conversa não resolvida."""


class RemoteApiError(RelayError):
    """Erro estruturado devolvido pela plataforma remota."""

    def __init__(self, message: str, *, status_code: int | None = None, code: str | None = None, transient: bool = False):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.transient = transient


class DuplicateMessage(RelayError):
    """Mensagem externa já processada (idempotência)."""


class UnparsablePayload(RelayError):
    """Payload de webhook em formato desconhecido (falha fechada)."""


class IllegalTransition(RelayError):
    """Transição proibida na máquina de estados de conexão."""

    def __init__(self, current: str, target: str):
        super().__init__(f"{current} -> {target}")
        self.current = current
        self.target = target
