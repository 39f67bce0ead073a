"""Validação HMAC-SHA256 de webhooks (Evolution e Bitrix24)."""
from __future__ import annotations
import hmac, hashlib
from .errors import InvalidSignature
from .logging import get_logger

log = get_logger()

SIGNATURE_HEADERS = ("X-Evolution-Signature", "X-Signature", "X-Hub-Signature-256")


def signature_from_headers(headers) -> str | None:
    """Primeiro cabeçalho de assinatura presente na requisição."""
    for name in SIGNATURE_HEADERS:
        value = headers.get(name)
        if value:
            return value
    return None


class SignatureValidator:
    """Confere assinatura de webhook contra o segredo da instância/tenant.

    Sem segredo configurado aceita tudo (modo não protegido, registrado em log).
    Aceita o digest em hex puro ou prefixado por `sha256=`.
    """

    def sign(self, raw_body: bytes, secret: str) -> str:
        return hmac.new(secret.encode(), msg=raw_body, digestmod=hashlib.sha256).hexdigest()

    def verify(self, raw_body: bytes, signature_header: str | None, secret: str | None) -> bool:
        if not secret:
            log.info("signature_unsecured_mode")
            return True
        if not signature_header:
            return False
        provided = signature_header.strip()
        if "=" in provided:
            algo, provided = provided.split("=", 1)
            if algo.strip().lower() != "sha256":
                return False
        expected = self.sign(raw_body, secret)
        # Cabeçalho chega decodificado em latin-1; compara bytes para aceitar lixo não-ASCII.
        return hmac.compare_digest(expected.encode(), provided.strip().lower().encode("utf-8", "replace"))

    def require(self, raw_body: bytes, signature_header: str | None, secret: str | None) -> None:
        """Como verify, mas levanta InvalidSignature em caso de divergência."""
        if not self.verify(raw_body, signature_header, secret):
            raise InvalidSignature("signature mismatch" if signature_header else "missing signature")
