"""API Flask: webhooks da Evolution e do Bitrix24, fluxo OAuth e health check."""
from __future__ import annotations
from flask import Flask, request, jsonify
from kink import di
from ..core.di import bootstrap_di
from ..core.errors import InvalidOAuthState, RelayError
from ..core.logging import set_trace_id, get_logger
from ..core.settings import Settings
from ..core.signature import signature_from_headers
from ..domain.services.crm_auth import CrmAuthService
from ..domain.services.inbound_relay import InboundRelay
from ..domain.services.outbound_relay import OutboundRelay

log = get_logger()


def create_app(settings: Settings | None = None, bootstrap: bool = True) -> Flask:
    """Cria a aplicação. Com `bootstrap=False` usa o container já montado (testes)."""
    if bootstrap:
        bootstrap_di(settings)
    app = Flask(__name__)

    @app.get("/healthz")
    def healthz():
        """Health check básico."""
        return {"ok": True}

    @app.post("/webhooks/evolution")
    def evolution_webhook():
        """Eventos da Evolution: mensagens do cliente, status de conexão e QR."""
        set_trace_id(request.headers.get("X-Trace-Id"))
        result = di[InboundRelay].handle(request.get_data(), request.content_type,
                                         signature_from_headers(request.headers))
        log.info("webhook_in", provider="evolution", status=result.status, http_status=result.http_status)
        return jsonify(result.body()), result.http_status

    @app.post("/webhooks/crm")
    def crm_webhook():
        """Eventos das Linhas Abertas do Bitrix24 (JSON ou form-urlencoded)."""
        set_trace_id(request.headers.get("X-Trace-Id"))
        result = di[OutboundRelay].handle(request.get_data(), request.content_type,
                                          signature_from_headers(request.headers))
        log.info("webhook_in", provider="bitrix", status=result.status, http_status=result.http_status)
        return jsonify(result.body()), result.http_status

    @app.post("/oauth/crm/start")
    def crm_oauth_start():
        """Início da instalação: devolve a URL de autorização do portal com um `state` novo."""
        set_trace_id(request.headers.get("X-Trace-Id"))
        body = request.get_json(silent=True) or {}
        tenant_id = body.get("tenant_id")
        portal_url = body.get("portal_url") or body.get("portalUrl")
        if not tenant_id or not portal_url:
            return {"ok": False, "error": "missing tenant_id or portal_url"}, 400
        try:
            auth_url = di[CrmAuthService].start_authorization(str(tenant_id), str(portal_url))
        except ValueError as exc:
            return {"ok": False, "error": str(exc)}, 400
        return {"ok": True, "auth_url": auth_url}

    @app.get("/oauth/crm/callback")
    def crm_oauth_callback():
        """Retorno da instalação do app local: troca `code` por tokens e grava a credencial."""
        set_trace_id(request.headers.get("X-Trace-Id"))
        code = request.args.get("code")
        domain = request.args.get("domain")
        state = request.args.get("state")
        if not code or not domain or not state:
            return {"ok": False, "error": "missing code, domain or state"}, 400
        try:
            cred = di[CrmAuthService].complete_authorization(code, domain, state)
        except InvalidOAuthState as exc:
            return {"ok": False, "error": str(exc)}, 400
        except RelayError as exc:
            log.warning("oauth_callback_failed", domain=domain, error=str(exc), error_type=type(exc).__name__)
            return {"ok": False, "error": str(exc)}, 502
        return {"ok": True, "tenant_id": cred.tenant_id, "portal": cred.portal}

    return app
