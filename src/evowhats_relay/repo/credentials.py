"""CredentialStore: credenciais OAuth do Bitrix24 por tenant/portal."""
from __future__ import annotations
from datetime import datetime
from typing import List
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from kink import di
from ..core.db import utcnow
from ..core.logging import get_logger
from .models import Credential

log = get_logger()


def normalize_portal(portal: str) -> str:
    """`conta.bitrix24.com.br` → `https://conta.bitrix24.com.br` (sem barra final)."""
    p = (portal or "").strip().rstrip("/")
    if p and not p.startswith(("http://", "https://")):
        p = f"https://{p}"
    return p


class CredentialStore:
    """Persistência de Credential. No máximo uma ativa por (tenant, portal)."""

    def __init__(self, session_factory=None):
        self.Session = session_factory or di["session_factory"]

    def get(self, credential_id: int) -> Credential | None:
        with self.Session() as s:
            return s.get(Credential, credential_id)

    def get_active(self, tenant_id: str, portal: str | None = None) -> Credential | None:
        with self.Session() as s:
            q = select(Credential).where(Credential.tenant_id == tenant_id, Credential.active.is_(True))
            if portal:
                q = q.where(Credential.portal == normalize_portal(portal))
            return s.execute(q.order_by(Credential.id.desc()).limit(1)).scalar_one_or_none()

    def find_active_by_portal(self, portal: str) -> Credential | None:
        """Resolve o tenant a partir do domínio informado no evento (`auth[domain]`)."""
        with self.Session() as s:
            return s.execute(
                select(Credential)
                .where(Credential.portal == normalize_portal(portal), Credential.active.is_(True))
                .order_by(Credential.id.desc())
                .limit(1)
            ).scalar_one_or_none()

    def list_active(self) -> List[Credential]:
        with self.Session() as s:
            return list(s.execute(select(Credential).where(Credential.active.is_(True))).scalars().all())

    def save(
        self,
        tenant_id: str,
        portal: str,
        *,
        access_token: str,
        refresh_token: str | None,
        expires_at: datetime | None,
        scope: list[str] | None = None,
        member_id: str | None = None,
    ) -> Credential:
        """Cria ou substitui a credencial ativa do (tenant, portal). Usado no callback OAuth."""
        portal = normalize_portal(portal)
        for _ in range(2):
            try:
                with self.Session() as s, s.begin():
                    cred = s.execute(
                        select(Credential).where(
                            Credential.tenant_id == tenant_id,
                            Credential.portal == portal,
                            Credential.active.is_(True),
                        )
                    ).scalar_one_or_none()
                    if not cred:
                        cred = Credential(tenant_id=tenant_id, portal=portal, active=True)
                        s.add(cred)
                    cred.access_token = access_token
                    cred.refresh_token = refresh_token
                    cred.expires_at = expires_at
                    cred.scope = list(scope or [])
                    cred.member_id = member_id
                    cred.updated_at = utcnow()
                log.info("credential_saved", tenant_id=tenant_id, portal=portal, credential_id=cred.id)
                return cred
            except IntegrityError:
                # Outro callback concorrente criou a ativa; a segunda volta atualiza a vencedora.
                continue
        raise RuntimeError(f"could not save credential for {tenant_id}@{portal}")

    def update_tokens(
        self, credential_id: int, *, access_token: str, refresh_token: str | None, expires_at: datetime | None
    ) -> Credential | None:
        """Grava o resultado de um refresh (last-write-wins)."""
        with self.Session() as s, s.begin():
            cred = s.get(Credential, credential_id)
            if not cred:
                return None
            cred.access_token = access_token
            if refresh_token:
                cred.refresh_token = refresh_token
            cred.expires_at = expires_at
            cred.updated_at = utcnow()
        return cred

    def deactivate(self, tenant_id: str, portal: str | None = None) -> int:
        """Desativa credenciais ativas do tenant (desconexão explícita). Retorna quantas."""
        with self.Session() as s, s.begin():
            q = select(Credential).where(Credential.tenant_id == tenant_id, Credential.active.is_(True))
            if portal:
                q = q.where(Credential.portal == normalize_portal(portal))
            rows = s.execute(q).scalars().all()
            for r in rows:
                r.active = False
        log.info("credential_deactivated", tenant_id=tenant_id, portal=portal, count=len(rows))
        return len(rows)
