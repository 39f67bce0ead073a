"""BindingRegistry: vínculo 1:1 entre Linha Aberta do Bitrix24 e instância da Evolution."""
from __future__ import annotations
from typing import List
from sqlalchemy import select, delete, or_
from sqlalchemy.exc import IntegrityError
from kink import di
from ...core.logging import get_logger
from ...repo import repo
from ...repo.models import Binding, Instance

log = get_logger()


class BindingRegistry:
    """Uma linha aponta para no máximo uma instância e vice-versa. Re-vincular sobrescreve."""

    def __init__(self, session_factory=None):
        self.Session = session_factory or di["session_factory"]

    def bind(self, tenant_id: str, line_id: str, instance_id: int) -> Binding:
        line_id = str(line_id)
        for _ in range(2):
            try:
                with self.Session() as s, s.begin():
                    s.execute(delete(Binding).where(or_(
                        (Binding.tenant_id == tenant_id) & (Binding.line_id == line_id),
                        Binding.instance_id == instance_id,
                    )))
                    b = Binding(tenant_id=tenant_id, line_id=line_id, instance_id=instance_id)
                    s.add(b)
                break
            except IntegrityError:
                # Bind concorrente da mesma linha/instância; repete sobre o estado novo.
                continue
        else:
            raise RuntimeError(f"could not bind line {line_id} to instance {instance_id}")
        log.info("binding_set", tenant_id=tenant_id, line_id=line_id, instance_id=instance_id)
        repo.log_event(tenant_id, None, "binding_set", {"line_id": line_id, "instance_id": instance_id})
        return b

    def unbind_instance(self, instance_id: int) -> bool:
        with self.Session() as s, s.begin():
            b = s.execute(select(Binding).where(Binding.instance_id == instance_id)).scalar_one_or_none()
            if not b:
                return False
            s.delete(b)
        log.info("binding_removed", tenant_id=b.tenant_id, line_id=b.line_id, instance_id=instance_id)
        repo.log_event(b.tenant_id, None, "binding_removed", {"line_id": b.line_id, "instance_id": instance_id})
        return True

    def line_for_instance(self, instance_id: int) -> str | None:
        with self.Session() as s:
            return s.execute(select(Binding.line_id).where(Binding.instance_id == instance_id)).scalar_one_or_none()

    def instance_for_line(self, tenant_id: str, line_id: str) -> Instance | None:
        with self.Session() as s:
            return s.execute(
                select(Instance)
                .join(Binding, Binding.instance_id == Instance.id)
                .where(Binding.tenant_id == tenant_id, Binding.line_id == str(line_id))
            ).scalar_one_or_none()

    def list_for_tenant(self, tenant_id: str) -> List[Binding]:
        with self.Session() as s:
            return list(s.execute(
                select(Binding).where(Binding.tenant_id == tenant_id).order_by(Binding.line_id)
            ).scalars().all())
