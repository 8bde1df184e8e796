from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from complaintwatch.domain.models import Subject, SubjectCredential
from complaintwatch.persistence.db import SessionLocal
from complaintwatch.persistence.repos import subjects as subjects_repo


CREDENTIAL_FIELDS = ("app_private_key", "app_public_cert", "alipay_root_cert", "alipay_public_cert")


@dataclass(frozen=True)
class TenantRef:
    id: int
    app_id: str
    name: str = ""


@dataclass(frozen=True)
class CredentialMaterial:
    tenant_id: int
    app_private_key: str
    app_public_cert: str
    alipay_root_cert: str
    alipay_public_cert: str
    version: int

    def missing_fields(self) -> list[str]:
        return [name for name in CREDENTIAL_FIELDS if not (getattr(self, name) or "").strip()]

    def __repr__(self) -> str:
        # Keep key material out of logs and tracebacks.
        return f"CredentialMaterial(tenant_id={self.tenant_id}, version={self.version})"


class TenantDirectory(Protocol):
    async def list_eligible_tenants(self) -> list[TenantRef]:
        ...

    async def get_credential(self, tenant_id: int) -> CredentialMaterial | None:
        ...


def _to_ref(row: Subject) -> TenantRef:
    return TenantRef(id=int(row.id), app_id=row.app_id, name=row.company_name or "")


def _to_material(row: SubjectCredential) -> CredentialMaterial:
    return CredentialMaterial(
        tenant_id=int(row.subject_id),
        app_private_key=row.app_private_key or "",
        app_public_cert=row.app_public_cert or "",
        alipay_root_cert=row.alipay_root_cert or "",
        alipay_public_cert=row.alipay_public_cert or "",
        version=int(row.version or 0),
    )


class SqlTenantDirectory:
    """Tenant directory backed by the subjects and subject_credentials tables."""

    async def list_eligible_tenants(self) -> list[TenantRef]:
        async with SessionLocal() as session:
            rows = await subjects_repo.list_eligible_subjects(session)
            return [_to_ref(row) for row in rows]

    async def get_credential(self, tenant_id: int) -> CredentialMaterial | None:
        async with SessionLocal() as session:
            row = await subjects_repo.get_credential(session, tenant_id)
            return _to_material(row) if row is not None else None
