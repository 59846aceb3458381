"""Credentials API endpoints for the SOC export parameters."""

import logging
from typing import Literal
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.sync import get_owner
from app.core.database import get_db
from app.models.database import ApiCredential
from app.schemas.responses import CredentialResponse, CredentialUpdate
from app.services.credentials import OPTIONAL_PARAMS, get_credential, save_credential
from app.services.errors import ConfigurationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/credentials", tags=["credentials"])

Kind = Literal["company", "employee", "absenteeism"]


def mask_secret(value: str | None) -> str | None:
    """Keep the last four characters of a secret visible."""
    if not value:
        return value
    if len(value) <= 4:
        return "*" * len(value)
    return "*" * (len(value) - 4) + value[-4:]


def _to_response(kind: str, credential: ApiCredential | None) -> CredentialResponse:
    if credential is None:
        return CredentialResponse(kind=kind, configured=False)

    return CredentialResponse(
        kind=kind,
        configured=True,
        empresa=credential.empresa,
        codigo=credential.codigo,
        chave=mask_secret(credential.chave),
        tipo_saida=credential.tipo_saida,
        updated_at=credential.updated_at,
        **{name: getattr(credential, name) for name in OPTIONAL_PARAMS},
    )


@router.get("/{kind}", response_model=CredentialResponse)
async def read_credential(
    kind: Kind,
    owner: str = Depends(get_owner),
    db: AsyncSession = Depends(get_db),
):
    """Return the stored parameters for a kind. The key is masked."""
    credential = await get_credential(db, owner, kind)
    return _to_response(kind, credential)


@router.put("/{kind}", response_model=CredentialResponse)
async def update_credential(
    kind: Kind,
    body: CredentialUpdate,
    owner: str = Depends(get_owner),
    db: AsyncSession = Depends(get_db),
):
    """Create or replace the parameters for a kind."""
    try:
        credential = await save_credential(db, owner, kind, body.model_dump())
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _to_response(kind, credential)
