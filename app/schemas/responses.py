"""Pydantic request and response models for the credentials API."""

from datetime import datetime
from pydantic import BaseModel, Field


class CredentialUpdate(BaseModel):
    """SOC export parameters for one data kind."""
    empresa: str = Field(min_length=1)
    codigo: str = Field(min_length=1)
    chave: str = Field(min_length=1)
    empresatrabalho: str | None = None
    datainicio: str | None = None
    datafim: str | None = None
    ativo: str | None = None
    inativo: str | None = None
    afastado: str | None = None
    pendente: str | None = None
    ferias: str | None = None


class CredentialResponse(BaseModel):
    """Stored SOC parameters, with the key masked."""
    kind: str
    configured: bool
    empresa: str | None = None
    codigo: str | None = None
    chave: str | None = None
    tipo_saida: str | None = None
    empresatrabalho: str | None = None
    datainicio: str | None = None
    datafim: str | None = None
    ativo: str | None = None
    inativo: str | None = None
    afastado: str | None = None
    pendente: str | None = None
    ferias: str | None = None
    updated_at: datetime | None = None
