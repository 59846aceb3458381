"""Lookup of the SOC export parameters configured per owner and kind."""

import logging
from typing import Any
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.database import ApiCredential
from app.services.errors import ConfigurationError
from app.services.soc import REQUIRED_PARAMS

logger = logging.getLogger(__name__)

OPTIONAL_PARAMS = (
    "empresatrabalho",
    "datainicio",
    "datafim",
    "ativo",
    "inativo",
    "afastado",
    "pendente",
    "ferias",
)


def credential_to_params(credential: ApiCredential) -> dict[str, Any]:
    """Turn a stored credential row into the SOC parameter set."""
    params = {name: getattr(credential, name) for name in REQUIRED_PARAMS + OPTIONAL_PARAMS}
    params["tipoSaida"] = credential.tipo_saida or "json"
    return params


async def get_credential(session: AsyncSession, owner: str, kind: str) -> ApiCredential | None:
    result = await session.execute(
        select(ApiCredential).where(ApiCredential.owner == owner, ApiCredential.kind == kind)
    )
    return result.scalar_one_or_none()


async def save_credential(
    session: AsyncSession, owner: str, kind: str, values: dict[str, Any]
) -> ApiCredential:
    """Create or update the credential row for (owner, kind)."""
    missing = [name for name in REQUIRED_PARAMS if not values.get(name)]
    if missing:
        raise ConfigurationError(f"Required field(s) missing: {', '.join(missing)}")

    credential = await get_credential(session, owner, kind)
    if credential is None:
        credential = ApiCredential(owner=owner, kind=kind)
        session.add(credential)

    for name in REQUIRED_PARAMS + OPTIONAL_PARAMS:
        if name in values:
            setattr(credential, name, values[name])
    credential.tipo_saida = "json"

    await session.commit()
    await session.refresh(credential)
    logger.info(f"Saved SOC credentials for {owner}/{kind}")
    return credential


class CredentialProvider:
    """Resolves (kind, owner) to a complete SOC parameter set."""

    def __init__(self, session_maker: async_sessionmaker):
        self.session_maker = session_maker

    async def get_params(self, kind: str, owner: str) -> dict[str, Any]:
        """
        Raises:
            ConfigurationError: nothing is configured, or a required field is empty.
        """
        async with self.session_maker() as session:
            credential = await get_credential(session, owner, kind)

        if credential is None:
            raise ConfigurationError(f"No SOC credentials configured for {kind}")

        params = credential_to_params(credential)
        missing = [name for name in REQUIRED_PARAMS if not params.get(name)]
        if missing:
            raise ConfigurationError(
                f"Incomplete SOC credentials for {kind}: missing {', '.join(missing)}"
            )
        return params
