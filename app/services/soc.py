"""SOC export API client."""

import json
import logging
import re
from typing import Any, Optional
import httpx

from app.services.errors import (
    BadResponseError,
    ConfigurationError,
    NetworkError,
    RemoteStatusError,
    RemoteTimeoutError,
)

logger = logging.getLogger(__name__)

# SOC serves its exports in Latin-1, not UTF-8
SOC_ENCODING = "latin-1"
REQUIRED_PARAMS = ("empresa", "codigo", "chave")
BAD_RESPONSE_SAMPLE_CHARS = 1000

_CONTROL_CHARS = re.compile(r"[\u0000-\u001f\u007f-\u009f]")


def decode_body(content: bytes) -> str:
    """Decode a raw SOC response body."""
    return content.decode(SOC_ENCODING)


def parse_records(text: str) -> list[dict[str, Any]]:
    """
    Parse a decoded SOC body into a list of records.

    Stray control characters are stripped and the parse retried once before
    giving up. Raises BadResponseError with a truncated sample of the body.
    """
    sample = text[:BAD_RESPONSE_SAMPLE_CHARS]
    try:
        data = json.loads(text)
    except ValueError as first_error:
        try:
            data = json.loads(_CONTROL_CHARS.sub("", text))
        except ValueError:
            raise BadResponseError(f"Invalid JSON response: {first_error}", sample) from first_error
        logger.warning("SOC response parsed only after stripping control characters")

    if not isinstance(data, list):
        raise BadResponseError(
            f"SOC did not return an array of records (got {type(data).__name__})",
            sample,
        )
    return data


class SocClient:
    """Async client for the SOC export endpoint."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url
        self.timeout = timeout
        self.transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self.client is None:
            self.client = httpx.AsyncClient(
                headers={"Accept": "application/json", "Accept-Encoding": "identity"},
                timeout=self.timeout,
                transport=self.transport,
            )
        return self.client

    async def close(self):
        """Close the HTTP client."""
        if self.client:
            await self.client.aclose()
            self.client = None

    @staticmethod
    def build_parameter(params: dict[str, Any]) -> str:
        """Serialize the export parameters the way SOC expects them."""
        missing = [name for name in REQUIRED_PARAMS if not params.get(name)]
        if missing:
            raise ConfigurationError(f"Missing SOC parameters: {', '.join(missing)}")
        payload = {k: v for k, v in params.items() if v is not None and v != ""}
        payload["tipoSaida"] = "json"
        return json.dumps(payload)

    async def fetch(self, kind: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        """
        Fetch the full export for one data kind.

        Raises:
            ConfigurationError: required parameters are missing (no request is made).
            RemoteTimeoutError: the request timed out.
            RemoteStatusError: SOC answered with a non-2xx status.
            NetworkError: any other transport failure.
            BadResponseError: the body is not a JSON array.
        """
        parameter = self.build_parameter(params)
        client = await self._get_client()

        logger.info(f"Calling SOC export for {kind}")
        try:
            response = await client.get(self.base_url, params={"parametro": parameter})
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise RemoteTimeoutError(f"SOC request timed out after {self.timeout}s") from e
        except httpx.HTTPStatusError as e:
            raise RemoteStatusError(
                e.response.status_code,
                f"SOC request failed with status {e.response.status_code}",
            ) from e
        except httpx.HTTPError as e:
            raise NetworkError(f"SOC request failed: {e}") from e

        text = decode_body(response.content)
        logger.info(f"SOC response for {kind} decoded, {len(text)} characters")

        records = parse_records(text)
        logger.info(f"Received {len(records)} {kind} records from SOC")
        return records
