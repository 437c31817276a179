"""
Outbound integration client used by ingest_integration rules.

Every call carries an explicit timeout. Timeouts surface as
IntegrationTimeout (retryable); anything else as IntegrationError.
"""
import logging
from typing import List, Optional

import httpx
from pydantic import ValidationError

from juryboard.schemas.automation import IntegrationBatch, IntegrationEvent

logger = logging.getLogger(__name__)


class IntegrationError(Exception):
    """Integration responded badly or could not be reached."""


class IntegrationTimeout(IntegrationError):
    """Integration did not answer within its timeout."""


async def fetch_events(
    url: str,
    timeout_seconds: float,
    transport: Optional[httpx.AsyncBaseTransport] = None
) -> List[IntegrationEvent]:
    """
    GET url and parse either {"events": [...]} or a bare list of events.
    `transport` lets tests substitute httpx.MockTransport.
    """
    timeout = httpx.Timeout(timeout_seconds)
    async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
        try:
            response = await client.get(url, headers={"Accept": "application/json"})
            response.raise_for_status()
            body = response.json()
        except httpx.TimeoutException as e:
            raise IntegrationTimeout(f"Integration {url} timed out after {timeout_seconds}s") from e
        except httpx.HTTPError as e:
            raise IntegrationError(f"Integration {url} failed: {e}") from e
        except ValueError as e:
            raise IntegrationError(f"Integration {url} returned invalid JSON") from e

    if isinstance(body, list):
        body = {"events": body}
    try:
        batch = IntegrationBatch.model_validate(body)
    except ValidationError as e:
        raise IntegrationError(f"Integration {url} returned malformed events: {e.error_count()} errors") from e

    logger.info(f"Fetched {len(batch.events)} events from {url}")
    return batch.events
