"""
HTTP External System Client

Queries external clinical systems over their JSON lookup endpoint using a
shared aiohttp session.
"""

from typing import List, Optional
import asyncio
import logging
import uuid

import aiohttp

from patient_identity.core.config import HTTPConfig, get_config
from patient_identity.core.exceptions import ExternalSystemError
from patient_identity.domains.patient.models.patient import PatientRecord
from patient_identity.domains.reconciliation.models.reconciliation import (
    ExternalCandidate,
    ExternalSystem
)
from .base_provider import BaseExternalSystemClient

logger = logging.getLogger(__name__)


class HttpExternalSystemClient(BaseExternalSystemClient):
    """
    External system client speaking JSON over HTTP

    POSTs the patient demographics to the system's api_endpoint and expects a
    candidate list back. The system's api_key, when set, goes in X-API-Key.
    """

    def __init__(self, config: Optional[HTTPConfig] = None):
        super().__init__()
        self.config = config or get_config().http
        self._session: Optional[aiohttp.ClientSession] = None

    async def initialize(self) -> None:
        """Open the shared HTTP session"""
        if self._session is not None:
            return

        connector = aiohttp.TCPConnector(
            limit=self.config.max_pool_size,
            limit_per_host=self.config.max_per_host
        )
        timeout = aiohttp.ClientTimeout(
            total=self.config.total_timeout,
            connect=self.config.connect_timeout
        )
        self._session = aiohttp.ClientSession(connector=connector, timeout=timeout)
        self._initialized = True
        logger.info("HTTP external system client initialized")

    async def lookup(self, system: ExternalSystem, patient: PatientRecord) -> List[ExternalCandidate]:
        if not system.api_endpoint:
            raise ExternalSystemError(system.id, "no API endpoint configured")
        if self._session is None:
            await self.initialize()

        self.total_calls += 1
        tracking_id = str(uuid.uuid4())

        headers = {
            'Content-Type': 'application/json',
            'Accept': 'application/json',
            'X-Tracking-Id': tracking_id
        }
        if system.api_key:
            headers['X-API-Key'] = system.api_key

        payload = {
            'systemId': system.id,
            'trackingId': tracking_id,
            'patient': patient.to_dict()
        }

        try:
            async with self._session.post(system.api_endpoint, json=payload, headers=headers) as response:
                if response.status != 200:
                    error_text = await response.text()
                    logger.error(
                        f"External system {system.id} returned {response.status} "
                        f"(tracking {tracking_id}): {error_text[:200]}"
                    )
                    raise ExternalSystemError(system.id, f"API returned {response.status}")

                data = await response.json(content_type=None)

        except ExternalSystemError:
            self.failed_calls += 1
            raise
        except asyncio.TimeoutError as e:
            self.failed_calls += 1
            logger.error(f"External system {system.id} timed out (tracking {tracking_id})")
            raise ExternalSystemError(system.id, "request timed out", timed_out=True) from e
        except aiohttp.ClientError as e:
            self.failed_calls += 1
            logger.error(f"External system {system.id} request failed: {e}")
            raise ExternalSystemError(system.id, str(e)) from e

        return self._parse_candidates(system, data)

    async def cleanup(self) -> None:
        """Close the shared HTTP session"""
        if self._session is not None:
            await self._session.close()
            self._session = None
        await super().cleanup()
        logger.info("HTTP external system client closed")
