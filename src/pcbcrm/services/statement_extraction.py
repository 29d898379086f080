"""``statement_extraction`` job handler.

Sends a merchant processing statement to the extraction service and
returns the parsed fields (volume, fees, card mix) for the job result.
Runs inside :class:`~pcbcrm.jobs.runner.JobRunner`, so it reports
progress through the callback and raises
:class:`~pcbcrm.errors.JobHandlerError` with a message the rep can act on.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from pcbcrm.errors import JobHandlerError
from pcbcrm.jobs.runner import ProgressCallback

logger = logging.getLogger(__name__)

JOB_TYPE = "statement_extraction"


class StatementExtractionHandler:
    """Calls the extraction service for one statement document.

    Args:
        client: Shared async HTTP client (owned by the app lifespan).
        url: Extraction endpoint.
        timeout: Per-request timeout in seconds.
    """

    def __init__(self, client: httpx.AsyncClient, url: str, timeout: float = 60.0) -> None:
        self.client = client
        self.url = url
        self.timeout = timeout

    async def __call__(
        self, input: dict[str, Any], progress: ProgressCallback
    ) -> dict[str, Any]:
        document_url = input.get("document_url")
        if not document_url:
            raise JobHandlerError("No statement document provided")

        payload = {
            "document_url": document_url,
            "file_name": input.get("file_name"),
            "merchant_id": input.get("merchant_id"),
        }
        await progress({"stage": "extracting", "percent": 10})
        try:
            response = await self.client.post(self.url, json=payload, timeout=self.timeout)
            response.raise_for_status()
            extracted = response.json()
        except httpx.TimeoutException as exc:
            logger.warning("Statement extraction timed out for %s: %s", document_url, exc)
            raise JobHandlerError("Statement extraction timed out - please retry") from exc
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "Extraction service returned %d for %s",
                exc.response.status_code,
                document_url,
            )
            if exc.response.status_code == 422:
                raise JobHandlerError(
                    "Statement could not be read - upload a clearer copy"
                ) from exc
            raise JobHandlerError("Statement extraction failed - please retry") from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Statement extraction failed for %s: %s", document_url, exc)
            raise JobHandlerError("Statement extraction failed - please retry") from exc

        if not isinstance(extracted, dict):
            raise JobHandlerError("Statement extraction returned no data - please retry")

        await progress({"stage": "done", "percent": 100})
        logger.info("Extracted statement %s (%d fields)", document_url, len(extracted))
        return {"document_url": document_url, "extracted": extracted}
