"""
Observability hooks for outgoing API traffic.

Adds correlation IDs and structured logging context to backend requests.
"""

import time
import uuid
import logging
from typing import Optional

import httpx

from planit.app.core.config import settings

# Configure structured logger
logger = logging.getLogger("planit")

CORRELATION_HEADER = "X-Correlation-ID"


def configure_logging(level: Optional[str] = None) -> None:
    """Attach a basic handler to the planit logger hierarchy."""
    level_name = (level or settings.log_level).upper()
    logging.basicConfig(
        level=level_name,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    logger.setLevel(level_name)


async def on_request(request: httpx.Request) -> None:
    # 1. Generate or keep Correlation ID
    if CORRELATION_HEADER not in request.headers:
        request.headers[CORRELATION_HEADER] = str(uuid.uuid4())
    
    # 2. Start Timer
    request.extensions["planit_started_at"] = time.perf_counter()


async def on_response(response: httpx.Response) -> None:
    request = response.request
    started_at = request.extensions.get("planit_started_at", time.perf_counter())
    process_time = (time.perf_counter() - started_at) * 1000  # ms
    
    log_data = {
        "correlation_id": request.headers.get(CORRELATION_HEADER),
        "method": request.method,
        "path": request.url.path,
        "status_code": response.status_code,
        "duration_ms": round(process_time, 2),
    }
    
    # Log level based on status
    if response.status_code >= 500:
        logger.error("Backend Request Failed", extra=log_data)
    elif response.status_code >= 400:
        logger.warning("Backend Request Error", extra=log_data)
    else:
        logger.info("Backend Request", extra=log_data)


event_hooks = {"request": [on_request], "response": [on_response]}
