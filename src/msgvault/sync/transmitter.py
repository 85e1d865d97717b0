"""Async HTTP transmitter for delivery batches with retry logic."""

import asyncio
import random
from collections.abc import Awaitable, Callable
from typing import Any

import httpx
from pydantic import BaseModel, Field, ValidationError

from msgvault import __version__
from msgvault.errors import RejectedBatch, TransientTransmitError, TransmitError
from msgvault.logging import sync_logger
from msgvault.models import AckReceipt, BatchState, DeliveryBatch, TransmitResult
from msgvault.sync.retry import BackoffPolicy, BatchEvent, next_state

logger = sync_logger()

# 4xx codes that mean "try again later" rather than "this batch is bad"
RETRYABLE_CLIENT_CODES = {408, 425, 429}

# Refusals about the credentials, not the batch; every later batch would fail the same way
AUTH_FAILURE_CODES = {401, 403}


class RejectedEntry(BaseModel):
    fingerprint: str
    reason: str = "rejected"


class AckPayload(BaseModel):
    """Body of a successful batch submission response."""

    accepted: list[str] = Field(default_factory=list)
    rejected: list[RejectedEntry] = Field(default_factory=list)


def classify_response(response: httpx.Response) -> TransmitError | None:
    """Map a non-success HTTP response to a transmit error.

    Returns None for 2xx responses.
    """
    status = response.status_code
    if 200 <= status < 300:
        return None
    if status >= 500 or status in RETRYABLE_CLIENT_CODES:
        return TransientTransmitError(f"Server error: {status}", status_code=status)
    return RejectedBatch(f"Client error: {status} - {response.text[:200]}", status_code=status)


def classify_exception(exc: Exception) -> TransmitError:
    """Map a transport exception to a transmit error.

    Anything the transport raises is a network condition, not a verdict on
    the batch, so it is always transient.
    """
    if isinstance(exc, httpx.TimeoutException):
        return TransientTransmitError(f"Timeout: {exc}")
    if isinstance(exc, httpx.ConnectError):
        return TransientTransmitError(f"Connection error: {exc}")
    return TransientTransmitError(f"HTTP error: {exc}")


def parse_receipt(batch: DeliveryBatch, response: httpx.Response) -> AckReceipt:
    """Build an AckReceipt from a 2xx response.

    Fingerprints outside the batch are ignored. A body that does not parse
    leaves the outcome unknown, so it is reported as transient and the batch
    is resent under the same idempotency key.
    """
    try:
        payload = AckPayload.model_validate(response.json())
    except (ValueError, ValidationError) as e:
        raise TransientTransmitError(
            f"Unreadable acknowledgment: {e}", status_code=response.status_code
        ) from e

    members = set(batch.fingerprints)
    rejected = {
        entry.fingerprint: entry.reason
        for entry in payload.rejected
        if entry.fingerprint in members
    }
    accepted = frozenset(fp for fp in payload.accepted if fp in members and fp not in rejected)
    return AckReceipt(
        idempotency_key=batch.idempotency_key,
        accepted=accepted,
        rejected=rejected,
    )


class Transmitter:
    """Async HTTP sender for delivery batches with exponential backoff retry.

    Uses httpx.AsyncClient for connection pooling. Retries on transient
    failures (timeouts, connection errors, 5xx, 408/425/429) but not on
    other client errors (4xx). The batch, and therefore its idempotency key,
    is identical on every attempt.
    """

    def __init__(
        self,
        api_base_url: str,
        device_id: str,
        auth_token: str | None = None,
        policy: BackoffPolicy | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: random.Random | None = None,
        health_url: str | None = None,
    ) -> None:
        """Initialize the transmitter.

        Args:
            api_base_url: Versioned base URL (e.g., https://host/v1)
            device_id: Identity of the device sending the batches
            auth_token: Bearer token for the backup service
            policy: Retry policy
            timeout: Timeout per network attempt, in seconds
            transport: Optional httpx transport (tests use MockTransport)
            sleep: Coroutine used for backoff waits
            rng: Random source for jitter
            health_url: Health endpoint; defaults to ``health`` next to the
                API version segment (https://host/api/v1 -> https://host/api/health)
        """
        self.api_base_url = api_base_url.rstrip("/")
        self.health_url = health_url or str(httpx.URL(f"{self.api_base_url}/").join("../health"))
        self.device_id = device_id
        self.policy = policy or BackoffPolicy()
        self.timeout = timeout
        self._sleep = sleep
        self._rng = rng

        headers = {"User-Agent": f"msgvault-agent/{__version__}"}
        if auth_token:
            headers["Authorization"] = f"Bearer {auth_token}"

        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            headers=headers,
            transport=transport,
        )

    @property
    def batches_url(self) -> str:
        return f"{self.api_base_url}/backup/batches"

    def _payload(self, batch: DeliveryBatch) -> dict[str, Any]:
        return {
            "device_id": self.device_id,
            "idempotency_key": batch.idempotency_key,
            "records": [r.to_wire() for r in batch.records],
        }

    async def _attempt(self, batch: DeliveryBatch) -> AckReceipt:
        """One network attempt. Raises TransmitError on failure."""
        try:
            response = await self._client.post(
                self.batches_url,
                json=self._payload(batch),
                headers={"Idempotency-Key": batch.idempotency_key},
            )
        except httpx.HTTPError as e:
            raise classify_exception(e) from e

        error = classify_response(response)
        if error is not None:
            raise error
        return parse_receipt(batch, response)

    async def send(self, batch: DeliveryBatch) -> TransmitResult:
        """Send a batch, retrying transient failures.

        Args:
            batch: The batch to deliver

        Returns:
            TransmitResult in a terminal state: acknowledged (with receipt),
            rejected, or failed after exhausting the retry budget
        """
        state = next_state(BatchState.FORMED, BatchEvent.SEND)
        attempts = 0
        last_error: TransmitError | None = None

        while True:
            attempts += 1
            try:
                receipt = await self._attempt(batch)
            except RejectedBatch as e:
                state = next_state(state, BatchEvent.REJECTED)
                return TransmitResult(
                    state=state,
                    error=str(e),
                    status_code=e.status_code,
                    attempts=attempts,
                )
            except TransientTransmitError as e:
                last_error = e
                state = next_state(
                    state, BatchEvent.TRANSIENT_ERROR, attempts, self.policy.max_attempts
                )
                if state == BatchState.FAILED:
                    break

                delay = self.policy.delay_for(attempts, self._rng)
                logger.debug(
                    "Send failed, retrying: batch=%s, attempt=%d, delay=%.2fs, error=%s",
                    batch.idempotency_key, attempts, delay, e,
                )
                await self._sleep(delay)
                state = next_state(state, BatchEvent.RETRY)
                continue

            state = next_state(state, BatchEvent.ACK)
            return TransmitResult(state=state, receipt=receipt, attempts=attempts)

        return TransmitResult(
            state=state,
            error=str(last_error) if last_error else "Max retries exceeded",
            status_code=last_error.status_code if last_error else None,
            attempts=attempts,
        )

    async def check_server(self) -> bool:
        """Check if the backup service is reachable.

        Returns:
            True if the health endpoint answers 200, False otherwise
        """
        try:
            response = await self._client.get(self.health_url, timeout=httpx.Timeout(5.0))
            return response.status_code == 200
        except httpx.HTTPError:
            return False

    async def close(self) -> None:
        """Close the HTTP client and release resources."""
        await self._client.aclose()

    async def __aenter__(self) -> "Transmitter":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        await self.close()
