"""
Blink GraphQL client implementing the ledger capability.

Implements:
- Invoice creation on the funnel wallet
- Intraledger transfers for merchant and tip legs
- Settlement detection by polling the funnel wallet's recent transactions
- Error classification, retry on invoice creation and a circuit breaker
"""
import asyncio
import time
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Set, TypeVar

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from forwarding_engine.config import Settings, get_settings
from forwarding_engine.integrations.ledger import (
    Invoice,
    LedgerError,
    LedgerErrorType,
    SettlementEvent,
    SettlementFilter,
    TransferResult,
    UpstreamUnavailable,
)
from forwarding_engine.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")

LN_INVOICE_CREATE = """
mutation LnInvoiceCreate($input: LnInvoiceCreateInput!) {
  lnInvoiceCreate(input: $input) {
    invoice {
      paymentRequest
      paymentHash
      satoshis
    }
    errors {
      message
    }
  }
}
"""

INTRA_LEDGER_PAYMENT_SEND = """
mutation IntraLedgerPaymentSend($input: IntraLedgerPaymentSendInput!) {
  intraLedgerPaymentSend(input: $input) {
    status
    errors {
      message
      code
    }
  }
}
"""

RECENT_TRANSACTIONS = """
query RecentTransactions($walletId: WalletId!, $first: Int) {
  me {
    defaultAccount {
      walletById(walletId: $walletId) {
        transactions(first: $first) {
          edges {
            node {
              id
              status
              direction
              settlementAmount
              createdAt
              initiationVia {
                ... on InitiationViaLn {
                  paymentHash
                }
              }
            }
          }
        }
      }
    }
  }
}
"""

GLOBALS = """
query Globals {
  globals {
    network
  }
}
"""


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, LedgerError) and error.retryable


class CircuitBreaker:
    """
    Circuit breaker for ledger API calls.

    Prevents cascading failures by temporarily stopping requests
    when consecutive failures exceed a threshold.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """
        Await a coroutine function with circuit breaker protection.

        Only transient and rate-limit failures count against the circuit;
        permanent errors mean the ledger answered.

        Raises:
            UpstreamUnavailable: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.monotonic() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open")
            else:
                raise UpstreamUnavailable("Circuit breaker is open")

        try:
            result = await func(*args, **kwargs)
        except LedgerError as e:
            if e.retryable:
                self.on_failure()
            else:
                self.on_success()
            raise
        self.on_success()
        return result

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(state)

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.monotonic()
        if self.state == "half_open" or self.failure_count >= self.failure_threshold:
            self._set_state("open")
            logger.warning(
                "circuit_breaker_opened",
                failure_count=self.failure_count,
            )


class PollingSettlementSubscription:
    """
    Settlement feed built on periodic transaction queries.

    Each transaction id is yielded at most once per subscription.
    """

    def __init__(
        self,
        client: "BlinkClient",
        settlement_filter: SettlementFilter,
        poll_interval: float,
        initial: List[SettlementEvent],
    ):
        self._client = client
        self._filter = settlement_filter
        self._poll_interval = poll_interval
        self._buffer = list(initial)
        self._seen: Set[str] = set()
        self._closed = False

    def __aiter__(self) -> AsyncIterator[SettlementEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[SettlementEvent]:
        while not self._closed:
            while self._buffer:
                event = self._buffer.pop(0)
                if event.notification_id in self._seen:
                    continue
                self._seen.add(event.notification_id)
                yield event
            await asyncio.sleep(self._poll_interval)
            if self._closed:
                break
            self._buffer.extend(await self._client.fetch_settlements(self._filter))

    async def close(self) -> None:
        self._closed = True


class BlinkClient:
    """
    Ledger provider backed by the Blink GraphQL API.

    Features:
    - Automatic retry with exponential backoff on invoice creation
    - Circuit breaker pattern
    - Comprehensive error classification
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize Blink client.

        Args:
            settings: Optional settings
            http_client: Optional preconfigured httpx client
        """
        self.settings = settings or get_settings()
        self._owns_http_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(
            timeout=self.settings.ledger_request_timeout
        )
        self.circuit_breaker = CircuitBreaker(
            failure_threshold=self.settings.circuit_breaker_failure_threshold,
            timeout=self.settings.circuit_breaker_timeout,
        )

        logger.info("blink_client_initialized", api_url=self.settings.ledger_api_url)

    @staticmethod
    def _classify_status(status_code: int) -> LedgerErrorType:
        """
        Classify an HTTP status for retry logic.

        Args:
            status_code: HTTP response status

        Returns:
            LedgerErrorType: Error classification
        """
        if status_code == 429:
            return LedgerErrorType.RATE_LIMIT
        elif status_code >= 500:
            return LedgerErrorType.TRANSIENT
        else:
            return LedgerErrorType.PERMANENT

    async def _post(self, operation: str, query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        start_time = time.monotonic()
        try:
            response = await self.http_client.post(
                self.settings.ledger_api_url,
                json={"query": query, "variables": variables},
                headers={
                    "Content-Type": "application/json",
                    "X-API-KEY": self.settings.ledger_api_key,
                },
            )
        except httpx.HTTPError as e:
            metrics.record_ledger_api_call(operation, "error", time.monotonic() - start_time)
            metrics.record_ledger_api_error(LedgerErrorType.TRANSIENT.value)
            logger.error("ledger_transport_error", operation=operation, error=str(e))
            raise UpstreamUnavailable(f"Ledger unreachable: {str(e)}", original_error=e)

        duration = time.monotonic() - start_time

        if response.status_code >= 400:
            error_type = self._classify_status(response.status_code)
            metrics.record_ledger_api_call(operation, "error", duration)
            metrics.record_ledger_api_error(error_type.value)
            logger.error(
                "ledger_api_error",
                operation=operation,
                status_code=response.status_code,
                error_type=error_type.value,
            )
            message = f"Ledger returned HTTP {response.status_code} for {operation}"
            if error_type == LedgerErrorType.TRANSIENT:
                raise UpstreamUnavailable(message)
            raise LedgerError(message, error_type)

        try:
            body = response.json()
        except ValueError as e:
            metrics.record_ledger_api_call(operation, "error", duration)
            raise UpstreamUnavailable(f"Malformed ledger response for {operation}", e)

        if body.get("errors"):
            metrics.record_ledger_api_call(operation, "error", duration)
            metrics.record_ledger_api_error(LedgerErrorType.PERMANENT.value)
            message = body["errors"][0].get("message", "Unknown GraphQL error")
            logger.error("ledger_graphql_error", operation=operation, error=message)
            raise LedgerError(message, LedgerErrorType.PERMANENT)

        metrics.record_ledger_api_call(operation, "success", duration)
        return body.get("data") or {}

    async def _execute(self, operation: str, query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        """
        Run a GraphQL operation through the circuit breaker.

        Args:
            operation: Operation name for logs and metrics
            query: GraphQL document
            variables: GraphQL variables

        Returns:
            Dict[str, Any]: The ``data`` member of the response

        Raises:
            UpstreamUnavailable: On transport errors, 5xx or an open circuit
            LedgerError: On rejected requests
        """
        return await self.circuit_breaker.call(self._post, operation, query, variables)

    @staticmethod
    def _payload_errors(payload: Dict[str, Any], operation: str) -> None:
        errors = payload.get("errors") or []
        if errors:
            message = errors[0].get("message", "Unknown error")
            logger.error("ledger_operation_rejected", operation=operation, error=message)
            raise LedgerError(message, LedgerErrorType.PERMANENT)

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    async def create_invoice(self, amount: int, memo: str) -> Invoice:
        """
        Create a Lightning invoice on the funnel wallet.

        Args:
            amount: Invoice amount in sats
            memo: Memo shown to the payer

        Returns:
            Invoice: Payment request, hash and expiry

        Raises:
            LedgerError: If invoice creation fails
        """
        logger.info("creating_invoice", amount=amount)

        expires_in_minutes = max(1, self.settings.invoice_expiry_seconds // 60)
        data = await self._execute(
            "ln_invoice_create",
            LN_INVOICE_CREATE,
            {
                "input": {
                    "walletId": self.settings.funnel_wallet_id,
                    "amount": amount,
                    "memo": memo,
                    "expiresIn": expires_in_minutes,
                }
            },
        )
        payload = data.get("lnInvoiceCreate") or {}
        self._payload_errors(payload, "ln_invoice_create")

        invoice = payload.get("invoice")
        if not invoice:
            raise LedgerError("Ledger returned no invoice", LedgerErrorType.PERMANENT)

        result = Invoice(
            invoice_ref=invoice["paymentRequest"],
            payment_hash=invoice["paymentHash"],
            expires_at=datetime.now(timezone.utc) + timedelta(minutes=expires_in_minutes),
        )
        logger.info("invoice_created", payment_hash=result.payment_hash, amount=amount)
        return result

    async def transfer(
        self,
        from_account: str,
        to_account: str,
        amount: int,
        memo: str = "",
        idempotency_key: Optional[str] = None,
    ) -> TransferResult:
        """
        Send an intraledger payment between two wallets.

        Not retried here; the orchestrator owns the retry budget per leg.

        Args:
            from_account: Source wallet id
            to_account: Recipient wallet id
            amount: Amount in sats
            memo: Transfer memo
            idempotency_key: Leg identifier, logged for correlation

        Returns:
            TransferResult: Transfer outcome

        Raises:
            LedgerError: If the ledger rejects or cannot process the transfer
        """
        logger.info(
            "sending_intraledger_payment",
            to_account=to_account,
            amount=amount,
            idempotency_key=idempotency_key,
        )

        data = await self._execute(
            "intraledger_payment_send",
            INTRA_LEDGER_PAYMENT_SEND,
            {
                "input": {
                    "walletId": from_account,
                    "recipientWalletId": to_account,
                    "amount": amount,
                    "memo": memo,
                }
            },
        )
        payload = data.get("intraLedgerPaymentSend") or {}
        self._payload_errors(payload, "intraledger_payment_send")

        status = payload.get("status", "FAILURE")
        if status not in ("SUCCESS", "ALREADY_PAID"):
            raise UpstreamUnavailable(f"Transfer returned status {status}")

        return TransferResult(success=True, transfer_id=idempotency_key, status=status)

    async def fetch_settlements(
        self, settlement_filter: SettlementFilter, first: int = 30
    ) -> List[SettlementEvent]:
        """
        Find settled receives on the funnel wallet matching a filter.

        Args:
            settlement_filter: Payment hashes of interest
            first: Number of recent transactions to scan

        Returns:
            List[SettlementEvent]: Matching settlements, oldest first
        """
        data = await self._execute(
            "recent_transactions",
            RECENT_TRANSACTIONS,
            {"walletId": self.settings.funnel_wallet_id, "first": first},
        )
        wallet = ((data.get("me") or {}).get("defaultAccount") or {}).get("walletById") or {}
        edges = (wallet.get("transactions") or {}).get("edges") or []

        events: List[SettlementEvent] = []
        for edge in edges:
            node = edge.get("node") or {}
            payment_hash = (node.get("initiationVia") or {}).get("paymentHash")
            if (
                node.get("direction") != "RECEIVE"
                or node.get("status") != "SUCCESS"
                or not payment_hash
                or not settlement_filter.matches(payment_hash)
            ):
                continue
            events.append(
                SettlementEvent(
                    notification_id=node["id"],
                    payment_hash=payment_hash,
                    amount=abs(int(node.get("settlementAmount") or 0)),
                    timestamp=datetime.fromtimestamp(
                        int(node.get("createdAt") or time.time()), tz=timezone.utc
                    ),
                    source="poll",
                )
            )
        events.reverse()
        return events

    async def subscribe_settlements(
        self, settlement_filter: SettlementFilter
    ) -> PollingSettlementSubscription:
        """
        Open a polling settlement subscription.

        The first poll happens immediately so connection failures surface
        here rather than mid-iteration.

        Args:
            settlement_filter: Payment hashes of interest

        Returns:
            PollingSettlementSubscription: Async iterable of settlements

        Raises:
            UpstreamUnavailable: If the ledger cannot be reached
        """
        initial = await self.fetch_settlements(settlement_filter)
        return PollingSettlementSubscription(
            self,
            settlement_filter,
            self.settings.listener_poll_interval,
            initial,
        )

    async def ping(self) -> Dict[str, Any]:
        """Cheap query used by health checks."""
        data = await self._execute("globals", GLOBALS, {})
        return data.get("globals") or {}

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_http_client:
            await self.http_client.aclose()
