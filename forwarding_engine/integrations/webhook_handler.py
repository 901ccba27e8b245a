"""
Ledger webhook handler with signature verification and event deduplication.

Implements:
- Svix webhook signature verification
- Event deduplication using Redis
- Translation of receive events into settlement notifications
"""
import base64
import binascii
import hashlib
import hmac
import json
import time
from typing import Any, Dict, Mapping, Optional, TYPE_CHECKING

import redis.asyncio as aioredis
import structlog

from forwarding_engine.config import Settings, get_settings
from forwarding_engine.core.records import utcnow
from forwarding_engine.integrations.ledger import SettlementEvent
from forwarding_engine.monitoring.metrics import metrics

if TYPE_CHECKING:
    from forwarding_engine.core.listener import SettlementListener

logger = structlog.get_logger(__name__)


class WebhookError(Exception):
    """Raised when a webhook cannot be authenticated or parsed."""

    pass


class WebhookHandler:
    """
    Handles ledger webhook deliveries.

    Features:
    - Signature verification (HMAC-SHA256 over ``{id}.{timestamp}.{body}``)
    - Event deduplication (processed delivery ids kept in Redis)
    - Settlement events handed to the listener's dispatch path
    """

    def __init__(
        self,
        listener: "SettlementListener",
        redis_client: Optional[aioredis.Redis] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize webhook handler.

        Args:
            listener: Listener whose dispatch path receives settlements
            redis_client: Optional Redis client for event deduplication
            settings: Optional settings
        """
        self.settings = settings or get_settings()
        self.listener = listener
        self.redis_client = redis_client
        self._owns_redis = redis_client is None

        logger.info("webhook_handler_initialized")

    async def _ensure_redis(self) -> aioredis.Redis:
        """Ensure Redis client is initialized."""
        if self.redis_client is None:
            self.redis_client = aioredis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self.redis_client

    @staticmethod
    def _secret_bytes(secret: str) -> bytes:
        try:
            return base64.b64decode(secret[len("whsec_"):] if secret.startswith("whsec_") else secret)
        except (binascii.Error, ValueError) as e:
            raise WebhookError(f"Webhook secret is not valid base64: {str(e)}")

    @classmethod
    def sign(cls, secret: str, message_id: str, timestamp: str, payload: bytes) -> str:
        """
        Compute the ``v1`` signature for a delivery.

        Args:
            secret: Signing secret (``whsec_...``)
            message_id: ``svix-id`` header
            timestamp: ``svix-timestamp`` header
            payload: Raw request body

        Returns:
            str: Base64 signature
        """
        signed_content = f"{message_id}.{timestamp}.".encode() + payload
        digest = hmac.new(cls._secret_bytes(secret), signed_content, hashlib.sha256).digest()
        return base64.b64encode(digest).decode()

    def verify_signature(
        self,
        payload: bytes,
        headers: Mapping[str, str],
        secret: Optional[str] = None,
        now: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Verify webhook signature and parse the body.

        Args:
            payload: Raw request body as bytes
            headers: Request headers (``svix-id``, ``svix-timestamp``, ``svix-signature``)
            secret: Optional webhook secret (uses config if not provided)
            now: Optional current unix time

        Returns:
            Dict[str, Any]: Parsed event with ``id`` set to the delivery id

        Raises:
            WebhookError: If the signature, timestamp or body is invalid, or if no
                secret is configured in production
        """
        webhook_secret = secret or self.settings.ledger_webhook_secret
        message_id = headers.get("svix-id")

        if webhook_secret is None:
            if self.settings.is_production:
                logger.error("webhook_secret_not_configured", message_id=message_id)
                raise WebhookError("Webhook secret is not configured")
            logger.warning("webhook_signature_unverified", message_id=message_id)
        else:
            timestamp = headers.get("svix-timestamp")
            signature_header = headers.get("svix-signature")
            if not message_id or not timestamp or not signature_header:
                logger.error("webhook_missing_signature_headers")
                raise WebhookError("Missing required webhook signature headers")

            try:
                timestamp_seconds = int(timestamp)
            except ValueError:
                raise WebhookError(f"Invalid webhook timestamp: {timestamp}")

            current = now if now is not None else time.time()
            if abs(current - timestamp_seconds) > self.settings.webhook_tolerance_seconds:
                logger.error(
                    "webhook_timestamp_outside_tolerance",
                    message_id=message_id,
                    difference=int(abs(current - timestamp_seconds)),
                )
                raise WebhookError("Webhook timestamp outside tolerance")

            expected = self.sign(webhook_secret, message_id, timestamp, payload).encode()
            verified = False
            for versioned in signature_header.split(" "):
                version, _, signature = versioned.partition(",")
                if version != "v1":
                    continue
                if hmac.compare_digest(signature.encode(), expected):
                    verified = True
                    break

            if not verified:
                logger.error("webhook_signature_verification_failed", message_id=message_id)
                raise WebhookError("Invalid webhook signature")

        try:
            event = json.loads(payload)
        except ValueError as e:
            raise WebhookError(f"Malformed webhook body: {str(e)}")
        if not isinstance(event, dict):
            raise WebhookError("Webhook body must be a JSON object")

        transaction = event.get("transaction") or {}
        event["id"] = message_id or transaction.get("id")
        if not event["id"]:
            raise WebhookError("Webhook delivery has no id")

        logger.info(
            "webhook_signature_verified",
            event_id=event["id"],
            event_type=event.get("eventType"),
        )
        return event

    def _dedup_key(self, event_id: str) -> str:
        return f"webhook:processed:{event_id}"

    async def is_event_processed(self, event_id: str) -> bool:
        """
        Check if a webhook delivery has already been processed.

        Args:
            event_id: Delivery id

        Returns:
            bool: True if already processed
        """
        try:
            redis = await self._ensure_redis()
            return bool(await redis.exists(self._dedup_key(event_id)))
        except Exception as e:
            logger.warning("webhook_dedup_check_error", error=str(e), event_id=event_id)
            # The claim still guards against double forwarding.
            return False

    async def mark_event_processed(self, event_id: str) -> None:
        """
        Mark a webhook delivery as processed.

        Args:
            event_id: Delivery id
        """
        try:
            redis = await self._ensure_redis()
            await redis.setex(self._dedup_key(event_id), self.settings.webhook_dedup_ttl, "1")
        except Exception as e:
            logger.warning("webhook_mark_processed_error", error=str(e), event_id=event_id)

    def _ignored(self, event_id: str, event_type: str, reason: str, start_time: float) -> Dict[str, Any]:
        metrics.record_webhook_event(event_type, "ignored", time.monotonic() - start_time)
        logger.info("webhook_event_ignored", event_id=event_id, event_type=event_type, reason=reason)
        return {"status": "ignored", "event_id": event_id, "reason": reason}

    async def process_event(self, event: Dict[str, Any]) -> Dict[str, Any]:
        """
        Process a verified webhook event.

        Args:
            event: Output of :meth:`verify_signature`

        Returns:
            Dict[str, Any]: Processing result

        Raises:
            Exception: Whatever settlement dispatch raised; the delivery is left
                unmarked so the provider's retry is processed
        """
        start_time = time.monotonic()
        event_id = event["id"]
        event_type = event.get("eventType") or "unknown"

        if await self.is_event_processed(event_id):
            metrics.record_webhook_event(event_type, "duplicate", time.monotonic() - start_time)
            logger.info("webhook_event_already_processed", event_id=event_id)
            return {"status": "duplicate", "event_id": event_id}

        transaction = event.get("transaction") or {}
        if not event_type.startswith("receive."):
            result = self._ignored(event_id, event_type, "not_a_receive_event", start_time)
        elif transaction.get("status") != "success":
            result = self._ignored(event_id, event_type, "transaction_not_successful", start_time)
        elif not (transaction.get("initiationVia") or {}).get("paymentHash"):
            result = self._ignored(event_id, event_type, "no_payment_hash", start_time)
        else:
            payment_hash = transaction["initiationVia"]["paymentHash"]
            settlement = SettlementEvent(
                notification_id=transaction.get("id") or event_id,
                payment_hash=payment_hash,
                amount=abs(int(transaction.get("settlementAmount") or 0)),
                timestamp=utcnow(),
                source="webhook",
            )
            outcome = await self.listener.dispatch(settlement)
            metrics.record_webhook_event(event_type, "success", time.monotonic() - start_time)
            result = {
                "status": "success" if outcome is not None else "duplicate",
                "event_id": event_id,
                "payment_hash": payment_hash,
                "claimed": outcome.claimed if outcome is not None else False,
                "payment_status": (
                    outcome.status.value if outcome is not None and outcome.status else None
                ),
            }
            logger.info("webhook_event_processed", **result)

        await self.mark_event_processed(event_id)
        return result

    async def close(self) -> None:
        """Close Redis connection if this handler created it."""
        if self.redis_client is not None and self._owns_redis:
            await self.redis_client.aclose()
            self.redis_client = None
