"""
Tests for ledger webhook verification and processing.
"""
import json
import time
from typing import Any, Dict, Optional

import pytest

from forwarding_engine.core.services import ForwardingServices
from forwarding_engine.core.states import PaymentStatus
from forwarding_engine.integrations.webhook_handler import WebhookError, WebhookHandler

from tests.conftest import WEBHOOK_SECRET
from tests.fakes import FakeLedger, new_payment


def receive_event(
    payment_hash: str,
    amount: int = 110,
    status: str = "success",
    event_type: str = "receive.lightning",
    transaction_id: str = "tx-webhook-1",
) -> Dict[str, Any]:
    return {
        "accountId": "funnel-account",
        "eventType": event_type,
        "walletId": "funnel-wallet",
        "transaction": {
            "id": transaction_id,
            "status": status,
            "settlementAmount": amount,
            "initiationVia": {"type": "Lightning", "paymentHash": payment_hash},
        },
    }


def signed_headers(
    payload: bytes,
    message_id: str = "msg_1",
    timestamp: Optional[int] = None,
    secret: str = WEBHOOK_SECRET,
) -> Dict[str, str]:
    ts = str(timestamp if timestamp is not None else int(time.time()))
    return {
        "svix-id": message_id,
        "svix-timestamp": ts,
        "svix-signature": f"v1,{WebhookHandler.sign(secret, message_id, ts, payload)}",
    }


class TestSignatureVerification:
    """Test suite for verify_signature."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_valid_signature_returns_event_with_delivery_id(
        self, services: ForwardingServices
    ) -> None:
        payload = json.dumps(receive_event("a" * 64)).encode()

        event = services.webhooks.verify_signature(payload, signed_headers(payload))

        assert event["id"] == "msg_1"
        assert event["transaction"]["initiationVia"]["paymentHash"] == "a" * 64

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_any_matching_signature_in_header_is_accepted(
        self, services: ForwardingServices
    ) -> None:
        payload = b'{"eventType": "receive.lightning"}'
        headers = signed_headers(payload)
        headers["svix-signature"] = "v1,bm90LWl0 " + headers["svix-signature"]

        event = services.webhooks.verify_signature(payload, headers)

        assert event["eventType"] == "receive.lightning"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_tampered_body_rejected(self, services: ForwardingServices) -> None:
        payload = json.dumps(receive_event("a" * 64)).encode()
        headers = signed_headers(payload)

        with pytest.raises(WebhookError, match="Invalid webhook signature"):
            services.webhooks.verify_signature(payload.replace(b"110", b"999"), headers)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_wrong_secret_rejected(self, services: ForwardingServices) -> None:
        payload = b"{}"
        headers = signed_headers(payload, secret="whsec_b3RoZXItc2VjcmV0")

        with pytest.raises(WebhookError, match="Invalid webhook signature"):
            services.webhooks.verify_signature(payload, headers)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stale_timestamp_rejected(self, services: ForwardingServices) -> None:
        payload = b"{}"
        headers = signed_headers(payload, timestamp=int(time.time()) - 3600)

        with pytest.raises(WebhookError, match="outside tolerance"):
            services.webhooks.verify_signature(payload, headers)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_headers_rejected(self, services: ForwardingServices) -> None:
        with pytest.raises(WebhookError, match="Missing required"):
            services.webhooks.verify_signature(b"{}", {"svix-id": "msg_1"})

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_malformed_body_rejected(self, services: ForwardingServices) -> None:
        payload = b"not json"

        with pytest.raises(WebhookError, match="Malformed webhook body"):
            services.webhooks.verify_signature(payload, signed_headers(payload))

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unsigned_delivery_accepted_without_secret(
        self, services: ForwardingServices, test_settings
    ) -> None:
        handler = WebhookHandler(
            services.listener,
            redis_client=services.redis_client,
            settings=test_settings.model_copy(update={"ledger_webhook_secret": None}),
        )
        payload = json.dumps(receive_event("a" * 64, transaction_id="tx-9")).encode()

        event = handler.verify_signature(payload, {})

        assert event["id"] == "tx-9"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unsigned_delivery_rejected_in_production(
        self, services: ForwardingServices, test_settings
    ) -> None:
        handler = WebhookHandler(
            services.listener,
            redis_client=services.redis_client,
            settings=test_settings.model_copy(
                update={"ledger_webhook_secret": None, "app_env": "production"}
            ),
        )
        payload = json.dumps(receive_event("a" * 64)).encode()

        with pytest.raises(WebhookError, match="secret is not configured"):
            handler.verify_signature(payload, {})


class TestProcessEvent:
    """Test suite for process_event."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_receive_event_forwards_payment(
        self, services: ForwardingServices, ledger: FakeLedger
    ) -> None:
        record = await services.store.create_pending(new_payment())
        event = dict(receive_event(record.payment_hash), id="msg_1")

        result = await services.webhooks.process_event(event)

        assert result["status"] == "success"
        assert result["claimed"] is True
        assert result["payment_status"] == PaymentStatus.COMPLETED.value
        assert ledger.received("merchant-wallet") == 100

        events = await services.store.list_events(record.payment_hash)
        assert events[1].payload["source"] == "webhook"
        assert events[1].payload["notification_id"] == "tx-webhook-1"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_redelivered_webhook_is_duplicate(
        self, services: ForwardingServices, ledger: FakeLedger
    ) -> None:
        record = await services.store.create_pending(new_payment())
        event = dict(receive_event(record.payment_hash), id="msg_1")

        await services.webhooks.process_event(event)
        again = await services.webhooks.process_event(dict(event))

        assert again["status"] == "duplicate"
        assert len(ledger.transfers) == 2

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_webhook_after_redrive_does_not_reforward(
        self, services: ForwardingServices, ledger: FakeLedger
    ) -> None:
        record = await services.store.create_pending(new_payment())
        await services.payments.redrive(record.payment_hash)

        result = await services.webhooks.process_event(
            dict(receive_event(record.payment_hash), id="msg_2")
        )

        assert result["status"] == "success"
        assert result["claimed"] is False
        assert len(ledger.transfers) == 2

    @pytest.mark.integration
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "overrides, reason",
        [
            ({"event_type": "send.lightning"}, "not_a_receive_event"),
            ({"status": "pending"}, "transaction_not_successful"),
        ],
    )
    async def test_irrelevant_events_ignored(
        self, services: ForwardingServices, ledger: FakeLedger, overrides, reason
    ) -> None:
        event = dict(receive_event("a" * 64, **overrides), id="msg_3")

        result = await services.webhooks.process_event(event)

        assert result == {"status": "ignored", "event_id": "msg_3", "reason": reason}
        assert ledger.transfer_attempts == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_event_without_payment_hash_ignored(self, services: ForwardingServices) -> None:
        event = dict(receive_event("a" * 64), id="msg_4")
        event["transaction"]["initiationVia"] = {"type": "OnChain"}

        result = await services.webhooks.process_event(event)

        assert result["reason"] == "no_payment_hash"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_failed_dispatch_leaves_delivery_unmarked(
        self, services: ForwardingServices, mocker
    ) -> None:
        mocker.patch.object(
            services.listener, "dispatch", side_effect=RuntimeError("database unavailable")
        )
        event = dict(receive_event("a" * 64), id="msg_5")

        with pytest.raises(RuntimeError):
            await services.webhooks.process_event(event)

        assert not await services.webhooks.is_event_processed("msg_5")
