"""
Unit tests for the payment gateway client.
"""
import base64
import dataclasses
import json
from typing import Callable, List

import httpx
import pytest
from tenacity import wait_none

from payment_orchestrator.config.settings import GatewayConfig
from payment_orchestrator.integrations.gateway_client import (
    CircuitBreaker,
    GatewayClient,
    GatewayError,
    GatewayErrorType,
)

Handler = Callable[[httpx.Request], httpx.Response]


def make_client(config: GatewayConfig, handler: Handler, **kwargs) -> GatewayClient:
    return GatewayClient(
        config,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        retry_wait=wait_none(),
        **kwargs,
    )


def scripted(responses: List[httpx.Response], seen: List[httpx.Request]) -> Handler:
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return responses[min(len(seen), len(responses)) - 1]

    return handler


class TestGatewayClient:
    """Test suite for GatewayClient."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_confirm_success(self, gateway_config: GatewayConfig) -> None:
        seen: List[httpx.Request] = []
        client = make_client(
            gateway_config,
            scripted([httpx.Response(200, json={"status": "DONE", "method": "CARD"})], seen),
        )

        result = await client.confirm("tgen_abc", "ORD-1", 39000)

        assert result.approved is True
        assert result.method == "CARD"
        assert result.raw["status"] == "DONE"

        request = seen[0]
        assert request.method == "POST"
        assert str(request.url) == "https://gateway.test/v1/payments/confirm"
        assert json.loads(request.content) == {
            "paymentKey": "tgen_abc",
            "orderId": "ORD-1",
            "amount": 39000,
        }
        expected_auth = base64.b64encode(b"test_sk_fake_key_for_testing:").decode()
        assert request.headers["Authorization"] == f"Basic {expected_auth}"
        assert request.headers["Idempotency-Key"] == "confirm:ORD-1:tgen_abc"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_confirm_virtual_account_waiting_is_approved(
        self, gateway_config: GatewayConfig
    ) -> None:
        client = make_client(
            gateway_config,
            scripted(
                [httpx.Response(200, json={"status": "WAITING_FOR_DEPOSIT", "method": "VIRTUAL_ACCOUNT"})],
                [],
            ),
        )
        result = await client.confirm("tgen_abc", "ORD-1", 39000)
        assert result.approved is True

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_confirm_unexpected_status_not_approved(
        self, gateway_config: GatewayConfig
    ) -> None:
        client = make_client(
            gateway_config,
            scripted([httpx.Response(200, json={"status": "ABORTED"})], []),
        )
        result = await client.confirm("tgen_abc", "ORD-1", 39000)
        assert result.approved is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [{}, [], {"message": "ok"}])
    async def test_confirm_success_without_status_not_approved(
        self, gateway_config: GatewayConfig, body: object
    ) -> None:
        client = make_client(gateway_config, scripted([httpx.Response(200, json=body)], []))

        result = await client.confirm("tgen_abc", "ORD-1", 39000)

        assert result.approved is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_permanent_rejection_is_not_retried(self, gateway_config: GatewayConfig) -> None:
        seen: List[httpx.Request] = []
        client = make_client(
            gateway_config,
            scripted(
                [httpx.Response(400, json={"code": "REJECT_CARD_COMPANY", "message": "Card declined"})],
                seen,
            ),
        )

        with pytest.raises(GatewayError) as exc_info:
            await client.confirm("tgen_abc", "ORD-1", 39000)

        error = exc_info.value
        assert error.code == "REJECT_CARD_COMPANY"
        assert error.message == "Card declined"
        assert error.status_code == 400
        assert error.error_type == GatewayErrorType.PERMANENT
        assert not error.is_retryable
        assert len(seen) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, gateway_config: GatewayConfig) -> None:
        seen: List[httpx.Request] = []
        client = make_client(
            gateway_config,
            scripted(
                [
                    httpx.Response(503, json={"code": "PROVIDER_ERROR", "message": "busy"}),
                    httpx.Response(200, json={"status": "DONE", "method": "CARD"}),
                ],
                seen,
            ),
        )

        result = await client.confirm("tgen_abc", "ORD-1", 39000)

        assert result.approved is True
        assert len(seen) == 2
        # Every attempt carries the same idempotency key
        assert {r.headers["Idempotency-Key"] for r in seen} == {"confirm:ORD-1:tgen_abc"}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_retry_budget_exhausted(self, gateway_config: GatewayConfig) -> None:
        seen: List[httpx.Request] = []
        client = make_client(gateway_config, scripted([httpx.Response(502)], seen))

        with pytest.raises(GatewayError) as exc_info:
            await client.confirm("tgen_abc", "ORD-1", 39000)

        assert exc_info.value.error_type == GatewayErrorType.TRANSIENT
        assert exc_info.value.code == "PROVIDER_ERROR"
        assert len(seen) == gateway_config.max_attempts

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rate_limit_classified(self, gateway_config: GatewayConfig) -> None:
        config = dataclasses.replace(gateway_config, max_attempts=1)
        client = make_client(config, scripted([httpx.Response(429)], []))

        with pytest.raises(GatewayError) as exc_info:
            await client.confirm("tgen_abc", "ORD-1", 39000)

        assert exc_info.value.error_type == GatewayErrorType.RATE_LIMIT
        assert exc_info.value.is_retryable

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transport_error_is_gateway_unavailable(
        self, gateway_config: GatewayConfig
    ) -> None:
        attempts: List[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(request)
            raise httpx.ConnectError("connection refused", request=request)

        client = make_client(gateway_config, handler)

        with pytest.raises(GatewayError) as exc_info:
            await client.confirm("tgen_abc", "ORD-1", 39000)

        assert exc_info.value.code == "GATEWAY_UNAVAILABLE"
        assert exc_info.value.status_code is None
        assert isinstance(exc_info.value.original_error, httpx.ConnectError)
        assert len(attempts) == gateway_config.max_attempts

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_non_json_success_is_gateway_unavailable(
        self, gateway_config: GatewayConfig
    ) -> None:
        config = dataclasses.replace(gateway_config, max_attempts=1)
        client = make_client(
            config, scripted([httpx.Response(200, text="<html>maintenance</html>")], [])
        )

        with pytest.raises(GatewayError) as exc_info:
            await client.confirm("tgen_abc", "ORD-1", 39000)

        assert exc_info.value.code == "GATEWAY_UNAVAILABLE"
        assert exc_info.value.is_retryable

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancel_request_format(self, gateway_config: GatewayConfig) -> None:
        seen: List[httpx.Request] = []
        client = make_client(
            gateway_config,
            scripted([httpx.Response(200, json={"status": "CANCELED"})], seen),
        )

        result = await client.cancel("tgen_abc", 39000, "Changed my mind")

        assert result.approved is True
        request = seen[0]
        assert str(request.url) == "https://gateway.test/v1/payments/tgen_abc/cancel"
        assert json.loads(request.content) == {
            "cancelReason": "Changed my mind",
            "cancelAmount": 39000,
        }
        assert request.headers["Idempotency-Key"] == "cancel:tgen_abc:39000"

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [{}, {"message": "ok"}])
    async def test_cancel_success_without_status_not_approved(
        self, gateway_config: GatewayConfig, body: object
    ) -> None:
        client = make_client(gateway_config, scripted([httpx.Response(200, json=body)], []))

        result = await client.cancel("tgen_abc", 39000, "reason")

        assert result.approved is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancel_already_canceled_code(self, gateway_config: GatewayConfig) -> None:
        client = make_client(
            gateway_config,
            scripted(
                [httpx.Response(400, json={"code": "ALREADY_CANCELED_PAYMENT", "message": "done"})],
                [],
            ),
        )

        with pytest.raises(GatewayError) as exc_info:
            await client.cancel("tgen_abc", 39000, "reason")

        assert exc_info.value.code == "ALREADY_CANCELED_PAYMENT"


class TestPaymentKeyClassification:
    """Test suite for payment key prefix checks."""

    @pytest.mark.unit
    def test_checkout_session_id(self, gateway_config: GatewayConfig) -> None:
        client = GatewayClient(gateway_config, http_client=httpx.AsyncClient())
        assert client.is_checkout_session_id("si_20250106abc")
        assert not client.is_checkout_session_id("tsi_20250106abc")
        assert not client.is_checkout_session_id("tgen_20250106abc")

    @pytest.mark.unit
    def test_test_mode_prefixes(self, gateway_config: GatewayConfig) -> None:
        client = GatewayClient(gateway_config, http_client=httpx.AsyncClient())
        assert client.is_captured_payment_key("tgen_abc")
        assert client.is_captured_payment_key("tsi_abc")
        assert client.is_captured_payment_key("test_abc")
        assert not client.is_captured_payment_key("pay_abc")

    @pytest.mark.unit
    def test_live_mode_prefixes(self, gateway_config: GatewayConfig) -> None:
        config = dataclasses.replace(gateway_config, secret_key="live_sk_fake")
        client = GatewayClient(config, http_client=httpx.AsyncClient())
        assert config.is_live
        assert client.is_captured_payment_key("tgen_abc")
        assert not client.is_captured_payment_key("tsi_abc")


class TestCircuitBreaker:
    """Test suite for CircuitBreaker."""

    @staticmethod
    async def _fail_transient() -> None:
        raise GatewayError("down", code="PROVIDER_ERROR", error_type=GatewayErrorType.TRANSIENT)

    @staticmethod
    async def _fail_permanent() -> None:
        raise GatewayError("declined", code="REJECT_CARD_COMPANY")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_opens_after_threshold(self) -> None:
        breaker = CircuitBreaker(failure_threshold=2, timeout=60)

        for _ in range(2):
            with pytest.raises(GatewayError):
                await breaker.call(self._fail_transient)

        assert breaker.state == "open"
        with pytest.raises(GatewayError) as exc_info:
            await breaker.call(self._fail_transient)
        assert exc_info.value.code == "GATEWAY_UNAVAILABLE"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_business_rejections_do_not_open(self) -> None:
        breaker = CircuitBreaker(failure_threshold=2, timeout=60)

        for _ in range(5):
            with pytest.raises(GatewayError):
                await breaker.call(self._fail_permanent)

        assert breaker.state == "closed"
        assert breaker.failure_count == 0
