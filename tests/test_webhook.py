import hashlib
import hmac
import json
from unittest.mock import MagicMock, patch

import pytest
import requests

from ltcpay_node import STATUS_COMPLETED, CompletionWebhook, ConfirmationTracker, Payment, WebhookError

PAYMENT = Payment(id="p1", address="ltc1qexample", encrypted_key="00", amount_sats=150_000_000,
                  status=STATUS_COMPLETED, created_at=10, updated_at=20)


def test_body_describes_completed_payment():
    body = json.loads(CompletionWebhook("https://merchant.example/hook", "s3cret").build_body(PAYMENT))

    assert body["event"] == "payment.completed"
    assert body["payment"]["id"] == "p1"
    assert body["payment"]["amount"] == "1.50000000"
    assert body["payment"]["amount_sats"] == 150_000_000
    assert "encrypted_key" not in body["payment"]


@patch("ltcpay_node.requests.post")
def test_send_signs_body_with_hmac(mock_post):
    """X-Signature is hex HMAC-SHA256 of the exact bytes posted."""
    mock_post.return_value = MagicMock(ok=True, status_code=200)
    webhook = CompletionWebhook("https://merchant.example/hook", "s3cret", timeout=3)

    webhook.send(PAYMENT)

    args, kwargs = mock_post.call_args
    assert args[0] == "https://merchant.example/hook"
    expected = hmac.new(b"s3cret", kwargs["data"], hashlib.sha256).hexdigest()
    assert kwargs["headers"]["X-Signature"] == expected
    assert kwargs["headers"]["Content-Type"] == "application/json"
    assert kwargs["timeout"] == 3


@patch("ltcpay_node.requests.post")
def test_non_2xx_is_webhook_error(mock_post):
    mock_post.return_value = MagicMock(ok=False, status_code=500, text="down")

    with pytest.raises(WebhookError):
        CompletionWebhook("https://merchant.example/hook", "s3cret").send(PAYMENT)


@pytest.mark.asyncio
async def test_webhook_failure_keeps_completion(service, store, chain):
    created = service.create_payment(1000)
    chain.fund(created["address"], 1000, 990)
    webhook = MagicMock()
    webhook.send.side_effect = requests.ConnectionError("refused")
    tracker = ConfirmationTracker(chain, store, confirmations_required=2, webhook=webhook)

    assert await tracker.evaluate(store.get(created["id"])) == STATUS_COMPLETED
    assert store.get(created["id"]).status == STATUS_COMPLETED
    webhook.send.assert_called_once()
