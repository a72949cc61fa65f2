from __future__ import annotations

import base64
import hashlib
import hmac

import pytest

from taskcoda.core.errors import WebhookVerificationError
from taskcoda.services.subscriptions import sign_webhook_payload, verify_webhook_signature


_SECRET = "whsec_unit-test-secret"
_BODY = b'{"type":"subscription.active","data":{"id":"sub_1"}}'
_NOW = 1_800_000_000


def test_valid_signature_verifies() -> None:
    headers = sign_webhook_payload(_BODY, _SECRET, msg_id="msg_1", timestamp=_NOW)
    verify_webhook_signature(_BODY, headers, _SECRET, now=_NOW)


def test_any_matching_entry_is_accepted() -> None:
    headers = sign_webhook_payload(_BODY, _SECRET, msg_id="msg_1", timestamp=_NOW)
    headers["webhook-signature"] = f"v1,bm90LWEtbWF0Y2g= {headers['webhook-signature']}"
    verify_webhook_signature(_BODY, headers, _SECRET, now=_NOW)


def test_tampered_body_is_rejected() -> None:
    headers = sign_webhook_payload(_BODY, _SECRET, msg_id="msg_1", timestamp=_NOW)
    with pytest.raises(WebhookVerificationError):
        verify_webhook_signature(_BODY.replace(b"active", b"revoked"), headers, _SECRET, now=_NOW)


def test_wrong_secret_is_rejected() -> None:
    headers = sign_webhook_payload(_BODY, "whsec_other", msg_id="msg_1", timestamp=_NOW)
    with pytest.raises(WebhookVerificationError):
        verify_webhook_signature(_BODY, headers, _SECRET, now=_NOW)


def test_stale_and_future_timestamps_are_rejected() -> None:
    stale = sign_webhook_payload(_BODY, _SECRET, msg_id="msg_1", timestamp=_NOW - 301)
    with pytest.raises(WebhookVerificationError, match="too old"):
        verify_webhook_signature(_BODY, stale, _SECRET, now=_NOW)

    future = sign_webhook_payload(_BODY, _SECRET, msg_id="msg_1", timestamp=_NOW + 301)
    with pytest.raises(WebhookVerificationError, match="too new"):
        verify_webhook_signature(_BODY, future, _SECRET, now=_NOW)


def test_missing_headers_are_rejected() -> None:
    headers = sign_webhook_payload(_BODY, _SECRET, msg_id="msg_1", timestamp=_NOW)
    del headers["webhook-id"]
    with pytest.raises(WebhookVerificationError, match="Missing"):
        verify_webhook_signature(_BODY, headers, _SECRET, now=_NOW)


def test_provider_signed_delivery_verifies_with_prefixed_secret() -> None:
    # Sign the way Polar does: HMAC-SHA256 keyed by the whole secret text.
    to_sign = f"msg_polar.{_NOW}.".encode("utf-8") + _BODY
    digest = hmac.new(_SECRET.encode("utf-8"), to_sign, hashlib.sha256).digest()
    headers = {
        "webhook-id": "msg_polar",
        "webhook-timestamp": str(_NOW),
        "webhook-signature": "v1," + base64.b64encode(digest).decode("ascii"),
    }
    verify_webhook_signature(_BODY, headers, _SECRET, now=_NOW)


def test_signature_keyed_without_prefix_is_rejected() -> None:
    to_sign = f"msg_polar.{_NOW}.".encode("utf-8") + _BODY
    digest = hmac.new(b"unit-test-secret", to_sign, hashlib.sha256).digest()
    headers = {
        "webhook-id": "msg_polar",
        "webhook-timestamp": str(_NOW),
        "webhook-signature": "v1," + base64.b64encode(digest).decode("ascii"),
    }
    with pytest.raises(WebhookVerificationError):
        verify_webhook_signature(_BODY, headers, _SECRET, now=_NOW)
