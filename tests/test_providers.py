"""Tests for delivery providers and the provider registry."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import aiosmtplib
import pytest

from automation_engine.errors import DeliveryFailure
from automation_engine.models import Channel, OutboundMessage
from automation_engine.providers import (
    DEFAULT_PROVIDER,
    BrevoProvider,
    ProviderRegistry,
    SenderProvider,
    SmtpProvider,
)

MESSAGE = OutboundMessage(
    to="lead@example.com",
    to_name="Lead",
    subject="Welcome",
    html="<p>Hi</p>",
    sender_email="news@acme.test",
    sender_name="Acme",
)


def _mock_session(status=200, body=None, post_side_effect=None):
    """Build a patched aiohttp.ClientSession returning one response."""
    resp = MagicMock()
    resp.status = status
    resp.json = AsyncMock(return_value=body if body is not None else {})

    session = MagicMock()
    if post_side_effect is not None:
        session.post = MagicMock(side_effect=post_side_effect)
    else:
        session.post = MagicMock(
            return_value=AsyncMock(
                __aenter__=AsyncMock(return_value=resp),
                __aexit__=AsyncMock(return_value=False),
            )
        )
    return AsyncMock(
        __aenter__=AsyncMock(return_value=session),
        __aexit__=AsyncMock(return_value=False),
    ), session


class TestCredentialValidation:
    """Credential checks are pure and never perform I/O."""

    def test_brevo_requires_api_key(self):
        provider = BrevoProvider()
        assert provider.validate_credentials({"api_key": "k"}) is True
        assert provider.validate_credentials({"api_key": "  "}) is False
        assert provider.validate_credentials({}) is False
        assert provider.validate_credentials(None) is False

    def test_smtp_accepts_user_alias(self):
        provider = SmtpProvider()
        assert provider.validate_credentials({"host": "h", "user": "u", "password": "p"}) is True
        assert provider.missing_fields({"host": "h"}) == ["username/user", "password"]

    def test_email_only_channels(self):
        for provider in (BrevoProvider(), SenderProvider(), SmtpProvider()):
            assert provider.supports(Channel.EMAIL)
            assert not provider.supports("sms")


class TestRegistry:
    def test_default_registry_contains_all_providers(self):
        registry = ProviderRegistry.default(timeout=5)
        assert registry.names() == ["brevo", "sender", "smtp"]
        assert DEFAULT_PROVIDER in registry
        assert registry.get("brevo").timeout == 5.0

    def test_unknown_or_empty_name_returns_none(self):
        registry = ProviderRegistry.default()
        assert registry.get("mailgun") is None
        assert registry.get(None) is None


class TestBrevoProvider:
    @pytest.mark.asyncio
    async def test_send_returns_message_id(self):
        session_cm, session = _mock_session(status=201, body={"messageId": "<abc@brevo>"})
        with patch("automation_engine.providers.http.aiohttp.ClientSession", return_value=session_cm):
            message_id = await BrevoProvider().send({"api_key": "secret"}, MESSAGE)

        assert message_id == "<abc@brevo>"
        _, kwargs = session.post.call_args
        assert kwargs["headers"]["api-key"] == "secret"
        assert kwargs["json"]["sender"] == {"email": "news@acme.test", "name": "Acme"}
        assert kwargs["json"]["to"] == [{"email": "lead@example.com", "name": "Lead"}]
        assert kwargs["json"]["htmlContent"] == "<p>Hi</p>"

    @pytest.mark.asyncio
    async def test_message_ids_list_is_accepted(self):
        session_cm, _ = _mock_session(body={"messageIds": ["m1", "m2"]})
        with patch("automation_engine.providers.http.aiohttp.ClientSession", return_value=session_cm):
            assert await BrevoProvider().send({"api_key": "k"}, MESSAGE) == "m1"

    @pytest.mark.asyncio
    async def test_http_error_raises_delivery_failure(self):
        session_cm, _ = _mock_session(status=401, body={"message": "Key not found"})
        with patch("automation_engine.providers.http.aiohttp.ClientSession", return_value=session_cm):
            with pytest.raises(DeliveryFailure, match=r"brevo API error \(401\): Key not found") as info:
                await BrevoProvider().send({"api_key": "bad"}, MESSAGE)
        assert info.value.timed_out is False
        assert info.value.provider == "brevo"

    @pytest.mark.asyncio
    async def test_accepted_answer_without_id_is_a_delivery(self):
        session_cm, _ = _mock_session(body={})
        with patch("automation_engine.providers.http.aiohttp.ClientSession", return_value=session_cm):
            assert await BrevoProvider().send({"api_key": "k"}, MESSAGE) == ""

    @pytest.mark.asyncio
    async def test_timeout_is_flagged(self):
        session_cm, _ = _mock_session(post_side_effect=asyncio.TimeoutError())
        with patch("automation_engine.providers.http.aiohttp.ClientSession", return_value=session_cm):
            with pytest.raises(DeliveryFailure) as info:
                await BrevoProvider(timeout=1).send({"api_key": "k"}, MESSAGE)
        assert info.value.timed_out is True

    @pytest.mark.asyncio
    async def test_client_error_raises_delivery_failure(self):
        session_cm, _ = _mock_session(post_side_effect=aiohttp.ClientConnectionError("refused"))
        with patch("automation_engine.providers.http.aiohttp.ClientSession", return_value=session_cm):
            with pytest.raises(DeliveryFailure, match="brevo request failed"):
                await BrevoProvider().send({"api_key": "k"}, MESSAGE)


class TestSenderProvider:
    @pytest.mark.asyncio
    async def test_send_reads_nested_id(self):
        session_cm, session = _mock_session(body={"success": True, "data": {"id": 42}})
        with patch("automation_engine.providers.http.aiohttp.ClientSession", return_value=session_cm):
            message_id = await SenderProvider().send({"api_key": "tok"}, MESSAGE)

        assert message_id == "42"
        _, kwargs = session.post.call_args
        assert kwargs["headers"]["Authorization"] == "Bearer tok"
        assert kwargs["json"]["from"]["email"] == "news@acme.test"
        assert kwargs["json"]["to"] == [{"email": "lead@example.com", "name": "Lead"}]

    @pytest.mark.asyncio
    async def test_accepted_answer_without_id_is_a_delivery(self):
        session_cm, _ = _mock_session(body={"success": True})
        with patch("automation_engine.providers.http.aiohttp.ClientSession", return_value=session_cm):
            assert await SenderProvider().send({"api_key": "tok"}, MESSAGE) == ""

    @pytest.mark.asyncio
    async def test_http_error_uses_answer_message(self):
        session_cm, _ = _mock_session(status=422, body={"message": "Sender not verified"})
        with patch("automation_engine.providers.http.aiohttp.ClientSession", return_value=session_cm):
            with pytest.raises(DeliveryFailure, match="Sender not verified"):
                await SenderProvider().send({"api_key": "tok"}, MESSAGE)


class TestSmtpProvider:
    CREDENTIALS = {"host": "smtp.acme.test", "port": 465, "username": "u", "password": "p"}

    @pytest.mark.asyncio
    async def test_send_over_implicit_tls(self):
        smtp = MagicMock()
        smtp.connect = AsyncMock()
        smtp.login = AsyncMock()
        smtp.send_message = AsyncMock()
        smtp.quit = AsyncMock()
        with patch("automation_engine.providers.smtp.aiosmtplib.SMTP", return_value=smtp) as smtp_cls:
            message_id = await SmtpProvider(timeout=5).send(self.CREDENTIALS, MESSAGE)

        _, kwargs = smtp_cls.call_args
        assert kwargs["use_tls"] is True
        assert kwargs["start_tls"] is False
        assert kwargs["hostname"] == "smtp.acme.test"
        smtp.login.assert_awaited_once_with("u", "p")
        sent = smtp.send_message.await_args.args[0]
        assert sent["Message-ID"] == message_id
        assert sent["To"] == "Lead <lead@example.com>"
        assert message_id.endswith("@acme.test>")
        smtp.quit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_submission_port_uses_starttls(self):
        smtp = MagicMock()
        smtp.connect = AsyncMock()
        smtp.login = AsyncMock()
        smtp.send_message = AsyncMock()
        smtp.quit = AsyncMock()
        credentials = dict(self.CREDENTIALS, port=587)
        with patch("automation_engine.providers.smtp.aiosmtplib.SMTP", return_value=smtp) as smtp_cls:
            await SmtpProvider().send(credentials, MESSAGE)

        _, kwargs = smtp_cls.call_args
        assert kwargs["use_tls"] is False
        assert kwargs["start_tls"] is True

    @pytest.mark.asyncio
    async def test_smtp_rejection_becomes_delivery_failure(self):
        smtp = MagicMock()
        smtp.connect = AsyncMock()
        smtp.login = AsyncMock(side_effect=aiosmtplib.SMTPAuthenticationError(535, "bad credentials"))
        smtp.quit = AsyncMock()
        with patch("automation_engine.providers.smtp.aiosmtplib.SMTP", return_value=smtp):
            with pytest.raises(DeliveryFailure, match="smtp delivery failed") as info:
                await SmtpProvider().send(self.CREDENTIALS, MESSAGE)
        assert info.value.timed_out is False
        smtp.close.assert_called_once_with()
        smtp.quit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_connection_refused_becomes_delivery_failure(self):
        smtp = MagicMock()
        smtp.connect = AsyncMock(side_effect=ConnectionRefusedError("refused"))
        with patch("automation_engine.providers.smtp.aiosmtplib.SMTP", return_value=smtp):
            with pytest.raises(DeliveryFailure, match="smtp connection failed"):
                await SmtpProvider().send(self.CREDENTIALS, MESSAGE)
        smtp.close.assert_called_once_with()
