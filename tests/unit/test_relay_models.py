"""Tests for src/relay/models.py: Envelope codec, SubscriberConnection, BroadcastResult."""

import asyncio
import base64
import json
from dataclasses import FrozenInstanceError
from unittest.mock import AsyncMock

import pytest

from src.relay.models import (
    BroadcastResult,
    Envelope,
    EnvelopeDecodeError,
    SubscriberConnection,
    decode_envelope,
    encode_envelope,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_envelope(**overrides) -> Envelope:
    """Create an Envelope with sensible defaults for testing."""
    defaults = dict(
        source_url="https://relay.example.com/hook/abc?x=1",
        method="POST",
        headers={"Content-Type": "application/json"},
        body=b'{"event": "push"}',
    )
    defaults.update(overrides)
    return Envelope(**defaults)


def _wire(**overrides) -> str:
    data = {
        "url": "https://relay.example.com/hook",
        "method": "POST",
        "headers": {},
        "body": None,
    }
    data.update(overrides)
    return json.dumps(data)


# ===========================================================================
# Envelope
# ===========================================================================


class TestEnvelope:
    """Test Envelope construction."""

    def test_header_names_lowercased(self):
        """Header names should be normalized to lower case."""
        envelope = _make_envelope(headers={"Content-Type": "text/plain", "X-GitHub-Event": "push"})
        assert dict(envelope.headers) == {"content-type": "text/plain", "x-github-event": "push"}

    def test_duplicate_header_last_wins(self):
        """When two names differ only by case, the last value should win."""
        envelope = _make_envelope(headers={"X-Token": "first", "x-token": "second"})
        assert envelope.headers["x-token"] == "second"
        assert len(envelope.headers) == 1

    def test_envelope_is_immutable(self):
        """Fields cannot be reassigned once constructed."""
        envelope = _make_envelope()
        with pytest.raises(FrozenInstanceError):
            envelope.method = "GET"

    def test_headers_are_read_only(self):
        """The headers mapping cannot be mutated."""
        envelope = _make_envelope()
        with pytest.raises(TypeError):
            envelope.headers["x-new"] = "value"

    def test_headers_copied_from_source(self):
        """Mutating the source dict does not change the envelope."""
        headers = {"x-a": "1"}
        envelope = _make_envelope(headers=headers)
        headers["x-a"] = "2"
        assert envelope.headers["x-a"] == "1"

    def test_bytearray_body_converted(self):
        """A bytearray body is stored as immutable bytes."""
        envelope = _make_envelope(body=bytearray(b"abc"))
        assert envelope.body == b"abc"
        assert isinstance(envelope.body, bytes)

    def test_content_type_default(self):
        """content_type is empty when the header is missing."""
        assert _make_envelope(headers={}).content_type == ""


# ===========================================================================
# Codec
# ===========================================================================


class TestEnvelopeCodec:
    """Test encode_envelope / decode_envelope."""

    def test_wire_format_fields(self):
        """Encoded payload should carry url, method, headers and base64 body."""
        envelope = _make_envelope()
        data = json.loads(encode_envelope(envelope))

        assert data == {
            "url": "https://relay.example.com/hook/abc?x=1",
            "method": "POST",
            "headers": {"content-type": "application/json"},
            "body": base64.b64encode(b'{"event": "push"}').decode("ascii"),
        }

    def test_round_trip(self):
        """decode(encode(e)) should equal e."""
        envelope = _make_envelope(headers={"X-Signature": "sha256=abc"})
        assert decode_envelope(encode_envelope(envelope)) == envelope

    def test_binary_body_round_trip(self):
        """Every byte value survives the round trip."""
        body = bytes(range(256)) + b"\x00\xff\xfe"
        envelope = _make_envelope(body=body, headers={"content-type": "application/octet-stream"})

        decoded = decode_envelope(encode_envelope(envelope))
        assert decoded.body == body

    def test_absent_body_encodes_to_null(self):
        """An absent body is encoded as JSON null."""
        envelope = _make_envelope(body=None)
        assert json.loads(encode_envelope(envelope))["body"] is None
        assert decode_envelope(encode_envelope(envelope)).body is None

    def test_empty_body_distinct_from_absent(self):
        """An empty body stays empty, not absent."""
        envelope = _make_envelope(body=b"")
        data = json.loads(encode_envelope(envelope))
        assert data["body"] == ""

        decoded = decode_envelope(encode_envelope(envelope))
        assert decoded.body == b""
        assert decoded.body is not None

    def test_decode_accepts_bytes(self):
        """decode_envelope accepts a UTF-8 encoded payload."""
        envelope = decode_envelope(_wire(method="PUT").encode("utf-8"))
        assert envelope.method == "PUT"

    def test_method_case_preserved(self):
        """The method is passed through as received."""
        envelope = decode_envelope(_wire(method="patch"))
        assert envelope.method == "patch"

    def test_missing_body_key_is_absent(self):
        """A payload without a body key decodes to an absent body."""
        payload = json.dumps({"url": "https://a.example/", "method": "GET", "headers": {}})
        assert decode_envelope(payload).body is None


class TestEnvelopeDecodeErrors:
    """Test decode_envelope rejects malformed payloads."""

    def test_decode_error_is_value_error(self):
        """EnvelopeDecodeError should be a ValueError."""
        assert issubclass(EnvelopeDecodeError, ValueError)

    @pytest.mark.parametrize(
        "payload",
        [
            "not json",
            "",
            "{",
            b"\x80abc",
        ],
    )
    def test_invalid_json(self, payload):
        """Non-JSON payloads raise EnvelopeDecodeError."""
        with pytest.raises(EnvelopeDecodeError):
            decode_envelope(payload)

    @pytest.mark.parametrize("payload", ["[]", '"text"', "42", "null"])
    def test_non_object(self, payload):
        """Top-level values other than objects are rejected."""
        with pytest.raises(EnvelopeDecodeError, match="JSON object"):
            decode_envelope(payload)

    def test_missing_url(self):
        """A missing url is rejected."""
        payload = json.dumps({"method": "POST", "headers": {}, "body": None})
        with pytest.raises(EnvelopeDecodeError, match="url"):
            decode_envelope(payload)

    def test_non_string_method(self):
        """A non-string method is rejected."""
        with pytest.raises(EnvelopeDecodeError, match="method"):
            decode_envelope(_wire(method=1))

    def test_headers_not_object(self):
        """Headers must be an object."""
        with pytest.raises(EnvelopeDecodeError, match="headers"):
            decode_envelope(_wire(headers=["a", "b"]))

    def test_non_string_header_value(self):
        """Header values must be strings."""
        with pytest.raises(EnvelopeDecodeError, match="x-count"):
            decode_envelope(_wire(headers={"x-count": 3}))

    def test_invalid_base64_body(self):
        """A body that is not valid base64 is rejected."""
        with pytest.raises(EnvelopeDecodeError, match="base64"):
            decode_envelope(_wire(body="not base64!!"))

    def test_non_string_body(self):
        """A body that is neither null nor a string is rejected."""
        with pytest.raises(EnvelopeDecodeError, match="body"):
            decode_envelope(_wire(body=123))


# ===========================================================================
# SubscriberConnection
# ===========================================================================


class TestSubscriberConnection:
    """Test SubscriberConnection."""

    @pytest.mark.asyncio
    async def test_send_updates_counters(self):
        """send() should call send_fn and record the message."""
        send_fn = AsyncMock()
        conn = SubscriberConnection(connection_id="wsc_1", send_fn=send_fn)

        await conn.send("hello")

        send_fn.assert_awaited_once_with("hello")
        assert conn.messages_sent == 1
        assert conn.last_message_at is not None

    @pytest.mark.asyncio
    async def test_sends_are_serialized(self):
        """Concurrent sends on one channel never overlap and keep call order."""
        active = 0
        max_active = 0
        received = []

        async def send_fn(message):
            nonlocal active, max_active
            active += 1
            max_active = max(max_active, active)
            await asyncio.sleep(0.01)
            received.append(message)
            active -= 1

        conn = SubscriberConnection(connection_id="wsc_1", send_fn=send_fn)
        await asyncio.gather(*(conn.send(f"m{i}") for i in range(5)))

        assert max_active == 1
        assert received == [f"m{i}" for i in range(5)]

    @pytest.mark.asyncio
    async def test_failed_send_not_counted(self):
        """A send that raises does not increment messages_sent."""
        conn = SubscriberConnection(
            connection_id="wsc_1", send_fn=AsyncMock(side_effect=RuntimeError("gone"))
        )
        with pytest.raises(RuntimeError):
            await conn.send("hello")
        assert conn.messages_sent == 0

    @pytest.mark.asyncio
    async def test_close_calls_close_fn(self):
        """close() forwards code and reason."""
        close_fn = AsyncMock()
        conn = SubscriberConnection(connection_id="wsc_1", send_fn=AsyncMock(), close_fn=close_fn)

        await conn.close(1001, "bye")

        close_fn.assert_awaited_once_with(1001, "bye")

    @pytest.mark.asyncio
    async def test_close_without_close_fn(self):
        """close() is a no-op when no close_fn is set."""
        conn = SubscriberConnection(connection_id="wsc_1", send_fn=AsyncMock())
        await conn.close()

    def test_to_dict(self):
        """to_dict exposes identity and counters."""
        conn = SubscriberConnection(
            connection_id="wsc_1", send_fn=AsyncMock(), remote_ip="10.0.0.1"
        )
        data = conn.to_dict()
        assert data["connection_id"] == "wsc_1"
        assert data["remote_ip"] == "10.0.0.1"
        assert data["messages_sent"] == 0
        assert data["last_message_at"] is None


class TestBroadcastResult:
    """Test BroadcastResult."""

    def test_attempted(self):
        result = BroadcastResult(delivered=["a", "b"], failed=["c"])
        assert result.attempted == 3
        assert result.to_dict() == {"attempted": 3, "delivered": 2, "failed": 1}

    def test_empty(self):
        assert BroadcastResult().attempted == 0
