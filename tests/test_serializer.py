"""Tests for the channel frame codec."""

import json

import pytest

from coview.transport.serializer import Message, decode, encode


class TestEncode:
    """Tests for encoding frames."""

    def test_field_order(self) -> None:
        """Frames are [join_ref, ref, topic, event, payload]."""
        message = Message(topic="room:abc", event="dom_full", payload={"html": "<p>"}, ref="7", join_ref="3")
        assert json.loads(encode(message)) == ["3", "7", "room:abc", "dom_full", {"html": "<p>"}]

    def test_compact_and_null_refs(self) -> None:
        """Missing refs encode as null without extra whitespace."""
        encoded = encode(Message(topic="phoenix", event="heartbeat", ref="1"))
        assert encoded == '[null,"1","phoenix","heartbeat",{}]'


class TestDecode:
    """Tests for decoding frames."""

    def test_decode_reply(self) -> None:
        raw = '["1","2","room:abc","phx_reply",{"status":"ok","response":{}}]'
        message = decode(raw)
        assert message.join_ref == "1"
        assert message.ref == "2"
        assert message.topic == "room:abc"
        assert message.event == "phx_reply"
        assert message.payload == {"status": "ok", "response": {}}

    def test_decode_broadcast_without_refs(self) -> None:
        message = decode('[null,null,"room:abc","scroll_to",{"x":0,"y":10}]')
        assert message.ref is None
        assert message.join_ref is None
        assert message.payload == {"x": 0, "y": 10}

    @pytest.mark.parametrize("raw", ['{"event":"x"}', '["a","b"]', "not json"])
    def test_decode_rejects_malformed_frames(self, raw: str) -> None:
        with pytest.raises(ValueError):
            decode(raw)
