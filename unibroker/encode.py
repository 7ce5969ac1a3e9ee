"""Payload encoding for broker messages.

``json`` encodes structured values with msgspec; ``bytes`` payloads pass
through untouched so binary messages can share a JSON-configured broker.
``raw`` only accepts ``bytes``/``str`` and never decodes inbound bodies.
"""

import msgspec
import typing as t

__all__ = ["ENCODINGS", "PayloadEncoding", "decode_payload", "encode_payload"]

PayloadEncoding = t.Literal["json", "raw"]

ENCODINGS: tuple[str, ...] = t.get_args(PayloadEncoding)

_json_encoder = msgspec.json.Encoder()
_json_decoder = msgspec.json.Decoder()


def encode_payload(payload: t.Any, encoding: PayloadEncoding = "json") -> bytes:
    """Encode ``payload`` to bytes.

    Raises:
        TypeError: payload type is not supported by the encoding
        msgspec.EncodeError: payload could not be serialized
    """
    if isinstance(payload, bytes | bytearray | memoryview):
        return bytes(payload)
    if encoding == "raw":
        if isinstance(payload, str):
            return payload.encode()
        msg = f"raw encoding accepts bytes or str, got {type(payload).__name__}"
        raise TypeError(msg)
    return _json_encoder.encode(payload)


def decode_payload(body: bytes, encoding: PayloadEncoding = "json") -> t.Any:
    """Decode an inbound message body.

    Raises:
        msgspec.DecodeError: body is not valid for the encoding
    """
    if encoding == "raw":
        return body
    return _json_decoder.decode(body)
