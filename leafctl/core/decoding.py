"""Pure decode/encode functions composed from catalog field records."""

from __future__ import annotations

import math
from collections.abc import Mapping, Sequence

from leafctl.core.errors import FrameParseError
from leafctl.core.model import Decoder, Encoder, FieldSpec, Number, Values

MAX_FIELD_BYTES = 4


def extract_int(data: bytes, start: int, end: int, *, signed: bool = False) -> int:
    """Big-endian integer from ``data[start:end]``."""
    if end - start > MAX_FIELD_BYTES:
        raise ValueError(f"Cannot extract more than {MAX_FIELD_BYTES} bytes")
    if start < 0 or end > len(data) or start >= end:
        raise FrameParseError(
            f"Field bytes [{start}, {end}) out of range for {len(data)}-byte body"
        )
    return int.from_bytes(data[start:end], "big", signed=signed)


def decode_field(spec: FieldSpec, body: bytes) -> Number:
    raw = extract_int(body, spec.start, spec.end, signed=spec.signed)
    if spec.mask is not None:
        raw &= spec.mask
    if spec.one_of:
        return raw in spec.one_of

    value: Number = raw
    if spec.scale != 1:
        value = value * spec.scale
    if spec.divisor != 1:
        value = value / spec.divisor
    if spec.truncate:
        value = int(value)
    if spec.offset:
        value = value + spec.offset
    return value


def encode_field(spec: FieldSpec, value: Number) -> bytes:
    if spec.one_of:
        raw = spec.one_of[0] if value else 0
    else:
        scaled = (value - spec.offset) * spec.divisor / spec.scale
        # Round up before truncating decoders so the round trip lands on ``value``.
        raw = math.ceil(scaled - 1e-9) if spec.truncate else round(scaled)
    return int(raw).to_bytes(spec.width, "big", signed=spec.signed)


def make_decoder(variants: Sequence[tuple[int, Sequence[FieldSpec]]]) -> Decoder:
    """Build a decoder choosing the longest layout whose minimum length fits.

    ``variants`` pairs a minimum body length with the fields of that layout.
    """
    ordered = sorted(variants, key=lambda item: item[0], reverse=True)

    def decode(body: bytes) -> Values:
        for min_length, fields in ordered:
            if len(body) >= min_length:
                return {spec.name: decode_field(spec, body) for spec in fields}
        shortest = ordered[-1][0] if ordered else 0
        raise FrameParseError(f"Response body of {len(body)} bytes is shorter than {shortest}")

    return decode


def make_encoder(fields: Sequence[FieldSpec], body_length: int) -> Encoder:
    def encode(values: Mapping[str, Number]) -> bytes:
        body = bytearray(body_length)
        for spec in fields:
            if spec.name not in values:
                continue
            body[spec.start : spec.end] = encode_field(spec, values[spec.name])
        return bytes(body)

    return encode
