"""HMAC-SHA256 signatures of webhook deliveries.

A signature header looks like:

    t=1636936200,v1=1b3d69df...,h=hook0-event-id hook0-event-type

The v1 digest covers the timestamp, the names and values of the signed
headers, and the raw payload bytes:

    "{t}.{names joined by ' '}.{values joined by '.'}.{payload}"

When no headers are signed the canonical string is simply "{t}.{payload}"
and the h field is omitted. Legacy v0 signatures always use "{t}.{payload}".
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from hook0.exceptions import SignatureError

logger = logging.getLogger(__name__)

PAYLOAD_SEPARATOR = b"."
PART_SEPARATOR = ","
PART_ASSIGNATOR = "="
HEADER_NAMES_SEPARATOR = " "
HEADER_VALUES_SEPARATOR = "."

DEFAULT_TOLERANCE_SECONDS = 300


@dataclass(frozen=True)
class Signature:
    """Parsed signature header.

    Attributes:
        timestamp: Unix timestamp the signature was computed at.
        v1: v1 digest (covers signed headers).
        v0: Legacy v0 digest (payload only).
        header_names: Lowercased names of the headers covered by v1.
    """

    timestamp: int
    v1: bytes | None = None
    v0: bytes | None = None
    header_names: tuple[str, ...] = ()

    @classmethod
    def parse(cls, value: str) -> Signature:
        """Parse a signature header value.

        Raises:
            SignatureError: If the timestamp is missing or invalid, a digest is
                not valid hex, or neither v0 nor v1 is present.
        """
        parts: dict[str, str] = {}
        for part in value.split(PART_SEPARATOR):
            key, sep, field_value = part.partition(PART_ASSIGNATOR)
            if sep:
                parts[key.strip()] = field_value.strip()

        raw_timestamp = parts.get("t")
        if raw_timestamp is None:
            raise SignatureError("Missing 't' field in signature")
        try:
            timestamp = int(raw_timestamp)
        except ValueError as e:
            raise SignatureError(f"Invalid timestamp in signature: {raw_timestamp!r}") from e

        v0 = _decode_hex(parts.get("v0"), "v0")
        v1 = _decode_hex(parts.get("v1"), "v1")
        if v0 is None and v1 is None:
            raise SignatureError("There must be at least one of 'v0' or 'v1' field")

        raw_names = parts.get("h", "").strip().lower()
        header_names = tuple(raw_names.split(HEADER_NAMES_SEPARATOR)) if raw_names else ()

        return cls(timestamp=timestamp, v1=v1, v0=v0, header_names=header_names)

    def to_header(self) -> str:
        """Serialize back to a header value."""
        parts = [f"t={self.timestamp}"]
        if self.v0 is not None:
            parts.append(f"v0={self.v0.hex()}")
        if self.v1 is not None:
            parts.append(f"v1={self.v1.hex()}")
        if self.header_names:
            parts.append(f"h={HEADER_NAMES_SEPARATOR.join(self.header_names)}")
        return PART_SEPARATOR.join(parts)


def _decode_hex(value: str | None, field: str) -> bytes | None:
    if value is None:
        return None
    try:
        return bytes.fromhex(value)
    except ValueError as e:
        raise SignatureError(f"Invalid hex in '{field}' field") from e


def canonical_content(
    payload: bytes,
    timestamp: int,
    header_names: Iterable[str] = (),
    header_values: Iterable[str] = (),
) -> bytes:
    """Build the byte string covered by the HMAC."""
    names = HEADER_NAMES_SEPARATOR.join(header_names)
    if not names:
        return str(timestamp).encode() + PAYLOAD_SEPARATOR + payload
    values = HEADER_VALUES_SEPARATOR.join(header_values)
    return PAYLOAD_SEPARATOR.join(
        [str(timestamp).encode(), names.encode(), values.encode(), payload]
    )


def compute_digest(secret: str, content: bytes) -> bytes:
    """HMAC-SHA256 of content with the given secret."""
    return hmac.new(key=secret.encode("utf-8"), msg=content, digestmod=hashlib.sha256).digest()


def sign(
    payload: bytes,
    timestamp: int,
    secret: str,
    headers: Mapping[str, str] | None = None,
) -> str:
    """Compute the signature header value of a delivery.

    Args:
        payload: Exact raw payload bytes sent as the request body.
        timestamp: Unix timestamp of the signature.
        secret: Subscription secret.
        headers: Outbound headers to cover, in order (optional).

    Returns:
        Header value "t=<ts>,v1=<hex>" with ",h=<names>" when headers are signed.
    """
    signed = {name.lower(): value for name, value in (headers or {}).items()}
    content = canonical_content(payload, timestamp, signed.keys(), signed.values())
    signature = Signature(
        timestamp=timestamp,
        v1=compute_digest(secret, content),
        header_names=tuple(signed.keys()),
    )
    return signature.to_header()


def verify(
    signature: str,
    payload: bytes,
    secrets: str | Iterable[str],
    headers: Mapping[str, str] | None = None,
    tolerance_seconds: int | None = DEFAULT_TOLERANCE_SECONDS,
    now: float | None = None,
) -> bool:
    """Verify a signature header against one or several candidate secrets.

    Every candidate secret is checked, so the result reveals nothing beyond
    whether one of them matched.

    Args:
        signature: Received signature header value.
        payload: Raw request body.
        secrets: Candidate secret(s), e.g. current and previous during rotation.
        headers: Received request headers (needed when v1 covers headers).
        tolerance_seconds: Maximum signature age; None disables the check.
        now: Current Unix time (defaults to time.time()).

    Returns:
        True if the signature is valid for one of the secrets.
    """
    try:
        parsed = Signature.parse(signature)
    except SignatureError as e:
        logger.debug("Rejecting unparsable signature: %s", e)
        return False

    if tolerance_seconds is not None:
        current = time.time() if now is None else now
        if abs(current - parsed.timestamp) > tolerance_seconds:
            logger.debug("Rejecting signature outside tolerance (t=%d)", parsed.timestamp)
            return False

    if parsed.v1 is not None:
        received = {name.lower(): value for name, value in (headers or {}).items()}
        missing = [name for name in parsed.header_names if name not in received]
        if missing:
            logger.debug("Rejecting signature: missing signed headers %s", missing)
            return False
        content = canonical_content(
            payload,
            parsed.timestamp,
            parsed.header_names,
            [received[name] for name in parsed.header_names],
        )
        expected_digest = parsed.v1
    else:
        content = canonical_content(payload, parsed.timestamp)
        expected_digest = parsed.v0 or b""

    candidates = [secrets] if isinstance(secrets, str) else list(secrets)
    matched = False
    for secret in candidates:
        matched |= hmac.compare_digest(compute_digest(secret, content), expected_digest)
    return matched
