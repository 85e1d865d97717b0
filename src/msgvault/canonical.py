"""Canonicalization of raw inbox messages into fingerprinted records.

The fingerprint is the dedup key shared with the backup service, so every
step here must be deterministic: the same RawMessage always produces the
same CanonicalRecord, across runs and across machines.
"""

import hashlib
import json
import re
import unicodedata
from collections.abc import Iterable, Iterator

from msgvault.errors import MalformedRecord
from msgvault.models import CanonicalRecord, RawMessage

# Characters that may appear in a formatted phone number
_PHONE_LIKE = re.compile(r"^\+?[\d\s\-().]+$")
_NON_DIGIT = re.compile(r"\D")

# Whitespace that is kept inside bodies
_KEPT_CONTROL = {"\n", "\t"}


def fingerprint(sender: str, timestamp: int, body: str) -> str:
    """SHA-256 over the canonical (sender, timestamp, body) triple.

    Fields are encoded as a JSON array so that no choice of separator can
    make two different triples collide.
    """
    payload = json.dumps([sender, timestamp, body], ensure_ascii=False, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def normalize_sender(sender: str) -> str:
    """Normalize a sender address.

    Phone numbers keep only their digits and a leading ``+``; alphanumeric
    sender ids (short codes, brand names) are only stripped of
    non-printable characters and surrounding whitespace.
    """
    cleaned = "".join(ch for ch in sender if ch.isprintable()).strip()
    if _PHONE_LIKE.match(cleaned):
        digits = _NON_DIGIT.sub("", cleaned)
        if not digits:
            return ""
        return f"+{digits}" if cleaned.startswith("+") else digits
    return cleaned


def normalize_body(body: str) -> str:
    """NFC-normalize a body, fold line endings, drop non-printables."""
    text = unicodedata.normalize("NFC", body.replace("\r\n", "\n").replace("\r", "\n"))
    return "".join(ch for ch in text if ch.isprintable() or ch in _KEPT_CONTROL)


def _coerce_timestamp(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


class Canonicalizer:
    """Turns RawMessages into CanonicalRecords.

    ``parse`` raises MalformedRecord when sender, timestamp or body cannot
    be extracted. ``canonicalize`` applies it to a stream and yields the
    errors in place of records, so one bad message never stops the rest.
    """

    def parse(self, raw: RawMessage) -> CanonicalRecord:
        sender = normalize_sender(raw.sender) if isinstance(raw.sender, str) else ""
        if not sender:
            raise MalformedRecord(
                f"Message {raw.sequence_id} has no sender", raw.sequence_id, "sender"
            )

        timestamp = _coerce_timestamp(raw.timestamp)
        if timestamp is None or timestamp <= 0:
            raise MalformedRecord(
                f"Message {raw.sequence_id} has no valid timestamp",
                raw.sequence_id,
                "timestamp",
            )

        body = normalize_body(raw.body) if isinstance(raw.body, str) else ""
        if not body.strip():
            raise MalformedRecord(
                f"Message {raw.sequence_id} has an empty body", raw.sequence_id, "body"
            )

        return CanonicalRecord(
            fingerprint=fingerprint(sender, timestamp, body),
            sender=sender,
            timestamp=timestamp,
            body=body,
            sequence_id=raw.sequence_id,
            message_type=raw.message_type,
            thread_id=raw.thread_id,
        )

    def canonicalize(
        self, raws: Iterable[RawMessage]
    ) -> Iterator[tuple[RawMessage, CanonicalRecord | MalformedRecord]]:
        """Parse a stream, pairing each raw message with its outcome."""
        for raw in raws:
            try:
                yield raw, self.parse(raw)
            except MalformedRecord as e:
                yield raw, e
