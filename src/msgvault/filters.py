"""Sender exclusion rules applied before messages leave the device."""

from msgvault.models import CanonicalRecord


class SenderExclusionFilter:
    """Filters records based on exclusion patterns.

    Matches record senders and bodies against configured patterns to decide
    whether a message must stay on the device (for privacy).

    Example:
        exclusions = {
            "senders": ["+15550100", "bank"],
            "body_patterns": ["verification code"],
        }
        filter = SenderExclusionFilter(exclusions)
        should_exclude, pattern = filter.should_exclude(record)
    """

    def __init__(self, exclusions: dict | None = None) -> None:
        """Initialize the exclusion filter.

        Args:
            exclusions: Dictionary with keys:
                - "senders": List of sender patterns to exclude
                - "body_patterns": List of body patterns to exclude
                Patterns are case-insensitive substring matches.
        """
        exclusions = exclusions or {}
        self.senders: list[str] = [
            s.lower() for s in exclusions.get("senders", []) if s
        ]
        self.body_patterns: list[str] = [
            p.lower() for p in exclusions.get("body_patterns", []) if p
        ]

    def __bool__(self) -> bool:
        return bool(self.senders or self.body_patterns)

    def should_exclude(self, record: CanonicalRecord) -> tuple[bool, str | None]:
        """Check if a record should be kept off the backup.

        Returns:
            Tuple of (should_exclude, matched_pattern):
            - (True, pattern) if the record matches an exclusion pattern
            - (False, None) if the record should be backed up
        """
        sender_lower = record.sender.lower()
        for pattern in self.senders:
            if pattern in sender_lower:
                return (True, pattern)

        body_lower = record.body.lower()
        for pattern in self.body_patterns:
            if pattern in body_lower:
                return (True, pattern)

        return (False, None)
