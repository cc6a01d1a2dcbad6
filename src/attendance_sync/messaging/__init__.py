"""Dead-letter handling for failed sync chunks."""

from .dlq import DeadLetterEntry, DeadLetterQueue, DLQStats, dead_letter_id

__all__ = ["DLQStats", "DeadLetterEntry", "DeadLetterQueue", "dead_letter_id"]
