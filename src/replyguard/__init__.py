"""ReplyGuard: reply detection engine for outbound mail sequences."""

__version__ = "0.1.0"
