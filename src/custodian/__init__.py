"""Account moderation core: guarded, audited state transitions for staff operators."""

__version__ = "0.1.0"
