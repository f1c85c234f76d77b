"""mailvault - incremental, crash-safe IMAP to Maildir archiver."""

__version__ = "0.1.0"
