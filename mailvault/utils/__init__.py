"""Utility functions"""

from .path_utils import (
    compute_hash,
    identity_for,
    normalize_identity,
    sanitize_for_filename,
    synthesize_identity,
)
from .unicode_utils import decode_email_header, truncate_subject

__all__ = [
    "compute_hash",
    "identity_for",
    "normalize_identity",
    "sanitize_for_filename",
    "synthesize_identity",
    "decode_email_header",
    "truncate_subject",
]
