"""Hardened regex matching for host-supplied route patterns."""

from __future__ import annotations

import logging
import re

logger = logging.getLogger(__name__)

DEFAULT_MAX_PATTERN_LENGTH = 500

# Constructs prone to catastrophic backtracking: (a+)+, (a*)*, (a+)*,
# (a{2,})+, (a{2,})*, and quantified alternation followed by more alternation.
_DANGEROUS_CONSTRUCTS = [
    re.compile(r"(\(.*\+.*\))\+"),
    re.compile(r"(\(.*\*.*\))\*"),
    re.compile(r"(\(.*\+.*\))\*"),
    re.compile(r"(\(.*\{.*\}.*\))\+"),
    re.compile(r"(\(.*\{.*\}.*\))\*"),
    re.compile(r"(\(.*\|.*\))\+.*\|"),
]


def validate_regex_pattern(
    pattern: str,
    max_length: int = DEFAULT_MAX_PATTERN_LENGTH,
    log: logging.Logger | None = None,
) -> bool:
    """Return True when a pattern is short enough and free of nested quantifiers."""
    log = log or logger
    if not pattern or not isinstance(pattern, str):
        return False

    if len(pattern) > max_length:
        log.warning("Regex pattern exceeds maximum length (%d characters)", max_length)
        return False

    for construct in _DANGEROUS_CONSTRUCTS:
        if construct.search(pattern):
            log.warning("Regex pattern contains potentially dangerous construct: %s", pattern)
            return False

    return True


def safe_regex_test(
    pattern: str,
    text: str,
    max_length: int = DEFAULT_MAX_PATTERN_LENGTH,
    log: logging.Logger | None = None,
) -> bool | None:
    """
    Search `text` for `pattern` after vetting the pattern.

    Returns True/False for a match verdict, or None when the pattern was
    rejected or does not compile.
    """
    log = log or logger
    if not validate_regex_pattern(pattern, max_length=max_length, log=log):
        return None

    try:
        compiled = re.compile(pattern)
    except re.error as e:
        log.error("Invalid regex pattern %r: %s", pattern, e)
        return None

    if not isinstance(text, str):
        return False
    return compiled.search(text) is not None
