"""Exception hierarchy for the specs pipeline.

Per-row failures are converted into persisted results by the tasks; only
ConfigurationError is allowed to abort a whole run.
"""

from __future__ import annotations

import re


class ShoeSpecsError(Exception):
    """Base class for all pipeline errors."""


class ConfigurationError(ShoeSpecsError):
    """Required configuration is missing or invalid."""


class StoreError(ShoeSpecsError):
    """A store call failed or exceeded its timeout."""


class HtmlFetchError(ShoeSpecsError):
    """The article markup could not be fetched."""


class DocumentParseError(ShoeSpecsError):
    """The isolated markup parser crashed or reported an error."""


class DocumentParseTimeout(DocumentParseError):
    """The isolated markup parser exceeded its deadline and was killed."""


class ResolverResponseError(ShoeSpecsError):
    """The language-model response could not be repaired or validated."""


_WHITESPACE = re.compile(r"\s+")


def safe_short_message(err: object, limit: int = 120) -> str:
    """Collapse whitespace and truncate an error for logs and persisted hints."""
    if isinstance(err, str):
        text = err
    elif isinstance(err, BaseException) and str(err):
        text = str(err)
    else:
        text = repr(err)
    return _WHITESPACE.sub(" ", text)[:limit].strip()
