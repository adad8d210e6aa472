"""Provider layer -- provider catalog, request builders, and payload parsers."""

from marketwatch.providers.catalog import ALL_PROVIDERS
from marketwatch.providers.validation import ParsedValue, ValueDomain, validate_value

__all__ = ["ALL_PROVIDERS", "ParsedValue", "ValueDomain", "validate_value"]
