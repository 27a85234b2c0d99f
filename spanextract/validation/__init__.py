"""Response resolution and value coercion."""

from spanextract.validation.coercion import coerce_string, coerce_value, stringify
from spanextract.validation.resolver import Resolver

__all__ = ["Resolver", "coerce_string", "coerce_value", "stringify"]
