"""Adapter registry: maps catalog names to adapter implementations."""

from typing import Any, Callable, Dict, List, Optional

from connector_hub.connectors.base import ProviderAdapter
from connector_hub.connectors.generic import GenericAPIAdapter
from connector_hub.connectors.quickbooks import QuickBooksAdapter
from connector_hub.connectors.shopify import ShopifyAdapter
from connector_hub.connectors.stripe import StripeAdapter
from connector_hub.connectors.woocommerce import WooCommerceAdapter
from connector_hub.core.exceptions import FieldError, UnsupportedProvider

AdapterFactory = Callable[[], ProviderAdapter]

BUILTIN_ADAPTERS: Dict[str, AdapterFactory] = {
    "shopify": ShopifyAdapter,
    "stripe": StripeAdapter,
    "woocommerce": WooCommerceAdapter,
    "quickbooks": QuickBooksAdapter,
    "api_webhook": GenericAPIAdapter,
}

_TYPE_CHECKS = {
    "string": lambda v: isinstance(v, str),
    "boolean": lambda v: isinstance(v, bool),
    "integer": lambda v: isinstance(v, int) and not isinstance(v, bool),
    "number": lambda v: isinstance(v, (int, float)) and not isinstance(v, bool),
    "object": lambda v: isinstance(v, dict),
    "array": lambda v: isinstance(v, list),
}


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


class AdapterRegistry:
    """Resolve provider names to adapters.

    Factories are called once per name; tests build their own registry with
    adapters bound to an httpx.MockTransport.
    """

    def __init__(self, factories: Optional[Dict[str, AdapterFactory]] = None):
        self._factories: Dict[str, AdapterFactory] = dict(BUILTIN_ADAPTERS if factories is None else factories)
        self._instances: Dict[str, ProviderAdapter] = {}

    def register(self, name: str, factory: AdapterFactory) -> None:
        self._factories[name] = factory
        self._instances.pop(name, None)

    def names(self) -> List[str]:
        return sorted(self._factories)

    def is_registered(self, name: str) -> bool:
        return name in self._factories

    def lookup(self, name: str) -> ProviderAdapter:
        if name not in self._instances:
            factory = self._factories.get(name)
            if factory is None:
                raise UnsupportedProvider(f"No adapter is registered for connector type '{name}'")
            self._instances[name] = factory()
        return self._instances[name]

    @staticmethod
    def validate_config(connector_type, config: Dict[str, Any]) -> List[FieldError]:
        """Check a config dict against the catalog entry's schema.

        Reports every missing required key and every basic type mismatch,
        not just the first one.
        """
        if not isinstance(config, dict):
            return [FieldError("config", "configuration must be an object")]

        schema = connector_type.config_schema or {}
        properties = schema.get("properties") or {}
        errors: List[FieldError] = []

        for key in schema.get("required") or []:
            if _is_blank(config.get(key)):
                errors.append(FieldError(key, "is required"))

        for key, value in config.items():
            expected = (properties.get(key) or {}).get("type")
            if expected is None or _is_blank(value):
                continue
            check = _TYPE_CHECKS.get(expected)
            if check and not check(value):
                errors.append(FieldError(key, f"must be of type {expected}"))
        return errors

    @staticmethod
    def with_defaults(connector_type, config: Dict[str, Any]) -> Dict[str, Any]:
        """Fill schema defaults for keys the tenant left out."""
        merged = dict(config)
        properties = (connector_type.config_schema or {}).get("properties") or {}
        for key, prop in properties.items():
            if key not in merged and "default" in prop:
                merged[key] = prop["default"]
        return merged


registry = AdapterRegistry()


def get_registry() -> AdapterRegistry:
    """FastAPI dependency; overridden in tests."""
    return registry
