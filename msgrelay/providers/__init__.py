"""
Provider adapters and the registry that selects them by configuration.
"""

import logging
from typing import Dict, Iterable, Optional

from msgrelay.config import Settings
from msgrelay.errors import UnknownProviderError
from msgrelay.providers.base import NormalizedEvent, ProviderAdapter, ProviderResponse
from msgrelay.providers.generic import GenericAdapter
from msgrelay.providers.gupshup import GupshupAdapter
from msgrelay.providers.meta import MetaCloudAdapter
from msgrelay.providers.twilio import TwilioAdapter

logger = logging.getLogger(__name__)

__all__ = [
    "GenericAdapter",
    "GupshupAdapter",
    "MetaCloudAdapter",
    "NormalizedEvent",
    "ProviderAdapter",
    "ProviderRegistry",
    "ProviderResponse",
    "TwilioAdapter",
    "build_registry",
]


class ProviderRegistry:
    """Adapters keyed by provider name, plus the default used for sends."""

    def __init__(self, adapters: Iterable[ProviderAdapter], default: Optional[str] = None):
        self._adapters: Dict[str, ProviderAdapter] = {a.name: a for a in adapters}
        self.default_name = default if default in self._adapters else next(iter(self._adapters), None)

    def get(self, name: Optional[str] = None) -> ProviderAdapter:
        key = (name or self.default_name or "").lower()
        adapter = self._adapters.get(key)
        if adapter is None:
            raise UnknownProviderError(f"provider not enabled: {name!r}")
        return adapter

    def names(self) -> list[str]:
        return sorted(self._adapters)


def build_registry(settings: Settings) -> ProviderRegistry:
    common = {"dry_run": settings.PROVIDER_DRY_RUN, "timeout": settings.provider_timeout}
    factories = {
        "meta": lambda: MetaCloudAdapter(
            api_base=settings.META_API_BASE,
            phone_number_id=settings.META_PHONE_NUMBER_ID,
            access_token=settings.META_ACCESS_TOKEN,
            secret=settings.META_APP_SECRET,
            **common,
        ),
        "gupshup": lambda: GupshupAdapter(
            api_base=settings.GUPSHUP_API_BASE,
            api_key=settings.GUPSHUP_API_KEY,
            source=settings.GUPSHUP_SOURCE,
            app_name=settings.GUPSHUP_APP_NAME,
            secret=settings.GUPSHUP_WEBHOOK_SECRET,
            **common,
        ),
        "twilio": lambda: TwilioAdapter(
            api_base=settings.TWILIO_API_BASE,
            account_sid=settings.TWILIO_ACCOUNT_SID,
            auth_token=settings.TWILIO_AUTH_TOKEN,
            sender=settings.TWILIO_FROM,
            secret=settings.TWILIO_WEBHOOK_SECRET,
            **common,
        ),
        "generic": lambda: GenericAdapter(secret=settings.WEBHOOK_SECRET, **common),
    }

    adapters = []
    for name in settings.enabled_providers:
        factory = factories.get(name.lower())
        if factory is None:
            logger.warning(f"Ignoring unknown provider in ENABLED_PROVIDERS: {name}")
            continue
        adapters.append(factory())

    registry = ProviderRegistry(adapters, default=settings.DEFAULT_PROVIDER)
    logger.info(f"Providers enabled: {registry.names()}, default: {registry.default_name}")
    return registry
