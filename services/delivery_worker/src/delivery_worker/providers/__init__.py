"""Provider registry for channel-based delivery dispatch."""

from redis import Redis

from shared.db.models import Notification

from delivery_worker.providers.base import DeliveryOutcome, DeliveryProvider, OutcomeStatus
from delivery_worker.providers.email import EmailProvider
from delivery_worker.providers.in_app import InAppProvider
from delivery_worker.providers.push import PushProvider
from delivery_worker.providers.sms import SmsProvider

__all__ = [
    "DeliveryOutcome",
    "DeliveryProvider",
    "OutcomeStatus",
    "EmailProvider",
    "InAppProvider",
    "PushProvider",
    "SmsProvider",
    "ProviderRegistry",
    "create_default_registry",
]


class ProviderRegistry:
    """Maps channel names to delivery provider instances."""

    def __init__(self) -> None:
        self._providers: dict[str, DeliveryProvider] = {}

    def register(self, provider: DeliveryProvider) -> None:
        self._providers[provider.channel] = provider

    def get(self, channel: str) -> DeliveryProvider:
        """Return the provider for a channel.

        Raises KeyError if no provider is registered for the channel.
        """
        return self._providers[channel]

    def resolve(self, notification: Notification) -> DeliveryProvider | None:
        """Provider for the notification's channel, if it can take this notification."""
        provider = self._providers.get(notification.channel)
        if provider is None or not provider.can_handle(notification):
            return None
        return provider

    def by_name(self, name: str) -> DeliveryProvider | None:
        for provider in self._providers.values():
            if provider.name == name:
                return provider
        return None

    def channels(self) -> list[str]:
        return sorted(self._providers)

    def close(self) -> None:
        for provider in self._providers.values():
            close = getattr(provider, "close", None)
            if close is not None:
                close()


def create_default_registry(redis_client: Redis) -> ProviderRegistry:
    """Create a registry with all built-in providers, configured from the environment."""
    registry = ProviderRegistry()
    registry.register(EmailProvider())
    registry.register(SmsProvider())
    registry.register(PushProvider())
    registry.register(InAppProvider(redis_client))
    return registry
