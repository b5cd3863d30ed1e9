from .provider import CatalogProvider, FileCatalogProvider, StaticCatalogProvider  # noqa: F401
from .subscriptions import (  # noqa: F401
    FileSubscriptionStateProvider,
    StaticSubscriptionStateProvider,
    SubscriptionStateProvider,
)
