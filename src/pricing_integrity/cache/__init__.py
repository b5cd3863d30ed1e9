from .catalog_cache import CatalogCache  # noqa: F401
from .refresher import CatalogRefresher  # noqa: F401
from .store import CacheStore, MemoryCacheStore, RedisCacheStore, build_cache_store  # noqa: F401
