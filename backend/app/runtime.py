from .config import settings
from .services.refresh import SeriesRefresher
from .services.series_store import SeriesStore
from .services.upstream import SourceFetcher

# Process-wide instances, built once and shared by routers and workers.
store = SeriesStore(settings.cache_dir, regression_ratio=settings.regression_ratio)
fetcher = SourceFetcher(min_rows=settings.min_history_rows)
refresher = SeriesRefresher(store, fetcher, policy=settings.refresh)
