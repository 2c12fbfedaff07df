from datetime import datetime
from typing import Any


NEWS_SOURCES = ["rss", "api", "scraping"]


def news_aggregation(tick: datetime) -> dict[str, Any]:
    """Hourly aggregation run over every news source, stamped with its tick."""
    return {"sources": list(NEWS_SOURCES), "timestamp": tick.isoformat()}
