"""Historical backfill -- serial page crawler over the configured grid."""

from scraper.backfill.crawler import BackfillCrawler, CrawlState, sweep_order

__all__ = ["BackfillCrawler", "CrawlState", "sweep_order"]
