"""Read-only status API served next to the supervisor."""

from scraper.status.app import create_status_app

__all__ = ["create_status_app"]
