"""Scrape-side exposition handlers served to the sender under test."""
from typing import Callable, Optional, Tuple
import logging
import threading

from prometheus_client import CollectorRegistry, CONTENT_TYPE_LATEST, Gauge, generate_latest

logger = logging.getLogger(__name__)

TEXT_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"


class ExpositionHandler:
    """Renders the body served to the sender at the scrape endpoint."""

    def render(self) -> Tuple[bytes, str]:
        """Return (body, content type) for one scrape."""
        raise NotImplementedError


class StaticExposition(ExpositionHandler):
    """Serves fixed text, which may be deliberately invalid."""

    def __init__(self, contents: str):
        self.contents = contents.encode("utf-8")

    def render(self) -> Tuple[bytes, str]:
        return self.contents, TEXT_CONTENT_TYPE


class RegistryExposition(ExpositionHandler):
    """
    Serves a prometheus_client registry.

    ``after_scrape`` runs once each scrape has been rendered, which lets
    a case mutate metrics between scrapes.
    """

    def __init__(self, registry: CollectorRegistry, after_scrape: Optional[Callable[[], None]] = None):
        self.registry = registry
        self.after_scrape = after_scrape
        self.scrapes = 0
        self._lock = threading.Lock()

    def render(self) -> Tuple[bytes, str]:
        with self._lock:
            body = generate_latest(self.registry)
            self.scrapes += 1
            if self.after_scrape:
                self.after_scrape()
        logger.debug(f"Served scrape #{self.scrapes} ({len(body)} bytes)")
        return body, CONTENT_TYPE_LATEST


def new_registry() -> CollectorRegistry:
    """A registry without the default process/platform collectors."""
    return CollectorRegistry(auto_describe=True)


def gauge_func_exposition(name: str, fn: Callable[[], float], documentation: str = "") -> RegistryExposition:
    """Serve a single unlabelled gauge whose value is computed on each scrape."""
    registry = new_registry()
    gauge = Gauge(name, documentation or f"Compliance gauge {name}", registry=registry)
    gauge.set_function(fn)
    return RegistryExposition(registry)
