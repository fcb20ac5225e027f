"""
Application wiring.

IncidentHub builds every component from a HubConfig and owns the two
background sweeps (batch timeouts and due scheduled notifications).
"""
import logging
import smtplib
from datetime import datetime
from typing import Callable, List, Optional

import requests

from .alerting import AlertCorrelator
from .config import HubConfig
from .exceptions import ConfigurationError
from .incidents import IncidentManager
from .integrations import IdempotencyCache, WebhookReceiver
from .middleware import RateLimiter
from .models import utcnow
from .notifications import (
    AdapterSet,
    ChannelManager,
    HistoryLedger,
    NotificationService,
    Scheduler,
    TemplateCatalog,
    TemplateRenderer,
)
from .retry import Retryer
from .storage import MemoryStore, SQLiteStore, Store
from .tasks import PeriodicTask

logger = logging.getLogger(__name__)


def create_store(config: HubConfig) -> Store:
    """Instantiate the configured storage backend."""
    if config.storage_backend == "memory":
        return MemoryStore()
    if config.storage_backend == "sqlite":
        return SQLiteStore(config.sqlite_path)
    raise ConfigurationError(f"unknown storage backend: {config.storage_backend}")


class IncidentHub:
    """
    The assembled service.

    Example:
        >>> hub = IncidentHub.from_config(HubConfig.load())
        >>> hub.start()
        >>> hub.create_app().run(port=hub.config.port)
        >>> hub.stop()
    """

    def __init__(
        self,
        config: HubConfig,
        store: Store,
        clock: Callable[[], datetime] = utcnow,
        session: Optional[requests.Session] = None,
        smtp_factory: Callable[..., smtplib.SMTP] = smtplib.SMTP,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.config = config
        self.store = store
        self.clock = clock

        self.renderer = TemplateRenderer()
        self.catalog = TemplateCatalog(store, self.renderer)
        self.adapters = AdapterSet.build(
            config.channel_defaults(),
            timeout=config.http_timeout,
            session=session,
            smtp_factory=smtp_factory,
        )
        self.retryer = Retryer(config.retry_policy(), sleep=sleep)
        self.ledger = HistoryLedger(store, clock)
        self.notifications = NotificationService(
            store,
            self.catalog,
            self.adapters,
            self.ledger,
            self.retryer,
            system_name=config.system_name,
            system_url=config.system_url,
            clock=clock,
            batch_max_size=config.batch_max_size,
            batch_timeout=config.batch_timeout,
        )
        self.channels = ChannelManager(store, self.adapters, self.catalog)
        self.scheduler = Scheduler(self.notifications.deliver_scheduled, clock)

        self.incidents = IncidentManager(store, clock)
        self.incidents.subscribe(self.notifications.handle_event)
        self.correlator = AlertCorrelator(store, self.incidents)
        self.idempotency = IdempotencyCache(config.idempotency_ttl)
        self.webhooks = WebhookReceiver(self.correlator, self.idempotency, config.webhook_max_body_bytes)
        self.rate_limiter = RateLimiter(config.webhook_rate_limit)

        batches = self.notifications.batches
        self._tasks: List[PeriodicTask] = [
            PeriodicTask("batch-sweep", config.batch_sweep_interval, batches.collect_expired, batches.flush),
            PeriodicTask("scheduler", config.scheduler_interval, self.scheduler.collect_due, self.scheduler.dispatch),
        ]

    @classmethod
    def from_config(cls, config: HubConfig, **kwargs) -> 'IncidentHub':
        """
        Validate `config` and build a hub with the configured store.

        Raises:
            ValueError: If the configuration is invalid
        """
        config.validate()
        return cls(config, create_store(config), **kwargs)

    def start(self) -> None:
        for task in self._tasks:
            task.start()
        logger.info(f"{self.config.system_name} started")

    def stop(self) -> None:
        """Stop the sweeps, flush open batches, then cut any pending retry waits."""
        for task in self._tasks:
            task.stop()
        flushed = self.notifications.batches.flush_all()
        if flushed:
            logger.info(f"Flushed {len(flushed)} open batches on shutdown")
        self.retryer.cancel()
        logger.info(f"{self.config.system_name} stopped")

    @property
    def running(self) -> bool:
        return any(task.running for task in self._tasks)

    def create_app(self):
        """Flask application exposing the HTTP surface."""
        from .api import create_app
        return create_app(self)
