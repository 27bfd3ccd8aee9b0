"""
Wiring of the delivery services.

One PortalServices instance lives on ``app.state.services`` for the lifetime
of the application.
"""
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from aiobreaker import CircuitBreaker
from aiohttp import ClientSession

from .access_policy import AccessPolicy, StoreAccessPolicy
from .agent_bridge import AgentBridge
from .auth_service import AuthService, auth_service
from .background import BackgroundRunner
from .dispatcher import RequestDispatcher
from .session_resolver import SessionResolver
from .status_query import StatusQuery
from ..config import Settings
from ..realtime import ChangeFeed, create_change_feed
from ..store import ChatStore, create_chat_store

logger = logging.getLogger(__name__)


@dataclass
class PortalServices:
    config: Settings
    store: ChatStore
    change_feed: ChangeFeed
    runner: BackgroundRunner
    bridge: AgentBridge
    dispatcher: RequestDispatcher
    resolver: SessionResolver
    status: StatusQuery
    access_policy: AccessPolicy
    auth: AuthService

    async def start(self) -> None:
        await self.bridge.start()

    async def shutdown(self, drain_timeout: Optional[float] = None) -> None:
        """Drain background jobs, then release connections."""
        if drain_timeout is None:
            drain_timeout = self.config.background_drain_timeout_seconds

        finished, cancelled = await self.runner.drain(drain_timeout)
        logger.info(f"Background runner drained ({finished} finished, {cancelled} cancelled)")

        await self.bridge.close()
        await self.change_feed.close()
        await self.store.close()


def build_services(
    config: Settings,
    store: Optional[ChatStore] = None,
    change_feed: Optional[ChangeFeed] = None,
    access_policy: Optional[AccessPolicy] = None,
    http_session: Optional[ClientSession] = None,
    session_factory=None
) -> PortalServices:
    """
    Assemble the services from settings.

    Explicit arguments replace the configured backends.
    """
    if change_feed is None:
        feed_kwargs = {"max_queue_size": config.change_feed_queue_size}
        if config.change_feed_backend == "redis":
            feed_kwargs.update(redis_url=config.redis_url, channel_prefix=config.change_feed_channel_prefix)
        change_feed = create_change_feed(config.change_feed_backend, **feed_kwargs)

    if store is None:
        store_kwargs = {}
        if config.store_backend == "sql":
            store_kwargs["session_factory"] = session_factory
        store = create_chat_store(config.store_backend, change_feed=change_feed, **store_kwargs)
    elif store.change_feed is None:
        store.change_feed = change_feed

    if access_policy is None:
        access_policy = StoreAccessPolicy(store, strict=config.strict_bot_access)

    runner = BackgroundRunner(name="agent")
    bridge = AgentBridge(
        store,
        webhook_url=config.agent_webhook_url,
        timeout_seconds=config.agent_timeout_seconds,
        history_limit=config.agent_history_limit,
        writes_directly=config.agent_writes_directly,
        locale=config.agent_locale,
        circuit_breaker=CircuitBreaker(
            fail_max=config.agent_circuit_failure_threshold,
            timeout_duration=timedelta(seconds=config.agent_circuit_recovery_seconds),
            name="agent_webhook"
        ),
        http_session=http_session
    )
    dispatcher = RequestDispatcher(
        store,
        runner,
        bridge,
        locale=config.agent_locale,
        max_message_length=config.max_message_length
    )

    services = PortalServices(
        config=config,
        store=store,
        change_feed=change_feed,
        runner=runner,
        bridge=bridge,
        dispatcher=dispatcher,
        resolver=SessionResolver(store, access_policy),
        status=StatusQuery(store, cache_size=config.status_cache_size, cache_ttl=config.status_cache_ttl_seconds),
        access_policy=access_policy,
        auth=auth_service
    )
    logger.info(
        f"Services built (store={type(store).__name__}, feed={type(change_feed).__name__}, "
        f"writes_directly={config.agent_writes_directly})"
    )
    return services
