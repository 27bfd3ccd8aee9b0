#!/usr/bin/env python3
"""
Seed bots, tenant access and sample conversations for development.
"""
import sys
from pathlib import Path

# Add parent directory to path
sys.path.append(str(Path(__file__).parent.parent))

import asyncio
import logging

from botportal.config import settings
from botportal.database import init_db, cleanup_db, get_session_factory
from botportal.models.schemas import MessageRole, MessageStatus
from botportal.realtime import InMemoryChangeFeed
from botportal.services.auth_service import auth_service
from botportal.store import SqlChatStore
from botportal.store.base import title_from_text
from botportal.store.records import BotRecord

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

SAMPLE_TENANT = "tenant-demo"
SAMPLE_USER = "user-demo"

SAMPLE_BOTS = [
    BotRecord(id="bot-support", name="Support Bot"),
    BotRecord(
        id="bot-mock",
        name="Mock Agent",
        webhook_url=f"http://localhost:{settings.api_port}{settings.api_prefix}/mock-agent",
        timeout_seconds=30
    ),
]

# Sample conversation scenarios
SAMPLE_CONVERSATIONS = [
    [
        ("Hi, I need help with my order", "Hello! I'd be happy to help you with your order."),
        ("Order number is #12345", "Thanks. Order #12345 shipped yesterday and arrives in 2 days."),
    ],
    [
        ("How do I reset my password?", "Click 'Forgot Password' on the login page and follow the email."),
    ],
]


async def seed_catalogue(store: SqlChatStore) -> None:
    """Create bots and grant the demo tenant access to them."""
    for bot in SAMPLE_BOTS:
        await store.add_bot(bot)
        await store.grant_bot_access(SAMPLE_TENANT, bot.id)
    logger.info(f"✓ Created {len(SAMPLE_BOTS)} bots for tenant {SAMPLE_TENANT}")


async def seed_conversations(store: SqlChatStore) -> None:
    """Create sample sessions with completed exchanges."""
    messages_created = 0

    for convo in SAMPLE_CONVERSATIONS:
        session = await store.create_session(
            tenant_id=SAMPLE_TENANT,
            user_id=SAMPLE_USER,
            bot_id=SAMPLE_BOTS[0].id,
            title=title_from_text(convo[0][0])
        )

        for user_text, reply in convo:
            await store.insert_message(session.id, MessageRole.USER.value, user_text, MessageStatus.DELIVERED.value)
            await store.insert_message(session.id, MessageRole.ASSISTANT.value, reply, MessageStatus.COMPLETED.value)
            messages_created += 2

        await store.touch_session(session.id)

    logger.info(f"✓ Created {len(SAMPLE_CONVERSATIONS)} sessions")
    logger.info(f"✓ Created {messages_created} messages")


async def main():
    """Main seeding function."""
    logger.info("=" * 50)
    logger.info("Starting data seeding...")
    logger.info("=" * 50)

    await init_db()
    store = SqlChatStore(await get_session_factory(), InMemoryChangeFeed())

    try:
        await seed_catalogue(store)
        await seed_conversations(store)
    finally:
        await cleanup_db()

    token = auth_service.create_token(SAMPLE_USER, tenants=[SAMPLE_TENANT])
    logger.info(f"Development token for {SAMPLE_USER}: {token}")

    logger.info("=" * 50)
    logger.info("Data seeding completed!")
    logger.info("=" * 50)


if __name__ == "__main__":
    asyncio.run(main())
