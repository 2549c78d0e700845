#!/usr/bin/env python3
"""Main entry point for Cogitap.

Builds the services once and wires them together explicitly; nothing in the
core reaches for a global service instance.
"""

import asyncio
import sys
from dataclasses import dataclass

import httpx
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from cogitap import __version__
from cogitap.config.schema import CogitapConfig
from cogitap.core.chat_manager import ChatManager
from cogitap.core.config import config_manager
from cogitap.core.models import init_database
from cogitap.core.session_manager import SessionManager
from cogitap.mcp.manager import MCPManager
from cogitap.memory.manager import MemoryManager
from cogitap.memory.text_matching import TextMatcher
from cogitap.utils.logger import setup_logger

logger = setup_logger(__name__)


@dataclass
class AppContext:
    """The constructed services of a running application."""

    config: CogitapConfig
    engine: Engine
    Session: sessionmaker
    http_client: httpx.AsyncClient
    memory_manager: MemoryManager
    mcp_manager: MCPManager
    session_manager: SessionManager
    chat_manager: ChatManager

    async def shutdown(self):
        await self.mcp_manager.disconnect_all()
        await self.http_client.aclose()
        self.engine.dispose()
        logger.info("Cogitap shut down")


def create_app_context(
    config: CogitapConfig | None = None, database_url: str | None = None
) -> AppContext:
    """Initialize the store and construct every service."""
    config = config or config_manager.config

    if database_url is None:
        config.general.data_dir.mkdir(parents=True, exist_ok=True)
        database_url = config.general.resolved_database_url()
    engine, Session = init_database(database_url)

    http_client = httpx.AsyncClient(timeout=config.providers.request_timeout)
    memory_manager = MemoryManager(TextMatcher.from_settings(config.memory))
    mcp_manager = MCPManager(http_client, config.mcp)

    return AppContext(
        config=config,
        engine=engine,
        Session=Session,
        http_client=http_client,
        memory_manager=memory_manager,
        mcp_manager=mcp_manager,
        session_manager=SessionManager(config),
        chat_manager=ChatManager(memory_manager, mcp_manager, config, http_client),
    )


async def _startup(context: AppContext):
    with context.Session() as session:
        await context.mcp_manager.refresh_servers(session)
        conversations = context.session_manager.list_conversations(session)
        memory = context.memory_manager.get_or_create_config(session)
        logger.info(
            f"Loaded {len(conversations)} conversations, "
            f"{len(context.mcp_manager.clients)} MCP servers, "
            f"memory {'on' if memory.is_memory_enabled else 'off'}"
        )
    await context.shutdown()


def main():
    """Initialize the store and report its state."""
    try:
        logger.info(f"Starting Cogitap v{__version__}")
        context = create_app_context()
        asyncio.run(_startup(context))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(0)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
