#!/usr/bin/env python3
"""
Run the chatsync client core as a long-lived process.

Restores the stored session (or signs in with CHATSYNC_EMAIL /
CHATSYNC_PASSWORD), keeps the realtime connection open and lets the
periodic sync run until interrupted.

Usage:
    python scripts/run_client.py                 # Use environment settings
    python scripts/run_client.py path/to/.env    # Load a .env file first
"""

import asyncio
import logging
import os
import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from chatsync.auth.secure_store import EncryptedFileSecureStore
from chatsync.cli import configure_logging
from chatsync.config import Settings
from chatsync.context import ChatSyncContext
from chatsync.realtime import STATE_CHANGED, RealtimeEvent
from chatsync.storage import SQLiteStore
from chatsync.sync import SyncEvent

logger = logging.getLogger("chatsync.run_client")


async def run(settings: Settings) -> None:
    context = ChatSyncContext(
        settings,
        store=SQLiteStore(settings.data_dir / "chatsync.db"),
        secure_store=EncryptedFileSecureStore(settings.data_dir / "credentials.enc"),
    )
    context.on_realtime(STATE_CHANGED, lambda _e, state: logger.info("Realtime: %s", state.value))
    context.on_realtime(RealtimeEvent.NEW_MESSAGE, lambda _e, data: logger.info("New message: %s", data))
    context.on_sync(SyncEvent.SYNC_COMPLETED, lambda _e, result: logger.info("Sync completed: %s", result))
    context.on_sync(SyncEvent.SYNC_FAILED, lambda _e, result: logger.warning("Sync failed: %s", result["error"]))

    async with context:
        if not context.auth.is_authenticated():
            email = os.environ.get("CHATSYNC_EMAIL")
            password = os.environ.get("CHATSYNC_PASSWORD")
            if not email or not password:
                logger.error("No stored session; set CHATSYNC_EMAIL and CHATSYNC_PASSWORD or run `chatsync login`")
                return
            await context.login(email, password)

        logger.info("Running, press Ctrl-C to stop")
        await asyncio.Event().wait()


def main():
    env_file = sys.argv[1] if len(sys.argv) > 1 else None
    settings = Settings.from_env(env_file)
    configure_logging(settings.log_level)
    try:
        asyncio.run(run(settings))
    except KeyboardInterrupt:
        print("Stopped")


if __name__ == "__main__":
    main()
