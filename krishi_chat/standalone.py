"""Terminal chat client — talk to the marketplace hub without a browser.

Usage::

    poetry run krishi-chat

    # Buyer chatting with the farmer of a product:
    KRISHI_PRODUCT_ID=123 poetry run krishi-chat

Environment variables:
    KRISHI_API_BASE     — Backend base URL (required)
    KRISHI_TOKEN        — Bearer token of the signed-in user (required)
    KRISHI_USER_ID      — Id of the signed-in user (required)
    KRISHI_USER_NAME    — Display name of the signed-in user (optional)
    KRISHI_COUNTERPART  — Open this conversation right away (optional)
    KRISHI_PRODUCT_ID   — Buyer mode: chat with the farmer of this product (optional)
    KRISHI_STATE_FILE   — Where session and snapshot are kept (default: ~/.krishi-chat/state.json)

Commands: ``/list`` shows counterparts, ``/open ID`` switches conversation,
``/quit`` exits. Any other line is sent to the open conversation.

Loads .env from the current working directory or any parent directory.
"""

import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


def _print_new(client, printed: dict, counterpart_id: str) -> None:
    """Print messages of counterpart_id that were not printed before."""
    if counterpart_id != client.focused_id:
        return
    seen = printed.setdefault(counterpart_id, set())
    for message in client.store.messages(counterpart_id):
        marker = (message.local_id, message.delivery_status)
        if marker in seen:
            continue
        seen.add(marker)
        if message.is_pending:
            continue
        status = " (failed)" if message.delivery_status.value == "failed" else ""
        print(f"[{message.sender_display_name}] {message.text}{status}")


async def _run(client, counterpart_id: Optional[str], product_id: Optional[str]) -> None:
    printed: dict = {}
    client.store.add_change_listener(lambda cid: _print_new(client, printed, cid))
    if client.poller is not None:
        client.poller.add_change_listener(lambda ids: print(f"* {len(ids)} customers: {', '.join(ids)}"))

    if product_id:
        opened = await client.open_for_product(product_id)
    else:
        opened = await client.open(counterpart_id)
    if not opened:
        print(f"* Not connected: {client.last_error or client.controller.last_error}")

    loop = asyncio.get_running_loop()
    while True:
        line = await loop.run_in_executor(None, sys.stdin.readline)
        if not line:
            break
        line = line.strip()
        if not line:
            continue
        if line == "/quit":
            break
        if line == "/list":
            ids = client.poller.counterpart_ids if client.poller else [client.focused_id]
            for cid in ids:
                if cid:
                    print(f"* {cid}  {client.directory.display_name_for(cid)}")
            continue
        if line.startswith("/open "):
            await client.select(line[len("/open "):].strip())
            continue
        try:
            await client.send(line)
        except ValueError as e:
            print(f"* {e}")


def main():
    """Load .env, configure logging and run the terminal client."""
    from dotenv import load_dotenv, find_dotenv
    load_dotenv(find_dotenv(usecwd=True))

    from krishi_chat.chat_client import ChatClient
    from krishi_chat.chat_config import ChatHubConfig
    from krishi_chat.chat_models import Credential
    from krishi_chat.storage import JsonFileKeyValueStore

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s — %(message)s",
        datefmt="%H:%M:%S",
    )

    config = ChatHubConfig.from_env()
    credential = None
    if os.environ.get("KRISHI_TOKEN") and os.environ.get("KRISHI_USER_ID"):
        credential = Credential(
            token=os.environ["KRISHI_TOKEN"],
            user_id=os.environ["KRISHI_USER_ID"],
            full_name=os.environ.get("KRISHI_USER_NAME", ""),
        )
    state_file = os.environ.get("KRISHI_STATE_FILE")
    store = JsonFileKeyValueStore(Path(state_file) if state_file else None)

    product_id = os.environ.get("KRISHI_PRODUCT_ID")
    if product_id:
        client = ChatClient.for_buyer(config, credential, store=store)
    else:
        client = ChatClient.for_seller(config, credential, store=store)

    async def _main():
        try:
            await _run(client, os.environ.get("KRISHI_COUNTERPART"), product_id)
        finally:
            await client.aclose()

    try:
        asyncio.run(_main())
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    main()
