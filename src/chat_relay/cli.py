"""Terminal chat client for a running relay, with the login tools wired in.

Verification codes from the in-memory identity provider are printed, so a
developer can complete the login flow without a mail server.
"""

import argparse
import asyncio
import logging
import signal

from .caller.frontend_tools import build_frontend_registry
from .caller.identity import InMemoryIdentityProvider
from .caller.transport import ChatTransport
from .caller.view import ConversationView
from .config import RELAY_BASE_URL

logger = logging.getLogger(__name__)


class _EchoingProvider(InMemoryIdentityProvider):
    def _send(self, flow, email):
        super()._send(flow, email)
        print(f"[code for {email}: {self.last_code(email)}]")


def _print_new(view: ConversationView, shown: set[str]) -> None:
    for msg in view.displayed():
        if msg.id in shown or msg.role != "assistant":
            continue
        shown.add(msg.id)
        print(f"assistant> {msg.display_text()}")


async def _send(view: ConversationView, line: str) -> None:
    """Send one line; Ctrl-C while the reply streams stops that reply only."""
    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, view.stop)
    try:
        await view.send_message(line)
    finally:
        loop.remove_signal_handler(signal.SIGINT)


async def _chat(base_url: str, chat_id: str | None) -> None:
    transport = ChatTransport(base_url)
    registry, _ = build_frontend_registry(_EchoingProvider(), on_authenticated=transport.set_user)
    try:
        if chat_id is None:
            chat = await transport.create_chat()
            chat_id = chat["id"]
            logger.info("Created chat %s", chat_id)
        view = ConversationView(chat_id, transport, registry)
        await view.load()
        shown: set[str] = set()
        for msg in view.displayed():
            shown.add(msg.id)
            print(f"{msg.role}> {msg.display_text()}")

        while True:
            line = await asyncio.to_thread(input, "you> ")
            if line.strip() in ("/quit", "/exit"):
                break
            await _send(view, line)
            if view.status == "error":
                print(f"error> {view.error}")
            else:
                await view.refresh()
            _print_new(view, shown)
    except (EOFError, KeyboardInterrupt):
        pass
    finally:
        await transport.aclose()


def main() -> None:
    parser = argparse.ArgumentParser(description="Chat with a relay server from the terminal")
    parser.add_argument("--base-url", default=RELAY_BASE_URL)
    parser.add_argument("--chat-id", default=None, help="Resume an existing chat")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    asyncio.run(_chat(args.base_url, args.chat_id))


if __name__ == "__main__":
    main()
