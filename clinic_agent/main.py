"""CLI entry point for the clinic booking agent.

A terminal chat for testing and development that talks to the same
orchestrator as the API.  The CLI plays the part of the chat widget: it
keeps the conversation history and resubmits it on every turn.  For
production, use the FastAPI server (clinic_agent/server.py).

Usage:
    uv run python -m clinic_agent.main            # normal mode (quiet)
    uv run python -m clinic_agent.main --debug    # debug mode (shows API calls)
"""

from __future__ import annotations

import argparse
import asyncio
import logging

from dotenv import load_dotenv

from clinic_agent.agent import BookingAgent, create_booking_agent
from clinic_agent.db.session import create_db_engine, create_session_factory, init_db
from clinic_agent.services.completion_errors import CompletionServiceError
from clinic_agent.services.notifications import EmailNotifier

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool = False) -> None:
    """Set up logging: WARNING by default, DEBUG when --debug is passed."""
    root_level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(
        level=root_level,
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    )

    if not debug:
        # Silence chatty HTTP loggers even if root is WARNING
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)

    logging.getLogger("clinic_agent").setLevel(logging.DEBUG if debug else logging.INFO)


async def _reply(agent: BookingAgent, history: list[dict[str, str]]) -> str:
    """Stream one assistant reply to stdout and return its text."""
    relay = await agent.prepare(history)
    printed = 0
    print("\nDenti: ", end="", flush=True)
    async for _ in relay:
        text = relay.text
        print(text[printed:], end="", flush=True)
        printed = len(text)
    print("\n")
    if relay.error is not None:
        raise relay.error
    return relay.text


async def _chat_loop(agent: BookingAgent) -> None:
    history: list[dict[str, str]] = []

    while True:
        try:
            user_input = (await asyncio.to_thread(input, "You: ")).strip()
        except (KeyboardInterrupt, EOFError):
            print("\n\nGoodbye!")
            return

        if not user_input:
            continue

        if user_input.lower() in ("exit", "quit", "q"):
            print("\nGoodbye! Have a great day!")
            return

        if user_input.lower() == "new":
            history = []
            print("\n>> New conversation started.\n")
            continue

        history.append({"role": "user", "content": user_input})
        try:
            reply = await _reply(agent, history)
        except CompletionServiceError as e:
            logger.warning("Completion service error: %s", e)
            print(f"\nDenti: {e.public_message}\n")
            history.pop()
            continue
        except Exception as e:
            logger.exception("Error processing message")
            print(f"\nDenti: I'm sorry, something went wrong: {e}")
            print("     Please try again or type 'new' to start a fresh conversation.\n")
            history.pop()
            continue

        history.append({"role": "assistant", "content": reply})


async def _run() -> None:
    engine = create_db_engine()
    init_db(engine)
    notifier = EmailNotifier()
    agent = create_booking_agent(create_session_factory(engine), notifier=notifier)
    try:
        await _chat_loop(agent)
    finally:
        await agent.aclose()
        notifier.close()
        engine.dispose()


def main():
    """Run the interactive CLI chat loop."""
    parser = argparse.ArgumentParser(description="Clinic booking agent CLI")
    parser.add_argument(
        "--debug", action="store_true",
        help="Show all log messages including HTTP requests",
    )
    args = parser.parse_args()

    load_dotenv()
    _configure_logging(debug=args.debug)

    print("\n" + "=" * 60)
    print("  Clinic Booking Agent - CLI Chat")
    print("=" * 60)
    print("  Type your message and press Enter.")
    print("  Commands: 'quit' to exit, 'new' for a new conversation.")
    print("=" * 60 + "\n")

    asyncio.run(_run())


if __name__ == "__main__":
    main()
