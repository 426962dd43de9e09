"""CLI entry point for the dental voice core.

A terminal chat loop over the same orchestrator the voice bridge uses, for
local testing.  For production, run the FastAPI server
(``dental_voice/server.py``).

Usage:
    python -m dental_voice.main            # normal mode (quiet)
    python -m dental_voice.main --debug    # debug mode (shows API calls)
"""

from __future__ import annotations

import argparse
import logging
import uuid

from dotenv import load_dotenv

from dental_voice.orchestrator import create_orchestrator
from dental_voice.prompts import GREETING_TRIGGER
from dental_voice.services.conversation_store import ConversationStore

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool = False) -> None:
    """Set up logging: WARNING by default, DEBUG when --debug is passed."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    )

    if not debug:
        # Silence chatty HTTP loggers even if root is WARNING
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)

    logging.getLogger("dental_voice").setLevel(logging.DEBUG if debug else logging.INFO)


def main():
    """Run the interactive CLI chat loop."""
    parser = argparse.ArgumentParser(description="Dental voice agent CLI")
    parser.add_argument(
        "--debug", action="store_true",
        help="Show all log messages including HTTP requests",
    )
    parser.add_argument(
        "--no-greeting", action="store_true",
        help="Let the user speak first instead of starting with the greeting",
    )
    args = parser.parse_args()

    load_dotenv()
    _configure_logging(debug=args.debug)

    print("\n" + "=" * 60)
    print("  Dental Voice Agent - CLI Chat")
    print("=" * 60)
    print("  Type your message and press Enter.")
    print("  Commands: 'quit' to exit, 'new' for a new session.")
    print("=" * 60 + "\n")

    store = ConversationStore()
    orchestrator = create_orchestrator(store)

    def new_session() -> str:
        session_id = str(uuid.uuid4())
        logger.info("Started new session: %s", session_id)
        if not args.no_greeting:
            print(f"\nAgent: {orchestrator.orchestrate(session_id, GREETING_TRIGGER).text}\n")
        return session_id

    session_id = new_session()

    while True:
        try:
            user_input = input("You: ").strip()
        except (KeyboardInterrupt, EOFError):
            print("\n\nGoodbye!")
            break

        if not user_input:
            continue

        if user_input.lower() in ("exit", "quit", "q"):
            print("\nGoodbye! Have a great day!")
            break

        if user_input.lower() == "new":
            store.evict(session_id)
            print("\n>> New session started.\n")
            session_id = new_session()
            continue

        try:
            result = orchestrator.orchestrate(session_id, user_input)
            print(f"\nAgent: {result.text}\n")
            if result.error:
                logger.info("Turn ended with %s", result.error["code"])
        except KeyboardInterrupt:
            print("\n\nGoodbye!")
            break
        except Exception as e:
            logger.exception("Error processing message")
            print(f"\nAgent: I'm sorry, something went wrong: {e}")
            print("       Please try again or type 'new' to start a fresh session.\n")


if __name__ == "__main__":
    main()
