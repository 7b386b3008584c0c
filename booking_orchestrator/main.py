"""CLI entry point for the booking orchestrator.

A terminal chat loop for development. For production, use the FastAPI
server (booking_orchestrator/server.py).

Usage:
    python -m booking_orchestrator.main                       # anonymous session
    python -m booking_orchestrator.main --user-id user-demo   # logged-in session
    python -m booking_orchestrator.main --debug               # show API calls
"""

from __future__ import annotations

import argparse
import logging
import uuid

from dotenv import load_dotenv

from booking_orchestrator.container import build_orchestrator

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool = False) -> None:
    """WARNING by default, DEBUG when --debug is passed."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)-8s %(name)s - %(message)s",
    )

    if not debug:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)

    logging.getLogger("booking_orchestrator").setLevel(logging.DEBUG if debug else logging.INFO)


def _new_session(orchestrator, user_id: str | None) -> str:
    session_id = str(uuid.uuid4())
    if user_id:
        orchestrator.bind_user(session_id, user_id)
    logger.info("Started new session: %s", session_id)
    return session_id


def main():
    """Run the interactive CLI chat loop."""
    parser = argparse.ArgumentParser(description="Booking orchestrator CLI")
    parser.add_argument(
        "--debug", action="store_true",
        help="Show all log messages including HTTP requests",
    )
    parser.add_argument(
        "--user-id",
        help="Bind this user id to every session (simulates a logged-in patient)",
    )
    args = parser.parse_args()

    load_dotenv()
    _configure_logging(debug=args.debug)

    print("\n" + "=" * 60)
    print("  Trợ lý đặt lịch khám - CLI Chat")
    print("=" * 60)
    print("  Type your message and press Enter.")
    print("  Commands: 'quit' to exit, 'new' for a new session.")
    print("=" * 60 + "\n")

    orchestrator = build_orchestrator()
    session_id = _new_session(orchestrator, args.user_id)
    history: list[dict[str, str]] = []

    try:
        while True:
            try:
                user_input = input("Bạn: ").strip()
            except (KeyboardInterrupt, EOFError):
                print("\n\nTạm biệt!")
                break

            if not user_input:
                continue

            if user_input.lower() in ("exit", "quit", "q"):
                print("\nTạm biệt! Chúc bạn nhiều sức khỏe!")
                break

            if user_input.lower() == "new":
                orchestrator.end_session(session_id)
                session_id = _new_session(orchestrator, args.user_id)
                history = []
                print(f"\n>> New session started: {session_id[:8]}...\n")
                continue

            result = orchestrator.handle_turn(user_input, history, session_id)
            history.append({"role": "user", "content": user_input})
            history.append({"role": "assistant", "content": result.text})
            marker = " [tool]" if result.used_tool else ""
            print(f"\nTrợ lý{marker}: {result.text}\n")
    finally:
        orchestrator.close()


if __name__ == "__main__":
    main()
