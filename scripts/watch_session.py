#!/usr/bin/env python3
"""Attach a session controller to a running Authentication Service and watch it.

Every line typed on stdin counts as keyboard activity. A few lines are
commands instead:

    extend   "stay logged in" (activity plus an immediate renewal)
    logout   end the session and exit
    quit     detach without logging out

Usage:
    # Start from an access token issued by the service:
    SESSION_TOKEN=eyJ... python scripts/watch_session.py --base-url http://localhost:3000/api

    # Or pick up a credential persisted by an earlier run:
    CREDENTIAL_BACKEND=file python scripts/watch_session.py --resume

Environment Variables:
    SESSION_TOKEN: Access token to start from (ignored with --resume)
    AUTH_BASE_URL: Authentication Service base URL
    SESSION_INACTIVITY_TIMEOUT, SESSION_WARNING_WINDOW, ...: see sessionlife.config
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


class PrintingNavigator:
    """Stands in for the routing layer: announces the redirect."""

    def __init__(self, done: asyncio.Event) -> None:
        self.done = done

    def redirect_to_login(self, reason) -> None:
        print(f"-> redirect to login ({reason.value})")
        self.done.set()


async def watch(token: str | None, version: int, base_url: str | None, resume: bool) -> int:
    # Import here so env overrides from the command line apply to settings
    from sessionlife.config import get_settings
    from sessionlife.service.activity import LocalInputSurface, SignalKind
    from sessionlife.service.controller import SessionController
    from sessionlife.service.inactivity import format_remaining
    from sessionlife.storage.models import Credential, Phase

    settings = get_settings()
    if base_url:
        settings = settings.model_copy(update={"auth_base_url": base_url})

    done = asyncio.Event()
    surface = LocalInputSurface()
    controller = SessionController.from_settings(
        settings, navigator=PrintingNavigator(done), surface=surface
    )

    def _on_phase(phase) -> None:
        if phase.kind is Phase.WARNING:
            print(f"warning: logging out in {format_remaining(phase.remaining_seconds)}")
        else:
            print(f"phase: {phase.kind.value}")

    controller.on_phase_change(_on_phase)
    controller.on_session_ended(lambda reason: print(f"session ended: {reason.value}"))

    if resume:
        state = await controller.resume()
    else:
        state = await controller.login(Credential(token=token, version=version))
    print(f"onboarding gate: {state.value}")
    if not controller.session_active:
        await controller.aclose()
        return 1
    if controller.is_gated():
        steps = ", ".join(step.value for step in controller.pending_steps())
        print(f"pending onboarding steps: {steps}")

    loop = asyncio.get_running_loop()

    async def _read_input() -> None:
        while not done.is_set():
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                return
            command = line.strip().lower()
            if command == "quit":
                return
            if command == "logout":
                await controller.logout()
                return
            if command == "extend":
                controller.extend_session()
                continue
            surface.emit(SignalKind.KEYBOARD)

    reader = asyncio.create_task(_read_input())
    ended = asyncio.create_task(done.wait())
    try:
        await asyncio.wait({reader, ended}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (reader, ended):
            task.cancel()
        await controller.aclose()
    return 0


def main():
    parser = argparse.ArgumentParser(
        description="Watch a session's keep-alive and inactivity lifecycle",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--token",
        default=os.environ.get("SESSION_TOKEN"),
        help="Access token (or set SESSION_TOKEN env var)",
    )
    parser.add_argument(
        "--version",
        type=int,
        default=0,
        help="Token version reported by the service at login",
    )
    parser.add_argument(
        "--base-url",
        default=None,
        help="Authentication Service base URL (defaults to AUTH_BASE_URL)",
    )
    parser.add_argument(
        "--resume",
        action="store_true",
        help="Resume the credential kept by the configured credential backend",
    )

    args = parser.parse_args()

    if not args.resume and not args.token:
        print("Error: --token or SESSION_TOKEN environment variable required")
        sys.exit(1)

    os.environ.setdefault("LOG_DEV_MODE", "true")

    try:
        sys.exit(asyncio.run(watch(args.token, args.version, args.base_url, args.resume)))
    except KeyboardInterrupt:
        print("\nDetached.")


if __name__ == "__main__":
    main()
