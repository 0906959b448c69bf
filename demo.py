#!/usr/bin/env python3
"""
Entry point for the support agent.

    python demo.py serve [--host 0.0.0.0] [--port 8000]
    python demo.py chat [--client default]
    python demo.py voice
"""

import argparse
import asyncio
import logging
import sys
import threading

from support_agent.config import Settings
from support_agent.logging.flight_recorder import FlightRecorder
from support_agent.logging.setup import setup_logging
from support_agent.models.conversation import Role, SessionStatus, Turn
from support_agent.models.tooling import BookingDraft
from support_agent.services.audio_devices import SoundDeviceCapture, SoundDeviceOutput
from support_agent.services.history import HistoryStore
from support_agent.services.text_session import TextSessionEngine
from support_agent.services.tool_dispatcher import ContactLink, ToolDispatcher
from support_agent.services.transport import create_chat_service, create_live_service
from support_agent.services.voice_session import VoiceSessionEngine

logger = logging.getLogger("demo")


def print_booking_form(draft: BookingDraft) -> None:
    fields = draft.model_dump(mode="json", exclude_none=True)
    print("\n[booking form]")
    for key, value in fields.items():
        print(f"  {key}: {value}")


def serve(args: argparse.Namespace, settings: Settings) -> None:
    import uvicorn

    uvicorn.run(
        "support_agent.main:app",
        host=args.host,
        port=args.port,
        log_level=settings.log_level.lower(),
    )


async def chat(args: argparse.Namespace, settings: Settings) -> None:
    printed = {}

    def on_update(turn: Turn) -> None:
        if turn.role != Role.AGENT:
            return
        shown = printed.get(turn.id, 0)
        if len(turn.text) > shown:
            print(turn.text[shown:], end="", flush=True)
            printed[turn.id] = len(turn.text)

    store = HistoryStore(settings.history_dir / f"{args.client}.json")
    engine = TextSessionEngine(
        create_chat_service(settings),
        ToolDispatcher(booking_form=print_booking_form, recorder=FlightRecorder()),
        store,
        on_update=on_update,
    )
    for turn in engine.turns:
        print(f"{turn.role.value}: {turn.text}")
        printed[turn.id] = len(turn.text)
    if not engine.open():
        print(f"error: {engine.error}")
        return

    print("Type a message, /clear to reset, /quit to leave.")
    while True:
        try:
            text = await asyncio.to_thread(input, "\n> ")
        except EOFError:
            break
        if text.strip() == "/quit":
            break
        if text.strip() == "/clear":
            engine.reset()
            engine.open()
            print("history cleared")
            continue
        print("agent: ", end="", flush=True)
        await engine.submit(text)
        print()
        if engine.error:
            print(f"error: {engine.error}")


def _read_stdin(loop: asyncio.AbstractEventLoop, lines: asyncio.Queue) -> None:
    for line in sys.stdin:
        if loop.is_closed():
            return
        loop.call_soon_threadsafe(lines.put_nowait, line)
    if not loop.is_closed():
        loop.call_soon_threadsafe(lines.put_nowait, "")


async def next_line(lines: asyncio.Queue, ended: asyncio.Event):
    """Next console line, or None once the session has ended first."""
    read = asyncio.ensure_future(lines.get())
    ended_wait = asyncio.ensure_future(ended.wait())
    try:
        await asyncio.wait({read, ended_wait}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        ended_wait.cancel()
    if not read.done():
        read.cancel()
        return None
    return read.result()


async def voice(args: argparse.Namespace, settings: Settings) -> None:
    ended = asyncio.Event()

    def on_status(status: SessionStatus, error) -> None:
        print(f"[{status.value}]" + (f" {error}" if error else ""))
        if status in (SessionStatus.DISCONNECTED, SessionStatus.ERROR):
            ended.set()

    contact_link = ContactLink(settings.contact_link_base, on_change=lambda url: print(f"\n[human agent] {url}"))
    engine = VoiceSessionEngine(
        create_live_service(settings),
        SoundDeviceCapture(settings.input_sample_rate, settings.capture_block_size),
        SoundDeviceOutput(settings.output_sample_rate, analyser_size=settings.analyser_fft_size),
        ToolDispatcher(booking_form=print_booking_form, contact_link=contact_link, recorder=FlightRecorder()),
        settings,
        on_status=on_status,
    )
    await engine.connect()
    print("Enter toggles mute, q hangs up.")
    lines: asyncio.Queue = asyncio.Queue()
    # a pending readline never blocks exit
    threading.Thread(target=_read_stdin, args=(asyncio.get_running_loop(), lines), daemon=True).start()
    try:
        while engine.status == SessionStatus.CONNECTED:
            line = await next_line(lines, ended)
            if not line or line.strip().lower() == "q":
                break
            print("[muted]" if engine.toggle_mute() else "[live]")
    finally:
        await engine.disconnect()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Apple911 support agent")
    sub = parser.add_subparsers(dest="command", required=True)
    serve_parser = sub.add_parser("serve", help="run the HTTP/WebSocket server")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8000)
    chat_parser = sub.add_parser("chat", help="text chat in the terminal")
    chat_parser.add_argument("--client", default="default")
    sub.add_parser("voice", help="voice session on the local microphone and speaker")
    args = parser.parse_args(argv)

    settings = Settings.from_env()
    setup_logging(settings.log_level)

    if args.command == "serve":
        serve(args, settings)
    elif args.command == "chat":
        asyncio.run(chat(args, settings))
    else:
        asyncio.run(voice(args, settings))
    return 0


if __name__ == "__main__":
    sys.exit(main())
