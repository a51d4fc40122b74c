"""
Simple interactive CLI for callrelay.

Demonstrates:
- connecting and registering with a relay
- listing sessions and reading their message logs
- sending chat messages and session commands
- signaling-only calls through the null media engine
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import datetime as dt
import logging
from pathlib import Path

from callrelay import RelayClient, SocketConfig
from callrelay.events import (
    CallDurationTick,
    CallEnded,
    CallError,
    CallStateChanged,
    ClientStatusChanged,
    ConnectionStateChanged,
    IncomingCall,
    MessageFailed,
    MessageReceived,
)
from callrelay.messages import FileRef, Message, MessageKind


async def _ainput(prompt: str) -> str:
    return await asyncio.to_thread(input, prompt)


def _short(s: str | None, n: int = 80) -> str:
    if not s:
        return ""
    return s if len(s) <= n else (s[: n - 3] + "...")


def _when(ts_ms: int) -> str:
    return dt.datetime.fromtimestamp(ts_ms / 1000).strftime("%d.%m %H:%M:%S")


def _render(m: Message) -> str:
    if m.kind is MessageKind.CALL_LOG:
        body = f"[call {m.call_duration_s or 0}s]"
    elif m.kind is MessageKind.FILE and m.file is not None:
        body = f"[file {m.file.file_name}]"
    else:
        body = _short(m.text, 200)
    flag = " (sending)" if m.is_pending else ""
    return f"- {_when(m.timestamp)} {m.sender}: {body}{flag}"


async def main() -> None:
    ap = argparse.ArgumentParser(prog="simple_cli.py")
    ap.add_argument("--url", default="ws://localhost:8080/ws", help="relay WebSocket URL")
    ap.add_argument("--name", default="iOSAdmin", help="local identity (default: iOSAdmin)")
    ap.add_argument("--state", default="./state", help="state folder (default: ./state)")
    ap.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    args = ap.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    state_dir = Path(args.state).expanduser().resolve()
    socket = SocketConfig(url=args.url, name=args.name)
    client = RelayClient.from_state_folder(state_dir, socket=socket)

    def on_connection(ev: ConnectionStateChanged) -> None:
        if ev.connected:
            print("\nconnection: open")
        elif not ev.should_reconnect:
            print(f"\nconnection: closed after {ev.reconnect_attempts} attempts")
        else:
            print(f"\nconnection: lost ({ev.error or 'closed'})")

    def on_msg(ev: MessageReceived) -> None:
        print(f"\n[rx] {ev.session_id} {_render(ev.message)}")

    def on_failed(ev: MessageFailed) -> None:
        print(f"\n[failed] {ev.session_id}: {ev.reason}")

    def on_status(ev: ClientStatusChanged) -> None:
        state = "online" if ev.status.is_online else "offline"
        print(f"\n[status] {ev.status.session_id} {ev.status.client_name} {state}")

    def on_incoming(ev: IncomingCall) -> None:
        kind = "video" if ev.call.has_video else "audio"
        print(f"\n[call] incoming {kind} call from {ev.call.peer_name or '?'} (accept/decline)")

    def on_call_state(ev: CallStateChanged) -> None:
        print(f"\n[call] {ev.previous.value} -> {ev.state.value}")

    def on_tick(ev: CallDurationTick) -> None:
        if ev.seconds and ev.seconds % 10 == 0:
            print(f"\n[call] {ev.seconds}s")

    def on_ended(ev: CallEnded) -> None:
        print(f"\n[call] ended ({ev.reason}) after {ev.duration_s}s")

    def on_call_error(ev: CallError) -> None:
        print("\n[call error]", ev.message)

    client.on(ConnectionStateChanged, on_connection)
    client.on(MessageReceived, on_msg)
    client.on(MessageFailed, on_failed)
    client.on(ClientStatusChanged, on_status)
    client.on(IncomingCall, on_incoming)
    client.on(CallStateChanged, on_call_state)
    client.on(CallDurationTick, on_tick)
    client.on(CallEnded, on_ended)
    client.on(CallError, on_call_error)

    await client.connect()

    print(
        "\nCommands: help, sessions, archived, use <sid>, history [n], send <text>, "
        "send_file <name> <url> [mime] [size], status, close, archive, restore <sid>, "
        "call [video], accept, decline, hangup, bg, fg, state, quit\n"
    )

    while True:
        try:
            line = (await _ainput("> ")).strip()
        except (EOFError, KeyboardInterrupt):
            line = "quit"

        if not line:
            continue

        cmd, *rest = line.split(" ", 1)
        cmd = cmd.lower()
        argstr = rest[0] if rest else ""
        sid = client.store.message_focus

        if cmd in ("quit", "exit"):
            break

        if cmd == "help":
            print("sessions  (active sessions, * marks the focused one)")
            print("archived")
            print("use <sid>  (focus a session)")
            print("history [n]")
            print("send <text>")
            print("send_file <name> <url> [mime] [size]  (announce an already uploaded file)")
            print("status  (ask for the web client's presence)")
            print("close | archive | restore <sid>")
            print("call [video] | accept | decline | hangup")
            print("bg | fg  (background / foreground heartbeat)")
            print("state")
            print("quit")
            continue

        if cmd == "state":
            print("connection:", client.connection_state)
            print("call:", client.calls.state.value, client.calls.active_call)
            continue

        if cmd == "sessions":
            ids = client.store.session_ids()
            if not ids:
                print("(no sessions yet)")
                continue
            for s in ids:
                unread = await client.store.unread_count(s)
                mark = "*" if s == sid else " "
                status = client.store.client_status(s)
                online = "" if status is None else (" online" if status.is_online else " offline")
                print(f"{mark} {s} unread={unread}{online}")
            continue

        if cmd == "archived":
            for s in client.store.archived_ids():
                print(f"- {s}")
            continue

        if cmd == "use":
            if not argstr:
                print("usage: use <sid>")
                continue
            if not client.store.has_session(argstr):
                print(f"unknown session: {argstr} (try: sessions)")
                continue
            client.store.message_focus = argstr
            client.store.call_focus = argstr
            continue

        if sid is None and cmd in (
            "history",
            "send",
            "send_file",
            "status",
            "close",
            "archive",
            "call",
        ):
            print("error: no session focused (try: use <sid>)")
            continue

        if cmd == "history":
            n = 20
            if argstr:
                with contextlib.suppress(ValueError):
                    n = int(argstr)
            msgs = client.store.messages(sid)
            for m in msgs[-n:]:
                print(_render(m))
            await client.mark_read(sid)
            continue

        if cmd == "send":
            if not argstr:
                print("usage: send <text>")
                continue
            if not await client.send_chat(sid, argstr):
                print("error: not sent")
            continue

        if cmd == "send_file":
            parts = argstr.split(" ") if argstr else []
            if len(parts) < 2:
                print("usage: send_file <name> <url> [mime] [size]")
                continue
            size = None
            if len(parts) >= 4:
                with contextlib.suppress(ValueError):
                    size = int(parts[3])
            ref = FileRef(
                file_name=parts[0],
                file_url=parts[1],
                mime_type=parts[2] if len(parts) >= 3 else None,
                size=size,
            )
            if not await client.send_file(sid, ref):
                print("error: not sent")
            continue

        if cmd == "status":
            if not await client.request_client_status(sid):
                print("(asked too recently or not connected)")
            continue

        if cmd == "close":
            await client.close_session(sid)
            continue

        if cmd == "archive":
            await client.archive_session(sid)
            continue

        if cmd == "restore":
            if not argstr:
                print("usage: restore <sid>")
                continue
            await client.restore_session(argstr)
            continue

        if cmd == "call":
            status = client.store.client_status(sid)
            peer = status.client_name if status else "client"
            if not await client.start_call(peer, session_id=sid, with_video=argstr == "video"):
                print("error: cannot start a call now")
            continue

        if cmd == "accept":
            if not await client.accept_call():
                print("error: no incoming call")
            continue

        if cmd == "decline":
            if not await client.decline_call():
                print("error: no incoming call")
            continue

        if cmd == "hangup":
            if not await client.end_call():
                print("error: no active call")
            continue

        if cmd in ("bg", "fg"):
            await client.set_background(cmd == "bg")
            continue

        print(f"unknown command: {cmd} (try: help)")

    await client.close()


if __name__ == "__main__":
    asyncio.run(main())
