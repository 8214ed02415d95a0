from __future__ import annotations

import argparse
import asyncio
import os
import sys
import threading
from typing import Optional

from .config import CallConfig
from .logging_config import setup_logging
from .net.relay import serve_relay
from .peer import CallPeer
from .rtc.call_manager import CallCallbacks, CallPhase, CallStateError
from .rtc.media import MediaAcquisitionError


HELP = "commands: call <peer> | answer | hangup | mute | video | status | quit"


def _start_stdin_reader(loop: asyncio.AbstractEventLoop, lines: "asyncio.Queue[Optional[str]]") -> None:
	"""Feed stdin lines into the loop from a daemon thread (None on EOF)."""

	def _run() -> None:
		for line in sys.stdin:
			loop.call_soon_threadsafe(lines.put_nowait, line)
		loop.call_soon_threadsafe(lines.put_nowait, None)

	threading.Thread(target=_run, name="stdin-reader", daemon=True).start()


async def _run_command(peer: CallPeer, line: str) -> bool:
	"""Run one command line. Returns False when the user wants to quit."""

	parts = line.split()
	if not parts:
		return True
	cmd, args = parts[0].casefold(), parts[1:]

	try:
		if cmd in ("quit", "exit"):
			return False
		if cmd == "call" and len(args) == 1:
			await peer.start_call(args[0])
		elif cmd == "answer":
			await peer.answer_call()
		elif cmd in ("hangup", "decline"):
			await peer.hang_up()
		elif cmd == "mute":
			muted = await peer.toggle_mute()
			print("Microphone muted" if muted else "Microphone on")
		elif cmd == "video":
			on = await peer.toggle_video()
			print("Camera on" if on else "Camera off")
		elif cmd == "status":
			print(f"{peer.peer_id}: {peer.phase.value} remote={peer.manager.remote_peer or '-'}")
		else:
			print(HELP)
	except (CallStateError, MediaAcquisitionError) as e:
		print(f"Error: {e}")
	return True


async def run_peer(cfg: CallConfig, *, call_to: Optional[str] = None, auto_answer: bool = False) -> int:
	peer: Optional[CallPeer] = None
	answering: set[asyncio.Task[None]] = set()

	async def on_log(message: str) -> None:
		print(message)

	async def on_phase(phase: CallPhase, remote: Optional[str]) -> None:
		print(f"[{phase.value}]" + (f" {remote}" if remote else ""))

	async def on_incoming_call(peer_id: str) -> None:
		if not auto_answer:
			print(f"Incoming call from {peer_id}: type 'answer' or 'decline'")
			return
		assert peer is not None
		# Callbacks run inside the call manager; answer from a separate task.
		task = asyncio.create_task(_run_command(peer, "answer"))
		answering.add(task)
		task.add_done_callback(answering.discard)

	peer = CallPeer(
		cfg,
		callbacks=CallCallbacks(on_log=on_log, on_phase=on_phase, on_incoming_call=on_incoming_call),
	)
	await peer.start()
	print(f"Peer {cfg.peer_id} polling {cfg.mailbox_url} every {cfg.poll_interval}s")
	print(HELP)

	lines: asyncio.Queue[Optional[str]] = asyncio.Queue()
	_start_stdin_reader(asyncio.get_running_loop(), lines)
	try:
		if call_to:
			await _run_command(peer, f"call {call_to}")
		while True:
			line = await lines.get()
			if line is None or not await _run_command(peer, line):
				break
	finally:
		await peer.stop()
	return 0


def main(argv: list[str] | None = None) -> int:
	parser = argparse.ArgumentParser(description="slotcall: audio/video calls signaled through a shared mailbox slot")
	parser.add_argument(
		"--log-level",
		default=None,
		help="Logging level (debug, info, warning, error). Can also use SLOTCALL_LOG_LEVEL.",
	)
	parser.add_argument("--log-file", default=None, help="Write logs to this file instead of stderr (or SLOTCALL_LOG_FILE)")
	sub = parser.add_subparsers(dest="command", required=True)

	peer_p = sub.add_parser("peer", help="Run an interactive call peer")
	peer_p.add_argument(
		"--id",
		default=os.environ.get("SLOTCALL_PEER_ID", os.environ.get("USER", "")),
		help="Peer identity",
	)
	peer_p.add_argument("--mailbox", default=None, help="Mailbox URL (path, file://, redis://, ws://, memory://)")
	peer_p.add_argument("--poll-interval", type=float, default=None, help="Seconds between mailbox reads")
	peer_p.add_argument("--call", default=None, help="Call this peer right away")
	peer_p.add_argument("--auto-answer", action="store_true", help="Answer incoming calls automatically")
	peer_p.add_argument("--media-file", default=None, help="Send this file instead of camera/microphone")
	peer_p.add_argument("--no-video", action="store_true", help="Do not open a camera")
	peer_p.add_argument("--no-audio", action="store_true", help="Do not open a microphone")
	peer_p.add_argument("--record", default=None, help="Record remote media to this file")

	relay_p = sub.add_parser("relay", help="Host a mailbox slot over WebSocket")
	relay_p.add_argument("--host", default=os.environ.get("SLOTCALL_RELAY_HOST", "127.0.0.1"))
	relay_p.add_argument("--port", type=int, default=int(os.environ.get("SLOTCALL_RELAY_PORT", "8765")))

	args = parser.parse_args(argv)

	setup_logging(args.log_level, args.log_file)

	if args.command == "relay":
		try:
			asyncio.run(serve_relay(args.host, args.port))
		except KeyboardInterrupt:
			pass
		return 0

	if not args.id:
		print("A peer id is required (--id or SLOTCALL_PEER_ID)")
		return 2

	cfg = CallConfig.from_env(args.id)
	if args.mailbox:
		cfg.mailbox_url = args.mailbox
	if args.poll_interval is not None:
		cfg.poll_interval = args.poll_interval
	if args.media_file:
		cfg.media.media_file = args.media_file
	if args.no_video:
		cfg.media.video = False
	if args.no_audio:
		cfg.media.audio = False
	if args.record:
		cfg.record_to = args.record

	try:
		return asyncio.run(run_peer(cfg, call_to=args.call, auto_answer=args.auto_answer))
	except KeyboardInterrupt:
		return 130


if __name__ == "__main__":
	raise SystemExit(main(sys.argv[1:]))
