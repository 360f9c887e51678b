#!/usr/bin/env python3
"""
VERA CLI - hands-free voice conversation client
"""
import argparse
import asyncio
import logging
import sys
from typing import Optional

from . import config as CFG
from .audio_input import MicrophoneSource
from .audio_output import AudioPlayer
from .backend import BackendClient
from .conversation import ConversationLog, Message, TurnState
from .error_handler import ConfigurationError, NetworkError
from .logging_utils import set_level, setup_logger
from .pipeline import BackendPipeline
from .playback import PlaybackController
from .session import SessionStore, load_or_create_session_id
from .turn_taking import StatusUpdate, TurnTakingMachine
from .utterance import UtteranceBuffer
from .vad import VoiceActivityDetector

logger = setup_logger("vera.cli")


def build_machine(client: BackendClient, source, session_id: str) -> TurnTakingMachine:
    """Wire the turn-taking components from configuration."""
    player = AudioPlayer(output_device=CFG.get_output_device())
    playback = PlaybackController(
        client,
        player=player,
        settle_delay_ms=CFG.get_settle_delay_ms(),
        cue_path=CFG.get_filler_audio_path(),
    )
    pipeline = BackendPipeline(
        client,
        session_id,
        cue=playback,
        filler_enabled=CFG.filler_enabled(),
        filler_threshold=CFG.get_filler_threshold(),
    )
    detector = VoiceActivityDetector(
        volume_threshold=CFG.get_volume_threshold(),
        silence_ms=CFG.get_silence_ms(),
        trailing_ms=CFG.get_trailing_ms(),
        max_wait_for_speech_ms=CFG.get_max_wait_for_speech_ms(),
        max_utterance_ms=CFG.get_max_utterance_ms(),
    )
    buffer = UtteranceBuffer(sample_rate=CFG.get_sample_rate(), min_audio_bytes=CFG.get_min_audio_bytes())
    return TurnTakingMachine(
        source,
        buffer,
        detector,
        pipeline,
        playback,
        conversation=ConversationLog(max_history=CFG.get_max_history()),
        session_id=session_id,
        poll_interval_ms=CFG.get_poll_interval_ms(),
    )


def _print_status(status: StatusUpdate) -> None:
    marker = "!" if status.level == "error" else "*"
    print(f"[{marker}] {status.message}", flush=True)


def _print_message(message: Message) -> None:
    who = "You" if message.sender == "user" else "VERA"
    print(f"{who}: {message.content}", flush=True)


async def _listen(session_id: str, skip_health_check: bool = False) -> int:
    client = BackendClient(CFG.get_backend_url(), timeout=CFG.get_request_timeout())
    if not skip_health_check and not await asyncio.to_thread(client.check_health):
        print(f"VERA Offline ({client.base_url})", file=sys.stderr)
        client.close()
        return 1
    print("VERA Online. Press Ctrl+C to stop.", flush=True)

    source = MicrophoneSource(
        sample_rate=CFG.get_sample_rate(),
        window_size=CFG.get_window_size(),
        block_size=CFG.get_block_size(),
        device=CFG.get_input_device(),
    )
    machine = build_machine(client, source, session_id)
    machine.conversation.register_callback(_print_message)
    machine.add_status_listener(_print_status)

    fatal = asyncio.Event()

    def _watch(status: StatusUpdate) -> None:
        # Device errors leave the machine idle; nothing more to do
        if status.level == "error" and status.state is TurnState.IDLE:
            fatal.set()

    machine.add_status_listener(_watch)
    runner = asyncio.create_task(machine.run())
    machine.enable()
    try:
        await fatal.wait()
        return 1
    finally:
        runner.cancel()
        machine.shutdown()
        source.close()
        client.close()


def _send_command(session_id: str, action: str) -> int:
    client = BackendClient(CFG.get_backend_url(), timeout=CFG.get_request_timeout())
    try:
        client.send_command(session_id, action)
    except NetworkError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        client.close()
    print(f"Session {action}d" if action == "pause" else "Session resumed")
    return 0


def main(argv: Optional[list] = None) -> int:
    """Main CLI entry point"""
    parser = argparse.ArgumentParser(
        description="VERA - hands-free voice conversation client",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  vera                  # Start listening (same as 'vera listen')
  vera pause            # Pause the session server-side
  vera unpause          # Resume the session
  vera health           # Check whether the backend is online
  vera session          # Show the stored session id
        """
    )

    parser.add_argument(
        'command',
        nargs='?',
        default='listen',
        choices=['listen', 'pause', 'unpause', 'health', 'session'],
        help='Command to run'
    )

    parser.add_argument(
        '--config',
        default=None,
        help='Path to configuration file'
    )

    parser.add_argument(
        '--skip-health-check',
        action='store_true',
        help='Start listening even if /health does not answer'
    )

    parser.add_argument(
        '--debug',
        action='store_true',
        help='Enable debug logging'
    )

    args = parser.parse_args(argv)

    try:
        if args.config:
            CFG.set_config_path(args.config)
        level_name = "DEBUG" if args.debug else CFG.get_log_level()
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    set_level(getattr(logging, level_name, logging.INFO))

    store = SessionStore(CFG.get_session_store_path())
    session_id = load_or_create_session_id(store)

    if args.command == 'session':
        print(session_id)
        return 0
    if args.command == 'health':
        client = BackendClient(CFG.get_backend_url(), timeout=CFG.get_request_timeout())
        online = client.check_health()
        client.close()
        print("VERA Online" if online else "VERA Offline")
        return 0 if online else 1
    if args.command in ('pause', 'unpause'):
        return _send_command(session_id, args.command)

    try:
        return asyncio.run(_listen(session_id, args.skip_health_check))
    except KeyboardInterrupt:
        print("\nShutting down...")
        return 0


if __name__ == '__main__':
    sys.exit(main())
