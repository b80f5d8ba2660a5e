"""Headless command-line call client.

Joins a room on the signaling server, negotiates a call with whoever else is
in it using aiortc, and turns stdin lines into chat messages.
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Any

from src.client.aiortc_backend import AiortcMediaProvider, create_aiortc_peer
from src.client.call_session import CallSessionController, ChatEntry
from src.client.config import ClientConfig
from src.client.ice import HttpIceServerProvider, IceServerProvider, StaticIceServerProvider
from src.client.media import MediaConstraints
from src.client.negotiation import CallPhase, NegotiationCoordinator
from src.client.signaling_client import SignalingClient
from src.common.errors import RoomFullError
from src.common.logging import setup_logging
from src.signaling.protocol import ServerMessage

logger = logging.getLogger(__name__)

HELP_TEXT = """
Commands:
  /audio - Toggle microphone
  /video - Toggle camera
  /leave - End the call and leave the room
  /quit  - Exit client
  /help  - Show this help
Any other line is sent as a chat message.
"""


class CallCLI:
    """Interactive call client."""

    def __init__(
        self,
        config: ClientConfig,
        room: str,
        display_name: str,
        media_source: str | None = None,
        media_format: str | None = None,
    ) -> None:
        self.config = config
        self.room = room
        self.running = True

        self.client = SignalingClient(config.server_url, on_message=self._on_message)

        ice_provider: IceServerProvider
        if config.ice_servers_url:
            ice_provider = HttpIceServerProvider(config.ice_servers_url)
        else:
            ice_provider = StaticIceServerProvider()

        self.coordinator = NegotiationCoordinator(
            channel=self.client,
            peer_factory=create_aiortc_peer,
            media_provider=AiortcMediaProvider(source=media_source, format=media_format),
            ice_provider=ice_provider,
            constraints=config.media,
            display_name=display_name,
            debounce_s=config.auto_call_debounce_s,
        )
        self.session = CallSessionController(
            channel=self.client,
            coordinator=self.coordinator,
            display_name=display_name,
            join_timeout_s=config.join_timeout_s,
        )
        self.client.on_close = self.session.handle_disconnect

        self.session.on("chat", self._print_chat)
        self.session.on("peer", self._print_peer)
        self.session.on("remote_track", self._print_track)
        self.coordinator.on("phase", self._print_phase)
        self.coordinator.on("connection_state", self._print_connection_state)

    def _on_message(self, message: ServerMessage) -> None:
        self.session.dispatch(message)

    def _print_chat(self, entry: ChatEntry) -> None:
        who = "You" if entry.is_local else entry.sender
        print(f"[{entry.timestamp:%H:%M:%S}] {who}: {entry.text}")

    def _print_peer(self, remote_id: str | None, display_name: str) -> None:
        if remote_id is None:
            print("Peer left")
        else:
            print(f"Peer: {display_name} ({remote_id})")

    def _print_track(self, track: Any) -> None:
        if track is not None:
            print(f"Receiving remote {track.kind}")

    def _print_phase(self, phase: CallPhase) -> None:
        logger.debug("Call phase", extra={"phase": phase.value})

    def _print_connection_state(self, state: str) -> None:
        print(f"Connection: {state}")

    async def input_loop(self) -> None:
        """Read commands and chat from stdin."""
        print(HELP_TEXT)
        loop = asyncio.get_running_loop()

        while self.running:
            try:
                line = await loop.run_in_executor(None, input, "")
            except EOFError:
                self.running = False
                break

            text = line.strip()
            if not text:
                continue

            if not text.startswith("/"):
                try:
                    await self.session.send_chat(text)
                except ConnectionError as e:
                    print(f"Not sent: {e}")
                continue

            command = text[1:].lower()
            if command == "quit":
                self.running = False
            elif command == "leave":
                await self.session.end_call()
                print("Left the room")
            elif command == "audio":
                print(f"Microphone {'on' if self.session.toggle_audio() else 'off'}")
            elif command == "video":
                print(f"Camera {'on' if self.session.toggle_video() else 'off'}")
            elif command == "help":
                print(HELP_TEXT)
            else:
                print(f"Unknown command: {command}")

    async def run(self) -> int:
        """Run the client.

        Returns:
            Process exit code
        """
        try:
            await self.client.connect()
        except ConnectionError as e:
            logger.error("Connection failed", extra={"error": str(e)})
            return 1

        loop = asyncio.get_running_loop()

        def signal_handler() -> None:
            self.running = False
            input_task.cancel()

        input_task = asyncio.create_task(self.input_loop())
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, signal_handler)

        try:
            members = await self.session.join(self.room)
            print(f"Joined room {self.room} ({len(members)}/2)")
        except RoomFullError as e:
            print(f"Cannot join: {e.reason}")
            input_task.cancel()
            await self.client.close()
            return 2
        except TimeoutError:
            print("No answer from the signaling server")
            input_task.cancel()
            await self.client.close()
            return 1

        closed_task = asyncio.create_task(self.client.wait_closed())
        try:
            await asyncio.wait({input_task, closed_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)
            input_task.cancel()
            closed_task.cancel()
            await self.session.end_call()
            await self.client.close()

        return 0


def main() -> None:
    """Main entry point for the call client."""
    parser = argparse.ArgumentParser(description="Headless two-party call client")
    parser.add_argument("--config", type=Path, default=None, help="Client config YAML file")
    parser.add_argument("--server", type=str, default=None, help="Signaling WebSocket URL")
    parser.add_argument("--room", type=str, required=True, help="Room to join")
    parser.add_argument("--name", type=str, default="Anonymous", help="Display name")
    parser.add_argument("--ice-url", type=str, default=None, help="URL of /ice-servers")
    parser.add_argument(
        "--media",
        type=str,
        default=None,
        help="MediaPlayer source (file, device or URL); synthetic tracks when omitted",
    )
    parser.add_argument("--media-format", type=str, default=None, help="FFmpeg input format")
    parser.add_argument("--no-audio", action="store_true", help="Start with microphone off")
    parser.add_argument("--no-video", action="store_true", help="Start with camera off")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")

    args = parser.parse_args()
    setup_logging("DEBUG" if args.verbose else "WARNING")

    config = ClientConfig.from_yaml(args.config) if args.config else ClientConfig()
    updates: dict[str, Any] = {}
    if args.server:
        updates["server_url"] = args.server
    if args.ice_url:
        updates["ice_servers_url"] = args.ice_url
    if args.no_audio or args.no_video:
        updates["media"] = MediaConstraints(audio=not args.no_audio, video=not args.no_video)
    config = ClientConfig.model_validate(config.model_dump() | updates)

    cli = CallCLI(
        config,
        room=args.room,
        display_name=args.name,
        media_source=args.media,
        media_format=args.media_format,
    )

    try:
        sys.exit(asyncio.run(cli.run()))
    except KeyboardInterrupt:
        print("\nExiting...")
        sys.exit(0)


if __name__ == "__main__":
    main()
