import argparse
import asyncio
import logging
import mimetypes
import os
import sys
from typing import Optional

from chat import ChatService
from config import ConfigError, Settings
from file_transfer import FileReassembler
from handshake import ContactHandshake
from multiplexer import MessageMultiplexer
from peer_manager import TransportManager
from relay_server import run_relay
from signaling import SignalingClient
from storage import Contact, LogNotifier, MemoryContactStore, MemoryMessageStore, PeerIdentity
from transport import RTCTransport

logger = logging.getLogger("Main")

HELP = """Commands:
  /connect <peer-id>   open a channel and chat with that peer
  /file <path>         send a file to the current peer
  /contacts            list contacts and presence
  /quit                leave
Anything else is sent as a chat message."""


def configure_logging(settings: Settings):
    handlers = [logging.StreamHandler()]
    if settings.log_file:
        handlers.append(logging.FileHandler(settings.log_file, mode='w'))
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper()),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
    )


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="P2P chat relay and peer")
    parser.add_argument('--role', choices=['relay', 'peer'], required=True, help="Run the relay or a chat peer")
    parser.add_argument('--config', type=str, help="JSON settings file")
    parser.add_argument('--host', type=str, help="Relay host (bind address for --role relay)")
    parser.add_argument('--port', type=int, help="Relay port")
    parser.add_argument('--name', type=str, help="Display name")
    parser.add_argument('--peer-id', type=str, help="Fixed peer id instead of a random one")
    parser.add_argument('--connect', type=str, help="Peer id to connect to on startup")
    parser.add_argument('--log-level', type=str, help="DEBUG, INFO, WARNING or ERROR")
    return parser.parse_args(argv)


def load_settings(args: argparse.Namespace) -> Settings:
    settings = Settings.from_file(args.config)
    if args.host:
        settings.relay_host = args.host
    if args.port is not None:
        settings.relay_port = args.port
    if args.name:
        settings.display_name = args.name
    if args.peer_id:
        settings.peer_id = args.peer_id
    if args.log_level:
        settings.log_level = args.log_level
    settings.validate()
    return settings


class PeerApp:
    """Wires the peer-side components together for the console client."""
    def __init__(self, settings: Settings):
        self.settings = settings
        if settings.peer_id:
            self.identity = PeerIdentity(settings.peer_id, settings.display_name)
        else:
            self.identity = PeerIdentity.generate(settings.display_name)

        self.contacts = MemoryContactStore()
        self.messages = MemoryMessageStore()
        self.notifier = LogNotifier()
        self.signaling = SignalingClient(
            settings.relay_url,
            max_reconnect_attempts=settings.max_reconnect_attempts,
            reconnect_delay=settings.reconnect_delay,
            heartbeat_interval=settings.heartbeat_interval,
        )
        self.manager = TransportManager(
            self.signaling,
            lambda peer_id: RTCTransport(peer_id, self.signaling, settings.ice_servers),
            self.contacts,
            MessageMultiplexer(),
            connect_timeout=settings.connect_timeout,
            reinit_cooldown=settings.reinit_cooldown,
            fatal_reinit_delay=settings.fatal_reinit_delay,
        )
        self.handshake = ContactHandshake(self.manager, self.identity, self.contacts, self.notifier)
        self.reassembler = FileReassembler(session_ttl=settings.session_ttl)
        self.chat = ChatService(
            self.manager, self.identity, self.messages, self.contacts, self.notifier,
            reassembler=self.reassembler,
            chunk_size=settings.chunk_size,
            max_file_size=settings.max_file_size,
        )
        self.current: Optional[Contact] = None

        self.handshake.add_contacts_changed_observer(self._on_contacts_changed)
        self.chat.add_message_listener(self._print_message)
        self.signaling.add_give_up_listener(
            lambda: print("!! Lost the relay for good; restart to reconnect."))

    def _on_contacts_changed(self):
        for contact in self.contacts.get_all():
            self.chat.open_conversation(contact)

    def _print_message(self, message):
        contact = self.contacts.contacts.get(message.contact_id)
        who = contact.display_name if contact else message.contact_id
        if message.file is not None:
            print(f"[{who}] sent file {message.file.name} ({message.file.size} bytes)")
        else:
            print(f"[{who}] {message.content}")

    def contact_for(self, peer_id: str) -> Contact:
        contact = self.contacts.get_by_peer_id(peer_id)
        if contact is None:
            contact = self.contacts.upsert(Contact(peer_id=peer_id, display_name=peer_id))
        self.chat.open_conversation(contact)
        return contact

    async def connect(self, peer_id: str):
        self.current = self.contact_for(peer_id)
        if await self.manager.ensure_connection(self.current):
            print(f"-- connected to {peer_id}")
        else:
            print(f"-- could not reach {peer_id}")

    async def send_file(self, path: str):
        if self.current is None:
            print("-- /connect to a peer first")
            return
        try:
            with open(path, "rb") as f:
                data = f.read()
        except OSError as e:
            print(f"-- cannot read {path}: {e}")
            return
        mime_type = mimetypes.guess_type(path)[0] or "application/octet-stream"
        try:
            message = await self.chat.send_file(self.current, os.path.basename(path), data, mime_type)
        except ValueError as e:
            print(f"-- {e}")
            return
        print(f"-- {message.content}: {message.status}")

    async def handle_line(self, line: str) -> bool:
        """Returns False when the user asked to quit."""
        line = line.strip()
        if not line:
            return True
        if line == "/quit":
            return False
        if line == "/help":
            print(HELP)
        elif line == "/contacts":
            for c in self.contacts.get_all():
                print(f"  {c.display_name} ({c.peer_id}) {c.status} unread={c.unread_count}")
        elif line.startswith("/connect "):
            await self.connect(line.split(None, 1)[1].strip())
        elif line.startswith("/file "):
            await self.send_file(line.split(None, 1)[1].strip())
        elif self.current is None:
            print("-- /connect to a peer first")
        else:
            message = await self.chat.send_text(self.current, line)
            if message.status == "failed":
                print("-- message failed")
        return True

    async def run(self, connect_to: Optional[str] = None):
        await self.manager.register_peer(self.identity.peer_id, self.identity.display_name)
        sweeper = asyncio.create_task(self.reassembler.run_sweeper(self.settings.sweep_interval))
        print(f"You are {self.identity.display_name} ({self.identity.peer_id}). /help for commands.")

        if connect_to:
            await self.connect(connect_to)

        loop = asyncio.get_running_loop()
        try:
            while True:
                line = await loop.run_in_executor(None, sys.stdin.readline)
                if not line:
                    break
                if not await self.handle_line(line):
                    break
        finally:
            sweeper.cancel()
            await self.manager.disconnect_all()


async def main(argv=None):
    args = parse_args(argv)
    try:
        settings = load_settings(args)
    except ConfigError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(2)

    configure_logging(settings)

    if args.role == "relay":
        logger.info(f"Starting relay on {settings.relay_host}:{settings.relay_port}")
        await run_relay(settings.relay_host, settings.relay_port)
    else:
        logger.info(f"Starting peer {settings.display_name}, relay {settings.relay_url}")
        await PeerApp(settings).run(args.connect)


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
