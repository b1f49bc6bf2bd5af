#!/usr/bin/env python3
"""
whisperctl - Whisper Mesh CLI

Command-line interface for the local Whisper node state.

Usage:
    whisperctl identity          - Show node identity
    whisperctl keys              - Show, rotate or delete keys
    whisperctl conversations     - List conversations
    whisperctl messages PEER     - Show messages with a peer
    whisperctl clear             - Delete conversations
    whisperctl simulate TEXT     - Run an in-process loopback mesh
"""

import sys
import asyncio
import logging
import argparse
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from whisperd import BROADCAST, __version__
from whisperd.config import Config
from whisperd.identity import IdentityError, IdentityProvider
from whisperd.crypto.keys import KeyManager, KeyStoreError
from whisperd.crypto.cipher import AuthenticationError, CipherError
from whisperd.node import WhisperNode
from whisperd.packet.conversations import list_conversations, messages_with_peer, short_id
from whisperd.storage.kv import KeyValueStore, MemoryKeyValueStore, SqliteKeyValueStore, StorageError
from whisperd.transport.loopback import LoopbackConfig, LoopbackMedium


logger = logging.getLogger("whisperctl")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _format_time(timestamp_ms: Optional[int]) -> str:
    if not timestamp_ms:
        return "-"
    return datetime.fromtimestamp(timestamp_ms / 1000).strftime("%Y-%m-%d %H:%M:%S")


class WhisperCtl:
    """whisperctl CLI application."""

    def __init__(self, config: Config):
        """Initialize CLI with configuration."""
        self.config = config

    def _open_kv(self) -> KeyValueStore:
        return SqliteKeyValueStore(self.config.storage.db_path)

    async def _open_node(self, kv: KeyValueStore) -> WhisperNode:
        """Start a node on the local state with no links."""
        identity = await IdentityProvider(
            kv, self.config.node_name or None, timeout=self.config.storage.timeout
        ).get_or_create_identity()
        medium = LoopbackMedium()
        transport = medium.create_transport(identity.id, self.config.mesh.send_timeout)
        node = WhisperNode(self.config, kv, transport)
        await node.start()
        return node

    def identity(self) -> int:
        """Show node identity."""
        async def run():
            kv = self._open_kv()
            timeout = self.config.storage.timeout
            identity = await IdentityProvider(
                kv, self.config.node_name or None, timeout=timeout
            ).get_or_create_identity()
            keys = KeyManager(kv, self.config.security.key_size, timeout=timeout)
            metadata = await keys.get_key_metadata()
            public_key = await keys.get_public_key()
            return identity, metadata, public_key

        try:
            identity, metadata, public_key = asyncio.run(run())
        except (IdentityError, KeyStoreError, StorageError) as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

        print("Whisper Node Identity")
        print("=" * 40)
        print(f"Version:    {__version__}")
        print(f"Node ID:    {identity.id}")
        print(f"Short ID:   {short_id(identity.id)}")
        print(f"Name:       {identity.name or '(none)'}")
        print(f"Created:    {_format_time(identity.created_at)}")
        print(f"Public key: {public_key}")
        print(f"Keys since: {_format_time(metadata['created_at'])}")
        print(f"Cipher:     {self.config.security.cipher}")
        return 0

    def keys(self, rotate: bool = False, delete: bool = False) -> int:
        """Show, rotate or delete the node key pair."""
        async def run():
            keys = KeyManager(
                self._open_kv(), self.config.security.key_size, timeout=self.config.storage.timeout
            )
            if rotate:
                pair = await keys.rotate_keys()
                return "rotated", pair.public_key
            if delete:
                await keys.delete_keys()
                return "deleted", None
            metadata = await keys.get_key_metadata()
            if not metadata["has_keys"]:
                return "none", None
            return "present", await keys.get_public_key()

        try:
            state, public_key = asyncio.run(run())
        except (KeyStoreError, StorageError) as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

        if state == "rotated":
            print("Keys rotated. Messages encrypted under the old keys can no longer be read.")
            print(f"Public key: {public_key}")
        elif state == "deleted":
            print("Keys deleted. New keys are generated on next use.")
        elif state == "none":
            print("No keys stored.")
        else:
            print(f"Public key: {public_key}")
        return 0

    def conversations(self, peers: Optional[List[str]] = None) -> int:
        """List conversations, most recent first."""
        async def run():
            node = await self._open_node(self._open_kv())
            try:
                return list_conversations(node.store, peers or None)
            finally:
                await node.stop()

        try:
            items = asyncio.run(run())
        except (IdentityError, KeyStoreError, StorageError) as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

        if not items:
            print("No conversations")
            return 0

        print(f"{'Peer':<10} {'Updated':<20} {'Unread':>6}  Last message")
        print("-" * 70)
        for item in items:
            prefix = "you: " if item.last_from_me else ""
            print(
                f"{item.short_id:<10} {_format_time(item.last_updated):<20} "
                f"{item.unread_count:>6}  {prefix}{item.preview[:40]}"
            )
        return 0

    def messages(self, peer_id: str) -> int:
        """Show messages exchanged with a peer."""
        async def run():
            node = await self._open_node(self._open_kv())
            try:
                rows = []
                for message in messages_with_peer(node.store, peer_id):
                    try:
                        text = node.read_text(message)
                    except AuthenticationError:
                        text = "[tampered or wrong key]"
                    except CipherError:
                        text = "[encrypted]"
                    sender = "you" if message.from_id == node.id else short_id(message.from_id)
                    rows.append((message.timestamp, sender, text))
                await node.store.mark_conversation_read(peer_id)
                return rows
            finally:
                await node.stop()

        try:
            rows = asyncio.run(run())
        except (IdentityError, KeyStoreError, StorageError) as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

        if not rows:
            print(f"No messages with {peer_id}")
            return 0

        for timestamp, sender, text in rows:
            print(f"[{_format_time(timestamp)}] {sender}: {text}")
        return 0

    def clear(self, peer_id: Optional[str] = None, clear_all: bool = False) -> int:
        """Delete one conversation or everything."""
        if not peer_id and not clear_all:
            print("Error: give a peer id or --all", file=sys.stderr)
            return 1

        async def run():
            node = await self._open_node(self._open_kv())
            try:
                if clear_all:
                    await node.store.clear_all()
                    return True
                return await node.store.clear_conversation(peer_id)
            finally:
                await node.stop()

        try:
            cleared = asyncio.run(run())
        except (IdentityError, KeyStoreError, StorageError) as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

        if not cleared:
            print(f"No conversation with {peer_id}", file=sys.stderr)
            return 1

        print("All conversations cleared" if clear_all else f"Conversation with {peer_id} cleared")
        return 0

    def simulate(self, text: str, nodes: int = 4, ttl: int = 4, broadcast: bool = False) -> int:
        """
        Send one message along a chain of in-process nodes.

        Node 0 sends to the last node (or broadcasts); every node's
        routing counters are printed afterwards.
        """
        if nodes < 2:
            print("Error: need at least 2 nodes", file=sys.stderr)
            return 1
        if ttl < 0:
            print("Error: ttl must be non-negative", file=sys.stderr)
            return 1

        try:
            results = asyncio.run(self._simulate(text, nodes, ttl, broadcast))
        except (IdentityError, KeyStoreError, ValueError) as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

        print(f"Simulated {nodes} nodes in a chain, ttl={ttl}")
        print("=" * 70)
        print(f"{'Node':<10} {'Recv':>5} {'Dup':>5} {'Deliv':>6} {'Relay':>6} {'Drop':>5}  Inbox")
        print("-" * 70)
        for node_id, stats, inbox in results:
            print(
                f"{short_id(node_id):<10} {stats['received']:>5} {stats['duplicates']:>5} "
                f"{stats['delivered']:>6} {stats['relayed']:>6} {stats['dropped']:>5}  "
                f"{' | '.join(inbox)}"
            )
        return 0

    async def _simulate(self, text: str, count: int, ttl: int, broadcast: bool):
        config = Config()
        config.mesh.default_ttl = ttl
        config.mesh.relay_addressed = self.config.mesh.relay_addressed
        config.security.cipher = self.config.security.cipher

        medium = LoopbackMedium(LoopbackConfig(
            latency_ms=self.config.transport.latency_ms,
            loss_probability=self.config.transport.loss_probability,
        ))

        nodes: List[WhisperNode] = []
        for _ in range(count):
            kv = MemoryKeyValueStore()
            identity = await IdentityProvider(kv).get_or_create_identity()
            transport = medium.create_transport(identity.id, config.mesh.send_timeout)
            node = WhisperNode(config, kv, transport)
            await node.start()
            nodes.append(node)

        for a, b in zip(nodes, nodes[1:]):
            medium.link(a.id, b.id)

        # Every node knows every public key
        for node in nodes:
            for other in nodes:
                if other is not node:
                    await node.accept_handshake(other.handshake())

        sender, target = nodes[0], nodes[-1]
        if broadcast:
            await sender.broadcast_text(text)
        else:
            await sender.send_text(target.id, text)
        await medium.drain()

        results = []
        for node in nodes:
            inbox = []
            for summary in node.store.get_conversations():
                for message in node.store.get_messages(summary.conversation_id):
                    if message.from_id == node.id:
                        continue
                    if message.to not in (node.id, BROADCAST):
                        continue
                    inbox.append(node.read_text(message))
            results.append((node.id, node.router.get_stats(), inbox))
            await node.stop()

        return results


def setup_logging(config: Config, verbose: bool = False) -> None:
    """Configure root logging from config."""
    level = logging.DEBUG if verbose else getattr(logging, config.log_level, logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)

    if config.log_file:
        config.log_file.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(config.log_file)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logging.getLogger().addHandler(handler)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Whisper Mesh CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  identity        Show node identity
  keys            Show, rotate or delete keys
  conversations   List conversations
  messages        Show messages with a peer
  clear           Delete conversations
  simulate        Run an in-process loopback mesh

Examples:
  whisperctl identity
  whisperctl conversations --peer 3f9a...
  whisperctl simulate --nodes 5 --ttl 3 "hello mesh"
""",
    )

    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to config file",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command")

    # identity command
    subparsers.add_parser("identity", help="Show node identity")

    # keys command
    keys_parser = subparsers.add_parser("keys", help="Show, rotate or delete keys")
    keys_group = keys_parser.add_mutually_exclusive_group()
    keys_group.add_argument("--rotate", action="store_true", help="Replace the key pair")
    keys_group.add_argument("--delete", action="store_true", help="Delete stored keys")

    # conversations command
    conv_parser = subparsers.add_parser("conversations", help="List conversations")
    conv_parser.add_argument(
        "--peer",
        action="append",
        dest="peers",
        help="Only show this peer (repeatable)",
    )

    # messages command
    messages_parser = subparsers.add_parser("messages", help="Show messages with a peer")
    messages_parser.add_argument("peer", help="Peer node ID or conversation ID")

    # clear command
    clear_parser = subparsers.add_parser("clear", help="Delete conversations")
    clear_parser.add_argument("peer", nargs="?", help="Peer node ID")
    clear_parser.add_argument("--all", action="store_true", dest="clear_all", help="Delete everything")

    # simulate command
    sim_parser = subparsers.add_parser("simulate", help="Run an in-process loopback mesh")
    sim_parser.add_argument("text", help="Message to send")
    sim_parser.add_argument("-n", "--nodes", type=int, default=4, help="Number of nodes in the chain")
    sim_parser.add_argument("-t", "--ttl", type=int, default=4, help="Hop budget")
    sim_parser.add_argument("--broadcast", action="store_true", help="Broadcast instead of addressing the last node")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    try:
        config = Config.load(args.config)
        config.validate()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    setup_logging(config, args.verbose)

    # Create CLI instance
    cli = WhisperCtl(config)

    # Dispatch command
    if args.command == "identity":
        return cli.identity()
    elif args.command == "keys":
        return cli.keys(rotate=args.rotate, delete=args.delete)
    elif args.command == "conversations":
        return cli.conversations(args.peers)
    elif args.command == "messages":
        return cli.messages(args.peer)
    elif args.command == "clear":
        return cli.clear(args.peer, args.clear_all)
    elif args.command == "simulate":
        return cli.simulate(args.text, nodes=args.nodes, ttl=args.ttl, broadcast=args.broadcast)
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
