"""
client.py
----------
Terminal client for the E2EE relay chat.

Implements:
- Per-session EC P-256 identity, registered with the relay on connect
- Pairwise AES-256-GCM keys via ECDH, one envelope per recipient
- Group chat (fan-out to everyone online) or private chat (selected peer)
- Commands: /select <name>, /all, /tell <name> <msg>, /list, /quit
- Handles `userlist`, `message` and `error` frames from the relay
"""

import asyncio, websockets, json, argparse, threading
from websockets.exceptions import ConnectionClosed
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional

from keys import (
    KeyFormatError,
    PairwiseKeyCache,
    SessionKeyPair,
    UnknownPeerError,
    export_public_b64,
    generate_identity,
    import_public,
)
from envelope import open_payload, seal


class NoRecipientsError(RuntimeError):
    """Nobody to send to; nothing goes on the wire."""


@dataclass(frozen=True)
class DisplayMessage:
    sender: str
    text: str
    kind: str          # "self" | "remote"
    private: bool = False

    def render(self) -> str:
        prefix = "[private] " if self.private else ""
        return f"{prefix}{self.sender}: {self.text}"

# ---------------------------------------------------------------------------
# Session controller
# ---------------------------------------------------------------------------

class ChatSession:
    """
    Local state of one chat session: own identity, the peer directory as last
    published by the relay, and the current conversation target.

    `send_frame` is any coroutine taking one JSON string (e.g. ws.send).
    """

    def __init__(self, username: str,
                 send_frame: Optional[Callable[[str], Awaitable[None]]] = None,
                 key_pair: Optional[SessionKeyPair] = None):
        self.username = username
        self.key_pair = key_pair or generate_identity()
        self.peers: Dict[str, str] = {}        # username -> base64 SPKI
        self.selected: Optional[str] = None
        self._keys = PairwiseKeyCache(self.key_pair.private_key)
        self._send_frame = send_frame

    @property
    def public_key(self) -> str:
        return export_public_b64(self.key_pair)

    def register_frame(self) -> dict:
        return {"type": "register", "username": self.username, "publicKey": self.public_key}

    # -------------------- Directory / selection --------------------

    def update_directory(self, entries) -> None:
        """Rebuild the directory from a full relay snapshot."""
        peers: Dict[str, str] = {}
        for e in entries or []:
            if not isinstance(e, dict):
                continue
            name, pub = e.get("username"), e.get("publicKey")
            if not isinstance(name, str) or not isinstance(pub, str):
                print(f"[users] Skipping malformed directory entry: {e!r}")
                continue
            if name != self.username:
                try:
                    import_public(pub)
                except KeyFormatError as ex:
                    print(f"[users] Ignoring {name}: {ex}")
                    continue
            peers[name] = pub

        self.peers = peers
        self._keys.prune(peers)
        if self.selected is not None and self.selected not in peers:
            print(f"[users] {self.selected} went offline; back to group chat")
            self.selected = None

    def others(self) -> List[str]:
        return [n for n in self.peers if n != self.username]

    def select(self, name: Optional[str]) -> Optional[str]:
        """Select a private target; selecting the current target again clears it."""
        if name is None:
            self.selected = None
            return None
        if name == self.username or name not in self.peers:
            raise UnknownPeerError(name)
        self.selected = None if self.selected == name else name
        return self.selected

    def mode_label(self) -> str:
        if self.selected:
            return f"Private to {self.selected}"
        return "Group chat (all)"

    def recipients(self) -> List[str]:
        targets = [self.selected] if self.selected else self.others()
        if not targets:
            raise NoRecipientsError("No other users online.")
        return targets

    # -------------------- Send / receive --------------------

    def _seal_for(self, peer: str, directory: Dict[str, str], text: str, private: bool) -> Optional[str]:
        # runs in the executor: key derivation and AES both stay off the loop
        try:
            key = self._keys.key_for(peer, directory)
        except (UnknownPeerError, KeyFormatError):
            print(f"[send] No key for {peer}, skipped")
            return None
        return seal(key, text, private)

    def _open_from(self, sender: str, directory: Dict[str, str], payload):
        try:
            key = self._keys.key_for(sender, directory)
        except (UnknownPeerError, KeyFormatError):
            print(f"[recv] No public key for {sender}, message dropped")
            return None
        return open_payload(key, payload)

    async def send(self, text: str, target: Optional[str] = None) -> Optional[DisplayMessage]:
        """
        Encrypt `text` once per recipient and hand each frame to send_frame.

        Returns the local echo. A recipient without a usable key is skipped;
        the others still go out.
        """
        text = text.strip()
        if not text:
            return None
        if target is not None:
            recipients, private = [target], True
        else:
            recipients, private = self.recipients(), self.selected is not None

        directory = dict(self.peers)
        loop = asyncio.get_running_loop()
        payloads = await asyncio.gather(
            *(loop.run_in_executor(None, self._seal_for, peer, directory, text, private)
              for peer in recipients)
        )
        for peer, payload in zip(recipients, payloads):
            if payload is None:
                continue
            frame = {"type": "send", "from": self.username, "to": [peer], "payload": payload}
            if self._send_frame is not None:
                await self._send_frame(json.dumps(frame))

        return DisplayMessage(self.username, text, "self", private)

    def classify_scope(self, flag: Optional[bool], sender: str) -> bool:
        # Explicit envelope flag wins; the size heuristic only covers legacy
        # senders that omit it.
        if flag is not None:
            return bool(flag)
        if len(self.peers) > 2 and sender != self.username:
            return self.selected is None
        return True

    async def receive(self, frame: dict) -> Optional[DisplayMessage]:
        sender = frame.get("from")
        if not isinstance(sender, str):
            print("[recv] Message without sender dropped")
            return None

        loop = asyncio.get_running_loop()
        opened = await loop.run_in_executor(
            None, self._open_from, sender, dict(self.peers), frame.get("payload"))
        if opened is None:
            return None
        text, flag = opened
        kind = "self" if sender == self.username else "remote"
        return DisplayMessage(sender, text, kind, self.classify_scope(flag, sender))

    async def handle_frame(self, raw) -> Optional[DisplayMessage]:
        """Dispatch one relay frame; returns something to display, if any."""
        try:
            msg = json.loads(raw)
        except (ValueError, TypeError):
            print("[recv] Dropped invalid JSON frame")
            return None
        if not isinstance(msg, dict):
            return None

        mtype = msg.get("type")
        if mtype == "userlist":
            self.update_directory(msg.get("list"))
            print(f"[users] Online: {', '.join(self.others()) or '(nobody else)'}")
            return None
        if mtype == "message":
            return await self.receive(msg)
        if mtype == "error":
            print(f"[server] {msg.get('code')}: {msg.get('detail')}")
            return None
        print(f"[recv] Unknown message type: {mtype}")
        return None

# ---------------------------------------------------------------------------
# Main async client function
# ---------------------------------------------------------------------------

def start_input_reader(loop, lines: asyncio.Queue):
    """
    Feed stdin lines into `lines` from a daemon thread; None marks end of input.
    A pending read never keeps the process alive after the session ends.
    """
    def pump():
        while True:
            try:
                line = input()
            except (EOFError, KeyboardInterrupt, OSError):
                line = None
            try:
                loop.call_soon_threadsafe(lines.put_nowait, line)
            except RuntimeError:
                return  # loop already closed
            if line is None:
                return

    threading.Thread(target=pump, name="stdin-reader", daemon=True).start()


async def run_client(username: str, server_url: str):
    """
    Connect to the relay, register, then run the input loop and the receive
    loop side by side. The session ends on /quit, end of input, or when the
    relay closes the connection, whichever comes first.
    """
    async with websockets.connect(server_url) as ws:
        session = ChatSession(username, send_frame=ws.send)
        await ws.send(json.dumps(session.register_frame()))
        print(f"Connected to {server_url} as {username}")

        lines: asyncio.Queue = asyncio.Queue()
        start_input_reader(asyncio.get_running_loop(), lines)

        # -------------------------------------------------------------------
        # One input line; returns False when the user wants to leave
        # -------------------------------------------------------------------
        async def dispatch(line: str) -> bool:
            if line == "/quit":
                return False

            elif line == "/list":
                await ws.send(json.dumps({"type": "list"}))

            elif line == "/all":
                session.select(None)
                print(f"[mode] {session.mode_label()}")

            elif line.startswith("/select "):
                name = line.split(" ", 1)[1].strip()
                try:
                    session.select(name)
                except UnknownPeerError:
                    print(f"Unknown user '{name}'. Try /list.")
                    return True
                print(f"[mode] {session.mode_label()}")

            elif line.startswith("/tell "):
                parts = line.split(" ", 2)
                if len(parts) < 3:
                    print("Usage: /tell <name> <message>")
                    return True
                target, text = parts[1], parts[2]
                if target == username or target not in session.peers:
                    print(f"Unknown recipient '{target}'. Try /list.")
                    return True
                shown = await session.send(text, target=target)
                if shown:
                    print(shown.render())

            else:
                try:
                    shown = await session.send(line)
                except NoRecipientsError as e:
                    print(e)
                    return True
                if shown:
                    print(shown.render())
            return True

        # -------------------------------------------------------------------
        # Inner coroutine: handles outgoing messages (user input -> send)
        # -------------------------------------------------------------------
        async def sender():
            while True:
                line = await lines.get()
                if line is None:
                    break
                line = line.strip()
                if not line:
                    continue
                try:
                    if not await dispatch(line):
                        break
                except ConnectionClosed:
                    print("[client] Connection to relay lost")
                    return
            await ws.close()

        # -------------------------------------------------------------------
        # Inner coroutine: handles incoming frames from the relay
        # -------------------------------------------------------------------
        async def receiver():
            try:
                async for raw in ws:
                    shown = await session.handle_frame(raw)
                    if shown:
                        print(shown.render())
            except ConnectionClosed:
                pass
            print("[client] Connection closed by relay")

        tasks = {asyncio.ensure_future(sender()), asyncio.ensure_future(receiver())}
        try:
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            print("Client tasks cancelled, shutting down...")
            for t in tasks:
                t.cancel()
            raise
        for t in pending:
            t.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        for t in done:
            t.result()

# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------
def main(argv=None):
    parser = argparse.ArgumentParser(description="E2EE chat client")
    parser.add_argument("--user", required=True, help="Username to register (self-asserted)")
    parser.add_argument("--server", default="ws://127.0.0.1:3000", help="Relay WebSocket URL")
    args = parser.parse_args(argv)

    try:
        asyncio.run(run_client(args.user, args.server))
    except KeyboardInterrupt:
        print("\nBye.")

if __name__ == "__main__":
    main()
