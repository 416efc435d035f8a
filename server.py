"""
server.py
----------
WebSocket relay for the E2EE chat.

Responsibilities:
- Keep the directory of online users (username -> connection, public key)
- Broadcast the full directory to every user on each join/leave
- Answer `list` requests with a directory snapshot (requester only)
- Forward opaque `send` payloads verbatim to each named recipient
- Never decrypt, parse or log payload contents

Delivery is best-effort and at-most-once: recipients that are offline or
whose connection is closed are skipped silently.
"""

import asyncio, json, argparse, os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import yaml
from websockets import serve
from websockets.exceptions import ConnectionClosed

from keys import KeyFormatError, SelfAssertedIdentityProvider

DEFAULT_CONFIG = {
    "host": "127.0.0.1",
    "port": 3000,
    "ping_interval": 20,
    "ping_timeout": 20,
    "max_size": 1024 * 1024,
    "outbox_size": 256,
}

def load_config(yaml_path: Optional[str] = "relay.yaml", overrides: Optional[dict] = None,
                environ: Optional[dict] = None) -> Dict[str, Any]:
    """
    Build the relay settings.

    Precedence: overrides (CLI flags) > PORT env var > YAML file > defaults.
    A missing YAML file is not an error.
    """
    cfg = dict(DEFAULT_CONFIG)
    if yaml_path and os.path.exists(yaml_path):
        with open(yaml_path, "r") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{yaml_path}: expected a mapping at top level")
        cfg.update({k: v for k, v in data.items() if k in DEFAULT_CONFIG})

    env = os.environ if environ is None else environ
    if env.get("PORT"):
        cfg["port"] = env["PORT"]

    for k, v in (overrides or {}).items():
        if v is not None:
            cfg[k] = v
    cfg["port"] = int(cfg["port"])
    return cfg

def is_open(ws):
    """Return True if websocket connection is alive across websocket versions."""
    if not ws:
        return False
    try:
        # websockets <=10.x
        if hasattr(ws, "open"):
            return bool(ws.open)
        if hasattr(ws, "closed"):
            return not ws.closed
        # websockets >=12.x (ServerConnection)
        if hasattr(ws, "state"):
            return getattr(ws.state, "name", "").upper() == "OPEN"
    except Exception:
        return False
    return False

async def send_quietly(ws, data: str, who: str) -> bool:
    """Send one frame; a failure is logged and only affects this connection."""
    try:
        await ws.send(data)
        return True
    except Exception as e:
        print(f"[relay] Send to {who} failed: {e}")
        return False

# ---------------------------------------------------------------------------
# Per-connection outbound queue
# ---------------------------------------------------------------------------
class Outbox:
    """
    Frames waiting to go out on one connection, written by a dedicated task.

    put() never waits on the peer. Frames leave in the order they were put.
    When the queue is full the new frame is dropped for this connection only.
    """

    def __init__(self, ws, maxsize: int):
        self.ws = ws
        self.queue: asyncio.Queue = asyncio.Queue(maxsize)
        self.task = asyncio.ensure_future(self._drain())

    def put(self, frame: str, who: str) -> bool:
        try:
            self.queue.put_nowait((frame, who))
            return True
        except asyncio.QueueFull:
            print(f"[relay] Outbox full for {who}; frame dropped")
            return False

    async def _drain(self):
        while True:
            item = await self.queue.get()
            try:
                if item is None:
                    return
                frame, who = item
                if is_open(self.ws):
                    await send_quietly(self.ws, frame, who)
            finally:
                self.queue.task_done()

    async def flush(self):
        await self.queue.join()

    async def close(self, grace: float):
        """Write what is already queued (up to `grace` seconds), then stop."""
        try:
            self.queue.put_nowait(None)
        except asyncio.QueueFull:
            self.task.cancel()
        try:
            await asyncio.wait_for(self.task, grace)
        except asyncio.TimeoutError:
            print("[relay] Outbox writer did not finish in time; dropped pending frames")
        except asyncio.CancelledError:
            if not self.task.cancelled():
                raise

# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------
@dataclass
class Entry:
    connection: Any
    public_key: str


class Registry:
    """
    Online users and their published keys.

    A single asyncio.Lock serializes register/deregister and the broadcast
    that follows each of them, so every userlist frame shows the state right
    after the mutation that caused it. Under the lock frames are only queued
    on per-connection outboxes, never written, so a peer that stops reading
    cannot hold up anyone else; each outbox keeps mutation order.
    """

    def __init__(self, outbox_size: int = DEFAULT_CONFIG["outbox_size"]):
        self._entries: Dict[str, Entry] = {}   # username -> Entry
        self._owners: Dict[Any, str] = {}      # connection -> username it owns
        self._outboxes: Dict[Any, Outbox] = {}
        self._outbox_size = outbox_size
        self._lock = asyncio.Lock()

    def __len__(self):
        return len(self._entries)

    def __contains__(self, username):
        return username in self._entries

    def owner_of(self, ws) -> Optional[str]:
        return self._owners.get(ws)

    def snapshot(self) -> List[Dict[str, str]]:
        return [{"username": u, "publicKey": e.public_key} for u, e in self._entries.items()]

    def _userlist_frame(self) -> str:
        return json.dumps({"type": "userlist", "list": self.snapshot()})

    # -------------------- Outbound --------------------

    def post(self, ws, frame: str, who: str) -> bool:
        """Queue one frame for `ws`; returns False if it was dropped."""
        box = self._outboxes.get(ws)
        if box is None:
            box = self._outboxes[ws] = Outbox(ws, self._outbox_size)
        return box.put(frame, who)

    async def flush(self, *conns):
        """Wait until the given connections' (default: all) queued frames are written."""
        boxes = [self._outboxes[ws] for ws in conns if ws in self._outboxes] if conns \
            else list(self._outboxes.values())
        await asyncio.gather(*(box.flush() for box in boxes))

    async def release(self, ws, grace: float = 1.0):
        """Stop the writer for a connection that has gone away."""
        box = self._outboxes.pop(ws, None)
        if box is not None:
            await box.close(grace)

    def _broadcast_locked(self):
        frame = self._userlist_frame()
        for username, entry in self._entries.items():
            if is_open(entry.connection):
                self.post(entry.connection, frame, username)
        print(f"[relay] Userlist ({len(self._entries)} online) queued for all")

    # -------------------- Membership --------------------

    async def register(self, ws, username: str, public_key: str):
        """Upsert (last write wins) and broadcast the new directory to everyone."""
        async with self._lock:
            previous = self._owners.get(ws)
            if previous is not None and previous != username:
                old = self._entries.get(previous)
                if old is not None and old.connection is ws:
                    del self._entries[previous]

            displaced = self._entries.get(username)
            if displaced is not None and displaced.connection is not ws:
                self._owners.pop(displaced.connection, None)
                print(f"[relay] {username} re-registered from a new connection; old one replaced")

            self._entries[username] = Entry(connection=ws, public_key=public_key)
            self._owners[ws] = username
            print(f"[relay] Registered {username}")
            self._broadcast_locked()

    async def deregister(self, ws) -> Optional[str]:
        """Remove the entry this connection owns (by handle, never by claimed name)."""
        async with self._lock:
            username = self._owners.pop(ws, None)
            if username is None:
                return None
            entry = self._entries.get(username)
            if entry is not None and entry.connection is ws:
                del self._entries[username]
            print(f"[relay] Removed {username}")
            self._broadcast_locked()
            return username

    async def send_snapshot(self, ws):
        async with self._lock:
            self.post(ws, self._userlist_frame(), self._owners.get(ws, "unregistered client"))

    # -------------------- Routing --------------------

    async def route(self, sender: str, to, payload) -> int:
        """
        Queue {from, payload} for each named recipient; return how many frames
        were accepted. Unknown or closed recipients are dropped without notice.
        """
        if not isinstance(to, list):
            to = []
        frame = json.dumps({"type": "message", "from": sender, "payload": payload})

        accepted = 0
        async with self._lock:
            for name in to:
                if not isinstance(name, str):
                    continue
                entry = self._entries.get(name)
                if entry is None or not is_open(entry.connection):
                    print(f"[relay] Recipient unreachable: {name}")
                    continue
                if self.post(entry.connection, frame, name):
                    accepted += 1
                    print(f"[relay] Forwarded {sender} -> {name}")
        return accepted

# ---------------------------------------------------------------------------
# Connection handling
# ---------------------------------------------------------------------------
class Relay:
    """Owns the registry for the lifetime of one listening server."""

    def __init__(self, config: Optional[dict] = None, identity_provider=None):
        self.config = dict(DEFAULT_CONFIG, **(config or {}))
        self.registry = Registry(outbox_size=self.config["outbox_size"])
        self.identity = identity_provider or SelfAssertedIdentityProvider()
        self._server = None

    async def handle_frame(self, websocket, raw):
        try:
            msg = json.loads(raw)
        except (ValueError, TypeError) as e:
            print(f"[relay] Dropped invalid JSON frame: {e}")
            return
        if not isinstance(msg, dict):
            print("[relay] Dropped non-object frame")
            return

        mtype = msg.get("type")

        # ================================================================
        # register: publish username + public key
        # ================================================================
        if mtype == "register":
            try:
                ident = self.identity.identify(msg)
            except KeyFormatError as e:
                print(f"[relay] Rejected register: {e}")
                err = {"type": "error", "code": "BAD_REGISTER", "detail": str(e)}
                self.registry.post(websocket, json.dumps(err), "unregistered client")
                return
            await self.registry.register(websocket, ident.username, ident.public_key)

        # ================================================================
        # list: directory snapshot to the requester only
        # ================================================================
        elif mtype == "list":
            await self.registry.send_snapshot(websocket)

        # ================================================================
        # send: opaque fan-out, one frame per listed recipient
        # ================================================================
        elif mtype == "send":
            sender = self.registry.owner_of(websocket)
            claimed = msg.get("from")
            if sender is None:
                # unregistered or displaced by a newer registration of its name
                print(f"[relay] Dropped send from a connection that owns no name (claimed {claimed!r})")
                err = {"type": "error", "code": "NOT_REGISTERED", "detail": "register before sending"}
                self.registry.post(websocket, json.dumps(err), "unregistered client")
                return
            if claimed not in (None, sender):
                print(f"[relay] Claimed sender {claimed!r} ignored; connection is {sender}")
            to = msg.get("to")
            print(f"[relay] Message from {sender} -> to:{to if isinstance(to, list) else []}")
            await self.registry.route(sender, to, msg.get("payload"))

        else:
            print(f"[relay] Unknown msg type: {mtype}")

    async def handle_ws(self, websocket):
        """Per-connection loop; cleans up the owned entry however it ends."""
        print("[relay] New connection received.")
        try:
            async for raw in websocket:
                await self.handle_frame(websocket, raw)
        except ConnectionClosed as e:
            print(f"[relay] Connection closed: {e}")
        except Exception as e:
            print(f"[relay] recv_loop error: {e}")
        finally:
            removed = await self.registry.deregister(websocket)
            if removed:
                print(f"[relay] User {removed} disconnected and cleaned up.")
            await self.registry.release(websocket)

    async def start(self):
        cfg = self.config
        self._server = await serve(
            self.handle_ws, cfg["host"], cfg["port"],
            ping_interval=cfg["ping_interval"], ping_timeout=cfg["ping_timeout"],
            max_size=cfg["max_size"],
        )
        print(f"[relay] Listening on ws://{cfg['host']}:{self.port}")
        return self._server

    @property
    def port(self) -> int:
        if self._server is not None and self._server.sockets:
            return self._server.sockets[0].getsockname()[1]
        return self.config["port"]

    async def stop(self):
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
            print("[relay] Stopped.")

# ---------------------------------------------------------------------------
# Main server loop
# ---------------------------------------------------------------------------
async def main_loop(config: dict):
    relay = Relay(config)
    await relay.start()
    try:
        await asyncio.Future()
    finally:
        await relay.stop()

def main(argv=None):
    parser = argparse.ArgumentParser(description="E2EE chat relay")
    parser.add_argument("--config", default="relay.yaml", help="YAML settings file")
    parser.add_argument("--host", default=None, help="Hostname or IP to bind")
    parser.add_argument("--port", default=None, type=int, help="TCP port to listen on")
    args = parser.parse_args(argv)

    config = load_config(args.config, overrides={"host": args.host, "port": args.port})
    try:
        asyncio.run(main_loop(config))
    except KeyboardInterrupt:
        print("\nRelay shutting down gracefully...")

# ------------------------------------------------------------
# Program entry point
# ------------------------------------------------------------
if __name__ == "__main__":
    main()
