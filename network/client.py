"""
WebSocket session for the farm gate.

Handles connection lifecycle, login, request/response correlation,
push-event delivery and the heartbeat.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Tuple
from urllib.parse import urlencode

import websockets

from config import BotConfig
from game_state import GameState, PlayerState
from network.codec import CodecError, CodecRegistry
from network.protocol import (
    DISCONNECT_CHANNEL,
    GATE_EVENT_TYPE,
    GATE_MESSAGE_TYPE,
    PUSH_CHANNELS,
    ConnectionLostError,
    FarmClientError,
    LoginError,
    NotReadyError,
    RequestTimeoutError,
    ServerError,
    event_type_name,
    log_message_to_file,
    process_login_reply,
    process_push,
    reply_type_name,
    request_type_name,
)
from utils.constants import (
    MESSAGE_TYPE_NOTIFY,
    MESSAGE_TYPE_REQUEST,
    MESSAGE_TYPE_RESPONSE,
    USER_SERVICE,
)
from utils.helpers import sync_server_time, to_num
from utils.logger import log, log_warn

# Consecutive unanswered heartbeats before the connection is considered dead
MAX_MISSED_HEARTBEATS = 2

USER_AGENT = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 18_2 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Mobile/15E148 QQ/9.1.30"
)


class SessionState(Enum):
    CONNECTING = "connecting"
    LOGGING_IN = "logging_in"
    READY = "ready"
    DISCONNECTED = "disconnected"


@dataclass(frozen=True)
class LoginResult:
    gid: int
    name: str
    level: int
    exp: int
    gold: int
    server_time_ms: int
    player: PlayerState


Listener = Callable[..., Any]


class FarmSession:
    """
    One login session over one websocket.

    A session is never reused: once DISCONNECTED, the owner creates a new
    session (new login, new sequence space).
    """

    def __init__(
        self,
        registry: CodecRegistry,
        config: BotConfig,
        game_state: Optional[GameState] = None,
        connector: Optional[Callable] = None,
    ):
        """
        Initialize the session.

        Args:
            registry: Codec registry holding the gate and game message types
            config: Bot configuration (gate address, timeouts, heartbeat)
            game_state: World Model updated from login and push events
            connector: Coroutine factory opening the websocket (defaults to websockets.connect)
        """
        self.registry = registry
        self.config = config
        self.game_state = game_state or GameState()
        self.websocket = None
        self.state = SessionState.CONNECTING
        self.login_result: Optional[LoginResult] = None
        self._connector = connector or websockets.connect

        self._seq = 0
        self._server_seq = 0
        self._pending: Dict[int, Tuple[asyncio.Future, str, str]] = {}
        self._listeners: Dict[str, List[Listener]] = {}
        self._listener_tasks: Set[asyncio.Task] = set()
        self._missed_heartbeats = 0
        self._disconnect_reason: Optional[str] = None

        self._receive_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._close_task: Optional[asyncio.Task] = None
        self._closed = asyncio.Event()

    @property
    def is_ready(self) -> bool:
        return self.state == SessionState.READY

    @property
    def disconnect_reason(self) -> Optional[str]:
        return self._disconnect_reason

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # ========== Events ==========

    def on(self, channel: str, listener: Listener):
        """Subscribe to a push channel (landsChanged, kickout, disconnect, ...)."""
        self._listeners.setdefault(channel, []).append(listener)

    def off(self, channel: str, listener: Listener):
        listeners = self._listeners.get(channel, [])
        if listener in listeners:
            listeners.remove(listener)

    def _emit(self, channel: str, *args):
        for listener in list(self._listeners.get(channel, [])):
            try:
                result = listener(*args)
            except Exception as e:
                log_warn("session", f"{channel} listener failed: {e}")
                continue
            if asyncio.iscoroutine(result):
                task = asyncio.ensure_future(result)
                self._listener_tasks.add(task)
                task.add_done_callback(self._listener_done)

    def _listener_done(self, task: asyncio.Task):
        self._listener_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log_warn("session", f"async listener failed: {task.exception()}")

    # ========== Connect & Login ==========

    def build_url(self, code: str) -> str:
        query = urlencode({
            "platform": self.config.platform,
            "os": self.config.os,
            "ver": self.config.client_version,
            "code": code,
            "openID": "",
        })
        return f"{self.config.server_url}?{query}"

    def _login_body(self) -> Dict[str, Any]:
        return {
            "sharer_id": 0,
            "sharer_open_id": "",
            "device_info": {
                "client_version": self.config.client_version,
                "sys_software": self.config.os,
                "network": "wifi",
                "memory": "7672",
                "device_id": "iPhone X<iPhone18,3>",
            },
            "share_cfg_id": 0,
            "scene_id": "1256",
        }

    async def start(self, code: str) -> LoginResult:
        """
        Connect to the gate and log in with a one-time code.

        Returns:
            LoginResult with the player's basic info

        Raises:
            LoginError: If the socket cannot be opened, the login times out,
                the server rejects the login, or the reply has no player info.
        """
        if self.state != SessionState.CONNECTING:
            raise FarmClientError(f"session cannot start from state {self.state.value}")

        url = self.build_url(code)
        log("session", f"Connecting to {self.config.server_url} ({self.config.platform}) code={code[:8]}...")
        try:
            self.websocket = await asyncio.wait_for(
                self._connector(
                    url,
                    additional_headers={"User-Agent": USER_AGENT, "Origin": "https://gate-obt.nqf.qq.com"},
                ),
                timeout=self.config.request_timeout,
            )
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
            self._disconnect(f"connect failed: {e}")
            raise LoginError(f"could not connect to gate: {e}") from e

        self.state = SessionState.LOGGING_IN
        self._receive_task = asyncio.create_task(self._receive_messages())

        try:
            reply = await self._request(USER_SERVICE, "Login", self._login_body())
        except ServerError as e:
            self._disconnect("login rejected")
            raise LoginError(f"login rejected: code={e.code} {e.message}") from e
        except (RequestTimeoutError, ConnectionLostError, CodecError) as e:
            self._disconnect(f"login failed: {e}")
            raise LoginError(f"login failed: {e}") from e

        if not reply.HasField("basic") or not to_num(reply.basic.gid):
            self._disconnect("login reply without player info")
            raise LoginError("login reply carried no player info")

        sync_server_time(reply.time_now_millis)
        player = process_login_reply(reply, self.game_state)
        self.login_result = LoginResult(
            gid=player.gid,
            name=player.name,
            level=player.level,
            exp=player.exp,
            gold=player.gold,
            server_time_ms=to_num(reply.time_now_millis),
            player=player,
        )

        self.state = SessionState.READY
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

        print("\n" + "=" * 60)
        print(f"LOGGED IN: {player.name} (gid {player.gid}) Lv{player.level} gold={player.gold}")
        print("=" * 60 + "\n")
        return self.login_result

    # ========== Requests ==========

    async def call(self, service: str, method: str, body: Any = None, timeout: Optional[float] = None):
        """
        Send a request and wait for its reply.

        Args:
            service: Fully-qualified service name (e.g. gamepb.plantpb.PlantService)
            method: Method name (e.g. Harvest)
            body: Request body as a dict or a request message
            timeout: Seconds to wait (defaults to config.request_timeout)

        Returns:
            The decoded reply message

        Raises:
            NotReadyError: If the session is not READY
            RequestTimeoutError: If no reply arrives in time
            ServerError: If the server answers with an error code
            ConnectionLostError: If the session disconnects while waiting
        """
        if self.state != SessionState.READY:
            raise NotReadyError(f"cannot call {method} while {self.state.value}")
        return await self._request(service, method, body, timeout)

    async def _request(self, service: str, method: str, body: Any, timeout: Optional[float] = None):
        payload = self.registry.encode(request_type_name(service, method), body)

        # Single-threaded loop: no await between increment and use
        self._seq += 1
        seq = self._seq
        frame = self.registry.encode(GATE_MESSAGE_TYPE, {
            "meta": {
                "service_name": service,
                "method_name": method,
                "message_type": MESSAGE_TYPE_REQUEST,
                "client_seq": seq,
                "server_seq": self._server_seq,
            },
            "body": payload,
        })

        future = asyncio.get_running_loop().create_future()
        self._pending[seq] = (future, service, method)
        try:
            await self.websocket.send(frame)
        except websockets.exceptions.ConnectionClosed as e:
            self._pending.pop(seq, None)
            self._disconnect(f"send failed: {e}")
            raise ConnectionLostError(f"connection closed while sending {method}") from e

        self.game_state.increment_stat("messages_sent")
        log_message_to_file(f"SENT #{seq} {service}.{method}", body)

        try:
            return await asyncio.wait_for(future, timeout or self.config.request_timeout)
        except asyncio.TimeoutError:
            raise RequestTimeoutError(f"{service}.{method} #{seq} timed out") from None
        finally:
            self._pending.pop(seq, None)

    # ========== Receiving ==========

    async def _receive_messages(self):
        """
        Receive and dispatch frames from the server.
        Internal task that runs in the background.
        """
        try:
            async for message in self.websocket:
                self._handle_frame(message)
        except websockets.exceptions.ConnectionClosed:
            pass
        finally:
            # Signal disconnect when receive loop exits for any reason
            self._disconnect(self._disconnect_reason or "connection closed by server")

    def _handle_frame(self, data):
        if isinstance(data, str):
            log_warn("session", f"dropping text frame: {data[:80]}")
            return
        try:
            frame = self.registry.decode(GATE_MESSAGE_TYPE, data)
        except CodecError as e:
            log_warn("session", f"dropping undecodable frame: {e}")
            return

        self.game_state.increment_stat("messages_received")
        self.game_state.set_stat("last_update", datetime.now().strftime("%H:%M:%S"))

        meta = frame.meta
        server_seq = to_num(meta.server_seq)
        if server_seq > self._server_seq:
            self._server_seq = server_seq

        if meta.message_type == MESSAGE_TYPE_NOTIFY:
            self._handle_push(frame.body)
        elif meta.message_type == MESSAGE_TYPE_RESPONSE:
            self._handle_response(meta, frame.body)
        else:
            log_warn("session", f"dropping frame with message type {meta.message_type}")

    def _handle_response(self, meta, body: bytes):
        seq = to_num(meta.client_seq)
        entry = self._pending.pop(seq, None)
        if entry is None or entry[0].done():
            self.game_state.increment_stat("unmatched_frames")
            log_warn("session", f"dropping unmatched reply #{seq} {meta.service_name}.{meta.method_name}")
            return

        future, service, method = entry
        error_code = to_num(meta.error_code)
        if error_code != 0:
            log_message_to_file(f"RECEIVED #{seq} {service}.{method} error={error_code}", meta.error_message)
            future.set_exception(ServerError(error_code, meta.error_message, service, method))
            return

        reply_type = reply_type_name(service, method)
        try:
            reply = self.registry.decode(reply_type, body)
        except CodecError as e:
            future.set_exception(e)
            return
        log_message_to_file(f"RECEIVED #{seq} {reply_type}", reply)
        future.set_result(reply)

    def _handle_push(self, body: bytes):
        try:
            event = self.registry.decode(GATE_EVENT_TYPE, body)
        except CodecError as e:
            log_warn("session", f"dropping undecodable push: {e}")
            return

        type_name = event_type_name(event.message_type)
        route = PUSH_CHANNELS.get(type_name)
        if route is None:
            log_message_to_file(f"RECEIVED push {type_name} (unhandled)", event.body)
            return

        body_type, channel = route
        try:
            message = self.registry.decode(body_type, event.body)
        except CodecError as e:
            log_warn("session", f"dropping push {type_name}: {e}")
            return

        self.game_state.increment_stat("push_events")
        log_message_to_file(f"RECEIVED push {type_name}", message)
        own_gid = self.login_result.gid if self.login_result else None
        process_push(channel, message, self.game_state, own_gid)
        self._emit(channel, message)

        if channel == "kickout":
            self._disconnect(f"kicked out by server: {message.reason_message or message.reason}")

    # ========== Heartbeat ==========

    async def _heartbeat_loop(self):
        """
        Send heartbeats periodically.
        Exits when the session leaves READY.
        """
        while self.state == SessionState.READY:
            await asyncio.sleep(self.config.heartbeat_interval)
            if self.state != SessionState.READY:
                break
            self.game_state.increment_stat("heartbeats_sent")
            try:
                reply = await self._request(USER_SERVICE, "Heartbeat", {
                    "gid": self.login_result.gid if self.login_result else 0,
                    "client_version": self.config.client_version,
                })
                sync_server_time(reply.server_time)
                self._acknowledge_heartbeat()
            except ServerError:
                # The gate answered, so the connection is alive
                self._acknowledge_heartbeat()
            except RequestTimeoutError:
                self._missed_heartbeats += 1
                log_warn("session", f"heartbeat timed out ({self._missed_heartbeats}/{MAX_MISSED_HEARTBEATS})")
                if self._missed_heartbeats >= MAX_MISSED_HEARTBEATS:
                    self._disconnect("heartbeat timed out")
                    break
            except (ConnectionLostError, CodecError):
                break

    def _acknowledge_heartbeat(self):
        self._missed_heartbeats = 0
        self.game_state.increment_stat("heartbeats_acked")

    # ========== Disconnect ==========

    def _disconnect(self, reason: str):
        """Move to DISCONNECTED and fail every pending request exactly once."""
        if self.state == SessionState.DISCONNECTED:
            return
        was_ready = self.state == SessionState.READY
        self.state = SessionState.DISCONNECTED
        self._disconnect_reason = reason

        pending = list(self._pending.values())
        self._pending.clear()
        for future, _service, method in pending:
            if not future.done():
                future.set_exception(ConnectionLostError(f"{method} aborted: {reason}"))

        current = asyncio.current_task()
        if self._heartbeat_task and self._heartbeat_task is not current and not self._heartbeat_task.done():
            self._heartbeat_task.cancel()
        if self.websocket is not None:
            self._close_task = asyncio.ensure_future(self._close_socket())
        self._closed.set()

        if was_ready:
            print("\n" + "!" * 60)
            print(f"CONNECTION LOST ({reason}) - Automation tasks will stop...")
            print("!" * 60 + "\n")
        self._emit(DISCONNECT_CHANNEL, reason)

    async def _close_socket(self):
        try:
            await self.websocket.close()
        except (OSError, websockets.exceptions.WebSocketException) as e:
            log_warn("session", f"error closing socket: {e}")

    async def wait_closed(self):
        await self._closed.wait()

    async def close(self):
        """Close the session; pending requests fail with ConnectionLostError."""
        self._disconnect("closed by client")
        if self._close_task:
            await self._close_task
        current = asyncio.current_task()
        tasks = [t for t in (self._receive_task, self._heartbeat_task) if t and t is not current]
        for task in tasks:
            if not task.done():
                task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
