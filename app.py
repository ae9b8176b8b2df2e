"""
Farm Bot - Application Entry Point

Main application that orchestrates the session, the automation loops and
reconnection.
"""

import argparse
import asyncio
import sys
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from config import BotConfig, ConfigError, apply_platform_options, load_config
from game_state import GameState
from network.client import FarmSession, LoginResult
from network.codec import CodecRegistry, SchemaError, load_registry
from network.protocol import (
    DISCONNECT_CHANNEL,
    AlreadyRunningError,
    ConnectionLostError,
    FarmClientError,
    LoginError,
    NotReadyError,
    enable_message_log,
)
from automation.farm import FarmScheduler
from automation.friends import FriendScheduler
from automation.scheduler import PatrolLoop, refresh_bag, refresh_lands
from automation.tasks import TaskScheduler
from automation.warehouse import WarehouseScheduler
from utils.logger import log, log_warn


class FarmBot:
    """
    Owns one session at a time and the automation loops bound to it.

    On disconnect the loops are torn down and a brand-new session is built
    (fresh login, fresh sequence space), retrying with exponential backoff.
    """

    def __init__(
        self,
        config: BotConfig,
        game_state: Optional[GameState] = None,
        registry: Optional[CodecRegistry] = None,
        session_factory: Optional[Callable[..., FarmSession]] = None,
        code_provider: Optional[Callable[[], Awaitable[str]]] = None,
    ):
        """
        Initialize the bot.

        Args:
            config: Bot configuration
            game_state: World Model shared by the session and the loops
            registry: Codec registry (loaded and verified on first start when omitted)
            session_factory: Callable building a session from (registry, config, game_state)
            code_provider: Async callable returning a fresh login code before each
                reconnection attempt (the first code is reused when omitted)
        """
        self.config = config
        self.active_config = config
        self.game_state = game_state or GameState()
        self.registry = registry
        self.session: Optional[FarmSession] = None
        self.schedulers: List[PatrolLoop] = []
        self.login_result: Optional[LoginResult] = None
        self._session_factory = session_factory or FarmSession
        self._code_provider = code_provider
        self._running = False
        self._code: Optional[str] = None
        self._invite_codes: List[str] = []
        self._reconnect_task: Optional[asyncio.Task] = None
        self._stopped: Optional[asyncio.Event] = None

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(
        self,
        code: str,
        platform_options: Optional[Dict[str, Any]] = None,
        invite_codes: Optional[Iterable[str]] = None,
    ) -> LoginResult:
        """
        Log in and start the automation loops.

        Args:
            code: One-time login code
            platform_options: Overrides for platform and patrol settings
            invite_codes: Invite links to report once (wx only)

        Raises:
            AlreadyRunningError: If the bot is already running
            SchemaError: If the message catalogue fails to load or verify
            ConfigError: If platform_options contain invalid values
            LoginError: If the first login fails
        """
        if self._running:
            raise AlreadyRunningError("bot is already running")

        self.active_config = apply_platform_options(self.config, platform_options)
        if self.registry is None:
            self.registry = load_registry()
        enable_message_log(self.active_config.message_log)

        self._code = code
        self._invite_codes = list(invite_codes or [])
        self._stopped = asyncio.Event()
        self._running = True
        try:
            return await self._open_session()
        except LoginError:
            self._running = False
            self._stopped.set()
            raise

    async def _open_session(self) -> LoginResult:
        session = self._session_factory(self.registry, self.active_config, self.game_state)
        self.session = session
        self.login_result = await session.start(self._code)

        try:
            await refresh_lands(session, self.game_state)
            await refresh_bag(session, self.game_state)
        except (ConnectionLostError, NotReadyError) as e:
            raise LoginError(f"session lost while loading the farm: {e}") from e
        except FarmClientError as e:
            log_warn("bot", f"initial farm snapshot failed: {e}")

        if not session.is_ready:
            raise LoginError(f"session lost while loading the farm: {session.disconnect_reason}")

        self._start_schedulers(session)
        session.on(DISCONNECT_CHANNEL, self._on_disconnect)
        return self.login_result

    def _start_schedulers(self, session: FarmSession):
        config = self.active_config
        self.schedulers = [
            FarmScheduler(session, self.game_state, config.farm),
            FriendScheduler(
                session,
                self.game_state,
                config.friend,
                platform=config.platform,
                invite_codes=self._invite_codes,
            ),
        ]
        # Invite codes are processed once per bot run, not once per session
        self._invite_codes = []
        if config.task.enabled:
            self.schedulers.append(TaskScheduler(session, self.game_state, config.task))
        if config.warehouse.enabled:
            self.schedulers.append(WarehouseScheduler(session, self.game_state, config.warehouse))

        for scheduler in self.schedulers:
            scheduler.start()
        log("bot", f"Started {', '.join(s.name for s in self.schedulers)}")

    async def _stop_schedulers(self):
        schedulers, self.schedulers = self.schedulers, []
        timeout = self.active_config.request_timeout + 5
        for scheduler in schedulers:
            scheduler.request_stop()
        await asyncio.gather(*(scheduler.stop(timeout=timeout) for scheduler in schedulers))
        for scheduler in schedulers:
            detach = getattr(scheduler, "detach", None)
            if detach:
                detach()

    def _on_disconnect(self, reason: str):
        if not self._running:
            return
        if self._reconnect_task and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.ensure_future(self._handle_disconnect(reason))

    async def _handle_disconnect(self, reason: str):
        """Tear down the loops, then rebuild the session with backoff."""
        await self._stop_schedulers()
        if self.session:
            self.session.off(DISCONNECT_CHANNEL, self._on_disconnect)
            await self.session.close()

        reconnection = self.active_config.reconnection
        retry_count = 0
        while self._running:
            if retry_count >= reconnection.max_retries:
                print("\n" + "!" * 60)
                print("MAX RECONNECTION ATTEMPTS REACHED - Bot stopped")
                print("!" * 60)
                self._running = False
                self.session = None
                self._stopped.set()
                return

            # Calculate backoff delay
            retry_count += 1
            delay = min(reconnection.base_delay * (2 ** (retry_count - 1)), reconnection.max_delay)

            print("\n" + "=" * 60)
            print(f"ATTEMPTING RECONNECTION... ({reason})")
            print(f"Retry {retry_count}/{reconnection.max_retries} - Waiting {delay} seconds")
            print("=" * 60 + "\n")

            await asyncio.sleep(delay)
            if not self._running:
                return

            try:
                if self._code_provider is not None:
                    self._code = await self._code_provider()
                await self._open_session()
            except LoginError as e:
                log_warn("bot", f"reconnection failed: {e}")
                if self.session:
                    await self.session.close()
                continue

            print(f"\n{'='*60}")
            print("RECONNECTION SUCCESSFUL!")
            print(f"{'='*60}\n")
            return

    async def stop(self):
        """Stop the loops and close the session; no-op when not running."""
        if not self._running:
            return
        self._running = False

        if self._reconnect_task and self._reconnect_task is not asyncio.current_task():
            self._reconnect_task.cancel()
            await asyncio.gather(self._reconnect_task, return_exceptions=True)

        await self._stop_schedulers()
        if self.session:
            self.session.off(DISCONNECT_CHANNEL, self._on_disconnect)
            await self.session.close()
            self.session = None
        self._stopped.set()
        log("bot", "Stopped")

    async def wait_stopped(self):
        if self._stopped:
            await self._stopped.wait()

    async def run(self, code: str, platform_options: Optional[Dict[str, Any]] = None):
        """Start and keep running until stopped or out of reconnection attempts."""
        await self.start(code, platform_options)
        try:
            await self.wait_stopped()
        finally:
            await self.stop()


def parse_args(argv=None):
    """
    Parse command line arguments.

    Returns:
        argparse.Namespace with parsed arguments
    """
    parser = argparse.ArgumentParser(description="QQ Farm Bot")
    parser.add_argument("--code", type=str, help="One-time login code")
    parser.add_argument("--wx", action="store_true", help="Log in through the wx platform")
    parser.add_argument("--interval", type=int, help="Self-farm patrol interval in seconds")
    parser.add_argument("--friend-interval", type=int, help="Friend patrol interval in seconds")
    parser.add_argument("--verify", action="store_true", help="Verify the message catalogue and exit")
    parser.add_argument("--decode", type=str, metavar="DATA", help="Decode a hex or base64 blob and exit")
    parser.add_argument("--type", type=str, dest="type_name", help="Message type for --decode")
    parser.add_argument("--gate", action="store_true", help="Treat --decode data as a gate frame")
    return parser.parse_args(argv)


def main(argv=None):
    """Application entry point."""
    args = parse_args(argv)

    if args.verify or args.decode:
        from utils import decode
        if args.verify:
            return decode.verify_mode()
        return decode.decode_mode(args.decode, args.type_name, gate=args.gate)

    if not args.code:
        print("A login code is required: --code <code>")
        return 1

    try:
        config = load_config()
    except ConfigError as exc:
        print(f"\nConfiguration error: {exc}")
        print("Update bot_config.json and restart the bot.")
        return 1

    options: Dict[str, Any] = {}
    if args.wx:
        options["platform"] = "wx"
    if args.interval is not None:
        options["interval"] = args.interval
    if args.friend_interval is not None:
        options["friend_interval"] = args.friend_interval

    bot = FarmBot(config)
    try:
        asyncio.run(bot.run(args.code, options))
    except SchemaError as exc:
        print(f"\nMessage catalogue error: {exc}")
        return 1
    except LoginError as exc:
        print(f"\nLogin failed: {exc}")
        return 1
    except KeyboardInterrupt:
        print("\nStopped by user")
    return 0


if __name__ == "__main__":
    sys.exit(main())
