"""
Friend-farm automation for the farm bot.

Accepts friend applications, reports invite codes once, and patrols friends'
farms to help, steal and (only when enabled) put weeds or insects.
"""

import asyncio
from typing import Dict, Iterable, List, Optional, Set
from urllib.parse import parse_qs

from config import FriendConfig
from game_state import FriendFarm, GameState, Land, LandStatus
from network.codec import CodecRegistryError
from network.protocol import (
    ConnectionLostError,
    FarmClientError,
    NotReadyError,
    ServerError,
    lands_from_proto,
    process_lands_reply,
    process_operation_limits,
)
from automation.scheduler import PatrolLoop
from utils.constants import (
    FRIEND_SERVICE,
    OP_INSECTICIDE,
    OP_PUT_INSECTS,
    OP_PUT_WEEDS,
    OP_STEAL,
    OP_WATER,
    OP_WEED_OUT,
    PLANT_SERVICE,
    USER_SERVICE,
    VISIT_REASON_FRIEND,
    VISIT_SERVICE,
)
from utils.helpers import now_sec, to_num
from utils.logger import log, log_warn

# Help actions in order: (hazard check, method, operation id, operation name)
HELP_ACTIONS = (
    ("needs_water", "WaterLand", OP_WATER, "help_water"),
    ("has_weeds", "WeedOut", OP_WEED_OUT, "help_weed"),
    ("has_insects", "Insecticide", OP_INSECTICIDE, "help_insect"),
)

BAD_ACTIONS = (
    ("PutWeeds", OP_PUT_WEEDS, "put_weeds"),
    ("PutInsects", OP_PUT_INSECTS, "put_insects"),
)


def parse_invite_code(code: str) -> Optional[Dict[str, object]]:
    """
    Parse an invite link query (?uid=..&openid=..&share_source=..&doc_id=..).

    Returns:
        ReportArkClick request body, or None when the code has no sharer id
    """
    query = code.strip().split("?", 1)[-1]
    params = {key: values[0] for key, values in parse_qs(query).items() if values}
    sharer_id = to_num(params.get("uid"))
    if sharer_id <= 0:
        return None
    return {
        "sharer_id": sharer_id,
        "sharer_open_id": params.get("openid", ""),
        "share_cfg_id": to_num(params.get("doc_id")),
        "scene_id": params.get("share_source", ""),
    }


class FriendScheduler(PatrolLoop):
    """Friend-farm patrol loop"""

    name = "friends"

    def __init__(
        self,
        session,
        game_state: GameState,
        config: FriendConfig,
        platform: str = "qq",
        invite_codes: Optional[Iterable[str]] = None,
    ):
        super().__init__(session, game_state, config.interval_seconds)
        self.config = config
        self.platform = platform
        self._applications: Dict[int, str] = {}  # gid -> name, in arrival order
        self._accepted: Set[int] = set()
        self._applications_seeded = False
        self._invite_codes: List[str] = [c for c in (invite_codes or []) if c and c.strip()]
        self._invites_done = False
        session.on("friendApplicationReceived", self._on_applications)

    def detach(self):
        self.session.off("friendApplicationReceived", self._on_applications)

    # ========== Friend applications ==========

    def _on_applications(self, message):
        queued = [app for app in message.applications if self.enqueue_application(to_num(app.gid), app.name)]
        if queued:
            log(self.name, f"Friend application from {', '.join(app.name or str(app.gid) for app in queued)}")

    def enqueue_application(self, gid: int, name: str = "") -> bool:
        """Queue an application; returns False for duplicates and already-accepted ids."""
        if gid <= 0 or gid in self._accepted or gid in self._applications:
            return False
        self._applications[gid] = name
        return True

    @property
    def pending_applications(self) -> List[int]:
        return list(self._applications)

    async def seed_applications(self):
        reply = await self.session.call(FRIEND_SERVICE, "GetApplications", {})
        for app in reply.applications:
            self.enqueue_application(to_num(app.gid), app.name)
        self._applications_seeded = True

    async def accept_applications(self) -> int:
        """Accept every queued application with one request."""
        if not self._applications:
            return 0
        gids = list(self._applications)
        try:
            await self.session.call(FRIEND_SERVICE, "AcceptFriends", {"friend_gids": gids})
        except ServerError as e:
            # Rejected ids (already friends, expired) would fail again
            log_warn(self.name, f"accept friends failed: {e}")
            for gid in gids:
                self._applications.pop(gid, None)
            return 0
        for gid in gids:
            self._applications.pop(gid, None)
            self._accepted.add(gid)
        self.game_state.record_operation("accept_friend", len(gids))
        log(self.name, f"Accepted {len(gids)} friend application(s)")
        return len(gids)

    # ========== Invite codes ==========

    async def process_invites(self):
        """Report invite codes once per bot run (wx only)."""
        self._invites_done = True
        if not self._invite_codes:
            return
        if self.platform != "wx":
            log(self.name, "Invite codes are only processed on wx, skipping")
            return

        for index, code in enumerate(self._invite_codes):
            body = parse_invite_code(code)
            if body is None:
                log_warn(self.name, f"invalid invite code: {code[:40]}")
                continue
            if index > 0:
                await asyncio.sleep(self.config.invite_delay_seconds)
            try:
                await self.session.call(USER_SERVICE, "ReportArkClick", body)
                self.game_state.record_operation("invite")
                log(self.name, f"Reported invite from uid {body['sharer_id']}")
            except (ConnectionLostError, NotReadyError):
                raise
            except (FarmClientError, CodecRegistryError) as e:
                log_warn(self.name, f"invite {body['sharer_id']} failed: {e}")

    # ========== Patrol ==========

    async def run_cycle(self):
        if not self._applications_seeded:
            try:
                await self.seed_applications()
            except (ConnectionLostError, NotReadyError):
                raise
            except (FarmClientError, CodecRegistryError) as e:
                log_warn(self.name, f"could not load friend applications: {e}")
        try:
            await self.accept_applications()
        except (ConnectionLostError, NotReadyError):
            raise
        except (FarmClientError, CodecRegistryError) as e:
            # Ids stay queued for the next pass
            log_warn(self.name, f"accept friends failed: {e}")

        if not self._invites_done:
            await self.process_invites()

        await self.patrol_friends()

    async def patrol_friends(self):
        self.game_state.clear_friend_farms()
        reply = await self.session.call(FRIEND_SERVICE, "GetAll", {})
        own_gid = self.game_state.get_gid()

        for friend in reply.game_friends:
            gid = to_num(friend.gid)
            if gid <= 0 or gid == own_gid:
                continue
            if not self._worth_visiting(friend):
                continue
            try:
                await self.visit_friend(gid, friend.name)
            except (ConnectionLostError, NotReadyError):
                raise
            except (FarmClientError, CodecRegistryError) as e:
                log_warn(self.name, f"friend {friend.name or gid}: {e}")

    def _worth_visiting(self, friend) -> bool:
        if self.config.enable_put_bad_things or not friend.HasField("plant"):
            return True
        summary = friend.plant
        if self.config.steal_enabled and to_num(summary.steal_plant_num) > 0:
            return True
        return any(to_num(n) > 0 for n in (summary.dry_num, summary.weed_num, summary.insect_num))

    async def visit_friend(self, gid: int, name: str = ""):
        """Enter a friend's farm, act on it, and leave."""
        reply = await self.session.call(VISIT_SERVICE, "Enter", {"host_gid": gid, "reason": VISIT_REASON_FRIEND})
        lands = sorted(lands_from_proto(reply.lands), key=lambda land: land.id)
        self.game_state.set_friend_farm(FriendFarm(gid=gid, name=name, lands=tuple(lands)))
        process_operation_limits(reply.operation_limits, self.game_state)

        actions = []
        try:
            actions.extend(await self.help_friend(gid))
            if self.config.steal_enabled:
                actions.extend(await self.steal_from_friend(gid))
            if self.config.enable_put_bad_things:
                actions.extend(await self.put_bad_things(gid))
        finally:
            await self._leave(gid)
        if actions:
            log(self.name, f"{name or gid}: {', '.join(actions)}")

    async def _leave(self, gid: int):
        if not self.session.is_ready:
            return
        try:
            await self.session.call(VISIT_SERVICE, "Leave", {"host_gid": gid})
        except (ConnectionLostError, NotReadyError):
            raise
        except (FarmClientError, CodecRegistryError) as e:
            log_warn(self.name, f"leave friend {gid} failed: {e}")

    def _friend_lands(self, gid: int) -> List[Land]:
        farm = self.game_state.get_friend_farm(gid)
        return list(farm.lands) if farm else []

    def _can_help(self, op_id: int) -> bool:
        limit = self.game_state.get_operation_limit(op_id)
        if limit is not None and not limit.can_operate():
            return False
        if self.config.help_only_with_exp:
            return limit is not None and limit.exp_available()
        return True

    async def help_friend(self, gid: int) -> List[str]:
        actions = []
        for check, method, op_id, operation in HELP_ACTIONS:
            if not self._can_help(op_id):
                continue
            now = now_sec()
            land_ids = [
                land.id for land in self._friend_lands(gid)
                if land.status(now) in (LandStatus.GROWING, LandStatus.MATURE)
                and getattr(land.plant, check)(now)
            ]
            if land_ids and await self._friend_op(gid, method, land_ids):
                self.game_state.record_operation(operation, len(land_ids))
                actions.append(f"{operation} x{len(land_ids)}")
        return actions

    async def steal_from_friend(self, gid: int) -> List[str]:
        limit = self.game_state.get_operation_limit(OP_STEAL)
        if limit is not None and not limit.can_operate():
            return []
        now = now_sec()
        land_ids = [
            land.id for land in self._friend_lands(gid)
            if land.status(now) == LandStatus.MATURE and land.plant.stealable
        ]
        if land_ids and await self._friend_op(gid, "Harvest", land_ids, {"is_all": True}):
            self.game_state.record_operation("steal", len(land_ids))
            return [f"steal x{len(land_ids)}"]
        return []

    async def put_bad_things(self, gid: int) -> List[str]:
        """Put weeds and insects on a friend's clean growing lands."""
        now = now_sec()
        targets = [
            land.id for land in self._friend_lands(gid)
            if land.status(now) == LandStatus.GROWING
            and not land.plant.has_weeds(now)
            and not land.plant.has_insects(now)
        ]
        actions = []
        if not targets:
            return actions
        for method, op_id, operation in BAD_ACTIONS:
            limit = self.game_state.get_operation_limit(op_id)
            if limit is not None and not limit.can_operate():
                continue
            if await self._friend_op(gid, method, targets):
                self.game_state.record_operation(operation, len(targets))
                actions.append(f"{operation} x{len(targets)}")
        return actions

    async def _friend_op(self, gid: int, method: str, land_ids: List[int], extra=None) -> bool:
        body = {"land_ids": land_ids, "host_gid": gid}
        if extra:
            body.update(extra)
        try:
            reply = await self.session.call(PLANT_SERVICE, method, body)
        except ServerError as e:
            log_warn(self.name, f"{method} on friend {gid} failed: {e}")
            return False
        process_lands_reply(reply, self.game_state, host_gid=gid)
        return True
