"""
Self-farm automation for the farm bot.

Patrols our own lands: harvests mature crops, clears dead ones, plants empty
lands and removes hazards from growing ones.
"""

import time
from typing import Callable, List, Optional

from config import FarmConfig
from game_state import GameState, Land, LandStatus
from network.codec import CodecRegistryError
from network.protocol import (
    ConnectionLostError,
    FarmClientError,
    NotReadyError,
    process_lands_reply,
)
from automation.scheduler import PatrolLoop, refresh_bag, refresh_lands
from automation.shop import SeedOffer, buy_seeds, choose_seed, exp_per_second, fetch_seed_offers
from utils.constants import NORMAL_FERTILIZER_ID, PHASE_NAMES, PLANT_SERVICE
from utils.helpers import now_sec, to_num
from utils.logger import log, log_warn

# Pushes arriving closer together than this only wake the loop once
LANDS_PUSH_DEBOUNCE_SECONDS = 0.5

# Hazard remediation in priority order: (check, method, operation name)
REMEDIATIONS = (
    ("needs_water", "WaterLand", "water"),
    ("has_weeds", "WeedOut", "weed"),
    ("has_insects", "Insecticide", "insect"),
)


class FarmScheduler(PatrolLoop):
    """
    Self-farm patrol loop.

    Lands are handled one at a time in ascending id order; each land gets at
    most one action per pass, and lands carried by a reply replace the World
    Model copy before the next land is decided.
    """

    name = "farm"

    def __init__(
        self,
        session,
        game_state: GameState,
        config: FarmConfig,
        efficiency: Callable[[SeedOffer], float] = exp_per_second,
    ):
        super().__init__(session, game_state, config.interval_seconds)
        self.config = config
        self.efficiency = efficiency
        self._offers: Optional[List[SeedOffer]] = None
        self._last_push_wake = 0.0
        session.on("landsChanged", self._on_lands_changed)

    def detach(self):
        self.session.off("landsChanged", self._on_lands_changed)

    def _on_lands_changed(self, message):
        host_gid = to_num(message.host_gid)
        if host_gid and host_gid != self.game_state.get_gid():
            return
        now = time.monotonic()
        if now - self._last_push_wake < LANDS_PUSH_DEBOUNCE_SECONDS:
            return
        self._last_push_wake = now
        self.wake()

    async def run_cycle(self):
        await refresh_lands(self.session, self.game_state)
        await refresh_bag(self.session, self.game_state)
        self._offers = None

        now = now_sec()
        land_ids = [land.id for land in self.game_state.get_lands() if land.unlocked]
        actions = []
        for land_id in land_ids:
            land = self.game_state.get_land(land_id)
            if land is None or not land.unlocked:
                continue
            try:
                action = await self.tend_land(land, now)
            except (ConnectionLostError, NotReadyError):
                raise
            except (FarmClientError, CodecRegistryError) as e:
                log_warn(self.name, f"land #{land_id}: {e}")
                continue
            if action:
                actions.append(f"#{land_id} {action}")

        if self.config.auto_unlock_lands or self.config.auto_upgrade_lands:
            actions.extend(await self.expand_lands())

        if actions:
            log(self.name, "Patrol: " + ", ".join(actions))

    async def tend_land(self, land: Land, now: int) -> Optional[str]:
        """
        Decide and perform one action for an unlocked land.

        Returns:
            Short description of the action taken, or None
        """
        status = land.status(now)
        if status == LandStatus.MATURE:
            await self._plant_call("Harvest", {"land_ids": [land.id], "host_gid": self.game_state.get_gid(), "is_all": True})
            self.game_state.record_operation("harvest")
            return f"harvest {land.plant.name}"

        if status == LandStatus.DEAD:
            await self._plant_call("RemovePlant", {"land_ids": [land.id]})
            self.game_state.record_operation("clear")
            return "clear"

        if status == LandStatus.EMPTY:
            return await self.plant_land(land)

        if status == LandStatus.GROWING:
            return await self.remediate(land, now)

        return None

    async def remediate(self, land: Land, now: int) -> Optional[str]:
        """Issue the single highest-priority hazard remediation for a growing land."""
        plant = land.plant
        for check, method, operation in REMEDIATIONS:
            if getattr(plant, check)(now):
                await self._plant_call(method, {"land_ids": [land.id], "host_gid": self.game_state.get_gid()})
                self.game_state.record_operation(operation)
                return f"{operation} ({PHASE_NAMES[plant.current_phase(now)]})"
        return None

    async def plant_land(self, land: Land) -> Optional[str]:
        """Plant an empty land, buying the seed first when the bag has none."""
        if self._offers is None:
            self._offers = await fetch_seed_offers(self.session)

        player = self.game_state.get_player()
        bag = {item.id: item.count for item in self.game_state.get_bag()}
        offer = choose_seed(
            self._offers,
            level=player.level,
            gold=player.gold,
            bag=bag,
            force_lowest=self.config.force_lowest_level_crop,
            efficiency=self.efficiency,
        )
        if offer is None:
            log_warn(self.name, f"land #{land.id}: no seed available to plant")
            return None

        if bag.get(offer.seed_id, 0) <= 0:
            wanted = max(1, self._empty_land_count())
            bought = await buy_seeds(self.session, self.game_state, offer, wanted)
            await refresh_bag(self.session, self.game_state)
            if bought <= 0 or self.game_state.get_item_count(offer.seed_id) <= 0:
                log_warn(self.name, f"land #{land.id}: could not buy {offer.name}")
                return None

        await self._plant_call("Plant", {"items": [{"seed_id": offer.seed_id, "land_ids": [land.id]}]})
        self.game_state.record_operation("plant")
        await refresh_bag(self.session, self.game_state)

        action = f"plant {offer.name}"
        if self._should_fertilize(offer):
            try:
                await self._plant_call("Fertilize", {"land_ids": [land.id], "fertilizer_id": NORMAL_FERTILIZER_ID})
                self.game_state.record_operation("fertilize")
                action += " +fertilizer"
            except (ConnectionLostError, NotReadyError):
                raise
            except (FarmClientError, CodecRegistryError) as e:
                log_warn(self.name, f"land #{land.id}: fertilize failed: {e}")
        return action

    def _should_fertilize(self, offer: SeedOffer) -> bool:
        if not self.config.fertilize or offer.crop is None:
            return False
        if self.game_state.get_item_count(NORMAL_FERTILIZER_ID) <= 0:
            return False
        return offer.crop.grow_time >= self.config.fertilize_min_grow_seconds

    def _empty_land_count(self) -> int:
        now = now_sec()
        return sum(1 for land in self.game_state.get_lands() if land.status(now) == LandStatus.EMPTY)

    async def expand_lands(self) -> List[str]:
        """Unlock and upgrade lands the server offers, when enabled in config."""
        actions = []
        for land in self.game_state.get_lands():
            try:
                if self.config.auto_unlock_lands and not land.unlocked and land.could_unlock:
                    await self._plant_call("UnlockLand", {"land_id": land.id, "do_shared": False})
                    self.game_state.record_operation("unlock")
                    actions.append(f"#{land.id} unlock")
                elif self.config.auto_upgrade_lands and land.unlocked and land.could_upgrade:
                    await self._plant_call("UpgradeLand", {"land_id": land.id})
                    self.game_state.record_operation("upgrade")
                    actions.append(f"#{land.id} upgrade")
            except (ConnectionLostError, NotReadyError):
                raise
            except (FarmClientError, CodecRegistryError) as e:
                log_warn(self.name, f"land #{land.id}: {e}")
        return actions

    async def _plant_call(self, method: str, body):
        reply = await self.session.call(PLANT_SERVICE, method, body)
        process_lands_reply(reply, self.game_state)
        return reply
