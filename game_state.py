"""
Game state management module for the farm bot.

This module holds the World Model: the account's lands, bag, player stats,
tasks, friend farms seen during the current friend pass, and connection
statistics. Every entity is rebuilt from the latest authoritative server
message; nothing here advances timers on its own.
"""

import threading
from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

from utils.constants import PlantPhase
from utils.game_config import get_level_exp_progress


@dataclass(frozen=True)
class PhaseRecord:
    """One scheduled growth stage with its hazard times (epoch seconds)"""
    phase: PlantPhase
    begin_time: int
    dry_time: int = 0
    weeds_time: int = 0
    insect_time: int = 0


@dataclass(frozen=True)
class PlantInstance:
    """A plant growing on a land, with the server's precomputed timeline"""
    id: int
    name: str
    phases: Tuple[PhaseRecord, ...] = ()
    dry_num: int = 0
    weed_owners: Tuple[int, ...] = ()
    insect_owners: Tuple[int, ...] = ()
    stealable: bool = False
    fruit_num: int = 0
    left_fruit_num: int = 0

    def __post_init__(self):
        # Keep the timeline ordered by begin time (stable for equal times)
        ordered = tuple(sorted(self.phases, key=lambda p: p.begin_time))
        if ordered != self.phases:
            object.__setattr__(self, "phases", ordered)

    def current_record(self, now: int) -> Optional[PhaseRecord]:
        """The last phase record whose begin time is at or before now."""
        current = None
        for record in self.phases:
            if record.begin_time <= now:
                current = record
            else:
                break
        return current

    def current_phase(self, now: int) -> PlantPhase:
        record = self.current_record(now)
        return record.phase if record else PlantPhase.UNKNOWN

    def needs_water(self, now: int) -> bool:
        if self.dry_num > 0:
            return True
        record = self.current_record(now)
        return bool(record and 0 < record.dry_time <= now)

    def has_weeds(self, now: int) -> bool:
        if self.weed_owners:
            return True
        record = self.current_record(now)
        return bool(record and 0 < record.weeds_time <= now)

    def has_insects(self, now: int) -> bool:
        if self.insect_owners:
            return True
        record = self.current_record(now)
        return bool(record and 0 < record.insect_time <= now)


class LandStatus(Enum):
    LOCKED = "locked"
    EMPTY = "empty"
    GROWING = "growing"
    MATURE = "mature"
    DEAD = "dead"


@dataclass(frozen=True)
class Land:
    """A plot, identified by a stable id"""
    id: int
    unlocked: bool
    level: int = 0
    max_level: int = 0
    could_unlock: bool = False
    could_upgrade: bool = False
    plant: Optional[PlantInstance] = None

    def status(self, now: int) -> LandStatus:
        if not self.unlocked:
            return LandStatus.LOCKED
        if self.plant is None or not self.plant.phases:
            return LandStatus.EMPTY
        phase = self.plant.current_phase(now)
        if phase == PlantPhase.MATURE:
            return LandStatus.MATURE
        if phase == PlantPhase.DEAD:
            return LandStatus.DEAD
        return LandStatus.GROWING


@dataclass(frozen=True)
class PlayerState:
    """Account stats. Exp progress is derived from the level table."""
    gid: int = 0
    name: str = ""
    level: int = 0
    exp: int = 0
    gold: int = 0
    coupon: int = 0

    @property
    def exp_progress(self) -> Dict[str, int]:
        return get_level_exp_progress(self.level, self.exp)


@dataclass(frozen=True)
class InventoryItem:
    id: int
    count: int


@dataclass(frozen=True)
class PendingTask:
    """A task with its reward and claim state"""
    id: int
    desc: str
    progress: int
    total_progress: int
    is_claimed: bool
    is_unlocked: bool
    share_multiple: int = 0
    rewards: Tuple[InventoryItem, ...] = ()

    @property
    def claimable(self) -> bool:
        return (
            self.is_unlocked
            and not self.is_claimed
            and self.total_progress > 0
            and self.progress >= self.total_progress
        )

    @property
    def share_eligible(self) -> bool:
        return self.share_multiple > 1


@dataclass(frozen=True)
class OperationLimit:
    """Server-side daily caps for one friend operation"""
    op_id: int
    day_times: int = 0
    day_times_limit: int = 0
    day_exp_times: int = 0
    day_exp_times_limit: int = 0

    def can_operate(self) -> bool:
        # A limit of 0 means the server does not cap this operation
        return self.day_times_limit <= 0 or self.day_times < self.day_times_limit

    def exp_available(self) -> bool:
        return self.day_exp_times_limit > 0 and self.day_exp_times < self.day_exp_times_limit


@dataclass(frozen=True)
class FriendFarm:
    gid: int
    name: str
    lands: Tuple[Land, ...] = ()


@dataclass
class Statistics:
    """Connection statistics"""
    messages_received: int = 0
    messages_sent: int = 0
    heartbeats_sent: int = 0
    heartbeats_acked: int = 0
    unmatched_frames: int = 0
    push_events: int = 0
    last_update: str = "Never"


OPERATION_NAMES = (
    "harvest", "clear", "plant", "buy", "fertilize", "water", "weed", "insect",
    "unlock", "upgrade", "steal", "help_water", "help_weed", "help_insect",
    "put_weeds", "put_insects", "accept_friend", "invite", "task_claim", "sell",
)


class GameState:
    """Thread-safe World Model

    The asyncio loop is the only writer (session responses and push events);
    the lock keeps reads consistent for observers running on other threads,
    such as a dashboard. Getters hand out immutable snapshots.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._player = PlayerState()
        self._lands: Dict[int, Land] = {}
        self._bag: Dict[int, InventoryItem] = {}
        self._tasks: Dict[int, PendingTask] = {}
        self._friend_farms: Dict[int, FriendFarm] = {}
        self._operation_limits: Dict[int, OperationLimit] = {}
        self._statistics = Statistics()
        self._operations: Dict[str, int] = {name: 0 for name in OPERATION_NAMES}

    # Player methods
    def get_player(self) -> PlayerState:
        with self._lock:
            return self._player

    def set_player(self, player: PlayerState):
        with self._lock:
            self._player = player

    def update_player(self, **changes):
        """Replace selected player fields with values reported by the server."""
        with self._lock:
            self._player = replace(self._player, **changes)

    def get_gid(self) -> int:
        with self._lock:
            return self._player.gid

    # Land methods
    def replace_lands(self, lands: Iterable[Land]):
        """Replace the whole land set (full snapshot from the server)."""
        with self._lock:
            self._lands = {land.id: land for land in lands}

    def update_lands(self, lands: Iterable[Land]):
        """Replace the given lands wholesale; other lands are untouched."""
        with self._lock:
            for land in lands:
                self._lands[land.id] = land

    def get_lands(self) -> List[Land]:
        """Lands sorted by ascending id"""
        with self._lock:
            return [self._lands[land_id] for land_id in sorted(self._lands)]

    def get_land(self, land_id: int) -> Optional[Land]:
        with self._lock:
            return self._lands.get(land_id)

    # Bag methods
    def replace_bag(self, items: Iterable[InventoryItem]):
        with self._lock:
            self._bag = {}
            for item in items:
                existing = self._bag.get(item.id)
                count = item.count + (existing.count if existing else 0)
                self._bag[item.id] = InventoryItem(item.id, count)

    def set_item_count(self, item_id: int, count: int):
        with self._lock:
            if count > 0:
                self._bag[item_id] = InventoryItem(item_id, count)
            else:
                self._bag.pop(item_id, None)

    def get_bag(self) -> List[InventoryItem]:
        with self._lock:
            return [self._bag[item_id] for item_id in sorted(self._bag)]

    def get_item_count(self, item_id: int) -> int:
        with self._lock:
            item = self._bag.get(item_id)
            return item.count if item else 0

    # Task methods
    def replace_tasks(self, tasks: Iterable[PendingTask]):
        with self._lock:
            self._tasks = {task.id: task for task in tasks}

    def get_tasks(self) -> List[PendingTask]:
        with self._lock:
            return [self._tasks[task_id] for task_id in sorted(self._tasks)]

    # Friend farm methods
    def set_friend_farm(self, farm: FriendFarm):
        with self._lock:
            self._friend_farms[farm.gid] = farm

    def get_friend_farm(self, gid: int) -> Optional[FriendFarm]:
        with self._lock:
            return self._friend_farms.get(gid)

    def update_friend_lands(self, gid: int, lands: Iterable[Land]):
        with self._lock:
            farm = self._friend_farms.get(gid)
            if farm is None:
                return
            merged = {land.id: land for land in farm.lands}
            for land in lands:
                merged[land.id] = land
            self._friend_farms[gid] = replace(
                farm, lands=tuple(merged[land_id] for land_id in sorted(merged))
            )

    def clear_friend_farms(self):
        with self._lock:
            self._friend_farms.clear()

    # Operation limit methods
    def update_operation_limits(self, limits: Iterable[OperationLimit]):
        with self._lock:
            for limit in limits:
                self._operation_limits[limit.op_id] = limit

    def get_operation_limit(self, op_id: int) -> Optional[OperationLimit]:
        with self._lock:
            return self._operation_limits.get(op_id)

    # Statistics methods
    def increment_stat(self, stat_name: str, amount: int = 1):
        """Atomically increment a statistic counter

        Args:
            stat_name: Name of the statistic field (e.g., "messages_received")
            amount: Amount to increment by (default: 1)
        """
        with self._lock:
            if hasattr(self._statistics, stat_name):
                current = getattr(self._statistics, stat_name)
                if isinstance(current, int):
                    setattr(self._statistics, stat_name, current + amount)

    def set_stat(self, stat_name: str, value):
        with self._lock:
            if hasattr(self._statistics, stat_name):
                setattr(self._statistics, stat_name, value)

    def get_statistics(self) -> Statistics:
        """Get a copy of the current statistics"""
        with self._lock:
            return replace(self._statistics)

    def record_operation(self, name: str, count: int = 1):
        with self._lock:
            self._operations[name] = self._operations.get(name, 0) + max(0, count)

    def get_operations(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._operations)
