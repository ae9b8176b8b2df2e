"""
Network protocol handling for the farm bot.

Frame constants, push-event routing, the optional message log, and the
conversion of decoded protobuf replies into World Model entities.
"""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from google.protobuf.message import Message

from game_state import (
    GameState,
    InventoryItem,
    Land,
    OperationLimit,
    PendingTask,
    PhaseRecord,
    PlantInstance,
    PlayerState,
)
from utils.constants import (
    COUPON_ITEM_ID,
    EXP_ITEM_ID,
    GOLD_ITEM_ID,
    MESSAGE_LOG_FILE,
    PlantPhase,
)
from utils.helpers import to_num, to_time_sec
from utils.logger import log_warn


# ========== Custom Exceptions ==========

class FarmClientError(Exception):
    """Base class for session and orchestration failures."""
    pass


class LoginError(FarmClientError):
    """Raised when a connection attempt cannot complete the login handshake."""
    pass


class ConnectionLostError(FarmClientError):
    """Raised against pending requests when the session disconnects."""
    pass


class RequestTimeoutError(FarmClientError):
    """Raised when a single request gets no reply in time."""
    pass


class NotReadyError(FarmClientError):
    """Raised when a request is issued while the session is not READY."""
    pass


class AlreadyRunningError(FarmClientError):
    """Raised by start() when the bot is already running."""
    pass


class ServerError(FarmClientError):
    """The server answered a request with a non-zero error code."""

    def __init__(self, code: int, message: str = "", service: str = "", method: str = ""):
        self.code = code
        self.message = message
        self.service = service
        self.method = method
        super().__init__(f"{service}.{method} failed: code={code} {message}".strip())


# ========== Frames ==========

GATE_MESSAGE_TYPE = "gatepb.Message"
GATE_EVENT_TYPE = "gatepb.EventMessage"

# Event message type -> (body type, channel name)
PUSH_CHANNELS: Dict[str, Tuple[str, str]] = {
    "gamepb.plantpb.LandsNotify": ("gamepb.plantpb.LandsNotify", "landsChanged"),
    "gamepb.friendpb.FriendApplicationReceivedNotify": (
        "gamepb.friendpb.FriendApplicationReceivedNotify",
        "friendApplicationReceived",
    ),
    "gamepb.itempb.ItemNotify": ("gamepb.itempb.ItemNotify", "itemsChanged"),
    "gamepb.userpb.BasicNotify": ("gamepb.userpb.BasicNotify", "basicChanged"),
    "gamepb.taskpb.TaskInfoNotify": ("gamepb.taskpb.TaskInfoNotify", "taskInfoChanged"),
    "gatepb.KickoutNotify": ("gatepb.KickoutNotify", "kickout"),
}

DISCONNECT_CHANNEL = "disconnect"


def request_type_name(service: str, method: str) -> str:
    """gamepb.plantpb.PlantService + Harvest -> gamepb.plantpb.HarvestRequest"""
    return f"{service.rsplit('.', 1)[0]}.{method}Request"


def reply_type_name(service: str, method: str) -> str:
    return f"{service.rsplit('.', 1)[0]}.{method}Reply"


def event_type_name(message_type: str) -> str:
    """Strip a type URL prefix such as type.googleapis.com/ from an event type."""
    return message_type.rsplit("/", 1)[-1]


# ========== Message Log ==========

_message_log_enabled = False


def enable_message_log(enabled: bool, reset: bool = True):
    """Turn the frame log on or off; a fresh log file is started when enabled."""
    global _message_log_enabled
    _message_log_enabled = enabled
    if enabled and reset:
        try:
            with open(MESSAGE_LOG_FILE, "w", encoding="utf-8") as f:
                f.write("Farm Bot - Message Log\n")
                f.write(f"Started: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}\n")
        except OSError as e:
            print(f"Warning: Failed to create message log: {e}")


def log_message_to_file(direction: str, message, timestamp=None):
    """Append one frame summary to the message log when logging is enabled"""
    if not _message_log_enabled:
        return
    if timestamp is None:
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]

    try:
        with open(MESSAGE_LOG_FILE, "a", encoding="utf-8") as f:
            f.write(f"\n[{timestamp}] {direction}:\n")
            if isinstance(message, Message):
                f.write(f"{message}\n")
            elif isinstance(message, (bytes, bytearray)):
                f.write(f"{bytes(message).hex()}\n")
            else:
                f.write(f"{message}\n")
            f.write("-" * 80 + "\n")
    except OSError as e:
        print(f"Warning: Failed to log message to file: {e}")


# ========== Protobuf -> World Model ==========

def _phase(value: int) -> PlantPhase:
    try:
        return PlantPhase(to_num(value))
    except ValueError:
        return PlantPhase.UNKNOWN


def phase_record_from_proto(info) -> PhaseRecord:
    return PhaseRecord(
        phase=_phase(info.phase),
        begin_time=to_time_sec(info.begin_time),
        dry_time=to_time_sec(info.dry_time),
        weeds_time=to_time_sec(info.weeds_time),
        insect_time=to_time_sec(info.insect_time),
    )


def plant_from_proto(plant) -> PlantInstance:
    return PlantInstance(
        id=to_num(plant.id),
        name=plant.name,
        phases=tuple(phase_record_from_proto(p) for p in plant.phases),
        dry_num=to_num(plant.dry_num),
        weed_owners=tuple(to_num(gid) for gid in plant.weed_owners),
        insect_owners=tuple(to_num(gid) for gid in plant.insect_owners),
        stealable=bool(plant.stealable),
        fruit_num=to_num(plant.fruit_num),
        left_fruit_num=to_num(plant.left_fruit_num),
    )


def land_from_proto(info) -> Land:
    plant = None
    if info.HasField("plant") and info.plant.phases:
        plant = plant_from_proto(info.plant)
    return Land(
        id=to_num(info.id),
        unlocked=bool(info.unlocked),
        level=to_num(info.level),
        max_level=to_num(info.max_level),
        could_unlock=bool(info.could_unlock),
        could_upgrade=bool(info.could_upgrade),
        plant=plant,
    )


def lands_from_proto(infos: Iterable) -> List[Land]:
    return [land_from_proto(info) for info in infos]


def item_from_proto(item) -> InventoryItem:
    return InventoryItem(id=to_num(item.id), count=to_num(item.count))


def operation_limit_from_proto(limit) -> OperationLimit:
    return OperationLimit(
        op_id=to_num(limit.id),
        day_times=to_num(limit.day_times),
        day_times_limit=to_num(limit.day_times_lt),
        day_exp_times=to_num(limit.day_exp_times),
        day_exp_times_limit=to_num(limit.day_ex_times_lt),
    )


def task_from_proto(task) -> PendingTask:
    return PendingTask(
        id=to_num(task.id),
        desc=task.desc,
        progress=to_num(task.progress),
        total_progress=to_num(task.total_progress),
        is_claimed=bool(task.is_claimed),
        is_unlocked=bool(task.is_unlocked),
        share_multiple=to_num(task.share_multiple),
        rewards=tuple(item_from_proto(item) for item in task.rewards),
    )


def tasks_from_proto(task_info) -> List[PendingTask]:
    """Flatten growth, daily and general tasks; a repeated id keeps its first entry."""
    seen = {}
    for group in (task_info.growth_tasks, task_info.daily_tasks, task_info.tasks):
        for task in group:
            pending = task_from_proto(task)
            seen.setdefault(pending.id, pending)
    return list(seen.values())


def player_from_basic(basic, coupon: int = 0) -> PlayerState:
    return PlayerState(
        gid=to_num(basic.gid),
        name=basic.name,
        level=to_num(basic.level),
        exp=to_num(basic.exp),
        gold=to_num(basic.gold),
        coupon=coupon,
    )


# ========== Message Processing ==========

def process_login_reply(reply, game_state: GameState) -> PlayerState:
    """Seed the player from a login reply."""
    player = player_from_basic(reply.basic, coupon=game_state.get_player().coupon)
    game_state.set_player(player)
    return player


def process_basic_info(basic, game_state: GameState):
    """Apply a BasicInfo snapshot; zero fields are treated as not reported."""
    changes: Dict[str, Any] = {}
    for name in ("level", "exp", "gold"):
        value = to_num(getattr(basic, name))
        if value > 0:
            changes[name] = value
    if basic.name:
        changes["name"] = basic.name
    if changes:
        game_state.update_player(**changes)


def process_lands_reply(
    reply, game_state: GameState, field: str = "land", host_gid: Optional[int] = None
) -> List[Land]:
    """Replace the lands carried by a reply and record any operation limits.

    With host_gid the lands belong to that friend's farm, not ours.
    """
    lands = lands_from_proto(getattr(reply, field))
    if lands and host_gid:
        game_state.update_friend_lands(host_gid, lands)
    elif lands:
        game_state.update_lands(lands)
    if "operation_limits" in reply.DESCRIPTOR.fields_by_name:
        process_operation_limits(reply.operation_limits, game_state)
    return lands


def process_all_lands(reply, game_state: GameState) -> List[Land]:
    lands = lands_from_proto(reply.lands)
    game_state.replace_lands(lands)
    process_operation_limits(reply.operation_limits, game_state)
    return lands


def process_operation_limits(limits: Iterable, game_state: GameState):
    game_state.update_operation_limits(operation_limit_from_proto(limit) for limit in limits)


def process_bag_reply(reply, game_state: GameState) -> List[InventoryItem]:
    items = [item_from_proto(item) for item in reply.item_bag.items]
    game_state.replace_bag(items)
    _sync_currency(items, game_state)
    return items


def process_item_changes(items: Iterable[InventoryItem], game_state: GameState):
    """Apply absolute item counts reported by the server."""
    items = list(items)
    for item in items:
        game_state.set_item_count(item.id, item.count)
    _sync_currency(items, game_state)


def item_changes_from_proto(changes: Iterable, game_state: GameState) -> List[InventoryItem]:
    """Resolve ItemChange rows to absolute counts.

    The server sends the new total in item.count; when it is zero only the
    delta is meaningful and is applied to the count we last saw.
    """
    items = []
    for change in changes:
        if not change.HasField("item"):
            continue
        item_id = to_num(change.item.id)
        count = to_num(change.item.count)
        if count <= 0:
            if item_id == GOLD_ITEM_ID:
                previous = game_state.get_player().gold
            elif item_id == COUPON_ITEM_ID:
                previous = game_state.get_player().coupon
            elif item_id == EXP_ITEM_ID:
                previous = game_state.get_player().exp
            else:
                previous = game_state.get_item_count(item_id)
            count = max(0, previous + to_num(change.delta))
        items.append(InventoryItem(item_id, count))
    return items


def _sync_currency(items: List[InventoryItem], game_state: GameState):
    changes = {}
    for item in items:
        if item.id == GOLD_ITEM_ID:
            changes["gold"] = item.count
        elif item.id == COUPON_ITEM_ID:
            changes["coupon"] = item.count
        elif item.id == EXP_ITEM_ID and item.count > 0:
            changes["exp"] = item.count
    if changes:
        game_state.update_player(**changes)


def process_task_info(task_info, game_state: GameState) -> List[PendingTask]:
    tasks = tasks_from_proto(task_info)
    game_state.replace_tasks(tasks)
    return tasks


def process_push(channel: str, message, game_state: GameState, own_gid: Optional[int] = None):
    """Apply a decoded push event to the World Model.

    Lands pushed for another host (a friend's farm during a visit) go to that
    friend's farm snapshot, never to our own lands.
    """
    if channel == "landsChanged":
        host_gid = to_num(message.host_gid)
        lands = lands_from_proto(message.lands)
        if host_gid and own_gid and host_gid != own_gid:
            game_state.update_friend_lands(host_gid, lands)
        else:
            game_state.update_lands(lands)
    elif channel == "itemsChanged":
        process_item_changes(item_changes_from_proto(message.items, game_state), game_state)
    elif channel == "basicChanged":
        process_basic_info(message.basic, game_state)
    elif channel == "taskInfoChanged":
        process_task_info(message.task_info, game_state)
    elif channel in ("friendApplicationReceived", "kickout"):
        pass
    else:
        log_warn("protocol", f"no World Model handler for channel {channel}")
