"""
Constants used throughout the farm bot.
"""

import os
from enum import IntEnum

_PACKAGE_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

# Message logging file
MESSAGE_LOG_FILE = "messages.log"

# Configuration file
CONFIG_FILE = "bot_config.json"

# Protocol schema catalogue (protobufjs JSON descriptor format)
SCHEMA_FILE = os.path.join(_PACKAGE_ROOT, "network", "proto", "game.json")

# Static game tables
PLANT_DATA_FILE = os.path.join(_PACKAGE_ROOT, "utils", "data", "plants.json")
LEVEL_DATA_FILE = os.path.join(_PACKAGE_ROOT, "utils", "data", "role_levels.json")

# Gate endpoint and client identity sent at login
SERVER_URL = "wss://gate-obt.nqf.qq.com/prod/ws"
CLIENT_VERSION = "1.6.0.14_20251224"
CLIENT_OS = "iOS"
PLATFORMS = ("qq", "wx")

# Gate frame message types (gatepb.Meta.message_type)
MESSAGE_TYPE_REQUEST = 1
MESSAGE_TYPE_RESPONSE = 2
MESSAGE_TYPE_NOTIFY = 3

# Services
USER_SERVICE = "gamepb.userpb.UserService"
PLANT_SERVICE = "gamepb.plantpb.PlantService"
SHOP_SERVICE = "gamepb.shoppb.ShopService"
ITEM_SERVICE = "gamepb.itempb.ItemService"
FRIEND_SERVICE = "gamepb.friendpb.FriendService"
VISIT_SERVICE = "gamepb.visitpb.VisitService"
TASK_SERVICE = "gamepb.taskpb.TaskService"

# Item ids
GOLD_ITEM_ID = 1001
COUPON_ITEM_ID = 1002
EXP_ITEM_ID = 1101
NORMAL_FERTILIZER_ID = 1011

# Shop that sells seeds
SEED_SHOP_ID = 2

# Designated lowest-tier crop (white radish)
LOWEST_TIER_SEED_ID = 20002

# Friend operation ids used by the daily operation limits
OP_PUT_WEEDS = 10003
OP_PUT_INSECTS = 10004
OP_WEED_OUT = 10005
OP_INSECTICIDE = 10006
OP_WATER = 10007
OP_STEAL = 10008

# Visit reason for entering a friend's farm
VISIT_REASON_FRIEND = 2


class PlantPhase(IntEnum):
    """Growth stages, in order. Values match the wire enum."""
    UNKNOWN = 0
    SEED = 1
    GERMINATION = 2
    SMALL_LEAVES = 3
    LARGE_LEAVES = 4
    BLOOMING = 5
    MATURE = 6
    DEAD = 7


PHASE_NAMES = {
    PlantPhase.UNKNOWN: "unknown",
    PlantPhase.SEED: "seed",
    PlantPhase.GERMINATION: "germination",
    PlantPhase.SMALL_LEAVES: "small leaves",
    PlantPhase.LARGE_LEAVES: "large leaves",
    PlantPhase.BLOOMING: "blooming",
    PlantPhase.MATURE: "mature",
    PlantPhase.DEAD: "dead",
}
