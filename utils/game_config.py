"""
Static game tables: crops and role levels.

Loaded lazily from the JSON files shipped in utils/data.
"""

import json
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from utils.constants import LEVEL_DATA_FILE, PLANT_DATA_FILE


@dataclass(frozen=True)
class CropInfo:
    """One crop as described by the plant table"""
    id: int
    seed_id: int
    fruit_id: int
    name: str
    level: int
    exp: int
    grow_time: int  # seconds from seed to mature
    seasons: int = 1


_crops_by_seed: Optional[Dict[int, CropInfo]] = None
_level_table: Optional[List[Tuple[int, int]]] = None


def _load_crops() -> Dict[int, CropInfo]:
    global _crops_by_seed
    if _crops_by_seed is None:
        with open(PLANT_DATA_FILE, "r", encoding="utf-8") as f:
            rows = json.load(f)
        _crops_by_seed = {row["seed_id"]: CropInfo(**row) for row in rows}
    return _crops_by_seed


def _load_levels() -> List[Tuple[int, int]]:
    global _level_table
    if _level_table is None:
        with open(LEVEL_DATA_FILE, "r", encoding="utf-8") as f:
            rows = json.load(f)
        _level_table = sorted((row["level"], row["exp"]) for row in rows)
    return _level_table


def get_crop_by_seed(seed_id: int) -> Optional[CropInfo]:
    return _load_crops().get(seed_id)


def get_crop_by_fruit(fruit_id: int) -> Optional[CropInfo]:
    for crop in _load_crops().values():
        if crop.fruit_id == fruit_id:
            return crop
    return None


def is_fruit(item_id: int) -> bool:
    return get_crop_by_fruit(item_id) is not None


def get_crop_name(seed_id: int) -> str:
    crop = get_crop_by_seed(seed_id)
    return crop.name if crop else f"seed#{seed_id}"


def get_level_exp_progress(level: int, exp: int) -> Dict[str, int]:
    """Exp earned inside the current level and exp needed for the next one.

    The level table stores the cumulative exp required to reach each level.
    At the top of the table "needed" is 0.
    """
    table = _load_levels()
    thresholds = dict(table)
    base = thresholds.get(level, 0)
    next_threshold = thresholds.get(level + 1)
    if next_threshold is None:
        return {"current": max(0, exp - base), "needed": 0}
    return {"current": max(0, exp - base), "needed": max(0, next_threshold - base)}
