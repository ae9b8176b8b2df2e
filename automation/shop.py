"""
Seed shop for the farm bot.

Handles reading the seed shop, choosing which crop to plant, and buying seeds.
"""

from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional

from game_state import GameState
from utils.game_config import CropInfo, get_crop_by_seed, get_crop_name
from utils.constants import LOWEST_TIER_SEED_ID, SEED_SHOP_ID, SHOP_SERVICE
from utils.helpers import to_num
from utils.logger import log


@dataclass(frozen=True)
class SeedOffer:
    """One seed goods entry in the seed shop"""
    goods_id: int
    seed_id: int
    price: int
    unlock_level: int
    unlocked: bool
    crop: Optional[CropInfo] = None

    @property
    def name(self) -> str:
        return get_crop_name(self.seed_id)


def seed_offers_from_shop(reply) -> List[SeedOffer]:
    offers = []
    for goods in reply.goods_list:
        seed_id = to_num(goods.item_id)
        crop = get_crop_by_seed(seed_id)
        if crop is None:
            continue
        offers.append(SeedOffer(
            goods_id=to_num(goods.id),
            seed_id=seed_id,
            price=to_num(goods.price),
            unlock_level=max(to_num(goods.unlock_level), crop.level),
            unlocked=bool(goods.unlocked),
            crop=crop,
        ))
    return offers


def exp_per_second(offer: SeedOffer) -> float:
    """Experience gained per second of growth for one seed."""
    if offer.crop is None:
        return 0.0
    return offer.crop.exp / max(1, offer.crop.grow_time)


def eligible_offers(
    offers: Iterable[SeedOffer], level: int, gold: int, bag: Dict[int, int]
) -> List[SeedOffer]:
    """Seeds the player may plant now: unlocked, level reached, affordable or already owned."""
    return [
        offer for offer in offers
        if offer.unlocked
        and offer.unlock_level <= level
        and (offer.price <= gold or bag.get(offer.seed_id, 0) > 0)
    ]


def choose_seed(
    offers: Iterable[SeedOffer],
    level: int,
    gold: int,
    bag: Optional[Dict[int, int]] = None,
    force_lowest: bool = False,
    efficiency: Callable[[SeedOffer], float] = exp_per_second,
) -> Optional[SeedOffer]:
    """
    Pick the seed to plant.

    Args:
        offers: Seed shop entries
        level: Player level
        gold: Player gold
        bag: Seed id -> count already owned
        force_lowest: Always take the lowest-tier crop (white radish first);
            the efficiency comparison is never run
        efficiency: Score used to rank crops when not forcing the lowest tier

    Returns:
        The chosen SeedOffer, or None when nothing can be planted
    """
    candidates = eligible_offers(offers, level, gold, bag or {})
    if not candidates:
        return None

    if force_lowest:
        for offer in candidates:
            if offer.seed_id == LOWEST_TIER_SEED_ID:
                return offer
        return min(candidates, key=lambda o: (o.unlock_level, o.price, o.seed_id))

    return max(candidates, key=lambda o: (efficiency(o), -o.price, -o.seed_id))


async def fetch_seed_offers(session) -> List[SeedOffer]:
    reply = await session.call(SHOP_SERVICE, "ShopInfo", {"shop_id": SEED_SHOP_ID})
    return seed_offers_from_shop(reply)


async def buy_seeds(session, game_state: GameState, offer: SeedOffer, count: int) -> int:
    """
    Buy seeds from the seed shop.

    Returns:
        Number of seeds bought (0 when the player cannot afford any)
    """
    gold = game_state.get_player().gold
    if offer.price > 0:
        count = min(count, gold // offer.price)
    if count <= 0:
        return 0

    await session.call(SHOP_SERVICE, "BuyGoods", {
        "goods_id": offer.goods_id,
        "num": count,
        "price": offer.price,
    })
    game_state.record_operation("buy", count)
    log("shop", f"Bought {count}x {offer.name} for {offer.price * count} gold")
    return count
