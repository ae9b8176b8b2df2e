"""
Warehouse automation for the farm bot.

Sells harvested fruit above a minimum quantity on a fixed interval.
"""

from typing import List

from config import WarehouseConfig
from game_state import GameState, InventoryItem
from automation.scheduler import PatrolLoop, refresh_bag
from utils.constants import GOLD_ITEM_ID, ITEM_SERVICE
from utils.game_config import get_crop_by_fruit, is_fruit
from utils.helpers import to_num
from utils.logger import log


class WarehouseScheduler(PatrolLoop):
    """Sell loop: first run after a short delay, then every sell interval."""

    name = "warehouse"

    def __init__(self, session, game_state: GameState, config: WarehouseConfig):
        super().__init__(
            session,
            game_state,
            config.sell_interval_seconds,
            initial_delay=config.initial_delay_seconds,
        )
        self.config = config

    def sellable(self) -> List[InventoryItem]:
        """Fruit lines from the bag, reduced to the excess over min_keep."""
        lines = []
        for item in self.game_state.get_bag():
            if not is_fruit(item.id):
                continue
            excess = item.count - self.config.min_keep
            if excess > 0:
                lines.append(InventoryItem(item.id, excess))
        return lines

    async def run_cycle(self):
        await self.inspect(sell=True)

    async def inspect(self, sell: bool = False) -> List[InventoryItem]:
        """
        Refresh the bag, log it, and optionally sell the excess fruit.

        Used by the sell loop and as a manual trigger for tooling.

        Args:
            sell: Sell the sellable lines instead of only reporting them

        Returns:
            The sellable lines found
        """
        await refresh_bag(self.session, self.game_state)
        lines = self.sellable()

        if not sell:
            bag = self.game_state.get_bag()
            log(self.name, f"Bag: {len(bag)} item kind(s), {len(lines)} sellable")
            for item in lines:
                crop = get_crop_by_fruit(item.id)
                log(self.name, f"  {crop.name if crop else item.id}: {item.count} sellable")
            return lines

        if not lines:
            return lines

        reply = await self.session.call(ITEM_SERVICE, "Sell", {
            "items": [{"id": item.id, "count": item.count} for item in lines],
        })
        gold = sum(to_num(item.count) for item in reply.get_items if to_num(item.id) == GOLD_ITEM_ID)
        self.game_state.record_operation("sell", len(lines))
        log(self.name, f"Sold {sum(item.count for item in lines)} fruit(s) in {len(lines)} line(s) for {gold} gold")

        await refresh_bag(self.session, self.game_state)
        return lines
