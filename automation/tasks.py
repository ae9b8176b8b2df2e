"""
Task reward automation for the farm bot.

Polls task state and claims rewards for completed tasks.
"""

from typing import List

from config import TaskConfig
from game_state import GameState, PendingTask
from network.codec import CodecRegistryError
from network.protocol import (
    ConnectionLostError,
    FarmClientError,
    NotReadyError,
    item_from_proto,
    process_task_info,
)
from automation.scheduler import PatrolLoop
from utils.constants import TASK_SERVICE
from utils.logger import log, log_warn


class TaskScheduler(PatrolLoop):
    """Task patrol loop; taskInfoChanged pushes trigger an early cycle."""

    name = "tasks"

    def __init__(self, session, game_state: GameState, config: TaskConfig):
        super().__init__(session, game_state, config.interval_seconds)
        self.config = config
        session.on("taskInfoChanged", self._on_task_info)

    def detach(self):
        self.session.off("taskInfoChanged", self._on_task_info)

    def _on_task_info(self, message):
        if any(task.claimable for task in self.game_state.get_tasks()):
            self.wake()

    async def run_cycle(self):
        reply = await self.session.call(TASK_SERVICE, "TaskInfo", {})
        tasks = process_task_info(reply.task_info, self.game_state)

        claimed = 0
        for task in tasks:
            if not task.claimable:
                continue
            try:
                await self.claim(task)
                claimed += 1
            except (ConnectionLostError, NotReadyError):
                raise
            except (FarmClientError, CodecRegistryError) as e:
                log_warn(self.name, f"task {task.id} ({task.desc}): {e}")

        if claimed:
            # Refresh so the World Model reflects the claimed flags
            reply = await self.session.call(TASK_SERVICE, "TaskInfo", {})
            process_task_info(reply.task_info, self.game_state)

    async def claim(self, task: PendingTask) -> List[str]:
        """
        Claim one task's reward, sharing it when the task allows a multiplier.

        Returns:
            Reward lines like "1001x200"
        """
        do_shared = self.config.share_rewards and task.share_eligible
        reply = await self.session.call(TASK_SERVICE, "ClaimTaskReward", {"id": task.id, "do_shared": do_shared})
        self.game_state.record_operation("task_claim")

        items = [item_from_proto(item) for item in reply.items]
        rewards = [f"{item.id}x{item.count}" for item in items]
        suffix = f" (shared x{task.share_multiple})" if do_shared else ""
        log(self.name, f"Claimed {task.desc or task.id}: {', '.join(rewards) or 'no items'}{suffix}")
        return rewards
