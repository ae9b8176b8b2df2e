import asyncio
import unittest
from dataclasses import replace
from unittest.mock import MagicMock

from automation.tasks import TaskScheduler
from fakes import FakeSession, get_registry, make_config
from game_state import GameState, PendingTask
from network.protocol import ServerError


def task(task_id, progress=5, total=5, claimed=False, unlocked=True, share_multiple=0, desc=""):
    return {
        "id": task_id,
        "desc": desc or f"task {task_id}",
        "progress": progress,
        "total_progress": total,
        "is_claimed": claimed,
        "is_unlocked": unlocked,
        "share_multiple": share_multiple,
    }


class TaskBoard:
    """Server-side task list; claiming marks the task claimed."""

    def __init__(self, tasks, failing=()):
        self.tasks = {t["id"]: t for t in tasks}
        self.failing = set(failing)
        self.session = FakeSession(get_registry(), {
            "TaskInfo": lambda body: {"task_info": {"daily_tasks": list(self.tasks.values())}},
            "ClaimTaskReward": self._claim,
        })

    def _claim(self, body):
        if body["id"] in self.failing:
            return ServerError(1003, "reward already claimed")
        self.tasks[body["id"]]["is_claimed"] = True
        return {"items": [{"id": 1001, "count": 200}]}


def make_scheduler(board, **task_overrides):
    game_state = GameState()
    config = replace(make_config().task, **task_overrides)
    return TaskScheduler(board.session, game_state, config), game_state


class TestTaskScheduler(unittest.TestCase):
    def test_claims_only_claimable_tasks(self):
        board = TaskBoard([task(1), task(2, progress=3), task(3, claimed=True), task(4, unlocked=False)])
        scheduler, game_state = make_scheduler(board)
        asyncio.run(scheduler.run_cycle())

        self.assertEqual(board.session.bodies("ClaimTaskReward"), [{"id": 1, "do_shared": False}])
        self.assertEqual(board.session.methods().count("TaskInfo"), 2)
        self.assertTrue(all(not t.claimable for t in game_state.get_tasks()))
        self.assertEqual(game_state.get_operations()["task_claim"], 1)

    def test_shares_reward_when_multiplier_offered(self):
        board = TaskBoard([task(1, share_multiple=2)])
        scheduler, _ = make_scheduler(board)
        asyncio.run(scheduler.run_cycle())
        self.assertEqual(board.session.bodies("ClaimTaskReward"), [{"id": 1, "do_shared": True}])

    def test_sharing_disabled(self):
        board = TaskBoard([task(1, share_multiple=2)])
        scheduler, _ = make_scheduler(board, share_rewards=False)
        asyncio.run(scheduler.run_cycle())
        self.assertEqual(board.session.bodies("ClaimTaskReward"), [{"id": 1, "do_shared": False}])

    def test_failed_claim_is_skipped(self):
        board = TaskBoard([task(1), task(2)], failing=[1])
        scheduler, game_state = make_scheduler(board)
        asyncio.run(scheduler.run_cycle())
        claimed = [body["id"] for body in board.session.bodies("ClaimTaskReward")]
        self.assertEqual(claimed, [1, 2])
        self.assertEqual(game_state.get_operations()["task_claim"], 1)

    def test_nothing_to_claim_makes_one_request(self):
        board = TaskBoard([task(1, progress=0)])
        scheduler, _ = make_scheduler(board)
        asyncio.run(scheduler.run_cycle())
        self.assertEqual(board.session.methods(), ["TaskInfo"])

    def test_task_push_wakes_loop_when_claimable(self):
        board = TaskBoard([])
        scheduler, game_state = make_scheduler(board)
        scheduler.wake = MagicMock()

        game_state.replace_tasks([PendingTask(1, "harvest", 1, 5, is_claimed=False, is_unlocked=True)])
        board.session.emit("taskInfoChanged", None)
        scheduler.wake.assert_not_called()

        game_state.replace_tasks([PendingTask(1, "harvest", 5, 5, is_claimed=False, is_unlocked=True)])
        board.session.emit("taskInfoChanged", None)
        scheduler.wake.assert_called_once()


if __name__ == "__main__":
    unittest.main()
