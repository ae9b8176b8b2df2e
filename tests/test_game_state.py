import threading
import unittest

from game_state import (
    GameState,
    InventoryItem,
    Land,
    LandStatus,
    OperationLimit,
    PendingTask,
    PhaseRecord,
    PlantInstance,
    PlayerState,
)
from utils.constants import PlantPhase

T0 = 1_700_000_000


def timeline_plant(*records, **kwargs):
    return PlantInstance(id=1, name="White Radish", phases=tuple(records), **kwargs)


class TestPhaseTimeline(unittest.TestCase):
    def setUp(self):
        self.plant = timeline_plant(
            PhaseRecord(PlantPhase.SEED, T0),
            PhaseRecord(PlantPhase.GERMINATION, T0 + 100),
            PhaseRecord(PlantPhase.MATURE, T0 + 600),
        )

    def test_before_first_record_is_unknown(self):
        self.assertEqual(self.plant.current_phase(T0 - 1), PlantPhase.UNKNOWN)

    def test_boundary_is_inclusive(self):
        self.assertEqual(self.plant.current_phase(T0), PlantPhase.SEED)
        self.assertEqual(self.plant.current_phase(T0 + 100), PlantPhase.GERMINATION)
        self.assertEqual(self.plant.current_phase(T0 + 600), PlantPhase.MATURE)

    def test_between_boundaries_uses_last_started_record(self):
        self.assertEqual(self.plant.current_phase(T0 + 99), PlantPhase.SEED)
        self.assertEqual(self.plant.current_phase(T0 + 599), PlantPhase.GERMINATION)
        self.assertEqual(self.plant.current_phase(T0 + 10_000), PlantPhase.MATURE)

    def test_records_are_sorted_by_begin_time(self):
        plant = timeline_plant(
            PhaseRecord(PlantPhase.MATURE, T0 + 600),
            PhaseRecord(PlantPhase.SEED, T0),
        )
        self.assertEqual([r.phase for r in plant.phases], [PlantPhase.SEED, PlantPhase.MATURE])

    def test_empty_timeline_is_unknown(self):
        self.assertEqual(timeline_plant().current_phase(T0), PlantPhase.UNKNOWN)


class TestHazards(unittest.TestCase):
    def test_dry_num_signals_water(self):
        plant = timeline_plant(PhaseRecord(PlantPhase.SEED, T0), dry_num=1)
        self.assertTrue(plant.needs_water(T0))

    def test_hazard_time_activates_at_boundary(self):
        plant = timeline_plant(PhaseRecord(PlantPhase.SEED, T0, dry_time=T0 + 50, weeds_time=T0 + 60, insect_time=T0 + 70))
        self.assertFalse(plant.needs_water(T0 + 49))
        self.assertTrue(plant.needs_water(T0 + 50))
        self.assertFalse(plant.has_weeds(T0 + 59))
        self.assertTrue(plant.has_weeds(T0 + 60))
        self.assertFalse(plant.has_insects(T0 + 69))
        self.assertTrue(plant.has_insects(T0 + 70))

    def test_zero_hazard_time_is_inactive(self):
        plant = timeline_plant(PhaseRecord(PlantPhase.SEED, T0))
        self.assertFalse(plant.needs_water(T0 + 10_000))
        self.assertFalse(plant.has_weeds(T0 + 10_000))
        self.assertFalse(plant.has_insects(T0 + 10_000))

    def test_owner_lists_signal_hazard(self):
        plant = timeline_plant(PhaseRecord(PlantPhase.SEED, T0), weed_owners=(7,), insect_owners=(8,))
        self.assertTrue(plant.has_weeds(T0))
        self.assertTrue(plant.has_insects(T0))


class TestLandStatus(unittest.TestCase):
    def test_statuses(self):
        mature = timeline_plant(PhaseRecord(PlantPhase.SEED, T0), PhaseRecord(PlantPhase.MATURE, T0 + 600))
        dead = timeline_plant(PhaseRecord(PlantPhase.DEAD, T0))
        self.assertEqual(Land(1, unlocked=False, plant=mature).status(T0 + 600), LandStatus.LOCKED)
        self.assertEqual(Land(1, unlocked=True).status(T0), LandStatus.EMPTY)
        self.assertEqual(Land(1, unlocked=True, plant=mature).status(T0 + 1), LandStatus.GROWING)
        self.assertEqual(Land(1, unlocked=True, plant=mature).status(T0 + 600), LandStatus.MATURE)
        self.assertEqual(Land(1, unlocked=True, plant=dead).status(T0), LandStatus.DEAD)


class TestDerivedValues(unittest.TestCase):
    def test_exp_progress_from_level_table(self):
        player = PlayerState(level=2, exp=40)
        self.assertEqual(player.exp_progress, {"current": 10, "needed": 60})

    def test_claimable_and_share_eligible(self):
        done = PendingTask(1, "harvest 5", 5, 5, is_claimed=False, is_unlocked=True, share_multiple=2)
        claimed = PendingTask(2, "plant 5", 5, 5, is_claimed=True, is_unlocked=True)
        running = PendingTask(3, "water 5", 2, 5, is_claimed=False, is_unlocked=True)
        locked = PendingTask(4, "sell 5", 5, 5, is_claimed=False, is_unlocked=False)
        self.assertTrue(done.claimable)
        self.assertTrue(done.share_eligible)
        self.assertFalse(claimed.claimable)
        self.assertFalse(running.claimable)
        self.assertFalse(locked.claimable)
        self.assertFalse(running.share_eligible)

    def test_operation_limit(self):
        self.assertTrue(OperationLimit(10007).can_operate())
        self.assertFalse(OperationLimit(10007, day_times=3, day_times_limit=3).can_operate())
        self.assertTrue(OperationLimit(10007, day_exp_times=1, day_exp_times_limit=3).exp_available())
        self.assertFalse(OperationLimit(10007, day_exp_times=3, day_exp_times_limit=3).exp_available())
        self.assertFalse(OperationLimit(10007).exp_available())


class TestGameState(unittest.TestCase):
    def setUp(self):
        self.state = GameState()

    def test_lands_replaced_wholesale_and_sorted(self):
        self.state.replace_lands([Land(3, True), Land(1, True), Land(2, False)])
        self.assertEqual([l.id for l in self.state.get_lands()], [1, 2, 3])
        self.state.update_lands([Land(2, True)])
        self.assertTrue(self.state.get_land(2).unlocked)
        self.state.replace_lands([Land(5, True)])
        self.assertEqual([l.id for l in self.state.get_lands()], [5])

    def test_bag_counts(self):
        self.state.replace_bag([InventoryItem(20002, 3), InventoryItem(20002, 2), InventoryItem(1011, 1)])
        self.assertEqual(self.state.get_item_count(20002), 5)
        self.state.set_item_count(1011, 0)
        self.assertEqual(self.state.get_item_count(1011), 0)
        self.assertEqual([i.id for i in self.state.get_bag()], [20002])

    def test_statistics_are_copies(self):
        self.state.increment_stat("messages_sent")
        stats = self.state.get_statistics()
        stats.messages_sent = 99
        self.assertEqual(self.state.get_statistics().messages_sent, 1)

    def test_concurrent_increments(self):
        def work():
            for _ in range(1000):
                self.state.increment_stat("messages_received")
                self.state.record_operation("harvest")

        threads = [threading.Thread(target=work) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(self.state.get_statistics().messages_received, 4000)
        self.assertEqual(self.state.get_operations()["harvest"], 4000)


if __name__ == "__main__":
    unittest.main()
