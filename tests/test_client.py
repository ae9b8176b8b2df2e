import asyncio
import unittest
from unittest.mock import MagicMock

from fakes import FakeGate, get_registry, login_reply, make_config, push_frame, response_frame
from game_state import GameState
from network.client import FarmSession, SessionState
from network.protocol import (
    ConnectionLostError,
    LoginError,
    NotReadyError,
    RequestTimeoutError,
    ServerError,
)
from utils.constants import ITEM_SERVICE, PLANT_SERVICE


async def started_session(handlers=None, **config_overrides):
    registry = get_registry()
    gate = FakeGate(registry, {"Login": login_reply(), **(handlers or {})})
    settings = {"request_timeout": 0.5, "heartbeat_interval": 3600}
    settings.update(config_overrides)
    session = FarmSession(registry, make_config(**settings), GameState(), connector=gate.connect)
    await session.start("abcdef123456")
    return session, gate


class TestLogin(unittest.TestCase):
    def test_login_success(self):
        async def scenario():
            session, gate = await started_session()
            try:
                self.assertEqual(session.state, SessionState.READY)
                self.assertEqual(session.login_result.gid, 1000)
                self.assertEqual(session.login_result.gold, 500)
                self.assertEqual(session.game_state.get_player().name, "farmer")
                self.assertIn("code=abcdef123456", gate.connect_urls[0])
                self.assertIn("platform=qq", gate.connect_urls[0])
                method, seq, body = gate.requests[0]
                self.assertEqual((method, seq), ("Login", 1))
                self.assertEqual(body.device_info.client_version, session.config.client_version)
            finally:
                await session.close()

        asyncio.run(scenario())

    def test_login_rejected(self):
        async def scenario():
            registry = get_registry()
            gate = FakeGate(registry, {"Login": (1001, "bad code")})
            session = FarmSession(registry, make_config(request_timeout=0.5), connector=gate.connect)
            with self.assertRaises(LoginError):
                await session.start("expired")
            self.assertEqual(session.state, SessionState.DISCONNECTED)

        asyncio.run(scenario())

    def test_login_timeout(self):
        async def scenario():
            registry = get_registry()
            gate = FakeGate(registry, {})
            session = FarmSession(registry, make_config(request_timeout=0.05), connector=gate.connect)
            with self.assertRaises(LoginError):
                await session.start("slow")
            self.assertEqual(session.state, SessionState.DISCONNECTED)

        asyncio.run(scenario())

    def test_login_without_player_info(self):
        async def scenario():
            registry = get_registry()
            gate = FakeGate(registry, {"Login": {"time_now_millis": 1}})
            session = FarmSession(registry, make_config(request_timeout=0.5), connector=gate.connect)
            with self.assertRaises(LoginError):
                await session.start("code")

        asyncio.run(scenario())

    def test_connect_failure(self):
        async def scenario():
            async def refuse(url, **kwargs):
                raise OSError("connection refused")

            session = FarmSession(get_registry(), make_config(), connector=refuse)
            with self.assertRaises(LoginError):
                await session.start("code")
            self.assertEqual(session.state, SessionState.DISCONNECTED)

        asyncio.run(scenario())

    def test_call_before_ready(self):
        async def scenario():
            session = FarmSession(get_registry(), make_config())
            with self.assertRaises(NotReadyError):
                await session.call(PLANT_SERVICE, "AllLands", {})

        asyncio.run(scenario())


class TestCorrelation(unittest.TestCase):
    def test_reply_resolves_only_matching_sequence(self):
        async def scenario():
            session, gate = await started_session()
            registry = get_registry()
            try:
                lands_call = asyncio.create_task(session.call(PLANT_SERVICE, "AllLands", {}, timeout=2))
                bag_call = asyncio.create_task(session.call(ITEM_SERVICE, "Bag", {}, timeout=2))
                await asyncio.sleep(0.01)
                seq_lands = gate.requests[-2][1]
                seq_bag = gate.requests[-1][1]
                self.assertEqual(seq_bag, seq_lands + 1)

                gate.websocket.feed(response_frame(
                    registry, ITEM_SERVICE, "Bag", seq_bag, {"item_bag": {"items": [{"id": 1001, "count": 5}]}}
                ))
                bag = await bag_call
                self.assertEqual(bag.item_bag.items[0].count, 5)
                self.assertFalse(lands_call.done())

                gate.websocket.feed(response_frame(
                    registry, PLANT_SERVICE, "AllLands", seq_lands, {"lands": [{"id": 1, "unlocked": True}]}
                ))
                lands = await lands_call
                self.assertEqual(lands.lands[0].id, 1)
            finally:
                await session.close()

        asyncio.run(scenario())

    def test_unmatched_and_duplicate_frames_are_dropped(self):
        async def scenario():
            session, gate = await started_session({"Bag": {}})
            registry = get_registry()
            try:
                await session.call(ITEM_SERVICE, "Bag", {})
                seq = gate.requests[-1][1]
                gate.websocket.feed(response_frame(registry, ITEM_SERVICE, "Bag", seq))
                gate.websocket.feed(response_frame(registry, ITEM_SERVICE, "Bag", 999))
                await asyncio.sleep(0.02)
                self.assertEqual(session.game_state.get_statistics().unmatched_frames, 2)
                self.assertEqual(session.state, SessionState.READY)
            finally:
                await session.close()

        asyncio.run(scenario())

    def test_server_error_code(self):
        async def scenario():
            session, _gate = await started_session({"Harvest": (1000020, "already harvested")})
            try:
                with self.assertRaises(ServerError) as ctx:
                    await session.call(PLANT_SERVICE, "Harvest", {"land_ids": [1]})
                self.assertEqual(ctx.exception.code, 1000020)
                self.assertEqual(session.state, SessionState.READY)
            finally:
                await session.close()

        asyncio.run(scenario())

    def test_request_timeout(self):
        async def scenario():
            session, _gate = await started_session()
            try:
                with self.assertRaises(RequestTimeoutError):
                    await session.call(PLANT_SERVICE, "AllLands", {}, timeout=0.02)
                self.assertEqual(session.pending_count, 0)
            finally:
                await session.close()

        asyncio.run(scenario())


class TestHeartbeat(unittest.TestCase):
    def test_two_missed_heartbeats_disconnect(self):
        async def scenario():
            session, gate = await started_session(heartbeat_interval=0.01, request_timeout=0.05)
            disconnects = []
            session.on("disconnect", disconnects.append)
            pending = asyncio.create_task(session.call(PLANT_SERVICE, "AllLands", {}, timeout=5))

            await asyncio.wait_for(session.wait_closed(), timeout=2)
            self.assertEqual(session.state, SessionState.DISCONNECTED)
            self.assertEqual(gate.methods().count("Heartbeat"), 2)
            with self.assertRaises(ConnectionLostError):
                await pending
            self.assertEqual(len(disconnects), 1)
            self.assertEqual(session.pending_count, 0)
            await session.close()
            self.assertEqual(len(disconnects), 1)

        asyncio.run(scenario())

    def test_answered_heartbeat_keeps_session(self):
        async def scenario():
            session, gate = await started_session(
                {"Heartbeat": {"server_time": 1_700_000_000_000}},
                heartbeat_interval=0.01,
                request_timeout=0.05,
            )
            try:
                await asyncio.sleep(0.2)
                self.assertEqual(session.state, SessionState.READY)
                self.assertGreaterEqual(session.game_state.get_statistics().heartbeats_acked, 2)
            finally:
                await session.close()

        asyncio.run(scenario())

    def test_heartbeat_error_reply_counts_as_ack(self):
        async def scenario():
            session, _gate = await started_session(
                {"Heartbeat": (500, "busy")}, heartbeat_interval=0.01, request_timeout=0.05
            )
            try:
                await asyncio.sleep(0.2)
                self.assertEqual(session.state, SessionState.READY)
            finally:
                await session.close()

        asyncio.run(scenario())


class TestPushAndClosure(unittest.TestCase):
    def test_lands_push_updates_world_model_and_listeners(self):
        async def scenario():
            session, gate = await started_session()
            registry = get_registry()
            received = []
            async_received = []

            async def async_listener(message):
                async_received.append(message)

            failing = MagicMock(side_effect=RuntimeError("observer broke"))
            session.on("landsChanged", failing)
            session.on("landsChanged", received.append)
            session.on("landsChanged", async_listener)
            try:
                gate.websocket.feed(push_frame(
                    registry,
                    "gamepb.plantpb.LandsNotify",
                    {"lands": [{"id": 3, "unlocked": True}], "host_gid": 1000},
                    prefix="type.googleapis.com/",
                ))
                await asyncio.sleep(0.02)
                self.assertEqual(len(received), 1)
                self.assertEqual(len(async_received), 1)
                failing.assert_called_once()
                self.assertTrue(session.game_state.get_land(3).unlocked)
                self.assertEqual(session.state, SessionState.READY)
            finally:
                await session.close()

        asyncio.run(scenario())

    def test_friend_lands_push_does_not_touch_own_lands(self):
        async def scenario():
            session, gate = await started_session()
            try:
                gate.websocket.feed(push_frame(
                    get_registry(),
                    "gamepb.plantpb.LandsNotify",
                    {"lands": [{"id": 3, "unlocked": True}], "host_gid": 2000},
                ))
                await asyncio.sleep(0.02)
                self.assertIsNone(session.game_state.get_land(3))
            finally:
                await session.close()

        asyncio.run(scenario())

    def test_kickout_disconnects(self):
        async def scenario():
            session, gate = await started_session()
            reasons = []
            session.on("disconnect", reasons.append)
            gate.websocket.feed(push_frame(
                get_registry(), "gatepb.KickoutNotify", {"reason": 1, "reason_message": "logged in elsewhere"}
            ))
            await asyncio.wait_for(session.wait_closed(), timeout=1)
            self.assertEqual(session.state, SessionState.DISCONNECTED)
            self.assertIn("logged in elsewhere", reasons[0])
            await session.close()

        asyncio.run(scenario())

    def test_socket_closure_fails_pending_requests(self):
        async def scenario():
            session, gate = await started_session()
            disconnects = []
            session.on("disconnect", disconnects.append)
            pending = asyncio.create_task(session.call(PLANT_SERVICE, "AllLands", {}, timeout=5))
            await asyncio.sleep(0.01)
            await gate.websocket.close()
            with self.assertRaises(ConnectionLostError):
                await pending
            self.assertEqual(session.state, SessionState.DISCONNECTED)
            self.assertEqual(len(disconnects), 1)
            with self.assertRaises(NotReadyError):
                await session.call(PLANT_SERVICE, "AllLands", {})
            await session.close()

        asyncio.run(scenario())


if __name__ == "__main__":
    unittest.main()
