import os
import random
import tempfile
import unittest
from datetime import datetime, timedelta, timezone

import app as gym_app
import database
from replay.series import build_ticks
from replay.types import Candle
from synthetic_generators import write_candles_to_db, write_ticks_to_db

T0 = datetime(2024, 1, 2, 0, 0, tzinfo=timezone.utc)


class ReplayApiTests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self._old_db = database.DB_NAME
        database.DB_NAME = os.path.join(self._tmp.name, "test.db")
        database.init_database()
        gym_app._REPLAY_SESSIONS.clear()

        candles = [
            Candle(
                timestamp=T0 + timedelta(hours=i),
                open=50000.0 + 100 * i,
                high=50500.0 + 100 * i,
                low=49800.0 + 100 * i,
                close=50100.0 + 100 * i,
                volume=5.0,
            )
            for i in range(4)
        ]
        write_candles_to_db("BTCUSDT", "1h", candles)
        for i, c in enumerate(candles):
            write_ticks_to_db("BTCUSDT", "1h", c.timestamp, build_ticks(c, 3600, 10, rng=random.Random(i)))

        self.client = gym_app.app.test_client()

    def tearDown(self):
        gym_app._REPLAY_SESSIONS.clear()
        database.DB_NAME = self._old_db
        self._tmp.cleanup()

    def _start(self, user_id="alice", **extra):
        body = {"user_id": user_id, "asset": "btcusdt", "timeframe": "1h", "start_date": "2024-01-02T00:00:00Z"}
        body.update(extra)
        resp = self.client.post("/replay/start", json=body)
        self.assertEqual(resp.status_code, 200, resp.get_json())
        return resp.get_json()["session_id"]

    def test_start_validates_params(self):
        resp = self.client.post("/replay/start", json={"asset": "BTCUSDT"})
        self.assertEqual(resp.status_code, 400)
        err = resp.get_json()["error"]
        self.assertEqual(err["code"], "missing_params")
        self.assertIn("user_id", err["fields"])

        resp = self.client.post(
            "/replay/start", json={"user_id": "alice", "asset": "BTCUSDT", "timeframe": "1h", "start_date": "soon"}
        )
        self.assertEqual(resp.get_json()["error"]["code"], "invalid_start_date")

        resp = self.client.post("/replay/start", json={"user_id": "alice", "asset": "BTCUSDT", "timeframe": "9m"})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.get_json()["error"]["code"], "invalid_input")

    def test_start_without_data_is_404(self):
        resp = self.client.post("/replay/start", json={"user_id": "alice", "asset": "ETHUSDT", "timeframe": "1h"})
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.get_json()["error"]["code"], "not_found")

    def test_trading_flow(self):
        sid = self._start()
        ids = {"session_id": sid, "user_id": "alice"}

        state = self.client.get("/replay/state", query_string=ids).get_json()["state"]
        self.assertEqual(state["asset"], "BTCUSDT")
        self.assertEqual(state["current_price"], 50000.0)

        resp = self.client.post("/replay/position/open", json={**ids, "side": "buy", "size": 0.1})
        self.assertEqual(resp.status_code, 200)
        position_id = resp.get_json()["position"]["id"]

        resp = self.client.post("/replay/step", json={**ids, "steps": 3})
        self.assertEqual(resp.get_json()["result"]["steps_taken"], 3)
        self.assertEqual(resp.get_json()["state"]["cursor"]["tick_index"], 3)

        trades = self.client.get("/replay/trades", query_string=ids).get_json()
        self.assertEqual([p["id"] for p in trades["open"]], [position_id])
        self.assertIsNone(self.client.get("/replay/stats", query_string=ids).get_json()["stats"])

        resp = self.client.post("/replay/position/close", json={**ids, "position_id": position_id, "exit_price": 50100})
        closed = resp.get_json()["position"]
        self.assertEqual(closed["exit_reason"], "manual")
        self.assertAlmostEqual(closed["pnl"], 10.0)

        stats = self.client.get("/replay/stats", query_string=ids).get_json()
        self.assertEqual(stats["stats"]["total_trades"], 1)
        self.assertAlmostEqual(stats["balance"], 10010.0)

        resp = self.client.post("/replay/position/close", json={**ids, "position_id": position_id})
        self.assertEqual(resp.status_code, 404)

        resp = self.client.post("/replay/end", json=ids)
        self.assertEqual(resp.get_json()["ended"], sid)
        self.assertEqual(self.client.get("/replay/state", query_string=ids).status_code, 404)

        sessions = self.client.get("/replay/sessions", query_string={"user_id": "alice"}).get_json()["sessions"]
        self.assertEqual(sessions[0]["session_id"], sid)
        self.assertEqual(sessions[0]["status"], "ended")

    def test_invalid_order_is_400(self):
        sid = self._start()
        resp = self.client.post(
            "/replay/position/open", json={"session_id": sid, "user_id": "alice", "side": "hold", "size": 1}
        )
        self.assertEqual(resp.status_code, 400)
        resp = self.client.post(
            "/replay/position/open", json={"session_id": sid, "user_id": "alice", "side": "BUY", "size": -1}
        )
        self.assertEqual(resp.status_code, 400)
        resp = self.client.post("/replay/mode", json={"session_id": sid, "user_id": "alice", "mode": "turbo"})
        self.assertEqual(resp.status_code, 400)

    def test_sessions_are_private(self):
        sid = self._start(user_id="alice")
        resp = self.client.get("/replay/state", query_string={"session_id": sid, "user_id": "bob"})
        self.assertEqual(resp.status_code, 404)
        resp = self.client.post("/replay/resume", json={"session_id": sid, "user_id": "bob"})
        self.assertEqual(resp.status_code, 404)

    def test_skip_mode_and_history(self):
        sid = self._start()
        ids = {"session_id": sid, "user_id": "alice"}
        self.client.post("/replay/skip", json=ids)
        self.client.post("/replay/mode", json={**ids, "mode": "instant"})
        resp = self.client.post("/replay/step", json=ids)
        self.assertEqual(resp.get_json()["state"]["cursor"], {"candle_index": 2, "tick_index": 0, "mode": "instant"})

        hist = self.client.get("/replay/history", query_string=ids).get_json()
        self.assertEqual(len(hist["candles"]), 3)
        self.assertEqual(hist["candles"][0]["timestamp"], "2024-01-02T00:00:00Z")
        limited = self.client.get("/replay/history", query_string={**ids, "limit": 1}).get_json()
        self.assertEqual(len(limited["candles"]), 1)

    def test_resume_after_restart(self):
        sid = self._start()
        ids = {"session_id": sid, "user_id": "alice"}
        self.client.post("/replay/position/open", json={**ids, "side": "SELL", "size": 1, "stop_loss": 60000})
        self.client.post("/replay/skip", json=ids)

        gym_app._REPLAY_SESSIONS.clear()  # simulate a server restart
        resp = self.client.post("/replay/resume", json=ids)
        self.assertEqual(resp.status_code, 200)
        state = resp.get_json()["state"]
        self.assertEqual(state["cursor"]["candle_index"], 1)
        self.assertEqual(len(state["open_positions"]), 1)
        self.assertEqual(state["open_positions"][0]["stop_loss"], 60000.0)

    def test_date_range_and_available_data(self):
        info = self.client.get("/replay/date-range", query_string={"asset": "BTCUSDT", "timeframe": "1h"}).get_json()
        self.assertEqual(info["total_candles"], 4)
        self.assertEqual(info["max_date"], "2024-01-02T03:00:00Z")
        resp = self.client.get("/replay/date-range", query_string={"asset": "BTCUSDT", "timeframe": "1d"})
        self.assertEqual(resp.status_code, 404)

        avail = self.client.get("/replay/available-data", query_string={"asset": "btcusdt"}).get_json()
        self.assertEqual([t["timeframe"] for t in avail["timeframes"]], ["1h"])


if __name__ == "__main__":
    unittest.main()
