import logging
import threading
from typing import Any, Dict, Optional

from flask import Flask, jsonify, request

from config import settings, setup_logging
from database import init_database
from replay.errors import InvalidInputError, NotFoundError, ReplayError
from replay.events import _parse_iso
from replay.market import SqliteMarketData
from replay.session import ReplaySession, ReplaySessionConfig, SqlitePersistence
from replay.store import SessionStore
from replay.types import ReplayMode

app = Flask(__name__)
logger = logging.getLogger("replay.app")

setup_logging()

# Initialize database on startup
init_database()

# Live sessions by id. Stored rows survive restarts; use /replay/resume to reload one.
_REPLAY_SESSIONS: Dict[str, ReplaySession] = {}
_REPLAY_LOCK = threading.Lock()


def _bad_request(code: str, message: str, **extra):
    payload = {"error": {"code": code, "message": message}}
    if extra:
        payload["error"].update(extra)
    return jsonify(payload), 400


def _not_found(code: str, message: str):
    return jsonify({"error": {"code": code, "message": message}}), 404


@app.errorhandler(InvalidInputError)
def _handle_invalid_input(err: InvalidInputError):
    return _bad_request("invalid_input", str(err))


@app.errorhandler(NotFoundError)
def _handle_not_found(err: NotFoundError):
    return _not_found("not_found", str(err))


@app.errorhandler(ReplayError)
def _handle_replay_error(err: ReplayError):
    return _bad_request("replay_error", str(err))


def _params() -> Dict[str, Any]:
    """JSON body for POST, query string for GET; JSON wins on overlap."""
    out: Dict[str, Any] = dict(request.args.items())
    body = request.get_json(silent=True)
    if isinstance(body, dict):
        out.update(body)
    return out


def _str(params: Dict[str, Any], key: str) -> str:
    return str(params.get(key) or "").strip()


def _get_replay_session(session_id: str, user_id: str) -> ReplaySession:
    sid = (session_id or "").strip()
    with _REPLAY_LOCK:
        sess = _REPLAY_SESSIONS.get(sid) if sid else None
    # Someone else's session looks exactly like a missing one.
    if sess is None or sess.cfg.user_id != user_id:
        raise NotFoundError(f"session {sid or '?'} not found")
    return sess


def _session_from_request(params: Dict[str, Any]):
    session_id = _str(params, "session_id")
    user_id = _str(params, "user_id")
    missing = [k for k, v in (("session_id", session_id), ("user_id", user_id)) if not v]
    if missing:
        return None, _bad_request("missing_params", f"{', '.join(missing)} required", fields=missing)
    return _get_replay_session(session_id, user_id), None


def _optional_int(params: Dict[str, Any], key: str) -> Optional[int]:
    raw = params.get(key)
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise InvalidInputError(f"{key} must be an integer, got {raw!r}") from None


@app.route("/replay/start", methods=["POST"])
def replay_start():
    params = _params()
    user_id = _str(params, "user_id")
    asset = _str(params, "asset").upper()
    timeframe = _str(params, "timeframe")
    missing = [k for k, v in (("user_id", user_id), ("asset", asset), ("timeframe", timeframe)) if not v]
    if missing:
        return _bad_request("missing_params", f"{', '.join(missing)} required", fields=missing)

    start_raw = _str(params, "start_date")
    start_date = None
    if start_raw:
        try:
            start_date = _parse_iso(start_raw)
        except ValueError:
            return _bad_request("invalid_start_date", "start_date must be ISO-8601 (e.g. 2024-01-02T00:00:00Z)")

    balance_raw = params.get("initial_balance")
    try:
        initial_balance = float(balance_raw) if balance_raw not in (None, "") else settings.initial_balance
    except (TypeError, ValueError):
        return _bad_request("invalid_initial_balance", "initial_balance must be a number")

    synthesize = params.get("synthesize_ticks")
    cfg = ReplaySessionConfig(
        user_id=user_id,
        asset=asset,
        timeframe=timeframe,
        start_date=start_date,
        initial_balance=initial_balance,
        mode=ReplayMode.parse(params.get("mode") or ReplayMode.PROGRESSIVE),
        seed=_optional_int(params, "seed"),
        synthesize_ticks=settings.synthesize_ticks if synthesize is None else str(synthesize).lower() in ("1", "true", "yes"),
    )
    sess = ReplaySession.create(cfg, persistence=SqlitePersistence())
    with _REPLAY_LOCK:
        _REPLAY_SESSIONS[sess.session_id] = sess
    return jsonify({"session_id": sess.session_id, "state": sess.get_state_payload()})


@app.route("/replay/resume", methods=["POST"])
def replay_resume():
    params = _params()
    session_id = _str(params, "session_id")
    user_id = _str(params, "user_id")
    if not session_id or not user_id:
        return _bad_request("missing_params", "session_id and user_id are required")

    with _REPLAY_LOCK:
        live = _REPLAY_SESSIONS.get(session_id)
    if live is None:
        rec = SessionStore().load_session(session_id)
        if rec.user_id != user_id:
            return _not_found("not_found", f"session {session_id} not found")
        resumed = ReplaySession.resume(session_id)
        with _REPLAY_LOCK:
            live = _REPLAY_SESSIONS.setdefault(session_id, resumed)
    elif live.cfg.user_id != user_id:
        return _not_found("not_found", f"session {session_id} not found")
    return jsonify({"session_id": session_id, "state": live.get_state_payload()})


@app.route("/replay/step", methods=["POST"])
def replay_step():
    params = _params()
    sess, err = _session_from_request(params)
    if err:
        return err
    steps = _optional_int(params, "steps") or 1
    result = sess.step(steps=steps)
    return jsonify({"result": result.to_dict(), "state": sess.get_state_payload()})


@app.route("/replay/skip", methods=["POST"])
def replay_skip():
    sess, err = _session_from_request(_params())
    if err:
        return err
    result = sess.skip_candle()
    return jsonify({"result": result.to_dict(), "state": sess.get_state_payload()})


@app.route("/replay/mode", methods=["POST"])
def replay_mode():
    params = _params()
    sess, err = _session_from_request(params)
    if err:
        return err
    if not _str(params, "mode"):
        return _bad_request("missing_params", "mode is required", fields=["mode"])
    sess.set_mode(params.get("mode"))
    return jsonify({"state": sess.get_state_payload()})


@app.route("/replay/position/open", methods=["POST"])
def replay_position_open():
    params = _params()
    sess, err = _session_from_request(params)
    if err:
        return err
    if not _str(params, "side") or params.get("size") in (None, ""):
        return _bad_request("missing_params", "side and size are required", fields=["side", "size"])
    pos = sess.open_position(
        params.get("side"),
        params.get("size"),
        stop_loss=params.get("stop_loss"),
        take_profit=params.get("take_profit"),
        entry_price=params.get("entry_price"),
    )
    return jsonify({"position": pos.to_dict(), "state": sess.get_state_payload()})


@app.route("/replay/position/close", methods=["POST"])
def replay_position_close():
    params = _params()
    sess, err = _session_from_request(params)
    if err:
        return err
    position_id = _str(params, "position_id")
    if not position_id:
        return _bad_request("missing_position_id", "position_id is required")
    closed = sess.close_position(position_id, exit_price=params.get("exit_price"))
    return jsonify({"position": closed.to_dict(), "state": sess.get_state_payload()})


@app.route("/replay/state", methods=["GET"])
def replay_state():
    sess, err = _session_from_request(_params())
    if err:
        return err
    return jsonify({"state": sess.get_state_payload()})


@app.route("/replay/history", methods=["GET"])
def replay_history():
    params = _params()
    sess, err = _session_from_request(params)
    if err:
        return err
    bars = sess.get_visible_history()
    limit = _optional_int(params, "limit")
    if limit is not None and limit > 0:
        bars = bars[-limit:]
    return jsonify({"candles": [b.to_dict() for b in bars], "current_price": sess.get_current_price()})


@app.route("/replay/trades", methods=["GET"])
def replay_trades():
    sess, err = _session_from_request(_params())
    if err:
        return err
    return jsonify(
        {
            "open": [p.to_dict() for p in sess.get_open_positions()],
            "closed": [c.to_dict() for c in sess.get_closed_positions()],
            "balance": sess.get_balance(),
        }
    )


@app.route("/replay/stats", methods=["GET"])
def replay_stats():
    sess, err = _session_from_request(_params())
    if err:
        return err
    return jsonify({"stats": sess.get_stats(), "balance": sess.get_balance()})


@app.route("/replay/end", methods=["POST"])
def replay_end():
    params = _params()
    sess, err = _session_from_request(params)
    if err:
        return err
    summary = sess.end()
    with _REPLAY_LOCK:
        _REPLAY_SESSIONS.pop(sess.session_id, None)
    return jsonify({"ended": sess.session_id, "summary": summary})


@app.route("/replay/sessions", methods=["GET"])
def replay_sessions():
    params = _params()
    user_id = _str(params, "user_id")
    if not user_id:
        return _bad_request("missing_params", "user_id is required", fields=["user_id"])
    limit = _optional_int(params, "limit") or 50
    rows = SessionStore().list_sessions(user_id, limit=limit)
    return jsonify({"sessions": [r.to_dict() for r in rows]})


@app.route("/replay/date-range", methods=["GET"])
def replay_date_range():
    params = _params()
    asset = _str(params, "asset").upper()
    timeframe = _str(params, "timeframe")
    if not asset or not timeframe:
        return _bad_request("missing_params", "asset and timeframe are required", fields=["asset", "timeframe"])
    info = SqliteMarketData().date_range(asset, timeframe)
    if info["total_candles"] == 0:
        return _not_found("no_data", f"no candles for {asset} {timeframe}")
    return jsonify({"asset": asset, "timeframe": timeframe, **info})


@app.route("/replay/available-data", methods=["GET"])
def replay_available_data():
    asset = _str(_params(), "asset").upper()
    if not asset:
        return _bad_request("missing_params", "asset is required", fields=["asset"])
    return jsonify({"asset": asset, "timeframes": SqliteMarketData().available_data(asset)})


if __name__ == "__main__":
    print("=" * 70)
    print("Starting trading gym replay server...")
    print("=" * 70)
    print("Available routes:")
    with app.app_context():
        for rule in app.url_map.iter_rules():
            methods = ", ".join([m for m in rule.methods if m not in ["HEAD", "OPTIONS"]])
            print(f"  {methods:20} {rule}")
    print("=" * 70)
    print("\nServer running at: http://127.0.0.1:5000")
    print("=" * 70)
    print()
    app.run(debug=True, host="127.0.0.1", port=5000)
