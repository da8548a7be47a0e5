"""Tests for the Aster gateway: HMAC signing, order params, listenKey stream
translation (depth, ticker, klines, account and order updates)."""
import hashlib
import hmac
import urllib.parse
from unittest.mock import AsyncMock

import orjson
import pytest

from core.errors import ConfigurationError, UpstreamRejection
from core.types import AccountSnapshot, CreateOrderParams, OrderSide, OrderType, Position
from exchanges.aster import AsterCredentials, AsterExchangeAdapter, AsterGateway, build_order_params
from exchanges.gateway import EventKind, HttpReply


def _gateway() -> AsterGateway:
    return AsterGateway("key", "secret")


# ── Order params ────────────────────────────────────────────────────────

class TestBuildOrderParams:
    def test_limit_defaults_gtc(self):
        p = build_order_params(CreateOrderParams("BTCUSDT", OrderSide.BUY, OrderType.LIMIT,
                                                 quantity=0.01, price=65000.0))
        assert p == {"symbol": "BTCUSDT", "side": "BUY", "type": "LIMIT",
                     "quantity": "0.01", "price": "65000", "timeInForce": "GTC"}

    def test_market_has_no_tif(self):
        p = build_order_params(CreateOrderParams("BTCUSDT", OrderSide.SELL, OrderType.MARKET,
                                                 quantity="0.5"))
        assert "timeInForce" not in p
        assert "price" not in p

    def test_close_position_drops_quantity(self):
        p = build_order_params(CreateOrderParams("BTCUSDT", OrderSide.SELL, OrderType.STOP_MARKET,
                                                 quantity=1, stop_price=60000,
                                                 close_position=True))
        assert p["closePosition"] == "true"
        assert p["stopPrice"] == "60000"
        assert "quantity" not in p

    def test_trailing_stop(self):
        p = build_order_params(CreateOrderParams(
            "BTCUSDT", OrderSide.SELL, OrderType.TRAILING_STOP_MARKET, quantity=1,
            activation_price=70000, callback_rate=0.5, reduce_only=True))
        assert p["activationPrice"] == "70000"
        assert p["callbackRate"] == "0.5"
        assert p["reduceOnly"] == "true"


# ── Auth ────────────────────────────────────────────────────────────────

class TestAsterAuth:
    def test_sign_matches_hmac(self):
        gw = _gateway()
        params = {"symbol": "BTCUSDT", "timestamp": "1000"}
        expected = hmac.new(b"secret", urllib.parse.urlencode(params).encode(),
                            hashlib.sha256).hexdigest()
        assert gw._sign(params) == expected

    def test_signed_params(self):
        params = _gateway()._signed_params({"symbol": "BTCUSDT"})
        assert params["recvWindow"] == "5000"
        assert "timestamp" in params
        assert len(params["signature"]) == 64

    def test_auth_headers(self):
        assert _gateway()._auth_headers() == {"X-MBX-APIKEY": "key"}

    def test_secret_hidden(self):
        assert "topsecret" not in repr(AsterCredentials("k", "topsecret"))

    @pytest.mark.asyncio
    async def test_missing_credentials_fail_before_network(self):
        gw = AsterGateway()
        gw._send = AsyncMock()
        with pytest.raises(ConfigurationError):
            await gw.get_account_info()
        gw._send.assert_not_called()


# ── REST ────────────────────────────────────────────────────────────────

class TestAsterRest:
    @pytest.mark.asyncio
    async def test_error_code_in_body(self):
        gw = _gateway()
        gw._send = AsyncMock(return_value=HttpReply(200, {"code": -2011, "msg": "Unknown order sent."}))
        with pytest.raises(UpstreamRejection) as exc:
            await gw.cancel_order("BTCUSDT", 1)
        assert exc.value.code == -2011

    @pytest.mark.asyncio
    async def test_create_order(self):
        gw = _gateway()
        gw._send = AsyncMock(return_value=HttpReply(200, {
            "orderId": 123, "symbol": "BTCUSDT", "side": "BUY", "type": "LIMIT",
            "status": "NEW", "price": "65000", "origQty": "0.01",
        }))
        order = await gw.create_order(CreateOrderParams("BTCUSDT", OrderSide.BUY, OrderType.LIMIT,
                                                        quantity=0.01, price=65000))
        method, path, _ = gw._send.call_args.args
        params = gw._send.call_args.kwargs["params"]
        assert (method, path) == ("POST", "/fapi/v1/order")
        assert params["quantity"] == "0.01"
        assert "signature" in params
        assert order.order_id == "123"
        assert order.is_active

    @pytest.mark.asyncio
    async def test_batch_cancel_encodes_ids(self):
        gw = _gateway()
        gw._send = AsyncMock(return_value=HttpReply(200, [{"orderId": 1}, {"code": -2011, "msg": "x"}]))
        await gw.cancel_orders("BTCUSDT", ["1", 2])
        params = gw._send.call_args.kwargs["params"]
        assert orjson.loads(params["orderIdList"]) == [1, 2]

    @pytest.mark.asyncio
    async def test_open_orders(self):
        gw = _gateway()
        gw._send = AsyncMock(return_value=HttpReply(200, [
            {"orderId": 5, "symbol": "BTCUSDT", "side": "SELL", "type": "LIMIT", "status": "NEW"},
        ]))
        orders = await gw.get_open_orders("BTCUSDT")
        assert [o.order_id for o in orders] == ["5"]
        assert "5" in gw._open_orders


# ── WebSocket translation ───────────────────────────────────────────────

class TestAsterStreams:
    def test_stream_names(self):
        gw = _gateway()
        assert gw._stream_name(EventKind.DEPTH, "BTCUSDT", None) == "btcusdt@depth10@100ms"
        assert gw._stream_name(EventKind.TICKER, "BTCUSDT", None) == "btcusdt@ticker"
        assert gw._stream_name(EventKind.KLINES, "BTCUSDT", "1m") == "btcusdt@kline_1m"
        assert gw._stream_name(EventKind.ACCOUNT, None, None) is None

    def test_subscribe_ids_increment(self):
        gw = _gateway()
        a = gw._subscription_message(EventKind.DEPTH, "BTCUSDT", None)
        b = gw._subscription_message(EventKind.TICKER, "BTCUSDT", None)
        assert a["method"] == "SUBSCRIBE"
        assert b["id"] == a["id"] + 1

    def test_depth_update(self):
        frames = _gateway()._translate({
            "e": "depthUpdate", "E": 1700000000000, "s": "BTCUSDT", "u": 9,
            "b": [["65000.1", "1.5"]], "a": [["65000.2", "0.3"]],
        })
        kind, symbol, _, depth = frames[0]
        assert (kind, symbol) == (EventKind.DEPTH, "BTCUSDT")
        assert depth.best_bid.price == "65000.1"
        assert depth.last_update_id == 9

    def test_combined_stream_wrapper(self):
        frames = _gateway()._translate({"stream": "btcusdt@ticker", "data": {
            "e": "24hrTicker", "E": 1, "s": "BTCUSDT", "c": "65000", "P": "1.2"}})
        assert frames[0][3].last_price == "65000"
        assert frames[0][3].price_change_percent == "1.2"

    def test_subscribe_ack_ignored(self):
        assert _gateway()._translate({"result": None, "id": 1}) == []

    def test_kline_series(self):
        gw = _gateway()

        def kline(t, close, closed=False):
            return {"e": "kline", "E": t, "s": "BTCUSDT",
                    "k": {"t": t, "T": t + 59999, "s": "BTCUSDT", "i": "1m",
                          "o": "1", "h": "2", "l": "0.5", "c": close, "v": "10", "x": closed}}

        gw._translate(kline(0, "1.1"))
        gw._translate(kline(0, "1.2", closed=True))
        frames = gw._translate(kline(60000, "1.3"))
        _, symbol, interval, series = frames[0]
        assert (symbol, interval) == ("BTCUSDT", "1m")
        assert [k.close for k in series] == ["1.2", "1.3"]
        assert series[0].is_closed

    def test_account_update_merges(self):
        gw = _gateway()
        gw._account = AccountSnapshot(positions=[Position("BTCUSDT", position_amt="0.1", leverage="10")])
        frames = gw._translate({"e": "ACCOUNT_UPDATE", "E": 5, "a": {
            "B": [{"a": "USDT", "wb": "950"}],
            "P": [{"s": "BTCUSDT", "pa": "0.2", "ep": "64000", "up": "3", "ps": "BOTH"}],
        }})
        snap = frames[0][3]
        assert snap.update_time == 5
        pos = snap.position("BTCUSDT")
        assert pos.position_amt == "0.2"
        assert pos.leverage == "10"
        assert snap.assets[0].wallet_balance == "950"

    def test_order_updates_track_open_orders(self):
        gw = _gateway()

        def update(status):
            return {"e": "ORDER_TRADE_UPDATE", "E": 7, "o": {
                "s": "BTCUSDT", "c": "cid", "S": "BUY", "o": "LIMIT", "f": "GTC",
                "q": "1", "p": "100", "X": status, "i": 42, "z": "0", "T": 7}}

        frames = gw._translate(update("NEW"))
        assert [o.order_id for o in frames[0][3]] == ["42"]
        frames = gw._translate(update("FILLED"))
        assert frames[0][3] == []


class TestAsterUserStream:
    @pytest.mark.asyncio
    async def test_socket_url_uses_listen_key(self):
        gw = _gateway()
        gw._send = AsyncMock(return_value=HttpReply(200, {"listenKey": "abc"}))
        url = await gw._socket_url()
        assert url.endswith("/abc")
        assert gw._keepalive_task is not None
        await gw.destroy()
        assert gw._keepalive_task is None

    @pytest.mark.asyncio
    async def test_public_socket_without_credentials(self):
        gw = AsterGateway()
        assert await gw._socket_url() == gw.ws_url


class TestAsterAdapter:
    @pytest.mark.asyncio
    async def test_initialize_probes_account(self):
        adapter = AsterExchangeAdapter("BTCUSDT", AsterCredentials("k", "s"))
        adapter.gateway.get_account_info = AsyncMock(return_value=AccountSnapshot())
        await adapter.initialize()
        assert adapter.gateway.is_initialized
        assert adapter.display_name == "AsterDex"
        await adapter.close()
