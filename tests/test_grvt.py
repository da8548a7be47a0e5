"""Tests for the GRVT gateway: session login, EIP-712 order signing, payload
mapping and stream translation."""
from unittest.mock import AsyncMock

import orjson
import pytest
from eth_account import Account
from eth_account.messages import encode_typed_data

from conftest import TEST_PRIVATE_KEY
from core.errors import ConfigurationError, UpstreamRejection
from core.types import CreateOrderParams, OrderSide, OrderType, TimeInForce
from exchanges.gateway import EventKind, HttpReply
from exchanges.grvt import (
    EIP712_TYPES, ENVIRONMENTS, GrvtCredentials, GrvtGateway, account_from_grvt,
    from_grvt_interval, order_from_grvt, to_grvt_interval,
)

INSTRUMENT = {"instrument": "BTC_USDT_Perp", "instrument_hash": "0x030501", "base_decimals": 9}


def _gateway(**kw) -> GrvtGateway:
    return GrvtGateway("api-key", TEST_PRIVATE_KEY, "1234567", **kw)


def _login_reply() -> HttpReply:
    return HttpReply(200, {"status": "success"},
                     headers={"x-grvt-account-id": "ACC-1"}, cookies={"gravity": "sess"})


class TestHelpers:
    def test_interval_mapping(self):
        assert to_grvt_interval("1m") == "CI_1_M"
        assert to_grvt_interval("4h") == "CI_4_H"
        assert from_grvt_interval("CI_15_M") == "15m"

    def test_bad_interval(self):
        with pytest.raises(ValueError):
            to_grvt_interval("fortnight")

    def test_credentials_from_mapping(self):
        c = GrvtCredentials.from_mapping({"apiKey": "k", "subAccountId": 99, "env": "TESTNET"})
        assert c.sub_account_id == "99"
        assert c.env == "testnet"
        assert "api_key" not in repr(c)

    def test_unknown_env(self):
        with pytest.raises(ConfigurationError):
            GrvtGateway(env="staging")

    def test_testnet_hosts(self):
        gw = GrvtGateway(env="testnet")
        assert gw.base_url == ENVIRONMENTS["testnet"]["trades"]
        assert gw.ws_url == ENVIRONMENTS["testnet"]["ws"]


class TestMapping:
    def test_order_from_grvt(self):
        order = order_from_grvt({
            "order_id": "0xabc",
            "is_market": False,
            "time_in_force": "GOOD_TILL_TIME",
            "post_only": False,
            "reduce_only": True,
            "legs": [{"instrument": "BTC_USDT_Perp", "size": "0.5",
                      "limit_price": "65000", "is_buying_asset": True}],
            "metadata": {"client_order_id": "77", "create_time": "1700000000000000000"},
            "state": {"status": "OPEN", "traded_size": ["0.1"], "avg_fill_price": ["64999"],
                      "update_time": "1700000001000000000"},
        })
        assert order.symbol == "BTCUSDT"
        assert order.side == "BUY"
        assert order.type == "LIMIT"
        assert order.status == "PARTIALLY_FILLED"
        assert order.time == 1700000000000
        assert order.update_time == 1700000001000
        assert order.time_in_force == "GTC"
        assert order.reduce_only
        assert order.client_order_id == "77"

    def test_cancelled_status(self):
        order = order_from_grvt({"order_id": "1", "legs": [{"instrument": "ETH_USDT_Perp"}],
                                 "state": {"status": "CANCELLED"}})
        assert order.status == "CANCELED"
        assert not order.is_active

    def test_account_summary(self):
        snap = account_from_grvt({
            "event_time": "1700000000000000000",
            "total_equity": "1000.5",
            "available_balance": "800",
            "unrealized_pnl": "-2.5",
            "initial_margin": "150",
            "maintenance_margin": "75",
            "positions": [{"instrument": "BTC_USDT_Perp", "size": "-0.01",
                           "entry_price": "65000", "leverage": "10"}],
            "spot_balances": [{"currency": "USDT", "balance": "1000"}],
        })
        assert snap.update_time == 1700000000000
        assert snap.total_margin_balance == "1000.5"
        assert snap.available_balance == "800"
        assert snap.total_maint_margin == "75"
        assert snap.position("BTCUSDT").position_amt == "-0.01"
        assert snap.assets[0].asset == "USDT"
        assert snap.can_trade


class TestSession:
    @pytest.mark.asyncio
    async def test_login_then_authenticated_request(self):
        gw = _gateway()
        gw._send = AsyncMock(side_effect=[
            _login_reply(),
            HttpReply(200, {"result": {"total_equity": "10"}}),
            HttpReply(200, {"result": {"total_equity": "11"}}),
        ])
        await gw.get_account_info()
        snap = await gw.get_account_info()
        assert snap.total_margin_balance == "11"
        assert gw._send.await_count == 3  # one login only
        login = gw._send.call_args_list[0]
        assert login.args[1].endswith("/auth/api_key/login")
        assert login.kwargs["body"] == {"api_key": "api-key"}
        headers = gw._send.call_args_list[1].kwargs["headers"]
        assert headers == {"Cookie": "gravity=sess", "X-Grvt-Account-Id": "ACC-1"}

    @pytest.mark.asyncio
    async def test_login_without_cookie(self):
        gw = _gateway()
        gw._send = AsyncMock(return_value=HttpReply(200, {"status": "success"}))
        with pytest.raises(UpstreamRejection):
            await gw.get_account_info()

    @pytest.mark.asyncio
    async def test_error_envelope(self):
        gw = _gateway()
        gw._send = AsyncMock(side_effect=[
            _login_reply(),
            HttpReply(200, {"code": 1000, "message": "You need to authenticate", "status": 401}),
        ])
        with pytest.raises(UpstreamRejection, match="authenticate"):
            await gw.get_open_orders("BTCUSDT")

    @pytest.mark.asyncio
    async def test_missing_api_key(self):
        gw = GrvtGateway(sub_account_id="1")
        gw._send = AsyncMock()
        with pytest.raises(ConfigurationError):
            await gw.get_account_info()
        gw._send.assert_not_called()

    @pytest.mark.asyncio
    async def test_cancel_requires_signer(self):
        gw = GrvtGateway("api-key", None, "1")
        gw._send = AsyncMock()
        with pytest.raises(ConfigurationError):
            await gw.cancel_order("BTCUSDT", "0x1")
        gw._send.assert_not_called()

    @pytest.mark.asyncio
    async def test_open_orders_filter(self):
        gw = _gateway()
        gw._send = AsyncMock(side_effect=[_login_reply(), HttpReply(200, {"result": []})])
        await gw.get_open_orders("ETHUSDT")
        body = gw._send.call_args.kwargs["body"]
        assert body == {"sub_account_id": "1234567", "kind": ["PERPETUAL"],
                        "base": ["ETH"], "quote": ["USDT"]}


class TestOrderSigning:
    def test_signature_recovers_signer(self):
        gw = _gateway()
        order = gw.build_order(CreateOrderParams("BTCUSDT", OrderSide.BUY, OrderType.LIMIT,
                                                 quantity=0.01, price=65000.5), INSTRUMENT)
        sig = order["signature"]
        signer = Account.from_key(TEST_PRIVATE_KEY).address
        assert sig["signer"] == signer

        message = {
            "subAccountID": 1234567,
            "isMarket": False,
            "timeInForce": 1,
            "postOnly": False,
            "reduceOnly": False,
            "legs": [{"assetID": 0x030501, "contractSize": 10_000_000,
                      "limitPrice": 65_000_500_000_000, "isBuyingContract": True}],
            "nonce": sig["nonce"],
            "expiration": int(sig["expiration"]),
        }
        signable = encode_typed_data(
            domain_data={"name": "GRVT Exchange", "version": "0", "chainId": 325},
            message_types=EIP712_TYPES, message_data=message,
        )
        assert Account.recover_message(signable, vrs=(sig["v"], sig["r"], sig["s"])) == signer

    def test_limit_payload(self):
        order = _gateway().build_order(CreateOrderParams(
            "BTCUSDT", OrderSide.SELL, OrderType.LIMIT, quantity="0.5", price="64000",
            time_in_force=TimeInForce.GTX, client_order_id="42"), INSTRUMENT)
        assert order["post_only"]
        assert order["time_in_force"] == "GOOD_TILL_TIME"
        assert order["legs"][0] == {"instrument": "BTC_USDT_Perp", "size": "0.5",
                                    "limit_price": "64000", "is_buying_asset": False}
        assert order["metadata"]["client_order_id"] == "42"

    def test_market_payload(self):
        order = _gateway().build_order(CreateOrderParams(
            "BTCUSDT", OrderSide.BUY, OrderType.MARKET, quantity=1), INSTRUMENT)
        assert order["is_market"]
        assert order["time_in_force"] == "IMMEDIATE_OR_CANCEL"
        assert order["legs"][0]["limit_price"] is None

    def test_unsupported_type(self):
        with pytest.raises(ValueError):
            _gateway().build_order(CreateOrderParams(
                "BTCUSDT", OrderSide.BUY, OrderType.STOP_MARKET, quantity=1), INSTRUMENT)

    def test_sign_without_key(self):
        with pytest.raises(ConfigurationError):
            GrvtGateway("k", None, "1").sign_order({})

    @pytest.mark.asyncio
    async def test_create_order_flow(self):
        gw = _gateway()
        gw._send = AsyncMock(side_effect=[
            HttpReply(200, {"result": INSTRUMENT}),
            _login_reply(),
            HttpReply(200, {"result": {"order_id": "0x99", "legs": [
                {"instrument": "BTC_USDT_Perp", "size": "0.01", "limit_price": "65000",
                 "is_buying_asset": True}], "state": {"status": "PENDING"}}}),
        ])
        order = await gw.create_order(CreateOrderParams("BTCUSDT", OrderSide.BUY, OrderType.LIMIT,
                                                        quantity=0.01, price=65000))
        assert order.order_id == "0x99"
        assert order.status == "NEW"
        assert gw._send.call_args_list[0].args[1].endswith("/full/v1/instrument")
        assert "signature" in gw._send.call_args.kwargs["body"]["order"]


class TestGrvtStreams:
    def test_subscription_messages(self):
        gw = _gateway()
        depth = gw._subscription_message(EventKind.DEPTH, "BTCUSDT", None)
        assert depth["stream"] == "v1.book.s"
        assert depth["feed"] == ["BTC_USDT_Perp@500-10"]
        kl = gw._subscription_message(EventKind.KLINES, "BTCUSDT", "5m")
        assert kl["feed"] == ["BTC_USDT_Perp@CI_5_M-TRADE"]
        assert kl["request_id"] == depth["request_id"] + 1
        orders = gw._subscription_message(EventKind.ORDERS, None, None)
        assert orders["feed"] == ["1234567"]

    def test_private_streams_need_sub_account(self):
        assert GrvtGateway()._subscription_message(EventKind.ACCOUNT, None, None) is None

    def test_socket_headers_after_login(self):
        gw = _gateway()
        assert gw._socket_options() == {}
        gw._cookie, gw._account_id = "sess", "ACC-1"
        assert gw._socket_options()["additional_headers"]["Cookie"] == "gravity=sess"

    def test_book_feed(self):
        frames = _gateway()._translate({"stream": "v1.book.s", "selector": "BTC_USDT_Perp@500-10",
                                        "feed": {"instrument": "BTC_USDT_Perp",
                                                 "event_time": "1700000000000000000",
                                                 "bids": [{"price": "65000", "size": "1"}],
                                                 "asks": [{"price": "65001", "size": "2"}]}})
        kind, symbol, _, depth = frames[0]
        assert (kind, symbol) == (EventKind.DEPTH, "BTCUSDT")
        assert depth.best_ask.quantity == "2"
        assert depth.event_time == 1700000000000

    def test_ticker_feed(self):
        frames = _gateway()._translate({"stream": "v1.ticker.s", "feed": {
            "instrument": "BTC_USDT_Perp", "last_price": "110", "open_price": "100",
            "buy_volume_24h_b": "3", "sell_volume_24h_b": "2"}})
        ticker = frames[0][3]
        assert ticker.price_change == "10"
        assert ticker.price_change_percent == "10"
        assert ticker.volume == "5"

    def test_non_numeric_price_dropped(self, caplog):
        gw = _gateway()
        got = []
        gw.on_ticker("BTCUSDT", got.append)
        gw._handle_message(b'{"stream":"v1.ticker.s","feed":{"instrument":"BTC_USDT_Perp",'
                           b'"last_price":"abc","open_price":"100"}}')
        assert got == []
        assert "Dropping unreadable WebSocket message" in caplog.text

    def test_unsupported_interval_rejected_at_registration(self):
        gw = _gateway()
        with pytest.raises(ValueError):
            gw.on_klines("BTCUSDT", "1M", lambda d: None)
        assert gw._listeners.keys() == []
        assert gw._registered_streams() == []
        gw.on_klines("BTCUSDT", "1m", lambda d: None)
        assert gw._registered_streams() == [(EventKind.KLINES, "BTCUSDT", "1m")]

    @pytest.mark.asyncio
    async def test_rejected_interval_leaves_live_stream_untouched(self, fake_ws):
        gw = GrvtGateway(reconnect_delay_s=60)
        sock = fake_ws.queue()
        gw.on_ticker("BTCUSDT", lambda d: None)
        with pytest.raises(ValueError):
            gw.on_klines("BTCUSDT", "1M", lambda d: None)
        await gw._ws_task
        assert [orjson.loads(m)["stream"] for m in sock.sent] == ["v1.ticker.s"]
        await gw.destroy()

    def test_candle_feed(self):
        frames = _gateway()._translate({"stream": "v1.candle",
                                        "selector": "BTC_USDT_Perp@CI_1_M-TRADE",
                                        "feed": {"instrument": "BTC_USDT_Perp",
                                                 "open_time": "60000000000",
                                                 "close_time": "119999000000",
                                                 "close": "65000", "trades": 4}})
        _, symbol, interval, series = frames[0]
        assert (symbol, interval) == ("BTCUSDT", "1m")
        assert series[0].open_time == 60000
        assert series[0].is_closed

    def test_order_and_position_feeds(self):
        gw = _gateway()
        frames = gw._translate({"stream": "v1.order", "feed": {
            "order_id": "0x1", "legs": [{"instrument": "BTC_USDT_Perp", "size": "1"}],
            "state": {"status": "OPEN"}}})
        assert [o.order_id for o in frames[0][3]] == ["0x1"]
        frames = gw._translate({"stream": "v1.position", "feed": {
            "instrument": "BTC_USDT_Perp", "size": "1", "event_time": "2000000"}})
        assert frames[0][0] == EventKind.ACCOUNT
        assert frames[0][3].position("BTCUSDT").position_amt == "1"

    def test_ack_ignored(self):
        assert _gateway()._translate({"request_id": 1, "stream": "v1.book.s",
                                      "subs": ["BTC_USDT_Perp@500-10"]}) == []
