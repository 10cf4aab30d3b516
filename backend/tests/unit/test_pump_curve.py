"""Tests for the bonding-curve path - account parsing, curve math, cache and PumpPortal trades."""

from __future__ import annotations

import base64
from dataclasses import replace
from unittest.mock import AsyncMock, MagicMock

import pytest
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from conftest import TOKEN_MINT
from pump_curve import (
    BONDING_CURVE_LAYOUT,
    PUMP_PROGRAM_ID,
    BondingCurveState,
    CurveCache,
    PumpPortalClient,
    PumpTrader,
    bonding_progress,
    calculate_buy_quote,
    calculate_price,
    calculate_sell_quote,
    derive_curve_address,
    parse_curve_account,
    token_price_info,
)
from pump_curve.curve_parser import BONDING_CURVE_DISCRIMINATOR
from trading.errors import PumpPortalError

# freshly launched curve
FRESH = BondingCurveState(
    virtual_token_reserves=1_073_000_000_000_000,
    virtual_sol_reserves=30_000_000_000,
    real_token_reserves=793_100_000_000_000,
    real_sol_reserves=0,
    token_total_supply=1_000_000_000_000_000,
    complete=False,
)


def _account_bytes(state: BondingCurveState = FRESH, discriminator: bytes = BONDING_CURVE_DISCRIMINATOR) -> bytes:
    return BONDING_CURVE_LAYOUT.build(
        dict(
            discriminator=discriminator,
            virtual_token_reserves=state.virtual_token_reserves,
            virtual_sol_reserves=state.virtual_sol_reserves,
            real_token_reserves=state.real_token_reserves,
            real_sol_reserves=state.real_sol_reserves,
            token_total_supply=state.token_total_supply,
            complete=state.complete,
        )
    )


def _after_buy(state: BondingCurveState, sol_amount: float, fee_bps: int = 100) -> BondingCurveState:
    lamports = int(sol_amount * 1_000_000_000)
    net = lamports - lamports * fee_bps // 10_000
    tokens = state.virtual_token_reserves * net // (state.virtual_sol_reserves + net)
    return replace(
        state,
        virtual_sol_reserves=state.virtual_sol_reserves + net,
        virtual_token_reserves=state.virtual_token_reserves - tokens,
        real_sol_reserves=state.real_sol_reserves + net,
        real_token_reserves=state.real_token_reserves - tokens,
    )


class TestCurveParser:
    def test_parses_account(self):
        raw = _account_bytes() + bytes(32)  # newer accounts append the creator key
        state = parse_curve_account(raw, address="curve")
        assert state == replace(FRESH, address="curve")

    def test_accepts_base64(self):
        encoded = base64.b64encode(_account_bytes()).decode()
        assert parse_curve_account(encoded).virtual_sol_reserves == 30_000_000_000

    def test_rejects_wrong_discriminator(self):
        assert parse_curve_account(_account_bytes(discriminator=bytes(8))) is None

    def test_rejects_short_buffer(self):
        assert parse_curve_account(_account_bytes()[:40]) is None

    def test_derive_curve_address(self):
        expected, _ = Pubkey.find_program_address(
            [b"bonding-curve", bytes(Pubkey.from_string(TOKEN_MINT))], PUMP_PROGRAM_ID
        )
        assert derive_curve_address(TOKEN_MINT) == expected
        assert derive_curve_address(Pubkey.from_string(TOKEN_MINT)) == expected


class TestCurveMath:
    def test_price(self):
        assert calculate_price(FRESH) == pytest.approx(30 / 1_073_000_000)
        assert calculate_price(replace(FRESH, virtual_token_reserves=0)) == 0.0
        assert calculate_price(None) == 0.0

    def test_buy_quote(self):
        quote = calculate_buy_quote(FRESH, 1.0)
        assert quote.fee == pytest.approx(0.01)
        assert quote.sol_cost == 1.0
        expected_raw = FRESH.virtual_token_reserves * 990_000_000 // (FRESH.virtual_sol_reserves + 990_000_000)
        assert quote.tokens_out == pytest.approx(expected_raw / 1e6)
        assert quote.price_per_token > calculate_price(FRESH)
        assert quote.price_impact > 0

    def test_sell_quote(self):
        quote = calculate_sell_quote(FRESH, 1_000_000.0)
        gross = FRESH.virtual_sol_reserves * 1_000_000_000_000 // (FRESH.virtual_token_reserves + 1_000_000_000_000)
        assert quote.sol_out == pytest.approx((gross - gross // 100) / 1e9)
        assert quote.fee == pytest.approx((gross // 100) / 1e9)
        assert quote.price_impact > 0

    def test_quotes_without_state(self):
        assert calculate_buy_quote(None, 1.0) is None
        assert calculate_sell_quote(None, 1.0) is None

    @pytest.mark.parametrize("sol_amount", [0.01, 0.5, 5.0, 40.0])
    def test_round_trip_loses_value(self, sol_amount):
        buy = calculate_buy_quote(FRESH, sol_amount)
        sell = calculate_sell_quote(_after_buy(FRESH, sol_amount), buy.tokens_out)
        loss = sol_amount - sell.sol_out
        assert loss > 0
        assert loss <= sol_amount * 2 * 0.01 + 1e-6

    def test_round_trip_against_unchanged_curve(self):
        buy = calculate_buy_quote(FRESH, 2.0)
        sell = calculate_sell_quote(FRESH, buy.tokens_out)
        assert 0 < sell.sol_out < 2.0

    def test_bonding_progress(self):
        assert bonding_progress(FRESH) == pytest.approx(6_900_000 / 800_000_000)
        assert bonding_progress(replace(FRESH, real_token_reserves=0)) == 1.0
        assert bonding_progress(replace(FRESH, real_token_reserves=900_000_000_000_000)) == 0.0
        assert bonding_progress(None) == 0.0

    def test_token_price_info(self):
        state = replace(_after_buy(FRESH, 10.0), complete=True)
        info = token_price_info(state, sol_price_usd=150.0)
        assert info.price_in_usd == pytest.approx(info.price_in_sol * 150.0)
        assert info.market_cap_sol == pytest.approx(info.price_in_sol * 1_000_000_000)
        assert info.liquidity_sol == pytest.approx(9.9)
        assert info.graduated is True
        assert info.tokens_remaining == state.real_token_reserves / 1e6
        assert info.to_dict()["bonding_progress"] == info.bonding_progress


class TestCurveCache:
    def test_expiry(self, clock):
        cache = CurveCache(ttl_ms_hot=2000, ttl_ms_cold=15000, clock=clock)
        cache.set("hot", FRESH)
        cache.set("cold", FRESH, hot=False)
        clock.now += 3
        assert cache.get("hot") is None
        assert cache.get("cold") is FRESH

    def test_eviction(self, clock):
        cache = CurveCache(max_size=2, clock=clock)
        cache.set("a", 1)
        clock.now += 0.5
        cache.set("b", 2)
        cache.set("c", 3)
        assert cache.get("a") is None
        assert cache.get("b") == 2
        assert len(cache) == 2


class TestPumpPortal:
    @pytest.mark.asyncio
    async def test_build_trade_payload(self):
        client = PumpPortalClient(api_url="http://portal.local/trade")
        client._post = AsyncMock(return_value=(200, b"unsigned-tx"))
        tx = await client.build_trade_transaction("Pub", "buy", TOKEN_MINT, 0.25)

        assert tx == b"unsigned-tx"
        payload = client._post.await_args.args[0]
        assert payload == {
            "publicKey": "Pub",
            "action": "buy",
            "mint": TOKEN_MINT,
            "amount": 0.25,
            "denominatedInSol": "true",
            "slippage": 10,
            "priorityFee": 0.005,
            "pool": "auto",
        }

    @pytest.mark.asyncio
    async def test_non_200_raises(self):
        client = PumpPortalClient(api_url="http://portal.local/trade")
        client._post = AsyncMock(return_value=(400, "Bad Request"))
        with pytest.raises(PumpPortalError) as exc:
            await client.build_trade_transaction("Pub", "sell", TOKEN_MINT, "100%", denominated_in_sol=False)
        assert exc.value.status == 400

    @pytest.mark.asyncio
    async def test_trader_signs_and_submits(self, monkeypatch):
        send = AsyncMock(return_value="pumpSig")
        monkeypatch.setattr("pump_curve.portal.sign_and_send", send)
        portal = MagicMock()
        portal.build_trade_transaction = AsyncMock(return_value=b"unsigned")
        keypair = Keypair()
        trader = PumpTrader(MagicMock(), keypair, portal=portal)
        trader.cache.set(TOKEN_MINT, FRESH)

        result = await trader.sell(TOKEN_MINT, "100%")

        assert result.signature == "pumpSig"
        assert result.action == "sell"
        kwargs = portal.build_trade_transaction.await_args.kwargs
        assert kwargs["public_key"] == str(keypair.pubkey())
        assert kwargs["denominated_in_sol"] is False
        send.assert_awaited_once_with(trader.rpc, keypair, b"unsigned")
        assert trader.cache.get(TOKEN_MINT) is None

    @pytest.mark.asyncio
    async def test_price_info_uses_cache(self, monkeypatch):
        fetch = AsyncMock(return_value=FRESH)
        monkeypatch.setattr("pump_curve.portal.fetch_curve_state", fetch)
        trader = PumpTrader(MagicMock(), Keypair(), portal=MagicMock())

        first = await trader.get_token_price_info(TOKEN_MINT, 100.0)
        second = await trader.get_token_price_info(TOKEN_MINT, 100.0)
        assert first == second
        assert fetch.await_count == 1

    @pytest.mark.asyncio
    async def test_price_info_missing_curve(self, monkeypatch):
        monkeypatch.setattr("pump_curve.portal.fetch_curve_state", AsyncMock(return_value=None))
        trader = PumpTrader(MagicMock(), Keypair(), portal=MagicMock())
        assert await trader.get_token_price_info(TOKEN_MINT) is None
