"""Tests for CopyTrader - trade detection, filters and mirrored execution."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import OTHER_MINT, TOKEN_MINT, WALLET, executing
from jupiter_api import SOL_MINT
from trading.copytrade import CopyTrader, detect_trade
from trading.errors import NotFoundError, SwapError
from trading.log_stream import LogEvent
from trading.safety import SafetyManager

LAMPORTS = 1_000_000_000


def _balance(mint: str, ui: float, owner: str = WALLET, decimals: int = 6) -> dict:
    return {
        "accountIndex": 1,
        "mint": mint,
        "owner": owner,
        "uiTokenAmount": {
            "amount": str(int(round(ui * 10**decimals))),
            "decimals": decimals,
            "uiAmount": ui,
            "uiAmountString": str(ui),
        },
    }


def _tx(pre_sol: float, post_sol: float, pre_tokens=(), post_tokens=(), err=None, address: str = WALLET) -> dict:
    return {
        "slot": 250_000_000,
        "transaction": {
            "message": {
                "accountKeys": [
                    {"pubkey": address, "signer": True, "writable": True},
                    {"pubkey": "11111111111111111111111111111111", "signer": False, "writable": False},
                ],
            },
            "signatures": ["sig"],
        },
        "meta": {
            "err": err,
            "preBalances": [int(pre_sol * LAMPORTS), 1],
            "postBalances": [int(post_sol * LAMPORTS), 1],
            "preTokenBalances": list(pre_tokens),
            "postTokenBalances": list(post_tokens),
        },
    }


class TestDetectTrade:
    def test_buy(self):
        tx = _tx(5.0, 4.0, [], [_balance(TOKEN_MINT, 1500.0)])
        trade = detect_trade(WALLET, tx)
        assert trade.action == "buy"
        assert trade.mint == TOKEN_MINT
        assert trade.sol_amount == pytest.approx(1.0)
        assert trade.token_amount == pytest.approx(1500.0)
        assert trade.token_amount_raw == 1_500_000_000

    def test_sell_with_closed_token_account(self):
        tx = _tx(4.0, 5.2, [_balance(TOKEN_MINT, 1500.0)], [])
        trade = detect_trade(WALLET, tx)
        assert trade.action == "sell"
        assert trade.token_amount == pytest.approx(1500.0)
        assert trade.sol_amount == pytest.approx(1.2)

    def test_picks_largest_token_change(self):
        tx = _tx(
            5.0,
            4.0,
            [_balance(OTHER_MINT, 10.0)],
            [_balance(OTHER_MINT, 12.0), _balance(TOKEN_MINT, 900.0)],
        )
        assert detect_trade(WALLET, tx).mint == TOKEN_MINT

    def test_wrapped_sol_is_ignored(self):
        tx = _tx(5.0, 4.0, [], [_balance(SOL_MINT, 1.0)])
        assert detect_trade(WALLET, tx) is None

    def test_direction_must_agree(self):
        # token received and SOL received: airdrop or LP withdrawal, not a trade
        tx = _tx(5.0, 5.5, [], [_balance(TOKEN_MINT, 100.0)])
        assert detect_trade(WALLET, tx) is None

    def test_other_owners_are_ignored(self):
        tx = _tx(5.0, 4.0, [], [_balance(TOKEN_MINT, 100.0, owner="someone-else")])
        assert detect_trade(WALLET, tx) is None

    def test_address_not_in_transaction(self):
        tx = _tx(5.0, 4.0, [], [_balance(TOKEN_MINT, 100.0)], address=OTHER_MINT)
        assert detect_trade(WALLET, tx) is None

    def test_failed_transaction(self):
        tx = _tx(5.0, 4.0, [], [_balance(TOKEN_MINT, 100.0)], err={"InstructionError": [0, "Custom"]})
        assert detect_trade(WALLET, tx) is None

    def test_rpc_envelope_and_string_keys(self):
        tx = _tx(5.0, 4.0, [], [_balance(TOKEN_MINT, 100.0)])
        tx["transaction"]["message"]["accountKeys"] = [WALLET, "11111111111111111111111111111111"]
        assert detect_trade(WALLET, {"jsonrpc": "2.0", "result": tx}).action == "buy"


def _make_trader(swap, clock, safety=None, recorder=None, subscription_factory=None) -> CopyTrader:
    return CopyTrader(
        rpc=MagicMock(),
        swap=swap,
        ws_url="ws://127.0.0.1:8900",
        safety=safety,
        recorder=recorder,
        clock=clock,
        subscription_factory=subscription_factory or MagicMock(),
    )


class TestHandleEvent:
    @pytest.mark.asyncio
    async def test_mirrors_buy_capped_by_max_position(self, swap, clock, recorder):
        trader = _make_trader(swap, clock, recorder=recorder)
        target = trader.add_target(WALLET, multiplier=2.0, max_position_sol=0.5, delay_sec=0)
        trader._fetch_transaction = AsyncMock(return_value=_tx(5.0, 4.0, [], [_balance(TOKEN_MINT, 1500.0)]))

        entry = await trader.handle_event(target, "sig1")

        swap.get_quote.assert_awaited_once_with(SOL_MINT, TOKEN_MINT, 500_000_000, 500)
        assert entry["success"]
        assert entry["sol_amount"] == 0.5
        assert target.trades_copied == 1
        assert trader.get_stats()["success_rate"] == 100.0
        assert recorder.call_args[0][0].source == "copy"

    @pytest.mark.asyncio
    async def test_mirrors_buy_scaled_by_multiplier(self, swap, clock):
        trader = _make_trader(swap, clock)
        target = trader.add_target(WALLET, multiplier=0.25, max_position_sol=1.0, delay_sec=0)
        trader._fetch_transaction = AsyncMock(return_value=_tx(5.0, 4.0, [], [_balance(TOKEN_MINT, 1500.0)]))
        await trader.handle_event(target, "sig1")
        assert swap.get_quote.await_args.args[2] == 250_000_000

    @pytest.mark.asyncio
    async def test_mirrors_sell_proportionally(self, swap, clock, monkeypatch):
        balance = AsyncMock(return_value=10_000_000_000)
        monkeypatch.setattr("trading.copytrade.get_token_balance", balance)
        trader = _make_trader(swap, clock)
        target = trader.add_target(WALLET, multiplier=0.5, max_position_sol=10.0, delay_sec=0)
        trader._fetch_transaction = AsyncMock(return_value=_tx(3.0, 5.0, [_balance(TOKEN_MINT, 2000.0)], []))

        await trader.handle_event(target, "sig1")

        args = swap.get_quote.await_args.args
        assert args[0] == TOKEN_MINT
        assert args[1] == SOL_MINT
        assert args[2] == 1_000_000_000
        balance.assert_awaited_once_with(trader.rpc, WALLET, TOKEN_MINT)

    @pytest.mark.asyncio
    async def test_sell_limited_to_held_balance(self, swap, clock, monkeypatch):
        monkeypatch.setattr("trading.copytrade.get_token_balance", AsyncMock(return_value=300))
        trader = _make_trader(swap, clock)
        target = trader.add_target(WALLET, delay_sec=0)
        trader._fetch_transaction = AsyncMock(return_value=_tx(3.0, 5.0, [_balance(TOKEN_MINT, 2000.0)], []))
        await trader.handle_event(target, "sig1")
        assert swap.get_quote.await_args.args[2] == 300

    @pytest.mark.asyncio
    async def test_sell_without_position_is_dropped(self, swap, clock, monkeypatch):
        monkeypatch.setattr("trading.copytrade.get_token_balance", AsyncMock(return_value=0))
        trader = _make_trader(swap, clock)
        target = trader.add_target(WALLET, delay_sec=0)
        trader._fetch_transaction = AsyncMock(return_value=_tx(3.0, 5.0, [_balance(TOKEN_MINT, 2000.0)], []))
        assert await trader.handle_event(target, "sig1") is None
        swap.get_quote.assert_not_called()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "config",
        [
            {"copy_buys": False},
            {"blocked_mints": [TOKEN_MINT]},
            {"allowed_mints": [OTHER_MINT]},
            {"min_trade_sol": 2.0},
        ],
    )
    async def test_filters(self, swap, clock, config):
        trader = _make_trader(swap, clock)
        target = trader.add_target(WALLET, delay_sec=0, **config)
        trader._fetch_transaction = AsyncMock(return_value=_tx(5.0, 4.0, [], [_balance(TOKEN_MINT, 1500.0)]))
        assert await trader.handle_event(target, "sig1") is None
        swap.get_quote.assert_not_called()
        assert trader.get_history() == []

    @pytest.mark.asyncio
    async def test_waits_configured_delay(self, swap, clock):
        trader = _make_trader(swap, clock)
        target = trader.add_target(WALLET, delay_sec=2.0)
        trader._fetch_transaction = AsyncMock(return_value=_tx(5.0, 4.0, [], [_balance(TOKEN_MINT, 1500.0)]))

        task = asyncio.create_task(trader.handle_event(target, "sig1"))
        await clock.settle()
        swap.get_quote.assert_not_called()
        await clock.advance(2.0)
        entry = await task
        assert entry["success"]

    @pytest.mark.asyncio
    async def test_execution_failure_is_recorded(self, swap, clock, recorder):
        swap.execute.side_effect = SwapError("Jupiter swap failed: 500")
        trader = _make_trader(swap, clock, recorder=recorder)
        target = trader.add_target(WALLET, delay_sec=0)
        trader._fetch_transaction = AsyncMock(return_value=_tx(5.0, 4.0, [], [_balance(TOKEN_MINT, 1500.0)]))

        entry = await trader.handle_event(target, "sig1")

        assert entry["success"] is False
        assert "500" in entry["error"]
        stats = trader.get_stats()
        assert stats["fail_count"] == 1
        assert stats["success_rate"] == 0.0
        assert not recorder.call_args[0][0].success

    @pytest.mark.asyncio
    async def test_rpc_failure_is_recorded(self, swap, clock):
        trader = _make_trader(swap, clock)
        target = trader.add_target(WALLET, delay_sec=0)
        trader._fetch_transaction = AsyncMock(side_effect=ConnectionError("rpc down"))
        entry = await trader.handle_event(target, "sig1")
        assert entry["action"] == "unknown"
        assert trader.stats["fail_count"] == 1

    @pytest.mark.asyncio
    async def test_safety_rejection(self, swap, clock, safety_config):
        safety = SafetyManager(safety_config, clock=clock)
        safety.kill_switch("halt")
        trader = _make_trader(swap, clock, safety=safety)
        target = trader.add_target(WALLET, delay_sec=0)
        trader._fetch_transaction = AsyncMock(return_value=_tx(5.0, 4.0, [], [_balance(TOKEN_MINT, 1500.0)]))

        entry = await trader.handle_event(target, "sig1")

        assert entry["skipped"]
        assert trader.stats["rejected_count"] == 1
        assert trader.stats["fail_count"] == 0
        swap.get_quote.assert_not_called()

    @pytest.mark.asyncio
    async def test_copied_sell_rejected_while_killed(self, swap, clock, safety_config, monkeypatch):
        get_balance = AsyncMock(return_value=10**12)
        monkeypatch.setattr("trading.copytrade.get_token_balance", get_balance)
        safety = SafetyManager(safety_config, clock=clock)
        safety.kill_switch("halt")
        trader = _make_trader(swap, clock, safety=safety)
        target = trader.add_target(WALLET, delay_sec=0)
        trader._fetch_transaction = AsyncMock(return_value=_tx(4.0, 5.0, [_balance(TOKEN_MINT, 1500.0)], []))

        entry = await trader.handle_event(target, "sig1")

        assert entry["action"] == "sell"
        assert entry["skipped"]
        assert entry["error"].startswith("Kill switch")
        swap.get_quote.assert_not_called()

    @pytest.mark.asyncio
    async def test_success_rate_counts_settled_attempts(self, swap, clock):
        trader = _make_trader(swap, clock)
        target = trader.add_target(WALLET, delay_sec=0)
        trader._fetch_transaction = AsyncMock(return_value=_tx(5.0, 4.0, [], [_balance(TOKEN_MINT, 1500.0)]))
        await trader.handle_event(target, "sig1")
        swap.execute.side_effect = SwapError("boom")
        await trader.handle_event(target, "sig2")
        assert trader.get_stats()["success_rate"] == 50.0


class TestTargets:
    def test_defaults(self, swap, clock):
        trader = _make_trader(swap, clock)
        target = trader.add_target(WALLET)
        assert target.name == WALLET[:8]
        assert target.multiplier == 1.0
        assert target.max_position_sol == 0.5
        assert target.min_trade_sol == 0.01
        assert target.slippage_bps == 500
        assert target.delay_sec == 2.0
        assert target.allowed_mints is None

    def test_rejects_invalid_address(self, swap, clock):
        trader = _make_trader(swap, clock)
        with pytest.raises(ValueError):
            trader.add_target("not-a-wallet")

    def test_unknown_target(self, swap, clock):
        trader = _make_trader(swap, clock)
        for op in (trader.remove_target, trader.pause_target, trader.resume_target):
            with pytest.raises(NotFoundError):
                op("ct_missing")

    def test_pause_counts_in_stats(self, swap, clock):
        trader = _make_trader(swap, clock)
        first = trader.add_target(WALLET)
        trader.add_target(TOKEN_MINT)
        trader.pause_target(first.id)
        stats = trader.get_stats()
        assert stats["total_targets"] == 2
        assert stats["active_targets"] == 1


class TestSubscriptions:
    @pytest.mark.asyncio
    async def test_start_subscribes_each_target(self, swap, clock):
        factory = MagicMock()
        trader = _make_trader(swap, clock, subscription_factory=factory)
        first = trader.add_target(WALLET)
        factory.assert_not_called()

        trader.start()
        assert factory.call_count == 1
        assert factory.call_args.kwargs["address"] == WALLET
        assert factory.call_args.kwargs["queue"] is trader.queue

        trader.add_target(TOKEN_MINT)
        assert factory.call_count == 2

        sub = factory.return_value
        trader.remove_target(first.id)
        assert sub.stop.call_count == 1
        trader.stop()
        assert sub.stop.call_count == 2
        assert not trader.is_running

    @pytest.mark.asyncio
    async def test_consumer_processes_queue_in_order(self, swap, clock):
        trader = _make_trader(swap, clock)
        active = trader.add_target(WALLET)
        paused = trader.add_target(TOKEN_MINT)
        trader.pause_target(paused.id)
        trader.handle_event = AsyncMock()

        trader.start()
        trader.queue.put_nowait(LogEvent(active.id, "sig1"))
        trader.queue.put_nowait(LogEvent(paused.id, "sig2"))
        trader.queue.put_nowait(LogEvent("ct_gone", "sig3"))
        trader.queue.put_nowait(LogEvent(active.id, "sig4"))
        await clock.settle()

        signatures = [call.args[1] for call in trader.handle_event.await_args_list]
        assert signatures == ["sig1", "sig4"]
        trader.stop()


class TestStopDuringSwap:
    @pytest.mark.asyncio
    async def test_stop_mid_swap_finishes_the_copy(self, swap, clock, recorder):
        release = asyncio.Event()

        async def held(quote):
            await release.wait()
            return await executing(quote)

        swap.execute.side_effect = held
        trader = _make_trader(swap, clock, recorder=recorder)
        target = trader.add_target(WALLET, max_position_sol=0.5, delay_sec=0)
        trader._fetch_transaction = AsyncMock(return_value=_tx(5.0, 4.0, [], [_balance(TOKEN_MINT, 1500.0)]))

        trader.start()
        consumer = trader._consumer
        trader.queue.put_nowait(LogEvent(target.id, "sig1"))
        trader.queue.put_nowait(LogEvent(target.id, "sig2"))
        await clock.settle()
        swap.execute.assert_awaited_once()

        trader.stop()
        release.set()
        await clock.settle()

        assert consumer.done()
        assert not consumer.cancelled()
        assert recorder.call_count == 1
        assert recorder.call_args[0][0].success
        assert trader.get_stats()["success_count"] == 1
        [entry] = trader.get_history()
        assert entry["success"]
        assert entry["signature"] == "5igSig"
        # the queued event is left for the next start
        assert trader.queue.qsize() == 1

    @pytest.mark.asyncio
    async def test_stop_while_idle_cancels_consumer(self, swap, clock):
        trader = _make_trader(swap, clock)
        trader.start()
        consumer = trader._consumer
        await clock.settle()

        trader.stop()
        await clock.settle()
        assert consumer.cancelled()
