import math
import unittest

from replay.ledger import PositionLedger
from replay.stats import compute_trading_stats


def _closed_with_pnls(pnls):
    ledger = PositionLedger("s1")
    for pnl in pnls:
        pos = ledger.open("BUY", 100.0, 1.0)
        ledger.close(pos.id, 100.0 + pnl)
    return ledger.closed_positions()


class TradingStatsTests(unittest.TestCase):
    def test_no_trades(self):
        self.assertIsNone(compute_trading_stats([], 10000.0))

    def test_mixed_trades(self):
        stats = compute_trading_stats(_closed_with_pnls([10.0, -5.0, 0.0, 20.0, -2.5]), 1000.0)

        self.assertEqual(stats.total_trades, 5)
        self.assertEqual((stats.winning_trades, stats.losing_trades, stats.break_even_trades), (2, 2, 1))
        self.assertAlmostEqual(stats.win_rate, 40.0)
        self.assertAlmostEqual(stats.total_pnl, 22.5)
        self.assertAlmostEqual(stats.total_return, 2.25)
        self.assertAlmostEqual(stats.avg_win, 15.0)
        self.assertAlmostEqual(stats.avg_loss, 3.75)
        self.assertAlmostEqual(stats.risk_reward_ratio, 4.0)
        self.assertAlmostEqual(stats.profit_factor, 4.0)
        self.assertAlmostEqual(stats.max_drawdown, 5.0 / 1010.0 * 100.0)
        self.assertEqual((stats.best_trade, stats.worst_trade), (20.0, -5.0))
        self.assertEqual((stats.max_win_streak, stats.max_loss_streak), (1, 1))
        self.assertEqual(stats.current_streak, -1)
        self.assertAlmostEqual(stats.expectancy, 0.4 * 15.0 - 0.6 * 3.75)
        self.assertEqual(len(stats.equity_curve), 6)
        self.assertAlmostEqual(stats.equity_curve[-1], 1022.5)
        self.assertGreater(stats.sharpe_ratio, 0.0)

    def test_all_winners_have_unbounded_ratios(self):
        stats = compute_trading_stats(_closed_with_pnls([1.0, 2.0, 3.0]), 100.0)
        self.assertTrue(math.isinf(stats.profit_factor))
        self.assertTrue(math.isinf(stats.risk_reward_ratio))
        self.assertEqual(stats.current_streak, 3)
        self.assertEqual(stats.max_drawdown, 0.0)

        payload = stats.to_dict()
        self.assertIsNone(payload["profit_factor"])
        self.assertIsNone(payload["risk_reward_ratio"])
        self.assertEqual(payload["total_trades"], 3)

    def test_single_trade_has_zero_sharpe(self):
        stats = compute_trading_stats(_closed_with_pnls([-4.0]), 100.0)
        self.assertEqual(stats.sharpe_ratio, 0.0)
        self.assertEqual(stats.profit_factor, 0.0)
        self.assertEqual(stats.current_streak, -1)
        self.assertAlmostEqual(stats.max_drawdown, 4.0)

    def test_explicit_balance_drives_total_return(self):
        stats = compute_trading_stats(_closed_with_pnls([5.0]), 100.0, balance=150.0)
        self.assertAlmostEqual(stats.total_return, 50.0)


if __name__ == "__main__":
    unittest.main()
