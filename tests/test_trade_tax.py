"""
Unit tests for the trade tax apportionment engine.

This module tests:
- Row normalization for the supported platforms
- BRL conversion at the PTAX buy rate of each close date
- Monthly grouping in chronological order
- Annual tax on a positive total and losses reported for offset
- Failures raised before any rate lookup
"""

import os
import sys
import unittest

sys.path.append(os.path.join(os.path.dirname(__file__), '..'))
sys.path.append(os.path.dirname(__file__))

from engine.exceptions import MalformedAmountError, MalformedDateError, UnrecognizedFormatError
from engine.platform_detector import Platform, mapping_for
from engine.report_loader import read_trade_report
from engine.trade_tax import TradeTaxEngine
from ptax_stub import make_resolver


def mt5_row(close_time, symbol, profit, position='1'):
    return {
        'Horário': close_time,
        'Position': position,
        'Ativo': symbol,
        'Tipo': 'buy',
        'S / L': '',
        'Lucro': profit,
        'Comissão': '0',
        'Swap': '0',
    }


class TestTradeTaxEngine(unittest.TestCase):
    """Test cases for TradeTaxEngine."""

    def setUp(self):
        """Set up test fixtures."""
        self.resolver = make_resolver({
            '2024-03-15': (5.00, 5.01),
            '2024-03-20': (5.10, 5.11),
            '2024-04-02': (5.20, 5.21),
            '2024-11-05': (5.70, 5.71),
        })
        self.engine = TradeTaxEngine(self.resolver)

    def test_monthly_apportionment(self):
        rows = [
            mt5_row('2024.03.15 10:00:00', 'EURUSD', '100,50', '1001'),
            mt5_row('2024.03.20 11:30:00', 'XAUUSD', '-20', '1002'),
            mt5_row('2024.04.02 09:15:00', 'EURUSD', '50', '1003'),
        ]

        result = self.engine.apportion(rows)

        self.assertEqual(result.platform, "Metatrader 5 (Posições)")
        self.assertEqual(len(result.trades), 3)

        march, april = result.monthly
        self.assertEqual(march.month_key, '2024-03')
        self.assertEqual(march.trade_count, 2)
        self.assertAlmostEqual(march.result_usd, 80.5)
        self.assertAlmostEqual(march.result_brl, 100.5 * 5.00 - 20 * 5.10)
        self.assertEqual(april.month_key, '2024-04')
        self.assertAlmostEqual(april.result_brl, 260.0)

        expected_total = 502.5 - 102.0 + 260.0
        self.assertAlmostEqual(result.total_usd, 130.5)
        self.assertAlmostEqual(result.total_brl, expected_total)
        self.assertAlmostEqual(result.annual_tax_brl, expected_total * 0.15)
        self.assertAlmostEqual(result.result_after_tax_brl, expected_total * 0.85)
        self.assertEqual(result.loss_to_offset_brl, 0.0)

    def test_uses_buy_rate(self):
        result = self.engine.apportion([mt5_row('2024.03.15 10:00:00', 'EURUSD', '10')])
        self.assertEqual(result.trades[0].rate, 5.00)
        self.assertAlmostEqual(result.trades[0].result_brl, 50.0)

    def test_months_sorted_chronologically(self):
        rows = [
            mt5_row('2024.11.05 10:00:00', 'EURUSD', '10'),
            mt5_row('2024.03.15 10:00:00', 'EURUSD', '10'),
        ]
        result = self.engine.apportion(rows)
        self.assertEqual([m.month_key for m in result.monthly], ['2024-03', '2024-11'])
        # Trades keep report order
        self.assertEqual([t.month_key for t in result.trades], ['2024-11', '2024-03'])

    def test_net_loss_owes_no_tax(self):
        rows = [
            mt5_row('2024.03.15 10:00:00', 'EURUSD', '-100'),
            mt5_row('2024.04.02 10:00:00', 'EURUSD', '20'),
        ]
        result = self.engine.apportion(rows)

        self.assertAlmostEqual(result.total_brl, -500.0 + 104.0)
        self.assertEqual(result.annual_tax_brl, 0.0)
        self.assertAlmostEqual(result.loss_to_offset_brl, 396.0)
        self.assertAlmostEqual(result.result_after_tax_brl, -396.0)

    def test_unmapped_columns_kept(self):
        result = self.engine.apportion([mt5_row('2024.03.15 10:00:00', 'EURUSD', '10', '777')])
        trade = result.trades[0]

        self.assertEqual(trade.symbol, 'EURUSD')
        self.assertEqual(trade.commission, '0')
        self.assertEqual(trade.extra['position'], '777')
        self.assertEqual(trade.extra['tipo'], 'buy')
        self.assertIn('s_/_l', trade.extra)
        self.assertNotIn('lucro', trade.extra)

        record = trade.to_dict()
        self.assertEqual(record['close_date'], '2024-03-15')
        self.assertEqual(record['position'], '777')

    def test_trades_for_month(self):
        rows = [
            mt5_row('2024.03.15 10:00:00', 'EURUSD', '10', '1'),
            mt5_row('2024.04.02 10:00:00', 'GBPUSD', '10', '2'),
            mt5_row('2024.03.20 10:00:00', 'USDJPY', '10', '3'),
        ]
        result = self.engine.apportion(rows)

        march = result.trades_for_month('2024-03')
        self.assertEqual([t.symbol for t in march], ['EURUSD', 'USDJPY'])
        self.assertEqual(result.trades_for_month('2024-05'), [])

    def test_dataframes(self):
        result = self.engine.apportion([mt5_row('2024.03.15 10:00:00', 'EURUSD', '10')])

        monthly = result.monthly_dataframe()
        self.assertEqual(list(monthly.columns), ['month_key', 'result_usd', 'result_brl', 'trade_count'])
        self.assertEqual(len(monthly), 1)

        trades = result.trades_dataframe()
        self.assertIn('result_brl', trades.columns)
        self.assertIn('position', trades.columns)

    def test_position_closed_next_month_uses_close_date(self):
        """Test a report with opening and closing Horário columns priced on the close."""
        report = (
            "Horário,Position,Ativo,Tipo,Volume,Preço,S / L,T / P,Horário,Preço,Comissão,Swap,Lucro\n"
            "2024.03.29 16:30:00,1002,XAUUSD,buy,0.01,2230.10,,,2024.04.02 11:00:00,2232.10,0,0,10\n"
        ).encode('utf-8')

        result = self.engine.apportion(read_trade_report(report))

        trade = result.trades[0]
        self.assertEqual(trade.close_date.isoformat(), '2024-04-02')
        self.assertEqual(trade.month_key, '2024-04')
        self.assertEqual(trade.rate, 5.20)
        self.assertEqual([m.month_key for m in result.monthly], ['2024-04'])

    def test_ctrader_report(self):
        rows = [{
            'TradeID': '55', 'Symbol': 'EURUSD', 'Direction': 'Buy',
            'Close Time': '2024-04-02 12:00:00', 'Commissions': '-1.2', 'Swap': '0',
            'Net Profit': '1.234,50',
        }]
        result = self.engine.apportion(rows)

        self.assertEqual(result.platform, "CTrader")
        self.assertAlmostEqual(result.trades[0].result_usd, 1234.5)
        self.assertEqual(result.trades[0].extra['tradeid'], '55')

    def test_mt5_deals_report(self):
        rows = [{
            'N. do Trade': '9', 'Ativo': 'WIN', 'Datade  Fechamento': '20/03/2024 16:00',
            'Resultado': '15', 'Comissão': '', 'Swap': '',
        }]
        result = self.engine.apportion(rows)

        self.assertEqual(result.platform, "Metatrader 5 (Negócios)")
        self.assertEqual(result.monthly[0].month_key, '2024-03')
        self.assertAlmostEqual(result.total_brl, 15 * 5.10)

    def test_explicit_mapping(self):
        rows = [{'Close Time': '2024.03.15 23:59', 'Item': 'eurusd', 'Profit': '5'}]
        result = self.engine.apportion(rows, mapping=mapping_for(Platform.MT4))

        self.assertEqual(result.platform, "Metatrader 4")
        self.assertEqual(result.trades[0].symbol, 'eurusd')

    def test_blank_result_counts_as_zero(self):
        result = self.engine.apportion([mt5_row('2024.03.15 10:00:00', 'EURUSD', '')])
        self.assertEqual(result.total_brl, 0.0)
        self.assertEqual(result.annual_tax_brl, 0.0)

    def test_empty_report(self):
        with self.assertRaises(UnrecognizedFormatError):
            self.engine.apportion([])

    def test_unrecognized_report_fetches_nothing(self):
        with self.assertRaises(UnrecognizedFormatError):
            self.engine.apportion([{'Date': '2024-03-15', 'Amount': '10'}])
        self.resolver.session.get.assert_not_called()

    def test_malformed_date_before_rate_lookup(self):
        """Test a bad row failing the report before any PTAX request."""
        rows = [
            mt5_row('2024.01.10 10:00:00', 'EURUSD', '10'),   # not cached
            mt5_row('15-03-2024', 'EURUSD', '10'),
        ]
        with self.assertRaises(MalformedDateError) as ctx:
            self.engine.apportion(rows)

        self.assertEqual(ctx.exception.row_number, 2)
        self.resolver.session.get.assert_not_called()

    def test_malformed_amount(self):
        with self.assertRaises(MalformedAmountError) as ctx:
            self.engine.apportion([mt5_row('2024.03.15 10:00:00', 'EURUSD', 'abc')])
        self.assertEqual(ctx.exception.row_number, 1)


if __name__ == '__main__':
    unittest.main()
