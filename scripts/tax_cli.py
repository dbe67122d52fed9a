#!/usr/bin/env python3
"""
Cambial / IR Command Line Interface

This script provides a command-line interface for the exchange-gain ledger
and the trade income-tax calculation, both priced with BCB PTAX rates.

Usage:
    python scripts/tax_cli.py rate --date 2024-06-03
    python scripts/tax_cli.py cambial movimentos.csv --output ledger.csv
    python scripts/tax_cli.py ir relatorio_mt5.csv --month 2024-03
"""

import argparse
import logging
import os
import sys

import pandas as pd

# Add the parent directory to the path to import the modules
sys.path.append(os.path.join(os.path.dirname(__file__), '..'))

from engine.cambial_ledger import CambialLedgerEngine
from engine.exceptions import CalculationError
from engine.parsing import parse_close_date
from engine.platform_detector import describe_signatures
from engine.report_loader import read_capital_transactions, read_trade_report
from engine.settings import DEFAULT_CONFIG_PATH
from engine.trade_tax import TradeTaxEngine
from market_data.ptax_rates import PTAXRateResolver


def setup_logging(verbose: bool = False, log_file: str = None):
    """Set up logging configuration."""
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        os.makedirs(os.path.dirname(log_file) or '.', exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding='utf-8'))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True,
    )
    logging.getLogger('urllib3').setLevel(logging.WARNING)


def brl(value: float) -> str:
    """Format a value the pt-BR way: R$ 1.234,56."""
    text = f"{value:,.2f}".replace(',', '_').replace('.', ',').replace('_', '.')
    return f"R$ {text}"


def usd(value: float) -> str:
    return f"US$ {value:,.2f}"


def save_frame(frame: pd.DataFrame, output_path: str):
    """Write a result table as CSV."""
    if not output_path.endswith('.csv'):
        output_path += '.csv'
    frame.to_csv(output_path, index=False)
    print(f"Data saved to {output_path}")


def platforms_epilog() -> str:
    """Recognized report layouts and the columns that identify them."""
    lines = ["Recognized report layouts (required columns):"]
    for name, columns in describe_signatures().items():
        lines.append(f"  {name}: {', '.join(columns)}")
    return '\n'.join(lines)


def rate_command(args):
    """Handle the rate command."""
    try:
        resolver = PTAXRateResolver(args.config)
        day = parse_close_date(args.date)
        rate = resolver.resolve_rate(day)
    except CalculationError as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(f"PTAX for {day.isoformat()} (quoted {rate.quoted_on.isoformat()}):")
    print(f"  Buy (compra): {rate.buy:.4f}")
    print(f"  Sell (venda): {rate.sell:.4f}")


def cambial_command(args):
    """Handle the cambial command."""
    try:
        resolver = PTAXRateResolver(args.config)
        delimiter = resolver.config['reports']['delimiter']
        transactions = read_capital_transactions(args.file, delimiter=delimiter,
                                                 encoding=resolver.config['reports']['encoding'])
        result = CambialLedgerEngine(resolver).process(transactions)
    except (CalculationError, OSError) as e:
        print(f"Error: {e}")
        sys.exit(1)

    frame = result.to_dataframe()
    print(f"\nProcessed {len(frame)} capital movements\n")
    print(frame.to_string(index=False))

    s = result.summary
    print("\nSummary:")
    if s.allocate_to_next_year:
        print(f"  Carry to next year:          {brl(s.final_balance_brl)}")
    print(f"  Total exchange result:       {brl(s.total_gain_loss_brl)}")
    print(f"  Taxable exchange gain:       {brl(s.taxable_gain_brl)}")
    print(f"  Tax due (DARF):              {brl(s.tax_due_brl)}")
    print(f"  Total sent:                  {usd(s.total_deposited_usd)} / {brl(s.total_deposited_brl)}")
    print(f"  Total withdrawn:             {usd(s.total_withdrawn_usd)} / {brl(s.total_withdrawn_brl)}")
    print(f"  Current balance:             {usd(s.balance_usd)} / {brl(s.final_balance_brl)}")

    if args.output:
        save_frame(frame, args.output)


def ir_command(args):
    """Handle the ir command."""
    try:
        resolver = PTAXRateResolver(args.config)
        rows = read_trade_report(args.file, delimiter=resolver.config['reports']['delimiter'],
                                 encoding=resolver.config['reports']['encoding'])
        result = TradeTaxEngine(resolver).apportion(rows)
    except (CalculationError, OSError) as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(f"\nPlatform: {result.platform}")
    print(f"Trades: {len(result.trades)}\n")
    print(result.monthly_dataframe().to_string(index=False))

    print("\nSummary:")
    print(f"  Total result (USD):          {usd(result.total_usd)}")
    print(f"  Total result (BRL):          {brl(result.total_brl)}")
    print(f"  Annual tax (DARF):           {brl(result.annual_tax_brl)}")
    print(f"  Result after tax:            {brl(result.result_after_tax_brl)}")
    if result.loss_to_offset_brl:
        print(f"  Loss to offset future gains: {brl(result.loss_to_offset_brl)}")

    if args.month:
        trades = result.trades_for_month(args.month)
        print(f"\nTrades closed in {args.month}: {len(trades)}")
        if trades:
            detail = pd.DataFrame([t.to_dict() for t in trades])
            print(detail[['close_date', 'symbol', 'result_usd', 'rate', 'result_brl']].to_string(index=False))

    if args.output:
        save_frame(result.trades_dataframe(), args.output)


def main(argv=None):
    """Main CLI function."""
    parser = argparse.ArgumentParser(
        description="Cambial and IR calculator for offshore trading accounts (PTAX/BCB)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/tax_cli.py rate --date 2024-06-03
  python scripts/tax_cli.py cambial movimentos.csv --output ledger.csv
  python scripts/tax_cli.py ir relatorio_mt5.csv --month 2024-03 --output trades.csv
        """
    )
    parser.add_argument('--config', default=DEFAULT_CONFIG_PATH,
                        help=f'Settings file (default: {DEFAULT_CONFIG_PATH})')
    parser.add_argument('--verbose', action='store_true', help='Verbose logging')
    parser.add_argument('--log-file', help='Also write logs to this file')

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    # Rate command
    rate_parser = subparsers.add_parser('rate', help='Show the PTAX buy/sell rate for a date')
    rate_parser.add_argument('--date', required=True, help='Date (YYYY-MM-DD or DD/MM/YYYY)')
    rate_parser.set_defaults(func=rate_command)

    # Cambial command
    cambial_parser = subparsers.add_parser('cambial', help='Exchange gain on capital movements')
    cambial_parser.add_argument('file', help='CSV with date,type,amount columns')
    cambial_parser.add_argument('--output', help='Write the ledger rows to this CSV file')
    cambial_parser.set_defaults(func=cambial_command)

    # IR command
    ir_parser = subparsers.add_parser('ir', help='Income tax on a broker trade report',
                                      formatter_class=argparse.RawDescriptionHelpFormatter,
                                      epilog=platforms_epilog())
    ir_parser.add_argument('file', help='Trade report exported by MetaTrader or cTrader')
    ir_parser.add_argument('--month', help='List the trades of one month (YYYY-MM)')
    ir_parser.add_argument('--output', help='Write the converted trades to this CSV file')
    ir_parser.set_defaults(func=ir_command)

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    setup_logging(args.verbose, args.log_file)

    # Execute command
    args.func(args)


if __name__ == '__main__':
    main()
