#!/usr/bin/env python3
"""
Command-line runner for saved logic files.

Accepts either a stored logic file ({id, name, stock, data}) or bare logic
data ({buyGraph, sellGraph}).

Usage examples:
  tradebuilder-cli validate my_logic.json
  tradebuilder-cli run-once my_logic.json --stock KRW-BTC --details
"""
import argparse
import json
import sys

from tradebuilder.workflows.errors import CompileError
from tradebuilder.workflows.graph_compiler import describe_tree, validate_logic


def load_logic_file(path):
    with open(path, 'r', encoding='utf-8') as f:
        logic = json.load(f)
    if isinstance(logic, dict) and isinstance(logic.get('data'), dict):
        return logic['data'], logic.get('stock') or ''
    return logic, ''


def print_entry(title, message):
    print(f"[{title}] {message}")


def render_tree(rows):
    return ' -> '.join(f"{r['kind']}({r['operator']})" if r['operator'] else r['kind'] for r in rows)


def cmd_validate(args):
    logic_data, stock = load_logic_file(args.file)
    try:
        compiled = validate_logic(logic_data, args.stock or stock)
    except CompileError as e:
        print(f"Invalid: {e}")
        return 1
    print('Valid')
    print(f"  buy : {render_tree(describe_tree(compiled.buy_root))}")
    print(f"  sell: {render_tree(describe_tree(compiled.sell_root))}")
    print(f"  buy order : {compiled.buy_order.to_dict()}")
    print(f"  sell order: {compiled.sell_order.to_dict()}")
    return 0


def cmd_run_once(args):
    # network clients are only needed here
    from tradebuilder.integrations.upbit_fetch import UpbitClient, UpbitMarketDataProvider
    from tradebuilder.workflows.logic_runner import LogicRunnerManager

    logic_data, stock = load_logic_file(args.file)
    stock = args.stock or stock
    if not stock:
        print('A market code is required (--stock KRW-BTC)')
        return 2

    client = UpbitClient()
    provider = UpbitMarketDataProvider(client)
    order_sink = provider if (args.live and client.has_credentials) else None
    runner = LogicRunnerManager(provider, order_sink=order_sink)
    try:
        result = runner.run_once(stock, logic_data, print_entry, log_details=args.details)
    finally:
        runner.shutdown()
    if result is None:
        return 1
    print(f"buy={result['buy']} sell={result['sell']}")
    return 0


def parse_args(argv=None):
    ap = argparse.ArgumentParser(prog='tradebuilder-cli', description="TradeBuilder logic CLI")
    sub = ap.add_subparsers(dest='command', required=True)

    v = sub.add_parser('validate', help='Compile a logic file and report errors')
    v.add_argument('file', type=str, help='Logic JSON file')
    v.add_argument('--stock', type=str, default='', help='Market code (e.g. KRW-BTC)')
    v.set_defaults(func=cmd_validate)

    r = sub.add_parser('run-once', help='Evaluate a logic once against live data')
    r.add_argument('file', type=str, help='Logic JSON file')
    r.add_argument('--stock', type=str, default='', help='Market code (e.g. KRW-BTC)')
    r.add_argument('--details', action='store_true', help='Log every node evaluation')
    r.add_argument('--live', action='store_true', help='Send real orders (needs UPBIT_* keys)')
    r.set_defaults(func=cmd_run_once)
    return ap.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    try:
        return args.func(args)
    except (OSError, ValueError) as e:
        print(f"Error: {e}")
        return 2


if __name__ == '__main__':
    sys.exit(main())
