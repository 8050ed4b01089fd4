#!/usr/bin/env python
"""Order management CLI: inspect and clean up an Aster futures account.

Usage:
    python scripts/order_manager.py --symbol BTCUSDT list-orders
    python scripts/order_manager.py list-positions
    python scripts/order_manager.py --symbol BTCUSDT cancel <order_id>
    python scripts/order_manager.py --symbol BTCUSDT cancel-all
"""
import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from perp_trading.exchange import ExchangeError
from perp_trading.rest_client import AsterRestClient
from perp_trading.secrets import load_credentials


def list_orders(client, symbol):
    """List resting orders for a symbol."""
    orders = client.get_open_orders(symbol)
    if not orders:
        print(f"No open orders for {symbol}")
        return

    print(f"{'Order ID':<14} {'Type':<22} {'Side':<5} {'Price':<12} {'Stop':<12} {'Qty':<10} {'Status':<16}")
    print("-" * 95)
    for order in orders:
        print(
            f"{order.order_id:<14} {order.type.value:<22} {order.side.value:<5} "
            f"{str(order.price):<12} {str(order.stop_price):<12} {str(order.orig_qty):<10} {order.status:<16}"
        )
    print(f"\nTotal orders: {len(orders)}")


def list_positions(client):
    """List positions with non-zero exposure."""
    account = client.get_account()
    positions = [p for p in account.positions if p.position_amt != 0]
    if not positions:
        print("No open positions")
        return

    print(f"{'Symbol':<12} {'Side':<6} {'Amount':<12} {'Entry':<14} {'Unrealized':<12}")
    print("-" * 60)
    for pos in positions:
        side = "LONG" if pos.position_amt > 0 else "SHORT"
        print(
            f"{pos.symbol:<12} {side:<6} {str(abs(pos.position_amt)):<12} "
            f"{str(pos.entry_price):<14} {str(pos.unrealized_profit):<12}"
        )
    print(f"\nWallet balance: {account.total_wallet_balance}")


def cancel_order(client, symbol, order_id):
    if client.cancel_order(symbol, order_id):
        print(f"Order cancelled: {order_id}")
    else:
        print(f"Order not found (already filled or cancelled): {order_id}")


def cancel_all(client, symbol):
    client.cancel_all_orders(symbol)
    print(f"All open orders cancelled for {symbol}")


def main():
    parser = argparse.ArgumentParser(description="Order management CLI")
    parser.add_argument("--symbol", default="BTCUSDT", help="Trading symbol")
    parser.add_argument("--config-path", help="Path to credentials JSON file")
    parser.add_argument("--base-url", default="https://fapi.asterdex.com", help="REST base URL")

    subparsers = parser.add_subparsers(dest="command", help="Command")
    subparsers.add_parser("list-orders", help="List open orders")
    subparsers.add_parser("list-positions", help="List open positions")
    cancel_parser = subparsers.add_parser("cancel", help="Cancel one order")
    cancel_parser.add_argument("order_id", type=int, help="Order ID to cancel")
    subparsers.add_parser("cancel-all", help="Cancel all open orders for the symbol")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        creds = load_credentials(config_path=args.config_path)
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(1)

    client = AsterRestClient.from_credentials(creds, base_url=args.base_url)
    symbol = args.symbol.upper()

    try:
        if args.command == "list-orders":
            list_orders(client, symbol)
        elif args.command == "list-positions":
            list_positions(client)
        elif args.command == "cancel":
            cancel_order(client, symbol, args.order_id)
        elif args.command == "cancel-all":
            cancel_all(client, symbol)
    except ExchangeError as e:
        print(f"Exchange error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
