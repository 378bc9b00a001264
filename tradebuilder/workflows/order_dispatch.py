"""
Order dispatch: turns a buy/sell decision plus OrderData into an order sink
call and reports the outcome to the log sink.

Order failures never raise. A failed order is logged as an Error entry and
the decision logic that triggered it is unaffected.
"""
from typing import Any, Callable, Dict, Optional

from tradebuilder.utils.log_center import setup_logger
from tradebuilder.workflows.graph_compiler import OrderData

logger = setup_logger('tradebuilder.orders')

LogFunc = Callable[[str, str], None]


class OrderSink:
    """
    Collaborator contract for order execution.

    Every call returns {'success': bool, 'data': ...} or
    {'success': False, 'error': ...}.
    """

    def market_buy(self, symbol: str, krw_amount: float) -> Dict[str, Any]:
        raise NotImplementedError()

    def market_sell(self, symbol: str, volume: float) -> Dict[str, Any]:
        raise NotImplementedError()

    def limit_buy_with_krw(self, symbol: str, price: float, krw_amount: float) -> Dict[str, Any]:
        raise NotImplementedError()

    def limit_sell_with_krw(self, symbol: str, price: float, krw_amount: float) -> Dict[str, Any]:
        raise NotImplementedError()


def _describe(action: str, order: OrderData) -> str:
    if order.order_type == 'market' and action == 'sell':
        # market sells are sized in coin volume
        return f"market sell of {order.quantity:g} units"
    if order.order_type == 'market':
        return f"market {action} of {order.quantity:g} KRW"
    return f"limit {action} of {order.quantity:g} KRW at {order.limit_price:g} KRW"


def execute_order(order_sink: Optional[OrderSink], action: str, order: OrderData, stock: str,
                  log: LogFunc) -> Dict[str, Any]:
    """
    Send one order to the sink.

    Args:
        order_sink: exchange adapter; None means orders are only logged
        action: 'buy' or 'sell'
        order: order parameters from the terminal node
        stock: market code (e.g. KRW-BTC)
        log: log sink for the owning logic

    Returns:
        The sink result, or {'success': False, 'error': ...} on failure
    """
    title = 'Buy' if action == 'buy' else 'Sell'
    description = _describe(action, order)

    if order_sink is None:
        log(title, f"Dry run: {description} on {stock} (no order sink configured)")
        return {'success': False, 'error': 'no order sink configured'}

    log(title, f"Placing {description} on {stock}")
    try:
        if action == 'buy' and order.order_type == 'market':
            result = order_sink.market_buy(stock, order.quantity)
        elif action == 'buy':
            result = order_sink.limit_buy_with_krw(stock, order.limit_price, order.quantity)
        elif action == 'sell' and order.order_type == 'market':
            result = order_sink.market_sell(stock, order.quantity)
        elif action == 'sell':
            result = order_sink.limit_sell_with_krw(stock, order.limit_price, order.quantity)
        else:
            raise ValueError(f"Unknown order action: {action}")
    except Exception as e:
        logger.exception('Order dispatch failed for %s %s', action, stock)
        log('Error', f"Order processing error ({description}): {e}")
        return {'success': False, 'error': str(e)}

    result = result or {'success': False, 'error': 'empty response'}
    if result.get('success'):
        log(title, f"Completed {description} on {stock}")
    else:
        log('Error', f"{description.capitalize()} failed: {result.get('error')}")
    return result
