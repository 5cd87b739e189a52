"""
Strategy Backtester
Signal evaluation, position simulation, metrics and parameter sweeps
"""

__version__ = "1.0.0"

# Defaults shared by the engine, the optimizer and the HTTP layer
DEFAULT_INITIAL_BALANCE = 10000.0
DEFAULT_FEE_RATE = 0.001
DEFAULT_SLIPPAGE = 0.001
DEFAULT_POSITION_SIZE_PERCENT = 10.0
DEFAULT_TRADE_AMOUNT = 1000.0
DEFAULT_OPTIMIZATION_TARGET = "totalPnL"
DEFAULT_RISK_STOP_PERCENT = 2.0  # stop distance assumed by risk sizing without a stop-loss
