"""
Backtester Exceptions
"""


class BacktestError(Exception):
    """Base class for engine errors"""


class InputError(BacktestError, ValueError):
    """Request cannot be simulated (missing dates, pair, bad ranges)"""


class DataUnavailableError(InputError):
    """No historical candles for the requested pair and range"""

    def __init__(self, pair: str, start: int, end: int):
        self.pair = pair
        self.start = start
        self.end = end
        super().__init__(
            f"No historical data available for {pair or '<no pair>'} between {start} and {end}"
        )


class StrategyConfigError(BacktestError, ValueError):
    """Strategy parameters do not fit the strategy type"""
