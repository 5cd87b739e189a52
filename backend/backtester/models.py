"""
Data Models for the Strategy Backtester
"""
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, PositiveInt

from backtester import (
    DEFAULT_FEE_RATE,
    DEFAULT_INITIAL_BALANCE,
    DEFAULT_OPTIMIZATION_TARGET,
    DEFAULT_POSITION_SIZE_PERCENT,
    DEFAULT_SLIPPAGE,
    DEFAULT_TRADE_AMOUNT,
)


class Candle(BaseModel):
    """OHLCV Candle Data (timestamp in epoch milliseconds, UTC)"""
    model_config = ConfigDict(frozen=True)

    timestamp: int
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0


class Signal(str, Enum):
    BUY = "BUY"
    SELL = "SELL"
    NEUTRAL = "NEUTRAL"


class StrategyType(str, Enum):
    MA_CROSSOVER = "MA_CROSSOVER"
    RSI = "RSI"
    BREAKOUT = "BREAKOUT"
    MACD = "MACD"
    BOLLINGER_BANDS = "BOLLINGER_BANDS"
    ICHIMOKU = "ICHIMOKU"
    PATTERN_RECOGNITION = "PATTERN_RECOGNITION"
    MULTI_FACTOR = "MULTI_FACTOR"


class Unbounded(str, Enum):
    """Marks a ratio whose denominator is zero"""
    INFINITY = "Infinity"


# A metric that is either a finite number or explicitly unbounded
Ratio = Union[Unbounded, float]


# ==================== STRATEGY ====================

class StrategyParameters(BaseModel):
    """Parameters common to every strategy"""
    model_config = ConfigDict(extra="allow")

    pair: str


class MACrossoverParameters(StrategyParameters):
    shortPeriod: PositiveInt = 10
    longPeriod: PositiveInt = 50


class RSIParameters(StrategyParameters):
    period: PositiveInt = 14
    overbought: float = 70.0
    oversold: float = 30.0


class BreakoutParameters(StrategyParameters):
    lookbackPeriod: PositiveInt = 20
    breakoutThreshold: float = 2.0  # percent


class MACDParameters(StrategyParameters):
    fastPeriod: PositiveInt = 12
    slowPeriod: PositiveInt = 26
    signalPeriod: PositiveInt = 9


class BollingerBandsParameters(StrategyParameters):
    period: PositiveInt = 20
    standardDeviations: float = 2.0


class IchimokuParameters(StrategyParameters):
    conversionPeriod: PositiveInt = 9
    basePeriod: PositiveInt = 26
    laggingSpanPeriod: PositiveInt = 52
    displacement: PositiveInt = 26


CandlePattern = Literal["doji", "hammer", "engulfing", "morningstar", "eveningstar"]


class PatternRecognitionParameters(StrategyParameters):
    patterns: List[CandlePattern] = ["doji", "hammer", "engulfing", "morningstar", "eveningstar"]
    minStrength: float = Field(0.7, ge=0, le=1)


class MultiFactorParameters(StrategyParameters):
    """Combines the signals of embedded strategies"""
    strategies: List["Strategy"] = Field(min_length=1)
    weights: Optional[List[float]] = None  # one per strategy, default 1
    operator: Literal["AND", "OR", "WEIGHTED"] = "WEIGHTED"


PARAMETER_MODELS = {
    StrategyType.MA_CROSSOVER: MACrossoverParameters,
    StrategyType.RSI: RSIParameters,
    StrategyType.BREAKOUT: BreakoutParameters,
    StrategyType.MACD: MACDParameters,
    StrategyType.BOLLINGER_BANDS: BollingerBandsParameters,
    StrategyType.ICHIMOKU: IchimokuParameters,
    StrategyType.PATTERN_RECOGNITION: PatternRecognitionParameters,
    StrategyType.MULTI_FACTOR: MultiFactorParameters,
}


class StrategyPerformance(BaseModel):
    totalPnL: float
    winRate: float
    tradesCount: int


class Strategy(BaseModel):
    """Trading Strategy"""
    id: str = ""
    name: str = ""
    type: str
    parameters: Dict[str, Any] = {}
    created: Optional[str] = None
    performance: Optional[StrategyPerformance] = None


MultiFactorParameters.model_rebuild()


# ==================== BACKTEST ====================

class BacktestSettings(BaseModel):
    """Simulation knobs shared by single runs and optimization sweeps"""
    initialBalance: float = Field(DEFAULT_INITIAL_BALANCE, gt=0)
    feeRate: float = Field(DEFAULT_FEE_RATE, ge=0)
    slippage: float = Field(DEFAULT_SLIPPAGE, ge=0)
    positionSizePercent: float = Field(DEFAULT_POSITION_SIZE_PERCENT, gt=0)
    fixedTradeAmount: bool = False
    tradeAmount: float = Field(DEFAULT_TRADE_AMOUNT, gt=0)
    riskPercentage: Optional[float] = Field(None, gt=0)  # percent of balance risked per trade
    stopLoss: Optional[float] = Field(None, gt=0)  # percent
    takeProfit: Optional[float] = Field(None, gt=0)  # percent
    warmupPeriod: int = Field(0, ge=0)
    riskFreeRate: float = 0.0  # annual, fraction


class BacktestOptions(BacktestSettings):
    """Backtest Request Options (ISO-8601 dates)"""
    startDate: Optional[str] = None
    endDate: Optional[str] = None


class BacktestParameters(BacktestSettings):
    """Base parameters of an optimization sweep"""
    strategy: Optional[Strategy] = None


class TradeMetadata(BaseModel):
    entryPrice: float
    entryTimestamp: int
    exitReason: str
    fees: float = 0.0


class Trade(BaseModel):
    """Closed position"""
    model_config = ConfigDict(frozen=True)

    id: str
    pair: str
    timestamp: int
    side: str
    price: float
    amount: float
    total: float
    pnl: float
    pnlPercent: float
    status: str = "closed"
    metadata: TradeMetadata


class BalanceHistoryPoint(BaseModel):
    timestamp: int
    balance: float


class BacktestMetrics(BaseModel):
    dailyReturns: List[float] = []
    monthlyReturns: List[float] = []
    volatility: float = 0.0
    profitFactor: Ratio = 0.0
    recoveryFactor: Ratio = 0.0
    averageWin: float = 0.0
    averageLoss: float = 0.0
    averageTrade: float = 0.0
    largestWin: float = 0.0
    largestLoss: float = 0.0
    averageHoldingPeriod: float = 0.0  # milliseconds
    bestMonth: float = 0.0
    worstMonth: float = 0.0


class BacktestResult(BaseModel):
    """Backtest Result"""
    strategyId: str
    startDate: str
    endDate: str
    initialBalance: float
    finalBalance: float
    totalPnL: float
    totalTrades: int
    winningTrades: int
    losingTrades: int
    winRate: float
    maxDrawdown: float  # percent of peak balance
    sharpeRatio: float
    trades: List[Trade] = []
    balanceHistory: List[BalanceHistoryPoint] = []
    metrics: BacktestMetrics = BacktestMetrics()


# ==================== OPTIMIZATION ====================

class OptimizationRequest(BaseModel):
    """Optimization Request"""
    pair: str
    timeframe: Optional[str] = None
    startDate: str
    endDate: str
    baseParameters: BacktestParameters
    parameterRanges: Dict[str, List[float]]
    optimizationTarget: str = DEFAULT_OPTIMIZATION_TARGET
    limit: int = Field(50, gt=0)


class BacktestRequest(BaseModel):
    """Backtest Request"""
    strategy: Strategy
    options: BacktestOptions
    candles: Optional[List[Candle]] = None


class OptimizationResult(BaseModel):
    """Optimization Result"""
    pair: str
    timeframe: Optional[str] = None
    startTime: int
    endTime: int
    optimizationTarget: str
    parameterRanges: Dict[str, List[float]]
    baseParameters: BacktestParameters
    results: List[Dict[str, Any]] = []
    bestParameters: Dict[str, Any] = {}
    bestResult: Dict[str, Any] = {}
    totalCombinations: int = 0
    failedCombinations: int = 0
