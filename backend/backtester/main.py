"""
Strategy Backtester HTTP Service
FastAPI + NumPy + Multiprocessing
"""
import logging
import time
from contextlib import asynccontextmanager
from io import StringIO
from typing import Optional

import pandas as pd
from fastapi import FastAPI, File, HTTPException, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware

from backtester import __version__
from backtester.backtest import run_backtest as run_single_backtest
from backtester.config import configure_logging, get_settings
from backtester.data import (
    ChainedDataSource,
    CSVDataSource,
    InMemoryDataSource,
    parse_candle_frame,
    parse_date,
)
from backtester.exceptions import InputError, StrategyConfigError
from backtester.models import (
    BacktestRequest,
    BacktestResult,
    BacktestSettings,
    OptimizationRequest,
    OptimizationResult,
)
from backtester.optimizer import Optimizer

logger = logging.getLogger(__name__)

# Uploaded candles per pair (in production, use Redis/DB)
uploads = InMemoryDataSource()


def get_data_source():
    """Uploads first, then the CSV directory when one is configured"""
    settings = get_settings()
    if settings.data_dir:
        return ChainedDataSource(uploads, CSVDataSource(settings.data_dir))
    return uploads


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup/shutdown lifecycle"""
    configure_logging()
    logger.info("🚀 Backtester %s started (data dir: %s)", __version__, get_settings().data_dir)
    yield


app = FastAPI(title="Strategy Backtester", version=__version__, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/")
def read_root():
    """Health check"""
    return {
        "status": "online",
        "service": "Strategy Backtester",
        "version": __version__,
    }


@app.post("/upload-csv")
async def upload_csv(pair: str = Query(...), file: UploadFile = File(...)):
    """Upload CSV candles for a pair"""
    try:
        start_time = time.time()

        contents = await file.read()
        candles = parse_candle_frame(pd.read_csv(StringIO(contents.decode('utf-8'))))
        uploads.set_candles(pair, candles)

        elapsed = time.time() - start_time
        return {
            "success": True,
            "pair": pair,
            "bars": len(candles),
            "elapsed_seconds": round(elapsed, 2),
        }

    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.post("/backtest", response_model=BacktestResult)
def run_backtest(request: BacktestRequest):
    """Run single backtest"""
    start_time = time.time()
    try:
        result = run_single_backtest(
            request.strategy,
            _with_defaults(request.options),
            candles=request.candles,
            data_source=None if request.candles is not None else get_data_source(),
        )
    except StrategyConfigError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except InputError as e:
        raise HTTPException(status_code=400, detail=str(e))

    logger.info("⚡ Backtest completed in %.3fs (%d trades)", time.time() - start_time, result.totalTrades)
    return result


@app.post("/optimize", response_model=OptimizationResult)
def run_optimization(request: OptimizationRequest):
    """Run optimization"""
    start_time = time.time()
    try:
        optimizer = Optimizer(data_source=get_data_source())
        result = optimizer.optimize(
            request.pair,
            request.timeframe,
            request.startDate,
            request.endDate,
            _with_defaults(request.baseParameters),
            request.parameterRanges,
            request.optimizationTarget,
        )
    except InputError as e:
        raise HTTPException(status_code=400, detail=str(e))

    logger.info("✅ Optimization completed in %.2fs", time.time() - start_time)

    # Return top results only
    return result.model_copy(update={"results": result.results[:request.limit]})


@app.get("/status")
def get_status():
    """Get backend status"""
    pairs = uploads.pairs()
    return {
        "data_loaded": bool(pairs),
        "pairs": pairs,
    }


@app.get("/get-data")
def get_data(pair: str, start: Optional[str] = None, end: Optional[str] = None):
    """Get loaded candles for a pair"""
    if pair not in uploads.pairs():
        raise HTTPException(status_code=400, detail=f"No data loaded for {pair}")

    candles = uploads.get_historical_data(pair, *_bounds(start, end))
    return {
        "success": True,
        "bars": len(candles),
        "data": [c.model_dump() for c in candles],
    }


def _bounds(start: Optional[str], end: Optional[str]):
    lower = parse_date(start) if start else -(2**62)
    upper = parse_date(end) if end else 2**62
    return lower, upper


def _with_defaults(settings: BacktestSettings) -> BacktestSettings:
    """Fill unset balance, fee and slippage from the service configuration"""
    config = get_settings()
    defaults = {
        "initialBalance": config.initial_balance,
        "feeRate": config.fee_rate,
        "slippage": config.slippage,
    }
    return settings.model_copy(update={
        name: value for name, value in defaults.items() if name not in settings.model_fields_set
    })


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=4000)
