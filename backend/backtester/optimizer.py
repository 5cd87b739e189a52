"""
Optimization Engine with Multi-Processing
Grid sweep over strategy parameters and simulation settings
"""
import logging
import math
import time
from enum import Enum
from itertools import product
from multiprocessing import Pool, cpu_count
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from backtester import DEFAULT_OPTIMIZATION_TARGET
from backtester.backtest import BacktestEngine, load_candles
from backtester.config import get_settings
from backtester.data import HistoricalDataSource, candles_to_arrays, format_date, parse_date
from backtester.exceptions import InputError
from backtester.models import (
    BacktestOptions,
    BacktestParameters,
    BacktestResult,
    BacktestSettings,
    Candle,
    OptimizationResult,
    Strategy,
)

logger = logging.getLogger(__name__)

OPTION_FIELDS = frozenset(BacktestSettings.model_fields)

# Float noise allowance when counting steps
_STEP_EPSILON = 1e-9

# Candle arrays of the running sweep, set once per worker process
_worker_data: Optional[Dict[str, np.ndarray]] = None


def parameter_values(start: float, end: float, step: float) -> List[float]:
    """start, start+step, ... up to and including end (step counted, not accumulated)"""
    if step <= 0:
        raise InputError(f"Step must be positive (got {step})")
    if start > end:
        raise InputError(f"Range start {start} is greater than end {end}")
    count = math.floor((end - start) / step + _STEP_EPSILON)
    return [start + i * step for i in range(count + 1)]


def generate_combinations(parameter_ranges: Dict[str, Sequence[float]]) -> List[Dict[str, Any]]:
    """Cartesian product of every parameter's values, in insertion order"""
    param_names = list(parameter_ranges.keys())
    param_values = []
    for name in param_names:
        range_config = parameter_ranges[name]
        if len(range_config) != 3:
            raise InputError(f"Range for {name!r} must be [start, end, step]")
        param_values.append(parameter_values(*range_config))

    return [dict(zip(param_names, combo)) for combo in product(*param_values)]


def merge_parameters(base: BacktestParameters, combination: Dict[str, Any],
                     pair: str) -> Tuple[Strategy, Dict[str, Any]]:
    """Apply one combination: option names go to the settings, the rest to the strategy"""
    if base.strategy is None:
        raise InputError("Missing strategy in parameters")

    settings = base.model_dump(exclude={'strategy'})
    parameters = dict(base.strategy.parameters, pair=pair)
    for name, value in combination.items():
        if name in OPTION_FIELDS:
            settings[name] = value
        else:
            parameters[name] = value

    return base.strategy.model_copy(update={'parameters': parameters}), settings


def lookup_metric(result: BacktestResult, target: str) -> Any:
    """Target value from the result, falling back to its metrics block"""
    if target in BacktestResult.model_fields:
        return getattr(result, target)
    return getattr(result.metrics, target, None)


def target_value(result: BacktestResult, target: str) -> float:
    """Numeric ranking key; anything non-numeric ranks as 0"""
    value = lookup_metric(result, target)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0.0
    return float(value)


def _evaluate(data: Dict[str, np.ndarray], task: Tuple) -> Tuple[int, Dict[str, Any], Optional[BacktestResult], Optional[str]]:
    """Run one combination; failures come back as an error message"""
    index, base_dict, combination, pair, start_date, end_date = task
    try:
        base = BacktestParameters(**base_dict)
        strategy, settings = merge_parameters(base, combination, pair)
        options = BacktestOptions(**settings, startDate=start_date, endDate=end_date)
        result = BacktestEngine(data).run(strategy, options)
        return index, combination, result, None
    except Exception as e:
        return index, combination, None, f"{type(e).__name__}: {e}"


def _init_worker(data: Dict[str, np.ndarray]) -> None:
    global _worker_data
    _worker_data = data


def _run_single_backtest(task: Tuple):
    """Run single backtest (worker function)"""
    return _evaluate(_worker_data, task)


def _to_timestamp(value: Union[int, str, None]) -> int:
    if isinstance(value, (int, np.integer)):
        return int(value)
    if not value:
        raise InputError("Start and end dates are required for optimization")
    try:
        return parse_date(value)
    except (ValueError, TypeError) as e:
        raise InputError(f"Invalid date {value!r}: {e}") from e


class Optimizer:
    """Parameter sweep over a shared candle series"""

    def __init__(self, data_source: Optional[HistoricalDataSource] = None,
                 candles: Optional[Sequence[Candle]] = None,
                 max_workers: Optional[int] = None):
        self.data_source = data_source
        self.candles = candles
        self.num_cores = max(1, min(max_workers or get_settings().max_workers, cpu_count()))

    def optimize(self, pair: str, timeframe: Optional[str],
                 start: Union[int, str], end: Union[int, str],
                 base_parameters: BacktestParameters,
                 parameter_ranges: Dict[str, Sequence[float]],
                 target: str = DEFAULT_OPTIMIZATION_TARGET,
                 progress_callback: Optional[Callable[[int, int], None]] = None,
                 cancel: Optional[Callable[[], bool]] = None) -> OptimizationResult:
        """Run optimization"""
        if not pair:
            raise InputError("Missing required parameter: pair")

        start_time, end_time = _to_timestamp(start), _to_timestamp(end)
        if start_time > end_time:
            raise InputError(f"Start {start} is after end {end}")
        start_date = start if isinstance(start, str) else format_date(start_time)
        end_date = end if isinstance(end, str) else format_date(end_time)

        candles = load_candles(pair, start_time, end_time, candles=self.candles,
                               data_source=self.data_source, timeframe=timeframe)
        data = candles_to_arrays(candles)

        combinations = generate_combinations(parameter_ranges)
        total_combinations = len(combinations)
        base_dict = base_parameters.model_dump()
        tasks = [
            (i, base_dict, combo, pair, start_date, end_date)
            for i, combo in enumerate(combinations)
        ]

        logger.info("🚀 Optimizing %d combinations over %d bars using %d cores...",
                    total_combinations, len(candles), self.num_cores)

        results: List[Tuple[Dict[str, Any], BacktestResult]] = []
        failed = 0
        started = time.time()

        def collect(done: int, outcome) -> None:
            nonlocal failed
            _, params, result, error = outcome
            if error is not None:
                failed += 1
                logger.warning("Combination %s failed: %s", params, error)
            else:
                results.append((params, result))

            if done % max(1, total_combinations // 10) == 0 or done % 100 == 0:
                elapsed = time.time() - started
                rate = done / elapsed if elapsed > 0 else 0.0
                logger.info("📊 Progress: %d/%d (%.1f%%) | Elapsed: %.1fs | Rate: %.1f comb/s",
                            done, total_combinations, done / total_combinations * 100, elapsed, rate)
            if progress_callback:
                progress_callback(done, total_combinations)

        if self.num_cores == 1 or total_combinations <= 1:
            for i, task in enumerate(tasks):
                if cancel and cancel():
                    logger.info("Optimization cancelled after %d/%d combinations", i, total_combinations)
                    break
                collect(i + 1, _evaluate(data, task))
        else:
            with Pool(processes=self.num_cores, initializer=_init_worker, initargs=(data,)) as pool:
                for i, outcome in enumerate(pool.imap(_run_single_backtest, tasks)):
                    collect(i + 1, outcome)
                    if cancel and cancel() and i + 1 < total_combinations:
                        logger.info("Optimization cancelled after %d/%d combinations",
                                    i + 1, total_combinations)
                        break

        # Sort by target (descending); ties keep generation order
        results.sort(key=lambda item: target_value(item[1], target), reverse=True)

        logger.info("✅ Optimization complete: %d succeeded, %d failed in %.1fs",
                    len(results), failed, time.time() - started)

        best_parameters, best_result = (results[0][0], results[0][1].model_dump(mode='json')) if results else ({}, {})
        return OptimizationResult(
            pair=pair,
            timeframe=timeframe,
            startTime=start_time,
            endTime=end_time,
            optimizationTarget=target,
            parameterRanges={name: list(r) for name, r in parameter_ranges.items()},
            baseParameters=base_parameters,
            results=[
                {'parameters': params, target: _json_value(lookup_metric(result, target))}
                for params, result in results
            ],
            bestParameters=best_parameters,
            bestResult=best_result,
            totalCombinations=total_combinations,
            failedCombinations=failed,
        )


def _json_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value
