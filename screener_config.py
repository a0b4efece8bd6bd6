#!/usr/bin/env python3
# -*- coding: utf-8 -*-

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Pattern


def _env_float(name: str, default: float) -> float:
    v = os.getenv(name)
    if v is None or not str(v).strip():
        return default
    try:
        return float(str(v).strip())
    except Exception:
        return default


def _env_int(name: str, default: int) -> int:
    v = os.getenv(name)
    if v is None or not str(v).strip():
        return default
    try:
        return int(str(v).strip())
    except Exception:
        return default


def _env_bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None or not str(v).strip():
        return default
    return str(v).strip().lower() in ("1", "true", "yes", "y", "on")


def _env_csv_list(name: str, default: List[str]) -> List[str]:
    raw = os.getenv(name)
    if raw is None or not str(raw).strip():
        return list(default)
    return [x.strip() for x in str(raw).replace(";", ",").split(",") if x.strip()]


_MIN = 60 * 1000
_HOUR = 60 * _MIN
_DAY = 24 * _HOUR

TIMEFRAME_MS: Dict[str, int] = {
    "1m": _MIN,
    "5m": 5 * _MIN,
    "15m": 15 * _MIN,
    "1h": _HOUR,
    "4h": 4 * _HOUR,
    "1d": _DAY,
}

# how long a setup stays valid after detection
SETUP_EXPIRY_MS: Dict[str, int] = {
    "1m": 30 * _MIN,
    "5m": 2 * _HOUR,
    "15m": 6 * _HOUR,
    "1h": 24 * _HOUR,
    "4h": 48 * _HOUR,
    "1d": 7 * _DAY,
}

# minimum wait after played_out before the same key may host a new setup
RETRIGGER_COOLDOWN_MS: Dict[str, int] = {
    "5m": 5 * _MIN,
    "15m": 15 * _MIN,
}
DEFAULT_RETRIGGER_COOLDOWN_MS = 30 * _MIN

# higher timeframe used for the informational trend check
HTF_FOR: Dict[str, str] = {
    "1m": "15m",
    "5m": "1h",
    "15m": "4h",
    "1h": "4h",
    "4h": "1d",
}

MEXC_SPOT_INTERVAL: Dict[str, str] = {
    "1m": "1m",
    "5m": "5m",
    "15m": "15m",
    "1h": "60m",
    "4h": "4h",
    "1d": "1d",
}

MEXC_FUTURES_INTERVAL: Dict[str, str] = {
    "1m": "Min1",
    "5m": "Min5",
    "15m": "Min15",
    "1h": "Min60",
    "4h": "Hour4",
    "1d": "Day1",
}

CANDLES_TO_FETCH = 100

# stablecoins, leveraged tokens, wrapped assets, meme clones
EXCLUDE_PATTERNS: List[Pattern[str]] = [
    re.compile(p, f)
    for p, f in [
        (r"^USDT", re.I), (r"^USDC", re.I), (r"^BUSD", re.I), (r"^DAI", re.I),
        (r"^TUSD", re.I), (r"^USDP", re.I), (r"^GUSD", re.I), (r"^FRAX", re.I),
        (r"^LUSD", re.I), (r"^SUSD", re.I), (r"^USDD", re.I), (r"^FDUSD", re.I),
        (r"^PYUSD", re.I), (r"^EURC", re.I), (r"^EUR[A-Z]", re.I), (r"^UST", re.I),
        (r"\d+[LS]$", re.I), (r"BULL$", re.I), (r"BEAR$", re.I),
        (r"UP$", re.I), (r"DOWN$", re.I),
        (r"^W[A-Z]{2,}", 0),
        (r"TEST", re.I), (r"OLD$", re.I), (r"^LEGACY", re.I),
        (r"^SAFE", re.I), (r"^BABY", re.I), (r"^MINI", re.I),
        (r"INU$", re.I), (r"MOON$", re.I), (r"ELON$", re.I),
        (r"DOGE(?!$)", re.I), (r"SHIB(?!$)", re.I), (r"PEPE(?!$)", re.I),
    ]
]


def base_asset(symbol: str) -> str:
    s = symbol.replace("_", "")
    return s[:-4] if s.endswith("USDT") else s


def is_excluded(symbol: str) -> bool:
    base = base_asset(symbol)
    return any(p.search(base) for p in EXCLUDE_PATTERNS)


def expiry_ms(timeframe: str) -> int:
    return SETUP_EXPIRY_MS.get(timeframe, 24 * _HOUR)


def retrigger_cooldown_ms(timeframe: str) -> int:
    return RETRIGGER_COOLDOWN_MS.get(timeframe, DEFAULT_RETRIGGER_COOLDOWN_MS)


@dataclass
class VolumeTiers:
    bluechip: float = 1_000_000_000.0
    midcap: float = 100_000_000.0
    lowcap: float = 10_000_000.0


@dataclass
class ScreenerConfig:
    timeframes: List[str] = field(default_factory=lambda: ["5m", "15m", "1h"])

    rsi_period: int = 14
    rsi_oversold_threshold: float = 30.0
    rsi_deep_oversold_threshold: float = 20.0
    rsi_overbought_threshold: float = 70.0
    rsi_deep_overbought_threshold: float = 80.0

    min_impulse_percent: float = 5.0
    impulse_lookback: int = 50
    min_candles: int = 50

    min_volume_24h: float = 250_000.0
    min_market_cap: float = 5_000_000.0
    volume_tiers: VolumeTiers = field(default_factory=VolumeTiers)

    # scanning
    update_interval_sec: float = 10.0
    candles_to_fetch: int = CANDLES_TO_FETCH
    max_concurrent_requests: int = 10
    min_request_delay_ms: int = 100
    max_retries: int = 3
    futures_max_concurrent: int = 1
    futures_min_delay_ms: int = 300
    price_cache_ttl_sec: float = 5.0
    ticker_cache_ttl_sec: float = 60.0
    top_n_symbols: int = 0  # 0 = no cap
    played_out_retention_ms: int = 30 * _MIN

    @classmethod
    def from_env(cls, base: Optional["ScreenerConfig"] = None) -> "ScreenerConfig":
        cfg = base or cls()
        cfg.timeframes = _env_csv_list("BB_TIMEFRAMES", cfg.timeframes)
        cfg.rsi_period = _env_int("BB_RSI_PERIOD", cfg.rsi_period)
        cfg.rsi_oversold_threshold = _env_float("BB_RSI_OVERSOLD", cfg.rsi_oversold_threshold)
        cfg.rsi_deep_oversold_threshold = _env_float("BB_RSI_DEEP_OVERSOLD", cfg.rsi_deep_oversold_threshold)
        cfg.rsi_overbought_threshold = _env_float("BB_RSI_OVERBOUGHT", cfg.rsi_overbought_threshold)
        cfg.rsi_deep_overbought_threshold = _env_float("BB_RSI_DEEP_OVERBOUGHT", cfg.rsi_deep_overbought_threshold)
        cfg.min_impulse_percent = _env_float("BB_MIN_IMPULSE_PCT", cfg.min_impulse_percent)
        cfg.min_volume_24h = _env_float("BB_MIN_VOLUME_24H", cfg.min_volume_24h)
        cfg.min_market_cap = _env_float("BB_MIN_MARKET_CAP", cfg.min_market_cap)
        cfg.volume_tiers.bluechip = _env_float("BB_TIER_BLUECHIP", cfg.volume_tiers.bluechip)
        cfg.volume_tiers.midcap = _env_float("BB_TIER_MIDCAP", cfg.volume_tiers.midcap)
        cfg.volume_tiers.lowcap = _env_float("BB_TIER_LOWCAP", cfg.volume_tiers.lowcap)
        cfg.update_interval_sec = _env_float("BB_UPDATE_INTERVAL_SEC", cfg.update_interval_sec)
        cfg.candles_to_fetch = _env_int("BB_CANDLES", cfg.candles_to_fetch)
        cfg.max_concurrent_requests = _env_int("BB_MAX_CONCURRENT", cfg.max_concurrent_requests)
        cfg.min_request_delay_ms = _env_int("BB_MIN_REQUEST_DELAY_MS", cfg.min_request_delay_ms)
        cfg.max_retries = _env_int("BB_MAX_RETRIES", cfg.max_retries)
        cfg.top_n_symbols = _env_int("BB_TOP_N", cfg.top_n_symbols)
        cfg.played_out_retention_ms = _env_int("BB_PLAYED_OUT_RETENTION_MS", cfg.played_out_retention_ms)
        cfg.validate()
        return cfg

    def validate(self) -> None:
        if self.rsi_period < 2:
            raise ValueError(f"rsi_period must be >= 2, got {self.rsi_period}")
        if not (self.rsi_deep_oversold_threshold <= self.rsi_oversold_threshold
                < self.rsi_overbought_threshold <= self.rsi_deep_overbought_threshold):
            raise ValueError("RSI thresholds must satisfy deep_oversold <= oversold < overbought <= deep_overbought")
        unknown = [tf for tf in self.timeframes if tf not in TIMEFRAME_MS]
        if unknown:
            raise ValueError(f"unsupported timeframes: {unknown}")
