"""
Configuration schema and loader.

This module defines dataclasses that mirror the expected structure of
the YAML configuration file (`config.yaml`).  A helper function
`load_config()` reads a YAML file from disk and returns an instance
of `Config` populated with reasonable defaults for any missing
fields.

Using dataclasses provides type hints and a clear contract for what
values are expected.  When extending the configuration, add new
fields to the appropriate dataclass; `load_config()` picks up the
defaults automatically.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import List, Optional, Dict, Any
import pandas as pd
import yaml

from ..errors import ConfigurationError
from ..utils.timeutils import to_utc


@dataclass
class SimulationConfig:
    """Controls the replay loop and the order engine.

    Attributes
    ----------
    base_resolution : str
        Resolution of the candles the loop replays one by one.
    context_resolutions : List[str]
        Resolutions fetched for every decision request.
    order_expiry_minutes : int
        Lifetime of a pending order before it expires unfilled.
    default_lot_size : float
        Lot size used when the oracle does not provide one.
    progress_interval : int
        Log a progress line every this many candles.
    checkpoint_trades : bool
        Persist the running session after every closed trade.
    data_max_retries, data_retry_delay
        Retry policy for market data requests made while building the
        decision context.
    """

    base_resolution: str = "M15"
    context_resolutions: List[str] = field(default_factory=lambda: ["M5", "M15", "H1"])
    order_expiry_minutes: int = 180
    default_lot_size: float = 0.01
    progress_interval: int = 100
    checkpoint_trades: bool = False
    data_max_retries: int = 2
    data_retry_delay: float = 1.0


@dataclass
class CostsConfig:
    """Models trading costs.

    Attributes
    ----------
    commission_per_lot : float
        Flat commission charged per lot when a position closes.
    swap_buy_per_lot_day : float
        Holding cost per lot per full day for BUY positions.  Negative
        values are credited to the account.
    swap_sell_per_lot_day : float
        Holding cost per lot per full day for SELL positions.
    """

    commission_per_lot: float = 7.0
    swap_buy_per_lot_day: float = -2.0
    swap_sell_per_lot_day: float = 1.0


@dataclass
class AccountConfig:
    """Margin model: notional of one lot and the account leverage."""

    leverage: float = 100.0
    contract_size: float = 100_000.0


@dataclass
class InstrumentConfig:
    """Pip conventions.

    `pip_sizes` maps a symbol (e.g. ``"USDJPY"``) to its pip size and
    overrides the built-in defaults.
    """

    default_pip_size: float = 0.0001
    pip_value: float = 1.0
    pip_sizes: Dict[str, float] = field(default_factory=dict)


@dataclass
class LimitsConfig:
    """Numeric bounds enforced on a backtest request."""

    min_skip_candles: int = 1
    max_skip_candles: int = 100
    min_window_hours: int = 1
    max_window_hours: int = 168
    min_range_days: int = 1
    max_range_days: int = 365
    min_prompt_length: int = 10


@dataclass
class MT5Config:
    """Holds parameters required to connect to a MetaTrader 5 terminal.

    Attributes
    ----------
    login : int
        Account login number.
    password : str
        Password for the account.
    server : str
        Broker server name (e.g. ``Bidget-MT5-Live``).
    path : str
        File system path to the MetaTrader 5 terminal executable
        (`terminal64.exe`).
    """

    login: int = 0
    password: str = ""
    server: str = ""
    path: str = ""


@dataclass
class DataConfig:
    """Data source configuration.

    Attributes
    ----------
    source : str
        ``csv`` to replay files from `csv_dir`, ``mt5`` to pull rates from
        a MetaTrader 5 terminal.
    csv_dir : str
        Directory containing one CSV file per symbol.
    timezone : str
        IANA timezone of naive timestamps found in the CSV files.
    """

    source: str = "csv"
    csv_dir: str = "data"
    timezone: str = "UTC"


@dataclass
class OracleConfig:
    """Endpoints and retry policy of the two-stage analysis service."""

    analysis_url: str = ""
    extractor_url: str = ""
    api_key: str = ""
    timeout: float = 60.0
    max_retries: int = 2
    retry_delay: float = 3.0
    temperature: float = 0.2


@dataclass
class ChartSpec:
    """One chart image handed to the oracle."""

    name: str
    resolution: str
    indicators: List[str] = field(default_factory=list)


def _default_chart_specs() -> List[ChartSpec]:
    return [
        ChartSpec(name="h1", resolution="H1"),
        ChartSpec(name="m5", resolution="M5"),
        ChartSpec(name="m15_ema", resolution="M15", indicators=["EMA20", "EMA50"]),
        ChartSpec(name="m15_bb", resolution="M15", indicators=["BB20"]),
    ]


@dataclass
class ChartsConfig:
    enabled: bool = True
    width: float = 10.0
    height: float = 5.0
    dpi: int = 100
    specs: List[ChartSpec] = field(default_factory=_default_chart_specs)


@dataclass
class StorageConfig:
    """Where finished sessions and analysis payloads are written."""

    results_dir: str = "results"


@dataclass
class LoggingConfig:
    level: str = "INFO"
    file: str = ""


@dataclass
class PromptsConfig:
    """Prompt templates for the two analysis stages."""

    analysis_prompt: str = ""
    extractor_prompt: str = ""


@dataclass
class BacktestRequest:
    """Parameters of a single backtest run.

    Attributes
    ----------
    symbol : str
        Currency pair, e.g. ``"EURUSD"``.
    start_date, end_date : pandas.Timestamp
        UTC range of candles to replay.
    initial_balance : float
        Account balance at the start of the run.
    skip_candles : int
        Candles skipped after a NO_TRADE decision.
    analysis_window_hours : int
        Look-back of market context given to the oracle.
    prompts : PromptsConfig
        Analysis and extractor prompt templates.
    user_id : str, optional
        Owner of the resulting session.
    """

    symbol: str = "EURUSD"
    start_date: Optional[pd.Timestamp] = None
    end_date: Optional[pd.Timestamp] = None
    initial_balance: float = 10_000.0
    skip_candles: int = 6
    analysis_window_hours: int = 20
    prompts: PromptsConfig = field(default_factory=PromptsConfig)
    user_id: Optional[str] = None


@dataclass
class Config:
    """Root configuration for the backtest program."""

    simulation: SimulationConfig = field(default_factory=SimulationConfig)
    costs: CostsConfig = field(default_factory=CostsConfig)
    account: AccountConfig = field(default_factory=AccountConfig)
    instruments: InstrumentConfig = field(default_factory=InstrumentConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)
    data: DataConfig = field(default_factory=DataConfig)
    mt5: MT5Config = field(default_factory=MT5Config)
    oracle: OracleConfig = field(default_factory=OracleConfig)
    charts: ChartsConfig = field(default_factory=ChartsConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    backtest: BacktestRequest = field(default_factory=BacktestRequest)


def _merge_dict(defaults: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge two dictionaries.

    The values in `override` take precedence over those in `defaults`.
    This helper is used when loading YAML into nested dataclasses.
    """
    result: Dict[str, Any] = defaults.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _merge_dict(result[key], value)
        else:
            result[key] = value
    return result


def _optional_timestamp(value: Any) -> Optional[pd.Timestamp]:
    if value is None or value == "":
        return None
    return to_utc(value)


def build_request(raw: Dict[str, Any]) -> BacktestRequest:
    """Build a `BacktestRequest` from a plain mapping (YAML or JSON)."""
    from .instruments import normalize_symbol
    merged = _merge_dict(asdict(BacktestRequest()), raw or {})
    user_id = merged.get('user_id')
    return BacktestRequest(
        symbol=normalize_symbol(merged['symbol']),
        start_date=_optional_timestamp(merged.get('start_date')),
        end_date=_optional_timestamp(merged.get('end_date')),
        initial_balance=float(merged['initial_balance']),
        skip_candles=int(merged['skip_candles']),
        analysis_window_hours=int(merged['analysis_window_hours']),
        prompts=PromptsConfig(**merged['prompts']),
        user_id=str(user_id) if user_id is not None else None,
    )


def config_from_dict(raw: Dict[str, Any]) -> Config:
    """Populate a `Config` from a (possibly partial) nested dictionary."""
    defaults = asdict(Config())
    defaults.pop('backtest')
    merged = _merge_dict(defaults, {k: v for k, v in (raw or {}).items() if k != 'backtest'})

    charts = dict(merged['charts'])
    charts['specs'] = [spec if isinstance(spec, ChartSpec) else ChartSpec(**spec) for spec in charts['specs']]
    simulation = dict(merged['simulation'])
    simulation['context_resolutions'] = list(simulation['context_resolutions'])

    return Config(
        simulation=SimulationConfig(**simulation),
        costs=CostsConfig(**merged['costs']),
        account=AccountConfig(**merged['account']),
        instruments=InstrumentConfig(**merged['instruments']),
        limits=LimitsConfig(**merged['limits']),
        data=DataConfig(**merged['data']),
        mt5=MT5Config(**merged['mt5']),
        oracle=OracleConfig(**merged['oracle']),
        charts=ChartsConfig(**charts),
        storage=StorageConfig(**merged['storage']),
        logging=LoggingConfig(**merged['logging']),
        backtest=build_request((raw or {}).get('backtest') or {}),
    )


def load_config(path: str) -> Config:
    """Load a configuration file from the given YAML path.

    Parameters
    ----------
    path : str
        Path to the YAML file.

    Returns
    -------
    Config
        A populated configuration object.  Missing fields are filled with
        sensible defaults defined in the dataclasses.
    """
    try:
        with open(path, "r", encoding="utf-8") as fh:
            raw: Dict[str, Any] = yaml.safe_load(fh) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"{path} is not valid YAML: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{path} must contain a mapping at the top level")
    try:
        return config_from_dict(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{path}: {exc}") from exc
