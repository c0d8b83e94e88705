# -*- coding: utf-8 -*-
# Configuration management
# config/settings.py

"""
Configuration Management System for the FlowSniper arbitrage engine
Handles environment variables, validation, and settings management
"""

import os
from pathlib import Path
from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field
from decimal import Decimal
from dotenv import load_dotenv

import logging

from config.addresses import DEFAULT_SCAN_SYMBOLS

project_root = Path(__file__).parent.parent

logger = logging.getLogger('settings')

# Load environment variables
env_path = project_root / 'config' / '.env'
if env_path.exists():
    load_dotenv(env_path)
    logger.info(f"[SUCCESS] Loaded environment from {env_path}")
else:
    logger.warning(f"[WARNING] No .env file found at {env_path}")


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == 'true'


@dataclass
class NetworkConfig:
    """Network-specific configuration"""
    name: str = 'Polygon Mainnet'
    rpc_url: str = 'https://polygon-rpc.com/'
    ws_url: Optional[str] = None
    chain_id: int = 137
    currency_symbol: str = 'POL'
    block_explorer: str = 'https://polygonscan.com'


@dataclass
class TradingConfig:
    """Trading strategy configuration"""
    mode: str = "DEMO"  # REAL or DEMO
    trade_amount: Decimal = Decimal("0.5")  # USDT notional per round trip
    slippage_tolerance: Decimal = Decimal("0.005")  # 0.5%
    min_profit_fraction: Decimal = Decimal("0.001")  # of notional, after gas
    consolidation_threshold: Decimal = Decimal("10.0")  # USDT
    gas_estimate_usd: Decimal = Decimal("0.02")  # per leg
    max_roi: Decimal = Decimal("0.5")  # implausible-spread circuit breaker
    divergence_tolerance: Decimal = Decimal("0.15")  # DEX vs reference price
    gas_price_multiplier: Decimal = Decimal("1.3")  # clamped to [1.2, 1.5]
    scan_symbols: List[str] = field(default_factory=lambda: list(DEFAULT_SCAN_SYMBOLS))
    scan_batch_size: int = 3
    scan_interval: float = 5.0  # seconds between timer-driven cycles
    scan_trigger: str = "timer"  # timer or block
    initial_demo_gas: Decimal = Decimal("20.0")  # simulated POL balance
    execution_timeout: int = 120  # receipt wait, seconds
    control_state_path: Optional[str] = "config/engine_config.json"  # console config written on change


@dataclass
class RiskConfig:
    """Risk management configuration"""
    max_drawdown: Decimal = Decimal("-5")  # session PnL floor in USDT
    min_native_balance: Decimal = Decimal("0.1")  # POL gas floor per signer
    gas_recheck_interval: float = 30.0  # seconds between balance checks while paused
    watchdog_check_interval: float = 60.0
    watchdog_inactivity_timeout: float = 300.0
    watchdog_restart_delay: float = 2.0


@dataclass
class APIConfig:
    """External price API configuration"""
    price_proxy_url: Optional[str] = None
    bybit_base_url: str = "https://api.bybit.com"
    binance_base_url: str = "https://api.binance.com"
    coingecko_api_key: Optional[str] = None
    coingecko_base_url: str = "https://api.coingecko.com/api/v3"
    request_timeout: float = 4.0
    coingecko_timeout: float = 5.0
    price_cache_ttl: float = 10.0


@dataclass
class CustodyConfig:
    """Owner / operator wallet configuration"""
    keystore_path: str = "config/operator_keystore.json"
    owner_address: Optional[str] = None
    private_key: Optional[str] = None  # fallback single-key wallet


@dataclass
class MonitoringConfig:
    """Monitoring and alerting configuration"""
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    discord_webhook_url: Optional[str] = None
    discord_username: str = "FlowSniper"
    enable_notifications: bool = True
    log_level: str = "INFO"
    log_file_path: Optional[str] = "logs/flowsniper.log"
    journal_path: Optional[str] = "logs/flowsteps.jsonl"


class Settings:
    """
    Main settings class that loads and validates all configuration
    """

    def __init__(self):
        self.project_root = project_root
        self.config_dir = project_root / 'config'

        # Load all configuration sections
        self.network = self._load_network_config()
        self.trading = self._load_trading_config()
        self.risk = self._load_risk_config()
        self.api = self._load_api_config()
        self.custody = self._load_custody_config()
        self.monitoring = self._load_monitoring_config()

        # Validate configuration
        self._validate_configuration()

        logger.info("[CONFIG] Configuration loaded successfully")
        self._log_configuration_summary()

    def _load_network_config(self) -> NetworkConfig:
        """Load network configuration"""
        return NetworkConfig(
            rpc_url=os.getenv('WEB3_PROVIDER_URL', 'https://polygon-rpc.com/'),
            ws_url=os.getenv('WEB3_WS_URL'),
            chain_id=int(os.getenv('CHAIN_ID', '137')),
        )

    def _load_trading_config(self) -> TradingConfig:
        """Load trading configuration"""
        symbols_str = os.getenv('SCAN_SYMBOLS', ','.join(DEFAULT_SCAN_SYMBOLS))
        symbols = [s.strip().upper() for s in symbols_str.split(',') if s.strip()]

        return TradingConfig(
            mode=os.getenv('ENGINE_MODE', 'DEMO').upper(),
            trade_amount=Decimal(os.getenv('TRADE_AMOUNT', '0.5')),
            slippage_tolerance=Decimal(os.getenv('SLIPPAGE_TOLERANCE', '0.005')),
            min_profit_fraction=Decimal(os.getenv('MIN_PROFIT_FRACTION', '0.001')),
            consolidation_threshold=Decimal(os.getenv('CONSOLIDATION_THRESHOLD', '10.0')),
            gas_estimate_usd=Decimal(os.getenv('GAS_ESTIMATE_USD', '0.02')),
            max_roi=Decimal(os.getenv('MAX_ROI', '0.5')),
            divergence_tolerance=Decimal(os.getenv('DIVERGENCE_TOLERANCE', '0.15')),
            gas_price_multiplier=Decimal(os.getenv('GAS_PRICE_MULTIPLIER', '1.3')),
            scan_symbols=symbols,
            scan_batch_size=int(os.getenv('SCAN_BATCH_SIZE', '3')),
            scan_interval=float(os.getenv('SCAN_INTERVAL', '5.0')),
            scan_trigger=os.getenv('SCAN_TRIGGER', 'timer').lower(),
            initial_demo_gas=Decimal(os.getenv('INITIAL_DEMO_GAS', '20.0')),
            execution_timeout=int(os.getenv('EXECUTION_TIMEOUT', '120')),
            control_state_path=os.getenv('CONTROL_STATE_PATH', 'config/engine_config.json') or None
        )

    def _load_risk_config(self) -> RiskConfig:
        """Load risk management configuration"""
        return RiskConfig(
            max_drawdown=Decimal(os.getenv('MAX_DRAWDOWN', '-5')),
            min_native_balance=Decimal(os.getenv('MIN_NATIVE_BALANCE', '0.1')),
            gas_recheck_interval=float(os.getenv('GAS_RECHECK_INTERVAL', '30')),
            watchdog_check_interval=float(os.getenv('WATCHDOG_CHECK_INTERVAL', '60')),
            watchdog_inactivity_timeout=float(os.getenv('WATCHDOG_INACTIVITY_TIMEOUT', '300')),
            watchdog_restart_delay=float(os.getenv('WATCHDOG_RESTART_DELAY', '2'))
        )

    def _load_api_config(self) -> APIConfig:
        """Load API configuration"""
        return APIConfig(
            price_proxy_url=os.getenv('PRICE_PROXY_URL'),
            bybit_base_url=os.getenv('BYBIT_BASE_URL', 'https://api.bybit.com'),
            binance_base_url=os.getenv('BINANCE_BASE_URL', 'https://api.binance.com'),
            coingecko_api_key=os.getenv('COINGECKO_API_KEY'),
            request_timeout=float(os.getenv('REQUEST_TIMEOUT', '4')),
            coingecko_timeout=float(os.getenv('COINGECKO_TIMEOUT', '5')),
            price_cache_ttl=float(os.getenv('PRICE_CACHE_TTL', '10'))
        )

    def _load_custody_config(self) -> CustodyConfig:
        """Load owner / operator wallet configuration"""
        return CustodyConfig(
            keystore_path=os.getenv('OPERATOR_KEYSTORE', 'config/operator_keystore.json'),
            owner_address=os.getenv('OWNER_ADDRESS'),
            private_key=os.getenv('PRIVATE_KEY')
        )

    def _load_monitoring_config(self) -> MonitoringConfig:
        """Load monitoring configuration"""
        return MonitoringConfig(
            telegram_bot_token=os.getenv('TELEGRAM_BOT_TOKEN'),
            telegram_chat_id=os.getenv('TELEGRAM_CHAT_ID'),
            discord_webhook_url=os.getenv('DISCORD_WEBHOOK_URL'),
            discord_username=os.getenv("DISCORD_USERNAME", "FlowSniper"),
            enable_notifications=_env_bool('ENABLE_NOTIFICATIONS', 'true'),
            log_level=os.getenv('LOG_LEVEL', 'INFO'),
            log_file_path=os.getenv('LOG_FILE_PATH', 'logs/flowsniper.log') or None,
            journal_path=os.getenv('JOURNAL_PATH', 'logs/flowsteps.jsonl') or None
        )

    def _validate_configuration(self):
        """Validate configuration for critical issues"""
        errors = []
        warnings = []

        # Network validation
        if not self.network.rpc_url:
            errors.append("WEB3_PROVIDER_URL is required")

        if self.trading.scan_trigger == 'block' and not self.network.ws_url:
            errors.append("WEB3_WS_URL is required when SCAN_TRIGGER=block")

        # Custody validation
        if self.custody.private_key:
            if len(self.custody.private_key.replace('0x', '')) != 64:
                errors.append("PRIVATE_KEY must be 64 hex characters (32 bytes)")

        if self.trading.mode not in ('REAL', 'DEMO'):
            errors.append("ENGINE_MODE must be REAL or DEMO")

        if self.trading.mode == 'REAL' and not self.custody.owner_address and not self.custody.private_key:
            warnings.append("REAL mode without OWNER_ADDRESS or PRIVATE_KEY - only a paired operator can trade")

        # Trading validation
        if self.trading.trade_amount <= 0:
            errors.append("TRADE_AMOUNT must be positive")

        if self.trading.min_profit_fraction < 0:
            errors.append("MIN_PROFIT_FRACTION must not be negative")

        if self.trading.slippage_tolerance < 0 or self.trading.slippage_tolerance >= 1:
            errors.append("SLIPPAGE_TOLERANCE must be in [0, 1)")

        if self.trading.scan_trigger not in ('timer', 'block'):
            errors.append("SCAN_TRIGGER must be timer or block")

        if self.trading.scan_batch_size <= 0:
            errors.append("SCAN_BATCH_SIZE must be positive")

        # Risk validation
        if self.risk.max_drawdown > 0:
            errors.append("MAX_DRAWDOWN must be zero or negative")

        # API validation
        if not self.api.price_proxy_url:
            warnings.append("PRICE_PROXY_URL not set - querying exchanges directly")

        # Monitoring validation
        if self.monitoring.enable_notifications:
            if not self.monitoring.telegram_bot_token and not self.monitoring.discord_webhook_url:
                warnings.append("Notifications enabled but no Telegram or Discord configured")

        # Log results
        if errors:
            logger.error(f"[ERROR] Configuration errors: {', '.join(errors)}")
            raise ValueError(f"Configuration validation failed: {', '.join(errors)}")

        if warnings:
            for warning in warnings:
                logger.warning(f"[WARNING] {warning}")

    def _log_configuration_summary(self):
        """Log configuration summary"""
        logger.info("[CONFIG] Configuration Summary:")
        logger.info(f"  [NETWORK] Network: {self.network.name} (chain {self.network.chain_id})")
        logger.info(f"  [TRADE] Notional: {self.trading.trade_amount} USDT")
        logger.info(f"  [PROFIT] Min Profit: {self.trading.min_profit_fraction:.2%} of notional")
        logger.info(f"  [TARGET] Slippage: {self.trading.slippage_tolerance:.2%}")
        logger.info(f"  [RISK] Max Drawdown: {self.risk.max_drawdown} USDT")
        logger.info(f"  [SCAN] Trigger: {self.trading.scan_trigger} | Symbols: {', '.join(self.trading.scan_symbols)}")

        if self.trading.mode == 'DEMO':
            logger.warning("[SAFE] DEMO MODE - No real trades will be executed")

    def keystore_file(self) -> Path:
        """Absolute path of the operator keystore"""
        path = Path(self.custody.keystore_path)
        if not path.is_absolute():
            path = self.project_root / path
        return path

    def to_dict(self) -> Dict[str, Any]:
        """Convert settings to dictionary (excluding sensitive data)"""
        return {
            'network': {
                'name': self.network.name,
                'chain_id': self.network.chain_id,
                'block_trigger': bool(self.network.ws_url)
            },
            'trading': {
                'mode': self.trading.mode,
                'trade_amount': str(self.trading.trade_amount),
                'slippage_tolerance': str(self.trading.slippage_tolerance),
                'min_profit_fraction': str(self.trading.min_profit_fraction),
                'consolidation_threshold': str(self.trading.consolidation_threshold),
                'scan_symbols': self.trading.scan_symbols
            },
            'risk': {
                'max_drawdown': str(self.risk.max_drawdown),
                'min_native_balance': str(self.risk.min_native_balance)
            },
            'custody': {
                'owner_address': self.custody.owner_address,
                'has_private_key': bool(self.custody.private_key)
            }
        }


# Global settings instance
_settings_instance: Optional[Settings] = None


def load_settings() -> Settings:
    """Load and return global settings instance"""
    global _settings_instance

    if _settings_instance is None:
        _settings_instance = Settings()

    return _settings_instance


def reload_settings() -> Settings:
    """Reload settings from environment"""
    global _settings_instance
    _settings_instance = None
    return load_settings()


# Export main classes and functions
__all__ = [
    'Settings', 'NetworkConfig', 'TradingConfig', 'RiskConfig',
    'APIConfig', 'CustodyConfig', 'MonitoringConfig',
    'load_settings', 'reload_settings'
]
