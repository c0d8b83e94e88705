# tests/conftest.py
"""
Shared fixtures for the FlowSniper test suite
"""

from decimal import Decimal
from unittest.mock import Mock

import pytest

from config.settings import (
    APIConfig,
    CustodyConfig,
    MonitoringConfig,
    NetworkConfig,
    RiskConfig,
    Settings,
    TradingConfig,
)
from flowsniper.decimal_utils import TokenRegistry


@pytest.fixture
def settings(tmp_path):
    """Settings built from section defaults, isolated from the environment"""
    keystore = tmp_path / "operator_keystore.json"

    mock_settings = Mock(spec=Settings)
    mock_settings.network = NetworkConfig()
    mock_settings.trading = TradingConfig(scan_interval=0.01, execution_timeout=5, control_state_path=None)
    mock_settings.risk = RiskConfig()
    mock_settings.api = APIConfig()
    mock_settings.custody = CustodyConfig(keystore_path=str(keystore))
    mock_settings.monitoring = MonitoringConfig(
        enable_notifications=False, log_file_path=None, journal_path=None
    )
    mock_settings.keystore_file.return_value = keystore
    return mock_settings


@pytest.fixture
def registry():
    """Token registry backed by the static decimals table only"""
    return TokenRegistry()


@pytest.fixture
def usdt(registry):
    return registry.get_token("USDT")


@pytest.fixture
def wmatic(registry):
    return registry.get_token("WMATIC")


def d(value) -> Decimal:
    return Decimal(str(value))
